"""Application exceptions and their HTTP rendering."""

import logging
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(AppException):
    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} {resource_id} not found"
        super().__init__(
            message=message,
            error_code="not_found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id},
        )


class ReportRejectedError(AppException):
    """A report failed a non-negotiable check and was discarded."""

    def __init__(self, reason: str, validation):
        super().__init__(
            message=validation.recommendations[0] if validation.recommendations else "Report rejected",
            error_code=reason,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={
                "confidence_score": validation.confidence_score,
                "flags": validation.flags,
                "recommendations": validation.recommendations,
            },
        )


class NoActiveSessionError(AppException):
    def __init__(self, vehicle_id: str):
        super().__init__(
            message="Start tracking this bus before sending locations",
            error_code="no_active_session",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "vehicle_id": vehicle_id,
                "recommendations": ["Tap \"I'm on this bus\" to start sharing your location"],
            },
        )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "internal_error",
            "message": "An internal server error occurred",
            "details": {},
        },
    )
