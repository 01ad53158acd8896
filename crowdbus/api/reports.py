"""Rider GPS report endpoints."""

import datetime

from fastapi import APIRouter, HTTPException

from crowdbus.core.repository import hash_device_id
from crowdbus.core.validator import IncomingReport
from crowdbus.schemas.report import CheckInfo, ReportIn, ReportOut, ValidationOut

router = APIRouter(prefix="/api/reports", tags=["reports"])

# Will be set by main.py
tracker = None


def _to_report(body: ReportIn) -> IncomingReport:
    recorded_at = body.timestamp
    if recorded_at is not None and recorded_at.tzinfo is None:
        recorded_at = recorded_at.replace(tzinfo=datetime.timezone.utc)
    return IncomingReport(
        device_id=hash_device_id(body.device_id),
        vehicle_id=body.vehicle_id,
        lat=body.lat,
        lon=body.lon,
        accuracy=body.accuracy,
        recorded_at=recorded_at,
        received_at=datetime.datetime.now(datetime.timezone.utc),
        speed=body.speed,
        heading=body.heading,
    )


@router.post("", response_model=ReportOut, status_code=201)
async def submit_report(body: ReportIn):
    """Validate and store one location report."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    result = await tracker.ingest(_to_report(body))
    v = result.validation
    return ReportOut(
        report_id=result.report_id,
        valid=v.valid,
        confidence_score=v.confidence_score,
        reputation_weight=result.reputation_weight,
        trust_score=result.trust_score,
        flags=v.flags,
        recommendations=v.recommendations,
        reason=v.reason,
    )


@router.post("/validate", response_model=ValidationOut)
async def validate_report(body: ReportIn):
    """Dry run: validate a report without storing it."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    v = await tracker.validate_report(_to_report(body))
    return ValidationOut(
        valid=v.valid,
        confidence_score=v.confidence_score,
        flags=v.flags,
        recommendations=v.recommendations,
        reason=v.reason,
        checks={
            name: CheckInfo(valid=c.valid, confidence=c.confidence, message=c.message)
            for name, c in v.checks().items()
        },
    )
