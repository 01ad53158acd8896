"""Tracking session endpoints ("I'm on this bus")."""

from fastapi import APIRouter, HTTPException

from crowdbus.core.repository import hash_device_id
from crowdbus.schemas.session import SessionInfo, SessionStart

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

# Will be set by main.py
tracker = None


@router.post("", response_model=SessionInfo, status_code=201)
async def start_session(body: SessionStart):
    """Start sharing location for a bus; ends any session the device had open."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return await tracker.start_session(hash_device_id(body.device_id), body.vehicle_id)


@router.delete("/{session_id}", response_model=SessionInfo)
async def end_session(session_id: str):
    """Stop sharing location."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return await tracker.end_session(session_id)
