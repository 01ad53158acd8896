"""Vehicle position REST API endpoints."""

from fastapi import APIRouter, HTTPException

from crowdbus.schemas.position import VehiclePosition

router = APIRouter(prefix="/api/vehicles", tags=["vehicles"])

# Will be set by main.py
tracker = None


@router.get("/{vehicle_id}/position", response_model=VehiclePosition)
async def get_position(vehicle_id: str):
    """Current consensus position of a vehicle, with status and confidence."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return await tracker.current_position(vehicle_id)
