from pydantic import BaseModel


class VehiclePosition(BaseModel):
    vehicle_id: str
    lat: float | None = None
    lon: float | None = None
    confidence: float
    active_trackers: int = 0
    trusted_trackers: int = 0
    status: str
    source: str = "none"
    last_updated: str | None = None
