import datetime

from pydantic import BaseModel, Field


class SessionStart(BaseModel):
    device_id: str = Field(min_length=8, max_length=255)
    vehicle_id: str = Field(min_length=1, max_length=64)


class SessionInfo(BaseModel):
    session_id: str
    vehicle_id: str
    is_active: bool
    trust_score_at_start: float
    locations_contributed: int
    valid_locations: int
    average_accuracy: float | None = None
    started_at: datetime.datetime
    last_activity: datetime.datetime
    ended_at: datetime.datetime | None = None
    end_reason: str | None = None

    model_config = {"from_attributes": True}
