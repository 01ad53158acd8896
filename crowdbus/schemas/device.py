import datetime

from pydantic import BaseModel


class DeviceTrust(BaseModel):
    trust_score: float
    reputation_score: float
    is_trusted: bool
    total_contributions: int
    accurate_contributions: int
    clustering_score: float
    movement_consistency: float
    last_activity: datetime.datetime | None = None

    model_config = {"from_attributes": True}
