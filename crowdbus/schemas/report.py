import datetime

from pydantic import BaseModel, Field


class ReportIn(BaseModel):
    device_id: str = Field(min_length=8, max_length=255)
    vehicle_id: str = Field(min_length=1, max_length=64)
    lat: float
    lon: float
    accuracy: float | None = None
    speed: float | None = None  # m/s
    heading: float | None = None
    timestamp: datetime.datetime | None = None


class CheckInfo(BaseModel):
    valid: bool
    confidence: float
    message: str


class ValidationOut(BaseModel):
    valid: bool
    confidence_score: float
    flags: list[str] = []
    recommendations: list[str] = []
    reason: str | None = None
    checks: dict[str, CheckInfo] = {}


class ReportOut(BaseModel):
    report_id: int
    accepted: bool = True
    valid: bool
    confidence_score: float
    reputation_weight: float
    trust_score: float
    flags: list[str] = []
    recommendations: list[str] = []
    reason: str | None = None
