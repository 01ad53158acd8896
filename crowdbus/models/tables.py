import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from crowdbus.models.base import Base, UTCDateTime


def _clamp_unit(value: float | None) -> float | None:
    if value is None:
        return None
    return max(0.0, min(1.0, float(value)))


class LocationReport(Base):
    __tablename__ = "location_reports"
    __table_args__ = (
        Index("ix_lr_vehicle_received", "vehicle_id", "received_at"),
        Index("ix_lr_device_received", "device_id", "received_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)  # sha256 hex
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    speed: Mapped[float | None] = mapped_column(Float, nullable=True)  # m/s, client supplied
    heading: Mapped[float | None] = mapped_column(Float, nullable=True)
    recorded_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
    received_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
    reputation_weight: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)


class DeviceTrustRecord(Base):
    __tablename__ = "device_trust"

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reputation_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    trust_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    total_contributions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    accurate_contributions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clustering_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    movement_consistency: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    is_trusted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_activity: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.datetime.now(datetime.timezone.utc),
    )

    @validates("reputation_score", "trust_score", "clustering_score", "movement_consistency")
    def _clamp_scores(self, key, value):
        return _clamp_unit(value)


class TrackingSession(Base):
    __tablename__ = "tracking_sessions"
    __table_args__ = (
        # At most one active session per device
        Index(
            "uq_ts_active_device",
            "device_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
        Index("ix_ts_vehicle_active", "vehicle_id", "is_active"),
    )

    session_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trust_score_at_start: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    locations_contributed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_locations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    started_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
    last_activity: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
    ended_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime, nullable=True)
    end_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)


class AggregatedPosition(Base):
    __tablename__ = "aggregated_positions"

    vehicle_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    active_trackers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trusted_trackers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="no_data")
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    last_updated: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
    last_known: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    @validates("confidence")
    def _clamp_confidence(self, key, value):
        return _clamp_unit(value)


class BusSchedule(Base):
    __tablename__ = "bus_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    departure_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    return_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    service_end_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    days_of_week: Mapped[str] = mapped_column(String(7), nullable=False, default="1234567")  # ISO weekdays
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class RouteStop(Base):
    __tablename__ = "route_stops"
    __table_args__ = (
        Index("ix_rs_schedule_order", "schedule_id", "stop_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[int] = mapped_column(Integer, ForeignKey("bus_schedules.id"), nullable=False)
    stop_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    coverage_radius: Mapped[float | None] = mapped_column(Float, nullable=True)  # meters
