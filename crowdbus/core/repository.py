"""Persistence queries shared by the tracking pipeline.

Location reports are append-only; everything else here is a mutable row
keyed by device, session or vehicle.
"""

import datetime
import hashlib

from sqlalchemy import delete, distinct, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from crowdbus.models.tables import (
    AggregatedPosition,
    DeviceTrustRecord,
    LocationReport,
    TrackingSession,
)


def hash_device_id(token: str) -> str:
    """Opaque device tokens are only ever stored hashed."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


async def previous_report(
    db: AsyncSession, device_id: str, since: datetime.datetime
) -> LocationReport | None:
    """The device's most recent persisted report received after `since`."""
    result = await db.execute(
        select(LocationReport)
        .where(LocationReport.device_id == device_id, LocationReport.received_at >= since)
        .order_by(LocationReport.received_at.desc(), LocationReport.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def device_track(
    db: AsyncSession,
    device_id: str,
    vehicle_id: str,
    since: datetime.datetime,
    limit: int | None = None,
) -> list[LocationReport]:
    """Recent reports of one device on one vehicle, oldest first."""
    query = (
        select(LocationReport)
        .where(
            LocationReport.device_id == device_id,
            LocationReport.vehicle_id == vehicle_id,
            LocationReport.received_at >= since,
        )
        .order_by(LocationReport.received_at.desc(), LocationReport.id.desc())
    )
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(reversed(result.scalars().all()))


async def vehicle_reports(
    db: AsyncSession,
    vehicle_id: str,
    since: datetime.datetime,
    until: datetime.datetime | None = None,
    validated_only: bool = True,
) -> list[LocationReport]:
    query = select(LocationReport).where(
        LocationReport.vehicle_id == vehicle_id,
        LocationReport.received_at >= since,
    )
    if until is not None:
        query = query.where(LocationReport.received_at <= until)
    if validated_only:
        query = query.where(LocationReport.is_validated.is_(True))
    result = await db.execute(query.order_by(LocationReport.received_at, LocationReport.id))
    return list(result.scalars().all())


async def device_reports(
    db: AsyncSession, device_id: str, since: datetime.datetime
) -> list[LocationReport]:
    result = await db.execute(
        select(LocationReport)
        .where(LocationReport.device_id == device_id, LocationReport.received_at >= since)
        .order_by(LocationReport.received_at, LocationReport.id)
    )
    return list(result.scalars().all())


async def peer_reports(
    db: AsyncSession,
    vehicle_ids: set[str],
    start: datetime.datetime,
    end: datetime.datetime,
    exclude_device: str,
) -> list[LocationReport]:
    """Reports from other devices on the given vehicles inside a time range."""
    if not vehicle_ids:
        return []
    result = await db.execute(
        select(LocationReport)
        .where(
            LocationReport.vehicle_id.in_(vehicle_ids),
            LocationReport.device_id != exclude_device,
            LocationReport.received_at >= start,
            LocationReport.received_at <= end,
        )
        .order_by(LocationReport.received_at)
    )
    return list(result.scalars().all())


async def last_validated_report(
    db: AsyncSession, vehicle_id: str, since: datetime.datetime, min_weight: float
) -> LocationReport | None:
    result = await db.execute(
        select(LocationReport)
        .where(
            LocationReport.vehicle_id == vehicle_id,
            LocationReport.is_validated.is_(True),
            LocationReport.reputation_weight > min_weight,
            LocationReport.received_at >= since,
        )
        .order_by(LocationReport.received_at.desc(), LocationReport.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def active_vehicle_ids(db: AsyncSession, since: datetime.datetime) -> list[str]:
    """Vehicles with an open session or a report received after `since`."""
    reported = select(distinct(LocationReport.vehicle_id)).where(
        LocationReport.received_at >= since
    )
    tracked = select(distinct(TrackingSession.vehicle_id)).where(
        TrackingSession.is_active.is_(True)
    )
    ids = set((await db.execute(reported)).scalars().all())
    ids.update((await db.execute(tracked)).scalars().all())
    return sorted(ids)


async def devices_active_since(db: AsyncSession, since: datetime.datetime) -> list[str]:
    result = await db.execute(
        select(distinct(LocationReport.device_id)).where(LocationReport.received_at >= since)
    )
    return sorted(result.scalars().all())


async def get_trust_record(db: AsyncSession, device_id: str) -> DeviceTrustRecord | None:
    return await db.get(DeviceTrustRecord, device_id)


async def get_or_create_trust_record(db: AsyncSession, device_id: str) -> DeviceTrustRecord:
    record = await db.get(DeviceTrustRecord, device_id)
    if record is None:
        record = DeviceTrustRecord(
            device_id=device_id,
            reputation_score=0.5,
            trust_score=0.5,
            total_contributions=0,
            accurate_contributions=0,
            clustering_score=0.5,
            movement_consistency=0.5,
            is_trusted=False,
        )
        db.add(record)
        await db.flush()
    return record


async def prune_trust_records(
    db: AsyncSession, idle_before: datetime.datetime, min_contributions: int
) -> int:
    """Drop records of devices that went quiet before earning any history."""
    result = await db.execute(
        delete(DeviceTrustRecord).where(
            or_(
                DeviceTrustRecord.last_activity < idle_before,
                DeviceTrustRecord.last_activity.is_(None),
            ),
            DeviceTrustRecord.created_at < idle_before,
            DeviceTrustRecord.total_contributions < min_contributions,
        )
    )
    return result.rowcount or 0


async def get_position(db: AsyncSession, vehicle_id: str) -> AggregatedPosition | None:
    return await db.get(AggregatedPosition, vehicle_id)


async def recently_positioned_vehicles(db: AsyncSession, since: datetime.datetime) -> list[str]:
    """Vehicles that had coordinates published after `since`."""
    result = await db.execute(
        select(AggregatedPosition.vehicle_id).where(
            AggregatedPosition.last_updated >= since,
            AggregatedPosition.lat.is_not(None),
        )
    )
    return sorted(result.scalars().all())


async def save_position(db: AsyncSession, **values) -> AggregatedPosition:
    """Overwrite the single position row of a vehicle."""
    row = await db.get(AggregatedPosition, values["vehicle_id"])
    if row is None:
        row = AggregatedPosition(**values)
        db.add(row)
    else:
        for key, value in values.items():
            setattr(row, key, value)
    return row
