"""Schedule gate: is a vehicle allowed to report now, and along which stops.

Schedules are owned elsewhere; this module only reads them. Ordered stops
are cached per schedule and direction, and a schedule change drops every
cached direction at once.
"""

import datetime
import logging
from dataclasses import asdict, dataclass
from typing import Protocol

from sqlalchemy import select

from crowdbus.config import Settings, settings as default_settings
from crowdbus.core.cache import Cache
from crowdbus.core.route_gate import DEPARTURE, RETURN, StopOnRoute, orient_stops
from crowdbus.models.tables import BusSchedule, RouteStop

logger = logging.getLogger(__name__)

STOPS_CACHE_TTL = 3600


@dataclass
class ScheduleStatus:
    active: bool
    schedule_id: int | None = None
    direction: str = DEPARTURE


class ScheduleGate(Protocol):
    async def is_vehicle_active(
        self, vehicle_id: str, at: datetime.datetime
    ) -> ScheduleStatus: ...

    async def ordered_stops(
        self, schedule_id: int, direction: str
    ) -> list[StopOnRoute]: ...


def _minutes(t: datetime.time) -> int:
    return t.hour * 60 + t.minute


def resolve_window(
    schedule: BusSchedule, local_minute: int, buffer_minutes: int, return_trip_minutes: int
) -> str | None:
    """Direction the vehicle runs at `local_minute`, or None outside service."""
    departure = _minutes(schedule.departure_time)
    turnaround = _minutes(schedule.return_time)
    if schedule.service_end_time is not None:
        end = _minutes(schedule.service_end_time)
    else:
        end = turnaround + return_trip_minutes

    if not departure - buffer_minutes <= local_minute <= end + buffer_minutes:
        return None
    return DEPARTURE if local_minute < turnaround else RETURN


class DatabaseScheduleGate:
    """Schedule gate backed by the bus_schedules / route_stops tables."""

    def __init__(self, session_factory, cache: Cache, settings: Settings | None = None) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.settings = settings or default_settings
        self._tz = datetime.timezone(
            datetime.timedelta(hours=self.settings.service_utc_offset_hours)
        )

    async def is_vehicle_active(
        self, vehicle_id: str, at: datetime.datetime
    ) -> ScheduleStatus:
        local = at.astimezone(self._tz)
        minute = local.hour * 60 + local.minute
        weekday = str(local.isoweekday())

        async with self.session_factory() as session:
            result = await session.execute(
                select(BusSchedule)
                .where(BusSchedule.vehicle_id == vehicle_id, BusSchedule.is_active.is_(True))
                .order_by(BusSchedule.departure_time)
            )
            schedules = list(result.scalars())

        for schedule in schedules:
            if weekday not in schedule.days_of_week:
                continue
            direction = resolve_window(
                schedule,
                minute,
                self.settings.schedule_buffer_minutes,
                self.settings.return_trip_minutes,
            )
            if direction is not None:
                return ScheduleStatus(active=True, schedule_id=schedule.id, direction=direction)
        return ScheduleStatus(active=False)

    async def ordered_stops(self, schedule_id: int, direction: str) -> list[StopOnRoute]:
        key = f"stops:{schedule_id}:{direction}"
        cached = await self.cache.get(key)
        if cached is not None:
            return [StopOnRoute(**s) for s in cached]

        async with self.session_factory() as session:
            result = await session.execute(
                select(RouteStop)
                .where(RouteStop.schedule_id == schedule_id)
                .order_by(RouteStop.stop_order)
            )
            rows = list(result.scalars())

        stops = orient_stops(
            [
                StopOnRoute(
                    stop_id=r.id,
                    name=r.name,
                    lat=r.lat,
                    lon=r.lon,
                    order=r.stop_order,
                    radius_m=r.coverage_radius or self.settings.default_stop_radius_m,
                )
                for r in rows
            ],
            direction,
        )
        await self.cache.put(key, [asdict(s) for s in stops], STOPS_CACHE_TTL)
        return stops

    async def invalidate_schedule(self, schedule_id: int) -> int:
        """Forget cached stops for every direction of a schedule."""
        removed = await self.cache.forget_pattern(f"stops:{schedule_id}:*")
        logger.info("Schedule %d changed, dropped %d cached stop lists", schedule_id, removed)
        return removed
