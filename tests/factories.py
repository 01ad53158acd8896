"""Builders and in-memory stand-ins shared by the tests."""

import datetime
import fnmatch

from crowdbus.core.route_gate import DEPARTURE, StopOnRoute, orient_stops
from crowdbus.core.schedule import ScheduleStatus
from crowdbus.core.validator import IncomingReport
from crowdbus.models.tables import DeviceTrustRecord, LocationReport

UTC = datetime.timezone.utc
NOW = datetime.datetime(2025, 3, 3, 8, 0, tzinfo=UTC)  # a Monday, 14:00 in Dhaka

# ~1 m of latitude in degrees
LAT_M = 1 / 111_195.0


def make_stops() -> list[StopOnRoute]:
    """Four stops running north through central Dhaka, ~445 m apart."""
    return [
        StopOnRoute(stop_id=1, name="Stop A", lat=23.800, lon=90.400, order=1, radius_m=100),
        StopOnRoute(stop_id=2, name="Stop B", lat=23.804, lon=90.400, order=2, radius_m=100),
        StopOnRoute(stop_id=3, name="Stop C", lat=23.808, lon=90.400, order=3, radius_m=100),
        StopOnRoute(stop_id=4, name="Stop D", lat=23.812, lon=90.400, order=4, radius_m=100),
    ]


def make_report(
    lat: float = 23.800,
    lon: float = 90.400,
    at: datetime.datetime = NOW,
    device: str = "device-a",
    vehicle: str = "bus-1",
    accuracy: float | None = 10.0,
    speed: float | None = None,
    recorded_at: datetime.datetime | None = None,
) -> IncomingReport:
    return IncomingReport(
        device_id=device,
        vehicle_id=vehicle,
        lat=lat,
        lon=lon,
        accuracy=accuracy,
        recorded_at=recorded_at or at,
        received_at=at,
        speed=speed,
    )


async def add_report(
    session_factory,
    device: str,
    lat: float,
    lon: float = 90.400,
    at: datetime.datetime = NOW,
    vehicle: str = "bus-1",
    weight: float = 0.9,
    validated: bool = True,
    accuracy: float = 10.0,
) -> int:
    """Insert a stored report directly, bypassing validation."""
    async with session_factory() as db:
        row = LocationReport(
            device_id=device,
            vehicle_id=vehicle,
            lat=lat,
            lon=lon,
            accuracy=accuracy,
            recorded_at=at,
            received_at=at,
            reputation_weight=weight,
            confidence_score=0.9 if validated else 0.4,
            is_validated=validated,
            flags=[],
        )
        db.add(row)
        await db.commit()
        return row.id


async def set_trust(session_factory, device: str, trust: float, **values) -> None:
    async with session_factory() as db:
        record = DeviceTrustRecord(
            device_id=device,
            trust_score=trust,
            reputation_score=values.pop("reputation_score", trust),
            is_trusted=trust >= 0.7,
            **values,
        )
        db.add(record)
        await db.commit()


class MockRedis:
    def __init__(self):
        self.store = {}
        self.hashes = {}
        self.published = []

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                removed += 1
        return removed

    async def scan_iter(self, match=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def hset(self, name, key, value):
        self.hashes.setdefault(name, {})[key] = value
        return 1

    async def hgetall(self, name):
        return dict(self.hashes.get(name, {}))

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def flushdb(self):
        self.store = {}
        self.hashes = {}

    async def aclose(self):
        pass


class BrokenRedis:
    """Every call fails, like a Redis that went away."""

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise ConnectionError("redis unavailable")
        return fail


class FakeScheduleGate:
    def __init__(self, stops: list[StopOnRoute] | None = None, active: bool = True):
        self.stops = stops if stops is not None else make_stops()
        self.active = active
        self.direction = DEPARTURE

    async def is_vehicle_active(self, vehicle_id, at):
        if not self.active:
            return ScheduleStatus(active=False)
        return ScheduleStatus(active=True, schedule_id=1, direction=self.direction)

    async def ordered_stops(self, schedule_id, direction):
        return orient_stops(self.stops, direction)
