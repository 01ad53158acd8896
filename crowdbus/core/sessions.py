"""Rider tracking sessions ("I'm on this bus").

The database row is the source of truth; the cache only shortens the hot
lookup on every incoming report and is dropped whenever a session changes.
"""

import asyncio
import datetime
import logging
import uuid
import weakref

from sqlalchemy import select, update

from crowdbus.config import Settings, settings as default_settings
from crowdbus.core import repository
from crowdbus.core.cache import Cache
from crowdbus.core.exceptions import ResourceNotFoundError
from crowdbus.models.tables import TrackingSession

logger = logging.getLogger(__name__)

SESSION_CACHE_TTL = 300


def session_quality(session: TrackingSession, now: datetime.datetime) -> float:
    """0..1 blend of valid ratio, session length and average accuracy."""
    if session.locations_contributed == 0:
        return 0.0
    valid_ratio = session.valid_locations / session.locations_contributed
    minutes = (now - session.started_at).total_seconds() / 60
    accuracy = session.average_accuracy if session.average_accuracy is not None else 100.0
    return (
        valid_ratio * 0.4
        + min(1.0, minutes / 60) * 0.3
        + max(0.0, (100 - accuracy) / 100) * 0.3
    )


def _snapshot(session: TrackingSession) -> dict:
    return {
        "session_id": session.session_id,
        "vehicle_id": session.vehicle_id,
        "trust_score_at_start": session.trust_score_at_start,
        "started_at": session.started_at.isoformat(),
    }


class SessionManager:
    def __init__(self, session_factory, cache: Cache, settings: Settings | None = None) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.settings = settings or default_settings
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[device_id] = lock
        return lock

    @staticmethod
    def _cache_key(device_id: str) -> str:
        return f"session:{device_id}"

    async def start(
        self, device_id: str, vehicle_id: str, now: datetime.datetime | None = None
    ) -> TrackingSession:
        """Open a session, ending any session the device already had open."""
        now = now or datetime.datetime.now(datetime.timezone.utc)

        async with self._lock(device_id):
            async with self.session_factory() as db:
                ended = await db.execute(
                    update(TrackingSession)
                    .where(TrackingSession.device_id == device_id, TrackingSession.is_active.is_(True))
                    .values(is_active=False, ended_at=now, end_reason="superseded")
                )
                record = await repository.get_trust_record(db, device_id)
                session = TrackingSession(
                    session_id=uuid.uuid4().hex,
                    device_id=device_id,
                    vehicle_id=vehicle_id,
                    trust_score_at_start=record.trust_score if record else 0.5,
                    locations_contributed=0,
                    valid_locations=0,
                    is_active=True,
                    started_at=now,
                    last_activity=now,
                )
                db.add(session)
                await db.commit()

            await self.cache.put(self._cache_key(device_id), _snapshot(session), SESSION_CACHE_TTL)

        if ended.rowcount:
            logger.info("Device %s… switched to vehicle %s", device_id[:8], vehicle_id)
        return session

    async def end(
        self, session_id: str, reason: str = "stopped", now: datetime.datetime | None = None
    ) -> TrackingSession:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        async with self.session_factory() as db:
            session = await db.get(TrackingSession, session_id)
            if session is None:
                raise ResourceNotFoundError("Tracking session", session_id)
            if session.is_active:
                session.is_active = False
                session.ended_at = now
                session.end_reason = reason
                await db.commit()
        await self.cache.forget(self._cache_key(session.device_id))
        return session

    async def active_session(self, device_id: str) -> dict | None:
        """Snapshot of the device's open session, if any."""
        cached = await self.cache.get(self._cache_key(device_id))
        if cached is not None:
            return cached

        async with self.session_factory() as db:
            result = await db.execute(
                select(TrackingSession).where(
                    TrackingSession.device_id == device_id,
                    TrackingSession.is_active.is_(True),
                )
            )
            session = result.scalar_one_or_none()
        if session is None:
            return None
        snapshot = _snapshot(session)
        await self.cache.put(self._cache_key(device_id), snapshot, SESSION_CACHE_TTL)
        return snapshot

    async def touch(
        self,
        session_id: str,
        valid: bool,
        accuracy: float | None,
        now: datetime.datetime | None = None,
    ) -> None:
        """Count a report against its session."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        async with self.session_factory() as db:
            session = await db.get(TrackingSession, session_id)
            if session is None or not session.is_active:
                return
            n = session.locations_contributed
            if accuracy is not None:
                previous = session.average_accuracy if session.average_accuracy is not None else accuracy
                session.average_accuracy = (previous * n + accuracy) / (n + 1)
            session.locations_contributed = n + 1
            if valid:
                session.valid_locations += 1
            session.last_activity = now
            await db.commit()

    async def quality(self, session_id: str, now: datetime.datetime | None = None) -> float:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        async with self.session_factory() as db:
            session = await db.get(TrackingSession, session_id)
        if session is None:
            raise ResourceNotFoundError("Tracking session", session_id)
        return session_quality(session, now)

    async def expire_inactive(self, now: datetime.datetime | None = None) -> int:
        """End sessions with no activity within the timeout."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        cutoff = now - datetime.timedelta(minutes=self.settings.session_timeout_minutes)
        async with self.session_factory() as db:
            result = await db.execute(
                select(TrackingSession).where(
                    TrackingSession.is_active.is_(True),
                    TrackingSession.last_activity < cutoff,
                )
            )
            stale = list(result.scalars())
            for session in stale:
                session.is_active = False
                session.ended_at = now
                session.end_reason = "timeout"
            await db.commit()

        for session in stale:
            await self.cache.forget(self._cache_key(session.device_id))
        if stale:
            logger.info("Expired %d inactive tracking sessions", len(stale))
        return len(stale)

    async def deactivate(
        self, device_id: str, vehicle_id: str, reason: str, now: datetime.datetime | None = None
    ) -> bool:
        """Stop tracking a device on a vehicle; returns False if nothing was open."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        async with self._lock(device_id):
            async with self.session_factory() as db:
                result = await db.execute(
                    update(TrackingSession)
                    .where(
                        TrackingSession.device_id == device_id,
                        TrackingSession.vehicle_id == vehicle_id,
                        TrackingSession.is_active.is_(True),
                    )
                    .values(is_active=False, ended_at=now, end_reason=reason)
                )
                await db.commit()
            await self.cache.forget(self._cache_key(device_id))
        if result.rowcount:
            logger.info("Auto-deactivated device %s… on %s (%s)", device_id[:8], vehicle_id, reason)
        return bool(result.rowcount)

    async def active_devices(self, vehicle_id: str) -> list[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(TrackingSession.device_id).where(
                    TrackingSession.vehicle_id == vehicle_id,
                    TrackingSession.is_active.is_(True),
                )
            )
            return sorted(result.scalars().all())

    async def end_for_vehicle(
        self, vehicle_id: str, reason: str, now: datetime.datetime | None = None
    ) -> int:
        """End every open session on a vehicle; returns how many were closed."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        async with self.session_factory() as db:
            result = await db.execute(
                select(TrackingSession).where(
                    TrackingSession.vehicle_id == vehicle_id,
                    TrackingSession.is_active.is_(True),
                )
            )
            open_sessions = list(result.scalars())
            for session in open_sessions:
                session.is_active = False
                session.ended_at = now
                session.end_reason = reason
            await db.commit()

        for session in open_sessions:
            await self.cache.forget(self._cache_key(session.device_id))
        return len(open_sessions)
