"""Per-device trust and reputation scoring.

Trust moves slowly on purpose: every recalculation may shift the stored
value by at most `trust_max_step`, so a burst of good (or bad) data cannot
flip a device between trusted and untrusted. Because that rule reads the
previous value before writing the next one, every update for a device runs
under that device's lock; different devices never wait on each other.
"""

import asyncio
import bisect
import datetime
import logging
import statistics
import weakref
from dataclasses import dataclass

from crowdbus.config import Settings, settings as default_settings
from crowdbus.core import repository
from crowdbus.core.cache import Cache
from crowdbus.core.geo import distance
from crowdbus.core.movement import MovementAnalyzer, MovementPattern, TrackPoint

logger = logging.getLogger(__name__)

TRUST_WEIGHTS = {
    "frequency": 0.15,
    "consistency": 0.25,
    "accuracy": 0.25,
    "clustering": 0.20,
    "historical": 0.15,
}

DEFAULT_TRUST = 0.5
SAMPLE_LIMIT = 100
PROXIMITY_WINDOW = datetime.timedelta(minutes=1)
AFFINITY_WINDOW = datetime.timedelta(minutes=2)
AFFINITY_HORIZON = datetime.timedelta(hours=24)


@dataclass
class Sample:
    """A report reduced to what cross-device comparisons need."""

    device_id: str
    vehicle_id: str
    lat: float
    lon: float
    timestamp: datetime.datetime

    @classmethod
    def from_report(cls, report) -> "Sample":
        return cls(report.device_id, report.vehicle_id, report.lat, report.lon, report.received_at)


@dataclass
class BehaviorWindow:
    total_reports: int = 0
    validated_reports: int = 0
    high_reputation_reports: int = 0
    active_days: int = 0
    proximity_consistency: float = 0.5
    clustering_affinity: float = 0.5


@dataclass
class TrustFactors:
    frequency: float
    consistency: float
    accuracy: float
    clustering: float
    historical: float

    def weighted(self) -> float:
        return sum(getattr(self, name) * w for name, w in TRUST_WEIGHTS.items())


@dataclass
class TrustUpdate:
    device_id: str
    previous: float
    candidate: float
    trust_score: float
    is_trusted: bool
    factors: TrustFactors | None = None


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def bounded_step(previous: float, candidate: float, max_step: float) -> float:
    """Move from `previous` toward `candidate` by at most `max_step`."""
    step = _clamp(candidate - previous, -max_step, max_step)
    return _clamp(previous + step)


def frequency_score(window: BehaviorWindow) -> float:
    """Steady daily use scores high; bursts of more than 50 reports a day look like spam."""
    if window.total_reports == 0 or window.active_days == 0:
        return 0.0

    if window.active_days >= 5:
        score = 0.5
    elif window.active_days >= 3:
        score = 0.35
    else:
        score = 0.15

    per_day = window.total_reports / window.active_days
    if per_day > 50:
        score -= 0.2
    elif per_day >= 1:
        score += 0.5 if window.active_days >= 3 else 0.25
    return _clamp(score)


def consistency_score(window: BehaviorWindow) -> float:
    if window.total_reports == 0:
        return window.proximity_consistency * 0.4 + 0.3
    validated = window.validated_reports / window.total_reports
    return _clamp(validated * 0.6 + window.proximity_consistency * 0.4)


def accuracy_score(window: BehaviorWindow) -> float:
    if window.total_reports == 0:
        return 0.5
    return _clamp(window.high_reputation_reports / window.total_reports * 1.2)


def _proximity_tier(avg_distance_m: float) -> float:
    if avg_distance_m <= 25:
        return 1.0
    if avg_distance_m <= 50:
        return 0.8
    if avg_distance_m <= 100:
        return 0.6
    if avg_distance_m <= 200:
        return 0.4
    return 0.1


def _concurrent(
    sample: Sample, peers_by_vehicle: dict[str, list[Sample]], window: datetime.timedelta
) -> list[Sample]:
    peers = peers_by_vehicle.get(sample.vehicle_id, [])
    times = [p.timestamp for p in peers]
    lo = bisect.bisect_left(times, sample.timestamp - window)
    hi = bisect.bisect_right(times, sample.timestamp + window)
    return [p for p in peers[lo:hi] if p.device_id != sample.device_id]


def _index_by_vehicle(peers: list[Sample]) -> dict[str, list[Sample]]:
    by_vehicle: dict[str, list[Sample]] = {}
    for p in sorted(peers, key=lambda s: s.timestamp):
        by_vehicle.setdefault(p.vehicle_id, []).append(p)
    return by_vehicle


def proximity_consistency(own: list[Sample], peers: list[Sample]) -> float:
    """How close this device's reports sit to other riders' concurrent reports.

    Reports with nobody else around count as neutral (0.5).
    """
    if not own:
        return 0.5
    by_vehicle = _index_by_vehicle(peers)
    scores = []
    for sample in own:
        nearby = _concurrent(sample, by_vehicle, PROXIMITY_WINDOW)
        if not nearby:
            scores.append(0.5)
            continue
        avg = statistics.fmean(distance(sample.lat, sample.lon, p.lat, p.lon) for p in nearby)
        scores.append(_proximity_tier(avg))
    return statistics.fmean(scores)


def clustering_affinity(own: list[Sample], peers: list[Sample], radius_m: float) -> float:
    """How often this device lands inside other riders' clusters.

    Riding alone scores 0.3; being surrounded by riders yet always apart from
    them scores 0.
    """
    if not own:
        return 0.5
    by_vehicle = _index_by_vehicle(peers)
    scores = []
    for sample in own:
        nearby = _concurrent(sample, by_vehicle, AFFINITY_WINDOW)
        if not nearby:
            scores.append(0.3)
            continue
        close = sum(1 for p in nearby if distance(sample.lat, sample.lon, p.lat, p.lon) <= radius_m)
        scores.append(min(1.0, close / 3))
    return statistics.fmean(scores)


class TrustScorer:
    """Keeps DeviceTrustRecord rows current and serves memoized trust values."""

    def __init__(
        self,
        session_factory,
        cache: Cache,
        settings: Settings | None = None,
        movement: MovementAnalyzer | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.settings = settings or default_settings
        self.movement = movement or MovementAnalyzer(self.settings)
        self._tz = datetime.timezone(
            datetime.timedelta(hours=self.settings.service_utc_offset_hours)
        )
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[device_id] = lock
        return lock

    @staticmethod
    def _cache_key(device_id: str) -> str:
        return f"device_trust:{device_id}"

    def is_trusted(self, trust: float) -> bool:
        return trust >= self.settings.trust_threshold

    def score(self, device_id: str, window: BehaviorWindow, historical: float) -> TrustUpdate:
        """Five-factor candidate, then the bounded step from the stored value."""
        factors = TrustFactors(
            frequency=frequency_score(window),
            consistency=consistency_score(window),
            accuracy=accuracy_score(window),
            clustering=_clamp(window.clustering_affinity),
            historical=_clamp(historical),
        )
        candidate = _clamp(factors.weighted())
        trust = bounded_step(historical, candidate, self.settings.trust_max_step)
        return TrustUpdate(
            device_id=device_id,
            previous=historical,
            candidate=candidate,
            trust_score=trust,
            is_trusted=self.is_trusted(trust),
            factors=factors,
        )

    def contribution_candidate(self, reputation: float, clustering: float, movement: float) -> float:
        return _clamp(reputation * 0.8 + clustering * 0.1 + movement * 0.1)

    async def record_contribution(
        self, device_id: str, accurate: bool, now: datetime.datetime | None = None
    ) -> TrustUpdate:
        """Fold one accepted report into the device's reputation and trust."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        alpha = self.settings.reputation_smoothing

        async with self._lock(device_id):
            async with self.session_factory() as db:
                record = await repository.get_or_create_trust_record(db, device_id)
                previous = record.trust_score

                record.total_contributions += 1
                if accurate:
                    record.accurate_contributions += 1
                outcome = 1.0 if accurate else 0.0
                record.reputation_score = record.reputation_score + alpha * (outcome - record.reputation_score)

                candidate = self.contribution_candidate(
                    record.reputation_score, record.clustering_score, record.movement_consistency
                )
                record.trust_score = bounded_step(previous, candidate, self.settings.trust_max_step)
                record.is_trusted = self.is_trusted(record.trust_score)
                record.last_activity = now
                update = TrustUpdate(
                    device_id=device_id,
                    previous=previous,
                    candidate=candidate,
                    trust_score=record.trust_score,
                    is_trusted=record.is_trusted,
                )
                await db.commit()
            await self.cache.forget(self._cache_key(device_id))
        return update

    async def recalculate(
        self, device_id: str, now: datetime.datetime | None = None
    ) -> TrustUpdate:
        """Rescore a device from its rolling behaviour window."""
        now = now or datetime.datetime.now(datetime.timezone.utc)

        async with self._lock(device_id):
            async with self.session_factory() as db:
                record = await repository.get_or_create_trust_record(db, device_id)
                window = await self.behavior_window(db, device_id, now)
                movement = await self._movement_consistency(db, device_id, now)

                update = self.score(device_id, window, record.trust_score)
                record.trust_score = update.trust_score
                record.is_trusted = update.is_trusted
                record.clustering_score = window.clustering_affinity
                if movement is not None:
                    record.movement_consistency = movement
                await db.commit()
            await self.cache.forget(self._cache_key(device_id))

        logger.debug(
            "Trust %s…: %.3f -> %.3f (candidate %.3f)",
            device_id[:8], update.previous, update.trust_score, update.candidate,
        )
        return update

    async def behavior_window(self, db, device_id: str, now: datetime.datetime) -> BehaviorWindow:
        since = now - datetime.timedelta(days=self.settings.trust_window_days)
        reports = await repository.device_reports(db, device_id, since)
        if not reports:
            return BehaviorWindow()

        high = self.settings.high_reputation_weight
        window = BehaviorWindow(
            total_reports=len(reports),
            validated_reports=sum(1 for r in reports if r.is_validated),
            high_reputation_reports=sum(1 for r in reports if r.reputation_weight > high),
            active_days=len({r.received_at.astimezone(self._tz).date() for r in reports}),
        )

        own = [Sample.from_report(r) for r in reports[-SAMPLE_LIMIT:]]
        peers = [
            Sample.from_report(r)
            for r in await repository.peer_reports(
                db,
                {s.vehicle_id for s in own},
                own[0].timestamp - AFFINITY_WINDOW,
                own[-1].timestamp + AFFINITY_WINDOW,
                exclude_device=device_id,
            )
        ]
        window.proximity_consistency = proximity_consistency(own, peers)
        recent = [s for s in own if s.timestamp >= now - AFFINITY_HORIZON]
        window.clustering_affinity = clustering_affinity(recent, peers, self.settings.cluster_radius_m)
        return window

    async def _movement_consistency(self, db, device_id: str, now: datetime.datetime) -> float | None:
        reports = await repository.device_reports(db, device_id, now - AFFINITY_HORIZON)
        if not reports:
            return None
        vehicle_id = reports[-1].vehicle_id
        track = [
            TrackPoint(r.lat, r.lon, r.recorded_at)
            for r in reports
            if r.vehicle_id == vehicle_id
        ][-30:]
        analysis = self.movement.analyze(track)
        if analysis.pattern == MovementPattern.INSUFFICIENT_DATA:
            return None
        return analysis.confidence

    async def trust_of(self, device_id: str) -> float:
        """Current trust, memoized for a few minutes."""
        key = self._cache_key(device_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return float(cached)

        async with self.session_factory() as db:
            record = await repository.get_trust_record(db, device_id)
        trust = record.trust_score if record else DEFAULT_TRUST
        await self.cache.put(key, trust, self.settings.trust_cache_ttl_seconds)
        return trust

    async def trust_map(self, device_ids) -> dict[str, float]:
        return {device_id: await self.trust_of(device_id) for device_id in device_ids}

    async def prune_inactive(self, now: datetime.datetime | None = None) -> int:
        """Remove trust records of devices idle for a month with little history."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        idle_before = now - datetime.timedelta(days=self.settings.trust_cleanup_inactive_days)
        async with self.session_factory() as db:
            removed = await repository.prune_trust_records(
                db, idle_before, self.settings.trust_cleanup_min_contributions
            )
            await db.commit()
        if removed:
            logger.info("Pruned %d inactive device trust records", removed)
        return removed
