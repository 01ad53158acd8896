"""Tracking pipeline orchestrator.

Ingestion (request driven):
    validate -> persist with reputation weight -> update device trust -> count in session

Aggregation cycle (periodic, per vehicle, idempotent):
    recent validated reports -> clusters -> trusted consensus or fallback
    -> position row + cache -> broadcast -> end finished trips or auto-deactivate bad trackers

Vehicles are processed independently; a failure on one vehicle is logged
and never stops the others.
"""

import asyncio
import datetime
import logging
from dataclasses import dataclass

from crowdbus.config import Settings, settings as default_settings
from crowdbus.core import repository
from crowdbus.core.aggregator import LastKnown, PositionAggregator, PositionEstimate, PositionSource
from crowdbus.core.broadcaster import Broadcaster
from crowdbus.core.cache import Cache
from crowdbus.core.clustering import ClusterMember, ClusteringResult, SpatialClusterer
from crowdbus.core.exceptions import NoActiveSessionError, ReportRejectedError
from crowdbus.core.movement import MovementAnalyzer, TrackPoint
from crowdbus.core.route_gate import RouteGate, StopOnRoute
from crowdbus.core.schedule import ScheduleGate, ScheduleStatus
from crowdbus.core.sessions import SessionManager
from crowdbus.core.trust import TrustScorer
from crowdbus.core.validator import (
    IncomingReport,
    PreviousReport,
    ReportValidator,
    ValidationContext,
    ValidationResult,
)
from crowdbus.models.tables import AggregatedPosition, LocationReport, TrackingSession

logger = logging.getLogger(__name__)

SOFT_REJECT_WEIGHT_FACTOR = 0.25


@dataclass
class IngestResult:
    report_id: int
    validation: ValidationResult
    reputation_weight: float
    trust_score: float


def position_dict(row: AggregatedPosition) -> dict:
    return {
        "vehicle_id": row.vehicle_id,
        "lat": row.lat,
        "lon": row.lon,
        "confidence": row.confidence,
        "active_trackers": row.active_trackers,
        "trusted_trackers": row.trusted_trackers,
        "status": row.status,
        "source": row.source,
        "last_updated": row.last_updated.isoformat(),
    }


def _minute_of_day(ts: datetime.datetime, tz: datetime.tzinfo) -> int:
    local = ts.astimezone(tz)
    return local.hour * 60 + local.minute


class TrackingService:
    """Wires validation, trust, clustering and aggregation together."""

    def __init__(
        self,
        session_factory,
        cache: Cache,
        broadcaster: Broadcaster,
        schedule_gate: ScheduleGate,
        settings: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.broadcaster = broadcaster
        self.schedule_gate = schedule_gate
        self.settings = settings or default_settings

        self.movement = MovementAnalyzer(self.settings)
        self.route_gate = RouteGate(self.settings)
        self.validator = ReportValidator(self.settings, self.movement, self.route_gate)
        self.trust = TrustScorer(session_factory, cache, self.settings, self.movement)
        self.sessions = SessionManager(session_factory, cache, self.settings)
        self.clusterer = SpatialClusterer(self.settings)
        self.aggregator = PositionAggregator(self.settings)

        self._tz = datetime.timezone(
            datetime.timedelta(hours=self.settings.service_utc_offset_hours)
        )
        # (vehicle_id, device_id) -> (consecutive outlier cycles, report id last counted)
        self._outlier_strikes: dict[tuple[str, str], tuple[int, int]] = {}

    # ── Validation & ingestion ──

    async def _route_stops(self, status: ScheduleStatus) -> list[StopOnRoute]:
        if not status.active or status.schedule_id is None:
            return []
        return await self.schedule_gate.ordered_stops(status.schedule_id, status.direction)

    async def build_context(self, report: IncomingReport) -> ValidationContext:
        s = self.settings
        status = await self.schedule_gate.is_vehicle_active(report.vehicle_id, report.received_at)
        stops = await self._route_stops(status)

        async with self.session_factory() as db:
            previous = await repository.previous_report(
                db,
                report.device_id,
                report.received_at - datetime.timedelta(minutes=s.speed_lookback_minutes),
            )
            track = await repository.device_track(
                db,
                report.device_id,
                report.vehicle_id,
                report.received_at - datetime.timedelta(minutes=s.movement_history_minutes),
                limit=s.movement_history_limit,
            )

        return ValidationContext(
            schedule=status,
            stops=stops,
            previous=(
                PreviousReport(previous.lat, previous.lon, previous.recorded_at, previous.speed)
                if previous else None
            ),
            history=[TrackPoint(r.lat, r.lon, r.recorded_at) for r in track],
        )

    async def validate_report(self, report: IncomingReport) -> ValidationResult:
        context = await self.build_context(report)
        return self.validator.validate(report, context)

    def reputation_weight(self, trust: float, validation: ValidationResult, accuracy: float) -> float:
        """Per-report weight used by the consensus centroid."""
        accuracy_factor = min(1.0, 50 / accuracy) if accuracy > 0 else 0.0
        weight = trust * 0.5 + validation.confidence_score * 0.3 + accuracy_factor * 0.2
        if not validation.valid:
            weight *= SOFT_REJECT_WEIGHT_FACTOR
        return round(max(0.01, min(1.0, weight)), 4)

    async def record_report(
        self,
        report: IncomingReport,
        validation: ValidationResult,
        session_id: str | None = None,
    ) -> int:
        """Persist a validated (or soft-rejected) report; returns its id."""
        row = await self._persist(report, validation, session_id)
        return row.id

    async def _persist(
        self,
        report: IncomingReport,
        validation: ValidationResult,
        session_id: str | None,
    ) -> LocationReport:
        if validation.hard_reject:
            raise ReportRejectedError(validation.reason or "rejected", validation)

        trust = await self.trust.trust_of(report.device_id)
        weight = self.reputation_weight(trust, validation, report.accuracy or 0.0)

        async with self.session_factory() as db:
            row = LocationReport(
                device_id=report.device_id,
                vehicle_id=report.vehicle_id,
                session_id=session_id,
                lat=report.lat,
                lon=report.lon,
                accuracy=report.accuracy,
                speed=report.speed,
                heading=report.heading,
                recorded_at=report.timestamp,
                received_at=report.received_at,
                reputation_weight=weight,
                confidence_score=validation.confidence_score,
                is_validated=validation.valid,
                flags=validation.flags,
            )
            db.add(row)
            await db.commit()

        await self.trust.record_contribution(report.device_id, validation.valid, report.received_at)
        if session_id:
            await self.sessions.touch(session_id, validation.valid, report.accuracy, report.received_at)
        return row

    async def ingest(self, report: IncomingReport) -> IngestResult:
        """Validate and, unless hard-rejected, persist one report."""
        session_id = None
        session = await self.sessions.active_session(report.device_id)
        if session is not None and session["vehicle_id"] == report.vehicle_id:
            session_id = session["session_id"]
        elif self.settings.require_active_session:
            raise NoActiveSessionError(report.vehicle_id)

        validation = await self.validate_report(report)
        if validation.hard_reject:
            logger.info(
                "Rejected report from %s… for %s: %s",
                report.device_id[:8], report.vehicle_id, validation.reason,
            )
            raise ReportRejectedError(validation.reason or "rejected", validation)

        row = await self._persist(report, validation, session_id)
        return IngestResult(
            report_id=row.id,
            validation=validation,
            reputation_weight=row.reputation_weight,
            trust_score=await self.trust.trust_of(report.device_id),
        )

    # ── Sessions ──

    async def start_session(self, device_id: str, vehicle_id: str) -> TrackingSession:
        return await self.sessions.start(device_id, vehicle_id)

    async def end_session(self, session_id: str) -> TrackingSession:
        return await self.sessions.end(session_id)

    async def expire_sessions(self) -> int:
        try:
            return await self.sessions.expire_inactive()
        except Exception:
            logger.exception("Failed to expire tracking sessions")
            return 0

    # ── Positions ──

    async def current_position(self, vehicle_id: str) -> dict:
        cached = await self.cache.get(f"position:{vehicle_id}")
        if cached is not None:
            return cached

        async with self.session_factory() as db:
            row = await repository.get_position(db, vehicle_id)
        if row is None:
            return {
                "vehicle_id": vehicle_id,
                "lat": None,
                "lon": None,
                "confidence": 0.0,
                "active_trackers": 0,
                "trusted_trackers": 0,
                "status": "no_data",
                "source": "none",
                "last_updated": None,
            }
        data = position_dict(row)
        await self.cache.put(f"position:{vehicle_id}", data, self.settings.position_cache_ttl_seconds)
        return data

    async def run_cycle(self, now: datetime.datetime | None = None) -> dict[str, PositionEstimate]:
        """One aggregation pass over every vehicle with recent activity."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        async with self.session_factory() as db:
            ids = set(await repository.active_vehicle_ids(
                db, now - datetime.timedelta(seconds=self.settings.cluster_window_seconds)
            ))
            ids.update(await repository.recently_positioned_vehicles(
                db, now - datetime.timedelta(minutes=self.settings.last_known_max_age_minutes)
            ))
        vehicle_ids = sorted(ids)

        results = await asyncio.gather(*(self._update_isolated(v, now) for v in vehicle_ids))
        estimates = {v: r for v, r in zip(vehicle_ids, results) if r is not None}
        for key in [k for k in self._outlier_strikes if k[0] not in ids]:
            del self._outlier_strikes[key]
        logger.debug("Aggregation cycle: %d/%d vehicles updated", len(estimates), len(vehicle_ids))
        return estimates

    async def _update_isolated(
        self, vehicle_id: str, now: datetime.datetime
    ) -> PositionEstimate | None:
        try:
            return await self.update_vehicle(vehicle_id, now)
        except Exception:
            logger.exception("Aggregation failed for vehicle %s", vehicle_id)
            return None

    async def update_vehicle(
        self, vehicle_id: str, now: datetime.datetime | None = None
    ) -> PositionEstimate:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        status = await self.schedule_gate.is_vehicle_active(vehicle_id, now)

        async with self.session_factory() as db:
            reports = await repository.vehicle_reports(
                db, vehicle_id, now - datetime.timedelta(seconds=self.settings.cluster_window_seconds)
            )
            row = await repository.get_position(db, vehicle_id)
        session_devices = await self.sessions.active_devices(vehicle_id)
        active_trackers = len(set(session_devices) | {r.device_id for r in reports})

        clustering = None
        if reports:
            trust = await self.trust.trust_map({r.device_id for r in reports})
            clustering = self.clusterer.cluster([
                ClusterMember(
                    report_id=r.id,
                    device_id=r.device_id,
                    lat=r.lat,
                    lon=r.lon,
                    accuracy=r.accuracy if r.accuracy is not None else self.settings.max_accuracy_m,
                    reputation_weight=r.reputation_weight,
                    trust=trust[r.device_id],
                    recorded_at=r.recorded_at,
                )
                for r in reports
            ])

        last_known = await self._last_known(vehicle_id, row, now)
        aggregate_args = dict(
            scheduled_active=status.active,
            clustering=clustering,
            active_trackers=active_trackers,
            last_known=last_known,
            seen_before=row is not None,
            now=now,
        )
        estimate = self.aggregator.aggregate(vehicle_id, historical=[], **aggregate_args)
        if status.active and estimate.lat is None:
            historical = await self._historical_samples(vehicle_id, now)
            estimate = self.aggregator.aggregate(vehicle_id, historical=historical, **aggregate_args)

        await self._save(estimate, row)
        await self.broadcaster.publish(estimate.broadcast_payload())

        completed = False
        if session_devices:
            completed = await self.complete_trip(vehicle_id, status, estimate, now) > 0
        if clustering is None or completed:
            self._forget_strikes(vehicle_id)
        else:
            await self._auto_deactivate(vehicle_id, clustering, status, session_devices, now)
        return estimate

    async def complete_trip(
        self,
        vehicle_id: str,
        status: ScheduleStatus,
        estimate: PositionEstimate,
        now: datetime.datetime,
    ) -> int:
        """End the vehicle's sessions once its window closes or it reaches the final stop."""
        if status.active:
            if estimate.source != PositionSource.TRUSTED_CLUSTER or estimate.lat is None:
                return 0
            stops = await self._route_stops(status)
            if len(stops) < 2:
                return 0
            idx, dist = self.route_gate.nearest_stop(stops, estimate.lat, estimate.lon)
            if idx != len(stops) - 1 or dist > stops[idx].radius_m:
                return 0

        ended = await self.sessions.end_for_vehicle(vehicle_id, "trip_completed", now)
        if ended:
            logger.info(
                "Trip completed for %s (%s): ended %d sessions",
                vehicle_id, "at final stop" if status.active else "schedule closed", ended,
            )
        return ended

    def _forget_strikes(self, vehicle_id: str) -> None:
        for key in [k for k in self._outlier_strikes if k[0] == vehicle_id]:
            del self._outlier_strikes[key]

    async def _save(self, estimate: PositionEstimate, previous: AggregatedPosition | None) -> None:
        last_known = estimate.last_known
        if last_known is None and previous is not None:
            snapshot = previous.last_known
        else:
            snapshot = last_known.to_dict() if last_known else None

        async with self.session_factory() as db:
            row = await repository.save_position(
                db,
                vehicle_id=estimate.vehicle_id,
                lat=estimate.lat,
                lon=estimate.lon,
                confidence=estimate.confidence,
                active_trackers=estimate.active_trackers,
                trusted_trackers=estimate.trusted_trackers,
                status=estimate.status.value,
                source=estimate.source.value,
                last_updated=estimate.last_updated,
                last_known=snapshot,
            )
            await db.commit()
            data = position_dict(row)
        await self.cache.put(
            f"position:{estimate.vehicle_id}", data, self.settings.position_cache_ttl_seconds
        )

    async def _last_known(
        self, vehicle_id: str, row: AggregatedPosition | None, now: datetime.datetime
    ) -> LastKnown | None:
        """Freshest of the stored consensus snapshot and the last high-weight report."""
        key = f"last_known:{vehicle_id}"
        cached = await self.cache.get(key)
        candidates = []
        if cached is not None:
            candidates.append(LastKnown.from_dict(cached))
        else:
            async with self.session_factory() as db:
                report = await repository.last_validated_report(
                    db,
                    vehicle_id,
                    now - datetime.timedelta(minutes=self.settings.last_known_max_age_minutes),
                    self.settings.last_known_min_weight,
                )
            if report is not None:
                found = LastKnown(report.lat, report.lon, report.received_at, report.accuracy)
                candidates.append(found)
                await self.cache.put(key, found.to_dict(), self.settings.position_cache_ttl_seconds)
        if row is not None and row.last_known:
            candidates.append(LastKnown.from_dict(row.last_known))
        if not candidates:
            return None
        return max(candidates, key=lambda c: c.timestamp)

    async def _historical_samples(
        self, vehicle_id: str, now: datetime.datetime
    ) -> list[tuple[float, float]]:
        """Positions seen around this time of day on previous days."""
        s = self.settings
        async with self.session_factory() as db:
            reports = await repository.vehicle_reports(
                db, vehicle_id, now - datetime.timedelta(days=s.historical_days), until=now
            )

        target = _minute_of_day(now, self._tz)
        samples = []
        for r in reversed(reports):
            diff = abs(_minute_of_day(r.received_at, self._tz) - target)
            if min(diff, 1440 - diff) <= s.historical_window_minutes:
                samples.append((r.lat, r.lon))
                if len(samples) >= s.historical_sample_limit:
                    break
        return samples

    async def _auto_deactivate(
        self,
        vehicle_id: str,
        clustering: ClusteringResult,
        status: ScheduleStatus,
        session_devices: list[str],
        now: datetime.datetime,
    ) -> None:
        """Stop tracking devices that are static, off route or persistent outliers."""
        s = self.settings
        reasons: dict[str, str] = {}

        # A strike is counted once per new report; anyone not an outlier now starts over
        strikes: dict[tuple[str, str], tuple[int, int]] = {}
        for m in self.clusterer.latest_per_device(clustering.outliers):
            key = (vehicle_id, m.device_id)
            count, counted_report = self._outlier_strikes.get(key, (0, None))
            if counted_report != m.report_id:
                count += 1
            strikes[key] = (count, m.report_id)
            if count >= s.outlier_strike_limit:
                reasons[m.device_id] = "outlier"
        self._forget_strikes(vehicle_id)
        self._outlier_strikes.update(strikes)

        if session_devices:
            horizon = now - datetime.timedelta(minutes=s.static_timeout_minutes + 1)
            async with self.session_factory() as db:
                recent = await repository.vehicle_reports(db, vehicle_id, horizon, validated_only=False)
            tracks: dict[str, list[TrackPoint]] = {}
            for r in recent:
                if r.device_id in session_devices:
                    tracks.setdefault(r.device_id, []).append(TrackPoint(r.lat, r.lon, r.recorded_at))

            for device_id in self.clusterer.find_static_devices(tracks, now):
                reasons.setdefault(device_id, "static")

            stops = await self._route_stops(status)
            if stops:
                on_route = {
                    device_id: [self.route_gate.is_on_route(stops, p.lat, p.lon) for p in track]
                    for device_id, track in tracks.items()
                }
                for device_id in self.clusterer.find_off_route_devices(on_route):
                    reasons.setdefault(device_id, "off_route")

        for device_id, reason in sorted(reasons.items()):
            await self.sessions.deactivate(device_id, vehicle_id, reason, now)
            self._outlier_strikes.pop((vehicle_id, device_id), None)

    # ── Trust maintenance ──

    async def recalculate_trust(self, now: datetime.datetime | None = None) -> int:
        """Rescore every device that reported during the last day."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        async with self.session_factory() as db:
            devices = await repository.devices_active_since(db, now - datetime.timedelta(hours=24))

        async def _one(device_id: str) -> bool:
            try:
                await self.trust.recalculate(device_id, now)
                return True
            except Exception:
                logger.exception("Trust recalculation failed for %s…", device_id[:8])
                return False

        results = await asyncio.gather(*(_one(d) for d in devices))
        logger.info("Recalculated trust for %d/%d devices", sum(results), len(devices))
        return sum(results)

    async def prune_trust(self) -> int:
        try:
            return await self.trust.prune_inactive()
        except Exception:
            logger.exception("Failed to prune device trust records")
            return 0
