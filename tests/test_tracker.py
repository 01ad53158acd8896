"""End-to-end tests for ingestion and the aggregation cycle."""

import datetime

import orjson
import pytest
from sqlalchemy import func, select

from crowdbus.core.aggregator import PositionSource, PositionStatus
from crowdbus.core.broadcaster import CHANNEL, Broadcaster
from crowdbus.core.cache import Cache
from crowdbus.core.exceptions import NoActiveSessionError, ReportRejectedError
from crowdbus.core.route_gate import RETURN
from crowdbus.core.tracker import TrackingService
from crowdbus.core.validator import ValidationResult
from crowdbus.models.tables import LocationReport, TrackingSession

from tests.factories import LAT_M, NOW, BrokenRedis, add_report, make_report, set_trust


async def _report_count(session_factory):
    async with session_factory() as db:
        return await db.scalar(select(func.count()).select_from(LocationReport))


async def _latest_session(session_factory, device_id):
    async with session_factory() as db:
        result = await db.execute(
            select(TrackingSession)
            .where(TrackingSession.device_id == device_id)
            .order_by(TrackingSession.started_at.desc())
        )
        return result.scalars().first()


def _ago(seconds):
    return NOW - datetime.timedelta(seconds=seconds)


# ── ingestion ──

async def test_report_without_session_is_refused(tracker, session_factory):
    with pytest.raises(NoActiveSessionError) as exc:
        await tracker.ingest(make_report(device="dev-a"))
    assert exc.value.status_code == 409
    assert await _report_count(session_factory) == 0


async def test_session_for_another_bus_is_refused(tracker):
    await tracker.sessions.start("dev-a", "bus-2", _ago(60))
    with pytest.raises(NoActiveSessionError):
        await tracker.ingest(make_report(device="dev-a", vehicle="bus-1"))


async def test_report_without_session_allowed_when_not_required(
    session_factory, cache, broadcaster, schedule_gate, settings
):
    settings.require_active_session = False
    tracker = TrackingService(session_factory, cache, broadcaster, schedule_gate, settings)
    result = await tracker.ingest(make_report(device="dev-a"))
    assert result.validation.valid
    assert await _report_count(session_factory) == 1


async def test_valid_report_is_stored(tracker, session_factory):
    session = await tracker.sessions.start("dev-a", "bus-1", _ago(60))
    result = await tracker.ingest(make_report(device="dev-a"))

    assert result.validation.valid
    assert result.validation.confidence_score == pytest.approx(0.9)
    # 0.5 * 0.5 trust + 0.3 * 0.9 confidence + 0.2 * full accuracy
    assert result.reputation_weight == pytest.approx(0.72)
    assert result.trust_score == pytest.approx(0.58)

    async with session_factory() as db:
        row = await db.get(LocationReport, result.report_id)
        stored_session = await db.get(TrackingSession, session.session_id)
    assert row.is_validated
    assert row.session_id == session.session_id
    assert row.received_at == NOW
    assert stored_session.locations_contributed == 1
    assert stored_session.valid_locations == 1
    assert stored_session.average_accuracy == 10.0


async def test_hard_reject_is_not_stored(tracker, session_factory):
    session = await tracker.sessions.start("dev-a", "bus-1", _ago(60))
    with pytest.raises(ReportRejectedError) as exc:
        await tracker.ingest(make_report(0.0, 0.0, device="dev-a"))

    assert exc.value.error_code == "coordinates_outside_region"
    assert exc.value.status_code == 422
    assert exc.value.details["confidence_score"] == 0.0
    assert await _report_count(session_factory) == 0
    async with session_factory() as db:
        stored_session = await db.get(TrackingSession, session.session_id)
    assert stored_session.locations_contributed == 0


async def test_report_outside_schedule_is_rejected(tracker, schedule_gate):
    await tracker.sessions.start("dev-a", "bus-1", _ago(60))
    schedule_gate.active = False
    with pytest.raises(ReportRejectedError) as exc:
        await tracker.ingest(make_report(device="dev-a"))
    assert exc.value.error_code == "schedule_inactive"


async def test_record_report_refuses_hard_rejects(tracker, session_factory):
    report = make_report(0.0, 0.0)
    validation = tracker.validator.validate(report, await tracker.build_context(report))
    with pytest.raises(ReportRejectedError):
        await tracker.record_report(report, validation)
    assert await _report_count(session_factory) == 0


async def test_soft_reject_is_stored_with_low_weight(tracker, session_factory):
    await tracker.sessions.start("dev-a", "bus-1", _ago(60))
    await tracker.ingest(make_report(device="dev-a"))

    # 3.3 km in 30 s with a 900 m fix
    later = NOW + datetime.timedelta(seconds=30)
    result = await tracker.ingest(make_report(23.830, device="dev-a", at=later, accuracy=900.0))

    v = result.validation
    assert not v.valid
    assert not v.hard_reject
    assert v.reason == "low_confidence"
    assert {"speed_validation_failed", "extremely_high_speed", "poor_gps_accuracy"} <= set(v.flags)
    assert result.reputation_weight < 0.2
    assert result.trust_score == pytest.approx(0.484)

    async with session_factory() as db:
        row = await db.get(LocationReport, result.report_id)
    assert not row.is_validated
    assert "extremely_high_speed" in row.flags


def test_reputation_weight(tracker):
    good = ValidationResult(valid=True, confidence_score=1.0, boundary=None)
    soft = ValidationResult(valid=False, confidence_score=1.0, boundary=None)
    assert tracker.reputation_weight(1.0, good, 10.0) == 1.0
    assert tracker.reputation_weight(1.0, soft, 10.0) == 0.25
    assert tracker.reputation_weight(0.5, good, 100.0) == pytest.approx(0.25 + 0.3 + 0.1)
    assert tracker.reputation_weight(0.0, ValidationResult(False, 0.0, None), 0.0) == 0.01


# ── aggregation ──

async def test_single_tracker(tracker, session_factory, redis):
    await set_trust(session_factory, "dev-a", 0.95)
    await tracker.sessions.start("dev-a", "bus-1", _ago(300))
    await add_report(session_factory, "dev-a", 23.804, at=_ago(10), weight=1.0)

    estimate = await tracker.update_vehicle("bus-1", NOW)
    assert estimate.status == PositionStatus.SINGLE_TRACKER
    assert estimate.confidence == 0.8
    assert estimate.lat == pytest.approx(23.804)

    position = await tracker.current_position("bus-1")
    assert position["status"] == "single_tracker"
    assert position["confidence"] == 0.8

    channel, payload = redis.published[-1]
    assert channel == CHANNEL
    message = orjson.loads(payload)
    assert message["type"] == "update"
    assert message["positions"][0]["status"] == "single_tracker"


async def _consensus_reports(session_factory, at, stray=True):
    for device, metres in (("t1", 0), ("t2", 5), ("t3", 10)):
        await add_report(
            session_factory, device, 23.804 + metres * LAT_M,
            at=at - datetime.timedelta(seconds=10), weight=0.8,
        )
    if stray:
        await add_report(session_factory, "stray", 23.806, at=at - datetime.timedelta(seconds=10), weight=0.3)


async def _consensus_setup(tracker, session_factory):
    for device, trust in (("t1", 0.9), ("t2", 0.9), ("t3", 0.9), ("stray", 0.3)):
        await set_trust(session_factory, device, trust)
        await tracker.sessions.start(device, "bus-1", _ago(300))
    await _consensus_reports(session_factory, NOW)


def _cycle(i):
    return NOW + datetime.timedelta(seconds=30 * i)


async def test_trusted_consensus(tracker, session_factory):
    await _consensus_setup(tracker, session_factory)
    estimate = await tracker.update_vehicle("bus-1", NOW)

    assert estimate.status == PositionStatus.ACTIVE
    assert estimate.source == PositionSource.TRUSTED_CLUSTER
    assert estimate.active_trackers == 4
    assert estimate.trusted_trackers == 3
    assert estimate.lat == pytest.approx(23.804 + 5 * LAT_M, abs=1e-7)


async def test_update_is_idempotent(tracker, session_factory):
    await _consensus_setup(tracker, session_factory)
    first = await tracker.update_vehicle("bus-1", NOW)
    second = await tracker.update_vehicle("bus-1", NOW)
    assert (second.lat, second.lon, second.confidence, second.status) == (
        first.lat, first.lon, first.confidence, first.status
    )


async def test_persistent_outlier_is_deactivated(tracker, session_factory):
    await _consensus_setup(tracker, session_factory)
    await tracker.update_vehicle("bus-1", _cycle(0))
    for i in range(1, 4):
        await _consensus_reports(session_factory, _cycle(i))
        await tracker.update_vehicle("bus-1", _cycle(i))
    assert await tracker.sessions.active_session("stray") is not None

    await _consensus_reports(session_factory, _cycle(4))
    await tracker.update_vehicle("bus-1", _cycle(4))
    assert await tracker.sessions.active_session("stray") is None
    assert (await _latest_session(session_factory, "stray")).end_reason == "outlier"
    assert await tracker.sessions.active_devices("bus-1") == ["t1", "t2", "t3"]


async def test_rerunning_a_cycle_counts_one_outlier_strike(tracker, session_factory):
    await _consensus_setup(tracker, session_factory)
    for _ in range(6):
        await tracker.update_vehicle("bus-1", NOW)

    assert await tracker.sessions.active_session("stray") is not None
    assert tracker._outlier_strikes[("bus-1", "stray")][0] == 1


async def test_outlier_strikes_reset_after_going_quiet(tracker, session_factory):
    await _consensus_setup(tracker, session_factory)
    await tracker.update_vehicle("bus-1", _cycle(0))
    for i in range(1, 4):
        await _consensus_reports(session_factory, _cycle(i))
        await tracker.update_vehicle("bus-1", _cycle(i))
    assert tracker._outlier_strikes[("bus-1", "stray")][0] == 4

    # Stray stays silent long enough to drop out of the clustering window
    await _consensus_reports(session_factory, _cycle(10), stray=False)
    await tracker.run_cycle(_cycle(10))
    assert ("bus-1", "stray") not in tracker._outlier_strikes

    await _consensus_reports(session_factory, _cycle(11))
    await tracker.run_cycle(_cycle(11))
    assert await tracker.sessions.active_session("stray") is not None
    assert tracker._outlier_strikes[("bus-1", "stray")][0] == 1


async def test_strikes_dropped_for_vehicles_no_longer_cycled(tracker, session_factory):
    tracker._outlier_strikes[("bus-gone", "dev-x")] = (3, 42)
    await tracker.run_cycle(NOW)
    assert tracker._outlier_strikes == {}


# ── trip completion ──

async def test_trip_completes_at_final_stop(tracker, session_factory):
    await set_trust(session_factory, "dev-a", 0.95)
    await tracker.sessions.start("dev-a", "bus-1", _ago(1200))
    await add_report(session_factory, "dev-a", 23.812 - 40 * LAT_M, at=_ago(10), weight=1.0)

    estimate = await tracker.update_vehicle("bus-1", NOW)
    assert estimate.source == PositionSource.TRUSTED_CLUSTER
    assert await tracker.sessions.active_devices("bus-1") == []
    assert (await _latest_session(session_factory, "dev-a")).end_reason == "trip_completed"


async def test_trip_not_complete_before_final_stop(tracker, session_factory):
    await set_trust(session_factory, "dev-a", 0.95)
    await tracker.sessions.start("dev-a", "bus-1", _ago(1200))
    await add_report(session_factory, "dev-a", 23.808, at=_ago(10), weight=1.0)

    await tracker.update_vehicle("bus-1", NOW)
    assert await tracker.sessions.active_devices("bus-1") == ["dev-a"]


async def test_return_trip_starts_at_the_far_terminus(tracker, session_factory, schedule_gate):
    schedule_gate.direction = RETURN
    await set_trust(session_factory, "dev-a", 0.95)
    await tracker.sessions.start("dev-a", "bus-1", _ago(300))
    await add_report(session_factory, "dev-a", 23.812, at=_ago(10), weight=1.0)

    await tracker.update_vehicle("bus-1", NOW)
    assert await tracker.sessions.active_devices("bus-1") == ["dev-a"]


async def test_trip_completes_when_schedule_closes(tracker, session_factory, schedule_gate, redis):
    for device in ("dev-a", "dev-b"):
        await tracker.sessions.start(device, "bus-1", _ago(1200))
        await add_report(session_factory, device, 23.806, at=_ago(10))
    await tracker.sessions.active_session("dev-a")
    assert "crowdbus:session:dev-a" in redis.store

    schedule_gate.active = False
    estimate = await tracker.update_vehicle("bus-1", NOW)
    assert estimate.status == PositionStatus.INACTIVE
    assert await tracker.sessions.active_devices("bus-1") == []
    assert (await _latest_session(session_factory, "dev-b")).end_reason == "trip_completed"
    assert "crowdbus:session:dev-a" not in redis.store


async def test_static_device_is_deactivated(tracker, session_factory):
    await set_trust(session_factory, "parked", 0.9)
    await tracker.sessions.start("parked", "bus-1", _ago(900))
    for seconds in (660, 420, 180, 10):
        await add_report(session_factory, "parked", 23.804, at=_ago(seconds))

    await tracker.update_vehicle("bus-1", NOW)
    assert (await _latest_session(session_factory, "parked")).end_reason == "static"


async def test_off_route_device_is_deactivated(tracker, session_factory):
    await set_trust(session_factory, "lost", 0.9)
    await tracker.sessions.start("lost", "bus-1", _ago(900))
    for i, seconds in enumerate((90, 60, 30)):
        await add_report(session_factory, "lost", 23.804 + i * 100 * LAT_M, lon=90.420, at=_ago(seconds))

    await tracker.update_vehicle("bus-1", NOW)
    assert (await _latest_session(session_factory, "lost")).end_reason == "off_route"


async def test_last_known_fallback(tracker, session_factory, redis):
    await add_report(session_factory, "dev-a", 23.806, at=_ago(30 * 60), weight=0.9)

    estimate = await tracker.update_vehicle("bus-1", NOW)
    assert estimate.source == PositionSource.LAST_KNOWN
    assert estimate.confidence == pytest.approx(0.5)
    assert estimate.lat == 23.806
    assert estimate.status == PositionStatus.NO_TRACKING
    assert "crowdbus:last_known:bus-1" in redis.store


async def test_low_weight_report_is_not_last_known(tracker, session_factory):
    await add_report(session_factory, "dev-a", 23.806, at=_ago(20 * 60), weight=0.5)

    estimate = await tracker.update_vehicle("bus-1", NOW)
    assert estimate.source == PositionSource.HISTORICAL
    assert estimate.confidence == 0.3


async def test_historical_pattern_from_previous_days(tracker, session_factory):
    for days in (1, 2):
        at = NOW - datetime.timedelta(days=days, minutes=-10)
        await add_report(session_factory, f"dev-{days}", 23.800 + days * 0.001, at=at, weight=0.5)
    # Evening reports are a different time of day
    await add_report(session_factory, "dev-x", 23.900, at=NOW - datetime.timedelta(days=1, hours=-8))

    estimate = await tracker.update_vehicle("bus-1", NOW)
    assert estimate.source == PositionSource.HISTORICAL
    assert estimate.lat == pytest.approx(23.8015)


async def test_never_seen_vehicle(tracker):
    estimate = await tracker.update_vehicle("bus-9", NOW)
    assert estimate.status == PositionStatus.NO_DATA
    assert estimate.lat is None


async def test_vehicle_outside_schedule(tracker, session_factory, schedule_gate):
    await add_report(session_factory, "dev-a", 23.804, at=_ago(10))
    schedule_gate.active = False
    estimate = await tracker.update_vehicle("bus-1", NOW)
    assert estimate.status == PositionStatus.INACTIVE
    assert estimate.confidence == 0.0


async def test_unknown_vehicle_position(tracker):
    position = await tracker.current_position("bus-404")
    assert position["status"] == "no_data"
    assert position["lat"] is None
    assert position["last_updated"] is None


async def test_cycle_isolates_failing_vehicle(tracker, session_factory, monkeypatch):
    await add_report(session_factory, "dev-a", 23.804, at=_ago(10), vehicle="bus-1")
    await add_report(session_factory, "dev-b", 23.904, at=_ago(10), vehicle="bus-2")

    original = tracker.update_vehicle

    async def flaky(vehicle_id, now=None):
        if vehicle_id == "bus-2":
            raise RuntimeError("boom")
        return await original(vehicle_id, now)

    monkeypatch.setattr(tracker, "update_vehicle", flaky)
    estimates = await tracker.run_cycle(NOW)
    assert set(estimates) == {"bus-1"}


async def test_cycle_revisits_recently_positioned_vehicles(tracker, session_factory):
    await add_report(session_factory, "dev-a", 23.806, at=_ago(30 * 60), weight=0.9)
    await tracker.update_vehicle("bus-1", NOW)

    later = NOW + datetime.timedelta(minutes=10)
    estimates = await tracker.run_cycle(later)
    assert estimates["bus-1"].source == PositionSource.LAST_KNOWN
    assert estimates["bus-1"].confidence == pytest.approx(1 - 40 / 60, abs=1e-4)


async def test_cycle_survives_broken_redis(session_factory, schedule_gate, settings):
    broken = BrokenRedis()
    tracker = TrackingService(session_factory, Cache(broken), Broadcaster(broken), schedule_gate, settings)
    await set_trust(session_factory, "dev-a", 0.9)
    await add_report(session_factory, "dev-a", 23.804, at=_ago(10))

    estimates = await tracker.run_cycle(NOW)
    assert estimates["bus-1"].status == PositionStatus.SINGLE_TRACKER
    assert estimates["bus-1"].source == PositionSource.TRUSTED_CLUSTER


# ── trust maintenance ──

async def test_recalculate_trust_for_recent_devices(tracker, session_factory):
    await add_report(session_factory, "dev-a", 23.804, at=_ago(60))
    await add_report(session_factory, "dev-b", 23.804, at=_ago(120))
    await add_report(session_factory, "dev-old", 23.804, at=NOW - datetime.timedelta(days=3))

    assert await tracker.recalculate_trust(NOW) == 2
    assert await tracker.trust.trust_of("dev-old") == 0.5
