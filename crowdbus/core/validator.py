"""Multi-stage validation of a single rider GPS report.

Seven checks each produce a typed result with a confidence in [0, 1]:

    boundary   - inside the operating region and not a null-island fix
    speed      - implied speed/acceleration against the previous report
    route      - near a stop, progressing along the stops, inside the corridor
    timestamp  - client clock close to server receipt time
    accuracy   - reported GPS accuracy inside the acceptable band
    movement   - recent track looks like a bus
    schedule   - vehicle is inside its scheduled service window

Boundary, timestamp and schedule are hard gates, as is accuracy beyond its
upper bound. Everything else only moves the weighted confidence.
"""

import datetime
import logging
from dataclasses import dataclass, field

from crowdbus.config import Settings, settings as default_settings
from crowdbus.core.geo import distance
from crowdbus.core.movement import MovementAnalyzer, MovementPattern, TrackPoint
from crowdbus.core.route_gate import Progression, RouteGate, StopOnRoute
from crowdbus.core.schedule import ScheduleStatus

logger = logging.getLogger(__name__)

CHECK_WEIGHTS = {
    "boundary": 0.20,
    "speed": 0.15,
    "route": 0.25,
    "timestamp": 0.10,
    "accuracy": 0.15,
    "movement": 0.10,
    "schedule": 0.05,
}

HARD_GATES = ("boundary", "timestamp", "schedule")

RECOMMENDATIONS = {
    "boundary": "Location is outside the service area; check that location services are on",
    "speed": "Check if location services are working correctly",
    "throttle": "Updates are arriving too fast; wait a few seconds between location updates",
    "route": "Ensure you are on the correct bus route",
    "timestamp": "Check that your phone's date and time are set automatically",
    "accuracy": "Improve GPS signal by moving to open area",
    "movement": "Keep the app open while riding so your trip can be followed",
    "schedule": "This bus is not scheduled to run right now",
    "low_confidence": "Location could not be confirmed; try again in a moment",
}

REJECT_REASONS = {
    "boundary": "coordinates_outside_region",
    "timestamp": "invalid_timestamp",
    "schedule": "schedule_inactive",
    "accuracy": "accuracy_out_of_range",
}


@dataclass
class IncomingReport:
    device_id: str
    vehicle_id: str
    lat: float
    lon: float
    accuracy: float | None
    recorded_at: datetime.datetime | None
    received_at: datetime.datetime
    speed: float | None = None  # m/s
    heading: float | None = None

    @property
    def timestamp(self) -> datetime.datetime:
        return self.recorded_at or self.received_at


@dataclass
class PreviousReport:
    lat: float
    lon: float
    recorded_at: datetime.datetime
    speed: float | None = None


@dataclass
class ValidationContext:
    schedule: ScheduleStatus
    stops: list[StopOnRoute] = field(default_factory=list)
    previous: PreviousReport | None = None
    history: list[TrackPoint] = field(default_factory=list)


@dataclass
class CheckResult:
    valid: bool
    confidence: float
    message: str


@dataclass
class BoundaryResult(CheckResult):
    within_region: bool = False
    obviously_invalid: bool = False


@dataclass
class SpeedResult(CheckResult):
    speed_kmh: float | None = None
    acceleration_ms2: float | None = None
    seconds_since_previous: float | None = None
    first_report: bool = False
    throttled: bool = False


@dataclass
class RouteResult(CheckResult):
    adherence: float = 0.0
    within_stop_radius: bool = False
    progression: Progression | None = None
    within_corridor: bool = False
    nearest_stop_id: int | None = None


@dataclass
class TimestampResult(CheckResult):
    skew_seconds: float | None = None
    obviously_wrong: bool = False


@dataclass
class AccuracyResult(CheckResult):
    accuracy_m: float | None = None
    quality: float = 0.0
    beyond_limit: bool = False


@dataclass
class MovementResult(CheckResult):
    pattern: MovementPattern = MovementPattern.INSUFFICIENT_DATA
    stationary_too_long: bool = False
    erratic: bool = False


@dataclass
class ScheduleResult(CheckResult):
    direction: str | None = None


@dataclass
class ValidationResult:
    valid: bool
    confidence_score: float
    boundary: BoundaryResult
    speed: SpeedResult | None = None
    route: RouteResult | None = None
    timestamp: TimestampResult | None = None
    accuracy: AccuracyResult | None = None
    movement: MovementResult | None = None
    schedule: ScheduleResult | None = None
    flags: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    reason: str | None = None
    hard_reject: bool = False

    def checks(self) -> dict[str, CheckResult]:
        """Results that were actually evaluated, keyed by check name."""
        return {
            name: getattr(self, name)
            for name in CHECK_WEIGHTS
            if getattr(self, name) is not None
        }


class ReportValidator:
    """Validates one report against already-fetched context."""

    def __init__(
        self,
        settings: Settings | None = None,
        movement: MovementAnalyzer | None = None,
        route_gate: RouteGate | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.movement = movement or MovementAnalyzer(self.settings)
        self.route_gate = route_gate or RouteGate(self.settings)

    def validate(self, report: IncomingReport, context: ValidationContext) -> ValidationResult:
        boundary = self.check_boundary(report.lat, report.lon)
        if not boundary.valid:
            return ValidationResult(
                valid=False,
                confidence_score=0.0,
                boundary=boundary,
                flags=["coordinates_outside_region"],
                recommendations=[RECOMMENDATIONS["boundary"]],
                reason=REJECT_REASONS["boundary"],
                hard_reject=True,
            )

        history = self._recent_history(report, context.history)
        result = ValidationResult(
            valid=False,
            confidence_score=0.0,
            boundary=boundary,
            speed=self.check_speed(report, context.previous),
            route=self.check_route(report, context.stops, history),
            timestamp=self.check_timestamp(report.recorded_at, report.received_at),
            accuracy=self.check_accuracy(report.accuracy),
            movement=self.check_movement(report, history),
            schedule=self.check_schedule(context.schedule),
        )
        self._combine(result)
        return result

    # ── individual checks ──

    def check_boundary(self, lat: float, lon: float) -> BoundaryResult:
        s = self.settings
        obviously_invalid = (
            (lat == 0.0 and lon == 0.0)
            or abs(lat) < 0.001
            or abs(lon) < 0.001
            or abs(lat) > 90
            or abs(lon) > 180
        )
        within = (
            s.region_min_lat <= lat <= s.region_max_lat
            and s.region_min_lon <= lon <= s.region_max_lon
        )
        valid = within and not obviously_invalid
        return BoundaryResult(
            valid=valid,
            confidence=1.0 if valid else 0.0,
            message="Within service area" if valid else "Coordinates outside service area",
            within_region=within,
            obviously_invalid=obviously_invalid,
        )

    def check_speed(self, report: IncomingReport, previous: PreviousReport | None) -> SpeedResult:
        s = self.settings
        if previous is not None:
            age = (report.timestamp - previous.recorded_at).total_seconds()
            if age > s.speed_lookback_minutes * 60:
                previous = None
        if previous is None:
            return SpeedResult(
                valid=True, confidence=0.7, message="First location in window", first_report=True
            )

        seconds = (report.timestamp - previous.recorded_at).total_seconds()
        if seconds < s.min_report_interval_seconds:
            return SpeedResult(
                valid=False,
                confidence=0.2,
                message="Location updates too frequent",
                seconds_since_previous=seconds,
                throttled=True,
            )

        speed_kmh = distance(previous.lat, previous.lon, report.lat, report.lon) / seconds * 3.6
        acceleration = None
        if report.speed is not None and previous.speed is not None:
            acceleration = (report.speed - previous.speed) / seconds

        valid = speed_kmh <= s.max_speed_kmh and (
            acceleration is None or abs(acceleration) <= s.max_acceleration_ms2
        )
        if valid:
            confidence = 0.9
        elif speed_kmh > s.max_speed_kmh * 2:
            confidence = 0.1
        else:
            confidence = 0.4
        return SpeedResult(
            valid=valid,
            confidence=confidence,
            message="Speed plausible" if valid else f"Implausible movement ({speed_kmh:.1f} km/h)",
            speed_kmh=speed_kmh,
            acceleration_ms2=acceleration,
            seconds_since_previous=seconds,
        )

    def check_route(
        self, report: IncomingReport, stops: list[StopOnRoute], history: list[TrackPoint]
    ) -> RouteResult:
        track = history + [TrackPoint(report.lat, report.lon, report.timestamp)]
        check = self.route_gate.check(stops, report.lat, report.lon, track)
        if check is None:
            return RouteResult(valid=False, confidence=0.0, message="No route stops available")

        score = 0.0
        if check.within_stop_radius:
            score += 0.4
        if check.progression.passes:
            score += 0.4
        if check.corridor.within:
            score += 0.3

        valid = score >= self.settings.route_adherence_floor
        return RouteResult(
            valid=valid,
            confidence=min(1.0, score),
            message="Following route" if valid else "Not following the expected route",
            adherence=score,
            within_stop_radius=check.within_stop_radius,
            progression=check.progression.state,
            within_corridor=check.corridor.within,
            nearest_stop_id=check.nearest_stop.stop_id,
        )

    def check_timestamp(
        self, recorded_at: datetime.datetime | None, received_at: datetime.datetime
    ) -> TimestampResult:
        s = self.settings
        if recorded_at is None:
            return TimestampResult(valid=False, confidence=0.0, message="No timestamp provided")

        delta = (recorded_at - received_at).total_seconds()
        skew = abs(delta)
        obviously_wrong = (
            recorded_at.year < s.min_plausible_year
            or recorded_at.year > received_at.year + 1
            or delta > s.max_future_skew_seconds
        )
        valid = skew <= s.timestamp_tolerance_seconds and not obviously_wrong
        if valid:
            confidence = 0.9
        elif obviously_wrong:
            confidence = 0.1
        else:
            confidence = 0.5
        return TimestampResult(
            valid=valid,
            confidence=confidence,
            message="Timestamp within tolerance" if valid else "Timestamp out of tolerance",
            skew_seconds=skew,
            obviously_wrong=obviously_wrong,
        )

    def check_accuracy(self, accuracy: float | None) -> AccuracyResult:
        if accuracy is None or accuracy <= 0:
            return AccuracyResult(valid=False, confidence=0.0, message="Invalid accuracy value")

        if accuracy > self.settings.max_accuracy_m:
            return AccuracyResult(
                valid=False,
                confidence=0.0,
                message=f"GPS accuracy too poor ({accuracy:.0f} m)",
                accuracy_m=accuracy,
                beyond_limit=True,
            )

        if accuracy <= 10:
            quality = 1.0
        elif accuracy <= 25:
            quality = 0.9
        elif accuracy <= 50:
            quality = 0.8
        elif accuracy <= 100:
            quality = 0.6
        else:
            quality = max(0.1, 1 - accuracy / self.settings.max_accuracy_m)
        return AccuracyResult(
            valid=True,
            confidence=quality,
            message=f"GPS accuracy {accuracy:.0f} m",
            accuracy_m=accuracy,
            quality=quality,
        )

    def check_movement(self, report: IncomingReport, history: list[TrackPoint]) -> MovementResult:
        if not history:
            return MovementResult(valid=True, confidence=0.6, message="Insufficient movement history")

        track = history + [TrackPoint(report.lat, report.lon, report.timestamp)]
        analysis = self.movement.analyze(track)
        stationary = self.movement.is_stationary_too_long(track)
        erratic = self.movement.is_erratic(track)

        confidence = 0.5
        if analysis.consistent:
            confidence += 0.3
        if not stationary:
            confidence += 0.1
        if not erratic:
            confidence += 0.1
        return MovementResult(
            valid=analysis.consistent or analysis.pattern == MovementPattern.INSUFFICIENT_DATA,
            confidence=confidence,
            message=f"Movement pattern: {analysis.pattern.value}",
            pattern=analysis.pattern,
            stationary_too_long=stationary,
            erratic=erratic,
        )

    def check_schedule(self, status: ScheduleStatus) -> ScheduleResult:
        if not status.active:
            return ScheduleResult(valid=False, confidence=0.0, message="Bus not currently scheduled")
        return ScheduleResult(
            valid=True, confidence=0.9, message="Bus in scheduled window", direction=status.direction
        )

    # ── combination ──

    def _recent_history(
        self, report: IncomingReport, history: list[TrackPoint]
    ) -> list[TrackPoint]:
        horizon = report.timestamp - datetime.timedelta(minutes=self.settings.movement_history_minutes)
        recent = sorted(
            (p for p in history if horizon <= p.timestamp < report.timestamp),
            key=lambda p: p.timestamp,
        )
        return recent[-self.settings.movement_history_limit:]

    def _combine(self, result: ValidationResult) -> None:
        checks = result.checks()
        total_weight = sum(CHECK_WEIGHTS[name] for name in checks)
        confidence = sum(CHECK_WEIGHTS[name] * c.confidence for name, c in checks.items())
        result.confidence_score = round(confidence / total_weight, 4) if total_weight else 0.0

        failed = [name for name, c in checks.items() if not c.valid]
        hard = [name for name in HARD_GATES if name in failed]
        if result.accuracy and result.accuracy.beyond_limit:
            hard.append("accuracy")

        result.hard_reject = bool(hard)
        result.valid = not hard and result.confidence_score >= self.settings.min_validation_confidence

        flags = [f"{name}_validation_failed" for name in failed]
        speed = result.speed
        if speed and speed.speed_kmh is not None and speed.speed_kmh > self.settings.max_speed_kmh * 1.5:
            flags.append("extremely_high_speed")
        if speed and speed.throttled:
            flags.append("update_too_frequent")
        accuracy = result.accuracy
        if accuracy and accuracy.accuracy_m is not None and accuracy.accuracy_m > self.settings.poor_accuracy_m:
            flags.append("poor_gps_accuracy")
        if result.route and result.route.progression == Progression.BACKTRACKING:
            flags.append("backtracking")
        if result.movement and result.movement.stationary_too_long:
            flags.append("stationary_too_long")
        if result.movement and result.movement.erratic:
            flags.append("erratic_movement")
        result.flags = flags

        recommendations = []
        for name in failed:
            key = "throttle" if name == "speed" and speed and speed.throttled else name
            recommendations.append(RECOMMENDATIONS[key])
        if "poor_gps_accuracy" in flags and RECOMMENDATIONS["accuracy"] not in recommendations:
            recommendations.append(RECOMMENDATIONS["accuracy"])
        if not result.valid and not recommendations:
            recommendations.append(RECOMMENDATIONS["low_confidence"])
        result.recommendations = recommendations

        if hard:
            result.reason = REJECT_REASONS[hard[0]]
        elif not result.valid:
            result.reason = "low_confidence"
