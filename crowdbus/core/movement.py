"""Speed and bearing plausibility for a device's recent track.

Used by report validation (is this report consistent with the device's
recent history?) and by trust scoring (does this device move like a bus?).
"""

import datetime
import logging
import statistics
from dataclasses import dataclass, field
from enum import Enum

from crowdbus.config import Settings, settings as default_settings
from crowdbus.core.geo import bearing, bearing_change, distance

logger = logging.getLogger(__name__)


class MovementPattern(str, Enum):
    STATIONARY = "stationary"
    WALKING = "walking"
    TOO_FAST = "too_fast"
    BUS_WITH_STOPS = "bus_with_stops"
    BUS_LIKE = "bus_like"
    IRREGULAR = "irregular"
    INSUFFICIENT_DATA = "insufficient_data"


PATTERN_CONFIDENCE = {
    MovementPattern.TOO_FAST: 0.2,
    MovementPattern.STATIONARY: 0.1,
    MovementPattern.WALKING: 0.3,
    MovementPattern.BUS_WITH_STOPS: 0.9,
    MovementPattern.BUS_LIKE: 0.8,
    MovementPattern.IRREGULAR: 0.4,
    MovementPattern.INSUFFICIENT_DATA: 0.5,
}

BUS_PATTERNS = {MovementPattern.BUS_WITH_STOPS, MovementPattern.BUS_LIKE}


@dataclass
class TrackPoint:
    lat: float
    lon: float
    timestamp: datetime.datetime


@dataclass
class Segment:
    distance_m: float
    seconds: float
    speed_kmh: float
    bearing: float


@dataclass
class SpeedConsistency:
    consistent: bool
    avg_speed_kmh: float = 0.0
    coefficient_of_variation: float = 0.0
    max_jump_kmh: float = 0.0


@dataclass
class DirectionConsistency:
    consistent: bool
    avg_change: float = 0.0
    max_change: float = 0.0


@dataclass
class MovementAnalysis:
    pattern: MovementPattern
    is_bus_like: bool
    consistent: bool
    confidence: float
    avg_speed_kmh: float = 0.0
    max_speed_kmh: float = 0.0
    speed: SpeedConsistency = field(default_factory=lambda: SpeedConsistency(True))
    direction: DirectionConsistency = field(default_factory=lambda: DirectionConsistency(True))
    segment_count: int = 0


class MovementAnalyzer:
    """Classifies a time-ordered track into a movement pattern."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings

    def segments(self, points: list[TrackPoint]) -> list[Segment]:
        ordered = sorted(points, key=lambda p: p.timestamp)
        result: list[Segment] = []
        for prev, cur in zip(ordered, ordered[1:]):
            seconds = (cur.timestamp - prev.timestamp).total_seconds()
            if seconds <= 0:
                continue  # duplicate or out-of-order sample
            d = distance(prev.lat, prev.lon, cur.lat, cur.lon)
            result.append(Segment(
                distance_m=d,
                seconds=seconds,
                speed_kmh=d / seconds * 3.6,
                bearing=bearing(prev.lat, prev.lon, cur.lat, cur.lon),
            ))
        return result

    def analyze(self, points: list[TrackPoint]) -> MovementAnalysis:
        segs = self.segments(points)
        if not segs:
            return MovementAnalysis(
                pattern=MovementPattern.INSUFFICIENT_DATA,
                is_bus_like=False,
                consistent=True,
                confidence=PATTERN_CONFIDENCE[MovementPattern.INSUFFICIENT_DATA],
            )

        speeds = [s.speed_kmh for s in segs]
        avg_speed = statistics.fmean(speeds)
        max_speed = max(speeds)
        pattern = self._classify(segs, avg_speed, max_speed)
        speed = self._speed_consistency(speeds)
        direction = self._direction_consistency(segs)
        is_bus_like = pattern in BUS_PATTERNS

        confidence = 0.0
        if is_bus_like:
            confidence += PATTERN_CONFIDENCE[pattern] * 0.5
        if speed.consistent:
            confidence += 0.25
        if direction.consistent:
            confidence += 0.25

        return MovementAnalysis(
            pattern=pattern,
            is_bus_like=is_bus_like,
            consistent=is_bus_like and speed.consistent and direction.consistent,
            confidence=min(1.0, confidence),
            avg_speed_kmh=avg_speed,
            max_speed_kmh=max_speed,
            speed=speed,
            direction=direction,
            segment_count=len(segs),
        )

    def _classify(
        self, segs: list[Segment], avg_speed: float, max_speed: float
    ) -> MovementPattern:
        s = self.settings
        moving = [seg for seg in segs if seg.speed_kmh >= s.stationary_speed_kmh]
        span = sum(seg.seconds for seg in segs)

        if max_speed > s.too_fast_kmh:
            return MovementPattern.TOO_FAST
        if not moving:
            if span > s.stationary_min_seconds:
                return MovementPattern.STATIONARY
            # A short dwell says nothing either way
            return MovementPattern.IRREGULAR
        if avg_speed < s.walking_avg_kmh and max_speed < s.walking_max_kmh:
            return MovementPattern.WALKING
        if s.walking_avg_kmh <= avg_speed <= s.bus_max_avg_kmh:
            if len(moving) < len(segs):
                return MovementPattern.BUS_WITH_STOPS
            return MovementPattern.BUS_LIKE
        return MovementPattern.IRREGULAR

    def _speed_consistency(self, speeds: list[float]) -> SpeedConsistency:
        if len(speeds) < 2:
            return SpeedConsistency(consistent=True, avg_speed_kmh=speeds[0] if speeds else 0.0)

        avg = statistics.fmean(speeds)
        cv = statistics.pstdev(speeds) / avg if avg > 0 else 0.0
        max_jump = max(abs(b - a) for a, b in zip(speeds, speeds[1:]))
        consistent = (
            cv < self.settings.speed_cv_threshold
            and max_jump <= self.settings.max_speed_jump_kmh
        )
        return SpeedConsistency(
            consistent=consistent,
            avg_speed_kmh=avg,
            coefficient_of_variation=cv,
            max_jump_kmh=max_jump,
        )

    def _direction_consistency(self, segs: list[Segment]) -> DirectionConsistency:
        # Bearings of jitter while standing still are noise
        moving = [seg for seg in segs if seg.speed_kmh >= self.settings.stationary_speed_kmh]
        if len(moving) < 2:
            return DirectionConsistency(consistent=True)

        changes = [bearing_change(a.bearing, b.bearing) for a, b in zip(moving, moving[1:])]
        avg_change = statistics.fmean(changes)
        max_change = max(changes)
        return DirectionConsistency(
            consistent=(
                avg_change < self.settings.max_avg_bearing_change
                and max_change < self.settings.max_bearing_change
            ),
            avg_change=avg_change,
            max_change=max_change,
        )

    def is_stationary_too_long(self, points: list[TrackPoint]) -> bool:
        """Average speed under 2 km/h sustained for longer than the stationary window."""
        segs = self.segments(points)
        if len(segs) < 2:
            return False
        span = sum(seg.seconds for seg in segs)
        travelled = sum(seg.distance_m for seg in segs)
        avg_kmh = travelled / span * 3.6
        return avg_kmh < 2.0 and span > self.settings.stationary_min_seconds

    def is_erratic(self, points: list[TrackPoint]) -> bool:
        """More than half of consecutive bearing changes exceed 90 degrees."""
        segs = self.segments(points)
        if len(segs) < 2:
            return False
        changes = [bearing_change(a.bearing, b.bearing) for a, b in zip(segs, segs[1:])]
        sharp = sum(1 for c in changes if c > 90)
        return sharp / len(changes) > 0.5
