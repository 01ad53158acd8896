"""Ordered-stop corridor and progression checks for a vehicle's route.

A candidate point is located against the nearest stop of the current trip
direction, the rider's recent nearest-stop sequence tells whether the bus is
moving forward along the route, and the corridor between the current and
next stop bounds how far off the straight line it may wander.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from crowdbus.config import Settings, settings as default_settings
from crowdbus.core.geo import distance, distance_to_segment
from crowdbus.core.movement import TrackPoint

logger = logging.getLogger(__name__)

DEPARTURE = "departure"
RETURN = "return"


@dataclass
class StopOnRoute:
    stop_id: int
    name: str
    lat: float
    lon: float
    order: int
    radius_m: float = 200.0
    cumulative_distance_m: float = 0.0  # filled by orient_stops


class Progression(str, Enum):
    PROGRESSING = "progressing"
    BACKTRACKING = "backtracking"
    IRREGULAR = "irregular"
    INSUFFICIENT_HISTORY = "insufficient_history"


@dataclass
class ProgressionResult:
    state: Progression
    stop_sequence: list[int]

    @property
    def passes(self) -> bool:
        return self.state in (Progression.PROGRESSING, Progression.INSUFFICIENT_HISTORY)

    @property
    def confidence(self) -> float:
        if self.state == Progression.PROGRESSING:
            return 1.0
        if self.state == Progression.INSUFFICIENT_HISTORY:
            return 0.5
        if self.state == Progression.IRREGULAR:
            return 0.3
        return 0.0


@dataclass
class CorridorResult:
    within: bool
    distance_m: float
    width_m: float
    from_stop: StopOnRoute | None = None
    to_stop: StopOnRoute | None = None


@dataclass
class RouteCheck:
    nearest_stop: StopOnRoute
    distance_to_stop_m: float
    within_stop_radius: bool
    progression: ProgressionResult
    corridor: CorridorResult

    @property
    def on_route(self) -> bool:
        return self.within_stop_radius or self.corridor.within


def orient_stops(stops: list[StopOnRoute], direction: str = DEPARTURE) -> list[StopOnRoute]:
    """Order stops for a trip direction and number them 1..N.

    The return trip visits the same physical stops backwards, so the order
    index is rebuilt rather than reused.
    """
    ordered = sorted(stops, key=lambda s: s.order)
    if direction == RETURN:
        ordered.reverse()

    result: list[StopOnRoute] = []
    cum = 0.0
    for i, s in enumerate(ordered):
        if i > 0:
            prev = ordered[i - 1]
            cum += distance(prev.lat, prev.lon, s.lat, s.lon)
        result.append(StopOnRoute(
            stop_id=s.stop_id,
            name=s.name,
            lat=s.lat,
            lon=s.lon,
            order=i + 1,
            radius_m=s.radius_m,
            cumulative_distance_m=cum,
        ))
    return result


class RouteGate:
    """Checks a point against the ordered stops of the current trip."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings

    @staticmethod
    def nearest_stop(stops: list[StopOnRoute], lat: float, lon: float) -> tuple[int, float]:
        """Return (index, distance_m) of the closest stop."""
        best_idx = 0
        best_dist = float("inf")
        for i, s in enumerate(stops):
            d = distance(lat, lon, s.lat, s.lon)
            if d < best_dist:
                best_dist = d
                best_idx = i
        return best_idx, best_dist

    def progression(
        self, stops: list[StopOnRoute], history: list[TrackPoint]
    ) -> ProgressionResult:
        """Classify the nearest-stop index sequence of a time-ordered track."""
        ordered = sorted(history, key=lambda p: p.timestamp)
        sequence = [self.nearest_stop(stops, p.lat, p.lon)[0] for p in ordered]
        if len(sequence) < 2:
            return ProgressionResult(Progression.INSUFFICIENT_HISTORY, sequence)

        steps = list(zip(sequence, sequence[1:]))
        if all(b >= a for a, b in steps):
            return ProgressionResult(Progression.PROGRESSING, sequence)
        if all(b <= a for a, b in steps):
            return ProgressionResult(Progression.BACKTRACKING, sequence)
        return ProgressionResult(Progression.IRREGULAR, sequence)

    def corridor(
        self, stops: list[StopOnRoute], index: int, lat: float, lon: float
    ) -> CorridorResult:
        """Distance to the leg between stop `index` and the next one."""
        if len(stops) < 2:
            s = stops[index]
            d = distance(lat, lon, s.lat, s.lon)
            return CorridorResult(within=d <= s.radius_m, distance_m=d, width_m=s.radius_m)

        # At the terminus, measure the leg that arrives there
        start = min(index, len(stops) - 2)
        a, b = stops[start], stops[start + 1]
        final_leg = start + 1 == len(stops) - 1
        width = (
            self.settings.final_leg_corridor_width_m if final_leg
            else self.settings.corridor_width_m
        )
        d = distance_to_segment(lat, lon, a.lat, a.lon, b.lat, b.lon)
        return CorridorResult(within=d <= width, distance_m=d, width_m=width, from_stop=a, to_stop=b)

    def is_on_route(self, stops: list[StopOnRoute], lat: float, lon: float) -> bool:
        """Inside a stop's radius or inside the corridor of the current leg."""
        if not stops:
            return True
        idx, dist = self.nearest_stop(stops, lat, lon)
        if dist <= stops[idx].radius_m:
            return True
        return self.corridor(stops, idx, lat, lon).within

    def check(
        self,
        stops: list[StopOnRoute],
        lat: float,
        lon: float,
        history: list[TrackPoint],
    ) -> RouteCheck | None:
        """Full route check for a candidate point; None when no stops are known.

        `history` must already include the candidate point.
        """
        if not stops:
            return None
        idx, dist = self.nearest_stop(stops, lat, lon)
        stop = stops[idx]
        return RouteCheck(
            nearest_stop=stop,
            distance_to_stop_m=dist,
            within_stop_radius=dist <= stop.radius_m,
            progression=self.progression(stops, history),
            corridor=self.corridor(stops, idx, lat, lon),
        )
