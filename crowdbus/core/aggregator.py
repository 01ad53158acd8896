"""Trust-weighted consensus position with a decreasing-confidence fallback.

Cascade, first hit wins:
    1. reputation-weighted centroid of the trusted members of the main cluster
    2. last known validated location, confidence decaying with age
    3. same time-of-day average over the past days, fixed low confidence
    4. no coordinates at all
"""

import datetime
import logging
import statistics
from dataclasses import dataclass, field
from enum import Enum

from crowdbus.config import Settings, settings as default_settings
from crowdbus.core.clustering import ClusterMember, ClusteringResult

logger = logging.getLogger(__name__)


class PositionStatus(str, Enum):
    ACTIVE = "active"
    SINGLE_TRACKER = "single_tracker"
    NO_TRACKING = "no_tracking"
    INACTIVE = "inactive"
    NO_DATA = "no_data"


class PositionSource(str, Enum):
    TRUSTED_CLUSTER = "trusted_cluster"
    LAST_KNOWN = "last_known"
    HISTORICAL = "historical_pattern"
    NONE = "none"


@dataclass
class LastKnown:
    lat: float
    lon: float
    timestamp: datetime.datetime
    accuracy: float | None = None

    def to_dict(self) -> dict:
        return {
            "lat": self.lat,
            "lon": self.lon,
            "timestamp": self.timestamp.isoformat(),
            "accuracy": self.accuracy,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LastKnown":
        return cls(
            lat=data["lat"],
            lon=data["lon"],
            timestamp=datetime.datetime.fromisoformat(data["timestamp"]),
            accuracy=data.get("accuracy"),
        )


@dataclass
class PositionEstimate:
    vehicle_id: str
    status: PositionStatus
    source: PositionSource
    confidence: float
    last_updated: datetime.datetime
    lat: float | None = None
    lon: float | None = None
    active_trackers: int = 0
    trusted_trackers: int = 0
    last_known: LastKnown | None = None
    device_ids: list[str] = field(default_factory=list)

    def broadcast_payload(self) -> dict:
        return {
            "vehicle_id": self.vehicle_id,
            "lat": self.lat,
            "lon": self.lon,
            "confidence": self.confidence,
            "trusted_trackers": self.trusted_trackers,
            "status": self.status.value,
            "timestamp": self.last_updated.isoformat(),
        }


class PositionAggregator:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings

    @staticmethod
    def weighted_centroid(members: list[ClusterMember]) -> tuple[float, float]:
        total = sum(m.reputation_weight for m in members)
        if total <= 0:
            return (
                round(statistics.fmean(m.lat for m in members), 8),
                round(statistics.fmean(m.lon for m in members), 8),
            )
        lat = sum(m.lat * m.reputation_weight for m in members) / total
        lon = sum(m.lon * m.reputation_weight for m in members) / total
        return round(lat, 8), round(lon, 8)

    @staticmethod
    def cluster_confidence(trusted: list[ClusterMember], clustering: ClusteringResult) -> float:
        confidence = 0.5

        if len(trusted) >= 3:
            confidence += 0.3
        elif len(trusted) == 2:
            confidence += 0.2
        elif len(trusted) == 1:
            confidence += 0.1

        avg_accuracy = statistics.fmean(m.accuracy for m in trusted)
        if avg_accuracy <= 20:
            confidence += 0.2
        elif avg_accuracy <= 50:
            confidence += 0.1

        confidence += clustering.efficiency * 0.2

        avg_weight = statistics.fmean(m.reputation_weight for m in trusted)
        confidence += (avg_weight - 0.5) * 0.2

        return max(0.1, min(1.0, confidence))

    def _tracking_status(self, active_trackers: int, trusted: int) -> PositionStatus:
        if active_trackers == 1:
            return PositionStatus.SINGLE_TRACKER
        if active_trackers >= 2 and trusted >= 1:
            return PositionStatus.ACTIVE
        return PositionStatus.NO_TRACKING

    def _cap(self, status: PositionStatus, confidence: float) -> float:
        if status == PositionStatus.SINGLE_TRACKER:
            confidence = min(confidence, self.settings.single_tracker_max_confidence)
        return round(confidence, 4)

    def from_cluster(
        self,
        vehicle_id: str,
        clustering: ClusteringResult,
        active_trackers: int,
        now: datetime.datetime,
    ) -> PositionEstimate | None:
        main = clustering.main_cluster
        if main is None:
            return None
        trusted = [m for m in main.members if m.trust >= self.settings.trust_threshold]
        if not trusted:
            return None

        lat, lon = self.weighted_centroid(trusted)
        status = self._tracking_status(active_trackers, len(trusted))
        newest = max(trusted, key=lambda m: m.recorded_at)
        return PositionEstimate(
            vehicle_id=vehicle_id,
            status=status,
            source=PositionSource.TRUSTED_CLUSTER,
            confidence=self._cap(status, self.cluster_confidence(trusted, clustering)),
            last_updated=now,
            lat=lat,
            lon=lon,
            active_trackers=active_trackers,
            trusted_trackers=len(trusted),
            last_known=LastKnown(lat, lon, newest.recorded_at, statistics.fmean(m.accuracy for m in trusted)),
            device_ids=sorted({m.device_id for m in trusted}),
        )

    def from_last_known(
        self,
        vehicle_id: str,
        last_known: LastKnown | None,
        active_trackers: int,
        now: datetime.datetime,
    ) -> PositionEstimate | None:
        if last_known is None:
            return None
        minutes = max(0.0, (now - last_known.timestamp).total_seconds() / 60)
        if minutes > self.settings.last_known_max_age_minutes:
            return None

        status = self._tracking_status(active_trackers, 0)
        confidence = max(0.1, 1 - minutes / self.settings.last_known_decay_minutes)
        return PositionEstimate(
            vehicle_id=vehicle_id,
            status=status,
            source=PositionSource.LAST_KNOWN,
            confidence=self._cap(status, confidence),
            last_updated=now,
            lat=last_known.lat,
            lon=last_known.lon,
            active_trackers=active_trackers,
            last_known=last_known,
        )

    def from_history(
        self,
        vehicle_id: str,
        samples: list[tuple[float, float]],
        active_trackers: int,
        now: datetime.datetime,
        last_known: LastKnown | None = None,
    ) -> PositionEstimate | None:
        if not samples:
            return None
        status = self._tracking_status(active_trackers, 0)
        return PositionEstimate(
            vehicle_id=vehicle_id,
            status=status,
            source=PositionSource.HISTORICAL,
            confidence=self._cap(status, self.settings.historical_confidence),
            last_updated=now,
            lat=round(statistics.fmean(s[0] for s in samples), 8),
            lon=round(statistics.fmean(s[1] for s in samples), 8),
            active_trackers=active_trackers,
            last_known=last_known,
        )

    def aggregate(
        self,
        vehicle_id: str,
        *,
        scheduled_active: bool,
        clustering: ClusteringResult | None,
        active_trackers: int,
        last_known: LastKnown | None,
        historical: list[tuple[float, float]],
        seen_before: bool,
        now: datetime.datetime,
    ) -> PositionEstimate:
        if not scheduled_active:
            return PositionEstimate(
                vehicle_id=vehicle_id,
                status=PositionStatus.INACTIVE,
                source=PositionSource.NONE,
                confidence=0.0,
                last_updated=now,
                last_known=last_known,
            )

        estimate = None
        if clustering is not None:
            estimate = self.from_cluster(vehicle_id, clustering, active_trackers, now)
        if estimate is None:
            estimate = self.from_last_known(vehicle_id, last_known, active_trackers, now)
        if estimate is None:
            estimate = self.from_history(vehicle_id, historical, active_trackers, now, last_known)
        if estimate is not None:
            return estimate

        if not seen_before and last_known is None:
            status = PositionStatus.NO_DATA
        else:
            status = self._tracking_status(active_trackers, 0)
        return PositionEstimate(
            vehicle_id=vehicle_id,
            status=status,
            source=PositionSource.NONE,
            confidence=0.0,
            last_updated=now,
            active_trackers=active_trackers,
            last_known=last_known,
        )
