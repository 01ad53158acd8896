"""Greedy proximity clustering of concurrent reports for one vehicle.

Single pass: each report joins the first cluster whose running centroid is
within the clustering radius, otherwise it starts a new cluster. This is not
DBSCAN and the result depends on input order, so candidates are sorted by a
stable key first; the expected number of riders per bus is small enough
that the O(n*k) pass does not matter.
"""

import datetime
import logging
from dataclasses import dataclass, field

from crowdbus.config import Settings, settings as default_settings
from crowdbus.core.geo import distance
from crowdbus.core.movement import TrackPoint

logger = logging.getLogger(__name__)


@dataclass
class ClusterMember:
    report_id: int
    device_id: str
    lat: float
    lon: float
    accuracy: float
    reputation_weight: float
    trust: float
    recorded_at: datetime.datetime


@dataclass
class Cluster:
    members: list[ClusterMember] = field(default_factory=list)
    lat: float = 0.0
    lon: float = 0.0
    trust_sum: float = 0.0

    def add(self, member: ClusterMember) -> None:
        n = len(self.members)
        self.lat = (self.lat * n + member.lat) / (n + 1)
        self.lon = (self.lon * n + member.lon) / (n + 1)
        self.trust_sum += member.trust
        self.members.append(member)

    @property
    def device_ids(self) -> set[str]:
        return {m.device_id for m in self.members}


@dataclass
class ClusteringResult:
    clusters: list[Cluster]
    main_cluster: Cluster | None
    outliers: list[ClusterMember]
    total_reports: int

    @property
    def clustered_reports(self) -> int:
        return self.total_reports - len(self.outliers)

    @property
    def efficiency(self) -> float:
        if self.total_reports == 0:
            return 0.0
        return self.clustered_reports / self.total_reports


class SpatialClusterer:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings

    @staticmethod
    def latest_per_device(members: list[ClusterMember]) -> list[ClusterMember]:
        """Keep one report per device so a chatty phone cannot outvote the rest."""
        latest: dict[str, ClusterMember] = {}
        for m in members:
            current = latest.get(m.device_id)
            if current is None or (m.recorded_at, m.report_id) > (current.recorded_at, current.report_id):
                latest[m.device_id] = m
        return list(latest.values())

    def cluster(self, members: list[ClusterMember]) -> ClusteringResult:
        candidates = sorted(
            self.latest_per_device(members),
            key=lambda m: (m.device_id, m.recorded_at, m.report_id),
        )

        clusters: list[Cluster] = []
        for m in candidates:
            for c in clusters:
                if distance(c.lat, c.lon, m.lat, m.lon) <= self.settings.cluster_radius_m:
                    c.add(m)
                    break
            else:
                c = Cluster()
                c.add(m)
                clusters.append(c)

        # Highest trust wins; ties go to the larger, then the earlier cluster
        main = None
        for c in clusters:
            if main is None or (c.trust_sum, len(c.members)) > (main.trust_sum, len(main.members)):
                main = c

        return ClusteringResult(
            clusters=clusters,
            main_cluster=main,
            outliers=self._outliers(clusters, candidates),
            total_reports=len(candidates),
        )

    def _outliers(self, clusters: list[Cluster], candidates: list[ClusterMember]) -> list[ClusterMember]:
        # A lone rider has nobody to disagree with
        if len({m.device_id for m in candidates}) < 2:
            return []
        threshold = self.settings.trust_threshold
        outliers = []
        for c in clusters:
            for m in c.members:
                vouched = any(
                    other.device_id != m.device_id and other.trust >= threshold
                    for other in c.members
                )
                if not vouched:
                    outliers.append(m)
        return outliers

    def is_static(self, track: list[TrackPoint], now: datetime.datetime) -> bool:
        """True when a device has reported from the same spot for the whole timeout."""
        timeout = datetime.timedelta(minutes=self.settings.static_timeout_minutes)
        recent = sorted(
            (p for p in track if p.timestamp >= now - timeout - datetime.timedelta(minutes=1)),
            key=lambda p: p.timestamp,
        )
        if len(recent) < 3:
            return False
        if recent[-1].timestamp - recent[0].timestamp < timeout:
            return False
        anchor = recent[-1]
        return all(
            distance(anchor.lat, anchor.lon, p.lat, p.lon) <= self.settings.static_tolerance_m
            for p in recent
        )

    def find_static_devices(
        self, tracks: dict[str, list[TrackPoint]], now: datetime.datetime
    ) -> list[str]:
        return sorted(device_id for device_id, track in tracks.items() if self.is_static(track, now))

    def find_off_route_devices(self, on_route: dict[str, list[bool]]) -> list[str]:
        """Devices whose recent points are mostly outside the route corridor."""
        result = []
        for device_id, flags in on_route.items():
            if len(flags) < 3:
                continue
            off = sum(1 for ok in flags if not ok)
            if off / len(flags) > self.settings.off_route_ratio:
                result.append(device_id)
        return sorted(result)
