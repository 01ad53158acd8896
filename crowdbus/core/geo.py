"""Great-circle helpers shared by validation, clustering and route checks."""

import math

from shapely.geometry import LineString, Point

EARTH_RADIUS_M = 6_371_000.0
_M_PER_DEG = math.pi * EARTH_RADIUS_M / 180.0


def distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bearing(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial bearing from point 1 to point 2, degrees in [0, 360)."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dlam = math.radians(lon2 - lon1)
    y = math.sin(dlam) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlam)
    return math.degrees(math.atan2(y, x)) % 360


def bearing_change(a: float, b: float) -> float:
    """Smallest absolute difference between two bearings (0..180)."""
    diff = abs(b - a) % 360
    return 360 - diff if diff > 180 else diff


def project_onto_segment(
    plat: float, plon: float,
    alat: float, alon: float,
    blat: float, blon: float,
) -> tuple[float, float]:
    """Return (t, distance_m) of a point against segment A->B.

    t is the clamped position along the segment in [0, 1]. The projection is
    done in a local equirectangular frame, good enough at city scale.
    """
    kx = _M_PER_DEG * math.cos(math.radians((alat + blat) / 2))
    segment = LineString([(alon * kx, alat * _M_PER_DEG), (blon * kx, blat * _M_PER_DEG)])
    if segment.length < 1e-6:  # degenerate segment
        return 0.0, distance(plat, plon, alat, alon)

    t = segment.project(Point(plon * kx, plat * _M_PER_DEG), normalized=True)
    t = max(0.0, min(1.0, t))
    clat = alat + t * (blat - alat)
    clon = alon + t * (blon - alon)
    return t, distance(plat, plon, clat, clon)


def distance_to_segment(
    plat: float, plon: float,
    alat: float, alon: float,
    blat: float, blon: float,
) -> float:
    """Distance in meters from a point to the closest point of segment A->B."""
    return project_onto_segment(plat, plon, alat, alon, blat, blon)[1]
