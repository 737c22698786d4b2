"""Great-circle helpers shared by search, detour scoring and ride submission."""
import math
from collections.abc import Iterable, Sequence

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.32

LatLng = tuple[float, float]


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Approximate distance in km between two WGS84 points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def route_length_km(points: Sequence[LatLng]) -> float:
    """Sum of consecutive great-circle legs; 0 for fewer than two points."""
    return sum(
        haversine_km(a[0], a[1], b[0], b[1])
        for a, b in zip(points, points[1:])
    )


def centroid(points: Iterable[LatLng]) -> LatLng:
    """Arithmetic mean of the points. Raises ValueError on an empty set."""
    pts = list(points)
    if not pts:
        raise ValueError("centroid of an empty point set")
    return (
        sum(p[0] for p in pts) / len(pts),
        sum(p[1] for p in pts) / len(pts),
    )


def bounding_box(lat: float, lng: float, radius_km: float) -> tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lng, max_lng) enclosing the circle. Does not wrap the antimeridian."""
    dlat = radius_km / KM_PER_DEGREE_LAT
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    dlng = min(radius_km / (KM_PER_DEGREE_LAT * cos_lat), 180.0)
    return lat - dlat, lat + dlat, lng - dlng, lng + dlng
