"""
Detour solver: cheapest insertion of a ride's pickup/dropoff into a pool's ordered route.

Routes keep every pickup before every dropoff. For pools heading to the anchor the
first dropoff is the anchor; for pools leaving it the first pickup is. New stops may
only go where that ordering survives, and every such position is tried (at most
5 x 4 combinations for a four-seat vehicle), so the answer is the exact minimum.
"""
from dataclasses import dataclass, replace
from typing import Any

from poolmatch.models.pool import Direction, WaypointRole
from poolmatch.services.geo import route_length_km


class CorruptPoolRoute(ValueError):
    """Stored route breaks the pickup/dropoff ordering or lacks its anchor."""


@dataclass(frozen=True)
class Waypoint:
    lat: float
    lng: float
    role: WaypointRole
    ride_id: int
    sequence: int = 0

    @property
    def point(self) -> tuple[float, float]:
        return (self.lat, self.lng)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "role": self.role.value,
            "ride_id": self.ride_id,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Waypoint":
        return cls(
            lat=float(raw["lat"]),
            lng=float(raw["lng"]),
            role=WaypointRole(raw["role"]),
            ride_id=int(raw["ride_id"]),
            sequence=int(raw.get("sequence", 0)),
        )


@dataclass(frozen=True)
class Insertion:
    extra_km: float
    pickup_index: int
    dropoff_index: int
    route: tuple[Waypoint, ...]
    route_km: float

    def admits(self, max_detour_km: float) -> bool:
        return self.extra_km <= max_detour_km


def load_route(raw: list[dict] | None) -> list[Waypoint]:
    return [Waypoint.from_dict(wp) for wp in raw or []]


def dump_route(route: list[Waypoint] | tuple[Waypoint, ...]) -> list[dict]:
    """Serialize for the pool's JSON column, renumbering sequence 1..n."""
    return [replace(wp, sequence=i).to_dict() for i, wp in enumerate(route, start=1)]


def route_length(route) -> float:
    return route_length_km([wp.point for wp in route])


def split_route(route: list[Waypoint], direction: Direction) -> tuple[list[Waypoint], list[Waypoint]]:
    """Return (pickups, dropoffs) after checking ordering and the anchor stop."""
    pickups: list[Waypoint] = []
    dropoffs: list[Waypoint] = []
    for wp in route:
        if wp.role == WaypointRole.PICKUP:
            if dropoffs:
                raise CorruptPoolRoute("pickup found after a dropoff")
            pickups.append(wp)
        else:
            dropoffs.append(wp)
    if direction == Direction.TO_ANCHOR and not dropoffs:
        raise CorruptPoolRoute("route heading to the anchor has no anchor dropoff")
    if direction == Direction.FROM_ANCHOR and not pickups:
        raise CorruptPoolRoute("route leaving the anchor has no anchor pickup")
    return pickups, dropoffs


def best_insertion(
    route: list[Waypoint],
    direction: Direction,
    pickup: Waypoint,
    dropoff: Waypoint,
) -> Insertion:
    """
    Try every direction-consistent (pickup, dropoff) position and return the cheapest.
    Ties keep the earliest position. Empty route: extra distance 0, route [pickup, dropoff].
    """
    if not route:
        new_route = (pickup, dropoff)
        return Insertion(0.0, 0, 1, new_route, route_length(new_route))

    pickups, dropoffs = split_route(route, direction)
    base_km = route_length(route)

    if direction == Direction.TO_ANCHOR:
        # new riders board anywhere before the anchor and are let off after it
        pickup_slots = range(0, len(pickups) + 1)
        dropoff_slots = range(1, len(dropoffs) + 1)
    else:
        pickup_slots = range(1, len(pickups) + 1)
        dropoff_slots = range(0, len(dropoffs) + 1)

    best: Insertion | None = None
    for i in pickup_slots:
        head = pickups[:i] + [pickup] + pickups[i:]
        for j in dropoff_slots:
            candidate = tuple(head + dropoffs[:j] + [dropoff] + dropoffs[j:])
            km = route_length(candidate)
            if best is None or km < best.route_km:
                best = Insertion(km - base_km, i, len(head) + j, candidate, km)
    return best
