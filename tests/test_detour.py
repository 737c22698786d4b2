"""Tests for the detour solver: exhaustive insertion under the anchor ordering rules."""
import itertools

import pytest

from poolmatch.models.pool import Direction, WaypointRole
from poolmatch.services.detour import (
    CorruptPoolRoute,
    Waypoint,
    best_insertion,
    dump_route,
    load_route,
    route_length,
)

AIRPORT = (40.6413, -73.7781)

P, D = WaypointRole.PICKUP, WaypointRole.DROPOFF


def wp(point, role, ride_id):
    return Waypoint(point[0], point[1], role, ride_id)


def brute_force(route, direction, pickup, dropoff):
    """Minimum length over every placement that keeps pickups first and the anchor stop first of its kind."""
    anchor = next(w for w in route if w.role == (D if direction == Direction.TO_ANCHOR else P))
    best = None
    n = len(route)
    for i, j in itertools.combinations(range(n + 2), 2):
        rest = iter(route)
        candidate = [pickup if k == i else dropoff if k == j else next(rest) for k in range(n + 2)]
        roles = [w.role for w in candidate]
        if roles != sorted(roles, key=lambda r: r == D):
            continue
        first_of_kind = next(w for w in candidate if w.role == anchor.role)
        if first_of_kind is not anchor:
            continue
        km = route_length(candidate)
        best = km if best is None else min(best, km)
    return best - route_length(route)


class TestBestInsertion:
    def test_empty_route(self):
        pickup, dropoff = wp((40.75, -74.0), P, 1), wp(AIRPORT, D, 1)
        ins = best_insertion([], Direction.TO_ANCHOR, pickup, dropoff)
        assert ins.extra_km == 0.0
        assert ins.route == (pickup, dropoff)
        assert ins.route_km == pytest.approx(route_length([pickup, dropoff]))

    def test_matches_brute_force_to_anchor(self):
        route = [
            wp((40.75, -74.00), P, 1),
            wp((40.72, -73.95), P, 2),
            wp(AIRPORT, D, 1),
            wp((40.66, -73.80), D, 2),
        ]
        for pickup_pt in [(40.71, -73.90), (40.78, -74.02), (40.69, -73.85)]:
            pickup, dropoff = wp(pickup_pt, P, 3), wp((40.65, -73.79), D, 3)
            ins = best_insertion(route, Direction.TO_ANCHOR, pickup, dropoff)
            assert ins.extra_km == pytest.approx(brute_force(route, Direction.TO_ANCHOR, pickup, dropoff))
            # anchor stays the first dropoff
            assert next(w for w in ins.route if w.role == D) == route[2]

    def test_matches_brute_force_from_anchor(self):
        route = [
            wp(AIRPORT, P, 1),
            wp((40.645, -73.78), P, 2),
            wp((40.72, -73.95), D, 2),
            wp((40.75, -74.00), D, 1),
        ]
        pickup, dropoff = wp((40.643, -73.779), P, 3), wp((40.70, -73.90), D, 3)
        ins = best_insertion(route, Direction.FROM_ANCHOR, pickup, dropoff)
        assert ins.extra_km == pytest.approx(brute_force(route, Direction.FROM_ANCHOR, pickup, dropoff))
        assert ins.route[0] == route[0]

    def test_extra_is_never_negative_on_a_straight_line(self):
        route = [wp((40.75, -74.00), P, 1), wp(AIRPORT, D, 1)]
        pickup, dropoff = wp((40.70, -73.89), P, 2), wp(AIRPORT, D, 2)
        ins = best_insertion(route, Direction.TO_ANCHOR, pickup, dropoff)
        assert ins.extra_km >= -1e-9
        assert ins.admits(3.0)
        assert not ins.admits(ins.extra_km - 0.001)

    def test_missing_anchor_is_corrupt(self):
        route = [wp((40.75, -74.00), P, 1)]
        with pytest.raises(CorruptPoolRoute):
            best_insertion(route, Direction.TO_ANCHOR, wp((40.7, -73.9), P, 2), wp(AIRPORT, D, 2))

    def test_pickup_after_dropoff_is_corrupt(self):
        route = [wp((40.75, -74.00), P, 1), wp(AIRPORT, D, 1), wp((40.7, -73.9), P, 2)]
        with pytest.raises(CorruptPoolRoute):
            best_insertion(route, Direction.TO_ANCHOR, wp((40.7, -73.9), P, 3), wp(AIRPORT, D, 3))


class TestRouteSerialization:
    def test_dump_renumbers_sequence(self):
        route = [wp((40.75, -74.00), P, 1), wp(AIRPORT, D, 1)]
        raw = dump_route(route)
        assert [r["sequence"] for r in raw] == [1, 2]
        assert raw[0]["role"] == "pickup"
        loaded = load_route(raw)
        assert [w.ride_id for w in loaded] == [1, 1]
        assert loaded[1].role == D

    def test_load_none(self):
        assert load_route(None) == []
