"""Tests for great-circle helpers."""
import random

import pytest

from poolmatch.services.geo import bounding_box, centroid, haversine_km, route_length_km
from poolmatch.services.pricing import calculate_price


class TestGeo:
    def test_haversine_zero_for_same_point(self):
        assert haversine_km(40.75, -74.0, 40.75, -74.0) == 0.0

    def test_haversine_midtown_to_jfk(self):
        """Midtown to JFK is roughly 22 km as the crow flies."""
        d = haversine_km(40.75, -74.00, 40.6413, -73.7781)
        assert 21.0 < d < 23.5

    def test_haversine_symmetric(self):
        a = haversine_km(40.71, -73.90, 40.6413, -73.7781)
        b = haversine_km(40.6413, -73.7781, 40.71, -73.90)
        assert a == pytest.approx(b)

    def test_route_length_sums_legs(self):
        pts = [(40.75, -74.00), (40.71, -73.90), (40.6413, -73.7781)]
        expected = haversine_km(*pts[0], *pts[1]) + haversine_km(*pts[1], *pts[2])
        assert route_length_km(pts) == pytest.approx(expected)
        assert route_length_km(pts[:1]) == 0.0

    def test_centroid_is_mean_of_random_points(self):
        rng = random.Random(7)
        for _ in range(50):
            pts = [(rng.uniform(40.5, 40.9), rng.uniform(-74.1, -73.7)) for _ in range(rng.randint(1, 10))]
            lat, lng = centroid(pts)
            assert lat == pytest.approx(sum(p[0] for p in pts) / len(pts))
            assert lng == pytest.approx(sum(p[1] for p in pts) / len(pts))

    def test_centroid_empty_raises(self):
        with pytest.raises(ValueError):
            centroid([])

    def test_bounding_box_contains_circle(self):
        min_lat, max_lat, min_lng, max_lng = bounding_box(40.75, -74.0, 5.0)
        assert haversine_km(40.75, -74.0, max_lat, -74.0) == pytest.approx(5.0, rel=0.01)
        assert haversine_km(40.75, -74.0, 40.75, max_lng) >= 4.99
        assert min_lat < 40.75 < max_lat
        assert min_lng < -74.0 < max_lng


class TestPricing:
    def test_solo_ride_has_no_discount(self):
        assert calculate_price(10.0, 1, 0) == 30.0

    def test_discount_grows_with_pool_and_caps_at_half(self):
        base = 5.0 + 10.0 * 2.5 * 2
        assert calculate_price(10.0, 2, 2) == round(base * 0.75, 2)
        assert calculate_price(10.0, 2, 4) == round(base * 0.5, 2)
        assert calculate_price(10.0, 2, 9) == round(base * 0.5, 2)
