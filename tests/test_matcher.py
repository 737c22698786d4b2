"""End-to-end matching scenarios through the orchestrator."""
import pytest

from poolmatch.models import Driver, DriverStatus, Pool, PoolStatus, RideRequest, RideStatus
from poolmatch.services import matcher as matcher_module
from poolmatch.services.assignment import cancel_ride
from poolmatch.services.errors import NoDriverAvailable, NotFound
from poolmatch.services.matcher import DispatchOutcome, Matcher, MatchingPolicy, search_center
from poolmatch.services.pricing import calculate_price

from conftest import AIRPORT, MIDTOWN


@pytest.fixture
def matcher(session_factory):
    return Matcher(session_factory, MatchingPolicy())


class TestMatcher:
    @pytest.mark.asyncio
    async def test_creates_pool_when_none_exist(self, matcher, make_driver, make_ride, fetch):
        driver = await make_driver(lat=40.752, lng=-74.003)
        await make_driver(lat=40.79, lng=-74.04)
        ride = await make_ride(pickup=MIDTOWN, dropoff=AIRPORT, seats=1, luggage=1)

        result = await matcher.dispatch(ride.id)

        assert result.outcome == DispatchOutcome.POOL_CREATED
        assert result.driver_id == driver.id
        stored = await fetch(RideRequest, ride.id)
        assert stored.status == RideStatus.MATCHED
        assert stored.pool_id == result.pool_id
        assert stored.individual_price == calculate_price(stored.direct_distance_km, 1, 1)
        assert (await fetch(Driver, driver.id)).status == DriverStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_joins_nearby_pool(self, matcher, make_driver, make_ride, make_pool, fetch):
        driver = await make_driver()
        pool = await make_pool(driver, [await make_ride(pickup=MIDTOWN, seats=2)])
        assert pool.center_lat == pytest.approx(40.69565)
        assert pool.center_lng == pytest.approx(-73.88905)
        ride = await make_ride(pickup=(40.71, -73.90), seats=1)

        result = await matcher.dispatch(ride.id)

        assert result.outcome == DispatchOutcome.MATCHED
        assert result.pool_id == pool.id
        assert result.extra_km <= ride.max_detour_km
        stored = await fetch(Pool, pool.id)
        assert stored.filled_seats == 3
        assert stored.center_lat == pytest.approx((40.75 + 40.71 + 2 * AIRPORT[0]) / 4)
        assert stored.center_lng == pytest.approx((-74.00 - 73.90 + 2 * AIRPORT[1]) / 4)

    @pytest.mark.asyncio
    async def test_prefers_smallest_detour(self, matcher, make_driver, make_ride, make_pool):
        off_path = await make_pool(await make_driver(), [await make_ride(pickup=(40.71, -73.82))])
        on_path = await make_pool(await make_driver(), [await make_ride(pickup=(40.70, -73.87))])
        ride = await make_ride(pickup=(40.69, -73.85), max_detour_km=10.0)

        result = await matcher.dispatch(ride.id)

        assert result.pool_id == on_path.id
        assert result.pool_id != off_path.id

    @pytest.mark.asyncio
    async def test_ignores_pools_going_the_other_way(self, matcher, make_driver, make_ride, make_pool):
        inbound = await make_pool(await make_driver(), [await make_ride(pickup=AIRPORT, dropoff=(40.72, -73.95))])
        await make_driver(lat=40.721, lng=-73.951)
        ride = await make_ride(pickup=(40.72, -73.95), dropoff=AIRPORT)

        result = await matcher.dispatch(ride.id)

        assert result.outcome == DispatchOutcome.POOL_CREATED
        assert result.pool_id != inbound.id

    @pytest.mark.asyncio
    async def test_full_pool_is_not_a_candidate(self, matcher, make_driver, make_ride, make_pool):
        full = await make_pool(await make_driver(), [await make_ride(seats=4)], status=PoolStatus.LOCKED)
        await make_driver(lat=40.751, lng=-74.0)
        ride = await make_ride(pickup=(40.749, -74.0))

        result = await matcher.dispatch(ride.id)

        assert result.outcome == DispatchOutcome.POOL_CREATED
        assert result.pool_id != full.id

    @pytest.mark.asyncio
    async def test_search_centre_is_the_city_end(self, make_ride):
        outbound = await make_ride(pickup=MIDTOWN, dropoff=AIRPORT)
        inbound = await make_ride(pickup=AIRPORT, dropoff=MIDTOWN)
        assert search_center(outbound) == MIDTOWN
        assert search_center(inbound) == MIDTOWN

    @pytest.mark.asyncio
    async def test_non_pending_ride_is_skipped(self, matcher, make_ride):
        ride = await make_ride(status=RideStatus.CANCELLED)

        result = await matcher.dispatch(ride.id)

        assert result.outcome == DispatchOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_no_driver_raises(self, matcher, make_ride, fetch):
        ride = await make_ride()

        with pytest.raises(NoDriverAvailable):
            await matcher.dispatch(ride.id)
        assert (await fetch(RideRequest, ride.id)).status == RideStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_ride(self, matcher):
        with pytest.raises(NotFound):
            await matcher.dispatch(999)

    @pytest.mark.asyncio
    async def test_every_member_shares_the_pool_direction(self, matcher, make_driver, make_ride, fetch):
        await make_driver(lat=40.71, lng=-73.90)
        rides = [
            await make_ride(pickup=(40.71, -73.90)),
            await make_ride(pickup=(40.70, -73.88)),
            await make_ride(pickup=(40.69, -73.87), seats=2),
        ]
        pool_ids = {(await matcher.dispatch(r.id)).pool_id for r in rides}

        assert len(pool_ids) == 1
        pool = await fetch(Pool, pool_ids.pop())
        assert pool.filled_seats == 4 <= pool.max_seats
        assert pool.status == PoolStatus.LOCKED
        for ride in rides:
            assert (await fetch(RideRequest, ride.id)).direction == pool.direction


def fill_before_assigning(session_factory, calls, every_call=False):
    """Wrap assign_to_pool so the target pool runs out of seats just before the ride tries to join."""
    real = matcher_module.assign_to_pool

    async def _assign(factory, ride_id, pool_id, **kwargs):
        calls.append(pool_id)
        if every_call or len(calls) == 1:
            async with session_factory() as db:
                pool = await db.get(Pool, pool_id)
                pool.filled_seats = pool.max_seats
                await db.commit()
        return await real(factory, ride_id, pool_id, **kwargs)

    return _assign


class TestMatcherConflicts:
    @pytest.mark.asyncio
    async def test_conflict_falls_through_to_next_pool(
        self, matcher, session_factory, make_driver, make_ride, make_pool, fetch, monkeypatch
    ):
        off_path = await make_pool(await make_driver(), [await make_ride(pickup=(40.71, -73.82))])
        on_path = await make_pool(await make_driver(), [await make_ride(pickup=(40.70, -73.87))])
        ride = await make_ride(pickup=(40.69, -73.85), max_detour_km=10.0)
        calls = []
        monkeypatch.setattr(matcher_module, "assign_to_pool", fill_before_assigning(session_factory, calls))

        result = await matcher.dispatch(ride.id)

        assert calls == [on_path.id, off_path.id]
        assert result.outcome == DispatchOutcome.MATCHED
        assert result.pool_id == off_path.id
        assert (await fetch(RideRequest, ride.id)).pool_id == off_path.id
        assert (await fetch(Pool, on_path.id)).version == 2

    @pytest.mark.asyncio
    async def test_repeated_conflicts_create_a_pool(
        self, matcher, session_factory, make_driver, make_ride, make_pool, fetch, monkeypatch
    ):
        await make_pool(await make_driver(), [await make_ride(pickup=(40.71, -73.82))])
        await make_pool(await make_driver(), [await make_ride(pickup=(40.70, -73.87))])
        spare = await make_driver(lat=40.691, lng=-73.851)
        ride = await make_ride(pickup=(40.69, -73.85), max_detour_km=10.0)
        calls = []
        monkeypatch.setattr(
            matcher_module, "assign_to_pool", fill_before_assigning(session_factory, calls, every_call=True)
        )

        result = await matcher.dispatch(ride.id)

        assert len(calls) == matcher.policy.conflict_retries + 1
        assert result.outcome == DispatchOutcome.POOL_CREATED
        assert result.driver_id == spare.id
        assert result.pool_id not in calls
        assert (await fetch(RideRequest, ride.id)).pool_id == result.pool_id

    @pytest.mark.asyncio
    async def test_ride_cancelled_mid_dispatch_is_skipped(
        self, matcher, session_factory, make_driver, make_ride, make_pool, fetch, monkeypatch
    ):
        pool = await make_pool(await make_driver(), [await make_ride(pickup=(40.70, -73.87))])
        ride = await make_ride(pickup=(40.69, -73.85), max_detour_km=10.0)
        real = matcher_module.assign_to_pool

        async def cancel_then_assign(factory, ride_id, pool_id, **kwargs):
            await cancel_ride(factory, ride_id)
            return await real(factory, ride_id, pool_id, **kwargs)

        monkeypatch.setattr(matcher_module, "assign_to_pool", cancel_then_assign)

        result = await matcher.dispatch(ride.id)

        assert result.outcome == DispatchOutcome.SKIPPED
        assert (await fetch(RideRequest, ride.id)).status == RideStatus.CANCELLED
        assert (await fetch(Pool, pool.id)).filled_seats == 1
