import itertools

import fakeredis
import pytest

from poolmatch.database import make_engine, make_session_factory
from poolmatch.models import Base, Driver, DriverStatus, Pool, PoolStatus, RideRequest, RideStatus, User, Vehicle
from poolmatch.services.assignment import ride_stops
from poolmatch.services.detour import best_insertion, dump_route, route_length
from poolmatch.services.geo import centroid, haversine_km
from poolmatch.services.queue import RedisJobQueue
from poolmatch.services.rides import detect_direction

AIRPORT = (40.6413, -73.7781)
MIDTOWN = (40.75, -74.00)


@pytest.fixture
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'poolmatch.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def queue(redis_client):
    return RedisJobQueue(redis_client, name="test-matching", max_attempts=3, backoff_seconds=0)


@pytest.fixture
def make_user(session_factory):
    counter = itertools.count(1)

    async def _make(name: str | None = None) -> User:
        n = next(counter)
        async with session_factory() as db:
            user = User(name=name or f"user{n}", email=f"user{n}@example.com")
            db.add(user)
            await db.commit()
        return user

    return _make


@pytest.fixture
def make_driver(session_factory, make_user):
    """Driver with a vehicle, available at (lat, lng) unless told otherwise."""
    plates = itertools.count(1)

    async def _make(
        lat: float = MIDTOWN[0],
        lng: float = MIDTOWN[1],
        status: DriverStatus = DriverStatus.AVAILABLE,
        seats: int = 4,
        luggage: int = 4,
    ) -> Driver:
        user = await make_user()
        async with session_factory() as db:
            driver = Driver(user_id=user.id, status=status, current_lat=lat, current_lng=lng)
            db.add(driver)
            await db.flush()
            db.add(Vehicle(driver_id=driver.id, license_plate=f"T{next(plates):04d}", max_seats=seats, max_luggage=luggage))
            await db.commit()
        return driver

    return _make


@pytest.fixture
def make_ride(session_factory, make_user):
    async def _make(
        pickup=MIDTOWN,
        dropoff=AIRPORT,
        seats: int = 1,
        luggage: int = 0,
        max_detour_km: float = 3.0,
        status: RideStatus = RideStatus.PENDING,
    ) -> RideRequest:
        user = await make_user()
        direction = detect_direction(pickup[0], pickup[1], dropoff[0], dropoff[1])
        assert direction is not None
        async with session_factory() as db:
            ride = RideRequest(
                user_id=user.id,
                pickup_lat=pickup[0],
                pickup_lng=pickup[1],
                dropoff_lat=dropoff[0],
                dropoff_lng=dropoff[1],
                direction=direction,
                direct_distance_km=haversine_km(*pickup, *dropoff),
                seats=seats,
                luggage=luggage,
                max_detour_km=max_detour_km,
                status=status,
            )
            db.add(ride)
            await db.commit()
        return ride

    return _make


@pytest.fixture
def make_pool(session_factory):
    """Pool bound to `driver` already holding `rides` (inserted one by one at their cheapest positions)."""

    async def _make(driver: Driver, rides: list[RideRequest], status: PoolStatus = PoolStatus.FORMING,
                    max_seats: int = 4, max_luggage: int = 4) -> Pool:
        direction = rides[0].direction
        route = []
        for ride in rides:
            route = list(best_insertion(route, direction, *ride_stops(ride)).route)
        async with session_factory() as db:
            pool = Pool(
                driver_id=driver.id,
                max_seats=max_seats,
                max_luggage=max_luggage,
                filled_seats=sum(r.seats for r in rides),
                filled_luggage=sum(r.luggage for r in rides),
                waypoints=dump_route(route),
                total_distance_km=route_length(route),
                direction=direction,
                status=status,
            )
            pool.center_lat, pool.center_lng = centroid(wp.point for wp in route)
            db.add(pool)
            await db.flush()
            for ride in rides:
                row = await db.get(RideRequest, ride.id)
                row.pool_id = pool.id
                row.status = RideStatus.MATCHED
            row = await db.get(Driver, driver.id)
            row.status = DriverStatus.ASSIGNED
            await db.commit()
        return pool

    return _make


@pytest.fixture
def fetch(session_factory):
    """Fresh read of one row."""

    async def _fetch(model, ident):
        async with session_factory() as db:
            return await db.get(model, ident)

    return _fetch

