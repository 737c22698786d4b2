"""
Assignment transactor: every write to pools, rides and drivers goes through here.

Each operation is one short transaction: lock rows (pool or driver before ride),
re-read them under the lock, re-validate, mutate, commit. Reads done earlier by the
matcher are never trusted. A pool that stopped being eligible is reported as a
CONFLICT result rather than an exception, so the matcher can fall back.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from poolmatch.config import settings
from poolmatch.database import transaction
from poolmatch.models.driver import Driver, DriverStatus, Vehicle
from poolmatch.models.pool import Pool, PoolStatus, WaypointRole
from poolmatch.models.ride import RideRequest, RideStatus
from poolmatch.services.detour import CorruptPoolRoute, Waypoint, best_insertion, dump_route, load_route, route_length
from poolmatch.services.errors import CapacityExceeded, NoDriverAvailable, NotAuthorized, NotFound, TransientStoreFailure
from poolmatch.services.geo import centroid
from poolmatch.services.pricing import PricingFn, calculate_price
from poolmatch.services.spatial import find_available_drivers
from poolmatch.services.state_machine import (
    OPEN_POOL_STATUSES,
    POOL_TRANSITIONS,
    POST_ARRIVAL_POOL_STATUSES,
    TERMINAL_RIDE_STATUSES,
    InvalidTransition,
    can_transition,
    transition_driver,
    transition_pool,
    transition_ride,
)

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


class AssignmentStatus(str, enum.Enum):
    ASSIGNED = "assigned"
    POOL_CREATED = "pool_created"
    CONFLICT = "conflict"  # pool no longer eligible; caller retries elsewhere
    RIDE_NOT_PENDING = "ride_not_pending"  # someone else already handled the ride


@dataclass(frozen=True)
class AssignmentResult:
    status: AssignmentStatus
    ride_id: int
    pool_id: int | None = None
    driver_id: int | None = None
    reason: str | None = None
    pool_version: int | None = None
    extra_km: float | None = None
    pool_locked: bool = False

    @property
    def ok(self) -> bool:
        return self.status in (AssignmentStatus.ASSIGNED, AssignmentStatus.POOL_CREATED)


@dataclass(frozen=True)
class PoolTransitionResult:
    pool_id: int
    driver_id: int
    status: PoolStatus
    ride_ids: list[int]
    filled_seats: int


@dataclass(frozen=True)
class CancellationResult:
    ride_id: int
    fee: float
    pool_id: int | None = None
    released_seats: int = 0
    released_luggage: int = 0
    pool_status: PoolStatus | None = None


# --- row access ---


async def _get_ride(db: AsyncSession, ride_id: int) -> RideRequest:
    ride = (await db.execute(select(RideRequest).where(RideRequest.id == ride_id))).scalar_one_or_none()
    if ride is None:
        raise NotFound("ride", ride_id)
    return ride


async def _lock_ride(db: AsyncSession, ride_id: int) -> RideRequest:
    q = (
        select(RideRequest)
        .where(RideRequest.id == ride_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    ride = (await db.execute(q)).scalar_one_or_none()
    if ride is None:
        raise NotFound("ride", ride_id)
    return ride


async def _lock_pool(db: AsyncSession, pool_id: int) -> Pool:
    q = select(Pool).where(Pool.id == pool_id).with_for_update().execution_options(populate_existing=True)
    pool = (await db.execute(q)).scalar_one_or_none()
    if pool is None:
        raise NotFound("pool", pool_id)
    return pool


async def _lock_driver(db: AsyncSession, driver_id: int) -> Driver | None:
    q = select(Driver).where(Driver.id == driver_id).with_for_update().execution_options(populate_existing=True)
    return (await db.execute(q)).scalar_one_or_none()


async def _lock_pool_rides(db: AsyncSession, pool_id: int, status: RideStatus) -> list[RideRequest]:
    q = (
        select(RideRequest)
        .where(RideRequest.pool_id == pool_id)
        .where(RideRequest.status == status)
        .order_by(RideRequest.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list((await db.execute(q)).scalars().all())


# --- helpers ---


def ride_stops(ride: RideRequest) -> tuple[Waypoint, Waypoint]:
    return (
        Waypoint(ride.pickup_lat, ride.pickup_lng, WaypointRole.PICKUP, ride.id),
        Waypoint(ride.dropoff_lat, ride.dropoff_lng, WaypointRole.DROPOFF, ride.id),
    )


def _set_route(pool: Pool, route) -> None:
    """Store route and refresh everything derived from it."""
    pool.waypoints = dump_route(route)
    pool.total_distance_km = route_length(route)
    pool.center_lat, pool.center_lng = centroid(wp.point for wp in route)


def _ineligibility(pool: Pool, ride: RideRequest) -> str | None:
    if pool.status not in OPEN_POOL_STATUSES:
        return f"pool is {pool.status.value}"
    if pool.direction != ride.direction:
        return "direction mismatch"
    if pool.filled_seats + ride.seats > pool.max_seats:
        return "not enough seats"
    if pool.filled_luggage + ride.luggage > pool.max_luggage:
        return "not enough luggage space"
    return None


# --- operations ---


async def assign_to_pool(
    session_factory: SessionFactory,
    ride_id: int,
    pool_id: int,
    *,
    pricing: PricingFn = calculate_price,
    lock_timeout_ms: int = settings.LOCK_TIMEOUT_MS,
    now: datetime | None = None,
) -> AssignmentResult:
    """
    Add a pending ride to an open pool. Re-validates status, direction, capacity and detour
    under the pool lock; returns CONFLICT when any of them no longer holds.
    """
    try:
        async with transaction(session_factory, lock_timeout_ms) as db:
            pool = await _lock_pool(db, pool_id)
            ride = await _lock_ride(db, ride_id)
            if ride.status != RideStatus.PENDING:
                return AssignmentResult(
                    AssignmentStatus.RIDE_NOT_PENDING, ride_id, pool_id=ride.pool_id,
                    reason=f"ride is {ride.status.value}",
                )
            reason = _ineligibility(pool, ride)
            if reason is None:
                pickup, dropoff = ride_stops(ride)
                try:
                    insertion = best_insertion(load_route(pool.waypoints), pool.direction, pickup, dropoff)
                except CorruptPoolRoute as exc:
                    logger.error("Pool %s has a corrupt route: %s", pool.id, exc)
                    reason = "corrupt pool route"
                else:
                    if not insertion.admits(ride.max_detour_km):
                        reason = f"detour {insertion.extra_km:.2f} km exceeds {ride.max_detour_km:.2f} km"
            if reason is not None:
                logger.warning("Ride %s cannot join pool %s: %s", ride_id, pool_id, reason)
                return AssignmentResult(AssignmentStatus.CONFLICT, ride_id, pool_id=pool_id, reason=reason)

            _set_route(pool, insertion.route)
            pool.filled_seats += ride.seats
            pool.filled_luggage += ride.luggage
            full = pool.filled_seats >= pool.max_seats
            if full:
                transition_pool(pool, PoolStatus.LOCKED, now)

            ride.pool_id = pool.id
            ride.individual_price = pricing(ride.direct_distance_km, ride.seats, len(pool.member_ride_ids))
            ride.dispatch_error = None
            transition_ride(ride, RideStatus.MATCHED, now)
            await db.flush()
            result = AssignmentResult(
                AssignmentStatus.ASSIGNED,
                ride_id,
                pool_id=pool.id,
                driver_id=pool.driver_id,
                pool_version=pool.version,
                extra_km=insertion.extra_km,
                pool_locked=full,
            )
    except StaleDataError:
        logger.warning("Pool %s changed underneath ride %s", pool_id, ride_id)
        return AssignmentResult(AssignmentStatus.CONFLICT, ride_id, pool_id=pool_id, reason="pool version changed")

    logger.info(
        "Ride %s joined pool %s (+%.2f km, %s/%s seats%s)",
        ride_id, pool_id, result.extra_km, pool.filled_seats, pool.max_seats, ", now full" if full else "",
    )
    return result


async def create_pool_for_ride(
    session_factory: SessionFactory,
    ride_id: int,
    *,
    driver_radius_km: float = settings.DRIVER_SEARCH_RADIUS_KM,
    driver_limit: int = settings.DRIVER_SEARCH_LIMIT,
    pricing: PricingFn = calculate_price,
    lock_timeout_ms: int = settings.LOCK_TIMEOUT_MS,
    now: datetime | None = None,
) -> AssignmentResult:
    """
    Open a new pool for the ride, bound to the nearest available driver whose vehicle fits it.
    Raises NoDriverAvailable (retry later) or CapacityExceeded (no reachable vehicle is big enough).
    """
    async with transaction(session_factory, lock_timeout_ms) as db:
        ride = await _get_ride(db, ride_id)
        if ride.status != RideStatus.PENDING:
            return AssignmentResult(
                AssignmentStatus.RIDE_NOT_PENDING, ride_id, pool_id=ride.pool_id,
                reason=f"ride is {ride.status.value}",
            )
        candidates = await find_available_drivers(
            db, lat=ride.pickup_lat, lng=ride.pickup_lng, radius_km=driver_radius_km, limit=driver_limit
        )
        too_small = 0
        for candidate in candidates:
            driver = await _lock_driver(db, candidate.driver_id)
            if driver is None or driver.status != DriverStatus.AVAILABLE:
                continue  # taken since the search
            vehicle = (
                await db.execute(select(Vehicle).where(Vehicle.driver_id == driver.id))
            ).scalar_one_or_none()
            if vehicle is None:
                logger.warning("Driver %s has no vehicle, skipping", driver.id)
                continue
            if ride.seats > vehicle.max_seats or ride.luggage > vehicle.max_luggage:
                too_small += 1
                continue

            ride = await _lock_ride(db, ride_id)
            if ride.status != RideStatus.PENDING:
                return AssignmentResult(
                    AssignmentStatus.RIDE_NOT_PENDING, ride_id, pool_id=ride.pool_id,
                    reason=f"ride is {ride.status.value}",
                )
            pool = Pool(
                driver_id=driver.id,
                vehicle_id=vehicle.id,
                max_seats=vehicle.max_seats,
                max_luggage=vehicle.max_luggage,
                filled_seats=ride.seats,
                filled_luggage=ride.luggage,
                direction=ride.direction,
                status=PoolStatus.FORMING,
            )
            _set_route(pool, ride_stops(ride))
            full = pool.filled_seats >= pool.max_seats
            if full:
                transition_pool(pool, PoolStatus.LOCKED, now)
            db.add(pool)
            await db.flush()

            transition_driver(driver, DriverStatus.ASSIGNED)
            ride.pool_id = pool.id
            ride.individual_price = pricing(ride.direct_distance_km, ride.seats, 1)
            ride.dispatch_error = None
            transition_ride(ride, RideStatus.MATCHED, now)
            await db.flush()
            result = AssignmentResult(
                AssignmentStatus.POOL_CREATED,
                ride_id,
                pool_id=pool.id,
                driver_id=driver.id,
                pool_version=pool.version,
                extra_km=0.0,
                pool_locked=full,
            )
            break
        else:
            if too_small:
                raise CapacityExceeded(
                    f"ride {ride_id} needs {ride.seats} seats / {ride.luggage} bags; no reachable vehicle fits"
                )
            raise NoDriverAvailable(f"no available driver within {driver_radius_km} km of ride {ride_id}")

    logger.info("Created pool %s for ride %s with driver %s", result.pool_id, ride_id, result.driver_id)
    return result


async def driver_arrived(
    session_factory: SessionFactory,
    pool_id: int,
    driver_id: int,
    *,
    lock_timeout_ms: int = settings.LOCK_TIMEOUT_MS,
    now: datetime | None = None,
) -> PoolTransitionResult:
    """Driver reached the pickup: close the pool for good and move its matched rides along."""
    async with transaction(session_factory, lock_timeout_ms) as db:
        pool = await _lock_pool(db, pool_id)
        if pool.driver_id != driver_id:
            raise NotAuthorized(f"driver {driver_id} is not assigned to pool {pool_id}")
        transition_pool(pool, PoolStatus.DRIVER_ARRIVED, now)
        rides = await _lock_pool_rides(db, pool.id, RideStatus.MATCHED)
        for ride in rides:
            transition_ride(ride, RideStatus.DRIVER_ARRIVED, now)
        await db.flush()
        result = PoolTransitionResult(pool.id, driver_id, pool.status, [r.id for r in rides], pool.filled_seats)
    logger.info("Driver %s arrived for pool %s (%d rides)", driver_id, pool_id, len(result.ride_ids))
    return result


async def start_trip(
    session_factory: SessionFactory,
    pool_id: int,
    driver_id: int,
    *,
    lock_timeout_ms: int = settings.LOCK_TIMEOUT_MS,
    now: datetime | None = None,
) -> PoolTransitionResult:
    async with transaction(session_factory, lock_timeout_ms) as db:
        pool = await _lock_pool(db, pool_id)
        if pool.driver_id != driver_id:
            raise NotAuthorized(f"driver {driver_id} is not assigned to pool {pool_id}")
        transition_pool(pool, PoolStatus.ONGOING, now)
        driver = await _lock_driver(db, driver_id)
        if driver is None:
            raise NotFound("driver", driver_id)
        transition_driver(driver, DriverStatus.BUSY)
        rides = await _lock_pool_rides(db, pool.id, RideStatus.DRIVER_ARRIVED)
        for ride in rides:
            transition_ride(ride, RideStatus.ONGOING, now)
        await db.flush()
        return PoolTransitionResult(pool.id, driver_id, pool.status, [r.id for r in rides], pool.filled_seats)


async def complete_trip(
    session_factory: SessionFactory,
    pool_id: int,
    driver_id: int,
    *,
    lock_timeout_ms: int = settings.LOCK_TIMEOUT_MS,
    now: datetime | None = None,
) -> PoolTransitionResult:
    async with transaction(session_factory, lock_timeout_ms) as db:
        pool = await _lock_pool(db, pool_id)
        if pool.driver_id != driver_id:
            raise NotAuthorized(f"driver {driver_id} is not assigned to pool {pool_id}")
        transition_pool(pool, PoolStatus.COMPLETED, now)
        driver = await _lock_driver(db, driver_id)
        if driver is None:
            raise NotFound("driver", driver_id)
        transition_driver(driver, DriverStatus.AVAILABLE)
        driver.total_rides += 1
        rides = await _lock_pool_rides(db, pool.id, RideStatus.ONGOING)
        for ride in rides:
            transition_ride(ride, RideStatus.COMPLETED, now)
        await db.flush()
        result = PoolTransitionResult(pool.id, driver_id, pool.status, [r.id for r in rides], pool.filled_seats)
    logger.info("Pool %s completed by driver %s", pool_id, driver_id)
    return result


async def cancel_ride(
    session_factory: SessionFactory,
    ride_id: int,
    *,
    reason: str | None = None,
    cancellation_fee: float = settings.CANCELLATION_FEE,
    lock_timeout_ms: int = settings.LOCK_TIMEOUT_MS,
    now: datetime | None = None,
) -> CancellationResult:
    """
    Cancel a ride. Free before the driver arrived, `cancellation_fee` after.
    A ride bound to a pool gives its seats, luggage and stops back under the pool lock;
    an emptied pool is cancelled and its driver made available again.
    """
    for _ in range(3):
        async with transaction(session_factory, lock_timeout_ms) as db:
            peek = await _get_ride(db, ride_id)
            if peek.status in TERMINAL_RIDE_STATUSES:
                raise InvalidTransition(f"ride {ride_id} is already {peek.status.value}")
            pool = await _lock_pool(db, peek.pool_id) if peek.pool_id is not None else None
            driver = None
            if pool is not None and pool.member_ride_ids == [ride_id] and pool.driver_id is not None:
                driver = await _lock_driver(db, pool.driver_id)
            ride = await _lock_ride(db, ride_id)
            if ride.status in TERMINAL_RIDE_STATUSES:
                raise InvalidTransition(f"ride {ride_id} is already {ride.status.value}")
            if ride.pool_id != (pool.id if pool is not None else None):
                # matched between the peek and the lock; start over with the right pool
                continue

            fee = cancellation_fee if pool is not None and pool.status in POST_ARRIVAL_POOL_STATUSES else 0.0
            if pool is not None:
                remaining = [wp for wp in load_route(pool.waypoints) if wp.ride_id != ride.id]
                pool.filled_seats -= ride.seats
                pool.filled_luggage -= ride.luggage
                if remaining:
                    _set_route(pool, remaining)
                    if pool.status == PoolStatus.LOCKED and pool.filled_seats < pool.max_seats:
                        transition_pool(pool, PoolStatus.FORMING, now)
                else:
                    pool.waypoints = []
                    pool.total_distance_km = 0.0
                    if can_transition(POOL_TRANSITIONS, pool.status, PoolStatus.CANCELLED):
                        transition_pool(pool, PoolStatus.CANCELLED, now)
                        if driver is not None and driver.status == DriverStatus.ASSIGNED:
                            transition_driver(driver, DriverStatus.AVAILABLE)
                ride.pool_id = None

            transition_ride(ride, RideStatus.CANCELLED, now)
            ride.cancellation_reason = reason
            ride.cancellation_fee = fee
            await db.flush()
            result = CancellationResult(
                ride_id=ride_id,
                fee=fee,
                pool_id=pool.id if pool is not None else None,
                released_seats=ride.seats if pool is not None else 0,
                released_luggage=ride.luggage if pool is not None else 0,
                pool_status=pool.status if pool is not None else None,
            )
        logger.info("Ride %s cancelled (fee %.2f, pool %s)", ride_id, fee, result.pool_id)
        return result
    raise TransientStoreFailure(f"ride {ride_id} kept changing while being cancelled")
