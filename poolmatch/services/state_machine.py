"""Pool / ride / driver state machines: enforce allowed transitions and stamp transition times."""
from datetime import datetime, timezone

from poolmatch.models.driver import Driver, DriverStatus
from poolmatch.models.pool import Pool, PoolStatus
from poolmatch.models.ride import RideRequest, RideStatus
from poolmatch.services.errors import DispatchError


class InvalidTransition(DispatchError):
    """Raised instead of overwriting a status with one the table does not allow."""


# Allowed transitions: from_state -> {to_state, ...}
POOL_TRANSITIONS: dict[PoolStatus, set[PoolStatus]] = {
    PoolStatus.FORMING: {PoolStatus.LOCKED, PoolStatus.DRIVER_ARRIVED, PoolStatus.CANCELLED},
    PoolStatus.LOCKED: {PoolStatus.FORMING, PoolStatus.DRIVER_ARRIVED, PoolStatus.CANCELLED},
    PoolStatus.DRIVER_ARRIVED: {PoolStatus.ONGOING, PoolStatus.CANCELLED},
    PoolStatus.ONGOING: {PoolStatus.COMPLETED},
    PoolStatus.COMPLETED: set(),
    PoolStatus.CANCELLED: set(),
}

RIDE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.PENDING: {RideStatus.MATCHED, RideStatus.CANCELLED},
    RideStatus.MATCHED: {RideStatus.DRIVER_ARRIVED, RideStatus.CANCELLED},
    RideStatus.DRIVER_ARRIVED: {RideStatus.ONGOING, RideStatus.CANCELLED},
    RideStatus.ONGOING: {RideStatus.COMPLETED, RideStatus.CANCELLED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}

DRIVER_TRANSITIONS: dict[DriverStatus, set[DriverStatus]] = {
    DriverStatus.OFFLINE: {DriverStatus.AVAILABLE},
    DriverStatus.AVAILABLE: {DriverStatus.OFFLINE, DriverStatus.ASSIGNED},
    DriverStatus.ASSIGNED: {DriverStatus.BUSY, DriverStatus.AVAILABLE},
    DriverStatus.BUSY: {DriverStatus.AVAILABLE},
}

# What a driver may change on their own; assigned/busy are released only by the trip lifecycle
AVAILABILITY_TRANSITIONS: dict[DriverStatus, set[DriverStatus]] = {
    DriverStatus.OFFLINE: {DriverStatus.AVAILABLE},
    DriverStatus.AVAILABLE: {DriverStatus.OFFLINE},
}

# Pools a new ride may still join
OPEN_POOL_STATUSES = frozenset({PoolStatus.FORMING})
# Pools the driver has already reached; cancelling a member costs a fee
POST_ARRIVAL_POOL_STATUSES = frozenset({PoolStatus.DRIVER_ARRIVED, PoolStatus.ONGOING, PoolStatus.COMPLETED})
TERMINAL_RIDE_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})

_POOL_TIMESTAMPS = {
    PoolStatus.LOCKED: "locked_at",
    PoolStatus.DRIVER_ARRIVED: "driver_arrived_at",
    PoolStatus.ONGOING: "started_at",
    PoolStatus.COMPLETED: "completed_at",
    PoolStatus.CANCELLED: "cancelled_at",
}

_RIDE_TIMESTAMPS = {
    RideStatus.MATCHED: "matched_at",
    RideStatus.DRIVER_ARRIVED: "driver_arrived_at",
    RideStatus.ONGOING: "started_at",
    RideStatus.COMPLETED: "completed_at",
    RideStatus.CANCELLED: "cancelled_at",
}


def can_transition(table: dict, current, to_state) -> bool:
    return to_state in table.get(current, set())


def check_transition(table: dict, current, to_state, what: str) -> None:
    if not can_transition(table, current, to_state):
        raise InvalidTransition(f"{what}: transition {current.value} -> {to_state.value} not allowed")


def transition_pool(pool: Pool, to_state: PoolStatus, now: datetime | None = None) -> Pool:
    check_transition(POOL_TRANSITIONS, pool.status, to_state, f"pool {pool.id}")
    pool.status = to_state
    attr = _POOL_TIMESTAMPS.get(to_state)
    if attr:
        setattr(pool, attr, now or datetime.now(timezone.utc))
    return pool


def transition_ride(ride: RideRequest, to_state: RideStatus, now: datetime | None = None) -> RideRequest:
    check_transition(RIDE_TRANSITIONS, ride.status, to_state, f"ride {ride.id}")
    ride.status = to_state
    attr = _RIDE_TIMESTAMPS.get(to_state)
    if attr:
        setattr(ride, attr, now or datetime.now(timezone.utc))
    return ride


def transition_driver(driver: Driver, to_state: DriverStatus, table: dict = DRIVER_TRANSITIONS) -> Driver:
    check_transition(table, driver.status, to_state, f"driver {driver.id}")
    driver.status = to_state
    return driver
