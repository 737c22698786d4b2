from poolmatch.models.base import Base
from poolmatch.models.driver import Driver, DriverStatus, Vehicle
from poolmatch.models.pool import Direction, Pool, PoolStatus, WaypointRole
from poolmatch.models.ride import RideRequest, RideStatus
from poolmatch.models.user import User, UserRole

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Driver",
    "DriverStatus",
    "Vehicle",
    "Pool",
    "PoolStatus",
    "Direction",
    "WaypointRole",
    "RideRequest",
    "RideStatus",
]
