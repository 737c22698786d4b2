"""Driver registration, availability and location updates."""
import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from poolmatch.config import settings
from poolmatch.database import transaction
from poolmatch.models.driver import Driver, DriverStatus, Vehicle
from poolmatch.models.user import User, UserRole
from poolmatch.schemas.driver import DriverCreate
from poolmatch.services.errors import NotFound
from poolmatch.services.state_machine import AVAILABILITY_TRANSITIONS, transition_driver

logger = logging.getLogger(__name__)


async def update_driver_location(db: AsyncSession, driver_id: int, lat: float, lng: float) -> None:
    """Single lock-free UPDATE; position may lag behind reality and that is fine for search."""
    result = await db.execute(
        update(Driver)
        .where(Driver.id == driver_id)
        .values(current_lat=lat, current_lng=lng, last_location_at=datetime.now(timezone.utc))
    )
    if result.rowcount == 0:
        raise NotFound("driver", driver_id)


async def set_driver_online(
    session_factory: async_sessionmaker[AsyncSession],
    driver_id: int,
    online: bool,
    *,
    lock_timeout_ms: int = settings.LOCK_TIMEOUT_MS,
) -> Driver:
    """
    available <-> offline only. A driver bound to a pool (assigned or busy) can neither go
    offline nor declare themselves available again; both raise InvalidTransition.
    """
    async with transaction(session_factory, lock_timeout_ms) as db:
        q = select(Driver).where(Driver.id == driver_id).with_for_update().execution_options(populate_existing=True)
        driver = (await db.execute(q)).scalar_one_or_none()
        if driver is None:
            raise NotFound("driver", driver_id)
        target = DriverStatus.AVAILABLE if online else DriverStatus.OFFLINE
        if driver.status != target:
            transition_driver(driver, target, AVAILABILITY_TRANSITIONS)
            await db.flush()
    logger.info("Driver %s is now %s", driver_id, driver.status.value)
    return driver


async def register_driver(db: AsyncSession, body: DriverCreate) -> tuple[Driver, Vehicle]:
    """Attach a driver profile and vehicle to an existing user. The driver starts offline."""
    user = (await db.execute(select(User).where(User.id == body.user_id))).scalar_one_or_none()
    if user is None:
        raise NotFound("user", body.user_id)
    user.role = UserRole.DRIVER
    driver = Driver(
        user_id=user.id,
        status=DriverStatus.OFFLINE,
        current_lat=body.lat,
        current_lng=body.lng,
        last_location_at=datetime.now(timezone.utc) if body.lat is not None else None,
    )
    db.add(driver)
    await db.flush()
    vehicle = Vehicle(
        driver_id=driver.id,
        model=body.vehicle.model,
        license_plate=body.vehicle.license_plate,
        max_seats=body.vehicle.max_seats,
        max_luggage=body.vehicle.max_luggage,
    )
    db.add(vehicle)
    await db.flush()
    return driver, vehicle
