"""Driver routes: register, report location, go online/offline."""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from poolmatch.database import get_db
from poolmatch.deps import get_session_factory
from poolmatch.models.driver import Driver, Vehicle
from poolmatch.schemas.driver import AvailabilityUpdate, DriverCreate, DriverResponse, LocationUpdate
from poolmatch.services.drivers import register_driver, set_driver_online, update_driver_location
from poolmatch.services.errors import NotFound
from poolmatch.services.state_machine import InvalidTransition

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post("", response_model=DriverResponse, status_code=status.HTTP_201_CREATED)
async def create_driver(body: DriverCreate, db: AsyncSession = Depends(get_db)):
    """Register an existing user as a driver with one vehicle. Starts offline."""
    taken = await db.execute(select(Driver.id).where(Driver.user_id == body.user_id))
    if taken.scalar_one_or_none() is not None:
        raise HTTPException(status_code=400, detail="User is already a driver")
    plate = await db.execute(select(Vehicle.id).where(Vehicle.license_plate == body.vehicle.license_plate))
    if plate.scalar_one_or_none() is not None:
        raise HTTPException(status_code=400, detail="License plate already registered")
    try:
        driver, _ = await register_driver(db, body)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return driver


@router.post("/{driver_id}/location", status_code=status.HTTP_204_NO_CONTENT)
async def report_location(driver_id: int, body: LocationUpdate, db: AsyncSession = Depends(get_db)):
    try:
        await update_driver_location(db, driver_id, body.lat, body.lng)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return None


@router.post("/{driver_id}/status", response_model=DriverResponse)
async def set_status(
    driver_id: int,
    body: AvailabilityUpdate,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Go online (available) or offline. Refused while the driver is bound to a pool."""
    try:
        return await set_driver_online(session_factory, driver_id, body.online)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
