"""Ride routes: submit, poll status, cancel."""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from poolmatch.config import Settings
from poolmatch.database import get_db
from poolmatch.deps import get_queue, get_session_factory, get_settings
from poolmatch.schemas.ride import CancellationResponse, RideCancel, RideCreate, RideResponse, RideSubmitted
from poolmatch.services.assignment import cancel_ride
from poolmatch.services.errors import NotFound, TransientStoreFailure
from poolmatch.services.queue import RedisJobQueue
from poolmatch.services.rides import QueueUnavailable, UnsupportedRoute, get_ride_status, submit_ride
from poolmatch.services.state_machine import InvalidTransition

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post("", response_model=RideSubmitted, status_code=status.HTTP_202_ACCEPTED)
async def create_ride(
    body: RideCreate,
    db: AsyncSession = Depends(get_db),
    queue: RedisJobQueue = Depends(get_queue),
    settings: Settings = Depends(get_settings),
):
    """Accept a ride request and queue it for matching. Poll GET /rides/{id} for the result."""
    try:
        ride, estimate = await submit_ride(db, queue, body, settings)
    except UnsupportedRoute as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except QueueUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return RideSubmitted(
        id=ride.id,
        status=ride.status,
        direction=ride.direction,
        direct_distance_km=round(ride.direct_distance_km, 3),
        estimated_price=estimate,
    )


@router.get("/{ride_id}", response_model=RideResponse)
async def read_ride(ride_id: int, db: AsyncSession = Depends(get_db)):
    try:
        return await get_ride_status(db, ride_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("/{ride_id}/cancel", response_model=CancellationResponse)
async def cancel(
    ride_id: int,
    body: RideCancel,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
):
    """Cancel a ride. Free until the driver arrives, a fixed fee after."""
    try:
        result = await cancel_ride(
            session_factory, ride_id, reason=body.reason, cancellation_fee=settings.CANCELLATION_FEE
        )
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except TransientStoreFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return CancellationResponse(ride_id=result.ride_id, fee=result.fee, pool_id=result.pool_id)
