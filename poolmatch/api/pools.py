"""Driver-side pool routes: arrive at pickup, start and complete the trip."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from poolmatch.deps import get_session_factory
from poolmatch.schemas.pool import PoolAction, PoolTransitionResponse
from poolmatch.services.assignment import complete_trip, driver_arrived, start_trip
from poolmatch.services.errors import NotAuthorized, NotFound, TransientStoreFailure
from poolmatch.services.state_machine import InvalidTransition

router = APIRouter(prefix="/pools", tags=["pools"])


async def _run(operation, session_factory, pool_id: int, driver_id: int) -> PoolTransitionResponse:
    try:
        result = await operation(session_factory, pool_id, driver_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except NotAuthorized as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except TransientStoreFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return PoolTransitionResponse(
        pool_id=result.pool_id,
        driver_id=result.driver_id,
        status=result.status,
        ride_ids=result.ride_ids,
        filled_seats=result.filled_seats,
    )


@router.post("/{pool_id}/arrive", response_model=PoolTransitionResponse)
async def arrive(
    pool_id: int,
    body: PoolAction,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Driver reached the pickup. The pool stops accepting riders."""
    return await _run(driver_arrived, session_factory, pool_id, body.driver_id)


@router.post("/{pool_id}/start", response_model=PoolTransitionResponse)
async def start(
    pool_id: int,
    body: PoolAction,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    return await _run(start_trip, session_factory, pool_id, body.driver_id)


@router.post("/{pool_id}/complete", response_model=PoolTransitionResponse)
async def complete(
    pool_id: int,
    body: PoolAction,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    return await _run(complete_trip, session_factory, pool_id, body.driver_id)
