"""Ride submission and status: persist a pending ride, then hand it to the dispatch queue."""
import logging

import redis.asyncio as aioredis
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from poolmatch.config import Settings, settings
from poolmatch.models.pool import Direction
from poolmatch.models.ride import RideRequest, RideStatus
from poolmatch.models.user import User
from poolmatch.schemas.ride import RideCreate
from poolmatch.services.errors import DispatchError, NotFound
from poolmatch.services.geo import haversine_km
from poolmatch.services.pricing import PricingFn, calculate_price
from poolmatch.services.queue import DispatchJob, RedisJobQueue
from poolmatch.services.state_machine import transition_ride

logger = logging.getLogger(__name__)


class UnsupportedRoute(DispatchError):
    """Neither end of the ride is at the anchor."""


class QueueUnavailable(DispatchError):
    """The dispatch job could not be published; the ride was cancelled instead of left pending."""

    retriable = True


def detect_direction(
    pickup_lat: float,
    pickup_lng: float,
    dropoff_lat: float,
    dropoff_lng: float,
    s: Settings = settings,
) -> Direction | None:
    """Rides starting at the anchor leave it; rides ending there head to it. None if neither end is."""
    if haversine_km(pickup_lat, pickup_lng, s.ANCHOR_LAT, s.ANCHOR_LNG) <= s.ANCHOR_RADIUS_KM:
        return Direction.FROM_ANCHOR
    if haversine_km(dropoff_lat, dropoff_lng, s.ANCHOR_LAT, s.ANCHOR_LNG) <= s.ANCHOR_RADIUS_KM:
        return Direction.TO_ANCHOR
    return None


def job_for(ride: RideRequest) -> DispatchJob:
    return DispatchJob(
        ride_id=ride.id,
        pickup_lat=ride.pickup_lat,
        pickup_lng=ride.pickup_lng,
        dropoff_lat=ride.dropoff_lat,
        dropoff_lng=ride.dropoff_lng,
        seats=ride.seats,
        luggage=ride.luggage,
        direction=ride.direction,
    )


async def submit_ride(
    db: AsyncSession,
    queue: RedisJobQueue,
    body: RideCreate,
    s: Settings = settings,
    pricing: PricingFn = calculate_price,
) -> tuple[RideRequest, float]:
    """
    Store a pending ride and enqueue its dispatch job. The ride is committed before
    the job is published so a worker never sees a job for a ride it cannot read.
    Returns the ride and its solo-fare estimate. If the job cannot be published the ride
    is cancelled (no worker would ever pick it up) and QueueUnavailable is raised.
    """
    direction = detect_direction(body.pickup_lat, body.pickup_lng, body.dropoff_lat, body.dropoff_lng, s)
    if direction is None:
        raise UnsupportedRoute(f"ride must start or end within {s.ANCHOR_RADIUS_KM} km of the anchor")
    user = (await db.execute(select(User.id).where(User.id == body.user_id))).scalar_one_or_none()
    if user is None:
        raise NotFound("user", body.user_id)

    direct_km = haversine_km(body.pickup_lat, body.pickup_lng, body.dropoff_lat, body.dropoff_lng)
    ride = RideRequest(
        user_id=body.user_id,
        pickup_address=body.pickup_address,
        pickup_lat=body.pickup_lat,
        pickup_lng=body.pickup_lng,
        dropoff_address=body.dropoff_address,
        dropoff_lat=body.dropoff_lat,
        dropoff_lng=body.dropoff_lng,
        direction=direction,
        direct_distance_km=direct_km,
        seats=body.seats,
        luggage=body.luggage,
        max_detour_km=body.max_detour_km if body.max_detour_km is not None else s.DEFAULT_MAX_DETOUR_KM,
        status=RideStatus.PENDING,
    )
    db.add(ride)
    await db.flush()
    await db.commit()

    try:
        job_id = await queue.enqueue(job_for(ride))
    except (aioredis.RedisError, OSError) as exc:
        logger.error("Could not enqueue ride %s, cancelling it: %s", ride.id, exc)
        transition_ride(ride, RideStatus.CANCELLED)
        ride.cancellation_reason = "dispatch queue unavailable"
        ride.cancellation_fee = 0.0
        ride.dispatch_error = f"enqueue failed: {exc}"[:255]
        await db.commit()
        raise QueueUnavailable(f"ride {ride.id} could not be queued for matching") from exc
    logger.info("Ride %s submitted (%s, %.2f km), job %s", ride.id, direction.value, direct_km, job_id)
    return ride, pricing(direct_km, ride.seats, 1)


async def get_ride_status(db: AsyncSession, ride_id: int) -> RideRequest:
    ride = (await db.execute(select(RideRequest).where(RideRequest.id == ride_id))).scalar_one_or_none()
    if ride is None:
        raise NotFound("ride", ride_id)
    return ride


async def record_dispatch_error(
    session_factory: async_sessionmaker[AsyncSession], ride_id: int, message: str
) -> bool:
    """Note why dispatch gave up on a ride. Only touches rides that are still pending."""
    async with session_factory() as db:
        result = await db.execute(
            update(RideRequest)
            .where(RideRequest.id == ride_id)
            .where(RideRequest.status == RideStatus.PENDING)
            .values(dispatch_error=message[:255])
        )
        await db.commit()
    return result.rowcount > 0
