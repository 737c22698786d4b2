"""Matching orchestrator: find the cheapest admissible pool for a pending ride, else open a new one."""
import enum
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from poolmatch.config import Settings, settings
from poolmatch.models.pool import Direction
from poolmatch.models.ride import RideRequest, RideStatus
from poolmatch.services.assignment import (
    AssignmentResult,
    AssignmentStatus,
    assign_to_pool,
    create_pool_for_ride,
    ride_stops,
)
from poolmatch.services.detour import CorruptPoolRoute, best_insertion, load_route
from poolmatch.services.errors import NotFound
from poolmatch.services.pricing import PricingFn, calculate_price
from poolmatch.services.spatial import find_candidate_pools

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchingPolicy:
    pool_radius_km: float = 5.0
    pool_limit: int = 10
    driver_radius_km: float = 10.0
    driver_limit: int = 5
    lock_timeout_ms: int = 2000
    # extra searches after a candidate turned out stale under its lock
    conflict_retries: int = 1

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "MatchingPolicy":
        return cls(
            pool_radius_km=s.POOL_SEARCH_RADIUS_KM,
            pool_limit=s.POOL_SEARCH_LIMIT,
            driver_radius_km=s.DRIVER_SEARCH_RADIUS_KM,
            driver_limit=s.DRIVER_SEARCH_LIMIT,
            lock_timeout_ms=s.LOCK_TIMEOUT_MS,
        )


class DispatchOutcome(str, enum.Enum):
    MATCHED = "matched"
    POOL_CREATED = "pool_created"
    SKIPPED = "skipped"


@dataclass
class DispatchResult:
    outcome: DispatchOutcome
    ride_id: int
    pool_id: int | None = None
    driver_id: int | None = None
    extra_km: float | None = None


@dataclass
class ScoredPool:
    pool_id: int
    extra_km: float
    distance_km: float


def search_center(ride: RideRequest) -> tuple[float, float]:
    """Pools are searched around the ride's non-anchor end."""
    if ride.direction == Direction.TO_ANCHOR:
        return ride.pickup
    return ride.dropoff


class Matcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: MatchingPolicy | None = None,
        pricing: PricingFn = calculate_price,
    ) -> None:
        self.session_factory = session_factory
        self.policy = policy or MatchingPolicy.from_settings()
        self.pricing = pricing

    async def _load_ride(self, ride_id: int) -> RideRequest:
        async with self.session_factory() as db:
            ride = (await db.execute(select(RideRequest).where(RideRequest.id == ride_id))).scalar_one_or_none()
        if ride is None:
            raise NotFound("ride", ride_id)
        return ride

    async def best_candidate(self, ride: RideRequest, exclude_ids: set[int]) -> ScoredPool | None:
        """Score open pools from an unlocked read; the winner is re-validated by the transactor."""
        lat, lng = search_center(ride)
        pickup, dropoff = ride_stops(ride)
        async with self.session_factory() as db:
            candidates = await find_candidate_pools(
                db,
                lat=lat,
                lng=lng,
                direction=ride.direction,
                seats=ride.seats,
                luggage=ride.luggage,
                radius_km=self.policy.pool_radius_km,
                limit=self.policy.pool_limit,
                exclude_ids=exclude_ids,
            )
        best: ScoredPool | None = None
        for candidate in candidates:
            pool = candidate.pool
            try:
                insertion = best_insertion(load_route(pool.waypoints), pool.direction, pickup, dropoff)
            except CorruptPoolRoute as exc:
                logger.error("Skipping pool %s with corrupt route: %s", pool.id, exc)
                continue
            if not insertion.admits(ride.max_detour_km):
                continue
            if best is None or insertion.extra_km < best.extra_km:
                best = ScoredPool(pool.id, insertion.extra_km, candidate.distance_km)
        logger.debug("Ride %s: %d candidate pools, best %s", ride.id, len(candidates), best)
        return best

    async def dispatch(self, ride_id: int) -> DispatchResult:
        """
        Place one ride. Idempotent: a ride that is no longer pending is SKIPPED.
        Raises NotFound, NoDriverAvailable, CapacityExceeded or TransientStoreFailure.
        """
        ride = await self._load_ride(ride_id)
        if ride.status != RideStatus.PENDING:
            logger.info("Ride %s is %s, nothing to do", ride_id, ride.status.value)
            return DispatchResult(DispatchOutcome.SKIPPED, ride_id, pool_id=ride.pool_id)

        excluded: set[int] = set()
        for _ in range(self.policy.conflict_retries + 1):
            candidate = await self.best_candidate(ride, excluded)
            if candidate is None:
                break
            result = await assign_to_pool(
                self.session_factory,
                ride_id,
                candidate.pool_id,
                pricing=self.pricing,
                lock_timeout_ms=self.policy.lock_timeout_ms,
            )
            if result.status == AssignmentStatus.ASSIGNED:
                return self._finish(DispatchOutcome.MATCHED, result)
            if result.status == AssignmentStatus.RIDE_NOT_PENDING:
                return DispatchResult(DispatchOutcome.SKIPPED, ride_id, pool_id=result.pool_id)
            logger.info("Ride %s: pool %s conflicted (%s), searching again", ride_id, candidate.pool_id, result.reason)
            excluded.add(candidate.pool_id)

        result = await create_pool_for_ride(
            self.session_factory,
            ride_id,
            driver_radius_km=self.policy.driver_radius_km,
            driver_limit=self.policy.driver_limit,
            pricing=self.pricing,
            lock_timeout_ms=self.policy.lock_timeout_ms,
        )
        if result.status == AssignmentStatus.RIDE_NOT_PENDING:
            return DispatchResult(DispatchOutcome.SKIPPED, ride_id, pool_id=result.pool_id)
        return self._finish(DispatchOutcome.POOL_CREATED, result)

    @staticmethod
    def _finish(outcome: DispatchOutcome, result: AssignmentResult) -> DispatchResult:
        return DispatchResult(
            outcome,
            result.ride_id,
            pool_id=result.pool_id,
            driver_id=result.driver_id,
            extra_km=result.extra_km,
        )
