"""
Spatial candidate search for pools and drivers.

PostgreSQL: PostGIS ST_DWithin / ST_Distance on geography points (GiST expression indexes
created in the models). Other stores: bounding-box range scan on the indexed lat/lng
columns, then exact haversine filtering and ordering. Both return an empty list when
nothing qualifies.
"""
from collections.abc import Collection
from dataclasses import dataclass

from geoalchemy2 import Geography
from sqlalchemy import cast, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from poolmatch.models.driver import Driver, DriverStatus
from poolmatch.models.pool import Direction, Pool
from poolmatch.services.geo import bounding_box, haversine_km
from poolmatch.services.state_machine import OPEN_POOL_STATUSES

DEFAULT_POOL_RADIUS_KM = 5.0
DEFAULT_POOL_LIMIT = 10
DEFAULT_DRIVER_RADIUS_KM = 10.0
DEFAULT_DRIVER_LIMIT = 5


@dataclass
class PoolCandidate:
    pool: Pool
    distance_km: float


@dataclass
class DriverCandidate:
    driver_id: int
    distance_km: float


def _uses_postgis(db: AsyncSession) -> bool:
    return db.bind.dialect.name == "postgresql"


def _geog(lng, lat):
    """WGS84 point as geography (ST_MakePoint takes lng first)."""
    return cast(func.ST_SetSRID(func.ST_MakePoint(lng, lat), 4326), Geography)


async def find_candidate_pools(
    db: AsyncSession,
    *,
    lat: float,
    lng: float,
    direction: Direction,
    seats: int,
    luggage: int,
    radius_km: float = DEFAULT_POOL_RADIUS_KM,
    limit: int = DEFAULT_POOL_LIMIT,
    exclude_ids: Collection[int] = (),
) -> list[PoolCandidate]:
    """Open pools in `direction` with room for seats/luggage, centre within radius, nearest first."""
    q = (
        select(Pool)
        .where(Pool.status.in_(list(OPEN_POOL_STATUSES)))
        .where(Pool.direction == direction)
        .where(Pool.filled_seats + seats <= Pool.max_seats)
        .where(Pool.filled_luggage + luggage <= Pool.max_luggage)
    )
    if exclude_ids:
        q = q.where(Pool.id.notin_(list(exclude_ids)))

    if _uses_postgis(db):
        center = _geog(lng, lat)
        pool_point = _geog(Pool.center_lng, Pool.center_lat)
        distance_m = func.ST_Distance(pool_point, center)
        q = (
            q.add_columns((distance_m / 1000.0).label("distance_km"))
            .where(func.ST_DWithin(pool_point, center, radius_km * 1000.0))
            .order_by(distance_m, Pool.id)
            .limit(limit)
        )
        rows = (await db.execute(q)).all()
        return [PoolCandidate(pool=pool, distance_km=float(dist)) for pool, dist in rows]

    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_km)
    q = (
        q.where(Pool.center_lat.between(min_lat, max_lat))
        .where(Pool.center_lng.between(min_lng, max_lng))
        .order_by(Pool.id)
    )
    pools = (await db.execute(q)).scalars().all()
    scored = [
        PoolCandidate(pool=p, distance_km=haversine_km(lat, lng, p.center_lat, p.center_lng))
        for p in pools
    ]
    scored = [c for c in scored if c.distance_km <= radius_km]
    scored.sort(key=lambda c: c.distance_km)
    return scored[:limit]


async def find_available_drivers(
    db: AsyncSession,
    *,
    lat: float,
    lng: float,
    radius_km: float = DEFAULT_DRIVER_RADIUS_KM,
    limit: int = DEFAULT_DRIVER_LIMIT,
) -> list[DriverCandidate]:
    """Available drivers with a known position within radius, nearest first. Unlocked read."""
    q = (
        select(Driver.id, Driver.current_lat, Driver.current_lng)
        .where(Driver.status == DriverStatus.AVAILABLE)
        .where(Driver.current_lat.is_not(None))
        .where(Driver.current_lng.is_not(None))
    )

    if _uses_postgis(db):
        center = _geog(lng, lat)
        driver_point = _geog(Driver.current_lng, Driver.current_lat)
        distance_m = func.ST_Distance(driver_point, center)
        q = (
            q.add_columns((distance_m / 1000.0).label("distance_km"))
            .where(func.ST_DWithin(driver_point, center, radius_km * 1000.0))
            .order_by(distance_m, Driver.id)
            .limit(limit)
        )
        rows = (await db.execute(q)).all()
        return [DriverCandidate(driver_id=r.id, distance_km=float(r.distance_km)) for r in rows]

    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_km)
    q = (
        q.where(Driver.current_lat.between(min_lat, max_lat))
        .where(Driver.current_lng.between(min_lng, max_lng))
        .order_by(Driver.id)
    )
    rows = (await db.execute(q)).all()
    scored = [
        DriverCandidate(driver_id=r.id, distance_km=haversine_km(lat, lng, r.current_lat, r.current_lng))
        for r in rows
    ]
    scored = [c for c in scored if c.distance_km <= radius_km]
    scored.sort(key=lambda c: c.distance_km)
    return scored[:limit]
