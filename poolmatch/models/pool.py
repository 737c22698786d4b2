"""Pool model: one vehicle's shared trip to or from the anchor, accumulating ride requests."""
import enum
from datetime import datetime

from sqlalchemy import DDL, JSON, DateTime, Enum, Float, ForeignKey, Index, Integer, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from poolmatch.models.base import Base, utc_now


class Direction(str, enum.Enum):
    TO_ANCHOR = "city_to_airport"
    FROM_ANCHOR = "airport_to_city"


class WaypointRole(str, enum.Enum):
    PICKUP = "pickup"
    DROPOFF = "dropoff"


class PoolStatus(str, enum.Enum):
    FORMING = "forming"  # accepting riders
    LOCKED = "locked"  # full, no longer a candidate
    DRIVER_ARRIVED = "driver_arrived"  # driver at pickup, closed for good
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Pool(Base):
    __tablename__ = "pools"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    driver_id: Mapped[int | None] = mapped_column(ForeignKey("drivers.id", ondelete="SET NULL"), nullable=True, index=True)
    vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)

    # Capacity snapshot taken from the vehicle when the pool is created
    max_seats: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    max_luggage: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    filled_seats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    filled_luggage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Ordered stops: [{lat, lng, role, ride_id, sequence}, ...]. Always reassigned, never mutated in place.
    waypoints: Mapped[list[dict]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=list
    )
    total_distance_km: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    direction: Mapped[Direction] = mapped_column(Enum(Direction), nullable=False)
    status: Mapped[PoolStatus] = mapped_column(Enum(PoolStatus), nullable=False, default=PoolStatus.FORMING)

    # Mean of all waypoints; what candidate search measures against
    center_lat: Mapped[float] = mapped_column(Float, nullable=False)
    center_lng: Mapped[float] = mapped_column(Float, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    driver_arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Every UPDATE bumps version and is guarded by "WHERE version = <read value>"
    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_pools_search", "status", "direction", "center_lat", "center_lng"),
    )

    @property
    def member_ride_ids(self) -> list[int]:
        seen: list[int] = []
        for wp in self.waypoints or []:
            if wp["ride_id"] not in seen:
                seen.append(wp["ride_id"])
        return seen


event.listen(
    Pool.__table__,
    "after_create",
    DDL(
        "CREATE INDEX IF NOT EXISTS ix_pools_center_geog ON pools USING gist "
        "((ST_SetSRID(ST_MakePoint(center_lng, center_lat), 4326)::geography))"
    ).execute_if(dialect="postgresql"),
)
