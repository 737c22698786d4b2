"""Driver and Vehicle models. A driver owns exactly one vehicle; its capacity caps any pool it serves."""
import enum
from datetime import datetime

from sqlalchemy import DDL, DateTime, Enum, Float, ForeignKey, Index, Integer, String, event
from sqlalchemy.orm import Mapped, mapped_column

from poolmatch.models.base import Base, utc_now


class DriverStatus(str, enum.Enum):
    OFFLINE = "offline"
    AVAILABLE = "available"
    ASSIGNED = "assigned"  # bound to a pool that has not started
    BUSY = "busy"  # on a trip


class Driver(Base):
    __tablename__ = "drivers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    status: Mapped[DriverStatus] = mapped_column(
        Enum(DriverStatus), nullable=False, default=DriverStatus.OFFLINE, index=True
    )
    # Last reported position; written without locks, may lag behind reality
    current_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_location_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rating: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    total_rides: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index("ix_drivers_status_location", "status", "current_lat", "current_lng"),
    )


class Vehicle(Base):
    __tablename__ = "vehicles"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    driver_id: Mapped[int] = mapped_column(ForeignKey("drivers.id", ondelete="CASCADE"), nullable=False, unique=True)
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    license_plate: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    max_seats: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    max_luggage: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


event.listen(
    Driver.__table__,
    "after_create",
    DDL(
        "CREATE INDEX IF NOT EXISTS ix_drivers_location_geog ON drivers USING gist "
        "((ST_SetSRID(ST_MakePoint(current_lng, current_lat), 4326)::geography))"
    ).execute_if(dialect="postgresql"),
)
