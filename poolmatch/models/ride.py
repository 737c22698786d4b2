"""RideRequest model: one passenger booking. Never deleted, only terminalized."""
import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from poolmatch.models.base import Base, utc_now
from poolmatch.models.pool import Direction


class RideStatus(str, enum.Enum):
    PENDING = "pending"
    MATCHED = "matched"
    DRIVER_ARRIVED = "driver_arrived"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RideRequest(Base):
    __tablename__ = "ride_requests"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    pool_id: Mapped[int | None] = mapped_column(ForeignKey("pools.id", ondelete="SET NULL"), nullable=True, index=True)

    pickup_address: Mapped[str] = mapped_column(String(500), nullable=False, default="Unknown")
    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_address: Mapped[str] = mapped_column(String(500), nullable=False, default="Unknown")
    dropoff_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_lng: Mapped[float] = mapped_column(Float, nullable=False)
    direction: Mapped[Direction] = mapped_column(Enum(Direction), nullable=False)

    direct_distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    seats: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    luggage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_detour_km: Mapped[float] = mapped_column(Float, nullable=False, default=3.0)

    status: Mapped[RideStatus] = mapped_column(Enum(RideStatus), nullable=False, default=RideStatus.PENDING)
    individual_price: Mapped[float | None] = mapped_column(Float, nullable=True)

    cancellation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancellation_fee: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Why the dispatcher could not place this ride (visible while polling status)
    dispatch_error: Mapped[str | None] = mapped_column(String(255), nullable=True)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    driver_arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_ride_requests_status_requested", "status", "requested_at"),
    )

    @property
    def pickup(self) -> tuple[float, float]:
        return (self.pickup_lat, self.pickup_lng)

    @property
    def dropoff(self) -> tuple[float, float]:
        return (self.dropoff_lat, self.dropoff_lng)
