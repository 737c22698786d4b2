"""Pydantic schemas for ride requests: submit, status, cancel."""
from datetime import datetime

from pydantic import BaseModel, Field

from poolmatch.models.pool import Direction
from poolmatch.models.ride import RideStatus


class RideCreate(BaseModel):
    """Request body for POST /rides. One end must be at the anchor."""
    user_id: int
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    pickup_address: str = Field(default="Unknown", max_length=500)
    dropoff_address: str = Field(default="Unknown", max_length=500)
    seats: int = Field(default=1, ge=1, le=8)
    luggage: int = Field(default=0, ge=0, le=8)
    max_detour_km: float | None = Field(default=None, ge=0, le=50)


class RideSubmitted(BaseModel):
    """Response for POST /rides: accepted and queued for matching."""
    id: int
    status: RideStatus
    direction: Direction
    direct_distance_km: float
    estimated_price: float


class RideResponse(BaseModel):
    """Ride in API responses (GET /rides/{id})."""
    id: int
    user_id: int
    pool_id: int | None = None
    status: RideStatus
    direction: Direction
    pickup_lat: float
    pickup_lng: float
    dropoff_lat: float
    dropoff_lng: float
    seats: int
    luggage: int
    max_detour_km: float
    direct_distance_km: float
    individual_price: float | None = None
    cancellation_fee: float | None = None
    cancellation_reason: str | None = None
    dispatch_error: str | None = None
    requested_at: datetime
    matched_at: datetime | None = None

    class Config:
        from_attributes = True


class RideCancel(BaseModel):
    """Request body for POST /rides/{id}/cancel."""
    reason: str | None = Field(default=None, max_length=255)


class CancellationResponse(BaseModel):
    ride_id: int
    status: RideStatus = RideStatus.CANCELLED
    fee: float
    pool_id: int | None = None
