"""Pydantic schemas for drivers: registration, location and availability updates."""
from datetime import datetime

from pydantic import BaseModel, Field

from poolmatch.models.driver import DriverStatus


class VehicleCreate(BaseModel):
    model: str | None = Field(default=None, max_length=100)
    license_plate: str = Field(..., min_length=1, max_length=20)
    max_seats: int = Field(default=4, ge=1, le=8)
    max_luggage: int = Field(default=4, ge=0, le=8)


class DriverCreate(BaseModel):
    """Request body for POST /drivers: an existing user plus their vehicle."""
    user_id: int
    vehicle: VehicleCreate
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)


class DriverResponse(BaseModel):
    id: int
    user_id: int
    status: DriverStatus
    current_lat: float | None = None
    current_lng: float | None = None
    last_location_at: datetime | None = None
    rating: float
    total_rides: int

    class Config:
        from_attributes = True


class LocationUpdate(BaseModel):
    """Request body for POST /drivers/{id}/location."""
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class AvailabilityUpdate(BaseModel):
    """Request body for POST /drivers/{id}/status."""
    online: bool
