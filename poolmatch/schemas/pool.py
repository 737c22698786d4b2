"""Pydantic schemas for driver-side pool actions."""
from pydantic import BaseModel

from poolmatch.models.pool import PoolStatus


class PoolAction(BaseModel):
    """Request body for POST /pools/{id}/arrive|start|complete."""
    driver_id: int


class PoolTransitionResponse(BaseModel):
    pool_id: int
    driver_id: int
    status: PoolStatus
    ride_ids: list[int]
    filled_seats: int
