"""Pydantic schemas for users."""
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from poolmatch.models.user import UserRole


class UserCreate(BaseModel):
    """Request body for POST /users."""
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=20)
    role: UserRole = UserRole.PASSENGER


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    phone: str | None = None
    role: UserRole
    created_at: datetime

    class Config:
        from_attributes = True
