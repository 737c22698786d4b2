"""Declarative base shared by all models."""
from datetime import datetime, timezone

from sqlalchemy import DDL, event
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Spatial search on PostgreSQL relies on PostGIS; other dialects use the lat/lng B-tree indexes.
event.listen(
    Base.metadata,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS postgis").execute_if(dialect="postgresql"),
)
