"""
SQLAlchemy declarative base and common model utilities.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def utcnow() -> datetime:
    """Timezone-aware current UTC time, used as column default."""
    return datetime.now(timezone.utc)
