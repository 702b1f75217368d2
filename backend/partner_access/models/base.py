"""
Base model class for all SQLAlchemy models.

WHY: Centralizing common model functionality (timestamps, ID, UTC handling)
in a base module keeps every table consistent.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Integer, DateTime
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    DateTime column that always hands back aware UTC datetimes.

    WHY: SQLite drops tzinfo on the way in. Billing event timestamps are
    compared against stored values, so both sides must be aware UTC.
    Values are stored as naive UTC and re-tagged on load.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.
    """

    pass


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.
    """

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PrimaryKeyMixin:
    """
    Mixin to add an integer primary key to models.
    """

    id = Column(Integer, primary_key=True, index=True)
