"""Base model and mixins for all SQLAlchemy models.

Provides:
- Base: Declarative base class for all models
- RecordMixin: String UUID primary key and created/updated timestamps
- OrganizationMixin: Indexed organization_id for per-organization isolation

Timestamps are set from Python (timezone-aware UTC) rather than by the
database, so rows compare cleanly with in-process clocks. ``aware`` restores
the UTC tzinfo that SQLite drops on read.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import String, DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all integration hub models."""
    pass


def aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def column_value(value: Any) -> Any:
    """Enum members are stored by value."""
    return value.value if isinstance(value, Enum) else value


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordMixin:
    """Mixin providing a string UUID primary key and audit timestamps."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )


class OrganizationMixin:
    organization_id: Mapped[str] = mapped_column(
        String(64),
        index=True,
        nullable=False,
    )
