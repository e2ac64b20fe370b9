"""Base model and mixins for all SQLAlchemy models.

Provides:
- Base: Declarative base class for all models
- UTCDateTime: timezone-aware datetime column that always loads as UTC
- TimestampMixin: UUID primary key, audit timestamps and soft delete

Rows are never hard-deleted by the sync engine. A non-null deleted_at
hides the row from every repository query.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that stores UTC and hands back aware datetimes.

    SQLite drops tzinfo on the way out; PostgreSQL keeps it. Normalising
    here lets scheduling code compare against datetime.now(timezone.utc)
    on either backend.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all timeline models."""
    pass


class TimestampMixin:
    """Mixin providing identity, audit columns and soft delete.

    Adds:
    - id: UUID primary key (auto-generated)
    - created_at: Timestamp set on insert
    - updated_at: Timestamp updated on every change
    - deleted_at: Soft-delete marker
    """

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        default=None,
    )

    def soft_delete(self, when: datetime | None = None) -> None:
        self.deleted_at = when or utcnow()
