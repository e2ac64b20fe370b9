"""SQLAlchemy models for the canonical timeline.

IntegrationGroup 1-* Integration 1-* Event 1-* Block, with every Event
pointing at an actor and (usually) a target EventObject. The to_dict()
methods are the serialisation interface used by repositories and routers.
DeadLetter rows sit beside the timeline and hold failed work items.

Relationships are deliberately not declared: the async session cannot
lazy-load, so related rows are always fetched with explicit queries.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from core.models.base import Base, TimestampMixin, UTCDateTime


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class IntegrationGroup(TimestampMixin, Base):
    """One external account connection and its credentials."""

    __tablename__ = "integration_groups"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expiry: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_token)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "service": self.service,
            "account_id": self.account_id,
            "expiry": _iso(self.expiry),
            "connected": self.has_credentials,
            "created_at": _iso(self.created_at),
        }


class Integration(TimestampMixin, Base):
    """One sync instance (data kind) under a group."""

    __tablename__ = "integrations"

    group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("integration_groups.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    instance_type: Mapped[str] = mapped_column(String(64), nullable=False)
    configuration: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    last_triggered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_successful_update_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_run_state: Mapped[str | None] = mapped_column(String(16), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "group_id": str(self.group_id),
            "service": self.service,
            "name": self.name,
            "instance_type": self.instance_type,
            "configuration": self.configuration or {},
            "last_triggered_at": _iso(self.last_triggered_at),
            "last_successful_update_at": _iso(self.last_successful_update_at),
            "last_run_state": self.last_run_state,
        }


class EventObject(TimestampMixin, Base):
    """Actor or target entity, upserted by (user_id, concept, type, title)."""

    __tablename__ = "event_objects"
    __table_args__ = (
        UniqueConstraint("user_id", "concept", "type", "title", name="uq_event_objects_identity"),
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    concept: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "concept": self.concept,
            "type": self.type,
            "title": self.title,
            "content": self.content,
            "metadata": self.metadata_ or {},
            "url": self.url,
            "time": _iso(self.time),
        }


class Event(TimestampMixin, Base):
    """A normalized occurrence. (integration_id, source_id) is unique."""

    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("integration_id", "source_id", name="uq_events_source"),
    )

    source_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("integrations.id"), nullable=False, index=True
    )
    time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("event_objects.id"), nullable=False)
    target_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("event_objects.id"), nullable=True
    )
    service: Mapped[str] = mapped_column(String(64), nullable=False)
    domain: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    value: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    value_multiplier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    value_unit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    @property
    def decoded_value(self) -> float | None:
        if self.value is None:
            return None
        return self.value / (self.value_multiplier or 1)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "source_id": self.source_id,
            "integration_id": str(self.integration_id),
            "time": _iso(self.time),
            "service": self.service,
            "domain": self.domain,
            "action": self.action,
            "value": self.value,
            "value_multiplier": self.value_multiplier,
            "value_unit": self.value_unit,
            "event_metadata": self.event_metadata or {},
        }


class Block(TimestampMixin, Base):
    """A sub-measurement belonging to exactly one event."""

    __tablename__ = "blocks"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("events.id"), nullable=False, index=True
    )
    integration_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    block_type: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    value: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    value_multiplier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    value_unit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "event_id": str(self.event_id),
            "block_type": self.block_type,
            "title": self.title,
            "metadata": self.metadata_ or {},
            "value": self.value,
            "value_multiplier": self.value_multiplier,
            "value_unit": self.value_unit,
            "deleted_at": _iso(self.deleted_at),
        }


class DeadLetter(TimestampMixin, Base):
    """A work item that failed for good, with the cursor it was holding."""

    __tablename__ = "dead_letters"

    work_item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    task_type: Mapped[str] = mapped_column(String(64), nullable=False)
    cursor: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False, default="")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "work_item_id": self.work_item_id,
            "integration_id": self.integration_id,
            "task_type": self.task_type,
            "cursor": self.cursor or {},
            "error_kind": self.error_kind,
            "error": self.error,
            "attempts": self.attempts,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }
