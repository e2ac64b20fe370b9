"""Async repositories for the timeline tables.

BaseRepository gives soft-delete-aware get/create/update/soft_delete over
an AsyncSession. The concrete repositories add the natural-key queries
the sync engine needs, including the concurrency-safe object upsert.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Generic, Sequence, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from core.integrations.normalizer import ObjectDraft
from core.models.base import Base
from core.models.timeline import Block, Event, EventObject, Integration, IntegrationGroup

# ---------------------------------------------------------------------------
# Type variable for model classes
# ---------------------------------------------------------------------------

ModelT = TypeVar("ModelT", bound=Base)

# Column object, since the attribute is metadata_ but the column is metadata
METADATA_COLUMN = EventObject.__table__.c["metadata"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dialect_insert(session: AsyncSession):
    """INSERT construct with ON CONFLICT support for the bound dialect."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert not supported on {name}")


# ---------------------------------------------------------------------------
# Base repository
# ---------------------------------------------------------------------------

class BaseRepository(Generic[ModelT]):
    """Generic async repository. Soft-deleted rows are invisible.

    Subclass and set `model` to your SQLAlchemy model::

        class IntegrationRepository(BaseRepository[Integration]):
            model = Integration
    """

    model: type[ModelT]

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, item_id: str | UUID) -> ModelT | None:
        """Get a live row by ID."""
        if isinstance(item_id, str):
            item_id = UUID(item_id)
        stmt = select(self.model).where(
            self.model.id == item_id,
            self.model.deleted_at.is_(None),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, **data: Any) -> ModelT:
        item = self.model(**data)
        self.session.add(item)
        await self.session.flush()
        return item

    async def update(self, item: ModelT, data: dict[str, Any]) -> ModelT:
        for key, value in data.items():
            if hasattr(item, key) and key not in ("id", "created_at"):
                setattr(item, key, value)
        await self.session.flush()
        return item

    async def soft_delete(self, item: ModelT, when: datetime | None = None) -> ModelT:
        item.soft_delete(when or _utcnow())
        await self.session.flush()
        return item


# ---------------------------------------------------------------------------
# Concrete repositories
# ---------------------------------------------------------------------------

class IntegrationGroupRepository(BaseRepository[IntegrationGroup]):
    model = IntegrationGroup

    async def find_for_account(
        self, user_id: str, service: str, account_id: str | None
    ) -> IntegrationGroup | None:
        stmt = select(IntegrationGroup).where(
            IntegrationGroup.user_id == user_id,
            IntegrationGroup.service == service,
            IntegrationGroup.deleted_at.is_(None),
        )
        if account_id is None:
            stmt = stmt.where(IntegrationGroup.account_id.is_(None))
        else:
            stmt = stmt.where(IntegrationGroup.account_id == account_id)
        result = await self.session.execute(stmt.order_by(IntegrationGroup.created_at))
        return result.scalars().first()

    async def upsert_for_account(
        self, user_id: str, service: str, account_id: str | None, **data: Any
    ) -> IntegrationGroup:
        """At most one live group per (user, service, account_id)."""
        group = await self.find_for_account(user_id, service, account_id)
        if group is None:
            return await self.create(user_id=user_id, service=service, account_id=account_id, **data)
        return await self.update(group, data)


class IntegrationRepository(BaseRepository[Integration]):
    model = Integration

    async def list_active(self, service: str | None = None) -> Sequence[Integration]:
        stmt = select(Integration).where(Integration.deleted_at.is_(None))
        if service:
            stmt = stmt.where(Integration.service == service)
        result = await self.session.execute(stmt.order_by(Integration.created_at))
        return result.scalars().all()

    async def for_group(self, group_id: UUID) -> Sequence[Integration]:
        stmt = select(Integration).where(
            Integration.group_id == group_id,
            Integration.deleted_at.is_(None),
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def remove(self, integration: Integration) -> bool:
        """Soft-delete an instance; the group goes too when it was the last one.

        Returns True when the group was soft-deleted.
        """
        now = _utcnow()
        await self.soft_delete(integration, now)
        if await self.for_group(integration.group_id):
            return False
        group = await IntegrationGroupRepository(self.session).get(integration.group_id)
        if group is not None:
            await IntegrationGroupRepository(self.session).soft_delete(group, now)
        return True


class EventObjectRepository(BaseRepository[EventObject]):
    model = EventObject

    async def upsert(self, user_id: str, draft: ObjectDraft) -> EventObject:
        """Insert or update by (user_id, concept, type, title).

        One INSERT .. ON CONFLICT DO UPDATE statement, so concurrent
        writers converge on one row. Identity columns are never changed;
        the rest is last-write-wins.
        """
        insert = _dialect_insert(self.session)
        now = _utcnow()
        values = {
            "id": uuid.uuid4(),
            "user_id": user_id,
            "concept": draft.concept,
            "type": draft.type,
            "title": draft.title,
            "content": draft.content,
            METADATA_COLUMN: draft.metadata or {},
            "url": draft.url,
            "image_url": draft.image_url,
            "time": draft.time,
            "created_at": now,
            "updated_at": now,
        }
        stmt = insert(EventObject).values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "concept", "type", "title"],
            set_={
                "content": stmt.excluded.content,
                "metadata": stmt.excluded["metadata"],
                "url": stmt.excluded.url,
                "image_url": stmt.excluded.image_url,
                "time": stmt.excluded.time,
                "updated_at": now,
                "deleted_at": None,
            },
        ).returning(EventObject)
        result = await self.session.scalars(
            stmt, execution_options={"populate_existing": True}
        )
        return result.one()

    async def find(self, user_id: str, concept: str, type_: str, title: str) -> EventObject | None:
        stmt = select(EventObject).where(
            EventObject.user_id == user_id,
            EventObject.concept == concept,
            EventObject.type == type_,
            EventObject.title == title,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


class EventRepository(BaseRepository[Event]):
    model = Event

    async def find_by_source(self, integration_id: UUID, source_id: str) -> Event | None:
        """Live event for (integration_id, source_id), if any."""
        stmt = select(Event).where(
            Event.integration_id == integration_id,
            Event.source_id == source_id,
            Event.deleted_at.is_(None),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def exists(self, integration_id: UUID, source_id: str) -> bool:
        """Any row, soft-deleted included, holds the unique key."""
        stmt = select(Event.id).where(
            Event.integration_id == integration_id,
            Event.source_id == source_id,
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def insert_if_absent(self, values: dict[str, Any]) -> Event | None:
        """INSERT .. ON CONFLICT DO NOTHING. None when another writer won."""
        insert = _dialect_insert(self.session)
        stmt = (
            insert(Event)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["integration_id", "source_id"])
            .returning(Event)
        )
        result = await self.session.scalars(stmt)
        return result.one_or_none()

    async def list_for_integration(self, integration_id: UUID) -> Sequence[Event]:
        stmt = select(Event).where(
            Event.integration_id == integration_id,
            Event.deleted_at.is_(None),
        ).order_by(Event.time)
        result = await self.session.execute(stmt)
        return result.scalars().all()


class BlockRepository(BaseRepository[Block]):
    model = Block

    async def for_event(self, event_id: UUID, include_deleted: bool = False) -> Sequence[Block]:
        stmt = select(Block).where(Block.event_id == event_id)
        if not include_deleted:
            stmt = stmt.where(Block.deleted_at.is_(None))
        result = await self.session.execute(stmt.order_by(Block.created_at))
        return result.scalars().all()

    async def create_many(self, blocks: list[Block]) -> list[Block]:
        self.session.add_all(blocks)
        await self.session.flush()
        return blocks
