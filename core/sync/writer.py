"""
Idempotent event writer.

write() looks up (integration_id, source_id) first and skips when the
event exists. Otherwise it upserts the actor and target objects, inserts
the event with ON CONFLICT DO NOTHING, then creates the blocks. Object
upserts are safe to repeat, so a failure between steps leaves nothing
that breaks the next attempt.

Records flagged with reconcile_block_types (living checklists) reconcile
blocks on an existing event instead of skipping: new items are added,
vanished items are soft-deleted with a removal marker, unchanged items
are left alone.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.integrations.normalizer import BlockDraft, NormalizedRecord, ObjectDraft
from core.models.timeline import Block, Event, Integration
from patterns.repository import BlockRepository, EventObjectRepository, EventRepository

logger = structlog.get_logger()


class WriteStatus(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    RECONCILED = "reconciled"


@dataclass
class WriteOutcome:
    status: WriteStatus
    source_id: str
    event_id: Optional[uuid.UUID] = None
    blocks_created: int = 0
    blocks_updated: int = 0
    blocks_removed: int = 0


def _block_from_draft(event: Event, integration: Integration, draft: BlockDraft) -> Block:
    return Block(
        event_id=event.id,
        integration_id=integration.id,
        block_type=draft.block_type or "",
        title=draft.title,
        content=draft.content,
        metadata_=dict(draft.metadata or {}),
        url=draft.url,
        value=draft.value,
        value_multiplier=draft.value_multiplier or 1,
        value_unit=draft.value_unit,
        time=draft.time or event.time,
    )


class EventWriter:
    """Persists NormalizedRecords for one integration at a time."""

    def __init__(self, clock=None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def upsert_object(self, session: AsyncSession, user_id: str, draft: ObjectDraft):
        return await EventObjectRepository(session).upsert(user_id, draft)

    async def write(
        self,
        session: AsyncSession,
        integration: Integration,
        record: NormalizedRecord,
    ) -> WriteOutcome:
        events = EventRepository(session)
        existing = await events.find_by_source(integration.id, record.source_id)
        if existing is not None:
            if record.reconcile_block_types:
                if record.target is not None:
                    # Living documents: keep the target content current
                    await self.upsert_object(session, integration.user_id, record.target)
                return await self.reconcile(session, integration, existing, record)
            return WriteOutcome(WriteStatus.SKIPPED, record.source_id, existing.id)

        if await events.exists(integration.id, record.source_id):
            # Soft-deleted by the user; re-ingestion must not resurrect it
            return WriteOutcome(WriteStatus.SKIPPED, record.source_id)

        actor = await self.upsert_object(session, integration.user_id, record.actor)
        target = None
        if record.target is not None:
            target = await self.upsert_object(session, integration.user_id, record.target)

        draft = record.event
        now = self.clock()
        values: dict[str, Any] = {
            "id": uuid.uuid4(),
            "source_id": draft.source_id,
            "integration_id": integration.id,
            "time": draft.time,
            "actor_id": actor.id,
            "target_id": target.id if target is not None else None,
            "service": draft.service,
            "domain": draft.domain,
            "action": draft.action,
            "value": draft.value,
            "value_multiplier": draft.value_multiplier or 1,
            "value_unit": draft.value_unit,
            "event_metadata": draft.event_metadata or {},
            "created_at": now,
            "updated_at": now,
        }
        event = await events.insert_if_absent(values)
        if event is None:
            logger.info(
                "event_insert_raced",
                integration_id=str(integration.id),
                source_id=draft.source_id,
            )
            return WriteOutcome(WriteStatus.SKIPPED, record.source_id)

        blocks = [_block_from_draft(event, integration, b) for b in record.blocks]
        if blocks:
            await BlockRepository(session).create_many(blocks)

        return WriteOutcome(
            WriteStatus.CREATED,
            record.source_id,
            event.id,
            blocks_created=len(blocks),
        )

    async def reconcile(
        self,
        session: AsyncSession,
        integration: Integration,
        event: Event,
        record: NormalizedRecord,
    ) -> WriteOutcome:
        """Match blocks by metadata['hash'] within the reconciled block types."""
        types = set(record.reconcile_block_types)
        current: dict[str, BlockDraft] = {}
        for draft in record.blocks:
            key = (draft.metadata or {}).get("hash")
            if key:
                current[key] = draft

        repo = BlockRepository(session)
        existing = [b for b in await repo.for_event(event.id) if b.block_type in types]
        now = self.clock()
        outcome = WriteOutcome(WriteStatus.RECONCILED, record.source_id, event.id)
        seen: set[str] = set()

        for block in existing:
            meta = dict(block.metadata_ or {})
            key = meta.get("hash")
            if not key or key not in current or key in seen:
                meta["removed"] = True
                meta["removed_at"] = now.isoformat()
                block.metadata_ = meta
                block.soft_delete(now)
                outcome.blocks_removed += 1
                continue

            seen.add(key)
            new = current[key]
            new_meta = dict(meta)
            new_meta["checked"] = (new.metadata or {}).get("checked", meta.get("checked", False))
            changes = {
                "block_type": new.block_type or block.block_type,
                "title": new.title,
                "url": new.url if new.url is not None else block.url,
                "metadata_": new_meta,
            }
            if any(getattr(block, attr) != value for attr, value in changes.items()):
                for attr, value in changes.items():
                    setattr(block, attr, value)
                outcome.blocks_updated += 1

        new_blocks = [
            _block_from_draft(event, integration, draft)
            for key, draft in current.items()
            if key not in seen
        ]
        if new_blocks:
            await repo.create_many(new_blocks)
        outcome.blocks_created = len(new_blocks)
        await session.flush()

        if outcome.blocks_created or outcome.blocks_removed or outcome.blocks_updated:
            logger.info(
                "blocks_reconciled",
                integration_id=str(integration.id),
                source_id=record.source_id,
                created=outcome.blocks_created,
                updated=outcome.blocks_updated,
                removed=outcome.blocks_removed,
            )
        return outcome
