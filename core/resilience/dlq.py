"""
Dead letter queue for sync work items.

Work items that fail for a fatal reason (reconnect required, structural
response, configuration) or exhaust their attempts land here with the
error and the cursor they were holding, so an operator can inspect and
replay them. Letters are rows in ``dead_letters`` and survive restarts.
"""
from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.models.timeline import DeadLetter


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DLQStatus(str, Enum):
    PENDING = "pending"
    REPLAYED = "replayed"
    DISCARDED = "discarded"


class DeadLetterQueue:
    """Persistent DLQ.

    Methods that write accept the caller's session. Without one they open
    and commit their own, which is what the worker and the API use.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    async def enqueue(
        self,
        work_item_id: str,
        integration_id: str,
        task_type: str,
        cursor: dict[str, Any],
        error_kind: str,
        error: str,
        attempts: int = 1,
        session: Optional[AsyncSession] = None,
    ) -> DeadLetter:
        now = self.clock()
        letter = DeadLetter(
            work_item_id=work_item_id,
            integration_id=integration_id,
            task_type=task_type,
            cursor=dict(cursor),
            error_kind=error_kind,
            error=error,
            attempts=attempts,
            status=DLQStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        if session is not None:
            session.add(letter)
            await session.flush()
            return letter
        async with self.session_factory() as own:
            own.add(letter)
            await own.commit()
        return letter

    async def get(self, letter_id: str | UUID) -> Optional[DeadLetter]:
        if isinstance(letter_id, str):
            try:
                letter_id = UUID(letter_id)
            except ValueError:
                return None
        async with self.session_factory() as session:
            return await session.get(DeadLetter, letter_id)

    async def list_pending(self, integration_id: Optional[str] = None, limit: int = 50) -> list[DeadLetter]:
        stmt = select(DeadLetter).where(DeadLetter.status == DLQStatus.PENDING.value)
        if integration_id:
            stmt = stmt.where(DeadLetter.integration_id == integration_id)
        stmt = stmt.order_by(DeadLetter.created_at).limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_pending(self) -> int:
        stmt = select(func.count()).select_from(DeadLetter).where(
            DeadLetter.status == DLQStatus.PENDING.value
        )
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def _set_status(self, letter_id: str | UUID, status: DLQStatus, reason: str = "") -> bool:
        if isinstance(letter_id, str):
            try:
                letter_id = UUID(letter_id)
            except ValueError:
                return False
        async with self.session_factory() as session:
            letter = await session.get(DeadLetter, letter_id)
            if letter is None:
                return False
            if status == DLQStatus.REPLAYED and letter.status != DLQStatus.PENDING.value:
                return False
            letter.status = status.value
            if reason:
                letter.error = f"{letter.error} | Discarded: {reason}"
            letter.updated_at = self.clock()
            await session.commit()
        return True

    async def mark_replayed(self, letter_id: str | UUID) -> bool:
        """Only a pending letter can be replayed."""
        return await self._set_status(letter_id, DLQStatus.REPLAYED)

    async def mark_discarded(self, letter_id: str | UUID, reason: str = "") -> bool:
        return await self._set_status(letter_id, DLQStatus.DISCARDED, reason)
