"""
Work items and queue backends for paginator steps.

Architecture:
    SyncEngine.check_all() -> WorkItem -> queue backend -> SyncEngine.handle()

A paginator step never loops or sleeps. When it needs another page, or a
provider says "retry in 60s", it pushes its continuation (same task type,
new or unchanged cursor, optional delay) and returns.

Backends:
- TaskQueue: in-process heap ordered by ``not_before``; drained inline by
  one-shot runs and tests
- CeleryQueue (core.tasks.celery_app): ``apply_async(eta=...)`` onto the
  broker, so continuations and their cursors survive a worker restart
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
import heapq
import itertools
import uuid

import structlog

from core.resilience.dlq import DeadLetterQueue

logger = structlog.get_logger()

FETCH_PAGE = "fetch_page"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class WorkItem:
    """One schedulable paginator step."""
    integration_id: str
    cursor: dict[str, Any] = field(default_factory=dict)
    task_type: str = FETCH_PAGE
    not_before: datetime = field(default_factory=_utcnow)
    page_index: int = 0
    attempt: int = 1
    timebox_until: Optional[datetime] = None
    force: bool = False
    continuation_of: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def continuation(
        self,
        cursor: dict[str, Any],
        now: datetime,
        delay_seconds: float = 0.0,
        advance_page: bool = True,
    ) -> "WorkItem":
        """The successor step: same task and integration, new cursor, optional delay."""
        return replace(
            self,
            cursor=dict(cursor),
            not_before=now + timedelta(seconds=delay_seconds),
            page_index=self.page_index + (1 if advance_page else 0),
            attempt=1,
            continuation_of=self.id,
            id=str(uuid.uuid4()),
        )

    def retry(self, now: datetime, delay_seconds: float) -> "WorkItem":
        """Same step again after an unexpected failure."""
        return replace(
            self,
            not_before=now + timedelta(seconds=delay_seconds),
            attempt=self.attempt + 1,
            continuation_of=self.id,
            id=str(uuid.uuid4()),
        )

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe form for the broker."""
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "cursor": self.cursor,
            "task_type": self.task_type,
            "not_before": self.not_before.isoformat(),
            "page_index": self.page_index,
            "attempt": self.attempt,
            "timebox_until": self.timebox_until.isoformat() if self.timebox_until else None,
            "force": self.force,
            "continuation_of": self.continuation_of,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "WorkItem":
        return cls(
            id=payload["id"],
            integration_id=payload["integration_id"],
            cursor=dict(payload.get("cursor") or {}),
            task_type=payload.get("task_type", FETCH_PAGE),
            not_before=_parse_time(payload.get("not_before")) or _utcnow(),
            page_index=int(payload.get("page_index", 0)),
            attempt=int(payload.get("attempt", 1)),
            timebox_until=_parse_time(payload.get("timebox_until")),
            force=bool(payload.get("force", False)),
            continuation_of=payload.get("continuation_of"),
        )


Handler = Callable[[WorkItem], Awaitable[Any]]


class BaseQueue:
    """Failure policy shared by every backend.

    Subclasses implement ``push``. An unexpected exception from a step is
    retried after ``backoff_seconds[attempt - 1]`` until ``max_attempts``,
    then the item is dead-lettered with its cursor.
    """

    backend = "base"

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: tuple[int, ...] = (60, 300, 600),
        dlq: Optional[DeadLetterQueue] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.dlq = dlq
        self.clock = clock

    def push(self, item: WorkItem) -> WorkItem:
        raise NotImplementedError

    def should_retry(self, item: WorkItem) -> bool:
        return item.attempt < self.max_attempts

    def backoff_for(self, attempt: int) -> int:
        idx = min(attempt - 1, len(self.backoff_seconds) - 1)
        return self.backoff_seconds[idx]

    async def dead_letter(self, item: WorkItem, exc: BaseException) -> None:
        logger.error(
            "work_item_dead_lettered",
            integration_id=item.integration_id,
            attempts=item.attempt,
            error=str(exc),
        )
        if self.dlq is not None:
            await self.dlq.enqueue(
                work_item_id=item.id,
                integration_id=item.integration_id,
                task_type=item.task_type,
                cursor=item.cursor,
                error_kind="unhandled_exception",
                error=f"{type(exc).__name__}: {exc}",
                attempts=item.attempt,
            )


class TaskQueue(BaseQueue):
    """In-memory queue ordered by due time, FIFO within the same instant."""

    backend = "memory"

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: tuple[int, ...] = (60, 300, 600),
        dlq: Optional[DeadLetterQueue] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        super().__init__(max_attempts, backoff_seconds, dlq, clock)
        self._heap: list[tuple[datetime, int, WorkItem]] = []
        self._seq = itertools.count()
        self._processed = 0

    def push(self, item: WorkItem) -> WorkItem:
        heapq.heappush(self._heap, (item.not_before, next(self._seq), item))
        logger.debug(
            "work_item_enqueued",
            integration_id=item.integration_id,
            task_type=item.task_type,
            not_before=item.not_before.isoformat(),
            queue_size=len(self._heap),
        )
        return item

    def pop_due(self, now: Optional[datetime] = None) -> Optional[WorkItem]:
        now = now or self.clock()
        if self._heap and self._heap[0][0] <= now:
            return heapq.heappop(self._heap)[2]
        return None

    def pending(self) -> list[WorkItem]:
        return [entry[2] for entry in sorted(self._heap)]

    def next_due_at(self) -> Optional[datetime]:
        return self._heap[0][0] if self._heap else None

    def __len__(self) -> int:
        return len(self._heap)

    async def handle_failure(self, item: WorkItem, exc: BaseException) -> Optional[WorkItem]:
        """Re-enqueue with backoff, or dead-letter once attempts run out."""
        if self.should_retry(item):
            delay = self.backoff_for(item.attempt)
            retry = self.push(item.retry(self.clock(), delay))
            logger.warning(
                "work_item_retry_scheduled",
                integration_id=item.integration_id,
                attempt=item.attempt,
                delay_seconds=delay,
                error=str(exc),
            )
            return retry
        await self.dead_letter(item, exc)
        return None

    async def run_item(self, item: WorkItem, handler: Handler) -> Any:
        try:
            result = await handler(item)
        except Exception as exc:
            await self.handle_failure(item, exc)
            return None
        self._processed += 1
        return result

    async def drain(self, handler: Handler, now: Optional[datetime] = None, limit: int = 1000) -> int:
        """Run every item that is due, including continuations that become due.

        Processes sequentially in due order and returns how many ran.
        Used by one-shot runs and tests.
        """
        ran = 0
        while ran < limit:
            item = self.pop_due(now)
            if item is None:
                break
            await self.run_item(item, handler)
            ran += 1
        return ran

    @property
    def processed(self) -> int:
        return self._processed
