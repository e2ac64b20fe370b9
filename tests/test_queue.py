"""Test work items, the in-memory queue and its failure policy."""
from datetime import timedelta

import pytest

from core.resilience.dlq import DeadLetterQueue
from core.tasks.queue import FETCH_PAGE, TaskQueue, WorkItem


def test_continuation_keeps_task_and_integration(clock):
    item = WorkItem(integration_id="i-1", cursor={"start_date": "2025-01-01"}, not_before=clock())
    nxt = item.continuation({"start_date": "2025-01-31"}, clock(), delay_seconds=0)

    assert nxt.task_type == FETCH_PAGE
    assert nxt.integration_id == "i-1"
    assert nxt.page_index == 1
    assert nxt.continuation_of == item.id
    assert nxt.id != item.id
    assert item.cursor == {"start_date": "2025-01-01"}


def test_deferred_continuation_keeps_cursor_and_page(clock):
    item = WorkItem(integration_id="i-1", cursor={"page": 3}, page_index=2, not_before=clock())
    deferred = item.continuation(item.cursor, clock(), delay_seconds=60, advance_page=False)

    assert deferred.cursor == {"page": 3}
    assert deferred.page_index == 2
    assert deferred.not_before == clock() + timedelta(seconds=60)


def test_pop_due_respects_not_before(clock):
    queue = TaskQueue(clock=clock)
    later = queue.push(WorkItem(integration_id="later", not_before=clock() + timedelta(seconds=30)))
    now = queue.push(WorkItem(integration_id="now", not_before=clock()))

    assert queue.pop_due() is now
    assert queue.pop_due() is None
    assert queue.next_due_at() == later.not_before
    assert queue.pop_due(clock() + timedelta(seconds=30)) is later
    assert len(queue) == 0


def test_fifo_within_same_instant(clock):
    queue = TaskQueue(clock=clock)
    first = queue.push(WorkItem(integration_id="a", not_before=clock()))
    second = queue.push(WorkItem(integration_id="b", not_before=clock()))
    assert [i.id for i in queue.pending()] == [first.id, second.id]


@pytest.mark.asyncio
async def test_failure_retries_with_backoff_then_dead_letters(session_factory, clock):
    dlq = DeadLetterQueue(session_factory, clock=clock)
    queue = TaskQueue(max_attempts=2, backoff_seconds=(60, 300), dlq=dlq, clock=clock)
    item = WorkItem(integration_id="i-1", cursor={"page": 1}, not_before=clock())

    retry = await queue.handle_failure(item, RuntimeError("boom"))
    assert retry.attempt == 2
    assert retry.not_before == clock() + timedelta(seconds=60)
    assert queue.pending() == [retry]

    assert await queue.handle_failure(queue.pop_due(retry.not_before), RuntimeError("boom again")) is None
    assert len(queue) == 0
    letter = (await dlq.list_pending(integration_id="i-1"))[0]
    assert letter.error_kind == "unhandled_exception"
    assert letter.cursor == {"page": 1}
    assert letter.attempts == 2
    assert "RuntimeError" in letter.error


@pytest.mark.asyncio
async def test_drain_runs_continuations_that_become_due(clock):
    queue = TaskQueue(clock=clock)
    seen = []

    async def handler(item):
        seen.append(item.cursor["n"])
        if item.cursor["n"] < 3:
            queue.push(item.continuation({"n": item.cursor["n"] + 1}, clock()))

    queue.push(WorkItem(integration_id="i-1", cursor={"n": 1}, not_before=clock()))
    ran = await queue.drain(handler)

    assert ran == 3
    assert seen == [1, 2, 3]
    assert queue.processed == 3


@pytest.mark.asyncio
async def test_drain_leaves_deferred_items(clock):
    queue = TaskQueue(clock=clock)

    async def handler(item):
        queue.push(item.continuation(item.cursor, clock(), delay_seconds=60, advance_page=False))

    queue.push(WorkItem(integration_id="i-1", not_before=clock()))
    assert await queue.drain(handler) == 1
    assert len(queue) == 1


@pytest.mark.asyncio
async def test_handler_exception_is_retried_not_raised(clock):
    queue = TaskQueue(clock=clock)

    async def handler(item):
        raise ValueError("bad page")

    queue.push(WorkItem(integration_id="i-1", not_before=clock()))
    assert await queue.drain(handler) == 1
    assert queue.pending()[0].attempt == 2


@pytest.mark.asyncio
async def test_failing_handler_is_retried_until_dead_lettered(session_factory, clock):
    dlq = DeadLetterQueue(session_factory, clock=clock)
    queue = TaskQueue(max_attempts=3, backoff_seconds=(60, 300, 600), dlq=dlq, clock=clock)
    attempts = []

    async def handler(item):
        attempts.append(item.attempt)
        raise ValueError("bad page")

    queue.push(WorkItem(integration_id="i-1", cursor={"page": 4}, not_before=clock()))
    assert await queue.drain(handler) == 1
    clock.advance(seconds=60)
    assert await queue.drain(handler) == 1
    clock.advance(seconds=299)
    assert await queue.drain(handler) == 0
    clock.advance(seconds=1)
    assert await queue.drain(handler) == 1

    assert attempts == [1, 2, 3]
    assert len(queue) == 0
    [letter] = await dlq.list_pending()
    assert letter.cursor == {"page": 4}
    assert letter.attempts == 3


def test_payload_restores_the_same_item(clock):
    item = WorkItem(
        integration_id="i-1",
        cursor={"start_datetime": "2025-01-21T00:00:00Z", "next_token": "t-2"},
        not_before=clock() + timedelta(seconds=30),
        page_index=4,
        attempt=2,
        timebox_until=clock() + timedelta(hours=1),
        force=True,
        continuation_of="w-0",
    )
    assert WorkItem.from_payload(item.to_payload()) == item
