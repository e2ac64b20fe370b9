"""Test the processed-page cache and the dead letter queue."""
import pytest

from core.resilience.dlq import DeadLetterQueue, DLQStatus
from core.resilience.idempotency import ProcessedCache, generate_processing_key


def test_processing_key_is_deterministic():
    items = [{"day": "2025-01-27", "score": 82}]
    key = generate_processing_key("i-1", "oura", "activity", items)
    assert key == generate_processing_key("i-1", "oura", "activity", [{"score": 82, "day": "2025-01-27"}])
    assert key.startswith("i-1_oura_activity_")
    assert key != generate_processing_key("i-2", "oura", "activity", items)


def test_processed_cache_expires(clock):
    cache = ProcessedCache(ttl_seconds=60, clock=clock)
    cache.remember("k")
    assert cache.seen("k")
    clock.advance(seconds=61)
    assert not cache.seen("k")
    assert len(cache) == 0


def test_cleanup_expired(clock):
    cache = ProcessedCache(ttl_seconds=60, clock=clock)
    cache.remember("old")
    clock.advance(seconds=30)
    cache.remember("new")
    clock.advance(seconds=31)
    assert cache.cleanup_expired() == 1
    assert cache.seen("new")


def test_remember_sweeps_keys_never_read_again(clock):
    cache = ProcessedCache(ttl_seconds=60, clock=clock)
    for n in range(100):
        cache.remember(f"page-{n}")
    clock.advance(seconds=61)

    cache.remember("latest")

    assert len(cache) == 1


def test_empty_cache_has_zero_length():
    assert len(ProcessedCache()) == 0


@pytest.mark.asyncio
async def test_dead_letter_lifecycle(session_factory, clock):
    dlq = DeadLetterQueue(session_factory, clock=clock)
    letter = await dlq.enqueue("w-1", "i-1", "fetch_page", {"page": 2}, "structural", "bad json")
    clock.advance(seconds=1)
    await dlq.enqueue("w-2", "i-2", "fetch_page", {}, "auth_refresh_failed", "reconnect")

    assert [dl.id for dl in await dlq.list_pending(integration_id="i-1")] == [letter.id]
    assert await dlq.mark_replayed(letter.id)
    assert not await dlq.mark_replayed(letter.id)
    stored = await dlq.get(str(letter.id))
    assert stored.status == DLQStatus.REPLAYED.value
    assert stored.cursor == {"page": 2}
    assert stored.to_dict()["status"] == "replayed"
    assert len(await dlq.list_pending()) == 1
    assert await dlq.count_pending() == 1


@pytest.mark.asyncio
async def test_discarded_letter_keeps_reason(session_factory, clock):
    dlq = DeadLetterQueue(session_factory, clock=clock)
    letter = await dlq.enqueue("w-1", "i-1", "fetch_page", {}, "structural", "bad json")

    assert await dlq.mark_discarded(letter.id, "provider fixed")
    stored = await dlq.get(letter.id)
    assert stored.status == DLQStatus.DISCARDED.value
    assert stored.error == "bad json | Discarded: provider fixed"
    assert await dlq.list_pending() == []
    assert not await dlq.mark_discarded("missing")


@pytest.mark.asyncio
async def test_letters_survive_a_new_queue_instance(session_factory, clock):
    await DeadLetterQueue(session_factory, clock=clock).enqueue(
        "w-1", "i-1", "fetch_page", {"next_token": "t-3"}, "structural", "bad json", attempts=3,
    )

    [letter] = await DeadLetterQueue(session_factory, clock=clock).list_pending()
    assert letter.cursor == {"next_token": "t-3"}
    assert letter.attempts == 3
