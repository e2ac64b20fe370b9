"""Test the Outline plugin: path cursors, page cap, day notes and task reconciliation."""
from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from core.models.timeline import EventObject
from patterns.repository import BlockRepository, EventObjectRepository, EventRepository, IntegrationRepository
from plugins.outline.config import OutlineInstanceConfig
from plugins.outline.tasks import extract_tasks, parse_day_note_title, task_hash
from tests.conftest import FakeProvider, plugin_context, seed_integration

DOCS = "/api/documents.list"
COLLECTIONS = "/api/collections.list"


def _doc(doc_id="d-1", title="Weekly plan", text="- [ ] Buy milk\n- [ ] Call Bob", **extra):
    doc = {
        "id": doc_id,
        "title": title,
        "text": text,
        "url": f"/doc/{doc_id}",
        "createdAt": "2025-01-20T09:00:00.000Z",
        "updatedAt": "2025-01-27T09:00:00.000Z",
        "createdBy": {"id": "u-1", "name": "Ada"},
    }
    doc.update(extra)
    return doc


def _docs(*docs, next_path=None):
    return httpx.Response(200, json={"data": list(docs), "pagination": {"nextPath": next_path}})


async def _run(runtime, integration_id, force=False):
    await runtime.engine.trigger(integration_id, force=force)
    return await runtime.queue.drain(runtime.engine.handle)


def _outline(session_factory, **kwargs):
    return seed_integration(session_factory, service="outline", instance_type="recent_documents",
                            token="ol_api_key", **kwargs)


def test_extract_tasks():
    text = "# Plan\n- [ ] Buy milk\n  - [x] Call Bob\nnot a task\n- [X] Ship it"
    tasks = extract_tasks(text)
    assert [(t.line_number, t.text, t.checked) for t in tasks] == [
        (2, "Buy milk", False),
        (3, "Call Bob", True),
        (5, "Ship it", True),
    ]
    assert extract_tasks(None) == []


def test_task_hash_ignores_case_and_checkbox():
    assert task_hash("d-1", 2, "Buy Milk") == task_hash("d-1", 2, "buy milk")
    assert task_hash("d-1", 2, "Buy milk") != task_hash("d-1", 3, "Buy milk")


def test_day_note_title():
    assert parse_day_note_title("2025-01-27: Monday") == date(2025, 1, 27)
    assert parse_day_note_title("Meeting notes") is None
    assert parse_day_note_title("2025-02-30: Someday") is None


def test_api_url_is_normalized():
    assert OutlineInstanceConfig.load({"api_url": "https://wiki.example.com/ "}).api_url == "https://wiki.example.com"
    with pytest.raises(ValueError):
        OutlineInstanceConfig.load({"api_url": "wiki.example.com"})


@pytest.mark.asyncio
async def test_documents_become_events_with_tasks(runtime, session_factory, session, provider):
    provider.json("POST", COLLECTIONS, {"data": [{"id": "c-1", "name": "Engineering", "url": "/collection/eng"}]})
    provider.add("POST", DOCS, _docs(_doc()))
    _, integration = await _outline(session_factory)

    assert await _run(runtime, str(integration.id)) == 1

    doc_call = provider.calls_to(DOCS)[0]
    assert doc_call.headers["Authorization"] == "Bearer ol_api_key"
    assert FakeProvider.body(doc_call) == {"limit": 100, "sort": "updatedAt", "direction": "DESC"}

    event = (await EventRepository(session).list_for_integration(integration.id))[0]
    assert event.source_id == "outline_doc_d-1"
    assert event.action == "created"
    assert event.time == datetime(2025, 1, 20, 9, tzinfo=timezone.utc)
    assert "text" not in event.event_metadata

    blocks = await BlockRepository(session).for_event(event.id)
    assert sorted(b.title for b in blocks) == ["Buy milk", "Call Bob"]
    assert {b.block_type for b in blocks} == {"doc_task"}

    actor = await session.get(EventObject, event.actor_id)
    assert (actor.concept, actor.type, actor.title) == ("b_party", "outline_user", "Ada")
    collection = await EventObjectRepository(session).find("user-1", "category", "outline_collection", "Engineering")
    assert collection.url == "https://app.getoutline.com/collection/eng"


@pytest.mark.asyncio
async def test_idempotency_key_matches_stored_source_id(runtime, session_factory, session, provider):
    provider.json("POST", COLLECTIONS, {"data": []})
    provider.add("POST", DOCS, _docs(_doc()))
    _, integration = await _outline(session_factory)
    await _run(runtime, str(integration.id))

    ctx = await plugin_context(runtime, str(integration.id))
    [event] = await EventRepository(session).list_for_integration(integration.id)
    assert runtime.registry.get("outline").idempotency_key(ctx, _doc()) == event.source_id


@pytest.mark.asyncio
async def test_edited_document_reconciles_tasks(runtime, session_factory, session, provider, clock):
    provider.json("POST", COLLECTIONS, {"data": []})
    provider.add(
        "POST", DOCS,
        _docs(_doc(text="- [ ] Buy milk\n- [ ] Call Bob")),
        _docs(_doc(text="- [x] Buy milk\n- [ ] Write report")),
    )
    _, integration = await _outline(session_factory)

    await _run(runtime, str(integration.id))
    clock.advance(minutes=20)
    await _run(runtime, str(integration.id))

    events = await EventRepository(session).list_for_integration(integration.id)
    assert len(events) == 1
    blocks = await BlockRepository(session).for_event(events[0].id, include_deleted=True)
    live = {b.title: b for b in blocks if b.deleted_at is None}
    removed = [b for b in blocks if b.deleted_at is not None]

    assert set(live) == {"Buy milk", "Write report"}
    assert live["Buy milk"].metadata_["checked"] is True
    assert [b.title for b in removed] == ["Call Bob"]
    assert removed[0].metadata_["removed"] is True

    target = await session.get(EventObject, events[0].target_id)
    assert target.content == "- [x] Buy milk\n- [ ] Write report"


@pytest.mark.asyncio
async def test_day_notes_use_title_date(runtime, session_factory, session, provider):
    provider.json("POST", COLLECTIONS, {"data": []})
    provider.add("POST", DOCS, _docs(
        _doc("d-7", title="2025-01-27: Monday", text="- [ ] Stretch", collectionId="c-days"),
        _doc("d-8", title="Random", collectionId="c-days"),
    ))
    _, integration = await seed_integration(
        session_factory, service="outline", instance_type="recent_daynotes",
        configuration={"daynotes_collection_id": "c-days"}, token="k",
    )

    await _run(runtime, str(integration.id))

    assert FakeProvider.body(provider.calls_to(DOCS)[0])["collectionId"] == "c-days"
    events = {e.source_id: e for e in await EventRepository(session).list_for_integration(integration.id)}
    note = events["outline_doc_d-7"]
    assert note.action == "had_day_note"
    assert note.time == datetime(2025, 1, 27, tzinfo=timezone.utc)
    assert (await BlockRepository(session).for_event(note.id))[0].block_type == "day_task"
    assert events["outline_doc_d-8"].action == "created"


@pytest.mark.asyncio
async def test_document_becoming_a_day_note_keeps_one_block_per_task(runtime, session_factory, session, provider, clock):
    provider.json("POST", COLLECTIONS, {"data": []})
    provider.add(
        "POST", DOCS,
        _docs(_doc("d-9", title="Draft", text="- [ ] Stretch", collectionId="c-days")),
        _docs(_doc("d-9", title="2025-01-27: Monday", text="- [x] Stretch", collectionId="c-days")),
    )
    _, integration = await seed_integration(
        session_factory, service="outline", instance_type="recent_daynotes",
        configuration={"daynotes_collection_id": "c-days"}, token="k",
    )

    await _run(runtime, str(integration.id))
    clock.advance(minutes=20)
    await _run(runtime, str(integration.id))

    [event] = await EventRepository(session).list_for_integration(integration.id)
    blocks = await BlockRepository(session).for_event(event.id, include_deleted=True)
    assert [(b.title, b.block_type, b.deleted_at) for b in blocks] == [("Stretch", "day_task", None)]
    assert blocks[0].metadata_["checked"] is True


@pytest.mark.asyncio
async def test_next_path_drives_the_next_request(runtime, session_factory, provider):
    provider.json("POST", COLLECTIONS, {"data": []})
    provider.add(
        "POST", DOCS,
        _docs(_doc("d-1"), next_path="/api/documents.list?limit=100&offset=100"),
        _docs(_doc("d-2")),
    )
    _, integration = await _outline(session_factory)

    assert await _run(runtime, str(integration.id)) == 2

    second = FakeProvider.body(provider.calls_to(DOCS)[1])
    assert second["offset"] == 100
    assert second["limit"] == 100
    # Collections are only listed on the first page
    assert len(provider.calls_to(COLLECTIONS)) == 1


@pytest.mark.asyncio
async def test_page_cap_truncates_and_succeeds(runtime, session_factory, provider, clock):
    provider.json("POST", COLLECTIONS, {"data": []})
    provider.add("POST", DOCS, _docs(_doc(), next_path="/api/documents.list?offset=100"))
    _, integration = await _outline(session_factory)

    ran = await _run(runtime, str(integration.id))

    assert ran == runtime.settings.page_cap == 10
    assert len(provider.calls_to(DOCS)) == 10
    assert len(runtime.queue) == 0
    async with session_factory() as s:
        stored = await IntegrationRepository(s).get(integration.id)
    assert stored.last_run_state == "succeeded"
    assert stored.last_successful_update_at == clock()


@pytest.mark.asyncio
async def test_collections_failure_is_not_fatal(runtime, session_factory, session, provider):
    provider.add("POST", COLLECTIONS, httpx.Response(500, text="down"))
    provider.add("POST", DOCS, _docs(_doc()))
    _, integration = await _outline(session_factory)

    await _run(runtime, str(integration.id))

    assert len(await EventRepository(session).list_for_integration(integration.id)) == 1
    assert await runtime.dlq.list_pending() == []


@pytest.mark.asyncio
async def test_collections_rate_limit_defers_first_page(runtime, session_factory, provider, clock):
    provider.add("POST", COLLECTIONS, httpx.Response(429, headers={"Retry-After": "30"}))
    provider.add("POST", DOCS, _docs(_doc()))
    _, integration = await _outline(session_factory)

    await _run(runtime, str(integration.id))

    assert provider.calls_to(DOCS) == []
    deferred = runtime.queue.pending()[0]
    assert deferred.cursor == {"next_path": None}
    assert deferred.not_before == clock() + timedelta(seconds=30)
