"""Test the GitHub plugin: repo/page cursors, event filters and rate-limit reset."""
from datetime import timedelta

import httpx
import pytest

from core.integrations.errors import ProviderDataError
from core.integrations.http_client import ApiResponse
from core.sync.paginator import StepOutcome
from patterns.repository import BlockRepository, EventRepository
from plugins.github.config import GitHubInstanceConfig
from plugins.github.plugin import GitHubPlugin
from tests.conftest import plugin_context, seed_integration

REPO_A = "/repos/octo/alpha/events"
REPO_B = "/repos/octo/beta/events"


def _push(event_id="101", shas=("abcdef1234", "1234567abc")):
    return {
        "id": event_id,
        "type": "PushEvent",
        "created_at": "2025-01-27T10:00:00Z",
        "actor": {"id": 7, "login": "octocat", "avatar_url": "https://avatars.example.com/7"},
        "repo": {"id": 1, "name": "octo/alpha"},
        "payload": {
            "ref": "refs/heads/main",
            "commits": [{"sha": sha, "message": f"change {sha}"} for sha in shas],
        },
    }


def _pull(event_id="102"):
    return {
        "id": event_id,
        "type": "PullRequestEvent",
        "created_at": "2025-01-27T11:00:00Z",
        "actor": {"id": 7, "login": "octocat"},
        "repo": {"id": 1, "name": "octo/alpha"},
        "payload": {
            "action": "opened",
            "pull_request": {"id": 55, "number": 12, "title": "Add widgets", "state": "open",
                             "html_url": "https://github.com/octo/alpha/pull/12"},
        },
    }


def _watch(event_id="103"):
    return {"id": event_id, "type": "WatchEvent", "created_at": "2025-01-27T12:00:00Z",
            "actor": {"login": "someone"}, "repo": {"name": "octo/alpha"}, "payload": {"action": "started"}}


async def _github(session_factory, **config):
    config.setdefault("repositories", ["octo/alpha", "octo/beta"])
    _, integration = await seed_integration(
        session_factory, service="github", instance_type="activity", token="gho_token", configuration=config,
    )
    return integration


def test_repositories_must_be_owner_name():
    assert GitHubInstanceConfig.load({"repositories": [" octo/alpha "]}).repositories == ["octo/alpha"]
    with pytest.raises(ValueError):
        GitHubInstanceConfig.load({"repositories": ["alpha"]})
    with pytest.raises(ValueError):
        GitHubInstanceConfig.load({"repositories": ["octo/alpha/extra"]})


def test_allowed_types_maps_labels():
    config = GitHubInstanceConfig.load({"events": ["push", "ReleaseEvent"]})
    assert config.allowed_types == {"PushEvent", "ReleaseEvent"}


def test_rate_limit_delay_uses_reset_header(clock):
    plugin = GitHubPlugin()
    reset = int((clock() + timedelta(seconds=300)).timestamp())
    exhausted = ApiResponse(403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(reset)})
    assert plugin.rate_limit_delay(exhausted, clock()) == 300

    secondary = ApiResponse(429, headers={"Retry-After": "5"})
    assert plugin.rate_limit_delay(secondary, clock()) == 30

    forbidden = ApiResponse(403, headers={"X-RateLimit-Remaining": "12"})
    assert plugin.rate_limit_delay(forbidden, clock()) is None


@pytest.mark.asyncio
async def test_walks_each_repository_until_feed_ends(runtime, session_factory, session, provider):
    provider.add(
        "GET", REPO_A,
        httpx.Response(200, json=[_push(), _pull(), _watch()]),
        httpx.Response(422, json={"message": "In order to keep the API fast..."}),
    )
    provider.add("GET", REPO_B, httpx.Response(200, json=[]))
    integration = await _github(session_factory)

    await runtime.engine.trigger(str(integration.id))
    assert await runtime.queue.drain(runtime.engine.handle) == 3

    calls = [(c.url.path, c.url.params["page"]) for c in provider.calls]
    assert calls == [(REPO_A, "1"), (REPO_A, "2"), (REPO_B, "1")]
    assert provider.calls[0].headers["X-GitHub-Api-Version"] == "2022-11-28"
    assert provider.calls[0].headers["Authorization"] == "Bearer gho_token"

    events = {e.source_id: e for e in await EventRepository(session).list_for_integration(integration.id)}
    assert set(events) == {"101", "102"}
    push = events["101"]
    assert (push.action, push.value, push.value_unit) == ("push", 2, "commits")
    commits = await BlockRepository(session).for_event(push.id)
    assert sorted(b.title for b in commits) == ["Commit: 1234567", "Commit: abcdef1"]
    assert events["102"].action == "opened"
    assert events["102"].event_metadata["number"] == 12


@pytest.mark.asyncio
async def test_idempotency_key_matches_stored_source_id(runtime, session_factory, session, provider):
    provider.add("GET", REPO_A, httpx.Response(200, json=[_push()]), httpx.Response(200, json=[]))
    provider.add("GET", REPO_B, httpx.Response(200, json=[]))
    integration = await _github(session_factory)
    await runtime.engine.trigger(str(integration.id))
    await runtime.queue.drain(runtime.engine.handle)

    ctx = await plugin_context(runtime, str(integration.id))
    [event] = await EventRepository(session).list_for_integration(integration.id)
    plugin = runtime.registry.get("github")
    assert plugin.idempotency_key(ctx, _push()) == event.source_id
    assert plugin.idempotency_key(ctx, _watch()) == ""


@pytest.mark.asyncio
async def test_event_filter_drops_unwanted_types(runtime, session_factory, session, provider):
    provider.add("GET", REPO_A, httpx.Response(200, json=[_push(), _pull()]), httpx.Response(200, json=[]))
    integration = await _github(session_factory, repositories=["octo/alpha"], events=["pull_request"])

    await runtime.engine.trigger(str(integration.id))
    await runtime.queue.drain(runtime.engine.handle)

    events = await EventRepository(session).list_for_integration(integration.id)
    assert [e.source_id for e in events] == ["102"]


@pytest.mark.asyncio
async def test_exhausted_quota_defers_until_reset(runtime, session_factory, provider, clock):
    reset = int((clock() + timedelta(minutes=10)).timestamp())
    provider.add("GET", REPO_A, httpx.Response(
        403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(reset)}, json={"message": "API rate limit exceeded"},
    ))
    integration = await _github(session_factory)
    item = await runtime.engine.trigger(str(integration.id))
    runtime.queue.pop_due()

    report = await runtime.engine.handle(item)

    assert report.outcome == StepOutcome.DEFERRED
    assert report.next_item.cursor == {"repo_index": 0, "page": 1}
    assert report.next_item.not_before == clock() + timedelta(minutes=10)


@pytest.mark.asyncio
async def test_no_repositories_completes_immediately(runtime, session_factory, provider):
    integration = await _github(session_factory, repositories=[])
    await runtime.engine.trigger(str(integration.id))

    assert await runtime.queue.drain(runtime.engine.handle) == 1
    assert provider.calls == []


def test_malformed_events_raise():
    plugin = GitHubPlugin()

    class Ctx:
        config = GitHubInstanceConfig()

    with pytest.raises(ProviderDataError):
        plugin.normalize(Ctx(), {"id": "1"})
    with pytest.raises(ProviderDataError):
        plugin.normalize(Ctx(), {"id": "1", "type": "PushEvent", "actor": {"login": "a"}, "repo": {"name": "a/b"}})
    broken_pr = _pull()
    broken_pr["payload"] = {"action": "opened"}
    with pytest.raises(ProviderDataError):
        plugin.normalize(Ctx(), broken_pr)
