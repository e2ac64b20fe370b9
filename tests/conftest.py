"""Shared fixtures: sqlite database, fixed clock and a fake provider transport."""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from core.database import build_engine, build_session_factory, close_db, init_db
from core.models.timeline import Integration, IntegrationGroup
from core.runtime import build_runtime
from patterns.domain_config import EngineSettings
from patterns.repository import IntegrationGroupRepository, IntegrationRepository
from plugins.base import PluginContext
from plugins.registry import build_default_registry

FIXED_NOW = datetime(2025, 1, 28, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Injectable clock; call it for now, advance it by hand."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeProvider:
    """Routes requests by method and path to queued responses.

    The last queued response for a route repeats once the others are used.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list[httpx.Response]] = {}
        self.calls: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses: httpx.Response) -> None:
        self.routes.setdefault((method.upper(), path), []).extend(responses)

    def json(self, method: str, path: str, body, status: int = 200, headers=None) -> None:
        self.add(method, path, httpx.Response(status, json=body, headers=headers or {}))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        queued = self.routes.get((request.method, request.url.path))
        if not queued:
            return httpx.Response(404, json={"error": "no route", "path": request.url.path})
        template = queued.pop(0) if len(queued) > 1 else queued[0]
        # Fresh response per call so a repeated template is never read twice
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [c for c in self.calls if c.url.path == path]

    @staticmethod
    def body(request: httpx.Request) -> dict:
        return json.loads(request.content or b"{}")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def settings():
    return EngineSettings(http_retry_backoff=0.0)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'timeline.db'}")
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def runtime(session_factory, settings, provider, clock):
    return build_runtime(
        session_factory=session_factory,
        settings=settings,
        registry=build_default_registry(settings),
        transport=provider.transport,
        log_sink=[],
        clock=clock,
    )


async def seed_integration(
    session_factory,
    service: str = "oura",
    instance_type: str = "activity",
    configuration: dict | None = None,
    token: str | None = "access-123",
    expiry: datetime | None = None,
    refresh_token: str | None = None,
    user_id: str = "user-1",
    account_id: str | None = None,
) -> tuple[IntegrationGroup, Integration]:
    """Create a group and one instance, committed."""
    async with session_factory() as s:
        group = IntegrationGroup(
            user_id=user_id,
            service=service,
            account_id=account_id,
            access_token=token,
            refresh_token=refresh_token,
            expiry=expiry,
        )
        s.add(group)
        await s.flush()
        integration = Integration(
            group_id=group.id,
            user_id=user_id,
            service=service,
            name=f"{service} {instance_type}",
            instance_type=instance_type,
            configuration=configuration or {},
        )
        s.add(integration)
        await s.commit()
        return group, integration


async def plugin_context(runtime, integration_id) -> PluginContext:
    """Context for calling a plugin directly against a stored instance."""
    async with runtime.session_factory() as s:
        integration = await IntegrationRepository(s).get(integration_id)
        group = await IntegrationGroupRepository(s).get(integration.group_id)
    plugin = runtime.registry.get(integration.service)
    return PluginContext(
        integration=integration,
        group=group,
        config=plugin.load_config(integration.configuration),
        client=runtime.client,
        credential=plugin.credential(group.access_token),
        now=FIXED_NOW,
    )
