"""Process wiring: one place that builds every long-lived collaborator.

The API app and the Celery worker both call ``build_runtime``; tests call it
with an in-memory database, ``httpx.MockTransport`` and a fixed clock.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.integrations.api_logging import ApiLogEntry, ApiLogger
from core.integrations.http_client import ProviderClient
from core.integrations.oauth_manager import CsrfStore, OAuthManager, StateSigner, TokenRefresher
from core.resilience.dlq import DeadLetterQueue
from core.resilience.idempotency import ProcessedCache
from core.sync.paginator import SyncEngine
from core.sync.scheduler import SchedulerGate
from core.tasks.celery_app import CeleryQueue
from core.tasks.queue import BaseQueue, TaskQueue
from patterns.domain_config import EngineSettings
from plugins.registry import PluginRegistry, build_default_registry


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_QUEUE_BACKENDS: dict[str, type[BaseQueue]] = {
    "memory": TaskQueue,
    "celery": CeleryQueue,
}


@dataclass
class SyncRuntime:
    settings: EngineSettings
    session_factory: async_sessionmaker[AsyncSession]
    registry: PluginRegistry
    api_logger: ApiLogger
    client: ProviderClient
    refresher: TokenRefresher
    oauth: OAuthManager
    gate: SchedulerGate
    dlq: DeadLetterQueue
    queue: BaseQueue
    cache: ProcessedCache
    engine: SyncEngine


def build_runtime(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    settings: Optional[EngineSettings] = None,
    registry: Optional[PluginRegistry] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    log_sink: Optional[list[ApiLogEntry]] = None,
    tracer=None,
    queue_backend: Optional[str] = None,
    clock: Callable[[], datetime] = _utcnow,
) -> SyncRuntime:
    settings = settings or EngineSettings.from_env()
    queue_backend = queue_backend or settings.queue_backend
    if session_factory is None:
        from core.database import async_session_factory
        session_factory = async_session_factory
    if registry is None:
        registry = build_default_registry(settings)

    api_logger = ApiLogger(body_limit=settings.log_body_limit, sink=log_sink)
    client = ProviderClient(
        api_logger,
        connect_timeout=settings.http_connect_timeout,
        total_timeout=settings.http_total_timeout,
        retries=settings.http_retries,
        retry_backoff=settings.http_retry_backoff,
        transport=transport,
    )
    refresher = TokenRefresher(client, session_factory, clock=clock)
    oauth = OAuthManager(
        client,
        StateSigner(settings.oauth_state_secret, settings.oauth_state_ttl_seconds, clock=clock),
        CsrfStore(),
        clock=clock,
    )
    for config in registry.oauth_configs():
        oauth.register_provider(config)

    gate = SchedulerGate(settings, clock=clock)
    dlq = DeadLetterQueue(session_factory, clock=clock)
    if queue_backend not in _QUEUE_BACKENDS:
        raise ValueError(f"Unknown queue backend {queue_backend!r}")
    queue = _QUEUE_BACKENDS[queue_backend](
        max_attempts=settings.job_max_attempts,
        backoff_seconds=settings.job_backoff_seconds,
        dlq=dlq,
        clock=clock,
    )
    cache = ProcessedCache(settings.processed_cache_ttl_seconds, clock=clock)
    engine = SyncEngine(
        session_factory,
        registry,
        queue,
        client,
        refresher,
        gate,
        cache=cache,
        dlq=dlq,
        settings=settings,
        tracer=tracer,
        clock=clock,
    )
    return SyncRuntime(
        settings=settings,
        session_factory=session_factory,
        registry=registry,
        api_logger=api_logger,
        client=client,
        refresher=refresher,
        oauth=oauth,
        gate=gate,
        dlq=dlq,
        queue=queue,
        cache=cache,
        engine=engine,
    )
