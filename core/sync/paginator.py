"""
Paginator / cursor engine.

One call to ``SyncEngine.handle(item)`` is one paginator step:

    timebox check -> load instance -> token -> fetch page -> normalize + write
    -> commit -> push continuation (or settle the run)

The engine is written against the SyncPlugin interface only. A step never
sleeps and never loops over pages: a rate limit becomes a delayed
continuation carrying the same cursor, and another page becomes a
continuation carrying the next cursor, pushed only after this page's writes
are committed.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.integrations.errors import ConfigError, ErrorKind, ProviderDataError, SyncError
from core.integrations.http_client import ProviderClient
from core.integrations.oauth_manager import TokenRefresher
from core.models.timeline import Integration
from core.observability.otel_setup import sync_step_span
from core.resilience.dlq import DeadLetterQueue, DLQStatus
from core.resilience.idempotency import ProcessedCache, generate_processing_key
from core.sync.scheduler import SchedulerGate
from core.sync.writer import EventWriter, WriteStatus
from core.tasks.queue import BaseQueue, WorkItem
from patterns.domain_config import EngineSettings, InstanceConfig
from patterns.repository import IntegrationGroupRepository, IntegrationRepository
from plugins.base import Page, PluginContext, SyncPlugin
from plugins.registry import PluginRegistry, UnknownPluginError

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepOutcome(str, Enum):
    COMPLETED = "completed"      # run settled as Succeeded
    CONTINUED = "continued"      # next page enqueued
    DEFERRED = "deferred"        # rate limited, same cursor enqueued later
    FAILED = "failed"            # run settled as Failed
    TIMED_OUT = "timed_out"      # time box passed, nothing enqueued
    PAUSED = "paused"            # instance paused, nothing enqueued
    SKIPPED = "skipped"          # instance gone


@dataclass
class StepReport:
    outcome: StepOutcome
    integration_id: str
    items: int = 0
    created: int = 0
    skipped: int = 0
    reconciled: int = 0
    item_errors: int = 0
    truncated: bool = False
    error: Optional[SyncError] = None
    next_item: Optional[WorkItem] = None
    processing_key: Optional[str] = None


@dataclass
class _Loaded:
    integration: Integration
    plugin: SyncPlugin
    config: InstanceConfig


class SyncEngine:
    """Runs paginator steps and starts runs for due instances."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: PluginRegistry,
        queue: BaseQueue,
        client: ProviderClient,
        refresher: TokenRefresher,
        gate: SchedulerGate,
        writer: Optional[EventWriter] = None,
        cache: Optional[ProcessedCache] = None,
        dlq: Optional[DeadLetterQueue] = None,
        settings: Optional[EngineSettings] = None,
        tracer=None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.queue = queue
        self.client = client
        self.refresher = refresher
        self.gate = gate
        self.settings = settings or EngineSettings.default()
        self.writer = writer or EventWriter(clock=clock)
        if cache is None:
            cache = ProcessedCache(self.settings.processed_cache_ttl_seconds, clock=clock)
        self.cache = cache
        if dlq is None:
            dlq = queue.dlq if queue.dlq is not None else DeadLetterQueue(session_factory, clock=clock)
        self.dlq = dlq
        self.tracer = tracer
        self.clock = clock

    # ------------------------------------------------------------------
    # Starting runs
    # ------------------------------------------------------------------

    def _load(self, integration: Integration) -> Optional[_Loaded]:
        try:
            plugin = self.registry.get(integration.service)
        except UnknownPluginError:
            logger.warning("unknown_plugin", integration_id=str(integration.id), service=integration.service)
            return None
        try:
            config = plugin.load_config(integration.configuration)
        except ConfigError as exc:
            logger.warning("invalid_configuration", integration_id=str(integration.id), error=str(exc))
            return None
        return _Loaded(integration, plugin, config)

    async def start_run(
        self,
        session: AsyncSession,
        integration: Integration,
        force: bool = False,
        timebox_until: Optional[datetime] = None,
    ) -> Optional[WorkItem]:
        """Pass the scheduler gate and build the first work item. Not pushed yet."""
        loaded = self._load(integration)
        if loaded is None:
            return None
        if not await self.gate.try_trigger(session, integration, loaded.config, force=force):
            return None
        return WorkItem(
            integration_id=str(integration.id),
            cursor=loaded.plugin.initial_cursor(integration, loaded.config, self.clock()),
            not_before=self.clock(),
            timebox_until=timebox_until,
            force=force,
        )

    async def trigger(
        self,
        integration_id: str,
        force: bool = False,
        timebox_until: Optional[datetime] = None,
    ) -> Optional[WorkItem]:
        """Start one instance now if the gate allows it."""
        async with self.session_factory() as session:
            integration = await IntegrationRepository(session).get(integration_id)
            if integration is None:
                return None
            item = await self.start_run(session, integration, force, timebox_until)
            await session.commit()
        if item is not None:
            self.queue.push(item)
        return item

    async def check_all(self, force: bool = False) -> list[WorkItem]:
        """Walk every active instance and enqueue a first step for the due ones."""
        started: list[WorkItem] = []
        async with self.session_factory() as session:
            for integration in await IntegrationRepository(session).list_active():
                item = await self.start_run(session, integration, force=force)
                if item is not None:
                    started.append(item)
            await session.commit()
        for item in started:
            self.queue.push(item)
        logger.info("integrations_checked", started=len(started), force=force)
        return started

    async def replay(self, letter_id: str) -> Optional[WorkItem]:
        """Re-run a pending dead letter from the cursor it was holding.

        Opens a forced run, so the gate still refuses while the instance
        is processing or paused. Returns None when nothing was enqueued.
        """
        letter = await self.dlq.get(letter_id)
        if letter is None or letter.status != DLQStatus.PENDING.value:
            return None
        async with self.session_factory() as session:
            integration = await IntegrationRepository(session).get(letter.integration_id)
            if integration is None:
                return None
            loaded = self._load(integration)
            if loaded is None:
                return None
            if not await self.gate.try_trigger(session, integration, loaded.config, force=True):
                return None
            await session.commit()

        item = WorkItem(
            integration_id=letter.integration_id,
            cursor=dict(letter.cursor or {}),
            task_type=letter.task_type,
            not_before=self.clock(),
            force=True,
        )
        await self.dlq.mark_replayed(letter.id)
        self.queue.push(item)
        logger.info("dead_letter_replayed", letter_id=str(letter.id), integration_id=letter.integration_id)
        return item

    # ------------------------------------------------------------------
    # Paginator step
    # ------------------------------------------------------------------

    async def handle(self, item: WorkItem) -> StepReport:
        """Queue handler: run one step in its own session, then chain."""
        async with self.session_factory() as session:
            report = await self.step(session, item)
            await session.commit()
        if report.processing_key:
            self.cache.remember(report.processing_key)
        if report.next_item is not None:
            self.queue.push(report.next_item)
        return report

    async def step(self, session: AsyncSession, item: WorkItem) -> StepReport:
        now = self.clock()
        integration = await IntegrationRepository(session).get(item.integration_id)
        if integration is None:
            logger.warning("integration_missing", integration_id=item.integration_id)
            return StepReport(StepOutcome.SKIPPED, item.integration_id)
        log = logger.bind(
            integration_id=item.integration_id,
            service=integration.service,
            instance_type=integration.instance_type,
            page_index=item.page_index,
        )

        if item.timebox_until is not None and now >= item.timebox_until:
            log.warning("sync_timeboxed", timebox_until=item.timebox_until.isoformat())
            await self.gate.mark_failed(session, integration, "Time box reached before the run finished")
            return StepReport(StepOutcome.TIMED_OUT, item.integration_id)

        try:
            plugin = self.registry.get(integration.service)
        except UnknownPluginError:
            return await self._fail(
                session, integration, item,
                SyncError(ErrorKind.STRUCTURAL, f"No plugin registered for {integration.service}"),
            )
        try:
            config = plugin.load_config(integration.configuration)
        except ConfigError as exc:
            return await self._fail(session, integration, item, SyncError(ErrorKind.STRUCTURAL, str(exc)))

        if config.paused:
            log.info("sync_paused")
            await self.gate.mark_failed(session, integration, "Paused")
            return StepReport(StepOutcome.PAUSED, item.integration_id)

        group = await IntegrationGroupRepository(session).get(integration.group_id)
        if group is None:
            return await self._fail(
                session, integration, item,
                SyncError(ErrorKind.MISSING_CREDENTIALS, "Integration group no longer exists"),
            )
        token = await self.refresher.ensure_valid_token(session, group, plugin.oauth)
        if not token.ok:
            return await self._fail(session, integration, item, token.error)

        ctx = PluginContext(
            integration=integration,
            group=group,
            config=config,
            client=self.client,
            credential=plugin.credential(token.value),
            now=now,
        )

        with sync_step_span(self.tracer, integration.service, integration.instance_type,
                            item.integration_id, item.page_index):
            fetched = await plugin.fetch_page(ctx, item.cursor)
            if not fetched.ok:
                error = fetched.error
                if error.kind == ErrorKind.RATE_LIMITED:
                    delay = error.retry_after if error.retry_after is not None else plugin.default_retry_after
                    log.warning("sync_rate_limited", retry_after=delay, cursor=item.cursor)
                    report = StepReport(StepOutcome.DEFERRED, item.integration_id, error=error)
                    report.next_item = item.continuation(item.cursor, now, delay, advance_page=False)
                    return report
                return await self._fail(session, integration, item, error)

            page = fetched.value
            report = StepReport(StepOutcome.CONTINUED, item.integration_id, items=len(page.items))
            await self._process(session, ctx, plugin, page, report)

        return await self._advance(session, ctx, plugin, item, page, report)

    async def _process(
        self,
        session: AsyncSession,
        ctx: PluginContext,
        plugin: SyncPlugin,
        page: Page,
        report: StepReport,
    ) -> None:
        integration = ctx.integration
        if page.items:
            key = generate_processing_key(
                ctx.integration_id, integration.service, integration.instance_type, page.items
            )
            if self.cache.seen(key):
                logger.debug("page_already_processed", integration_id=ctx.integration_id)
                return
            report.processing_key = key

        for draft in page.objects:
            await self.writer.upsert_object(session, integration.user_id, draft)

        for raw in page.items:
            try:
                records = plugin.normalize(ctx, raw)
            except ProviderDataError as exc:
                report.item_errors += 1
                logger.warning(
                    "provider_item_skipped",
                    integration_id=ctx.integration_id,
                    service=integration.service,
                    error=str(exc),
                )
                continue
            for record in records:
                outcome = await self.writer.write(session, integration, record)
                if outcome.status == WriteStatus.CREATED:
                    report.created += 1
                elif outcome.status == WriteStatus.RECONCILED:
                    report.reconciled += 1
                else:
                    report.skipped += 1

        logger.info(
            "sync_page_processed",
            integration_id=ctx.integration_id,
            service=integration.service,
            items=report.items,
            created=report.created,
            skipped=report.skipped,
            reconciled=report.reconciled,
            item_errors=report.item_errors,
        )

    async def _advance(
        self,
        session: AsyncSession,
        ctx: PluginContext,
        plugin: SyncPlugin,
        item: WorkItem,
        page: Page,
        report: StepReport,
    ) -> StepReport:
        integration = ctx.integration
        if page.next_cursor is None:
            await self.gate.mark_succeeded(session, integration)
            report.outcome = StepOutcome.COMPLETED
            logger.info("sync_completed", integration_id=ctx.integration_id, pages=item.page_index + 1)
            return report

        cap = plugin.max_pages_per_run
        if cap is not None and item.page_index + 1 >= cap:
            logger.warning(
                "pagination_cap_reached",
                integration_id=ctx.integration_id,
                service=integration.service,
                page_cap=cap,
            )
            await self.gate.mark_succeeded(session, integration)
            report.outcome = StepOutcome.COMPLETED
            report.truncated = True
            return report

        # Pausing mid-run lets this step finish but enqueues nothing further
        await session.refresh(integration)
        if plugin.load_config(integration.configuration).paused:
            await self.gate.mark_failed(session, integration, "Paused")
            report.outcome = StepOutcome.PAUSED
            return report

        report.next_item = item.continuation(page.next_cursor, self.clock())
        return report

    async def _fail(
        self,
        session: AsyncSession,
        integration: Integration,
        item: WorkItem,
        error: SyncError,
    ) -> StepReport:
        logger.error(
            "sync_run_failed",
            integration_id=item.integration_id,
            service=integration.service,
            error_kind=error.kind.value,
            error=str(error),
            reconnect_required=error.requires_reconnect,
        )
        await self.gate.mark_failed(session, integration, str(error))
        await self.dlq.enqueue(
            work_item_id=item.id,
            integration_id=item.integration_id,
            task_type=item.task_type,
            cursor=item.cursor,
            error_kind=error.kind.value,
            error=str(error),
            attempts=item.attempt,
            session=session,
        )
        return StepReport(StepOutcome.FAILED, item.integration_id, error=error)
