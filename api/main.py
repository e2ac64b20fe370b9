"""Timeline sync API: FastAPI entry point.

Registers middleware, routers and lifecycle hooks. On startup an APScheduler
AsyncIOScheduler runs ``SyncEngine.check_all`` every
``SYNC_CHECK_INTERVAL_SECONDS``. With the in-memory queue backend it also
drains due work items in-process; with the Celery backend a separate
worker runs them.
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import UserMiddleware
from core.observability.logging_setup import configure_logging
from core.observability.otel_setup import setup_otel
from core.runtime import SyncRuntime, build_runtime

logger = structlog.get_logger()

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:3001"
).split(",")
CHECK_INTERVAL_SECONDS = float(os.getenv("SYNC_CHECK_INTERVAL_SECONDS", "60"))
RUN_SCHEDULER = os.getenv("SYNC_RUN_SCHEDULER", "true").lower() == "true"
DRAIN_INTERVAL_SECONDS = float(os.getenv("SYNC_DRAIN_INTERVAL_SECONDS", "1"))
OTEL_ENABLED = os.getenv("OTEL_ENABLED", "false").lower() == "true"


async def _check_all(runtime: SyncRuntime) -> None:
    try:
        await runtime.engine.check_all()
    except Exception:
        logger.exception("scheduler_check_failed")


async def _drain(runtime: SyncRuntime) -> None:
    try:
        await runtime.queue.drain(runtime.engine.handle)
    except Exception:
        logger.exception("queue_drain_failed")


def build_scheduler(runtime: SyncRuntime) -> AsyncIOScheduler:
    """Periodic jobs for this process. Jobs never overlap themselves."""
    scheduler = AsyncIOScheduler(job_defaults={"coalesce": True, "max_instances": 1})
    scheduler.add_job(
        _check_all,
        trigger=IntervalTrigger(seconds=CHECK_INTERVAL_SECONDS),
        args=[runtime],
        id="sync:check_all",
        name="Start runs for due integrations",
        replace_existing=True,
    )
    if runtime.queue.backend == "memory":
        scheduler.add_job(
            _drain,
            trigger=IntervalTrigger(seconds=DRAIN_INTERVAL_SECONDS),
            args=[runtime],
            id="sync:drain_queue",
            name="Run due work items in-process",
            replace_existing=True,
        )
    return scheduler


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(runtime: Optional[SyncRuntime] = None, run_scheduler: bool = RUN_SCHEDULER) -> FastAPI:
    """Build the app. Tests pass their own runtime and skip the scheduler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        scheduler: Optional[AsyncIOScheduler] = None
        if run_scheduler:
            scheduler = build_scheduler(app.state.runtime)
            scheduler.start()
        logger.info("timeline_sync_started", services=app.state.runtime.registry.services())
        yield
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        logger.info("timeline_sync_stopped")

    app = FastAPI(
        title="Timeline Sync",
        description="Integration sync engine turning provider APIs into timeline events",
        version="0.1.0",
        lifespan=lifespan,
    )
    if runtime is None:
        runtime = build_runtime(tracer=setup_otel() if OTEL_ENABLED else None)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(UserMiddleware)

    from api.integrations_router import router as integrations_router
    from api.oauth_router import router as oauth_router

    app.include_router(oauth_router, tags=["Connections"])
    app.include_router(integrations_router, tags=["Integrations"])

    @app.get("/health")
    async def health():
        rt: SyncRuntime = app.state.runtime
        return {
            "status": "healthy",
            "version": "0.1.0",
            "services": rt.registry.services(),
            "queue_backend": rt.queue.backend,
            "dead_letters": await rt.dlq.count_pending(),
        }

    return app


app = create_app()
