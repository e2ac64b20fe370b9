"""
Celery backend for paginator steps.

The API process and the scheduler enqueue through ``CeleryQueue``; the
worker runs ``sync.fetch_page`` tasks. Start a worker with::

    celery -A core.tasks.celery_app worker --loglevel=info

Every step carries its whole WorkItem as a JSON payload, so a restarted
worker resumes from the cursor the broker still holds.
"""
from __future__ import annotations
from typing import Any, Optional
import asyncio
import os

import structlog
from celery import Celery

from core.tasks.queue import BaseQueue, WorkItem

logger = structlog.get_logger()

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)

celery_app = Celery(
    "timeline_sync",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,  # a step lost with its worker is redelivered
    task_reject_on_worker_lost=True,
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,
)

# One loop per worker process; the async engine's pool is bound to it
_loop: Optional[asyncio.AbstractEventLoop] = None
_runtime = None


def run_async(coro) -> Any:
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop.run_until_complete(coro)


def worker_runtime():
    """Runtime for this worker process, built on first use."""
    global _runtime
    if _runtime is None:
        from core.observability.logging_setup import configure_logging
        from core.runtime import build_runtime

        configure_logging()
        _runtime = build_runtime(queue_backend="celery")
    return _runtime


class CeleryQueue(BaseQueue):
    """Pushes work items to the broker with ``eta`` set to ``not_before``."""

    backend = "celery"

    def push(self, item: WorkItem) -> WorkItem:
        fetch_page.apply_async(args=[item.to_payload()], eta=item.not_before)
        logger.debug(
            "work_item_enqueued",
            integration_id=item.integration_id,
            task_type=item.task_type,
            not_before=item.not_before.isoformat(),
            backend=self.backend,
        )
        return item


@celery_app.task(name="sync.fetch_page", bind=True, max_retries=None)
def fetch_page(self, payload: dict) -> dict:
    """Run one paginator step; the step itself enqueues its continuation."""
    runtime = worker_runtime()
    queue = runtime.queue
    item = WorkItem.from_payload(payload)
    try:
        report = run_async(runtime.engine.handle(item))
    except Exception as exc:
        if queue.should_retry(item):
            countdown = queue.backoff_for(item.attempt)
            retry = item.retry(queue.clock(), countdown)
            logger.warning(
                "work_item_retry_scheduled",
                integration_id=item.integration_id,
                attempt=item.attempt,
                delay_seconds=countdown,
                error=str(exc),
            )
            raise self.retry(exc=exc, args=[retry.to_payload()], countdown=countdown)
        run_async(queue.dead_letter(item, exc))
        return {"integration_id": item.integration_id, "outcome": "dead_lettered"}
    return {"integration_id": item.integration_id, "outcome": report.outcome.value}


@celery_app.task(name="sync.check_all")
def check_all(force: bool = False) -> dict:
    """Start runs for every due instance. Callable from celery beat or cron."""
    started = run_async(worker_runtime().engine.check_all(force=force))
    return {"started": len(started)}
