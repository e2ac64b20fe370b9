"""
Scheduler gate.

Decides per integration instance whether a run may start and keeps the
run bookkeeping columns:

- last_triggered_at: set on trigger, cleared on success and on failure
- last_successful_update_at: advanced only on success

An instance is "processing" while it holds a trigger newer than its last
success and younger than the processing window, which is the update
frequency clamped to [5, 30] minutes. Scheduled instances use the upper
bound since their frequency is not an interval.
"""
from __future__ import annotations
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import structlog
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from core.models.timeline import Integration
from patterns.domain_config import EngineSettings, InstanceConfig
from patterns.workflow_states import IntegrationRun, RunState, derive_state

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_hhmm(value: str) -> time:
    hour, _, minute = value.partition(":")
    return time(int(hour), int(minute))


def schedule_triggers(config: InstanceConfig) -> list[CronTrigger]:
    """One daily cron trigger per configured HH:MM in the instance timezone."""
    tz = ZoneInfo(config.schedule_timezone)
    return [
        CronTrigger(hour=slot.hour, minute=slot.minute, timezone=tz)
        for slot in sorted(_parse_hhmm(t) for t in config.schedule_times)
    ]


def next_scheduled_after(config: InstanceConfig, after: datetime) -> datetime:
    """First configured HH:MM strictly after ``after``, in UTC."""
    triggers = schedule_triggers(config)
    if not triggers:
        raise ValueError("schedule_times is empty")
    # Fire times are inclusive of "now", so start just past it
    start = after + timedelta(microseconds=1)
    fire_times = [trigger.get_next_fire_time(None, start) for trigger in triggers]
    return min(t for t in fire_times if t is not None).astimezone(timezone.utc)


def schedule_summary(config: InstanceConfig) -> str:
    if config.paused:
        return "Paused"
    if config.schedule_enabled:
        times = ", ".join(sorted(config.schedule_times))
        return f"Daily at {times} ({config.schedule_timezone})"
    minutes = config.update_frequency_minutes
    if minutes % 60 == 0:
        hours = minutes // 60
        return "Every hour" if hours == 1 else f"Every {hours} hours"
    return "Every minute" if minutes == 1 else f"Every {minutes} minutes"


class SchedulerGate:
    """Due-check, processing-check and run bookkeeping."""

    def __init__(self, settings: Optional[EngineSettings] = None, clock: Callable[[], datetime] = _utcnow):
        self.settings = settings or EngineSettings.default()
        self.clock = clock

    # -- Pure checks --

    def processing_window(self, config: InstanceConfig) -> timedelta:
        low = self.settings.processing_window_min_minutes
        high = self.settings.processing_window_max_minutes
        if config.schedule_enabled:
            return timedelta(minutes=high)
        return timedelta(minutes=max(low, min(config.update_frequency_minutes, high)))

    def next_update_at(self, integration: Integration, config: InstanceConfig) -> Optional[datetime]:
        """When the instance next becomes due. None while paused."""
        if config.paused:
            return None
        last = integration.last_successful_update_at
        if last is None:
            return self.clock()
        if config.schedule_enabled:
            return next_scheduled_after(config, last)
        return last + timedelta(minutes=config.update_frequency_minutes)

    def is_due(self, integration: Integration, config: InstanceConfig, now: Optional[datetime] = None) -> bool:
        if config.paused:
            return False
        now = now or self.clock()
        last = integration.last_successful_update_at
        if last is None:
            return True
        if config.schedule_enabled:
            return now >= next_scheduled_after(config, last)
        return now >= last + timedelta(minutes=config.update_frequency_minutes)

    def run_state(self, integration: Integration, config: InstanceConfig, now: Optional[datetime] = None) -> RunState:
        window = self.processing_window(config).total_seconds() / 60
        return derive_state(
            integration.last_triggered_at,
            integration.last_successful_update_at,
            now or self.clock(),
            window,
        )

    def is_processing(self, integration: Integration, config: InstanceConfig, now: Optional[datetime] = None) -> bool:
        return self.run_state(integration, config, now) == RunState.TRIGGERED

    # -- Transitions --

    async def try_trigger(
        self,
        session: AsyncSession,
        integration: Integration,
        config: InstanceConfig,
        force: bool = False,
    ) -> bool:
        """Idle -> Triggered. ``force`` skips the due-check only."""
        now = self.clock()
        if config.paused:
            logger.debug("trigger_skipped_paused", integration_id=str(integration.id))
            return False

        run = IntegrationRun(str(integration.id), self.run_state(integration, config, now))
        if not run.can_transition(RunState.TRIGGERED):
            logger.info("trigger_skipped_processing", integration_id=str(integration.id))
            return False
        if not force and not self.is_due(integration, config, now):
            return False

        run.transition(RunState.TRIGGERED, metadata={"force": force})
        integration.last_triggered_at = now
        integration.last_run_state = RunState.TRIGGERED.value
        await session.flush()
        logger.info(
            "integration_triggered",
            integration_id=str(integration.id),
            service=integration.service,
            instance_type=integration.instance_type,
            force=force,
        )
        return True

    def _open_run(self, integration: Integration) -> IntegrationRun:
        triggered = integration.last_triggered_at is not None and (
            integration.last_successful_update_at is None
            or integration.last_triggered_at > integration.last_successful_update_at
        )
        return IntegrationRun(
            str(integration.id),
            RunState.TRIGGERED if triggered else RunState.IDLE,
        )

    def _settle(self, integration: Integration, to_state: RunState) -> None:
        run = self._open_run(integration)
        if run.can_transition(to_state):
            run.transition(to_state)
            run.settle()
        else:
            logger.warning(
                "run_settled_without_trigger",
                integration_id=str(integration.id),
                state=to_state.value,
            )

    async def mark_succeeded(self, session: AsyncSession, integration: Integration) -> None:
        """Triggered -> Succeeded: advance last success, clear the trigger."""
        self._settle(integration, RunState.SUCCEEDED)
        integration.last_successful_update_at = self.clock()
        integration.last_triggered_at = None
        integration.last_run_state = RunState.SUCCEEDED.value
        integration.last_error = None
        await session.flush()

    async def mark_failed(self, session: AsyncSession, integration: Integration, error: str = "") -> None:
        """Triggered -> Failed: clear the trigger, keep the last success."""
        self._settle(integration, RunState.FAILED)
        integration.last_triggered_at = None
        integration.last_run_state = RunState.FAILED.value
        integration.last_error = error or None
        await session.flush()
