"""Test the scheduler gate: due-check, processing window and run bookkeeping."""
from datetime import datetime, timedelta, timezone

import pytest

from core.models.timeline import Integration
from core.sync.scheduler import SchedulerGate, next_scheduled_after, schedule_summary
from patterns.domain_config import EngineSettings, InstanceConfig
from patterns.repository import IntegrationRepository
from patterns.workflow_states import IntegrationRun, RunState, derive_state
from tests.conftest import seed_integration


def _integration(**values) -> Integration:
    return Integration(service="oura", instance_type="activity", user_id="user-1", **values)


def test_processing_window_is_clamped(clock):
    gate = SchedulerGate(EngineSettings(), clock=clock)
    assert gate.processing_window(InstanceConfig(update_frequency_minutes=1)) == timedelta(minutes=5)
    assert gate.processing_window(InstanceConfig(update_frequency_minutes=15)) == timedelta(minutes=15)
    assert gate.processing_window(InstanceConfig(update_frequency_minutes=240)) == timedelta(minutes=30)
    scheduled = InstanceConfig(use_schedule=True, schedule_times=["06:00"])
    assert gate.processing_window(scheduled) == timedelta(minutes=30)


def test_never_run_is_due_now(clock):
    gate = SchedulerGate(clock=clock)
    config = InstanceConfig()
    assert gate.is_due(_integration(), config)
    assert gate.next_update_at(_integration(), config) == clock()


def test_frequency_due_check(clock):
    gate = SchedulerGate(clock=clock)
    config = InstanceConfig(update_frequency_minutes=15)
    integration = _integration(last_successful_update_at=clock() - timedelta(minutes=10))

    assert not gate.is_due(integration, config)
    assert gate.next_update_at(integration, config) == clock() + timedelta(minutes=5)
    assert gate.is_due(integration, config, now=clock() + timedelta(minutes=5))


def test_paused_is_never_due(clock):
    gate = SchedulerGate(clock=clock)
    config = InstanceConfig(paused=True)
    assert not gate.is_due(_integration(), config)
    assert gate.next_update_at(_integration(), config) is None


def test_next_scheduled_after_uses_timezone():
    config = InstanceConfig(use_schedule=True, schedule_times=["18:00", "06:00"], schedule_timezone="America/New_York")
    # 12:00 UTC is 07:00 in New York in January
    after = datetime(2025, 1, 28, 12, 0, tzinfo=timezone.utc)
    assert next_scheduled_after(config, after) == datetime(2025, 1, 28, 23, 0, tzinfo=timezone.utc)
    # 23:30 UTC is 18:30 local, so the next slot is tomorrow 06:00 local
    late = datetime(2025, 1, 28, 23, 30, tzinfo=timezone.utc)
    assert next_scheduled_after(config, late) == datetime(2025, 1, 29, 11, 0, tzinfo=timezone.utc)


def test_next_scheduled_after_is_strictly_later():
    config = InstanceConfig(use_schedule=True, schedule_times=["18:00", "06:00"], schedule_timezone="America/New_York")
    on_the_slot = datetime(2025, 1, 28, 23, 0, tzinfo=timezone.utc)
    assert next_scheduled_after(config, on_the_slot) == datetime(2025, 1, 29, 11, 0, tzinfo=timezone.utc)


def test_next_scheduled_after_crosses_dst():
    config = InstanceConfig(use_schedule=True, schedule_times=["06:00"], schedule_timezone="America/New_York")
    # Clocks spring forward on 2025-03-09, so 06:00 local moves from 11:00 to 10:00 UTC
    after = datetime(2025, 3, 8, 12, 0, tzinfo=timezone.utc)
    assert next_scheduled_after(config, after) == datetime(2025, 3, 9, 10, 0, tzinfo=timezone.utc)


def test_schedule_due_check(clock):
    gate = SchedulerGate(clock=clock)
    config = InstanceConfig(use_schedule=True, schedule_times=["06:00"])
    ran_yesterday = _integration(last_successful_update_at=clock() - timedelta(days=1))
    ran_this_morning = _integration(last_successful_update_at=clock().replace(hour=6, minute=30))

    assert gate.is_due(ran_yesterday, config)
    assert not gate.is_due(ran_this_morning, config)


def test_schedule_without_times_falls_back_to_frequency(clock):
    config = InstanceConfig(use_schedule=True, schedule_times=[], update_frequency_minutes=60)
    assert not config.schedule_enabled
    integration = _integration(last_successful_update_at=clock() - timedelta(minutes=30))
    assert not SchedulerGate(clock=clock).is_due(integration, config)


def test_schedule_summary():
    assert schedule_summary(InstanceConfig(paused=True)) == "Paused"
    assert schedule_summary(InstanceConfig(update_frequency_minutes=60)) == "Every hour"
    assert schedule_summary(InstanceConfig(update_frequency_minutes=120)) == "Every 2 hours"
    assert schedule_summary(InstanceConfig(update_frequency_minutes=15)) == "Every 15 minutes"
    assert schedule_summary(InstanceConfig(update_frequency_minutes=1)) == "Every minute"
    daily = InstanceConfig(use_schedule=True, schedule_times=["18:00", "06:00"])
    assert schedule_summary(daily) == "Daily at 06:00, 18:00 (UTC)"


def test_derive_state(clock):
    now = clock()
    assert derive_state(None, None, now, 15) == RunState.IDLE
    assert derive_state(now - timedelta(minutes=3), None, now, 15) == RunState.TRIGGERED
    # stale trigger
    assert derive_state(now - timedelta(minutes=20), None, now, 15) == RunState.IDLE
    # success after the trigger
    assert derive_state(now - timedelta(minutes=3), now - timedelta(minutes=1), now, 15) == RunState.IDLE


def test_run_transitions():
    run = IntegrationRun("i-1", RunState.IDLE)
    assert not run.can_transition(RunState.SUCCEEDED)
    with pytest.raises(ValueError, match="Cannot transition"):
        run.transition(RunState.FAILED)
    run.transition(RunState.TRIGGERED)
    run.transition(RunState.SUCCEEDED)
    run.settle()
    assert run.current_state == RunState.IDLE
    assert [t.to_state for t in run.history] == ["triggered", "succeeded", "idle"]


# ---------------------------------------------------------------------------
# Persisted transitions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_trigger_then_processing_blocks_second_trigger(session_factory, session, clock):
    _, seeded = await seed_integration(session_factory)
    integration = await IntegrationRepository(session).get(seeded.id)
    gate = SchedulerGate(clock=clock)
    config = InstanceConfig()

    assert await gate.try_trigger(session, integration, config)
    assert integration.last_triggered_at == clock()
    assert integration.last_run_state == "triggered"
    assert gate.is_processing(integration, config)

    # force does not bypass the processing check
    assert not await gate.try_trigger(session, integration, config, force=True)


@pytest.mark.asyncio
async def test_stale_trigger_allows_new_run(session_factory, session, clock):
    _, seeded = await seed_integration(session_factory)
    integration = await IntegrationRepository(session).get(seeded.id)
    gate = SchedulerGate(clock=clock)
    config = InstanceConfig(update_frequency_minutes=15)

    assert await gate.try_trigger(session, integration, config)
    clock.advance(minutes=16)
    assert not gate.is_processing(integration, config)
    assert await gate.try_trigger(session, integration, config)


@pytest.mark.asyncio
async def test_force_skips_due_check(session_factory, session, clock):
    _, seeded = await seed_integration(session_factory)
    integration = await IntegrationRepository(session).get(seeded.id)
    integration.last_successful_update_at = clock() - timedelta(minutes=1)
    gate = SchedulerGate(clock=clock)
    config = InstanceConfig(update_frequency_minutes=60)

    assert not await gate.try_trigger(session, integration, config)
    assert await gate.try_trigger(session, integration, config, force=True)


@pytest.mark.asyncio
async def test_force_does_not_bypass_pause(session_factory, session, clock):
    _, seeded = await seed_integration(session_factory)
    integration = await IntegrationRepository(session).get(seeded.id)
    gate = SchedulerGate(clock=clock)

    assert not await gate.try_trigger(session, integration, InstanceConfig(paused=True), force=True)
    assert integration.last_triggered_at is None


@pytest.mark.asyncio
async def test_success_and_failure_bookkeeping(session_factory, session, clock):
    _, seeded = await seed_integration(session_factory)
    integration = await IntegrationRepository(session).get(seeded.id)
    gate = SchedulerGate(clock=clock)
    config = InstanceConfig()

    await gate.try_trigger(session, integration, config)
    clock.advance(minutes=2)
    await gate.mark_succeeded(session, integration)
    assert integration.last_successful_update_at == clock()
    assert integration.last_triggered_at is None
    assert integration.last_run_state == "succeeded"
    success = integration.last_successful_update_at

    clock.advance(minutes=20)
    await gate.try_trigger(session, integration, config)
    await gate.mark_failed(session, integration, "auth_refresh_failed: reconnect")
    assert integration.last_triggered_at is None
    assert integration.last_successful_update_at == success
    assert integration.last_run_state == "failed"
    assert integration.last_error == "auth_refresh_failed: reconnect"
    assert not gate.is_processing(integration, config)
