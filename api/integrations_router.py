"""Integration instance endpoints: list, trigger, remove, dead letters and replay."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db_session, get_runtime, require_user
from core.integrations.errors import ConfigError
from core.models.timeline import Integration
from core.runtime import SyncRuntime
from core.sync.scheduler import schedule_summary
from patterns.repository import IntegrationRepository
from plugins.registry import UnknownPluginError

router = APIRouter()


async def _owned(session: AsyncSession, integration_id: str, user_id: str) -> Integration:
    try:
        integration = await IntegrationRepository(session).get(integration_id)
    except ValueError:
        integration = None
    if integration is None or integration.user_id != user_id:
        raise HTTPException(status_code=404, detail="Integration not found")
    return integration


@router.get("/integrations")
async def list_integrations(
    user_id: str = Depends(require_user),
    runtime: SyncRuntime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db_session),
):
    """Instances for the current user with their run status and schedule."""
    result = await session.execute(
        select(Integration)
        .where(Integration.user_id == user_id, Integration.deleted_at.is_(None))
        .order_by(Integration.created_at)
    )
    data = []
    for integration in result.scalars().all():
        item = integration.to_dict()
        try:
            config = runtime.registry.get(integration.service).load_config(integration.configuration)
        except (UnknownPluginError, ConfigError) as exc:
            item["schedule"] = None
            item["config_error"] = str(exc)
        else:
            next_at = runtime.gate.next_update_at(integration, config)
            item["schedule"] = schedule_summary(config)
            item["next_update_at"] = next_at.isoformat() if next_at else None
            item["processing"] = runtime.gate.is_processing(integration, config)
        data.append(item)
    return {"data": data}


@router.post("/integrations/{integration_id}/trigger", status_code=202)
async def trigger_integration(
    integration_id: str,
    force: bool = Query(False),
    user_id: str = Depends(require_user),
    runtime: SyncRuntime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db_session),
):
    """Start a run now. ``force`` skips the due-check, not the processing check."""
    await _owned(session, integration_id, user_id)
    item = await runtime.engine.trigger(integration_id, force=force)
    return {
        "triggered": item is not None,
        "work_item_id": item.id if item else None,
    }


@router.delete("/integrations/{integration_id}")
async def remove_integration(
    integration_id: str,
    user_id: str = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Soft-delete an instance; its group goes too when nothing else uses it."""
    integration = await _owned(session, integration_id, user_id)
    group_removed = await IntegrationRepository(session).remove(integration)
    return {"removed": True, "group_removed": group_removed}


@router.get("/integrations/{integration_id}/dead-letters")
async def list_dead_letters(
    integration_id: str,
    user_id: str = Depends(require_user),
    runtime: SyncRuntime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db_session),
):
    await _owned(session, integration_id, user_id)
    letters = await runtime.dlq.list_pending(integration_id=integration_id)
    return {"data": [letter.to_dict() for letter in letters]}


async def _owned_letter(runtime: SyncRuntime, integration_id: str, letter_id: str):
    letter = await runtime.dlq.get(letter_id)
    if letter is None or letter.integration_id != integration_id:
        raise HTTPException(status_code=404, detail="Dead letter not found")
    return letter


@router.post("/integrations/{integration_id}/dead-letters/{letter_id}/replay", status_code=202)
async def replay_dead_letter(
    integration_id: str,
    letter_id: str,
    user_id: str = Depends(require_user),
    runtime: SyncRuntime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db_session),
):
    """Start a forced run from the cursor the failed step was holding."""
    await _owned(session, integration_id, user_id)
    await _owned_letter(runtime, integration_id, letter_id)
    item = await runtime.engine.replay(letter_id)
    return {
        "replayed": item is not None,
        "work_item_id": item.id if item else None,
    }


@router.post("/integrations/{integration_id}/dead-letters/{letter_id}/discard")
async def discard_dead_letter(
    integration_id: str,
    letter_id: str,
    reason: str = Query(""),
    user_id: str = Depends(require_user),
    runtime: SyncRuntime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db_session),
):
    await _owned(session, integration_id, user_id)
    await _owned_letter(runtime, integration_id, letter_id)
    return {"discarded": await runtime.dlq.mark_discarded(letter_id, reason)}
