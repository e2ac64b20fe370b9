"""Connection endpoints: OAuth authorize/callback and API-key connect.

Both flows end the same way: credentials stored on the IntegrationGroup,
the plugin's default instances created, and one account profile call to
fill in ``account_id``.
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db_session, get_runtime, require_user
from api.middleware import get_session_id
from core.integrations.errors import ConfigError, OAuthExchangeError, OAuthStateError
from core.integrations.normalizer import headline
from core.models.timeline import Integration, IntegrationGroup
from core.runtime import SyncRuntime
from patterns.repository import IntegrationGroupRepository, IntegrationRepository
from plugins.base import PluginContext, SyncPlugin
from plugins.registry import UnknownPluginError

logger = structlog.get_logger()

router = APIRouter()


class ApiKeyConnect(BaseModel):
    api_key: str
    configuration: dict[str, Any] = {}


def _plugin(runtime: SyncRuntime, service: str) -> SyncPlugin:
    try:
        return runtime.registry.get(service)
    except UnknownPluginError:
        raise HTTPException(status_code=404, detail=f"Unknown service: {service}")


async def _ensure_instances(
    session: AsyncSession,
    plugin: SyncPlugin,
    group: IntegrationGroup,
    configuration: Optional[dict[str, Any]] = None,
) -> list[Integration]:
    repo = IntegrationRepository(session)
    existing = {i.instance_type: i for i in await repo.for_group(group.id)}
    for instance_type in plugin.default_instance_types:
        if instance_type in existing:
            continue
        existing[instance_type] = await repo.create(
            group_id=group.id,
            user_id=group.user_id,
            service=plugin.service,
            name=f"{plugin.display_name} {headline(instance_type)}",
            instance_type=instance_type,
            configuration=dict(configuration or {}),
        )
    return list(existing.values())


async def _lookup_account(
    runtime: SyncRuntime,
    plugin: SyncPlugin,
    group: IntegrationGroup,
    integration: Integration,
) -> Optional[str]:
    ctx = PluginContext(
        integration=integration,
        group=group,
        config=plugin.load_config(integration.configuration),
        client=runtime.client,
        credential=plugin.credential(group.access_token),
        now=runtime.gate.clock(),
    )
    account_id = await plugin.fetch_account_id(ctx)
    if account_id is None:
        logger.warning("account_lookup_failed", service=plugin.service, group_id=str(group.id))
    return account_id


def _connected(group: IntegrationGroup, instances: list[Integration]) -> dict:
    return {
        "group": group.to_dict(),
        "integrations": [i.to_dict() for i in instances],
    }


# ============================================================================
# OAuth
# ============================================================================

@router.get("/oauth/{service}/authorize")
async def authorize(
    service: str,
    user_id: str = Depends(require_user),
    runtime: SyncRuntime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db_session),
):
    """Create (or reuse) a pending group and redirect to the provider."""
    plugin = _plugin(runtime, service)
    if plugin.oauth is None:
        raise HTTPException(status_code=400, detail=f"{service} is not an OAuth provider")

    group = await IntegrationGroupRepository(session).upsert_for_account(user_id, service, None)
    url = runtime.oauth.get_authorize_url(service, group, get_session_id() or user_id)
    await session.commit()
    return RedirectResponse(url, status_code=307)


@router.get("/oauth/{service}/callback")
async def callback(
    service: str,
    code: str,
    state: str,
    runtime: SyncRuntime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db_session),
):
    """Verify the signed state and CSRF value, then exchange the code."""
    plugin = _plugin(runtime, service)
    try:
        decoded = runtime.oauth.verify_state(state, get_session_id() or "")
    except OAuthStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    group = await IntegrationGroupRepository(session).get(decoded.group_id)
    if group is None or group.service != service:
        raise HTTPException(status_code=404, detail="Connection not found")

    try:
        await runtime.oauth.exchange_code(session, service, group, code, decoded)
    except OAuthStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except OAuthExchangeError as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    instances = await _ensure_instances(session, plugin, group)
    if instances:
        account_id = await _lookup_account(runtime, plugin, group, instances[0])
        if account_id:
            group.account_id = account_id
    await session.commit()
    return _connected(group, instances)


# ============================================================================
# API key
# ============================================================================

@router.post("/connect/{service}", status_code=201)
async def connect_api_key(
    service: str,
    body: ApiKeyConnect,
    user_id: str = Depends(require_user),
    runtime: SyncRuntime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db_session),
):
    """Store an API key for a provider without an OAuth flow."""
    plugin = _plugin(runtime, service)
    if plugin.oauth is not None:
        raise HTTPException(status_code=400, detail=f"{service} connects through OAuth")
    try:
        plugin.load_config(body.configuration)
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    group = await IntegrationGroupRepository(session).create(
        user_id=user_id,
        service=service,
        access_token=body.api_key,
    )
    instances = await _ensure_instances(session, plugin, group, body.configuration)
    if instances:
        group.account_id = await _lookup_account(runtime, plugin, group, instances[0])
    await session.commit()
    return _connected(group, instances)
