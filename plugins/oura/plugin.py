"""Oura Ring v2 plugin: date-window pagination over the usercollection API."""
from __future__ import annotations
from datetime import datetime
from typing import Any, Optional

import structlog

from core.integrations.errors import ErrorKind, ProviderDataError, Result
from core.integrations.http_client import AuthScheme
from core.integrations.normalizer import NormalizedRecord, get_nested
from core.models.timeline import Integration
from patterns.domain_config import InstanceConfig
from plugins.base import Page, PluginContext, SyncPlugin
from plugins.cursors import (
    first_date_window,
    first_datetime_window,
    next_date_window,
    next_datetime_window,
)
from plugins.oura import records
from plugins.oura.config import ENDPOINTS, OURA_API_BASE, PERSONAL_INFO_PATH, OuraInstanceConfig

logger = structlog.get_logger()

_BUILDERS = {
    "sleep_records": records.sleep_record,
    "workouts": records.workout_record,
    "sessions": records.session_record,
    "tags": records.tag_record,
    "heartrate": records.heartrate_record,
}


class OuraPlugin(SyncPlugin):
    service = "oura"
    display_name = "Oura Ring"
    domain = records.DOMAIN
    base_url = OURA_API_BASE
    auth_scheme = AuthScheme.BEARER
    instance_types = tuple(ENDPOINTS)
    default_instance_types = ("activity", "sleep", "readiness")
    config_model = OuraInstanceConfig

    default_retry_after = 30.0
    min_retry_after = 5.0

    # -- Cursor --

    def initial_cursor(self, integration: Integration, config: InstanceConfig, now: datetime) -> dict[str, Any]:
        if integration.instance_type == "heartrate":
            return first_datetime_window(config.days_back, config.heartrate_window_days, now)
        return first_date_window(config.days_back, config.window_days, now)

    def _next_cursor(self, ctx: PluginContext, cursor: dict[str, Any], body: dict) -> Optional[dict[str, Any]]:
        window = {k: v for k, v in cursor.items() if k not in ("next_token", "carry")}
        token = body.get("next_token")
        if token:
            # More results inside the same window
            return {**window, "next_token": token}
        if ctx.integration.instance_type == "heartrate":
            return next_datetime_window(window, ctx.config.heartrate_window_days, ctx.now)
        return next_date_window(window, ctx.config.window_days, ctx.now)

    # -- Fetch --

    async def fetch_page(self, ctx: PluginContext, cursor: dict[str, Any]) -> Result[Page]:
        kind = ctx.integration.instance_type
        path = ENDPOINTS.get(kind)
        if path is None:
            return Result.failure(ErrorKind.STRUCTURAL, f"Unknown Oura instance type {kind!r}")

        params = {k: v for k, v in cursor.items() if k != "carry"}
        result = await ctx.request("GET", f"{self.base_url}{path}", params=params)
        if not result.ok:
            return Result(error=result.error)
        parsed = self.parse_response(result.value, ctx.now)
        if not parsed.ok:
            return Result(error=parsed.error)

        body = parsed.value
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            return Result.failure(ErrorKind.STRUCTURAL, f"Oura {kind} response has no data list")

        next_cursor = self._next_cursor(ctx, cursor, body)
        items = data
        if kind == "heartrate":
            items = records.group_heartrate(list(cursor.get("carry") or []) + data)
            if next_cursor is not None and "next_token" in next_cursor and items:
                # The last day may continue on the next page; finish it there
                next_cursor["carry"] = items.pop()["points"]
        logger.info(
            "oura_page_fetched",
            integration_id=ctx.integration_id,
            instance_type=kind,
            window=params,
            items=len(items),
        )
        return Result.success(Page(items=items, next_cursor=next_cursor))

    async def fetch_account_id(self, ctx: PluginContext) -> Optional[str]:
        result = await ctx.request("GET", f"{self.base_url}{PERSONAL_INFO_PATH}")
        if not result.ok:
            return None
        parsed = self.parse_response(result.value, ctx.now)
        if not parsed.ok or not isinstance(parsed.value, dict):
            return None
        body = parsed.value
        account = get_nested(body, "data.0.user_id") or body.get("user_id") or body.get("id") or body.get("email")
        return str(account) if account else None

    # -- Normalize --

    def normalize(self, ctx: PluginContext, raw: Any) -> list[NormalizedRecord]:
        kind = ctx.integration.instance_type
        account_id = ctx.group.account_id if ctx.group else None
        if kind in records.DAILY_KINDS:
            return [records.daily_record(ctx.integration_id, kind, raw, account_id)]
        builder = _BUILDERS.get(kind)
        if builder is None:
            raise ProviderDataError(f"No Oura normalizer for {kind!r}")
        return [builder(ctx.integration_id, raw, account_id)]
