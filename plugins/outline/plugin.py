"""Outline plugin: path-cursor pagination over documents.list."""
from __future__ import annotations
from datetime import datetime
from typing import Any, Optional
from urllib.parse import parse_qs, urlsplit

import structlog

from core.integrations.errors import ErrorKind, ProviderDataError, Result
from core.integrations.http_client import AuthScheme
from core.integrations.normalizer import (
    BlockDraft,
    EventDraft,
    NormalizedRecord,
    ObjectDraft,
    get_nested,
    parse_timestamp,
    start_of_day,
)
from core.models.timeline import Integration
from patterns.domain_config import InstanceConfig
from plugins.base import Page, PluginContext, SyncPlugin
from plugins.outline.config import (
    AUTH_INFO_PATH,
    COLLECTIONS_LIST_PATH,
    DOCUMENTS_LIST_PATH,
    INSTANCE_TYPES,
    OutlineInstanceConfig,
)
from plugins.outline.tasks import extract_tasks, parse_day_note_title, task_hash

logger = structlog.get_logger()

SERVICE = "outline"
DOMAIN = "knowledge"


class OutlinePlugin(SyncPlugin):
    service = SERVICE
    display_name = "Outline"
    domain = DOMAIN
    auth_scheme = AuthScheme.API_KEY
    instance_types = INSTANCE_TYPES
    default_instance_types = ("recent_documents",)
    config_model = OutlineInstanceConfig

    def __init__(self, page_cap: int = 10):
        super().__init__(oauth=None)
        self.max_pages_per_run = page_cap

    def initial_cursor(self, integration: Integration, config: InstanceConfig, now: datetime) -> dict[str, Any]:
        return {"next_path": None}

    def _list_body(self, ctx: PluginContext, next_path: Optional[str]) -> dict[str, Any]:
        body: dict[str, Any] = {
            "limit": ctx.config.page_size,
            "sort": "updatedAt",
            "direction": "DESC",
        }
        if ctx.integration.instance_type == "recent_daynotes" and ctx.config.daynotes_collection_id:
            body["collectionId"] = ctx.config.daynotes_collection_id
        if next_path:
            # nextPath carries the paging parameters as a query string
            for key, values in parse_qs(urlsplit(next_path).query).items():
                value = values[-1]
                body[key] = int(value) if value.isdigit() else value
        return body

    async def _collections(self, ctx: PluginContext) -> Result[list[ObjectDraft]]:
        api_url = ctx.config.api_url
        result = await ctx.request("POST", f"{api_url}{COLLECTIONS_LIST_PATH}", json_body={"limit": 100})
        if not result.ok:
            return Result(error=result.error)
        parsed = self.parse_response(result.value, ctx.now)
        if not parsed.ok:
            return Result(error=parsed.error)

        objects = []
        for collection in (parsed.value or {}).get("data") or []:
            if not isinstance(collection, dict) or not collection.get("name"):
                continue
            objects.append(ObjectDraft(
                concept="category",
                type="outline_collection",
                title=collection["name"],
                time=parse_timestamp(collection.get("updatedAt")) or ctx.now,
                content=collection.get("description"),
                metadata={"id": collection.get("id"), "color": collection.get("color")},
                url=f"{api_url}{collection['url']}" if collection.get("url") else None,
            ))
        return Result.success(objects)

    async def fetch_page(self, ctx: PluginContext, cursor: dict[str, Any]) -> Result[Page]:
        next_path = cursor.get("next_path")
        objects: list[ObjectDraft] = []
        if not next_path:
            collections = await self._collections(ctx)
            if not collections.ok:
                if collections.error.kind == ErrorKind.RATE_LIMITED:
                    return Result(error=collections.error)
                logger.warning(
                    "outline_collections_unavailable",
                    integration_id=ctx.integration_id,
                    error=str(collections.error),
                )
            else:
                objects = collections.value

        url = f"{ctx.config.api_url}{DOCUMENTS_LIST_PATH}"
        result = await ctx.request("POST", url, json_body=self._list_body(ctx, next_path))
        if not result.ok:
            return Result(error=result.error)
        parsed = self.parse_response(result.value, ctx.now)
        if not parsed.ok:
            return Result(error=parsed.error)

        body = parsed.value
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            return Result.failure(ErrorKind.STRUCTURAL, "Outline documents.list response has no data list")

        following = get_nested(body, "pagination.nextPath")
        next_cursor = {"next_path": following} if data and following else None
        return Result.success(Page(items=data, next_cursor=next_cursor, objects=objects))

    async def fetch_account_id(self, ctx: PluginContext) -> Optional[str]:
        result = await ctx.request("POST", f"{ctx.config.api_url}{AUTH_INFO_PATH}", json_body={})
        if not result.ok:
            return None
        parsed = self.parse_response(result.value, ctx.now)
        if not parsed.ok or not isinstance(parsed.value, dict):
            return None
        account = get_nested(parsed.value, "data.user.id")
        return str(account) if account else None

    def normalize(self, ctx: PluginContext, raw: Any) -> list[NormalizedRecord]:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise ProviderDataError("Outline document has no id")

        doc_id = str(raw["id"])
        title = raw.get("title") or "Untitled"
        text = raw.get("text") or ""
        url = f"{ctx.config.api_url}{raw['url']}" if raw.get("url") else None

        day = None
        if ctx.config.daynotes_collection_id and raw.get("collectionId") == ctx.config.daynotes_collection_id:
            day = parse_day_note_title(title)

        if day is not None:
            action, concept, block_type = "had_day_note", "day_note", "day_task"
            when = start_of_day(day.isoformat())
        else:
            action, concept, block_type = "created", "document", "doc_task"
            when = parse_timestamp(raw.get("createdAt")) or parse_timestamp(raw.get("updatedAt"))
        if when is None:
            raise ProviderDataError(f"Outline document {doc_id} has no timestamp")

        blocks = [
            BlockDraft(
                title=task.text,
                time=when,
                block_type=block_type,
                metadata={
                    "outline_document_id": doc_id,
                    "line_number": task.line_number,
                    "checked": task.checked,
                    "hash": task_hash(doc_id, task.line_number, task.text),
                },
                url=url,
            )
            for task in extract_tasks(text)
        ]

        author = get_nested(raw, "createdBy.name") or "Outline User"
        return [NormalizedRecord(
            event=EventDraft(
                source_id=f"outline_doc_{doc_id}",
                time=when,
                service=SERVICE,
                domain=DOMAIN,
                action=action,
                event_metadata={k: v for k, v in raw.items() if k != "text"},
            ),
            actor=ObjectDraft(
                concept="b_party",
                type="outline_user",
                title=author,
                time=when,
                metadata={"id": get_nested(raw, "createdBy.id")},
                image_url=get_nested(raw, "createdBy.avatarUrl"),
            ),
            target=ObjectDraft(
                concept=concept,
                type="outline_document",
                title=title,
                time=when,
                content=text,
                metadata={
                    "id": doc_id,
                    "collection_id": raw.get("collectionId"),
                    "updated_at": raw.get("updatedAt"),
                },
                url=url,
            ),
            blocks=blocks,
            reconcile_block_types=("doc_task", "day_task"),
        )]
