"""GitHub plugin: repo/page pagination over the repository events API."""
from __future__ import annotations
from datetime import datetime
from typing import Any, Optional

import structlog

from core.integrations.errors import ErrorKind, ProviderDataError, Result
from core.integrations.http_client import ApiResponse, AuthScheme
from core.integrations.normalizer import (
    BlockDraft,
    EventDraft,
    NormalizedRecord,
    ObjectDraft,
    parse_timestamp,
)
from core.models.timeline import Integration
from patterns.domain_config import InstanceConfig
from plugins.base import Page, PluginContext, SyncPlugin, parse_retry_after
from plugins.github.config import GITHUB_API_BASE, GITHUB_API_VERSION, GitHubInstanceConfig

logger = structlog.get_logger()

SERVICE = "github"
DOMAIN = "online"

# Past the last page of the events feed GitHub answers 422
_END_OF_FEED = {404, 422}


def _actor(data: dict) -> ObjectDraft:
    actor = data.get("actor") or {}
    login = actor.get("login") or "Unknown User"
    return ObjectDraft(
        concept="user",
        type="github_user",
        title=login,
        content=login,
        metadata={"github_id": actor.get("id"), "avatar_url": actor.get("avatar_url")},
        url=actor.get("html_url") or (f"https://github.com/{actor['login']}" if actor.get("login") else None),
        image_url=actor.get("avatar_url"),
    )


class GitHubPlugin(SyncPlugin):
    service = SERVICE
    display_name = "GitHub"
    domain = DOMAIN
    base_url = GITHUB_API_BASE
    auth_scheme = AuthScheme.BEARER
    instance_types = ("activity",)
    default_instance_types = ("activity",)
    config_model = GitHubInstanceConfig

    default_retry_after = 60.0
    min_retry_after = 30.0

    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
    }

    def initial_cursor(self, integration: Integration, config: InstanceConfig, now: datetime) -> dict[str, Any]:
        return {"repo_index": 0, "page": 1}

    def rate_limit_delay(self, resp: ApiResponse, now: datetime) -> Optional[float]:
        if resp.status_code not in (403, 429):
            return None
        exhausted = resp.header("X-RateLimit-Remaining") == "0"
        reset = resp.header("X-RateLimit-Reset")
        if exhausted and reset and reset.isdigit():
            return max(int(reset) - now.timestamp(), 1.0)
        if exhausted or resp.status_code == 429 or resp.header("Retry-After"):
            return parse_retry_after(resp.header("Retry-After"), self.default_retry_after, self.min_retry_after)
        return None

    @staticmethod
    def _advance_repo(cursor: dict[str, Any], repos: list[str]) -> Optional[dict[str, Any]]:
        index = cursor.get("repo_index", 0) + 1
        return {"repo_index": index, "page": 1} if index < len(repos) else None

    async def fetch_page(self, ctx: PluginContext, cursor: dict[str, Any]) -> Result[Page]:
        repos = ctx.config.repositories
        index = cursor.get("repo_index", 0)
        if index >= len(repos):
            return Result.success(Page())
        repo = repos[index]
        page = cursor.get("page", 1)

        result = await ctx.request(
            "GET",
            f"{self.base_url}/repos/{repo}/events",
            params={"per_page": ctx.config.per_page, "page": page},
            headers=self.headers,
        )
        if not result.ok:
            return Result(error=result.error)
        resp = result.value
        if resp.status_code in _END_OF_FEED:
            logger.info("github_feed_ended", integration_id=ctx.integration_id, repository=repo, status_code=resp.status_code)
            return Result.success(Page(next_cursor=self._advance_repo(cursor, repos)))

        parsed = self.parse_response(resp, ctx.now)
        if not parsed.ok:
            return Result(error=parsed.error)
        events = parsed.value
        if not isinstance(events, list):
            return Result.failure(ErrorKind.STRUCTURAL, f"GitHub events for {repo} is not a list")

        if not events:
            next_cursor = self._advance_repo(cursor, repos)
        else:
            next_cursor = {"repo_index": index, "page": page + 1}
        return Result.success(Page(items=events, next_cursor=next_cursor))

    async def fetch_account_id(self, ctx: PluginContext) -> Optional[str]:
        result = await ctx.request("GET", f"{self.base_url}/user", headers=self.headers)
        if not result.ok:
            return None
        parsed = self.parse_response(result.value, ctx.now)
        if not parsed.ok or not isinstance(parsed.value, dict):
            return None
        login = parsed.value.get("login")
        return str(login) if login else None

    # -- Normalize --

    def normalize(self, ctx: PluginContext, raw: Any) -> list[NormalizedRecord]:
        if not isinstance(raw, dict) or not raw.get("type"):
            raise ProviderDataError("GitHub event has no type")
        if raw["type"] not in ctx.config.allowed_types:
            return []
        if not raw.get("id") or not raw.get("actor") or not raw.get("repo"):
            raise ProviderDataError(f"GitHub {raw['type']} is missing id, actor or repo")
        when = parse_timestamp(raw.get("created_at"))
        if when is None:
            raise ProviderDataError(f"GitHub event {raw['id']} has no created_at")

        if raw["type"] == "PushEvent":
            return [self._push(raw, when)]
        if raw["type"] == "PullRequestEvent":
            return [self._item_event(raw, when, "pull_request", "pull_request", "github_pr", "Untitled Pull Request")]
        if raw["type"] == "IssuesEvent":
            return [self._item_event(raw, when, "issue", "issue", "github_issue", "Untitled Issue")]
        return []

    def _push(self, data: dict, when: datetime) -> NormalizedRecord:
        payload = data.get("payload") or {}
        repo = data["repo"]
        commits = payload.get("commits") or []
        blocks = [
            BlockDraft(
                title=f"Commit: {commit.get('sha', '')[:7]}",
                time=when,
                block_type="commit",
                metadata={"message": commit.get("message"), "sha": commit.get("sha")},
                url=commit.get("url"),
                value=1,
                value_unit="commit",
            )
            for commit in commits
            if isinstance(commit, dict)
        ]
        return NormalizedRecord(
            event=EventDraft(
                source_id=str(data["id"]),
                time=when,
                service=SERVICE,
                domain=DOMAIN,
                action="push",
                value=len(blocks),
                value_unit="commits",
                event_metadata={
                    "ref": payload.get("ref"),
                    "before": payload.get("before"),
                    "after": payload.get("after"),
                },
            ),
            actor=_actor(data),
            target=ObjectDraft(
                concept="repository",
                type="github_repo",
                title=repo.get("name", ""),
                time=when,
                metadata={"github_id": repo.get("id"), "full_name": repo.get("name")},
                url=f"https://github.com/{repo['name']}" if repo.get("name") else None,
            ),
            blocks=blocks,
        )

    def _item_event(
        self,
        data: dict,
        when: datetime,
        key: str,
        concept: str,
        object_type: str,
        fallback_title: str,
    ) -> NormalizedRecord:
        payload = data.get("payload") or {}
        item = payload.get(key)
        action = payload.get("action")
        if not isinstance(item, dict) or not action:
            raise ProviderDataError(f"GitHub event {data['id']} has no {key} or action")
        repository = data["repo"].get("name") or "unknown/repository"
        return NormalizedRecord(
            event=EventDraft(
                source_id=str(data["id"]),
                time=when,
                service=SERVICE,
                domain=DOMAIN,
                action=action,
                value=1,
                value_unit=concept,
                event_metadata={"repository": repository, "number": item.get("number")},
            ),
            actor=_actor(data),
            target=ObjectDraft(
                concept=concept,
                type=object_type,
                title=item.get("title") or fallback_title,
                time=when,
                content=item.get("body") or "",
                metadata={
                    "github_id": item.get("id"),
                    "number": item.get("number"),
                    "state": item.get("state", "unknown"),
                    "repository": repository,
                },
                url=item.get("html_url"),
            ),
        )
