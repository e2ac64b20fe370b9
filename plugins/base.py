"""
Capability interface every provider plugin implements.

The sync engine is written once against SyncPlugin:

    cursor = plugin.initial_cursor(integration, config, now)
    page = await plugin.fetch_page(ctx, cursor)       # Result[Page]
    records = plugin.normalize(ctx, raw_item)         # list[NormalizedRecord]

A plugin never writes to the database and never sleeps. It reports rate
limits as a RATE_LIMITED error carrying retry_after and lets the engine
defer the step.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from core.integrations.errors import ErrorKind, Result
from core.integrations.http_client import (
    ApiRequest,
    ApiResponse,
    AuthScheme,
    Credential,
    ProviderClient,
)
from core.integrations.normalizer import NormalizedRecord, ObjectDraft
from core.integrations.oauth_manager import OAuthConfig
from core.models.timeline import Integration, IntegrationGroup
from patterns.domain_config import InstanceConfig


@dataclass
class Page:
    """One fetched page.

    ``objects`` are standalone entities (e.g. collections) upserted before
    the items are normalized.
    """
    items: list[Any] = field(default_factory=list)
    next_cursor: Optional[dict[str, Any]] = None
    objects: list[ObjectDraft] = field(default_factory=list)


@dataclass
class PluginContext:
    """What a plugin may use during one step."""
    integration: Integration
    group: Optional[IntegrationGroup]
    config: InstanceConfig
    client: ProviderClient
    credential: Credential
    now: datetime

    @property
    def integration_id(self) -> str:
        return str(self.integration.id)

    async def request(
        self,
        method: str,
        url: str,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Result[ApiResponse]:
        return await self.client.call(
            ApiRequest(
                method=method,
                url=url,
                params=params or {},
                json_body=json_body,
                headers=headers or {},
            ),
            service=self.integration.service,
            credential=self.credential,
            integration_id=self.integration_id,
        )


def parse_retry_after(value: Optional[str], default: float, minimum: float) -> float:
    """Seconds from a Retry-After header, never below ``minimum``."""
    try:
        seconds = float(value) if value not in (None, "") else default
    except ValueError:
        seconds = default
    return max(seconds, minimum)


class SyncPlugin(ABC):
    """Base class for provider plugins."""

    service: str = ""
    display_name: str = ""
    domain: str = ""
    base_url: str = ""
    auth_scheme: AuthScheme = AuthScheme.BEARER
    instance_types: tuple[str, ...] = ()
    default_instance_types: tuple[str, ...] = ()
    config_model: type[InstanceConfig] = InstanceConfig

    # None means no per-run page cap
    max_pages_per_run: Optional[int] = None

    default_retry_after: float = 60.0
    min_retry_after: float = 1.0

    def __init__(self, oauth: Optional[OAuthConfig] = None):
        self.oauth = oauth

    # -- Configuration --

    def load_config(self, raw: Optional[dict[str, Any]]) -> InstanceConfig:
        """Validate instance configuration. Raises ConfigError."""
        return self.config_model.load(raw)

    def credential(self, token: Optional[str]) -> Credential:
        return Credential(scheme=self.auth_scheme, token=token)

    # -- Capability interface --

    @abstractmethod
    def initial_cursor(
        self,
        integration: Integration,
        config: InstanceConfig,
        now: datetime,
    ) -> dict[str, Any]:
        """Cursor for the first page of a run."""

    @abstractmethod
    async def fetch_page(self, ctx: PluginContext, cursor: dict[str, Any]) -> Result[Page]:
        """Fetch one page. Expected failures come back as Result errors."""

    @abstractmethod
    def normalize(self, ctx: PluginContext, raw: Any) -> list[NormalizedRecord]:
        """Raw item -> records. Raises ProviderDataError for a bad item."""

    def idempotency_key(self, ctx: PluginContext, raw: Any) -> str:
        records = self.normalize(ctx, raw)
        return records[0].source_id if records else ""

    async def fetch_account_id(self, ctx: PluginContext) -> Optional[str]:
        """Account identifier for a freshly connected group."""
        return None

    # -- Response handling --

    def rate_limit_delay(self, resp: ApiResponse, now: datetime) -> Optional[float]:
        """Seconds to wait when ``resp`` is a rate limit, else None."""
        if resp.status_code != 429:
            return None
        return parse_retry_after(resp.header("Retry-After"), self.default_retry_after, self.min_retry_after)

    def parse_response(self, resp: ApiResponse, now: datetime) -> Result[Any]:
        """Classify a response: rate limit, rejected credential, HTTP error or JSON body."""
        delay = self.rate_limit_delay(resp, now)
        if delay is not None:
            return Result.failure(
                ErrorKind.RATE_LIMITED,
                f"{self.service} rate limited",
                retry_after=delay,
                status_code=resp.status_code,
            )
        if resp.status_code == 401:
            return Result.failure(
                ErrorKind.AUTH_REFRESH_FAILED,
                f"{self.service} rejected the credential; reconnect required",
                status_code=401,
            )
        if not resp.ok:
            return Result.failure(
                ErrorKind.HTTP_STATUS,
                resp.text[:200],
                status_code=resp.status_code,
            )
        try:
            return Result.success(resp.json())
        except ValueError:
            return Result.failure(
                ErrorKind.STRUCTURAL,
                f"{self.service} returned a body that is not valid JSON",
                status_code=resp.status_code,
            )
