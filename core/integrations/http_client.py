"""
Provider HTTP client wrapper.

Every outbound provider call goes through ProviderClient. Provides:
- Bearer / API-key / no-auth header attachment
- Bounded connect timeout and a hard per-attempt deadline
- A small fixed-backoff tenacity retry budget for network-level failures only
- Sanitized request/response logging
- A standardized response envelope

HTTP status codes are never retried here. A 429 comes back to the caller
like any other response so the paginator can defer the step instead of
sleeping inside an execution slot.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlsplit
import asyncio
import json
import time

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from core.integrations.api_logging import ApiLogger
from core.integrations.errors import ErrorKind, Result

logger = structlog.get_logger()

# Retried by the client; HTTP status codes never are
_NETWORK_ERRORS = (httpx.TransportError, TimeoutError)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class AuthScheme(str, Enum):
    NONE = "none"
    BEARER = "bearer"
    API_KEY = "api_key"


@dataclass
class Credential:
    """Resolved credential for one call."""
    scheme: AuthScheme = AuthScheme.NONE
    token: str | None = None
    header: str = "Authorization"
    prefix: str = "Bearer"

    def headers(self) -> dict[str, str]:
        if not self.token or self.scheme == AuthScheme.NONE:
            return {}
        if self.scheme == AuthScheme.API_KEY and not self.prefix:
            return {self.header: self.token}
        return {self.header: f"{self.prefix} {self.token}"}


# ---------------------------------------------------------------------------
# Request / Response envelope
# ---------------------------------------------------------------------------

@dataclass
class ApiRequest:
    """Standardized outbound request."""
    method: str  # GET, POST
    url: str
    params: dict[str, Any] = field(default_factory=dict)
    json_body: dict[str, Any] | None = None
    form: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def endpoint(self) -> str:
        return urlsplit(self.url).path or "/"


@dataclass
class ApiResponse:
    """Standardized inbound response."""
    status_code: int
    text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    latency_ms: float = 0.0
    retries: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Parse the body. Raises ValueError on malformed JSON."""
        return json.loads(self.text)

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ProviderClient:
    """Outbound HTTP for all plugins.

    ``transport`` lets tests swap in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        api_logger: ApiLogger,
        connect_timeout: float = 10.0,
        total_timeout: float = 25.0,
        retries: int = 2,
        retry_backoff: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_logger = api_logger
        self.timeout = httpx.Timeout(total_timeout, connect=connect_timeout)
        self.total_timeout = total_timeout
        self.retries = retries
        self.retry_backoff = retry_backoff
        self.transport = transport

    async def call(
        self,
        req: ApiRequest,
        service: str,
        credential: Optional[Credential] = None,
        integration_id: str = "",
    ) -> Result[ApiResponse]:
        """
        Execute one request: Auth -> Log -> Retry on network failure -> Log.

        Returns a failure only when the network budget is exhausted; any
        HTTP response, including 4xx/5xx, is a success envelope.
        """
        headers = {**(credential.headers() if credential else {}), **req.headers}
        self.api_logger.log_request(
            service,
            req.method,
            req.endpoint,
            headers,
            req.form if req.form is not None else (req.json_body or req.params),
            integration_id,
            True,
        )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_fixed(self.retry_backoff),
            retry=retry_if_exception_type(_NETWORK_ERRORS),
            reraise=True,
        )
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            try:
                async for attempt in retrying:
                    with attempt:
                        number = attempt.retry_state.attempt_number
                        resp, latency = await self._send(client, req, headers, service, number)
            except _NETWORK_ERRORS as exc:
                return Result.failure(
                    ErrorKind.TRANSIENT_NETWORK,
                    f"{req.method} {req.endpoint} failed after {self.retries + 1} attempts: "
                    f"{self._describe(exc)}",
                )

        response = ApiResponse(
            status_code=resp.status_code,
            text=resp.text,
            headers=dict(resp.headers),
            latency_ms=latency,
            retries=number - 1,
        )
        self.api_logger.log_response(
            service,
            req.method,
            req.endpoint,
            resp.status_code,
            resp.text,
            response.headers,
            integration_id,
            True,
        )
        return Result.success(response)

    async def _send(
        self,
        client: httpx.AsyncClient,
        req: ApiRequest,
        headers: dict[str, str],
        service: str,
        attempt: int,
    ) -> tuple[httpx.Response, float]:
        """One attempt, bounded by ``total_timeout`` from first byte out to last byte in."""
        start = time.monotonic()
        try:
            async with asyncio.timeout(self.total_timeout):
                resp = await client.request(
                    req.method,
                    req.url,
                    params=req.params or None,
                    json=req.json_body,
                    data=req.form,
                    headers=headers,
                )
        except _NETWORK_ERRORS as exc:
            logger.warning(
                "provider_network_error",
                service=service,
                endpoint=req.endpoint,
                attempt=attempt,
                error=self._describe(exc),
            )
            raise
        return resp, (time.monotonic() - start) * 1000

    def _describe(self, exc: BaseException) -> str:
        if isinstance(exc, httpx.TransportError):
            return f"{type(exc).__name__}: {exc}"
        return f"TimeoutError: no complete response within {self.total_timeout}s"
