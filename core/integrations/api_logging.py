"""
Sanitizing logger for outbound provider traffic.

Every request and response passes through here before it is written
anywhere. Credentials are redacted from headers and bodies, and large
response bodies are truncated.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Optional
import json
import re

import structlog

REDACTED = "[REDACTED]"
TRUNCATED_SUFFIX = "... [TRUNCATED]"

SENSITIVE_HEADERS = frozenset({
    "authorization",
    "x-api-key",
    "x-auth-token",
    "x-signature",
    "x-hub-signature",
})
SENSITIVE_BODY_KEY = re.compile(r"password|token|secret|key|auth", re.IGNORECASE)
# OAuth exchange fields that do not match the generic pattern
EXTRA_SENSITIVE_KEYS = frozenset({"code", "code_verifier"})


def sanitize_headers(headers: Optional[dict[str, Any]]) -> dict[str, Any]:
    if not headers:
        return {}
    return {
        k: (REDACTED if k.lower() in SENSITIVE_HEADERS else v)
        for k, v in headers.items()
    }


def sanitize_body(body: Any) -> Any:
    """Recursively redact sensitive keys in dicts and lists."""
    if isinstance(body, dict):
        clean = {}
        for k, v in body.items():
            key = str(k)
            if SENSITIVE_BODY_KEY.search(key) or key.lower() in EXTRA_SENSITIVE_KEYS:
                clean[k] = REDACTED
            else:
                clean[k] = sanitize_body(v)
        return clean
    if isinstance(body, list):
        return [sanitize_body(v) for v in body]
    return body


def sanitize_response_body(body: str, limit: int = 10000) -> str:
    """Redact JSON response bodies and truncate anything over the limit."""
    text = body
    try:
        parsed = json.loads(body)
    except (TypeError, ValueError):
        parsed = None
    if isinstance(parsed, (dict, list)):
        text = json.dumps(sanitize_body(parsed))
    if len(text) > limit:
        return text[:limit] + TRUNCATED_SUFFIX
    return text


@dataclass
class ApiLogEntry:
    """One sanitized request or response, as handed to the sink."""
    direction: str  # request | response
    service: str
    method: str
    endpoint: str
    headers: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    status_code: Optional[int] = None
    integration_id: str = ""
    per_instance: bool = False


class ApiLogger:
    """Sanitizes provider traffic and emits it through structlog.

    ``sink`` is an optional list that also receives every entry; tests
    use it to assert on what would have been written.
    """

    def __init__(self, body_limit: int = 10000, sink: Optional[list[ApiLogEntry]] = None):
        self.body_limit = body_limit
        self.sink = sink
        self._logger = structlog.get_logger("integration_api")

    def _bound(self, service: str, integration_id: str, per_instance: bool):
        log = self._logger.bind(service=service)
        if per_instance and integration_id:
            log = log.bind(integration_id=integration_id)
        return log

    def log_request(
        self,
        service: str,
        method: str,
        endpoint: str,
        headers: Optional[dict[str, Any]] = None,
        body: Any = None,
        integration_id: str = "",
        per_instance: bool = True,
    ) -> ApiLogEntry:
        entry = ApiLogEntry(
            direction="request",
            service=service,
            method=method.upper(),
            endpoint=endpoint,
            headers=sanitize_headers(headers),
            body=sanitize_body(body),
            integration_id=integration_id,
            per_instance=per_instance,
        )
        self._bound(service, integration_id, per_instance).debug(
            "api_request",
            method=entry.method,
            endpoint=endpoint,
            headers=entry.headers,
            body=entry.body,
        )
        if self.sink is not None:
            self.sink.append(entry)
        return entry

    def log_response(
        self,
        service: str,
        method: str,
        endpoint: str,
        status_code: int,
        body: str = "",
        headers: Optional[dict[str, Any]] = None,
        integration_id: str = "",
        per_instance: bool = True,
    ) -> ApiLogEntry:
        entry = ApiLogEntry(
            direction="response",
            service=service,
            method=method.upper(),
            endpoint=endpoint,
            headers=sanitize_headers(headers),
            body=sanitize_response_body(body or "", self.body_limit),
            status_code=status_code,
            integration_id=integration_id,
            per_instance=per_instance,
        )
        self._bound(service, integration_id, per_instance).debug(
            "api_response",
            method=entry.method,
            endpoint=endpoint,
            status_code=status_code,
            body=entry.body,
        )
        if self.sink is not None:
            self.sink.append(entry)
        return entry
