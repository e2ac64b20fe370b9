"""
Sync error taxonomy and explicit result values.

Calls that can fail for expected reasons (missing token, refresh rejected,
rate limited, network down, malformed page) return a Result instead of
raising. The caller inspects ``error.kind`` and chooses to defer, retry or
abort the run.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    MISSING_CREDENTIALS = "missing_credentials"
    AUTH_REFRESH_FAILED = "auth_refresh_failed"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_NETWORK = "transient_network"
    PROVIDER_DATA = "provider_data"
    STRUCTURAL = "structural"
    HTTP_STATUS = "http_status"


# Kinds that abort the run and need a human to reconnect
_RECONNECT_REQUIRED = {ErrorKind.MISSING_CREDENTIALS, ErrorKind.AUTH_REFRESH_FAILED}


@dataclass
class SyncError:
    """One classified failure."""
    kind: ErrorKind
    message: str = ""
    retry_after: Optional[float] = None
    status_code: Optional[int] = None

    @property
    def is_recoverable(self) -> bool:
        return self.kind in (ErrorKind.RATE_LIMITED, ErrorKind.PROVIDER_DATA)

    @property
    def is_fatal(self) -> bool:
        return not self.is_recoverable

    @property
    def requires_reconnect(self) -> bool:
        return self.kind in _RECONNECT_REQUIRED

    def __str__(self) -> str:
        parts = [self.kind.value]
        if self.status_code is not None:
            parts.append(f"HTTP {self.status_code}")
        if self.message:
            parts.append(self.message)
        return ": ".join(parts)


@dataclass
class Result(Generic[T]):
    """Either a value or a SyncError."""
    value: Optional[T] = None
    error: Optional[SyncError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str = "", **kwargs) -> "Result[T]":
        return cls(error=SyncError(kind=kind, message=message, **kwargs))


class ProviderDataError(ValueError):
    """A single raw item is missing fields or has the wrong shape."""


class ConfigError(ValueError):
    """Instance configuration failed validation at load time."""


class OAuthStateError(ValueError):
    """OAuth state token is tampered, expired or does not match the session."""


class OAuthExchangeError(RuntimeError):
    """The provider rejected the authorization code exchange."""
