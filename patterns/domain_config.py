"""Typed configuration for the sync engine and its instances.

Two layers:
- EngineSettings: process-wide timeouts, caps and retry policy as a frozen
  dataclass, with defaults and environment overrides.
- InstanceConfig: per-integration JSON configuration validated with
  pydantic when it is loaded. Plugins subclass it for their own typed
  fields; anything else lands in ``model_extra``.
"""

import os
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.integrations.errors import ConfigError


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EngineSettings:
    """Process-wide sync engine configuration.

    Usage::

        settings = EngineSettings.from_env()
        client = ProviderClient(api_logger, settings.http_connect_timeout, ...)
    """

    http_connect_timeout: float = 10.0
    http_total_timeout: float = 25.0
    http_retries: int = 2
    http_retry_backoff: float = 0.5

    page_cap: int = 10
    default_update_frequency_minutes: int = 15
    processing_window_min_minutes: int = 5
    processing_window_max_minutes: int = 30

    oauth_state_ttl_seconds: int = 600
    oauth_state_secret: str = "dev-only-state-secret"
    processed_cache_ttl_seconds: int = 3600

    job_max_attempts: int = 3
    job_backoff_seconds: tuple[int, ...] = (60, 300, 600)
    queue_backend: str = "memory"

    log_body_limit: int = 10000

    @classmethod
    def default(cls) -> "EngineSettings":
        """Create settings with all defaults."""
        return cls()

    @classmethod
    def from_env(cls, prefix: str = "SYNC_") -> "EngineSettings":
        """Create settings from environment variables.

        Example: SYNC_PAGE_CAP=20, SYNC_HTTP_TOTAL_TIMEOUT=30
        """
        overrides: dict[str, Any] = {}
        for name, cast in (
            ("http_connect_timeout", float),
            ("http_total_timeout", float),
            ("http_retries", int),
            ("http_retry_backoff", float),
            ("page_cap", int),
            ("default_update_frequency_minutes", int),
            ("processed_cache_ttl_seconds", int),
            ("job_max_attempts", int),
            ("queue_backend", str),
            ("log_body_limit", int),
        ):
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw:
                overrides[name] = cast(raw)

        backoff = os.getenv(f"{prefix}JOB_BACKOFF_SECONDS")
        if backoff:
            overrides["job_backoff_seconds"] = tuple(int(p) for p in backoff.split(","))

        secret = os.getenv("OAUTH_STATE_SECRET")
        if secret:
            overrides["oauth_state_secret"] = secret

        return cls(**overrides)


# ---------------------------------------------------------------------------
# Per-instance configuration
# ---------------------------------------------------------------------------

class InstanceConfig(BaseModel):
    """Configuration stored on an Integration row.

    Unknown keys are kept (``extra="allow"``) as the provider-specific
    escape hatch and read back through ``extra()``.
    """

    model_config = ConfigDict(extra="allow")

    update_frequency_minutes: int = Field(default=15, ge=1)
    use_schedule: bool = False
    schedule_times: list[str] = Field(default_factory=list)
    schedule_timezone: str = "UTC"
    paused: bool = False
    days_back: int = Field(default=7, ge=0)
    window_days: int = Field(default=30, ge=1)

    @field_validator("schedule_times")
    @classmethod
    def _check_times(cls, value: list[str]) -> list[str]:
        for item in value:
            hour, _, minute = item.partition(":")
            if not (hour.isdigit() and minute.isdigit() and 0 <= int(hour) < 24 and 0 <= int(minute) < 60):
                raise ValueError(f"schedule time must be HH:MM, got {item!r}")
        return value

    @field_validator("schedule_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    def extra(self, key: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(key, default)

    @property
    def schedule_enabled(self) -> bool:
        return self.use_schedule and bool(self.schedule_times)

    @classmethod
    def load(cls, raw: dict[str, Any] | None) -> "InstanceConfig":
        """Validate raw JSON configuration, raising ConfigError on bad input."""
        try:
            return cls.model_validate(raw or {})
        except ValidationError as exc:
            raise ConfigError(f"Invalid {cls.__name__}: {exc}") from exc
