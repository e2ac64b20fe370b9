"""
Structured logging setup.

Every module logs through ``structlog.get_logger()`` with snake_case event
names and keyword context (integration_id, service, instance_type).
Production renders JSON lines; development renders for the console.
"""
from __future__ import annotations
import logging
import os

import structlog


def configure_logging(env: str | None = None, level: int = logging.INFO) -> None:
    """Configure structlog once at process start."""
    env = env or os.getenv("APP_ENV", "development")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
