"""
Processed-recently cache.

Skips a page whose exact payload was already processed for the same
integration and job type within the TTL. This sits in front of the
per-event source_id check and saves the database round trips when a
retried or duplicated work item replays an identical page.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
import hashlib
import json


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_processing_key(integration_id: str, service: str, job_type: str, data: Any) -> str:
    """
    Deterministic key: ``{integration_id}_{service}_{job_type}_{md5(data)}``.
    Same inputs always produce the same key.
    """
    dumped = json.dumps(data, sort_keys=True, default=str)
    digest = hashlib.md5(dumped.encode()).hexdigest()
    return f"{integration_id}_{service}_{job_type}_{digest}"


@dataclass
class ProcessedRecord:
    key: str
    processed_at: datetime
    expires_at: datetime


class ProcessedCache:
    """In-memory TTL cache. Replace backing store for multi-worker deployments."""

    def __init__(self, ttl_seconds: int = 3600, clock: Callable[[], datetime] = _utcnow):
        self._records: dict[str, ProcessedRecord] = {}
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def seen(self, key: str) -> bool:
        """True if the key was remembered and has not expired."""
        record = self._records.get(key)
        if record is None:
            return False
        if self.clock() >= record.expires_at:
            del self._records[key]
            return False
        return True

    def remember(self, key: str) -> ProcessedRecord:
        """Store a key. Expired keys are swept on every write so the cache stays bounded."""
        self.cleanup_expired()
        now = self.clock()
        record = ProcessedRecord(key=key, processed_at=now, expires_at=now + self.ttl)
        self._records[key] = record
        return record

    def cleanup_expired(self) -> int:
        """Remove all expired records. Returns count removed."""
        now = self.clock()
        expired = [k for k, v in self._records.items() if now >= v.expires_at]
        for k in expired:
            del self._records[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
