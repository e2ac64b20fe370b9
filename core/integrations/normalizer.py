"""
Canonical record drafts and the shared normalization helpers.

Each plugin turns one raw provider item into NormalizedRecord values:
an EventDraft plus actor/target ObjectDrafts and child BlockDrafts.
The writer persists them; nothing here touches the database.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Optional
import hashlib
import json
import math

# Fractional values are stored as round(value * 1000) / 1000.
# Precision beyond three decimal places is lost.
FRACTION_MULTIPLIER = 1000


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------

@dataclass
class ObjectDraft:
    """Actor or target entity. Identity is (concept, type, title) per user."""
    concept: str
    type: str
    title: str
    time: Optional[datetime] = None
    content: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    url: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.concept, self.type, self.title)


@dataclass
class BlockDraft:
    title: str
    time: Optional[datetime] = None
    block_type: str = ""
    content: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    url: Optional[str] = None
    value: Optional[int] = None
    value_multiplier: Optional[int] = 1
    value_unit: Optional[str] = None


@dataclass
class EventDraft:
    source_id: str
    time: datetime
    service: str
    domain: str
    action: str
    value: Optional[int] = None
    value_multiplier: Optional[int] = 1
    value_unit: Optional[str] = None
    event_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class NormalizedRecord:
    """Everything the writer needs for one event.

    ``reconcile_block_types`` marks a living checklist: when the event
    already exists, blocks of those types are reconciled against
    ``blocks`` instead of the write being skipped.
    """
    event: EventDraft
    actor: ObjectDraft
    target: Optional[ObjectDraft] = None
    blocks: list[BlockDraft] = field(default_factory=list)
    reconcile_block_types: tuple[str, ...] = ()

    @property
    def source_id(self) -> str:
        return self.event.source_id


# ---------------------------------------------------------------------------
# Numeric encoding
# ---------------------------------------------------------------------------

def encode_numeric_value(
    raw: Any,
    default_multiplier: int = 1,
) -> tuple[Optional[int], Optional[int]]:
    """Encode a number as (integer, multiplier) so integer / multiplier == raw.

    >>> encode_numeric_value(82.5)
    (82500, 1000)
    >>> encode_numeric_value(82)
    (82, 1)
    >>> encode_numeric_value(None)
    (None, None)
    """
    if raw is None or raw == "" or isinstance(raw, bool):
        return (None, None)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return (None, None)
    if not math.isfinite(value):
        return (None, None)
    if math.fmod(value, 1.0) != 0.0:
        return (int(round(value * FRACTION_MULTIPLIER)), FRACTION_MULTIPLIER)
    return (int(value), default_multiplier)


def is_numeric(raw: Any) -> bool:
    if isinstance(raw, bool):
        return False
    if isinstance(raw, (int, float)):
        return True
    if isinstance(raw, str):
        try:
            float(raw)
        except ValueError:
            return False
        return True
    return False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def headline(name: str) -> str:
    """'stay_active' -> 'Stay Active'."""
    return " ".join(part.capitalize() for part in str(name).replace("_", " ").split())


def get_nested(data: dict, path: str) -> Any:
    """Dot-path access: 'data.0.user_id'. Missing segments yield None."""
    current: Any = data
    for key in path.split("."):
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit():
            idx = int(key)
            current = current[idx] if idx < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def stable_hash(value: Any) -> str:
    """md5 of a canonical JSON dump, for ids derived from content."""
    dumped = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(dumped.encode()).hexdigest()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 dates and datetimes to aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def start_of_day(day: str) -> Optional[datetime]:
    try:
        return datetime.combine(date.fromisoformat(day[:10]), time.min, tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None
