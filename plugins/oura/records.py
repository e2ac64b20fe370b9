"""
Oura item -> NormalizedRecord builders.

One builder per data kind. All of them share the account actor and raise
ProviderDataError when an item lacks the fields its source_id needs.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from core.integrations.errors import ProviderDataError
from core.integrations.normalizer import (
    BlockDraft,
    EventDraft,
    NormalizedRecord,
    ObjectDraft,
    encode_numeric_value,
    headline,
    is_numeric,
    parse_timestamp,
    stable_hash,
    start_of_day,
)

SERVICE = "oura"
DOMAIN = "health"


@dataclass(frozen=True)
class DailyKind:
    action: str
    score_field: str
    title: str
    contributors: bool = True
    details: tuple[str, ...] = ()


DAILY_KINDS: dict[str, DailyKind] = {
    "activity": DailyKind(
        "had_activity_score",
        "score",
        "Activity",
        details=("steps", "cal_total", "equivalent_walking_distance", "target_calories", "non_wear_time"),
    ),
    "sleep": DailyKind("had_sleep_score", "score", "Sleep"),
    "readiness": DailyKind("had_readiness_score", "score", "Readiness"),
    "resilience": DailyKind("had_resilience_score", "resilience_score", "Resilience"),
    "stress": DailyKind("had_stress_score", "stress_score", "Stress"),
    "spo2": DailyKind("had_spo2", "spo2_average", "SpO2", contributors=False),
}

DETAIL_UNITS = {
    "steps": "count",
    "cal_total": "kcal",
    "equivalent_walking_distance": "km",
    "target_calories": "kcal",
    "non_wear_time": "seconds",
}

SLEEP_STAGES = (
    ("deep", "deep_sleep_duration", "Deep Sleep"),
    ("light", "light_sleep_duration", "Light Sleep"),
    ("rem", "rem_sleep_duration", "REM Sleep"),
    ("awake", "awake_time", "Awake Time"),
)


def _numeric(raw: Any) -> tuple[Optional[int], Optional[int]]:
    return encode_numeric_value(raw if is_numeric(raw) else None)


def _require_dict(item: Any, kind: str) -> dict:
    if not isinstance(item, dict):
        raise ProviderDataError(f"Oura {kind} item is not an object")
    return item


def _day_of(item: dict, *timestamp_fields: str) -> Optional[str]:
    for name in timestamp_fields:
        value = item.get(name)
        if value:
            return str(value)[:10]
    day = item.get("day") or item.get("date")
    return str(day) if day else None


def account_object(account_id: Optional[str], when: Optional[datetime] = None) -> ObjectDraft:
    """The user's Oura account, the actor of every Oura event."""
    return ObjectDraft(
        concept="user",
        type="oura_user",
        title=f"Oura Account {account_id}" if account_id else "Oura Account",
        time=when,
        content="Oura account",
        metadata={"account_id": account_id} if account_id else {},
    )


# ---------------------------------------------------------------------------
# Daily score records
# ---------------------------------------------------------------------------

def daily_record(
    integration_id: str,
    kind: str,
    item: Any,
    account_id: Optional[str] = None,
) -> NormalizedRecord:
    item = _require_dict(item, kind)
    daily_kind = DAILY_KINDS.get(kind) or DailyKind("scored", "score", headline(kind))
    day = item.get("day") or item.get("date")
    when = start_of_day(str(day)) if day else None
    if when is None:
        raise ProviderDataError(f"Oura {kind} item has no usable day")
    day = str(day)[:10]

    value, multiplier = _numeric(item.get(daily_kind.score_field))
    blocks: list[BlockDraft] = []

    contributors = item.get("contributors") if daily_kind.contributors else None
    for name, raw in (contributors or {}).items():
        c_value, c_multiplier = _numeric(raw)
        blocks.append(BlockDraft(
            title=headline(name),
            time=when,
            metadata={"text": "Contributor score"},
            value=c_value,
            value_multiplier=c_multiplier,
            value_unit="percent",
        ))

    for name in daily_kind.details:
        if name not in item:
            continue
        d_value, d_multiplier = _numeric(item[name])
        blocks.append(BlockDraft(
            title=headline(name),
            time=when,
            value=d_value,
            value_multiplier=d_multiplier,
            value_unit=DETAIL_UNITS.get(name),
        ))

    return NormalizedRecord(
        event=EventDraft(
            source_id=f"oura_{kind}_{integration_id}_{day}",
            time=when,
            service=SERVICE,
            domain=DOMAIN,
            action=daily_kind.action,
            value=value,
            value_multiplier=multiplier,
            value_unit="percent",
            event_metadata={"day": day, "kind": kind},
        ),
        actor=account_object(account_id, when),
        target=ObjectDraft(
            concept="metric",
            type=f"oura_daily_{kind}",
            title=daily_kind.title,
            time=when,
            content=f"{daily_kind.title} daily summary",
            metadata=dict(item),
        ),
        blocks=blocks,
    )


# ---------------------------------------------------------------------------
# Sleep records, workouts, sessions, tags
# ---------------------------------------------------------------------------

def sleep_record(integration_id: str, item: Any, account_id: Optional[str] = None) -> NormalizedRecord:
    item = _require_dict(item, "sleep")
    day = _day_of(item, "bedtime_start")
    if not day:
        raise ProviderDataError("Oura sleep record has neither bedtime_start nor day")
    when = parse_timestamp(item.get("bedtime_start")) or start_of_day(day)
    if when is None:
        raise ProviderDataError(f"Oura sleep record has an unreadable day {day!r}")

    record_id = item.get("id") or stable_hash([day, item.get("duration", 0), item.get("total", 0)])
    duration = item.get("total_sleep_duration", item.get("duration"))
    duration = int(duration) if is_numeric(duration) else 0

    blocks: list[BlockDraft] = []
    stages = item.get("sleep_stages") or {}
    for short, field_name, title in SLEEP_STAGES:
        seconds = stages.get(short, item.get(field_name))
        if not is_numeric(seconds):
            continue
        blocks.append(BlockDraft(
            title=title,
            time=when,
            block_type="sleep_stage",
            content="Stage duration",
            value=int(float(seconds)),
            value_unit="seconds",
        ))

    hr_value, hr_multiplier = _numeric(item.get("average_heart_rate"))
    if hr_value is not None:
        blocks.append(BlockDraft(
            title="Average Heart Rate",
            time=when,
            block_type="sleep_stage",
            content="Average sleeping heart rate",
            value=hr_value,
            value_multiplier=hr_multiplier,
            value_unit="bpm",
        ))

    return NormalizedRecord(
        event=EventDraft(
            source_id=f"oura_sleep_record_{integration_id}_{record_id}",
            time=when,
            service=SERVICE,
            domain=DOMAIN,
            action="slept_for",
            value=duration,
            value_unit="seconds",
            event_metadata={"end": item.get("bedtime_end"), "efficiency": item.get("efficiency")},
        ),
        actor=account_object(account_id, when),
        target=ObjectDraft(
            concept="sleep",
            type="oura_sleep_record",
            title="Sleep Record",
            time=when,
            content="Detailed sleep record including stages and efficiency",
            metadata=dict(item),
        ),
        blocks=blocks,
    )


def _started(item: dict, *fields: str) -> tuple[str, datetime]:
    day = _day_of(item, *fields)
    if not day:
        raise ProviderDataError("Oura item has no start time or day")
    start = next((item.get(name) for name in fields if item.get(name)), None)
    when = parse_timestamp(start) or start_of_day(day)
    if when is None:
        raise ProviderDataError(f"Oura item has an unreadable day {day!r}")
    return day, when


def workout_record(integration_id: str, item: Any, account_id: Optional[str] = None) -> NormalizedRecord:
    item = _require_dict(item, "workout")
    day, when = _started(item, "start_datetime")
    suffix = item.get("id") or f"{day}_{stable_hash(item)}"
    activity = str(item.get("activity") or "workout")

    duration = item.get("duration")
    if not is_numeric(duration):
        end = parse_timestamp(item.get("end_datetime"))
        duration = (end - when).total_seconds() if end else 0
    calories = item.get("calories", item.get("total_calories"))
    calories = float(calories) if is_numeric(calories) else 0.0

    cal_value, cal_multiplier = encode_numeric_value(calories)
    blocks = [BlockDraft(
        title="Calories",
        time=when,
        block_type="workout",
        content="Estimated calories for the workout",
        value=cal_value,
        value_multiplier=cal_multiplier,
        value_unit="kcal",
    )]
    hr_value, hr_multiplier = _numeric(item.get("average_heart_rate"))
    if hr_value is not None:
        blocks.append(BlockDraft(
            title="Average Heart Rate",
            time=when,
            block_type="workout",
            content="Average heart rate during workout",
            value=hr_value,
            value_multiplier=hr_multiplier,
            value_unit="bpm",
        ))

    return NormalizedRecord(
        event=EventDraft(
            source_id=f"oura_workout_{integration_id}_{suffix}",
            time=when,
            service=SERVICE,
            domain=DOMAIN,
            action="did_workout",
            value=int(float(duration)),
            value_unit="seconds",
            event_metadata={"end": item.get("end_datetime"), "calories": calories},
        ),
        actor=account_object(account_id, when),
        target=ObjectDraft(
            concept="workout",
            type=activity,
            title=headline(activity),
            time=when,
            content="Oura workout session",
            metadata=dict(item),
        ),
        blocks=blocks,
    )


def session_record(integration_id: str, item: Any, account_id: Optional[str] = None) -> NormalizedRecord:
    item = _require_dict(item, "session")
    day, when = _started(item, "start_datetime", "timestamp")
    suffix = item.get("id") or f"{day}_{stable_hash(item)}"
    session_type = str(item.get("type") or "session")

    duration = item.get("duration")
    if not is_numeric(duration):
        end = parse_timestamp(item.get("end_datetime"))
        duration = (end - when).total_seconds() if end else 0

    blocks: list[BlockDraft] = []
    state = item.get("mood") or item.get("state")
    if state:
        blocks.append(BlockDraft(title="State", time=when, content=str(state)))

    return NormalizedRecord(
        event=EventDraft(
            source_id=f"oura_session_{integration_id}_{suffix}",
            time=when,
            service=SERVICE,
            domain=DOMAIN,
            action="had_mindfulness_session",
            value=int(float(duration)),
            value_unit="seconds",
            event_metadata={"end": item.get("end_datetime"), "type": session_type},
        ),
        actor=account_object(account_id, when),
        target=ObjectDraft(
            concept="mindfulness_session",
            type=session_type,
            title=headline(session_type),
            time=when,
            content="Oura guided or unguided session",
            metadata=dict(item),
        ),
        blocks=blocks,
    )


def tag_record(integration_id: str, item: Any, account_id: Optional[str] = None) -> NormalizedRecord:
    item = _require_dict(item, "tag")
    day, when = _started(item, "timestamp", "time")
    label = item.get("tag") or item.get("label") or item.get("text") or "Tag"
    if isinstance(label, list):
        label = ", ".join(str(part) for part in label) or "Tag"

    return NormalizedRecord(
        event=EventDraft(
            source_id=f"oura_tag_{integration_id}_{stable_hash(item)}",
            time=when,
            service=SERVICE,
            domain=DOMAIN,
            action="had_oura_tag",
            value=None,
            event_metadata={"day": day, "label": label},
        ),
        actor=account_object(account_id, when),
        target=ObjectDraft(
            concept="tag",
            type="oura_tag",
            title="Oura Tag",
            time=when,
            content="Oura tag entry",
            metadata=dict(item),
        ),
        blocks=[BlockDraft(title="Tag", time=when, block_type="tag", content=str(label))],
    )


# ---------------------------------------------------------------------------
# Heart rate
# ---------------------------------------------------------------------------

def group_heartrate(points: list[Any]) -> list[dict[str, Any]]:
    """Group raw samples into one {"day", "points"} item per UTC day."""
    by_day: dict[str, list[dict]] = {}
    for point in points:
        if not isinstance(point, dict) or not is_numeric(point.get("bpm")):
            continue
        stamp = point.get("timestamp") or point.get("start_datetime") or ""
        day = str(stamp)[:10]
        if len(day) == 10:
            by_day.setdefault(day, []).append(point)
    return [{"day": day, "points": pts} for day, pts in sorted(by_day.items())]


def heartrate_record(integration_id: str, item: Any, account_id: Optional[str] = None) -> NormalizedRecord:
    item = _require_dict(item, "heartrate")
    day = item.get("day")
    points = item.get("points") or []
    when = start_of_day(str(day)) if day else None
    if when is None or not points:
        raise ProviderDataError("Oura heart rate group needs a day and at least one point")

    bpms = [float(p["bpm"]) for p in points]
    low, high = int(min(bpms)), int(max(bpms))
    average = sum(bpms) / len(bpms)
    avg_value, avg_multiplier = encode_numeric_value(average)
    min_value, min_multiplier = encode_numeric_value(low)
    max_value, max_multiplier = encode_numeric_value(high)

    return NormalizedRecord(
        event=EventDraft(
            source_id=f"oura_heartrate_{integration_id}_{day}",
            time=when,
            service=SERVICE,
            domain=DOMAIN,
            action="had_heart_rate",
            value=avg_value,
            value_multiplier=avg_multiplier,
            value_unit="bpm",
            event_metadata={"day": day, "min_bpm": low, "max_bpm": high, "avg_bpm": average},
        ),
        actor=account_object(account_id, when),
        target=ObjectDraft(
            concept="metric",
            type="heartrate_series",
            title="Heart Rate",
            time=when,
            metadata={"interval": "irregular"},
        ),
        blocks=[
            BlockDraft(title="Min Heart Rate", time=when, value=min_value,
                       value_multiplier=min_multiplier, value_unit="bpm"),
            BlockDraft(title="Max Heart Rate", time=when, value=max_value,
                       value_multiplier=max_multiplier, value_unit="bpm"),
            BlockDraft(
                title="Data Points",
                time=when,
                metadata={"text": "Count of heart rate points collected for the day"},
                value=len(points),
                value_unit="count",
            ),
        ],
    )
