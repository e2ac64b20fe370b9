"""Cursor shapes shared by plugins.

Date windows move forward from ``today - days_back`` until they reach
today. A window is inclusive on both ends; the next one starts the day
after the previous end.
"""
from __future__ import annotations
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional


def date_window(start: date, window_days: int, today: date) -> dict[str, Any]:
    end = min(start + timedelta(days=window_days - 1), today)
    return {"start_date": start.isoformat(), "end_date": end.isoformat()}


def first_date_window(days_back: int, window_days: int, now: datetime) -> dict[str, Any]:
    today = now.date()
    return date_window(today - timedelta(days=days_back), window_days, today)


def next_date_window(cursor: dict[str, Any], window_days: int, now: datetime) -> Optional[dict[str, Any]]:
    """Following window, or None once the current one reaches today."""
    today = now.date()
    end = date.fromisoformat(cursor["end_date"])
    if end >= today:
        return None
    return date_window(end + timedelta(days=1), window_days, today)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def datetime_window(start: datetime, window_days: int, now: datetime) -> dict[str, Any]:
    end = min(start + timedelta(days=window_days), now)
    return {"start_datetime": _iso(start), "end_datetime": _iso(end)}


def first_datetime_window(days_back: int, window_days: int, now: datetime) -> dict[str, Any]:
    start = datetime.combine(now.date() - timedelta(days=days_back), time.min, tzinfo=timezone.utc)
    return datetime_window(start, window_days, now)


def next_datetime_window(cursor: dict[str, Any], window_days: int, now: datetime) -> Optional[dict[str, Any]]:
    end = datetime.fromisoformat(cursor["end_datetime"].replace("Z", "+00:00"))
    # Cursor timestamps carry whole seconds only
    if end >= now.replace(microsecond=0):
        return None
    return datetime_window(end, window_days, now)
