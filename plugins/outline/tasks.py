"""Markdown checklist extraction for Outline documents."""
from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from typing import Optional
import hashlib
import re

TASK_LINE = re.compile(r"^\s*- \[( |x|X)\] (.*)$")
DAY_NOTE_TITLE = re.compile(r"^(\d{4}-\d{2}-\d{2}): [A-Za-z]+$")


@dataclass
class TaskLine:
    line_number: int  # 1-based
    text: str
    checked: bool


def extract_tasks(text: Optional[str]) -> list[TaskLine]:
    tasks = []
    for number, line in enumerate((text or "").splitlines(), start=1):
        match = TASK_LINE.match(line)
        if match:
            tasks.append(TaskLine(number, match.group(2).strip(), match.group(1) != " "))
    return tasks


def task_hash(document_id: str, line_number: int, text: str) -> str:
    """Identity of a task line across re-syncs. Ticking a box keeps it."""
    return hashlib.sha256(f"{document_id}|{line_number}|{text.lower()}".encode()).hexdigest()


def parse_day_note_title(title: Optional[str]) -> Optional[date]:
    """'2025-01-27: Monday' -> date(2025, 1, 27)."""
    match = DAY_NOTE_TITLE.match((title or "").strip())
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1))
    except ValueError:
        return None
