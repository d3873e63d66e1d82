"""Coerce raw task-store records into Task models."""
from __future__ import annotations

import logging
from typing import Any

from storylink.models import Task

logger = logging.getLogger("storylink.parser")

# Status spellings seen in task files → canonical statuses
_STATUS_MAP = {
    "completed": "completed",
    "complete": "completed",
    "done": "completed",
    "in_progress": "in_progress",
    "in-progress": "in_progress",
    "active": "in_progress",
    "pending": "pending",
    "todo": "pending",
    "not-started": "pending",
    "not_started": "pending",
}


def _map_status(raw: Any) -> str:
    token = str(raw or "").strip().lower()
    if not token:
        return "pending"
    return _STATUS_MAP.get(token, token)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def coerce_task(raw: dict) -> Task | None:
    task_id = _optional_str(raw.get("id"))
    if not task_id:
        return None
    return Task(
        id=task_id,
        name=str(raw.get("name") or raw.get("title") or ""),
        description=str(raw.get("description") or ""),
        status=_map_status(raw.get("status")),
        storyId=_optional_str(raw.get("storyId")),
        agent=_optional_str(raw.get("agent")),
        priority=str(raw.get("priority") or "medium"),
        createdAt=str(raw.get("createdAt") or ""),
        updatedAt=str(raw.get("updatedAt") or ""),
        completedAt=_optional_str(raw.get("completedAt")),
    )


def coerce_tasks(raw_tasks: list[Any]) -> list[Task]:
    """Build Task models, skipping records without an id."""
    tasks: list[Task] = []
    for raw in raw_tasks or []:
        if not isinstance(raw, dict):
            continue
        task = coerce_task(raw)
        if task is None:
            logger.warning("Skipping task record without an id")
            continue
        tasks.append(task)
    return tasks
