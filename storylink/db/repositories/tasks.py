"""Task store implementations: tasks.json files and a shared SQLite database."""
from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import aiosqlite

from storylink.errors import NotFoundError, StoreUnavailableError

logger = logging.getLogger("storylink.db")

MISSING_STORE_MESSAGE = "No tasks found. The tasks.json file hasn't been created yet."


def _normalize_document(raw: Any, path: Path) -> dict[str, Any]:
    # Older task files are a bare array of tasks.
    if isinstance(raw, list):
        return {"tasks": raw}
    if not isinstance(raw, dict):
        raise StoreUnavailableError(f"Unexpected task store layout in {path}")
    tasks = raw.get("tasks")
    if not isinstance(tasks, list):
        raw = {**raw, "tasks": []}
    return raw


class JsonTaskRepository:
    """tasks.json-backed task storage, one file per project."""

    def __init__(self, project_manager):
        self.project_manager = project_manager

    def store_path(self, project_id: str) -> Path:
        project = self.project_manager.get_project(project_id)
        if not project:
            raise NotFoundError("project", project_id)
        return Path(project.path).expanduser()

    def _load(self, path: Path) -> dict[str, Any]:
        try:
            text = path.read_text(encoding="utf-8")
            raw = json.loads(text) if text.strip() else {"tasks": []}
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StoreUnavailableError(f"Failed to read task store {path}: {exc}") from exc
        return _normalize_document(raw, path)

    async def read_all(self, project_id: str) -> dict[str, Any]:
        path = self.store_path(project_id)
        if not path.exists():
            return {"tasks": [], "message": MISSING_STORE_MESSAGE}
        return await asyncio.to_thread(self._load, path)

    def _write(self, path: Path, tasks: list[dict]) -> None:
        document: dict[str, Any] = {}
        if path.exists():
            try:
                document = self._load(path)
            except StoreUnavailableError:
                logger.warning(f"Overwriting unreadable task store {path}")
                document = {}
        document["tasks"] = tasks

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    async def write_all(self, project_id: str, tasks: list[dict]) -> None:
        path = self.store_path(project_id)
        await asyncio.to_thread(self._write, path, tasks)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    project_id TEXT NOT NULL,
    id TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    data_json TEXT NOT NULL,
    PRIMARY KEY (project_id, id)
)
"""


class SqliteTaskRepository:
    """SQLite-backed task storage shared by all projects.

    Every project lives in the same database file, so the watched store path
    is identical across projects; the mtime guard in the watcher still keeps
    pushes to one per genuine write.
    """

    def __init__(self, db_path: Path, project_manager=None):
        self.db_path = Path(db_path)
        self.project_manager = project_manager

    def store_path(self, project_id: str) -> Path:
        if self.project_manager is not None and not self.project_manager.get_project(project_id):
            raise NotFoundError("project", project_id)
        return self.db_path

    async def read_all(self, project_id: str) -> dict[str, Any]:
        self.store_path(project_id)
        if not self.db_path.exists():
            return {"tasks": [], "message": MISSING_STORE_MESSAGE}
        try:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(_SCHEMA)
                async with db.execute(
                    "SELECT data_json FROM tasks WHERE project_id = ? ORDER BY position",
                    (project_id,),
                ) as cur:
                    rows = await cur.fetchall()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"Failed to read task store {self.db_path}: {exc}") from exc

        tasks: list[dict] = []
        for (data_json,) in rows:
            try:
                task = json.loads(data_json)
            except json.JSONDecodeError:
                logger.warning(f"Skipping undecodable task row for project {project_id}")
                continue
            if isinstance(task, dict):
                tasks.append(task)
        return {"tasks": tasks}

    async def write_all(self, project_id: str, tasks: list[dict]) -> None:
        self.store_path(project_id)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Duplicate ids keep their first position and their last body.
        rows: dict[str, tuple[str, str, int, str]] = {}
        for position, task in enumerate(tasks):
            task_id = str(task.get("id") or "")
            if not task_id:
                continue
            if task_id in rows:
                logger.warning(f"Duplicate task id {task_id} in project {project_id}; keeping the last one")
                position = rows[task_id][2]
            rows[task_id] = (project_id, task_id, position, json.dumps(task))
        try:
            async with aiosqlite.connect(str(self.db_path)) as db:
                await db.execute(_SCHEMA)
                await db.execute("DELETE FROM tasks WHERE project_id = ?", (project_id,))
                await db.executemany(
                    "INSERT INTO tasks (project_id, id, position, data_json) VALUES (?, ?, ?, ?)",
                    list(rows.values()),
                )
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"Failed to write task store {self.db_path}: {exc}") from exc
