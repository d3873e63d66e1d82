"""Repository factory to abstract the task store backend (tasks.json vs SQLite)."""
from __future__ import annotations

from pathlib import Path

from storylink import config
from storylink.db.repositories.documents import FilesystemDocumentRepository
from storylink.db.repositories.tasks import JsonTaskRepository, SqliteTaskRepository


def get_task_repository(project_manager, backend: str | None = None, sqlite_path: Path | None = None):
    backend = (backend or config.TASK_STORE_BACKEND).strip().lower()
    if backend == "sqlite":
        return SqliteTaskRepository(sqlite_path or config.SQLITE_PATH, project_manager)
    if backend != "json":
        raise ValueError(f"Unknown task store backend: {backend}")
    return JsonTaskRepository(project_manager)


def get_document_repository():
    return FilesystemDocumentRepository()
