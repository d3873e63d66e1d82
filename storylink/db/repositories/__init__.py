"""Repository package for task store and document access."""

from .documents import FilesystemDocumentRepository
from .tasks import JsonTaskRepository, SqliteTaskRepository

__all__ = [
    "FilesystemDocumentRepository",
    "JsonTaskRepository",
    "SqliteTaskRepository",
]
