"""Error types shared by the parsers, repositories, views and watcher."""
from __future__ import annotations


class NotFoundError(LookupError):
    """Raised when a project, task or story id cannot be resolved."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class MalformedDocumentError(ValueError):
    """Raised when a planning document's front matter is not a valid YAML mapping."""


class StoreUnavailableError(OSError):
    """Raised when the task store exists but cannot be read or decoded."""


class WatchFailureError(RuntimeError):
    """Raised when an observer cannot be attached to a task store."""
