"""Filesystem access to planning documents (epic and story markdown files)."""
from __future__ import annotations

import asyncio
import re
from pathlib import Path


class FilesystemDocumentRepository:
    """Lists and reads markdown documents under a search root."""

    @staticmethod
    def _scan(root: Path, regex: re.Pattern) -> list[str]:
        if not root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in root.iterdir()
            if entry.is_file() and not entry.name.startswith(".") and regex.match(entry.name)
        )

    async def list_documents(self, root: Path, pattern: str) -> list[str]:
        """Return sorted filenames directly under ``root`` matching ``pattern``."""
        regex = re.compile(pattern, re.IGNORECASE)
        return await asyncio.to_thread(self._scan, root, regex)

    async def read_document(self, path: Path) -> str:
        return await asyncio.to_thread(path.read_text, encoding="utf-8")
