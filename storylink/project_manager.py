"""Project registry persisted to a JSON file."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from storylink import config
from storylink.models import Project

logger = logging.getLogger("storylink")


class ProjectManager:
    """Maps project ids to their task store and planning-document root."""

    def __init__(self, storage_path: Path):
        self.storage_path = Path(storage_path)
        self._projects: dict[str, Project] = {}
        self._load()

    def _load(self):
        """Load projects from JSON storage."""
        if not self.storage_path.exists():
            return

        try:
            content = self.storage_path.read_text(encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to read projects file: {e}")
            return
        if not content.strip():
            return
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse projects file: {e}")
            return

        entries = data.get("projects", []) if isinstance(data, dict) else data
        for p_data in entries if isinstance(entries, list) else []:
            try:
                p = Project(**p_data)
            except (TypeError, ValidationError) as e:
                logger.error(f"Failed to load project: {e}")
                continue
            self._projects[p.id] = p

    def _save(self):
        """Save projects to JSON storage."""
        data = {"projects": [p.model_dump() for p in self._projects.values()]}
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self.storage_path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def list_projects(self) -> list[Project]:
        return list(self._projects.values())

    def get_project(self, project_id: str) -> Optional[Project]:
        return self._projects.get(project_id)

    def add_project(self, project: Project):
        self._projects[project.id] = project
        self._save()
        logger.info(f"Registered project {project.id} ({project.name})")

    def remove_project(self, project_id: str) -> bool:
        if self._projects.pop(project_id, None) is None:
            return False
        self._save()
        logger.info(f"Removed project {project_id}")
        return True


# Global instance initialized with the configured projects file
project_manager = ProjectManager(config.PROJECTS_FILE)
