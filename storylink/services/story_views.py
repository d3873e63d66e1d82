"""Cached story views and task↔story link maintenance."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from storylink.cache_manager import (
    VIEW_DASHBOARD,
    VIEW_HIERARCHY,
    VIEW_VALIDATION,
    VIEW_WITH_STORIES,
    CacheManager,
    make_cache_key,
)
from storylink.date_utils import local_now_iso, utc_now_iso
from storylink.errors import NotFoundError
from storylink.hierarchy import (
    build_dashboard_stats,
    build_hierarchy,
    build_story_context,
    empty_hierarchy_metrics,
    hierarchy_metrics,
)
from storylink.linking import build_validation_report, link_tasks_to_stories
from storylink.models import Epic, Project, Story, Task
from storylink.observability import record_cache_lookup, start_span
from storylink.parsers.stories import has_planning_roots, scan_planning_documents
from storylink.parsers.tasks import coerce_tasks

logger = logging.getLogger("storylink.views")


@dataclass
class ProjectSnapshot:
    raw_tasks: list[dict[str, Any]] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    epics: list[Epic] = field(default_factory=list)
    stories: list[Story] = field(default_factory=list)
    project_root: Optional[Path] = None
    message: Optional[str] = None


class StoryViewService:
    def __init__(self, project_manager, task_repository, document_repository, cache: CacheManager):
        self.project_manager = project_manager
        self.task_repository = task_repository
        self.document_repository = document_repository
        self.cache = cache

    def _require_project(self, project_id: str) -> Project:
        project = self.project_manager.get_project(project_id)
        if not project:
            raise NotFoundError("project", project_id)
        return project

    @staticmethod
    def _project_root(project: Project) -> Optional[Path]:
        if not project.projectRoot:
            return None
        return Path(project.projectRoot).expanduser()

    async def _load_snapshot(self, project: Project) -> ProjectSnapshot:
        document = await self.task_repository.read_all(project.id)
        raw_tasks = [t for t in document.get("tasks", []) if isinstance(t, dict)]
        snapshot = ProjectSnapshot(
            raw_tasks=raw_tasks,
            tasks=coerce_tasks(raw_tasks),
            project_root=self._project_root(project),
            message=document.get("message"),
        )
        if snapshot.message or snapshot.project_root is None:
            return snapshot

        snapshot.epics, snapshot.stories = await scan_planning_documents(
            self.document_repository,
            snapshot.project_root,
            project_id=project.id,
        )
        return snapshot

    async def _cached_view(self, view_type: str, project_id: str, build) -> dict[str, Any]:
        """Serve ``view_type`` from the cache or compute it with ``build(project, snapshot)``."""
        project = self._require_project(project_id)
        key = make_cache_key(view_type, project_id)
        cached = self.cache.get(key)
        if cached is not None:
            record_cache_lookup(view_type, "hit", project_id=project_id)
            logger.debug("Serving cached %s for project %s", view_type, project_id)
            return cached

        generation = self.cache.generation(project_id)
        started = time.perf_counter()
        with start_span(f"storylink.view.{view_type}", {"project_id": project_id}):
            snapshot = await self._load_snapshot(project)
            view = build(project, snapshot)
        view["timestamp"] = utc_now_iso()
        duration_ms = (time.perf_counter() - started) * 1000

        if snapshot.message:
            # Not cached, so the first write to the store shows up immediately.
            view["message"] = snapshot.message
            record_cache_lookup(view_type, "empty", project_id=project_id, duration_ms=duration_ms)
            return view

        if not self.cache.set_if_current(key, view, generation, project_id):
            logger.info(f"Not caching {view_type} for project {project_id}: tasks changed while it was built")
        record_cache_lookup(view_type, "miss", project_id=project_id, duration_ms=duration_ms)
        logger.info(f"Built {view_type} for project {project_id} in {duration_ms:.1f}ms")
        return view

    # ── Views ──────────────────────────────────────────────────────

    async def get_hierarchy(self, project_id: str) -> dict[str, Any]:
        def _build(project: Project, snapshot: ProjectSnapshot) -> dict[str, Any]:
            if snapshot.message:
                return {
                    "epics": [],
                    "stories": [],
                    "tasks": [],
                    "hierarchy": {},
                    "metrics": empty_hierarchy_metrics(),
                }
            hierarchy = build_hierarchy(snapshot.tasks, snapshot.stories, snapshot.epics)
            link_result = link_tasks_to_stories(snapshot.tasks, snapshot.stories)
            return {
                "epics": [node["epic"] for node in hierarchy.values()],
                "stories": [story.model_dump() for story in snapshot.stories],
                "tasks": [task.model_dump() for task in snapshot.tasks],
                "hierarchy": hierarchy,
                "metrics": hierarchy_metrics(snapshot.tasks, snapshot.stories, hierarchy, link_result),
            }

        return await self._cached_view(VIEW_HIERARCHY, project_id, _build)

    async def get_validation_report(self, project_id: str) -> dict[str, Any]:
        def _build(project: Project, snapshot: ProjectSnapshot) -> dict[str, Any]:
            if snapshot.message:
                return build_validation_report([], [])
            return build_validation_report(snapshot.tasks, snapshot.stories)

        return await self._cached_view(VIEW_VALIDATION, project_id, _build)

    async def get_dashboard_stats(self, project_id: str) -> dict[str, Any]:
        def _build(project: Project, snapshot: ProjectSnapshot) -> dict[str, Any]:
            if snapshot.message:
                return build_dashboard_stats([], [], [])
            return build_dashboard_stats(snapshot.tasks, snapshot.stories, snapshot.epics)

        return await self._cached_view(VIEW_DASHBOARD, project_id, _build)

    async def get_tasks_with_stories(self, project_id: str) -> dict[str, Any]:
        def _build(project: Project, snapshot: ProjectSnapshot) -> dict[str, Any]:
            if snapshot.message:
                enriched = build_story_context([], [], [])
            else:
                enriched = build_story_context(snapshot.tasks, snapshot.stories, snapshot.epics)
            return {
                "tasks": snapshot.raw_tasks,
                "enrichedData": enriched,
                "projectRoot": project.projectRoot or None,
            }

        return await self._cached_view(VIEW_WITH_STORIES, project_id, _build)

    # ── Link maintenance ───────────────────────────────────────────

    async def _update_task(self, project_id: str, task_id: str, story_id: Optional[str]) -> tuple[dict, Optional[str]]:
        project = self._require_project(project_id)
        document = await self.task_repository.read_all(project.id)
        raw_tasks = list(document.get("tasks", []))
        index = next(
            (i for i, t in enumerate(raw_tasks) if isinstance(t, dict) and str(t.get("id")) == task_id),
            None,
        )
        if index is None:
            raise NotFoundError("task", task_id)

        if story_id is not None:
            project_root = self._project_root(project)
            if project_root is not None and has_planning_roots(project_root):
                _, stories = await scan_planning_documents(
                    self.document_repository, project_root, project_id=project.id,
                )
                if not any(story.id == story_id for story in stories):
                    raise NotFoundError("story", story_id)

        task = dict(raw_tasks[index])
        previous = task.get("storyId") or None
        if story_id is None:
            task.pop("storyId", None)
        else:
            task["storyId"] = story_id
        task["updatedAt"] = local_now_iso()
        raw_tasks[index] = task

        await self.task_repository.write_all(project.id, raw_tasks)
        self.cache.clear(project_id=project.id)
        return task, previous

    async def link_task(self, project_id: str, task_id: str, story_id: str) -> dict[str, Any]:
        _, previous = await self._update_task(project_id, task_id, story_id)
        logger.info(f"Task {task_id} linked to story {story_id} (previously: {previous or 'none'})")
        return {
            "success": True,
            "message": "Task linked to story successfully",
            "taskId": task_id,
            "storyId": story_id,
            "previousStoryId": previous,
            "timestamp": utc_now_iso(),
        }

    async def unlink_task(self, project_id: str, task_id: str) -> dict[str, Any]:
        _, previous = await self._update_task(project_id, task_id, None)
        logger.info(f"Task {task_id} unlinked from story {previous or 'none'}")
        return {
            "success": True,
            "message": "Task unlinked from story successfully",
            "taskId": task_id,
            "previousStoryId": previous,
            "timestamp": utc_now_iso(),
        }

    # ── Cache maintenance ──────────────────────────────────────────

    def clear_cache(
        self,
        project_id: Optional[str] = None,
        view_type: Optional[str] = None,
        all: bool = False,
    ) -> dict[str, Any]:
        if all or (not project_id and not view_type):
            count = self.cache.clear_all()
            cleared = {"count": count, "types": ["all"], "projectId": None, "cacheType": None}
            message = f"Cleared all {count} cache entries"
        else:
            result = self.cache.clear(project_id=project_id, view_type=view_type)
            cleared = {
                "count": result["count"],
                "types": result["types"],
                "projectId": project_id,
                "cacheType": view_type,
            }
            scope = " ".join(
                part for part in (
                    f"project {project_id}" if project_id else "",
                    f"type {view_type}" if view_type else "",
                ) if part
            )
            message = f"Cleared {result['count']} cache entries for {scope}"
        return {
            "success": True,
            "message": message,
            "cleared": cleared,
            "timestamp": utc_now_iso(),
        }

    def cache_status(self) -> dict[str, Any]:
        return {**self.cache.status(), "timestamp": utc_now_iso()}
