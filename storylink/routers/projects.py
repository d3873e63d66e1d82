"""API router for project registration."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from storylink.models import Project
from storylink.project_manager import project_manager

logger = logging.getLogger("storylink.projects")

projects_router = APIRouter(prefix="/api/projects", tags=["projects"])


@projects_router.get("", response_model=list[Project])
def list_projects():
    """List all registered projects."""
    return project_manager.list_projects()


@projects_router.post("", response_model=Project)
def add_project(project: Project):
    """Register a project, replacing any project with the same id."""
    try:
        project_manager.add_project(project)
    except OSError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return project


@projects_router.get("/{project_id}", response_model=Project)
def get_project(project_id: str):
    project = project_manager.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail=f"Project not found: {project_id}")
    return project


@projects_router.delete("/{project_id}")
async def remove_project(request: Request, project_id: str):
    """Unregister a project, dropping its cached views and live subscribers."""
    try:
        removed = project_manager.remove_project(project_id)
    except OSError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if not removed:
        raise HTTPException(status_code=404, detail=f"Project not found: {project_id}")

    service = getattr(request.app.state, "story_views", None)
    if service is not None:
        service.clear_cache(project_id=project_id)
    watcher = getattr(request.app.state, "change_watcher", None)
    if watcher is not None:
        await watcher.release_project(project_id, f"Project removed: {project_id}")
    logger.info(f"Project {project_id} removed")
    return {"success": True, "projectId": project_id}
