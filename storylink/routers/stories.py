"""Story views, task↔story linking and the live task-update stream."""
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from storylink.db.file_watcher import QueueChannel
from storylink.errors import NotFoundError, StoreUnavailableError
from storylink.models import LinkStoryRequest, UnlinkStoryRequest

logger = logging.getLogger("storylink.views")

stories_router = APIRouter(prefix="/api/stories", tags=["stories"])


def _get_service(request: Request):
    service = getattr(request.app.state, "story_views", None)
    if not service:
        raise HTTPException(status_code=503, detail="Story view service not initialized")
    return service


def _get_watcher(request: Request):
    watcher = getattr(request.app.state, "change_watcher", None)
    if not watcher:
        raise HTTPException(status_code=503, detail="Change watcher not initialized")
    return watcher


async def _run(action: str, coro) -> Any:
    try:
        return await coro
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailableError as e:
        logger.error(f"Failed to {action}: {e}")
        raise HTTPException(status_code=500, detail={"error": f"Failed to {action}", "details": str(e)})


@stories_router.get("/{project_id}/hierarchy")
async def get_story_hierarchy(request: Request, project_id: str):
    """Epic → story → task tree with roll-up metrics."""
    service = _get_service(request)
    return await _run("load story hierarchy", service.get_hierarchy(project_id))


@stories_router.get("/{project_id}/validation")
async def get_story_validation(request: Request, project_id: str):
    """Link integrity report with health score and recommendations."""
    service = _get_service(request)
    return await _run("validate story links", service.get_validation_report(project_id))


@stories_router.get("/{project_id}/dashboard-stats")
async def get_dashboard_stats(request: Request, project_id: str):
    service = _get_service(request)
    return await _run("load dashboard stats", service.get_dashboard_stats(project_id))


@stories_router.get("/{project_id}/with-stories")
async def get_tasks_with_stories(request: Request, project_id: str):
    service = _get_service(request)
    return await _run("load tasks with stories", service.get_tasks_with_stories(project_id))


@stories_router.post("/{project_id}/link-story")
async def link_story(request: Request, project_id: str, body: LinkStoryRequest):
    service = _get_service(request)
    return await _run("link task to story", service.link_task(project_id, body.taskId, body.storyId))


@stories_router.post("/{project_id}/unlink-story")
async def unlink_story(request: Request, project_id: str, body: UnlinkStoryRequest):
    service = _get_service(request)
    return await _run("unlink task from story", service.unlink_task(project_id, body.taskId))


def _sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


@stories_router.get("/{project_id}/watch")
async def watch_tasks(request: Request, project_id: str):
    """Server-sent events: connected, tasks_updated, heartbeat and error."""
    service = _get_service(request)
    watcher = _get_watcher(request)
    if not service.project_manager.get_project(project_id):
        raise HTTPException(status_code=404, detail=f"Project not found: {project_id}")

    channel = QueueChannel()
    subscription = await watcher.subscribe(project_id, channel)

    async def event_stream():
        try:
            async for event in channel.stream():
                yield _sse(event)
        finally:
            channel.close()
            await watcher.unsubscribe(subscription)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
