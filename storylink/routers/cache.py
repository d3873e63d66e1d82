"""View cache maintenance API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from storylink.models import ClearCacheRequest

logger = logging.getLogger("storylink.cache")

cache_router = APIRouter(prefix="/api/cache", tags=["cache"])


def _get_service(request: Request):
    service = getattr(request.app.state, "story_views", None)
    if not service:
        raise HTTPException(status_code=503, detail="Story view service not initialized")
    return service


@cache_router.post("/clear")
async def clear_cache(request: Request, body: ClearCacheRequest | None = None):
    """Clear cached views by project and/or view type, or everything."""
    service = _get_service(request)
    body = body or ClearCacheRequest()
    result = service.clear_cache(
        project_id=body.projectId,
        view_type=body.cacheType,
        all=body.all,
    )
    logger.info(result["message"])
    return result


@cache_router.get("/status")
async def get_cache_status(request: Request):
    """Cache occupancy plus watcher state."""
    service = _get_service(request)
    status = service.cache_status()
    watcher = getattr(request.app.state, "change_watcher", None)
    status["watcher"] = watcher.status() if watcher else {"running": False, "subscribers": 0, "projects": {}}
    return status
