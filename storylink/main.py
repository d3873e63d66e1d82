"""storylink FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from storylink import config
from storylink.cache_manager import CacheManager
from storylink.db.factory import get_document_repository, get_task_repository
from storylink.db.file_watcher import ChangeWatcher
from storylink.observability import initialize as initialize_observability, shutdown as shutdown_observability
from storylink.project_manager import project_manager
from storylink.routers.cache import cache_router
from storylink.routers.projects import projects_router
from storylink.routers.stories import stories_router
from storylink.services.story_views import StoryViewService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("storylink")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("storylink backend starting up")
    initialize_observability(app)

    task_repository = get_task_repository(project_manager)
    cache = CacheManager()
    app.state.story_views = StoryViewService(
        project_manager,
        task_repository,
        get_document_repository(),
        cache,
    )
    app.state.change_watcher = ChangeWatcher(task_repository, cache)
    logger.info(
        f"Serving {len(project_manager.list_projects())} projects "
        f"from {config.TASK_STORE_BACKEND} task store"
    )

    yield

    logger.info("storylink backend shutting down")
    await app.state.change_watcher.shutdown()
    shutdown_observability(app)


app = FastAPI(
    title="storylink API",
    description="Task/story traceability views with live task updates",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(stories_router)
app.include_router(cache_router)
app.include_router(projects_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    watcher = getattr(app.state, "change_watcher", None)
    return {
        "status": "ok",
        "projects": len(project_manager.list_projects()),
        "watcher": "running" if watcher and watcher.is_running else "stopped",
    }
