"""Pydantic models matching the task-viewer JSON payloads."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional

# ── Task-related models ────────────────────────────────────────────

class Task(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    status: str = "pending"  # pending | in_progress | completed
    storyId: Optional[str] = None
    agent: Optional[str] = None
    priority: str = "medium"
    createdAt: str = ""
    updatedAt: str = ""
    completedAt: Optional[str] = None


# ── Planning models ────────────────────────────────────────────────

class Story(BaseModel):
    id: str  # "<epic>.<n>", e.g. "001.003"
    epicId: Optional[str] = None
    title: str = ""
    description: str = ""
    status: str = "Unknown"
    verified: bool = False
    verificationStatus: str = "pending"
    acceptanceCriteria: list[str] = Field(default_factory=list)
    filePath: str = ""


class Epic(BaseModel):
    id: str
    title: str = ""
    description: str = ""
    status: str = "Unknown"
    priority: str = "medium"
    filePath: str = ""


# ── Project model ──────────────────────────────────────────────────

class Project(BaseModel):
    id: str
    name: str
    path: str                   # task store file (tasks.json)
    projectRoot: str = ""       # root holding docs/epics or .bmad-core/epics
    description: str = ""


# ── Request bodies ─────────────────────────────────────────────────

class LinkStoryRequest(BaseModel):
    taskId: str = Field(..., min_length=1)
    storyId: str = Field(..., min_length=1)


class UnlinkStoryRequest(BaseModel):
    taskId: str = Field(..., min_length=1)


class ClearCacheRequest(BaseModel):
    projectId: Optional[str] = None
    cacheType: Optional[str] = None
    all: bool = False
