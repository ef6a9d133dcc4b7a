"""API router for registered projects."""
from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from obsmem import config
from obsmem.engine.file_watcher import file_watcher
from obsmem.models import Project, ProjectStatus
from obsmem.observations import ensure_artifact
from obsmem.project_manager import project_manager

projects_router = APIRouter(prefix="/api/projects", tags=["projects"])


class ProjectCreate(BaseModel):
    path: str = Field(..., min_length=1)
    skipCatchup: bool = False


class ThresholdUpdate(BaseModel):
    threshold: int = Field(..., ge=config.MIN_COMPACTION_THRESHOLD)


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


def _get_project(project_id: str) -> Project:
    project = project_manager.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail=f"Project {project_id} not found")
    return project


@projects_router.get("", response_model=list[ProjectStatus])
def list_projects(request: Request):
    """List registered projects with cursor and artifact statistics."""
    engine = _get_sync_engine(request)
    return [engine.project_status(p) for p in project_manager.list_projects()]


@projects_router.post("", response_model=Project)
async def add_project(body: ProjectCreate, request: Request):
    """Register a project directory and start watching its transcripts."""
    engine = _get_sync_engine(request)
    project_dir = Path(body.path).expanduser()
    if not project_dir.is_dir():
        raise HTTPException(status_code=400, detail=f"Not a directory: {body.path}")

    project = project_manager.register(str(project_dir), skip_catchup=body.skipCatchup)
    ensure_artifact(project.path)
    await engine.seed_project(project, skip_catchup=body.skipCatchup)
    if file_watcher.is_running:
        file_watcher.watch_project(project)
    return project


@projects_router.delete("/{project_id}")
def remove_project(project_id: str, request: Request):
    """Stop watching a project and drop it from the registry.

    The project's observations file is left in place.
    """
    project = _get_project(project_id)
    file_watcher.unwatch_project(project.path)
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler:
        scheduler.cancel_project(project.path)
    project_manager.remove(project.path)
    return {"projectId": project_id, "removed": True}


@projects_router.get("/{project_id}", response_model=ProjectStatus)
def get_project(project_id: str, request: Request):
    engine = _get_sync_engine(request)
    return engine.project_status(_get_project(project_id))


@projects_router.put("/{project_id}/threshold", response_model=Project)
def update_threshold(project_id: str, body: ThresholdUpdate):
    """Change the token estimate above which observations are compacted."""
    try:
        return project_manager.set_compaction_threshold(project_id, body.threshold)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@projects_router.post("/{project_id}/seal")
async def seal_project(project_id: str, request: Request):
    """Mark every transcript of the project as already read."""
    engine = _get_sync_engine(request)
    sealed = await engine.seal_project(_get_project(project_id))
    if sealed is None:
        raise HTTPException(status_code=409, detail="Project is being processed, retry later")
    return {"projectId": project_id, "sealed": sealed}


@projects_router.post("/{project_id}/compact")
async def compact_project(project_id: str, request: Request):
    """Run a compaction pass over the project's observations now."""
    engine = _get_sync_engine(request)
    compacted = await engine.compact_project(_get_project(project_id))
    if compacted is None:
        raise HTTPException(status_code=409, detail="Project is being processed, retry later")
    return {"projectId": project_id, "compacted": compacted}
