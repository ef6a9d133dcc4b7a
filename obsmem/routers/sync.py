"""Sync status + manual trigger API."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from obsmem.engine.file_watcher import file_watcher
from obsmem.models import Project
from obsmem.project_manager import project_manager

logger = logging.getLogger("obsmem.sync")

sync_router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncPathsRequest(BaseModel):
    paths: list[str] = Field(..., min_length=1)


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


def _is_under(path: Path, root: Path) -> bool:
    try:
        path.resolve(strict=False).relative_to(root.resolve(strict=False))
        return True
    except ValueError:
        return False


def _project_for_transcript(path: Path) -> Optional[Project]:
    for project in project_manager.list_projects():
        if _is_under(path, project_manager.claude_dir(project)):
            return project
    return None


@sync_router.get("/status")
def sync_status(request: Request):
    """Pending debounce timers, in-flight projects and recent operations."""
    engine = _get_sync_engine(request)
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "watcher": "running" if file_watcher.is_running else "stopped",
        "watchedProjects": file_watcher.watched_projects(),
        "pendingTimers": scheduler.pending() if scheduler else [],
        **engine.get_observability_snapshot(),
    }


@sync_router.get("/operations")
def list_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    engine = _get_sync_engine(request)
    return engine.list_operations(limit)


@sync_router.post("/paths")
async def sync_paths(req: SyncPathsRequest, request: Request):
    """Process specific transcripts immediately, bypassing the debounce timer."""
    engine = _get_sync_engine(request)
    scheduler = getattr(request.app.state, "scheduler", None)

    resolved: list[tuple[Path, Project]] = []
    for raw_path in req.paths:
        path = Path(raw_path).expanduser()
        if path.suffix != ".jsonl" or not path.is_file():
            raise HTTPException(status_code=400, detail=f"Not a transcript file: {raw_path}")
        project = _project_for_transcript(path)
        if project is None:
            raise HTTPException(status_code=400, detail=f"Not a transcript of a registered project: {raw_path}")
        resolved.append((path, project))

    results: dict[str, str] = {}
    for path, project in resolved:
        if scheduler:
            scheduler.cancel(path)
        results[str(path)] = await engine.process_file(path, project, trigger="api")
    logger.info("Processed %d path(s) on request", len(results))
    return {"results": results}
