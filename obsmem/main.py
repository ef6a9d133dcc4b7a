"""obsmem daemon: FastAPI application entry point.

Run with ``uvicorn obsmem.main:app`` or ``python -m obsmem.main``.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from obsmem import config
from obsmem.cursor_store import cursor_store
from obsmem.engine.file_watcher import file_watcher
from obsmem.engine.scheduler import DebounceScheduler
from obsmem.engine.sync_engine import SyncEngine
from obsmem.observability import initialize as initialize_observability, shutdown as shutdown_observability
from obsmem.passes import PassRunner
from obsmem.project_manager import project_manager
from obsmem.routers.projects import projects_router
from obsmem.routers.sync import sync_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("obsmem")


def _log_unhandled(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Keep the daemon alive when a background task fails."""
    exc = context.get("exception")
    message = context.get("message", "Unhandled error in event loop")
    if exc is not None:
        logger.error("Uncaught exception: %s", message, exc_info=exc)
    else:
        logger.error("Uncaught error: %s", message)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("obsmem daemon starting up")
    initialize_observability(app)
    asyncio.get_running_loop().set_exception_handler(_log_unhandled)

    sync = SyncEngine(cursor_store, project_manager, PassRunner())
    scheduler = DebounceScheduler(sync.process_file, config.DEBOUNCE_SECONDS)
    app.state.sync_engine = sync
    app.state.scheduler = scheduler

    if not project_manager.list_projects():
        logger.info("No projects registered. Waiting for projects...")

    if config.WATCHER_ENABLED:
        await file_watcher.start(sync, scheduler, project_manager)

    yield

    logger.info("obsmem daemon shutting down")
    await file_watcher.stop()
    await scheduler.shutdown()
    shutdown_observability(app)


app = FastAPI(
    title="obsmem",
    description="Observational memory daemon for Claude Code sessions",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(projects_router)
app.include_router(sync_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "watcher": "running" if file_watcher.is_running else "stopped",
        "projects": len(project_manager.list_projects()),
    }


def run() -> None:
    """Serve the daemon on OBSMEM_HOST:OBSMEM_PORT."""
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
