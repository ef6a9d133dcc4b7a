"""File watcher service using watchfiles.

Watches each registered project's Claude transcript directory and feeds
change notifications into the debounce scheduler. Also watches the
projects registry so newly registered projects are picked up without a
restart.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from watchfiles import Change, awatch

from obsmem.engine.scheduler import DebounceScheduler
from obsmem.engine.sync_engine import SyncEngine
from obsmem.models import Project
from obsmem.project_manager import ProjectManager

logger = logging.getLogger("obsmem.watcher")


def _is_transcript(change: Change, path: str) -> bool:
    return path.endswith(".jsonl")


class FileWatcher:
    """Background watchers, one task per project plus one for the registry.

    Uses `watchfiles` (Rust-accelerated) for efficient watching.
    """

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}
        self._config_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._engine: Optional[SyncEngine] = None
        self._scheduler: Optional[DebounceScheduler] = None
        self._projects: Optional[ProjectManager] = None
        self._running = False

    async def start(
        self,
        engine: SyncEngine,
        scheduler: DebounceScheduler,
        projects: ProjectManager,
    ) -> None:
        """Catch up and start watching every registered project."""
        if self._running:
            logger.warning("File watcher already running")
            return

        self._running = True
        self._engine = engine
        self._scheduler = scheduler
        self._projects = projects
        self._stop_event = asyncio.Event()

        registered = projects.list_projects()
        logger.info("Starting watch on %d project(s)", len(registered))
        for project in registered:
            self.watch_project(project)

        self._config_task = asyncio.create_task(self._config_loop(projects.storage_path))

    async def stop(self) -> None:
        """Stop all watchers."""
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        tasks = list(self._tasks.values())
        if self._config_task:
            tasks.append(self._config_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._config_task = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def watched_projects(self) -> list[str]:
        return sorted(self._tasks)

    def _require_projects(self) -> ProjectManager:
        if self._projects is None:
            raise RuntimeError("File watcher not started")
        return self._projects

    def watch_project(self, project: Project) -> bool:
        """Start catch-up + live watching for *project*; False if it cannot be watched yet."""
        if project.path in self._tasks:
            return False
        if not Path(project.path).exists():
            logger.warning("Project path not found: %s, skipping", project.path)
            return False

        projects = self._require_projects()
        claude_dir = projects.claude_dir(project)
        if not claude_dir.is_dir():
            logger.warning(
                "Claude project dir not found: %s, skipping (will retry on registry change)", claude_dir,
            )
            return False

        task = asyncio.create_task(self._project_loop(project, claude_dir))
        self._tasks[project.path] = task
        task.add_done_callback(lambda t, key=project.path: self._forget(key, t))
        return True

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def unwatch_project(self, project_path: str) -> bool:
        """Cancel the watch task of *project_path*; False if it was not watched."""
        task = self._tasks.pop(project_path, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def _project_loop(self, project: Project, claude_dir: Path) -> None:
        if self._engine is None or self._scheduler is None:
            raise RuntimeError("File watcher not started")

        if project.skipCatchup:
            logger.info("[catchup] %s: skipped", project.path)
        else:
            try:
                await self._engine.catchup_project(project)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[catchup] %s failed", project.path)

        logger.info("Watching %s", claude_dir)
        try:
            async for changes in awatch(claude_dir, watch_filter=_is_transcript, stop_event=self._stop_event):
                for path in self._classify_changes(changes):
                    self._scheduler.notify(path, project)
        except asyncio.CancelledError:
            logger.info("Watcher for %s cancelled", project.path)
        except Exception as e:
            logger.error(f"File watcher error for {project.path}: {e}")

    def _classify_changes(self, changes: set[tuple[Change, str]]) -> list[Path]:
        """Reduce raw watchfiles changes to transcripts that were added or modified."""
        result: list[Path] = []
        for change_type, path_str in changes:
            path = Path(path_str)
            if path.suffix != ".jsonl":
                continue
            if change_type in (Change.modified, Change.added):
                result.append(path)
        return sorted(set(result))

    async def _config_loop(self, projects_file: Path) -> None:
        projects_file.parent.mkdir(parents=True, exist_ok=True)

        def _is_registry(change: Change, path: str) -> bool:
            return Path(path).name == projects_file.name

        try:
            async for _changes in awatch(projects_file.parent, watch_filter=_is_registry, stop_event=self._stop_event):
                self.on_registry_changed()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Registry watcher error: {e}")

    def on_registry_changed(self) -> list[Project]:
        """Reload projects.json, stop watching removed projects and start new ones."""
        projects = self._require_projects()
        logger.info("projects.json changed, checking for new projects...")
        projects.reload()
        registered = projects.list_projects()
        known = {project.path for project in registered}
        for path in [path for path in self._tasks if path not in known]:
            logger.info("Project removed from registry: %s", path)
            self.unwatch_project(path)

        started: list[Project] = []
        for project in registered:
            if project.path in self._tasks:
                continue
            if self.watch_project(project):
                logger.info("New project detected: %s", project.path)
                started.append(project)
        return started


# Singleton instance
file_watcher = FileWatcher()
