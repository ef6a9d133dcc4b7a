"""Per-file debounce timers and per-project single-flight slots.

All state lives on the event loop thread: timers are ``loop.call_later``
handles keyed by absolute transcript path, in-flight markers are keys in
a set. Nothing here needs a lock because nothing here is touched from
another thread.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Optional

from obsmem.models import Project

logger = logging.getLogger("obsmem.scheduler")

CycleCallback = Callable[[Path, Project], Awaitable[object]]


class SingleFlight:
    """At most one processing cycle per project at a time.

    A busy slot drops the trigger instead of queueing it; the next change
    notification for that file arms a fresh debounce timer.
    """

    def __init__(self):
        self._active: set[str] = set()

    def is_active(self, key: str) -> bool:
        return key in self._active

    def active(self) -> list[str]:
        return sorted(self._active)

    @contextmanager
    def claim(self, key: str) -> Iterator[bool]:
        if key in self._active:
            yield False
            return
        self._active.add(key)
        try:
            yield True
        finally:
            self._active.discard(key)


class DebounceScheduler:
    """Coalesces bursts of change notifications into one trigger per quiet period."""

    def __init__(self, callback: CycleCallback, delay_seconds: float):
        self._callback = callback
        self.delay_seconds = delay_seconds
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._owners: dict[str, str] = {}
        self._tasks: set[asyncio.Task] = set()

    def notify(self, path: Path, project: Project) -> None:
        """Arm (or re-arm) the quiet-period timer for *path*."""
        key = str(path.resolve())
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.delay_seconds, self._fire, key, project)
        self._owners[key] = project.path
        logger.info("Debounced: %s (%ss timer)", path.name, self.delay_seconds)

    def pending(self) -> list[str]:
        return sorted(self._timers)

    def is_pending(self, path: Path) -> bool:
        return str(path.resolve()) in self._timers

    def _fire(self, key: str, project: Project) -> None:
        self._timers.pop(key, None)
        self._owners.pop(key, None)
        path = Path(key)

        if not Path(project.path).exists():
            logger.warning("Project path gone: %s, skipping %s", project.path, path.name)
            return

        task = asyncio.get_running_loop().create_task(self._run(path, project))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, path: Path, project: Project) -> None:
        try:
            await self._callback(path, project)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error processing %s", path.name)

    def cancel(self, path: Path) -> bool:
        return self._cancel_key(str(path.resolve()))

    def _cancel_key(self, key: str) -> bool:
        self._owners.pop(key, None)
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._owners.clear()

    def cancel_project(self, project_path: str) -> int:
        """Cancel every armed timer belonging to *project_path*."""
        keys = [key for key, owner in self._owners.items() if owner == project_path]
        for key in keys:
            self._cancel_key(key)
        return len(keys)

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for cycles already spawned by fired timers to finish."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

    async def shutdown(self) -> None:
        self.cancel_all()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
