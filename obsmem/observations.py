"""The shared OBSERVATIONS.md artifact and its advisory lock.

Two writers touch the artifact: the append path (one dated section per
extraction pass) and the compaction rewrite. The compactor holds a lock
marker file for the whole read/rewrite; the appender polls for the marker
and gives up after a bounded number of retries. The marker is presence-only
and single-host: its content names the holder for diagnostics and is never
interpreted.
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Optional

from obsmem import config

logger = logging.getLogger("obsmem.observations")

ARTIFACT_HEADER = "# Observations\n"

Compactor = Callable[[str], Awaitable[Optional[str]]]


def observations_path(project_path: str) -> Path:
    return Path(project_path) / config.OBSERVATIONS_FILE


class ArtifactLock:
    """Advisory presence lock guarding a project's observations file."""

    def __init__(self, project_path: str):
        self.path = Path(project_path) / config.LOCK_FILE

    def held(self) -> bool:
        return self.path.exists()

    def holder(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    def acquire(self, role: str) -> bool:
        """Create the marker. Returns False if it already exists."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"pid:{os.getpid()} role:{role}")
        return True

    def release(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    @contextmanager
    def hold(self, role: str) -> Iterator[bool]:
        """Hold the marker for the block; yields False if someone else holds it."""
        if not self.acquire(role):
            yield False
            return
        try:
            yield True
        finally:
            self.release()

    async def wait_until_free(
        self,
        retry_delay: float = config.LOCK_RETRY_DELAY_SECONDS,
        max_retries: int = config.LOCK_MAX_RETRIES,
    ) -> bool:
        retries = 0
        while self.held() and retries < max_retries:
            logger.info(
                "Lock file present (%s), waiting... (retry %d/%d)",
                self.holder() or "unknown holder", retries + 1, max_retries,
            )
            await asyncio.sleep(retry_delay)
            retries += 1
        return not self.held()


def ensure_artifact(project_path: str) -> Path:
    path = observations_path(project_path)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(ARTIFACT_HEADER, encoding="utf-8")
    return path


def format_section(observations: str, session_id: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M")
    return f"\n## {stamp} — Session {session_id}\n\n{observations}\n"


async def append_observations(
    project_path: str,
    observations: str,
    session_id: str,
    *,
    retry_delay: float = config.LOCK_RETRY_DELAY_SECONDS,
    max_retries: int = config.LOCK_MAX_RETRIES,
) -> bool:
    """Append a dated section to the artifact, waiting out a compaction.

    Returns False (and logs) when the lock is still held after the retry budget.
    """
    lock = ArtifactLock(project_path)
    if not await lock.wait_until_free(retry_delay, max_retries):
        logger.error("Lock file still present after %d retries. Skipping append.", max_retries)
        return False

    path = ensure_artifact(project_path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(format_section(observations, session_id))
    return True


def artifact_size(project_path: str) -> int:
    try:
        return observations_path(project_path).stat().st_size
    except OSError:
        return 0


def estimated_tokens(project_path: str) -> int:
    return artifact_size(project_path) // config.CHARS_PER_TOKEN


def exceeds_threshold(project_path: str, threshold: int) -> bool:
    return artifact_size(project_path) / config.CHARS_PER_TOKEN > threshold


async def compact_observations(project_path: str, compactor: Compactor) -> bool:
    """Rewrite the artifact with the compaction pass's output, under the lock.

    The original content is kept whenever the pass fails or returns fewer
    than MIN_COMPACTION_CHARS characters.
    """
    lock = ArtifactLock(project_path)
    path = observations_path(project_path)
    tmp_path = path.with_name(f"{path.name}.tmp")

    with lock.hold("compaction") as acquired:
        if not acquired:
            logger.warning("Compaction skipped for %s: lock held by %s", project_path, lock.holder() or "unknown")
            return False

        try:
            current = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False
        if not current.strip():
            logger.info("%s is empty, skipping compaction.", path.name)
            return False

        compacted = await compactor(current)
        if not compacted or len(compacted) < config.MIN_COMPACTION_CHARS:
            logger.error("Compaction output too short, keeping original.")
            return False

        try:
            tmp_path.write_text(compacted + "\n", encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            logger.error("Compaction rewrite failed: %s", exc)
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass
            return False

        logger.info("Compacted %s (%d -> %d chars)", path.name, len(current), len(compacted))
        return True
