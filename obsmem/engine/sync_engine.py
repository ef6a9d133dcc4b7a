"""Incremental transcript → observations engine.

One processing cycle reads a transcript from its stored offset to EOF,
renders the delta, runs the extraction pass, appends the result to the
project's observations file and advances the cursor. The cursor is read
before the delta and advanced only once the cycle has decided what to do
with it, so consecutive cycles never reprocess or skip bytes.
"""
from __future__ import annotations

import copy
import functools
import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Optional, Protocol

from obsmem import config
from obsmem.cursor_store import CursorStore
from obsmem.engine.scheduler import SingleFlight
from obsmem.models import CursorState, Project, ProjectStatus
from obsmem.observability import record_cycle, record_lock_wait, record_skipped_lines, start_span
from obsmem.observations import (
    ArtifactLock,
    append_observations,
    artifact_size,
    compact_observations,
    estimated_tokens,
    exceeds_threshold,
)
from obsmem.parsers.delta import read_delta
from obsmem.parsers.transcript import render_entries
from obsmem.project_manager import ProjectManager

logger = logging.getLogger("obsmem.sync")

# Cycle outcomes
BUSY = "busy"
MISSING = "missing"
TOO_SMALL = "too_small"
UP_TO_DATE = "up_to_date"
TRIVIAL = "trivial"
NO_OBSERVATIONS = "no_observations"
APPEND_SKIPPED = "append_skipped"
APPENDED = "appended"
ERROR = "error"


class ExternalPasses(Protocol):
    def extract(self, conversation_text: str, project_id: str = "") -> Awaitable[Optional[str]]: ...

    def compact(self, content: str, project_id: str = "") -> Awaitable[Optional[str]]: ...


def _session_id(path: Path) -> str:
    return path.stem[:8]


class SyncEngine:
    """Runs processing cycles, startup catch-up and compaction for registered projects."""

    def __init__(
        self,
        store: CursorStore,
        projects: ProjectManager,
        passes: ExternalPasses,
        *,
        single_flight: Optional[SingleFlight] = None,
        min_file_size: int = config.MIN_FILE_SIZE_BYTES,
        min_delta_chars: int = config.MIN_DELTA_CHARS,
        max_result_chars: int = config.MAX_TOOL_RESULT_CHARS,
        max_catchup_files: int = config.MAX_CATCHUP_FILES,
        lock_retry_delay: float = config.LOCK_RETRY_DELAY_SECONDS,
        lock_max_retries: int = config.LOCK_MAX_RETRIES,
        advance_on_skipped_append: bool = config.ADVANCE_CURSOR_ON_SKIPPED_APPEND,
        max_skipped_appends: int = config.MAX_SKIPPED_APPENDS,
    ):
        self.store = store
        self.projects = projects
        self.passes = passes
        self.single_flight = single_flight or SingleFlight()
        self.min_file_size = min_file_size
        self.min_delta_chars = min_delta_chars
        self.max_result_chars = max_result_chars
        self.max_catchup_files = max_catchup_files
        self.lock_retry_delay = lock_retry_delay
        self.lock_max_retries = lock_max_retries
        self.advance_on_skipped_append = advance_on_skipped_append
        self.max_skipped_appends = max(1, max_skipped_appends)

        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 50

    # ── Operation history ───────────────────────────────────────────

    def _start_operation(self, kind: str, project: Project, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        self._operations[op_id] = {
            "id": op_id,
            "kind": kind,
            "projectId": project.id,
            "projectPath": project.path,
            "trigger": trigger,
            "status": "running",
            "outcome": "",
            "startedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "metadata": metadata,
        }
        self._operation_order.insert(0, op_id)
        self._active_operation_ids.add(op_id)
        if len(self._operation_order) > self._max_operation_history:
            stale_ids = self._operation_order[self._max_operation_history:]
            self._operation_order = self._operation_order[: self._max_operation_history]
            for stale_id in stale_ids:
                self._operations.pop(stale_id, None)
                self._active_operation_ids.discard(stale_id)
        return op_id

    def _finish_operation(self, op_id: str, outcome: str, duration_ms: int, error: str = "") -> None:
        operation = self._operations.get(op_id)
        self._active_operation_ids.discard(op_id)
        if not operation:
            return
        operation["status"] = "failed" if error else "completed"
        operation["outcome"] = outcome
        operation["finishedAt"] = datetime.now(timezone.utc).isoformat()
        operation["durationMs"] = duration_ms
        if error:
            operation["error"] = error

    def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        op_ids = self._operation_order[: max(1, limit)]
        return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    def get_observability_snapshot(self) -> dict[str, Any]:
        active = [
            copy.deepcopy(self._operations[op_id])
            for op_id in self._operation_order
            if op_id in self._active_operation_ids and op_id in self._operations
        ]
        return {
            "activeOperationCount": len(active),
            "activeOperations": active,
            "recentOperations": self.list_operations(5),
            "trackedOperationCount": len(self._operations),
            "inFlightProjects": self.single_flight.active(),
        }

    # ── Processing cycle ────────────────────────────────────────────

    async def process_file(self, path: Path, project: Project, trigger: str = "watcher") -> str:
        """Run one cycle for *path*. Dropped (not queued) if the project is busy."""
        with self.single_flight.claim(project.path) as acquired:
            if not acquired:
                logger.info("Already processing %s, skipping %s", project.path, path.name)
                return BUSY

            op_id = self._start_operation("process_file", project, trigger, {"file": path.name})
            t0 = time.monotonic()
            outcome = ERROR
            error = ""
            try:
                with start_span("obsmem.process_file", {"project": project.id, "file": path.name}):
                    outcome = await self._process_claimed(path, project)
                return outcome
            except Exception as exc:
                error = str(exc)
                raise
            finally:
                duration_ms = int((time.monotonic() - t0) * 1000)
                self._finish_operation(op_id, outcome, duration_ms, error)
                record_cycle(outcome, duration_ms, project_id=project.id)

    async def _process_claimed(self, path: Path, project: Project) -> str:
        filename = path.name
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return MISSING

        if size < self.min_file_size:
            return TOO_SMALL

        state = self.store.load(project.path)
        offset = self.store.get_offset(state, filename)
        if size <= offset:
            return UP_TO_DATE

        logger.info("Processing %s (offset %d -> %d)", filename, offset, size)
        try:
            segment = read_delta(path, offset)
        except FileNotFoundError:
            return MISSING
        record_skipped_lines(segment.skippedLines, project_id=project.id)

        text = "\n".join(render_entries(segment.entries, self.max_result_chars))
        if len(text.strip()) < self.min_delta_chars:
            self.store.set_offset(state, filename, segment.newOffset, 0)
            self.store.save(project.path, state)
            return TRIVIAL

        lock = ArtifactLock(project.path)
        if lock.held():
            freed = await lock.wait_until_free(self.lock_retry_delay, self.lock_max_retries)
            record_lock_wait("freed" if freed else "abandoned", project_id=project.id)
            if not freed:
                logger.error("Observations lock held by %s, not extracting %s", lock.holder() or "unknown", filename)
                return self._skip_append(state, project, filename, segment.newOffset)

        observations = await self.passes.extract(text, project_id=project.id)
        if not observations:
            logger.info("No observations for %s", filename)
            self.store.set_offset(state, filename, segment.newOffset, 0)
            self.store.save(project.path, state)
            return NO_OBSERVATIONS

        if not Path(project.path).is_dir():
            logger.warning("Project path gone: %s, dropping observations for %s", project.path, filename)
            return MISSING

        appended = await append_observations(
            project.path,
            observations,
            _session_id(path),
            retry_delay=self.lock_retry_delay,
            max_retries=self.lock_max_retries,
        )
        if not appended:
            record_lock_wait("abandoned", project_id=project.id)
            return self._skip_append(state, project, filename, segment.newOffset)

        self.store.record_extraction_pass(state)
        logger.info("Appended observations for %s", filename)

        if exceeds_threshold(project.path, project.compactionThreshold):
            logger.info("Compaction threshold exceeded for %s, compacting...", project.path)
            if await self._compact(project):
                self.store.record_compaction_pass(state)

        self.store.set_offset(state, filename, segment.newOffset, 1)
        self.store.save(project.path, state)
        return APPENDED

    def _skip_append(self, state: CursorState, project: Project, filename: str, new_offset: int) -> str:
        skipped = self.store.record_skipped_append(state, filename)
        if self.advance_on_skipped_append or skipped >= self.max_skipped_appends:
            logger.warning("Dropping delta of %s after %d skipped append(s)", filename, skipped)
            self.store.set_offset(state, filename, new_offset, 0)
        else:
            logger.warning(
                "Cursor for %s kept at %d; delta will be retried next cycle (%d/%d)",
                filename, self.store.get_offset(state, filename), skipped, self.max_skipped_appends,
            )
        self.store.save(project.path, state)
        return APPEND_SKIPPED

    async def _compact(self, project: Project) -> bool:
        compactor = functools.partial(self.passes.compact, project_id=project.id)
        return await compact_observations(project.path, compactor)

    async def compact_project(self, project: Project, trigger: str = "api") -> Optional[bool]:
        """Compact a project's observations now. Returns None if a cycle is running."""
        with self.single_flight.claim(project.path) as acquired:
            if not acquired:
                return None
            op_id = self._start_operation("compaction", project, trigger, {})
            t0 = time.monotonic()
            compacted = False
            try:
                compacted = await self._compact(project)
                if compacted:
                    state = self.store.load(project.path)
                    self.store.record_compaction_pass(state)
                    self.store.save(project.path, state)
                return compacted
            finally:
                duration_ms = int((time.monotonic() - t0) * 1000)
                self._finish_operation(op_id, "compacted" if compacted else "kept", duration_ms)

    # ── Startup catch-up ────────────────────────────────────────────

    def _unread_transcripts(self, project: Project) -> list[Path]:
        claude_dir = self.projects.claude_dir(project)
        state = self.store.load(project.path)
        candidates: list[tuple[float, Path]] = []
        for path in claude_dir.glob("*.jsonl"):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            if stat.st_size < self.min_file_size:
                continue
            if stat.st_size <= self.store.get_offset(state, path.name):
                continue
            candidates.append((stat.st_mtime, path))
        candidates.sort(key=lambda item: item[0], reverse=True)
        return [path for _, path in candidates[: self.max_catchup_files]]

    async def catchup_project(self, project: Project) -> int:
        """Process the most recently modified unread transcripts, up to the catch-up cap."""
        try:
            files = self._unread_transcripts(project)
        except OSError as exc:
            logger.error("[catchup] Failed to read %s: %s", self.projects.claude_dir(project), exc)
            return 0

        if not files:
            logger.info("[catchup] %s: no unprocessed files", project.path)
            return 0

        logger.info("[catchup] %s: processing %d file(s)", project.path, len(files))
        for path in files:
            try:
                await self.process_file(path, project, trigger="catchup")
            except Exception:
                logger.exception("[catchup] %s failed, continuing", path.name)
        return len(files)

    # ── Sealing / status ────────────────────────────────────────────

    async def seal_project(self, project: Project) -> Optional[int]:
        """Mark every transcript as fully read. Returns None if a cycle is running."""
        with self.single_flight.claim(project.path) as acquired:
            if not acquired:
                return None
            claude_dir = self.projects.claude_dir(project)
            if not claude_dir.is_dir():
                return 0
            state = self.store.load(project.path)
            sealed = 0
            for path in claude_dir.glob("*.jsonl"):
                try:
                    size = path.stat().st_size
                except FileNotFoundError:
                    continue
                if size > self.store.get_offset(state, path.name):
                    self.store.set_offset(state, path.name, size, 0)
                    sealed += 1
            if sealed:
                self.store.save(project.path, state)
            return sealed

    async def seed_project(self, project: Project, skip_catchup: bool = False) -> Optional[int]:
        """Start cursors of a newly registered project's older transcripts at EOF.

        Only the newest ``max_catchup_files`` transcripts stay unread for
        catch-up, none with *skip_catchup*. A project that already tracks
        files is left alone. Returns None if a cycle is running.
        """
        with self.single_flight.claim(project.path) as acquired:
            if not acquired:
                return None
            claude_dir = self.projects.claude_dir(project)
            state = self.store.load(project.path)
            if state.files or not claude_dir.is_dir():
                return 0

            transcripts: list[tuple[float, Path, int]] = []
            for path in claude_dir.glob("*.jsonl"):
                try:
                    stat = path.stat()
                except FileNotFoundError:
                    continue
                transcripts.append((stat.st_mtime, path, stat.st_size))
            transcripts.sort(key=lambda item: item[0], reverse=True)
            keep = 0 if skip_catchup else self.max_catchup_files

            for _mtime, path, size in transcripts[keep:]:
                self.store.set_offset(state, path.name, size, 0)
            seeded = max(0, len(transcripts) - keep)
            if seeded:
                self.store.save(project.path, state)
                logger.info("Seeded %d transcript(s) of %s as read", seeded, project.path)
            return seeded

    def project_status(self, project: Project) -> ProjectStatus:
        state = self.store.load(project.path)
        size = artifact_size(project.path)
        return ProjectStatus(
            project=project,
            filesTracked=len(state.files),
            totalExtractionPasses=state.totalExtractionPasses,
            totalCompactionPasses=state.totalCompactionPasses,
            lastCompaction=state.lastCompaction,
            observationsBytes=size,
            estimatedTokens=estimated_tokens(project.path),
            lockHeld=ArtifactLock(project.path).held(),
            processing=self.single_flight.is_active(project.path),
        )
