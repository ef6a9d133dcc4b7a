"""Durable per-project transcript cursors (byte offsets + pass statistics)."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from obsmem import config
from obsmem.models import CursorState, FileCursor, project_hash

logger = logging.getLogger("obsmem.cursor")

STATE_FILENAME = "observer-state.json"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CursorStore:
    """Flat-file store of one CursorState per project, keyed by path hash."""

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir

    def state_file(self, project_path: str) -> Path:
        return self.state_dir / project_hash(project_path) / STATE_FILENAME

    def load(self, project_path: str) -> CursorState:
        """Load the project's cursors, or a zeroed record if none is stored."""
        path = self.state_file(project_path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return CursorState()
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable cursor state %s (%s); starting from zero", path, exc)
            return CursorState()
        try:
            return CursorState.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Invalid cursor state %s (%s); starting from zero", path, exc)
            return CursorState()

    def save(self, project_path: str, state: CursorState) -> None:
        """Atomically overwrite the stored state, creating its directory if needed."""
        path = self.state_file(project_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".observer-state-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(state.model_dump(), handle, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    @staticmethod
    def get_offset(state: CursorState, filename: str) -> int:
        cursor = state.files.get(filename)
        return cursor.offset if cursor else 0

    @staticmethod
    def set_offset(state: CursorState, filename: str, new_offset: int, observation_delta: int = 0) -> FileCursor:
        """Advance a file's cursor. Offsets never move backwards."""
        cursor = state.files.setdefault(filename, FileCursor())
        if new_offset < cursor.offset:
            logger.warning(
                "Ignoring cursor rewind for %s (%d -> %d)", filename, cursor.offset, new_offset,
            )
        elif new_offset > cursor.offset:
            cursor.offset = new_offset
            cursor.skippedAppends = 0
        cursor.lastProcessed = _utc_now_iso()
        cursor.observationCount += max(0, observation_delta)
        return cursor

    @staticmethod
    def record_skipped_append(state: CursorState, filename: str) -> int:
        """Count an abandoned append for *filename*; reset when its offset advances."""
        cursor = state.files.setdefault(filename, FileCursor())
        cursor.skippedAppends += 1
        return cursor.skippedAppends

    @staticmethod
    def record_extraction_pass(state: CursorState) -> None:
        state.totalExtractionPasses += 1

    @staticmethod
    def record_compaction_pass(state: CursorState) -> None:
        state.totalCompactionPasses += 1
        state.lastCompaction = _utc_now_iso()


cursor_store = CursorStore(config.STATE_DIR)
