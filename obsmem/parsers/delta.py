"""Read the unread suffix of a transcript file from a stored byte offset."""
from __future__ import annotations

import json
import logging
from pathlib import Path

from obsmem.models import DeltaSegment, LogEntry
from obsmem.parsers.entries import normalize_entry

logger = logging.getLogger("obsmem.parser")


def decode_lines(raw: bytes) -> tuple[list[LogEntry], int]:
    """Decode newline-delimited JSON, returning (entries, skipped line count).

    A line that is not valid JSON, or is not an object, is skipped: transcripts
    may end in a partial write left by a crash mid-append.
    """
    entries: list[LogEntry] = []
    skipped = 0
    for line in raw.decode("utf-8", errors="replace").split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            skipped += 1
            continue
        if not isinstance(payload, dict):
            skipped += 1
            continue
        entries.append(normalize_entry(payload))
    return entries, skipped


def read_delta(path: Path, from_offset: int = 0) -> DeltaSegment:
    """Return the entries appended to *path* since *from_offset*.

    If the file is not larger than the offset (nothing new, or it was
    truncated/rotated) the segment is empty and the offset is unchanged.
    """
    from_offset = max(0, from_offset)
    with path.open("rb") as handle:
        size = path.stat().st_size
        if size <= from_offset:
            return DeltaSegment(fromOffset=from_offset, newOffset=from_offset)
        handle.seek(from_offset)
        raw = handle.read(size - from_offset)

    entries, skipped = decode_lines(raw)
    if skipped:
        logger.debug("Skipped %d undecodable line(s) in %s", skipped, path.name)
    return DeltaSegment(
        fromOffset=from_offset,
        newOffset=from_offset + len(raw),
        entries=entries,
        skippedLines=skipped,
    )
