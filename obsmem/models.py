"""Pydantic models for transcript entries, cursors and registered projects."""
from __future__ import annotations

import hashlib
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field

from obsmem import config


def project_hash(project_path: str) -> str:
    """Stable short key for a project root, independent of path length or characters."""
    return hashlib.md5(project_path.encode("utf-8")).hexdigest()[:12]


# ── Transcript entries ──────────────────────────────────────────────

class TextBlock(BaseModel):
    kind: Literal["text"] = "text"
    text: str = ""
    thinking: bool = False


class ToolCallBlock(BaseModel):
    kind: Literal["tool_call"] = "tool_call"
    id: Optional[str] = None
    name: str = "unknown"
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    kind: Literal["tool_result"] = "tool_result"
    toolCallId: Optional[str] = None
    isError: bool = False
    text: str = ""


class OtherBlock(BaseModel):
    kind: Literal["other"] = "other"
    type: str = ""


ContentBlock = Annotated[
    Union[TextBlock, ToolCallBlock, ToolResultBlock, OtherBlock],
    Field(discriminator="kind"),
]


class LogEntry(BaseModel):
    role: Literal["user", "assistant", "system", "other"] = "other"
    content: Union[str, list[ContentBlock]] = ""
    correlationId: Optional[str] = None
    isMeta: bool = False

    @property
    def blocks(self) -> list[Any]:
        return self.content if isinstance(self.content, list) else []

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.blocks if isinstance(b, ToolCallBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]


class DeltaSegment(BaseModel):
    fromOffset: int = 0
    newOffset: int = 0
    entries: list[LogEntry] = Field(default_factory=list)
    skippedLines: int = 0

    @property
    def is_empty(self) -> bool:
        return self.newOffset <= self.fromOffset


# ── Retry chains ────────────────────────────────────────────────────

class ChainAttempt(BaseModel):
    toolName: str
    inputSummary: str = ""
    errorBrief: str = ""
    callSummaries: list[tuple[str, str]] = Field(default_factory=list)  # (tool name, summary)


class RetryChain(BaseModel):
    attempts: list[ChainAttempt] = Field(default_factory=list)
    endIndex: int = 0

    @property
    def tool_name(self) -> str:
        return self.attempts[0].toolName if self.attempts else "unknown"


# ── Cursor state ────────────────────────────────────────────────────

class FileCursor(BaseModel):
    offset: int = 0
    lastProcessed: Optional[str] = None
    observationCount: int = 0
    skippedAppends: int = 0


class CursorState(BaseModel):
    files: dict[str, FileCursor] = Field(default_factory=dict)
    lastCompaction: Optional[str] = None
    totalExtractionPasses: int = 0
    totalCompactionPasses: int = 0


# ── Projects ────────────────────────────────────────────────────────

class Project(BaseModel):
    path: str
    claudeProjectDir: str = ""
    compactionThreshold: int = config.DEFAULT_COMPACTION_THRESHOLD
    skipCatchup: bool = False
    registeredAt: str = ""

    @computed_field  # type: ignore[misc]
    @property
    def id(self) -> str:
        return project_hash(self.path)


class ProjectStatus(BaseModel):
    project: Project
    filesTracked: int = 0
    totalExtractionPasses: int = 0
    totalCompactionPasses: int = 0
    lastCompaction: Optional[str] = None
    observationsBytes: int = 0
    estimatedTokens: int = 0
    lockHeld: bool = False
    processing: bool = False
