"""Normalize raw Claude Code JSONL records into LogEntry models."""
from __future__ import annotations

from typing import Any

from obsmem.models import (
    LogEntry,
    OtherBlock,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
)

_ROLE_BY_TYPE = {
    "user": "user",
    "human": "user",
    "assistant": "assistant",
    "system": "system",
}


def _tool_result_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    chunks.append(text)
        return "\n".join(chunks)
    return ""


def _normalize_block(block: Any) -> Any:
    if not isinstance(block, dict):
        return OtherBlock(type=type(block).__name__)

    block_type = block.get("type")
    if block_type == "text":
        return TextBlock(text=str(block.get("text") or ""))
    if block_type == "thinking":
        return TextBlock(text=str(block.get("thinking") or ""), thinking=True)
    if block_type == "tool_use":
        tool_input = block.get("input")
        return ToolCallBlock(
            id=block.get("id"),
            name=str(block.get("name") or "unknown"),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    if block_type == "tool_result":
        return ToolResultBlock(
            toolCallId=block.get("tool_use_id"),
            isError=bool(block.get("is_error")),
            text=_tool_result_to_text(block.get("content")),
        )
    return OtherBlock(type=str(block_type or ""))


def normalize_entry(raw: dict[str, Any]) -> LogEntry:
    """Classify one decoded JSONL record by role and content shape.

    Records that carry no message (summaries, progress ticks, snapshots)
    come back with role ``other`` and render nothing downstream.
    """
    role = _ROLE_BY_TYPE.get(str(raw.get("type") or ""), "other")
    message = raw.get("message")
    if not isinstance(message, dict):
        message = raw

    raw_content = message.get("content")
    if isinstance(raw_content, list):
        content: Any = [_normalize_block(block) for block in raw_content]
    elif isinstance(raw_content, str):
        content = raw_content
    else:
        content = []

    correlation_id = message.get("id") if message is not raw else None
    return LogEntry(
        role=role,
        content=content,
        correlationId=str(correlation_id) if correlation_id else None,
        isMeta=bool(raw.get("isMeta")),
    )
