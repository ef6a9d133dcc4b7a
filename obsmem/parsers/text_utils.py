"""Text helpers shared by the transcript renderer."""
from __future__ import annotations

import json
import re
from typing import Any

from obsmem import config

_PERMISSION_PATTERN = re.compile(r"permission")
_USER_REJECTED_PATTERN = re.compile(r"doesn.t want to proceed")
_TIMEOUT_PATTERN = re.compile(r"timeout")


def truncate_text(text: str, max_chars: int) -> str:
    """Keep the leading 60% and trailing 30% of *max_chars*, marking what was dropped."""
    if len(text) <= max_chars:
        return text
    head_len = int(max_chars * 0.6)
    tail_len = int(max_chars * 0.3)
    omitted = len(text) - head_len - tail_len
    tail = text[len(text) - tail_len:] if tail_len > 0 else ""
    return f"{text[:head_len]}\n... [truncated {omitted} of {len(text)} chars] ...\n{tail}"


def _compact_json(value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _path_of(tool_input: dict[str, Any]) -> str:
    return str(tool_input.get("file_path") or tool_input.get("path") or "")


def summarize_tool_input(tool_name: str, tool_input: dict[str, Any]) -> str:
    """Render a short, tool-aware description of a tool call's input."""
    name = (tool_name or "").lower()
    limit = config.MAX_TOOL_INPUT_CHARS

    if name in ("read", "readfile"):
        return _path_of(tool_input) or _compact_json(tool_input)
    if name in ("write", "writefile"):
        return f"{_path_of(tool_input) or '?'} (write)"
    if name in ("edit", "multiedit"):
        return f"{_path_of(tool_input) or '?'} (edit)"
    if name == "bash":
        return truncate_text(str(tool_input.get("command") or ""), limit)
    if name in ("glob", "grep"):
        return f"pattern: {tool_input.get('pattern') or '?'}"
    if name == "task":
        description = tool_input.get("description")
        if description:
            return str(description)
        return str(tool_input.get("prompt") or "")[:100]
    if name == "webfetch":
        return str(tool_input.get("url") or "?")
    if name == "websearch":
        return f"query: {tool_input.get('query') or '?'}"

    if not tool_input:
        return ""
    first = next(iter(tool_input.values()))
    if isinstance(first, str):
        return truncate_text(first, limit)
    return truncate_text(_compact_json(tool_input), limit)


def classify_error(error_texts: list[str]) -> str:
    """Map tool error output onto a short brief, by fixed keyword priority."""
    combined = " ".join(error_texts).lower()
    if _PERMISSION_PATTERN.search(combined):
        return "permission denied"
    if _USER_REJECTED_PATTERN.search(combined):
        return "user rejected"
    if _TIMEOUT_PATTERN.search(combined):
        return "timeout"

    first_error = error_texts[0] if error_texts else ""
    first_line = next((line for line in first_error.split("\n") if line.strip()), first_error)
    return truncate_text(first_line, config.MAX_ERROR_BRIEF_CHARS)
