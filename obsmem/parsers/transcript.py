"""Render transcript deltas into compact text for the extraction pass.

Entries are walked in order. At each position the renderer first tries to
recognise a retry chain: consecutive (tool call, all-error result) pairs
for the same tool. A lone failure is rendered as the call plus a single
``[Tool error: ...]`` marker; two or more failures collapse into one
``[Retry chain: ...]`` summary. Everything else renders per entry, and
failed tool results are never rendered outside a chain.

Parallel tool calls from one model turn are split into separate JSONL
entries that share ``message.id`` (the entry's correlationId). Sequential
retries carry different ids, so a shared id always ends a chain.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from obsmem import config
from obsmem.models import (
    ChainAttempt,
    LogEntry,
    RetryChain,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
)
from obsmem.parsers.delta import read_delta
from obsmem.parsers.text_utils import classify_error, summarize_tool_input, truncate_text


# ── Chain detection helpers ─────────────────────────────────────────

def _tool_calls(entry: Optional[LogEntry]) -> Optional[list[ToolCallBlock]]:
    if entry is None or entry.role != "assistant":
        return None
    calls = entry.tool_calls
    return calls or None


def _error_results(entry: Optional[LogEntry]) -> Optional[list[str]]:
    """Return the error texts of an all-error tool result entry, else None.

    A partially successful result never starts or extends a chain.
    """
    if entry is None or entry.role != "user":
        return None
    if not isinstance(entry.content, list):
        return None
    results = entry.tool_results
    if not results:
        return None
    if not all(result.isError for result in results):
        return None
    return [result.text for result in results]


def _is_text_only(entry: LogEntry) -> bool:
    if entry.role != "assistant":
        return False
    if isinstance(entry.content, str):
        return bool(entry.content)
    return bool(entry.content) and all(isinstance(block, TextBlock) for block in entry.content)


def _make_attempt(calls: list[ToolCallBlock], errors: list[str]) -> ChainAttempt:
    summaries = [(call.name, summarize_tool_input(call.name, call.input)) for call in calls]
    return ChainAttempt(
        toolName=calls[0].name,
        inputSummary=", ".join(summary for _, summary in summaries),
        errorBrief=classify_error(errors),
        callSummaries=summaries,
    )


def detect_chain(entries: list[LogEntry], start: int) -> Optional[RetryChain]:
    """Recognise a retry chain starting at *start*, or return None."""
    first_calls = _tool_calls(entries[start])
    if not first_calls:
        return None

    first_errors = _error_results(entries[start + 1] if start + 1 < len(entries) else None)
    if first_errors is None:
        return None

    chain_tool = first_calls[0].name
    first_correlation = entries[start].correlationId
    attempts = [_make_attempt(first_calls, first_errors)]

    i = start + 2
    while i < len(entries):
        entry = entries[i]
        # Interstitial commentary between retries ("I need permission to ...")
        if _is_text_only(entry):
            i += 1
            continue

        calls = _tool_calls(entry)
        if not calls:
            break
        if first_correlation and entry.correlationId == first_correlation:
            break
        if calls[0].name != chain_tool:
            break

        errors = _error_results(entries[i + 1] if i + 1 < len(entries) else None)
        if errors is None:
            # Successful retry: left for normal rendering.
            break
        attempts.append(_make_attempt(calls, errors))
        i += 2

    return RetryChain(attempts=attempts, endIndex=i)


# ── Rendering ───────────────────────────────────────────────────────

def render_chain(chain: RetryChain) -> list[str]:
    attempts = chain.attempts
    if len(attempts) == 1:
        attempt = attempts[0]
        lines = [f"[Tool: {name}] {summary}" for name, summary in attempt.callSummaries]
        lines.append(f"[Tool error: {attempt.errorBrief}]")
        return lines

    count = len(attempts)
    inputs = [attempt.inputSummary for attempt in attempts]
    briefs = [attempt.errorBrief for attempt in attempts]

    summary = f"[Retry chain: {chain.tool_name} x{count} failed]"
    if all(value == inputs[0] for value in inputs):
        # Blind retry: same input, same failure.
        summary += f"\n  Input: {inputs[0]}"
        summary += f"\n  Error: {briefs[0]}"
    else:
        summary += f"\n  First: {inputs[0]}"
        summary += f"\n  Last: {inputs[-1]}"
        if all(brief == briefs[0] for brief in briefs):
            summary += f"\n  Error: {briefs[0]}"
        else:
            summary += f"\n  Last error: {briefs[-1]}"
    return [summary]


def render_entry(entry: LogEntry, max_result_chars: int = config.MAX_TOOL_RESULT_CHARS) -> list[str]:
    lines: list[str] = []

    if entry.role == "user":
        if isinstance(entry.content, str):
            if not entry.isMeta:
                lines.append(f"[User]: {entry.content}")
            return lines
        for block in entry.content:
            if isinstance(block, TextBlock):
                if block.text and not entry.isMeta:
                    lines.append(f"[User]: {block.text}")
            elif isinstance(block, ToolResultBlock):
                if block.isError:
                    continue
                if block.text:
                    lines.append(f"[Tool Result]: {truncate_text(block.text, max_result_chars)}")

    elif entry.role == "assistant":
        if isinstance(entry.content, str):
            lines.append(f"[Assistant]: {entry.content}")
            return lines
        for block in entry.content:
            if isinstance(block, TextBlock):
                if block.text and not block.thinking:
                    lines.append(f"[Assistant]: {block.text}")
            elif isinstance(block, ToolCallBlock):
                lines.append(f"[Tool: {block.name}] {summarize_tool_input(block.name, block.input)}")

    return lines


def render_entries(entries: list[LogEntry], max_result_chars: int = config.MAX_TOOL_RESULT_CHARS) -> list[str]:
    parts: list[str] = []
    i = 0
    while i < len(entries):
        chain = detect_chain(entries, i)
        if chain is not None:
            parts.extend(render_chain(chain))
            i = chain.endIndex
            continue
        parts.extend(render_entry(entries[i], max_result_chars))
        i += 1
    return parts


def parse_conversation_delta(path: Path, from_offset: int = 0) -> tuple[str, int]:
    """Render everything appended to *path* since *from_offset*.

    Returns (text, new_offset) where new_offset is the file size at read time.
    """
    segment = read_delta(path, from_offset)
    if segment.is_empty:
        return "", segment.fromOffset
    return "\n".join(render_entries(segment.entries)), segment.newOffset
