"""External extraction and compaction passes (``claude -p``).

Both passes are opaque collaborators: text in, text out. Any failure
(missing CLI, nonzero exit, timeout, empty output) is reported as "no
result" and never raised into the processing cycle.

Each pass is a long blocking subprocess call. It runs in a worker thread
so timers and the HTTP surface keep ticking, but one process-wide lock
still serializes passes: at most one external pass is in flight at a time,
whatever the project.
"""
from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from pathlib import Path
from typing import Optional

from obsmem import config
from obsmem.observability import record_pass

logger = logging.getLogger("obsmem.passes")

OBSERVER_PROMPT = "observer.md"
REFLECTOR_PROMPT = "reflector.md"
COMPACTION_OUTPUT_TAG = "observation_file_contents"


def extract_tag_content(text: str, tag_name: str) -> str:
    """Return the text between <tag> and the last </tag>, or the raw text if tags are missing."""
    open_tag = f"<{tag_name}>"
    close_tag = f"</{tag_name}>"
    open_idx = text.find(open_tag)
    close_idx = text.rfind(close_tag)
    if open_idx != -1 and close_idx != -1 and close_idx > open_idx:
        return text[open_idx + len(open_tag):close_idx].strip()
    return text


def wrap_for_compaction(content: str) -> str:
    return (
        f"<observations>\n{content}\n</observations>\n\n"
        "Consolidate the observations above per your instructions. "
        f"Wrap your output in <{COMPACTION_OUTPUT_TAG}> tags."
    )


class PassRunner:
    """Runs the observer/reflector prompts through the Claude CLI."""

    def __init__(
        self,
        command: str = config.CLAUDE_CLI_COMMAND,
        timeout_seconds: int = config.PASS_TIMEOUT_SECONDS,
        prompts_dir: Path = config.PROMPTS_DIR,
    ):
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.prompts_dir = prompts_dir
        self._lock = asyncio.Lock()

    def _load_prompt(self, name: str) -> str:
        return (self.prompts_dir / name).read_text(encoding="utf-8")

    def _run_cli(self, system_prompt: str, input_text: str) -> Optional[str]:
        cmd = [self.command, "-p", "--system-prompt", system_prompt, "--output-format", "text"]
        try:
            proc = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError:
            logger.error("Claude CLI not found: '%s'", self.command)
            return None
        except subprocess.TimeoutExpired:
            logger.error("Claude CLI timed out after %ss", self.timeout_seconds)
            return None

        if proc.returncode != 0:
            err = (proc.stderr or "").strip()
            logger.error("Claude CLI failed (exit %s): %s", proc.returncode, err or "no stderr output")
            return None

        output = (proc.stdout or "").strip()
        if not output:
            logger.error("Claude CLI returned empty output.")
            return None
        return output

    async def _run(self, kind: str, prompt_name: str, input_text: str, project_id: str) -> Optional[str]:
        try:
            system_prompt = self._load_prompt(prompt_name)
        except OSError as exc:
            logger.error("Cannot read %s prompt: %s", kind, exc)
            record_pass(kind, "error", project_id=project_id)
            return None

        async with self._lock:
            t0 = time.monotonic()
            output = await asyncio.to_thread(self._run_cli, system_prompt, input_text)
            duration = time.monotonic() - t0

        logger.info("%s pass finished in %.1fs (%s)", kind, duration, "ok" if output else "no result")
        record_pass(kind, "ok" if output else "error", project_id=project_id)
        return output

    async def extract(self, conversation_text: str, project_id: str = "") -> Optional[str]:
        """Turn a rendered delta into observations, or None if there is nothing to record."""
        if not conversation_text.strip():
            return None
        output = await self._run("extraction", OBSERVER_PROMPT, conversation_text, project_id)
        if output is None or output == config.NO_OBSERVATIONS_SENTINEL:
            return None
        return output

    async def compact(self, content: str, project_id: str = "") -> Optional[str]:
        """Return replacement artifact content, or None on failure."""
        output = await self._run("compaction", REFLECTOR_PROMPT, wrap_for_compaction(content), project_id)
        if output is None:
            return None
        return extract_tag_content(output, COMPACTION_OUTPUT_TAG)
