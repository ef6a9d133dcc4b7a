#!/usr/bin/env python3
"""Mark every transcript of a registered project as already read.

Use this when a project is registered but historical conversations should
not be caught up on; only content written afterwards will be observed.

Usage:
  python -m obsmem.scripts.seal_project
  python -m obsmem.scripts.seal_project /path/to/project
"""
from __future__ import annotations

import argparse
import asyncio
import os

from obsmem.cursor_store import cursor_store
from obsmem.engine.sync_engine import SyncEngine
from obsmem.passes import PassRunner
from obsmem.project_manager import project_manager


async def _run(project_path: str) -> int:
    project = project_manager.find_by_path(project_path)
    if not project:
        print(f"Project not registered: {project_path}")
        return 1

    claude_dir = project_manager.claude_dir(project)
    if not claude_dir.is_dir():
        print(f"Claude project dir not found: {claude_dir}")
        return 1

    engine = SyncEngine(cursor_store, project_manager, PassRunner())
    sealed = await engine.seal_project(project)
    if sealed:
        print(f"Sealed {sealed} unprocessed conversation(s) for: {project.path}")
    else:
        print("All conversations already tracked. Nothing to seal.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("path", nargs="?", default=os.getcwd(), help="Project root (default: cwd)")
    args = parser.parse_args()
    return asyncio.run(_run(args.path))


if __name__ == "__main__":
    raise SystemExit(main())
