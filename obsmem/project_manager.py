"""Registry of projects watched by the daemon (projects.json)."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from obsmem import config
from obsmem.models import Project

logger = logging.getLogger("obsmem")


def claude_project_dir_name(project_path: str) -> str:
    """Claude Code stores a project's transcripts under its path with '/' replaced by '-'."""
    return project_path.replace("/", "-")


class ProjectManager:
    """Loads and persists registered projects."""

    def __init__(self, storage_path: Path, claude_projects_dir: Path = config.CLAUDE_PROJECTS_DIR):
        self.storage_path = storage_path
        self.claude_projects_dir = claude_projects_dir
        self._projects: dict[str, Project] = {}
        self._load()

    def _load(self):
        """Load projects from JSON storage."""
        self._projects = {}
        if not self.storage_path.exists():
            return

        try:
            content = self.storage_path.read_text(encoding="utf-8")
            if not content.strip():
                return
            data = json.loads(content)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load projects file: {e}")
            return

        for p_data in data.get("projects", []):
            try:
                p = Project(**p_data)
                self._projects[p.id] = p
            except (TypeError, ValidationError) as e:
                logger.error(f"Failed to load project: {e}")

    def _save(self):
        """Save projects to JSON storage."""
        data = {
            "projects": [p.model_dump(exclude={"id"}) for p in self._projects.values()]
        }
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self.storage_path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def reload(self) -> list[Project]:
        """Re-read projects.json and return projects that were not known before."""
        known = set(self._projects)
        self._load()
        return [p for pid, p in self._projects.items() if pid not in known]

    def list_projects(self) -> list[Project]:
        return list(self._projects.values())

    def get_project(self, project_id: str) -> Optional[Project]:
        return self._projects.get(project_id)

    def find_by_path(self, project_path: str) -> Optional[Project]:
        resolved = str(Path(project_path).expanduser().resolve())
        for project in self._projects.values():
            if project.path == resolved:
                return project
        return None

    def register(self, project_path: str, skip_catchup: bool = False) -> Project:
        resolved = str(Path(project_path).expanduser().resolve())
        existing = self.find_by_path(resolved)
        if existing:
            logger.info(f"Project already registered: {resolved}")
            return existing

        project = Project(
            path=resolved,
            claudeProjectDir=claude_project_dir_name(resolved),
            compactionThreshold=config.DEFAULT_COMPACTION_THRESHOLD,
            skipCatchup=skip_catchup,
            registeredAt=datetime.now(timezone.utc).isoformat(),
        )
        self._projects[project.id] = project
        self._save()
        logger.info(f"Registered project: {resolved}")
        return project

    def remove(self, project_path: str) -> bool:
        project = self.find_by_path(project_path)
        if not project:
            return False
        del self._projects[project.id]
        self._save()
        logger.info(f"Removed project: {project.path}")
        return True

    def set_compaction_threshold(self, project_id: str, threshold: int) -> Project:
        project = self._projects.get(project_id)
        if not project:
            raise ValueError(f"Project {project_id} not found")
        if threshold < config.MIN_COMPACTION_THRESHOLD:
            raise ValueError(f"Threshold must be >= {config.MIN_COMPACTION_THRESHOLD}")
        project.compactionThreshold = threshold
        self._save()
        return project

    def claude_dir(self, project: Project) -> Path:
        return self.claude_projects_dir / project.claudeProjectDir


project_manager = ProjectManager(config.PROJECTS_FILE)
