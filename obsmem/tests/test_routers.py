import tempfile
import types
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi import HTTPException
from pydantic import ValidationError

from obsmem.models import Project, ProjectStatus
from obsmem.observations import observations_path
from obsmem.project_manager import ProjectManager
from obsmem.routers import projects as projects_router
from obsmem.routers import sync as sync_router


class _FakeSyncEngine:
    def __init__(self, busy: bool = False) -> None:
        self.busy = busy
        self.process_calls: list[dict] = []
        self.seeded: list[tuple[str, bool]] = []

    def project_status(self, project: Project) -> ProjectStatus:
        return ProjectStatus(project=project, filesTracked=3, observationsBytes=400, estimatedTokens=100)

    async def process_file(self, path, project, trigger="watcher"):
        self.process_calls.append({"path": path, "project_id": project.id, "trigger": trigger})
        return "appended"

    async def seed_project(self, project, skip_catchup=False):
        self.seeded.append((project.path, skip_catchup))
        return 0

    async def seal_project(self, project):
        return None if self.busy else 2

    async def compact_project(self, project, trigger="api"):
        return None if self.busy else True

    def list_operations(self, limit=20):
        return [{"id": "OP-1", "status": "completed"}][:limit]

    def get_observability_snapshot(self):
        return {"activeOperationCount": 0, "activeOperations": [], "recentOperations": [], "inFlightProjects": []}


class _FakeScheduler:
    def __init__(self) -> None:
        self.cancelled: list[Path] = []
        self.cancelled_projects: list[str] = []

    def pending(self):
        return ["/tmp/claude/-work-widget/a.jsonl"]

    def cancel(self, path):
        self.cancelled.append(path)
        return True

    def cancel_project(self, project_path):
        self.cancelled_projects.append(project_path)
        return 1


class _FakeWatcher:
    def __init__(self, running: bool = True) -> None:
        self.is_running = running
        self.watched: list[str] = []
        self.unwatched: list[str] = []

    def watch_project(self, project):
        self.watched.append(project.path)
        return True

    def unwatch_project(self, project_path):
        self.unwatched.append(project_path)
        return True


def _request(engine=None, scheduler=None):
    return types.SimpleNamespace(
        app=types.SimpleNamespace(
            state=types.SimpleNamespace(sync_engine=engine, scheduler=scheduler)
        )
    )


class _RouterTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.root = root
        project_dir = root / "work" / "widget"
        project_dir.mkdir(parents=True)
        self.manager = ProjectManager(root / "projects.json", claude_projects_dir=root / "claude")
        self.project = self.manager.register(str(project_dir))
        self.claude_dir = self.manager.claude_dir(self.project)

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()


class ProjectsRouterTests(_RouterTestCase):
    async def test_list_projects_returns_status_per_project(self) -> None:
        with patch.object(projects_router, "project_manager", self.manager):
            payload = projects_router.list_projects(_request(_FakeSyncEngine()))

        self.assertEqual(len(payload), 1)
        self.assertEqual(payload[0].project.id, self.project.id)
        self.assertEqual(payload[0].estimatedTokens, 100)

    async def test_missing_engine_is_service_unavailable(self) -> None:
        with patch.object(projects_router, "project_manager", self.manager):
            with self.assertRaises(HTTPException) as ctx:
                projects_router.list_projects(_request(None))

        self.assertEqual(ctx.exception.status_code, 503)

    async def test_unknown_project_is_not_found(self) -> None:
        with patch.object(projects_router, "project_manager", self.manager):
            with self.assertRaises(HTTPException) as ctx:
                projects_router.get_project("deadbeef0000", _request(_FakeSyncEngine()))

        self.assertEqual(ctx.exception.status_code, 404)

    async def test_threshold_update_persists(self) -> None:
        with patch.object(projects_router, "project_manager", self.manager):
            updated = projects_router.update_threshold(
                self.project.id, projects_router.ThresholdUpdate(threshold=5000),
            )

        self.assertEqual(updated.compactionThreshold, 5000)
        reloaded = ProjectManager(self.manager.storage_path, self.manager.claude_projects_dir)
        self.assertEqual(reloaded.get_project(self.project.id).compactionThreshold, 5000)

    async def test_threshold_below_minimum_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            projects_router.ThresholdUpdate(threshold=10)

    async def test_seal_and_compact_report_results(self) -> None:
        request = _request(_FakeSyncEngine())
        with patch.object(projects_router, "project_manager", self.manager):
            sealed = await projects_router.seal_project(self.project.id, request)
            compacted = await projects_router.compact_project(self.project.id, request)

        self.assertEqual(sealed, {"projectId": self.project.id, "sealed": 2})
        self.assertEqual(compacted, {"projectId": self.project.id, "compacted": True})

    async def test_seal_and_compact_conflict_while_processing(self) -> None:
        request = _request(_FakeSyncEngine(busy=True))
        with patch.object(projects_router, "project_manager", self.manager):
            with self.assertRaises(HTTPException) as seal_ctx:
                await projects_router.seal_project(self.project.id, request)
            with self.assertRaises(HTTPException) as compact_ctx:
                await projects_router.compact_project(self.project.id, request)

        self.assertEqual(seal_ctx.exception.status_code, 409)
        self.assertEqual(compact_ctx.exception.status_code, 409)

    async def test_add_project_registers_seeds_and_watches(self) -> None:
        engine = _FakeSyncEngine()
        watcher = _FakeWatcher()
        new_dir = self.root / "work" / "gadget"
        new_dir.mkdir(parents=True)

        with patch.object(projects_router, "project_manager", self.manager), \
                patch.object(projects_router, "file_watcher", watcher):
            project = await projects_router.add_project(
                projects_router.ProjectCreate(path=str(new_dir), skipCatchup=True), _request(engine),
            )

        self.assertEqual(project.path, str(new_dir.resolve()))
        self.assertTrue(project.skipCatchup)
        self.assertIsNotNone(self.manager.get_project(project.id))
        self.assertEqual(
            observations_path(project.path).read_text(encoding="utf-8"), "# Observations\n",
        )
        self.assertEqual(engine.seeded, [(project.path, True)])
        self.assertEqual(watcher.watched, [project.path])

    async def test_add_project_does_not_watch_when_watcher_is_stopped(self) -> None:
        watcher = _FakeWatcher(running=False)
        new_dir = self.root / "work" / "gadget"
        new_dir.mkdir(parents=True)

        with patch.object(projects_router, "project_manager", self.manager), \
                patch.object(projects_router, "file_watcher", watcher):
            await projects_router.add_project(
                projects_router.ProjectCreate(path=str(new_dir)), _request(_FakeSyncEngine()),
            )

        self.assertEqual(watcher.watched, [])

    async def test_add_project_rejects_missing_directory(self) -> None:
        watcher = _FakeWatcher()

        with patch.object(projects_router, "project_manager", self.manager), \
                patch.object(projects_router, "file_watcher", watcher):
            with self.assertRaises(HTTPException) as ctx:
                await projects_router.add_project(
                    projects_router.ProjectCreate(path=str(self.root / "nowhere")), _request(_FakeSyncEngine()),
                )

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(len(self.manager.list_projects()), 1)
        self.assertEqual(watcher.watched, [])

    async def test_remove_project_unwatches_and_cancels_timers(self) -> None:
        watcher = _FakeWatcher()
        scheduler = _FakeScheduler()

        with patch.object(projects_router, "project_manager", self.manager), \
                patch.object(projects_router, "file_watcher", watcher):
            payload = projects_router.remove_project(self.project.id, _request(_FakeSyncEngine(), scheduler))

        self.assertEqual(payload, {"projectId": self.project.id, "removed": True})
        self.assertIsNone(self.manager.get_project(self.project.id))
        self.assertEqual(watcher.unwatched, [self.project.path])
        self.assertEqual(scheduler.cancelled_projects, [self.project.path])

    async def test_remove_unknown_project_is_not_found(self) -> None:
        with patch.object(projects_router, "project_manager", self.manager), \
                patch.object(projects_router, "file_watcher", _FakeWatcher()):
            with self.assertRaises(HTTPException) as ctx:
                projects_router.remove_project("deadbeef0000", _request(_FakeSyncEngine(), _FakeScheduler()))

        self.assertEqual(ctx.exception.status_code, 404)


class SyncRouterTests(_RouterTestCase):
    async def test_status_includes_pending_timers_and_snapshot(self) -> None:
        payload = sync_router.sync_status(_request(_FakeSyncEngine(), _FakeScheduler()))

        self.assertEqual(payload["watcher"], "stopped")
        self.assertEqual(payload["pendingTimers"], ["/tmp/claude/-work-widget/a.jsonl"])
        self.assertIn("inFlightProjects", payload)

    async def test_operations_are_limited(self) -> None:
        payload = sync_router.list_operations(_request(_FakeSyncEngine()), limit=1)

        self.assertEqual(payload, [{"id": "OP-1", "status": "completed"}])

    async def test_sync_paths_processes_transcript_and_cancels_timer(self) -> None:
        engine = _FakeSyncEngine()
        scheduler = _FakeScheduler()
        self.claude_dir.mkdir(parents=True)
        transcript = self.claude_dir / "0123abcd.jsonl"
        transcript.write_text("", encoding="utf-8")

        with patch.object(sync_router, "project_manager", self.manager):
            payload = await sync_router.sync_paths(
                sync_router.SyncPathsRequest(paths=[str(transcript)]),
                _request(engine, scheduler),
            )

        self.assertEqual(payload["results"], {str(transcript): "appended"})
        self.assertEqual(engine.process_calls[0]["trigger"], "api")
        self.assertEqual(engine.process_calls[0]["project_id"], self.project.id)
        self.assertEqual(scheduler.cancelled, [transcript])

    async def test_sync_paths_rejects_unregistered_transcript(self) -> None:
        engine = _FakeSyncEngine()
        stray = self.root / "elsewhere" / "session.jsonl"
        stray.parent.mkdir()
        stray.write_text("", encoding="utf-8")

        with patch.object(sync_router, "project_manager", self.manager):
            with self.assertRaises(HTTPException) as ctx:
                await sync_router.sync_paths(
                    sync_router.SyncPathsRequest(paths=[str(stray)]),
                    _request(engine, _FakeScheduler()),
                )

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(engine.process_calls, [])

    async def test_sync_paths_requires_an_existing_jsonl_file(self) -> None:
        engine = _FakeSyncEngine()
        self.claude_dir.mkdir(parents=True)
        notes = self.claude_dir / "notes.txt"
        notes.write_text("", encoding="utf-8")
        folder = self.claude_dir / "archive.jsonl"
        folder.mkdir()

        for raw_path in (notes, folder, self.claude_dir / "gone.jsonl"):
            with patch.object(sync_router, "project_manager", self.manager):
                with self.assertRaises(HTTPException) as ctx:
                    await sync_router.sync_paths(
                        sync_router.SyncPathsRequest(paths=[str(raw_path)]),
                        _request(engine, _FakeScheduler()),
                    )
            self.assertEqual(ctx.exception.status_code, 400)

        self.assertEqual(engine.process_calls, [])


if __name__ == "__main__":
    unittest.main()
