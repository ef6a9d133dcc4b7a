import json
import tempfile
import unittest
from pathlib import Path

from obsmem.cursor_store import CursorStore
from obsmem.models import CursorState, project_hash


class CursorStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.state_dir = Path(self._tmp.name) / "state" / "nested"
        self.store = CursorStore(self.state_dir)
        self.project_path = "/home/dev/projects/widget"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_load_returns_zeroed_state_when_nothing_stored(self) -> None:
        state = self.store.load(self.project_path)

        self.assertEqual(state.files, {})
        self.assertIsNone(state.lastCompaction)
        self.assertEqual(state.totalExtractionPasses, 0)
        self.assertEqual(self.store.get_offset(state, "missing.jsonl"), 0)

    def test_save_creates_directory_keyed_by_project_hash(self) -> None:
        state = CursorState()
        self.store.set_offset(state, "a.jsonl", 2048, 1)

        self.store.save(self.project_path, state)

        path = self.store.state_file(self.project_path)
        self.assertEqual(path.parent.name, project_hash(self.project_path))
        self.assertTrue(path.exists())
        payload = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(payload["files"]["a.jsonl"]["offset"], 2048)
        self.assertEqual(list(path.parent.glob("*.tmp")), [])

        reloaded = self.store.load(self.project_path)
        self.assertEqual(self.store.get_offset(reloaded, "a.jsonl"), 2048)
        self.assertEqual(reloaded.files["a.jsonl"].observationCount, 1)

    def test_offsets_never_move_backwards(self) -> None:
        state = CursorState()
        self.store.set_offset(state, "a.jsonl", 500)

        with self.assertLogs("obsmem.cursor", level="WARNING"):
            self.store.set_offset(state, "a.jsonl", 100)

        self.assertEqual(self.store.get_offset(state, "a.jsonl"), 500)

    def test_observation_count_accumulates(self) -> None:
        state = CursorState()
        self.store.set_offset(state, "a.jsonl", 100, 1)
        self.store.set_offset(state, "a.jsonl", 200, 0)
        cursor = self.store.set_offset(state, "a.jsonl", 300, 1)

        self.assertEqual(cursor.observationCount, 2)
        self.assertIsNotNone(cursor.lastProcessed)

    def test_skipped_appends_reset_when_offset_advances(self) -> None:
        state = CursorState()
        self.store.set_offset(state, "a.jsonl", 100)

        self.assertEqual(self.store.record_skipped_append(state, "a.jsonl"), 1)
        self.assertEqual(self.store.record_skipped_append(state, "a.jsonl"), 2)
        self.store.set_offset(state, "a.jsonl", 100)
        self.assertEqual(state.files["a.jsonl"].skippedAppends, 2)

        self.store.set_offset(state, "a.jsonl", 250)
        self.assertEqual(state.files["a.jsonl"].skippedAppends, 0)

    def test_pass_counters(self) -> None:
        state = CursorState()
        self.store.record_extraction_pass(state)
        self.store.record_extraction_pass(state)
        self.store.record_compaction_pass(state)

        self.assertEqual(state.totalExtractionPasses, 2)
        self.assertEqual(state.totalCompactionPasses, 1)
        self.assertIsNotNone(state.lastCompaction)

    def test_corrupt_state_file_loads_as_zeroed_state(self) -> None:
        path = self.store.state_file(self.project_path)
        path.parent.mkdir(parents=True)
        path.write_text("{truncated", encoding="utf-8")

        with self.assertLogs("obsmem.cursor", level="WARNING"):
            state = self.store.load(self.project_path)

        self.assertEqual(state.files, {})


if __name__ == "__main__":
    unittest.main()
