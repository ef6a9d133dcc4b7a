import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from obsmem.passes import COMPACTION_OUTPUT_TAG, PassRunner, extract_tag_content, wrap_for_compaction


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=["claude"], returncode=returncode, stdout=stdout, stderr=stderr)


class TagExtractionTests(unittest.TestCase):
    def test_extracts_between_first_open_and_last_close(self) -> None:
        text = "preamble <out>\n# Observations\n<out>nested</out>\n</out> trailing"

        self.assertEqual(extract_tag_content(text, "out"), "# Observations\n<out>nested</out>")

    def test_returns_raw_text_without_tags(self) -> None:
        self.assertEqual(extract_tag_content("plain output", "out"), "plain output")

    def test_wrap_for_compaction_names_output_tag(self) -> None:
        wrapped = wrap_for_compaction("- note")

        self.assertTrue(wrapped.startswith("<observations>\n- note\n</observations>"))
        self.assertIn(f"<{COMPACTION_OUTPUT_TAG}>", wrapped)


class PassRunnerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        prompts = Path(self._tmp.name)
        (prompts / "observer.md").write_text("observer prompt", encoding="utf-8")
        (prompts / "reflector.md").write_text("reflector prompt", encoding="utf-8")
        self.runner = PassRunner(command="claude", timeout_seconds=5, prompts_dir=prompts)

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_extract_sends_text_on_stdin_with_system_prompt(self) -> None:
        with patch("obsmem.passes.subprocess.run", return_value=_completed("- Uses pytest")) as run:
            result = await self.runner.extract("[User]: hello there")

        self.assertEqual(result, "- Uses pytest")
        args, kwargs = run.call_args
        self.assertEqual(args[0], ["claude", "-p", "--system-prompt", "observer prompt", "--output-format", "text"])
        self.assertEqual(kwargs["input"], "[User]: hello there")
        self.assertEqual(kwargs["timeout"], 5)

    async def test_sentinel_means_nothing_to_record(self) -> None:
        with patch("obsmem.passes.subprocess.run", return_value=_completed("NO_OBSERVATIONS\n")):
            self.assertIsNone(await self.runner.extract("[User]: hello there"))

    async def test_blank_input_never_invokes_cli(self) -> None:
        with patch("obsmem.passes.subprocess.run") as run:
            self.assertIsNone(await self.runner.extract("   \n"))

        run.assert_not_called()

    async def test_failures_are_reported_as_no_result(self) -> None:
        failures = [
            {"return_value": _completed(returncode=1, stderr="auth required")},
            {"return_value": _completed(stdout="   ")},
            {"side_effect": FileNotFoundError("claude")},
            {"side_effect": subprocess.TimeoutExpired(cmd="claude", timeout=5)},
        ]
        for options in failures:
            with self.subTest(options=options):
                with patch("obsmem.passes.subprocess.run", **options):
                    with self.assertLogs("obsmem.passes", level="ERROR"):
                        self.assertIsNone(await self.runner.extract("[User]: hello there"))

    async def test_missing_prompt_file_is_no_result(self) -> None:
        runner = PassRunner(command="claude", prompts_dir=Path(self._tmp.name) / "missing")

        with patch("obsmem.passes.subprocess.run") as run:
            with self.assertLogs("obsmem.passes", level="ERROR"):
                self.assertIsNone(await runner.extract("[User]: hello there"))

        run.assert_not_called()

    async def test_compact_unwraps_tagged_output(self) -> None:
        output = f"Sure.\n<{COMPACTION_OUTPUT_TAG}>\n# Observations\n\n- merged\n</{COMPACTION_OUTPUT_TAG}>"

        with patch("obsmem.passes.subprocess.run", return_value=_completed(output)) as run:
            result = await self.runner.compact("# Observations\n\n- a\n- b")

        self.assertEqual(result, "# Observations\n\n- merged")
        self.assertIn("<observations>", run.call_args.kwargs["input"])
        self.assertEqual(run.call_args.args[0][3], "reflector prompt")


if __name__ == "__main__":
    unittest.main()
