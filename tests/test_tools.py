import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from taskpilot.circuit_breaker import ToolFailureTracker
from taskpilot.config import ToolSettings
from taskpilot.errors import ToolInputError, ToolNotFoundError
from taskpilot.messages import ToolUseBlock
from taskpilot.models import Workspace
from taskpilot.tools.protocol import (
    CommandTerminationReason,
    apply_termination_context,
    get_termination_context_prefix,
)
from taskpilot.tools.registry import ToolDefinition, ToolRegistry, build_default_registry
from taskpilot.tools.runner import FileOperations, ToolRunner


class TerminationPrefixTests(unittest.TestCase):
    def test_normal_is_empty(self) -> None:
        self.assertEqual(get_termination_context_prefix("normal"), "")
        self.assertEqual(get_termination_context_prefix(None), "")
        self.assertEqual(get_termination_context_prefix("bogus"), "")

    def test_non_empty_prefixes_end_with_blank_line(self) -> None:
        for reason in ("user_stopped", "timeout", "error"):
            prefix = get_termination_context_prefix(reason)
            self.assertTrue(prefix.endswith("\n\n"), reason)
        self.assertIn("do not retry", get_termination_context_prefix("user_stopped").lower())
        self.assertIn("smaller steps", get_termination_context_prefix(CommandTerminationReason.TIMEOUT))
        self.assertIn("could not be spawned", get_termination_context_prefix("error"))

    def test_apply_only_to_dict_results(self) -> None:
        text = apply_termination_context({"termination_reason": "timeout"}, "output")
        self.assertTrue(text.startswith("[TIMEOUT]"))
        self.assertTrue(text.endswith("\n\noutput"))
        self.assertEqual(apply_termination_context("plain", "plain"), "plain")


class RegistryTests(unittest.TestCase):
    def test_default_tools_respect_permissions(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            workspace = Workspace(id="w", path=tmp)
            registry = build_default_registry(workspace, ToolSettings())
            names = [tool.name for tool in registry.get_tools()]
            self.assertEqual(names, ["read_file", "write_file", "list_directory", "web_fetch"])
            shell = build_default_registry(
                Workspace(id="w", path=tmp, permissions={"read": True, "shell": True}),
                ToolSettings(shell_enabled=True),
            )
            self.assertTrue(shell.has_tool("run_command"))
            self.assertFalse(shell.has_tool("web_fetch"))

    def test_write_then_read_within_workspace(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            registry = build_default_registry(Workspace(id="w", path=tmp), ToolSettings())
            written = registry.execute_tool("write_file", {"path": "notes/a.txt", "content": "hi"})
            self.assertTrue(written["success"])
            read = registry.execute_tool("read_file", {"path": "notes/a.txt"})
            self.assertEqual(read["content"], "hi")
            listing = registry.execute_tool("list_directory", {})
            self.assertEqual(listing["entries"], ["notes/"])

    def test_paths_outside_root_are_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            registry = build_default_registry(Workspace(id="w", path=tmp), ToolSettings())
            with self.assertRaises(ValueError) as ctx:
                registry.execute_tool("read_file", {"path": "../../etc/passwd"})
            self.assertIn("outside the workspace root", str(ctx.exception))

    def test_schema_validation(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            registry = build_default_registry(Workspace(id="w", path=tmp), ToolSettings())
            with self.assertRaises(ToolNotFoundError):
                registry.execute_tool("nope", {})
            with self.assertRaises(ToolInputError):
                registry.execute_tool("write_file", {"path": "a.txt"})
            with self.assertRaises(ToolInputError):
                registry.execute_tool("write_file", {"path": "a.txt", "content": True})

    def test_run_command_reports_termination_reason(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            workspace = Workspace(id="w", path=tmp, permissions={"shell": True})
            registry = build_default_registry(workspace, ToolSettings(shell_enabled=True))
            missing = registry.execute_tool(
                "run_command", {"command": "definitely-not-a-real-binary-xyz"}
            )
            self.assertFalse(missing["success"])
            self.assertEqual(missing["termination_reason"], "error")

    def test_web_fetch_stops_reading_at_size_cap(self) -> None:
        served: list[int] = []

        def body():
            for _ in range(64):
                served.append(1)
                yield b"x" * 1024

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return httpx.Response(302, headers={"location": "/big"})
            return httpx.Response(200, content=body())

        with tempfile.TemporaryDirectory() as tmp:
            workspace = Workspace(id="w", path=tmp)
            settings = ToolSettings(web_max_bytes=2048)
            client = httpx.Client(transport=httpx.MockTransport(handler))
            with patch.object(httpx, "Client", return_value=client):
                registry = build_default_registry(workspace, settings)
                result = registry.execute_tool("web_fetch", {"url": "https://example.com/old"})
            self.assertTrue(result["success"])
            self.assertEqual(result["url"], "https://example.com/big")
            self.assertEqual(result["content"], "x" * 2048 + "\n[truncated]")
            self.assertLess(len(served), 64)
            registry.cleanup()

    def test_cleanup_runs_callbacks_once(self) -> None:
        registry = ToolRegistry()
        calls: list[str] = []
        registry.on_cleanup(lambda: calls.append("x"))
        registry.cleanup()
        registry.cleanup()
        self.assertEqual(calls, ["x"])


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event_type: str, payload: dict) -> None:
        self.events.append((event_type, payload))

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


def _registry(handlers: dict) -> ToolRegistry:
    registry = ToolRegistry()
    for name, (handler, effect) in handlers.items():
        registry.register(
            ToolDefinition(
                name=name,
                description=name,
                input_schema={"type": "object", "properties": {}},
                handle=handler,
                file_effect=effect,
            )
        )
    return registry


class RunnerTests(unittest.TestCase):
    def test_results_keep_call_order_and_track_files(self) -> None:
        registry = _registry(
            {
                "write_file": (lambda args: {"success": True, "path": args["path"]}, "create"),
                "web_fetch": (lambda args: "page text", None),
            }
        )
        sink = RecordingSink()
        files = FileOperations()
        runner = ToolRunner(registry, ToolFailureTracker(), sink, files)
        batch = runner.run(
            [
                ToolUseBlock(id="1", name="web_fetch", input={}),
                ToolUseBlock(id="2", name="write_file", input={"path": "out.md"}),
            ]
        )
        self.assertEqual([block.tool_use_id for block in batch.blocks], ["1", "2"])
        self.assertEqual(batch.blocks[0].content, "page text")
        self.assertEqual(files.created, ["out.md"])
        self.assertEqual(batch.succeeded_tools, ["web_fetch", "write_file"])
        self.assertFalse(batch.stop_for_disabled)
        self.assertEqual(sink.types(), ["tool_call", "tool_result", "tool_call", "tool_result"])

    def test_disabled_tool_is_skipped_without_dispatch(self) -> None:
        calls: list[dict] = []

        def flaky(args: dict) -> dict:
            calls.append(args)
            raise RuntimeError("service unavailable")

        registry = _registry({"flaky": (flaky, None)})
        sink = RecordingSink()
        tracker = ToolFailureTracker()
        runner = ToolRunner(registry, tracker, sink)
        first = runner.run([ToolUseBlock(id="a", name="flaky", input={})])
        self.assertTrue(first.blocks[0].is_error)
        self.assertFalse(first.stop_for_disabled)
        runner.run([ToolUseBlock(id="b", name="flaky", input={})])
        self.assertTrue(tracker.is_disabled("flaky"))

        third = runner.run([ToolUseBlock(id="c", name="flaky", input={})])
        self.assertEqual(len(calls), 2)
        self.assertTrue(third.stop_for_disabled)
        payload = json.loads(third.blocks[0].content)
        self.assertTrue(payload["disabled"])
        self.assertIn('Tool "flaky" is temporarily unavailable due to: service unavailable', payload["error"])
        skipped = [p for t, p in sink.events if t == "tool_error" and p.get("skipped")]
        self.assertEqual(len(skipped), 1)

    def test_success_false_result_counts_as_failure(self) -> None:
        registry = _registry({"api": (lambda args: {"success": False, "error": "quota exceeded"}, None)})
        tracker = ToolFailureTracker()
        batch = ToolRunner(registry, tracker, RecordingSink()).run(
            [ToolUseBlock(id="1", name="api", input={})]
        )
        self.assertTrue(batch.blocks[0].is_error)
        self.assertTrue(tracker.is_disabled("api"))
        self.assertEqual(batch.succeeded_tools, [])

    def test_failure_without_error_text_does_not_trip_breaker(self) -> None:
        registry = _registry({"web_fetch": (lambda args: {"success": False, "status": 404}, None)})
        tracker = ToolFailureTracker()
        runner = ToolRunner(registry, tracker, RecordingSink())
        for call_id in ("1", "2", "3"):
            batch = runner.run([ToolUseBlock(id=call_id, name="web_fetch", input={})])
            self.assertTrue(batch.blocks[0].is_error)
            self.assertEqual(batch.succeeded_tools, [])
        self.assertFalse(tracker.is_disabled("web_fetch"))

    def test_termination_prefix_applied_to_command_output(self) -> None:
        registry = _registry(
            {"run_command": (lambda args: {"success": True, "termination_reason": "user_stopped"}, None)}
        )
        batch = ToolRunner(registry, ToolFailureTracker(), RecordingSink()).run(
            [ToolUseBlock(id="1", name="run_command", input={})]
        )
        self.assertTrue(batch.blocks[0].content.startswith("[USER STOPPED]"))

    def test_mixed_batch_does_not_stop(self) -> None:
        registry = _registry({"ok": (lambda args: "fine", None), "bad": (lambda args: "x", None)})
        tracker = ToolFailureTracker()
        tracker.record_failure("bad", "quota exceeded")
        batch = ToolRunner(registry, tracker, RecordingSink()).run(
            [ToolUseBlock(id="1", name="bad", input={}), ToolUseBlock(id="2", name="ok", input={})]
        )
        self.assertFalse(batch.stop_for_disabled)
        self.assertFalse(batch.blocks[1].is_error)


if __name__ == "__main__":
    unittest.main()
