from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from taskpilot.circuit_breaker import ToolFailureTracker
from taskpilot.context import truncate_tool_result
from taskpilot.messages import ToolResultBlock, ToolUseBlock
from taskpilot.tools.protocol import apply_termination_context
from taskpilot.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

EventSink = Callable[[str, dict[str, Any]], None]

MAX_TRACKED_FILES = 50


@dataclass
class FileOperations:
    """Files this executor has read or created, in first-seen order."""

    read: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)

    def record(self, effect: str, path: str) -> None:
        target = self.created if effect == "create" else self.read
        if path not in target:
            target.append(path)

    def to_snapshot(self) -> dict[str, list[str]]:
        return {
            "filesRead": self.read[-MAX_TRACKED_FILES:],
            "filesCreated": self.created[-MAX_TRACKED_FILES:],
        }

    @classmethod
    def from_snapshot(cls, payload: Any) -> "FileOperations":
        if not isinstance(payload, dict):
            return cls()
        read = [item for item in payload.get("filesRead") or [] if isinstance(item, str)]
        created = [item for item in payload.get("filesCreated") or [] if isinstance(item, str)]
        return cls(read=read, created=created)


@dataclass(frozen=True)
class ToolBatchResult:
    blocks: list[ToolResultBlock]
    stop_for_disabled: bool
    succeeded_tools: list[str]


def _result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def _reported_failure(result: Any) -> bool:
    return isinstance(result, dict) and result.get("success") is False


def _failure_message(result: Any) -> str | None:
    """Error text of a failed result. A 404 or non-zero exit carries none and is not counted."""

    if _reported_failure(result):
        error = result.get("error")
        return str(error) if error else None
    return None


class ToolRunner:
    """Dispatch the tool calls of one assistant turn, strictly in order."""

    def __init__(
        self,
        registry: ToolRegistry,
        tracker: ToolFailureTracker,
        emit: EventSink,
        files: FileOperations | None = None,
    ) -> None:
        self.registry = registry
        self.tracker = tracker
        self.emit = emit
        self.files = files or FileOperations()

    def run(self, calls: list[ToolUseBlock]) -> ToolBatchResult:
        blocks: list[ToolResultBlock] = []
        succeeded: list[str] = []
        skipped = 0
        for call in calls:
            if self.tracker.is_disabled(call.name):
                blocks.append(self._skip(call))
                skipped += 1
                continue
            self.emit("tool_call", {"tool": call.name, "input": call.input})
            try:
                result = self.registry.execute_tool(call.name, call.input)
            except Exception as exc:
                blocks.append(self._failure(call, str(exc) or type(exc).__name__))
                continue
            failed = _reported_failure(result)
            failure = _failure_message(result)
            if failure is not None:
                self._record_failure(call.name, failure)
            elif not failed:
                self.tracker.record_success(call.name)
                succeeded.append(call.name)
                self._track_files(call, result)
            self.emit("tool_result", {"tool": call.name, "result": result})
            text = apply_termination_context(result, _result_text(result))
            blocks.append(
                ToolResultBlock(
                    tool_use_id=call.id,
                    content=truncate_tool_result(text),
                    is_error=failed,
                )
            )
        stop = skipped > 0 and all(block.is_error for block in blocks)
        return ToolBatchResult(blocks=blocks, stop_for_disabled=stop, succeeded_tools=succeeded)

    def _skip(self, call: ToolUseBlock) -> ToolResultBlock:
        last_error = self.tracker.get_last_error(call.name) or "repeated failures"
        logger.info("Skipping disabled tool %s", call.name)
        self.emit(
            "tool_error",
            {
                "tool": call.name,
                "error": f"Tool disabled due to repeated failures: {last_error}",
                "skipped": True,
            },
        )
        payload = {
            "error": (
                f'Tool "{call.name}" is temporarily unavailable due to: {last_error}. '
                "Please try a different approach or wait and try again later."
            ),
            "disabled": True,
        }
        return ToolResultBlock(tool_use_id=call.id, content=json.dumps(payload), is_error=True)

    def _failure(self, call: ToolUseBlock, message: str) -> ToolResultBlock:
        self._record_failure(call.name, message)
        self.emit("tool_error", {"tool": call.name, "error": message})
        return ToolResultBlock(
            tool_use_id=call.id, content=json.dumps({"error": message}), is_error=True
        )

    def _record_failure(self, name: str, message: str) -> None:
        if self.tracker.record_failure(name, message):
            self.emit(
                "tool_error",
                {"tool": name, "error": f"Tool disabled: {message}", "disabled": True},
            )

    def _track_files(self, call: ToolUseBlock, result: Any) -> None:
        effect = self.registry.file_effect(call.name)
        if effect is None:
            return
        path = result.get("path") if isinstance(result, dict) else None
        if not isinstance(path, str):
            path = call.input.get("path")
        if isinstance(path, str) and path:
            self.files.record(effect, path)
