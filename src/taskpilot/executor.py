"""Task executor: plan, run each step through the LLM tool loop, then verify.

One executor drives one task. The step loop is shared with follow-up
messages, so a follow-up continues from exactly where the last step ended.
Suspension points are blocking: LLM calls (bounded by a hard timeout), tool
calls and the pause gate between steps.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

from taskpilot.circuit_breaker import ToolFailureTracker
from taskpilot.completion import select_result_summary, should_retain_memory, verify_completion
from taskpilot.config import ExecutorSettings, GuardrailConfig, LLMSettings, ToolSettings
from taskpilot.context import ContextManager, estimate_tokens
from taskpilot.errors import BudgetExceededError, LLMTimeoutError
from taskpilot.guardrails import BudgetCounters, Guardrails
from taskpilot.llm import LLMProvider, LLMResponse
from taskpilot.messages import Message, TextBlock, ToolUseBlock
from taskpilot.models import Plan, PlanStep, StepStatus, Task, TaskEvent, TaskStatus, Workspace, now_ms
from taskpilot.pricing import calculate_cost, format_cost
from taskpilot.retry import is_transient_provider_error
from taskpilot.run_logs import append_run_log
from taskpilot.snapshots import (
    SNAPSHOT_EVENT_TYPE,
    build_legacy_history,
    build_plan_context_summary,
    build_snapshot_payload,
    restore_from_snapshot,
)
from taskpilot.tasking import build_plan_system_prompt, fallback_plan, plan_from_response
from taskpilot.tools.protocol import ToolSpec
from taskpilot.tools.registry import ToolRegistry, build_default_registry
from taskpilot.tools.runner import FileOperations, ToolRunner

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_PLACEHOLDER = "I understand. Let me continue."
CONTINUE_PROMPT = "Please continue with the current step."
MAX_QUESTION_CHARS = 1000

_QUESTION_PATTERNS = (
    re.compile(r"would you like me to", re.IGNORECASE),
    re.compile(r"would you prefer", re.IGNORECASE),
    re.compile(r"should i\b", re.IGNORECASE),
    re.compile(r"do you want me to", re.IGNORECASE),
    re.compile(r"please (let me know|confirm|specify|choose)", re.IGNORECASE),
    re.compile(r"which (option|approach|method)", re.IGNORECASE),
    re.compile(r"options.*:", re.IGNORECASE),
    re.compile(r"\?\s*$"),
)
_VERIFICATION_STEP = re.compile(r"\b(verify|verification|double-check|validate)\b", re.IGNORECASE)


def looks_like_question(text: str) -> bool:
    """Heuristic for a short reply that waits on the user."""

    if len(text) >= MAX_QUESTION_CHARS:
        return False
    return any(pattern.search(text) for pattern in _QUESTION_PATTERNS)


class TaskHost(Protocol):
    def log_event(self, task_id: str, event_type: str, payload: dict[str, Any]) -> None:
        ...

    def update_task_status(self, task_id: str, status: TaskStatus) -> None:
        ...

    def update_task(self, task_id: str, **changes: Any) -> None:
        ...

    def complete_task(self, task_id: str, summary: str | None = None) -> None:
        ...

    def handle_transient_task_failure(
        self, task_id: str, reason: str, delay_s: float | None = None
    ) -> bool:
        ...


RegistryFactory = Callable[[Workspace], ToolRegistry]


@dataclass(frozen=True)
class LoopOutcome:
    messages: list[Message]
    final_text: str
    iterations: int


def _append_user(messages: list[Message], text: str) -> list[Message]:
    """Append a user turn, merging into a trailing user message to keep alternation."""

    if messages and messages[-1].role == "user":
        last = messages[-1]
        merged = Message(role="user", content=[*last.blocks(), TextBlock(text=text)])
        return [*messages[:-1], merged]
    return [*messages, Message(role="user", content=text)]


class TaskExecutor:
    def __init__(
        self,
        task: Task,
        workspace: Workspace,
        host: TaskHost,
        provider: LLMProvider,
        llm_settings: LLMSettings,
        settings: ExecutorSettings | None = None,
        guardrails: GuardrailConfig | None = None,
        tool_settings: ToolSettings | None = None,
        registry_factory: RegistryFactory | None = None,
        context_manager: ContextManager | None = None,
        logs_dir: Path | None = None,
    ) -> None:
        self.task = task
        self.workspace = workspace
        self.host = host
        self.provider = provider
        self.llm_settings = llm_settings
        self.settings = settings or ExecutorSettings()
        self.guardrails = Guardrails(guardrails)
        self.tool_settings = tool_settings or ToolSettings()
        self._registry_factory = registry_factory or (
            lambda ws: build_default_registry(ws, self.tool_settings)
        )
        self.context_manager = context_manager or ContextManager(
            llm_settings.model_key or llm_settings.model
        )
        self.logs_dir = logs_dir

        self.registry = self._registry_factory(workspace)
        self.tracker = ToolFailureTracker()
        self.files = FileOperations()
        self.runner = ToolRunner(self.registry, self.tracker, self._emit, self.files)
        self.counters = BudgetCounters()

        self.plan: Plan | None = None
        self.conversation_history: list[Message] = []
        self.system_prompt = ""
        self.context_summary = ""
        self.tools_used: list[str] = []
        self.last_assistant_text: str | None = None
        self.last_assistant_output: str | None = None
        self.last_non_verification_output: str | None = None

        self.cancelled = False
        self._resume = threading.Event()
        self._resume.set()

    # -- lifecycle -----------------------------------------------------

    def execute(self) -> None:
        status = TaskStatus.FAILED
        try:
            self.host.update_task_status(self.task.id, TaskStatus.PLANNING)
            self.create_plan()
            if self.cancelled:
                status = TaskStatus.CANCELLED
                return
            self.host.update_task_status(self.task.id, TaskStatus.EXECUTING)
            self.execute_plan()
            if self.cancelled:
                status = TaskStatus.CANCELLED
                return
            status = self._finish()
        except BudgetExceededError as exc:
            logger.warning("Task %s stopped by budget guardrail: %s", self.task.id, exc)
            self._fail(str(exc))
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            if is_transient_provider_error(exc) and self.host.handle_transient_task_failure(
                self.task.id, message
            ):
                status = TaskStatus.QUEUED
                return
            logger.exception("Task %s failed", self.task.id)
            self._fail(message)
        finally:
            self.save_conversation_snapshot()
            self._cleanup()
            self._record_run(status)

    def create_plan(self) -> Plan:
        system = build_plan_system_prompt(
            self.registry.get_tool_descriptions(), self.workspace, self.context_summary
        )
        request = Message(
            role="user",
            content=(
                f"Task: {self.task.title}\n\nDetails: {self.task.prompt}\n\n"
                "Create an execution plan."
            ),
        )
        try:
            self.guardrails.enforce(self.counters)
            response = self._call_llm(system, [request], None, "Plan creation")
            text = "\n".join(
                block.text for block in response.content if isinstance(block, TextBlock)
            )
            plan, error = plan_from_response(text, self.task.prompt)
            if error:
                logger.warning("Plan response for task %s unusable (%s); using fallback", self.task.id, error)
        except BudgetExceededError:
            raise
        except Exception as exc:
            logger.warning("Planning failed for task %s: %s", self.task.id, exc)
            plan = fallback_plan(self.task.prompt, self.task.prompt)
        self.plan = plan
        logger.info("Created plan for task %s with %d steps", self.task.id, len(plan.steps))
        self._emit("plan_created", {"plan": plan.to_dict()})
        return plan

    def execute_plan(self) -> None:
        if self.plan is None:
            raise RuntimeError("execute_plan called before create_plan")
        self.system_prompt = self._build_system_prompt()
        for step in self.plan.steps:
            if self.cancelled:
                break
            self._resume.wait()
            if self.cancelled:
                break
            if step.status != StepStatus.PENDING:
                continue
            self.execute_step(step)

    def execute_step(self, step: PlanStep) -> None:
        step.start()
        self._emit("step_started", {"step": step.to_dict()})
        try:
            messages = _append_user(self.conversation_history, self._step_prompt(step))
            outcome = self._run_conversation_loop(messages)
        except Exception as exc:
            step.fail(str(exc) or type(exc).__name__)
            self._emit("step_failed", {"step": step.to_dict(), "error": step.error})
            raise
        self.conversation_history = outcome.messages
        if self.cancelled:
            step.fail("Task cancelled")
            self._emit("step_failed", {"step": step.to_dict(), "error": step.error})
            return
        self._record_output(outcome.final_text, step)
        step.complete()
        self._emit("step_completed", {"step": step.to_dict(), "summary": outcome.final_text})
        self.save_conversation_snapshot()

    def send_message(self, text: str) -> None:
        """Continue the conversation with a follow-up user message."""

        self.cancelled = False
        self._emit("user_message", {"message": text})
        self.host.update_task_status(self.task.id, TaskStatus.EXECUTING)
        if not self.system_prompt:
            self.system_prompt = self._build_system_prompt()
        try:
            messages = _append_user(self.conversation_history, text)
            outcome = self._run_conversation_loop(messages)
            self.conversation_history = outcome.messages
            self._record_output(outcome.final_text, None)
            self._emit("follow_up_completed", {"message": outcome.final_text})
            self.save_conversation_snapshot()
            summary = select_result_summary(outcome.final_text, self.last_assistant_text)
            self.host.complete_task(self.task.id, summary)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("Follow-up for task %s failed: %s", self.task.id, message)
            self._emit("follow_up_failed", {"error": message})
            self._fail(message)
        finally:
            self._cleanup()

    def cancel(self) -> None:
        self.cancelled = True
        self._resume.set()

    def pause(self) -> None:
        self._resume.clear()
        self.host.update_task_status(self.task.id, TaskStatus.PAUSED)
        self._emit("task_paused", {"message": "Task paused"})

    def resume(self) -> None:
        self._resume.set()
        self.host.update_task_status(self.task.id, TaskStatus.EXECUTING)
        self._emit("task_resumed", {"message": "Task resumed"})

    @property
    def paused(self) -> bool:
        return not self._resume.is_set()

    def update_workspace(self, workspace: Workspace) -> None:
        self._cleanup()
        self.workspace = workspace
        self.registry = self._registry_factory(workspace)
        self.runner = ToolRunner(self.registry, self.tracker, self._emit, self.files)
        if self.system_prompt:
            self.system_prompt = self._build_system_prompt()

    # -- persistence ---------------------------------------------------

    def rebuild_conversation_from_events(self, events: list[TaskEvent]) -> bool:
        """Restore history from the latest snapshot, or summarize the event log.

        Returns True only when a snapshot was restored.
        """

        restore = restore_from_snapshot(events)
        if restore.restored:
            self.conversation_history = restore.conversation_history
            self.system_prompt = restore.system_prompt
            self.files = FileOperations.from_snapshot(restore.payload.get("fileOperations"))
            self.runner.files = self.files
            self.context_summary = build_plan_context_summary(restore.payload.get("planSummary"))
            logger.info(
                "Restored %d messages for task %s from snapshot",
                len(self.conversation_history),
                self.task.id,
            )
            return True
        self.conversation_history = build_legacy_history(events, self.task.title, self.task.prompt)
        logger.info(
            "No usable snapshot for task %s; rebuilt %d messages from events",
            self.task.id,
            len(self.conversation_history),
        )
        return False

    def save_conversation_snapshot(self) -> None:
        if not self.conversation_history:
            return
        payload = build_snapshot_payload(
            self.conversation_history,
            self.system_prompt,
            self.llm_settings.model,
            self.llm_settings.model_key,
            file_operations=self.files.to_snapshot(),
            plan_summary=self._plan_summary(),
        )
        try:
            self.host.log_event(self.task.id, SNAPSHOT_EVENT_TYPE, payload)
        except Exception:
            logger.warning("Failed to save conversation snapshot for %s", self.task.id, exc_info=True)

    # -- step loop -----------------------------------------------------

    def _run_conversation_loop(self, messages: list[Message]) -> LoopOutcome:
        tools: list[ToolSpec] = self.registry.get_tools()
        system_tokens = estimate_tokens(self.system_prompt)
        empty_responses = 0
        iterations = 0
        final_text = ""
        while iterations < self.settings.max_step_iterations:
            if self.cancelled:
                break
            iterations += 1
            self.guardrails.enforce(self.counters)
            self.counters.tick()

            compaction = self.context_manager.compact_messages_with_meta(messages, system_tokens)
            if compaction.kind != "none":
                logger.info(
                    "Context compaction (%s): removed %d messages, ~%d tokens",
                    compaction.kind,
                    compaction.removed_messages,
                    compaction.estimated_tokens,
                )
            messages = compaction.messages

            response = self._call_llm(self.system_prompt, messages, tools, "LLM call")

            if not response.content:
                empty_responses += 1
                logger.warning(
                    "Empty response from model (%d/%d)",
                    empty_responses,
                    self.settings.max_empty_responses,
                )
                messages = [
                    *messages,
                    Message(role="assistant", content=[TextBlock(text=EMPTY_RESPONSE_PLACEHOLDER)]),
                ]
                if empty_responses >= self.settings.max_empty_responses:
                    break
                messages = _append_user(messages, CONTINUE_PROMPT)
                continue
            empty_responses = 0
            messages = [*messages, Message(role="assistant", content=list(response.content))]

            asked_question = False
            for block in response.content:
                if isinstance(block, TextBlock) and block.text.strip():
                    final_text = block.text
                    self.last_assistant_text = block.text
                    self._emit("assistant_message", {"message": block.text})
                    asked_question = asked_question or looks_like_question(block.text)

            calls = [block for block in response.content if isinstance(block, ToolUseBlock)]
            if calls:
                batch = self.runner.run(calls)
                self.tools_used.extend(batch.succeeded_tools)
                messages = [*messages, Message(role="user", content=list(batch.blocks))]
                if batch.stop_for_disabled:
                    logger.warning("All tool calls hit disabled tools; stopping step loop")
                    break
                continue
            if response.stop_reason == "end_turn":
                break
            if asked_question:
                logger.info("Model asked a question; waiting for the user")
                break
            messages = _append_user(messages, CONTINUE_PROMPT)
        else:
            logger.warning(
                "Step loop for task %s reached %d iterations", self.task.id, iterations
            )
        return LoopOutcome(messages=messages, final_text=final_text, iterations=iterations)

    def _call_llm(
        self,
        system: str,
        messages: list[Message],
        tools: list[ToolSpec] | None,
        operation: str,
    ) -> LLMResponse:
        started = time.monotonic()
        response = self._call_with_timeout(
            lambda: self.provider.create_message(
                model=self.llm_settings.model,
                max_tokens=self.settings.max_tokens,
                system=system,
                messages=messages,
                tools=tools or None,
            ),
            operation,
        )
        if response.usage is not None:
            cost = calculate_cost(
                self.llm_settings.model,
                response.usage.input_tokens,
                response.usage.output_tokens,
            )
            self.counters.record(response.usage.input_tokens, response.usage.output_tokens, cost)
        logger.debug(
            "%s finished in %.2fs (stop_reason=%s, total cost %s)",
            operation,
            time.monotonic() - started,
            response.stop_reason,
            format_cost(self.counters.total_cost),
        )
        return response

    def _call_with_timeout(self, call: Callable[[], LLMResponse], operation: str) -> LLMResponse:
        container: dict[str, Any] = {}

        def worker() -> None:
            try:
                container["result"] = call()
            except BaseException as exc:  # noqa: BLE001
                container["error"] = exc

        thread = threading.Thread(target=worker, daemon=True)
        thread.start()
        thread.join(timeout=self.settings.llm_timeout_s)
        if thread.is_alive():
            raise LLMTimeoutError(operation, self.settings.llm_timeout_s)
        if "error" in container:
            raise container["error"]
        return container["result"]

    # -- helpers -------------------------------------------------------

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.host.log_event(self.task.id, event_type, payload)

    def _fail(self, message: str) -> None:
        self.host.update_task(
            self.task.id, status=TaskStatus.FAILED, error=message, completed_at=now_ms()
        )
        self._emit("error", {"message": message})

    def _finish(self) -> TaskStatus:
        final_output = self.last_assistant_output or self.last_assistant_text
        contract = verify_completion(
            self.task.prompt, final_output, self.files.created, self.tools_used
        )
        if not contract.satisfied:
            logger.warning("Task %s blocked at completion: %s", self.task.id, contract.reason)
            self._fail(contract.reason)
            return TaskStatus.FAILED
        summary = select_result_summary(
            self.last_non_verification_output,
            self.last_assistant_output,
            self.last_assistant_text,
        )
        if summary is None and self.plan is not None:
            summary = f"Completed {len(self.plan.steps)} step(s): {self.plan.description}"
        self.host.complete_task(self.task.id, summary)
        if self.logs_dir is not None and should_retain_memory(self.task):
            append_run_log(
                self.logs_dir,
                {
                    "kind": "memory",
                    "task_id": self.task.id,
                    "title": self.task.title,
                    "summary": summary,
                    "files_created": list(self.files.created),
                    "timestamp": now_ms(),
                },
            )
        return TaskStatus.COMPLETED

    def _record_output(self, text: str, step: PlanStep | None) -> None:
        if not text.strip():
            return
        self.last_assistant_output = text
        if step is None or not _VERIFICATION_STEP.search(step.description):
            self.last_non_verification_output = text

    def _record_run(self, status: TaskStatus) -> None:
        if self.logs_dir is None:
            return
        try:
            append_run_log(
                self.logs_dir,
                {
                    "kind": "run",
                    "task_id": self.task.id,
                    "status": status.value,
                    "input_tokens": self.counters.total_input_tokens,
                    "output_tokens": self.counters.total_output_tokens,
                    "cost": round(self.counters.total_cost, 6),
                    "iterations": self.counters.iteration_count,
                    "disabled_tools": self.tracker.disabled_tools(),
                    "timestamp": now_ms(),
                },
            )
        except OSError:
            logger.warning("Failed to write run log for %s", self.task.id, exc_info=True)

    def _cleanup(self) -> None:
        try:
            self.registry.cleanup()
        except Exception:
            logger.warning("Tool registry cleanup failed for %s", self.task.id, exc_info=True)

    def _plan_summary(self) -> dict[str, Any] | None:
        if self.plan is None:
            return None
        return {
            "description": self.plan.description,
            "completedSteps": [
                step.description for step in self.plan.steps if step.status == StepStatus.COMPLETED
            ],
            "failedSteps": [
                {"description": step.description, "error": step.error}
                for step in self.plan.steps
                if step.status == StepStatus.FAILED
            ],
        }

    def _step_prompt(self, step: PlanStep) -> str:
        parts = [f"Execute this step: {step.description}", "", f"Task context: {self.task.prompt}"]
        completed = [
            s.description
            for s in (self.plan.steps if self.plan else [])
            if s.status == StepStatus.COMPLETED
        ]
        if completed:
            parts.extend(["", "Previously completed steps:"])
            parts.extend(f"- {description}" for description in completed)
            parts.extend(["", "Do NOT repeat work from completed steps. Focus only on this step."])
        return "\n".join(parts)

    def _build_system_prompt(self) -> str:
        granted = ", ".join(key for key, value in self.workspace.permissions.items() if value)
        parts = [
            "You are an autonomous agent executing one step of a larger task.",
            f"Workspace: {self.workspace.path}",
            f"Permissions: {granted or 'none'}",
            "",
            "Available tools:",
            self.registry.get_tool_descriptions() or "- None",
            "",
            "Guidelines:",
            "- Use the tools to do real work; do not claim results you have not produced.",
            "- When the step is done, reply with a short summary of what you did.",
            "- Only ask the user a question when you cannot proceed without an answer.",
        ]
        if self.context_summary:
            parts.extend(["", self.context_summary])
        return "\n".join(parts)
