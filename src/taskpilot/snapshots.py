from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable

from taskpilot.messages import (
    Message,
    TextBlock,
    ToolResultBlock,
    message_from_dict,
)
from taskpilot.models import TaskEvent, now_ms

SNAPSHOT_EVENT_TYPE = "conversation_snapshot"
MAX_CONTENT_LENGTH = 50_000
MAX_TOOL_RESULT_LENGTH = 10_000
STRING_TRUNCATION_MARKER = "\n[... content truncated for snapshot ...]"
BLOCK_TRUNCATION_MARKER = "\n[... truncated ...]"
LEGACY_ASSISTANT_CHARS = 500
LEGACY_TOOL_RESULT_CHARS = 1_000
LEGACY_ACK = "I understand the context from our previous conversation. How can I help you now?"


@dataclass(frozen=True)
class Snapshot:
    id: str
    timestamp: int


@dataclass
class SnapshotRestore:
    restored: bool
    conversation_history: list[Message] = field(default_factory=list)
    system_prompt: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


def _serialize_message(message: Message) -> dict[str, Any]:
    if isinstance(message.content, str):
        content = message.content
        if len(content) > MAX_CONTENT_LENGTH:
            content = content[:MAX_CONTENT_LENGTH] + STRING_TRUNCATION_MARKER
        return {"role": message.role, "content": content}
    blocks: list[dict[str, Any]] = []
    for block in message.content:
        raw = block.to_dict()
        if isinstance(block, ToolResultBlock) and len(block.content) > MAX_TOOL_RESULT_LENGTH:
            raw["content"] = block.content[:MAX_TOOL_RESULT_LENGTH] + BLOCK_TRUNCATION_MARKER
        elif isinstance(block, TextBlock) and len(block.text) > MAX_CONTENT_LENGTH:
            raw["text"] = block.text[:MAX_CONTENT_LENGTH] + BLOCK_TRUNCATION_MARKER
        blocks.append(raw)
    return {"role": message.role, "content": blocks}


def serialize_history_with_limits(history: Iterable[Message]) -> list[dict[str, Any]]:
    """Serialize messages, cutting oversized content but never roles or block types."""

    return [_serialize_message(message) for message in history]


def build_snapshot_payload(
    history: list[Message],
    system_prompt: str,
    model_id: str,
    model_key: str | None,
    *,
    timestamp: int | None = None,
    file_operations: dict[str, list[str]] | None = None,
    plan_summary: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "conversationHistory": serialize_history_with_limits(history),
        "systemPrompt": system_prompt,
        "timestamp": timestamp if timestamp is not None else now_ms(),
        "messageCount": len(history),
        "modelId": model_id,
        "modelKey": model_key,
    }
    if file_operations:
        payload["fileOperations"] = file_operations
    if plan_summary:
        payload["planSummary"] = plan_summary
    return payload


def _snapshot_timestamp(event: TaskEvent) -> int:
    raw = event.payload.get("timestamp") if isinstance(event.payload, dict) else None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return int(raw)
    return event.timestamp


def latest_snapshot_event(events: Iterable[TaskEvent]) -> TaskEvent | None:
    latest: TaskEvent | None = None
    for event in events:
        if event.type != SNAPSHOT_EVENT_TYPE:
            continue
        # ">=" lets a later event win a timestamp tie.
        if latest is None or _snapshot_timestamp(event) >= _snapshot_timestamp(latest):
            latest = event
    return latest


def restore_from_snapshot(events: Iterable[TaskEvent]) -> SnapshotRestore:
    event = latest_snapshot_event(events)
    if event is None:
        return SnapshotRestore(restored=False)
    payload = event.payload if isinstance(event.payload, dict) else {}
    raw_history = payload.get("conversationHistory")
    if not isinstance(raw_history, list):
        return SnapshotRestore(restored=False)
    history: list[Message] = []
    for raw in raw_history:
        message = message_from_dict(raw)
        if message is None:
            return SnapshotRestore(restored=False)
        history.append(message)
    system_prompt = payload.get("systemPrompt")
    return SnapshotRestore(
        restored=True,
        conversation_history=history,
        system_prompt=system_prompt if isinstance(system_prompt, str) else "",
        payload=payload,
    )


def _clip(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def build_legacy_history(
    events: Iterable[TaskEvent], task_title: str, task_prompt: str
) -> list[Message]:
    """Summarize an event log into a two-message history for tasks without snapshots."""

    parts = [
        f"Original task: {task_title}",
        f"Task details: {task_prompt}",
        "",
        "Previous conversation summary:",
    ]
    header_len = len(parts)
    for event in events:
        payload = event.payload if isinstance(event.payload, dict) else {}
        if event.type == "user_message":
            if payload.get("message"):
                parts.append(f"User: {payload['message']}")
        elif event.type == "log":
            message = payload.get("message")
            if message:
                if message.startswith("User: "):
                    parts.append(f"User: {message[6:]}")
                else:
                    parts.append(f"System: {message}")
        elif event.type == "assistant_message":
            if payload.get("message"):
                parts.append(f"Assistant: {_clip(payload['message'], LEGACY_ASSISTANT_CHARS)}")
        elif event.type == "tool_call":
            if payload.get("tool"):
                parts.append(f"[Used tool: {payload['tool']}]")
        elif event.type == "tool_result":
            if payload.get("tool") and payload.get("result"):
                result = payload["result"]
                text = result if isinstance(result, str) else json.dumps(result)
                parts.append(
                    f"[Tool result from {payload['tool']}: "
                    f"{_clip(text, LEGACY_TOOL_RESULT_CHARS)}]"
                )
        elif event.type == "plan_created":
            plan = payload.get("plan")
            if isinstance(plan, dict) and plan.get("description"):
                parts.append(f"[Created plan: {plan['description']}]")
        elif event.type == "error":
            detail = payload.get("message") or payload.get("error")
            if detail:
                parts.append(f"[Error: {detail}]")
    if len(parts) <= header_len:
        return []
    return [
        Message(role="user", content="\n".join(parts)),
        Message(role="assistant", content=[TextBlock(text=LEGACY_ACK)]),
    ]


def build_plan_context_summary(plan_summary: dict[str, Any] | None) -> str:
    if not plan_summary:
        return ""
    parts = ["PREVIOUS TASK CONTEXT:"]
    description = plan_summary.get("description")
    if description:
        parts.append(f"Task plan: {description}")
    completed = plan_summary.get("completedSteps") or []
    if completed:
        parts.append("Completed steps:\n" + "\n".join(f"  - {step}" for step in completed))
    failed = plan_summary.get("failedSteps") or []
    if failed:
        lines = []
        for step in failed:
            error = step.get("error")
            suffix = f" ({error})" if error else ""
            lines.append(f"  - {step.get('description', '')}{suffix}")
        parts.append("Failed steps:\n" + "\n".join(lines))
    return "\n".join(parts) if len(parts) > 1 else ""


def find_snapshots_to_prune(snapshots: Iterable[Snapshot]) -> list[str]:
    """Return ids of every snapshot except the most recent one."""

    # Later entries win timestamp ties, matching restore.
    indexed = sorted(
        enumerate(snapshots), key=lambda item: (item[1].timestamp, item[0]), reverse=True
    )
    return [snapshot.id for _, snapshot in indexed[1:]]
