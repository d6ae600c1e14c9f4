from __future__ import annotations

import json
from typing import Any

from taskpilot.models import Plan, PlanStep, Workspace

FALLBACK_DESCRIPTION_CHARS = 500


def build_plan_system_prompt(
    tool_descriptions: str, workspace: Workspace | None, context_summary: str = ""
) -> str:
    permissions = workspace.permissions if workspace else {}
    granted = ", ".join(key for key, value in permissions.items() if value) or "none"
    parts = [
        "You are an autonomous task executor. Break the user's task into a short plan.",
        "",
        "Available tools:",
        tool_descriptions or "- None",
        "",
        f"Workspace: {workspace.path if workspace else 'none'}",
        f"Permissions: {granted}",
        "",
        "Create a plan with 3-7 concrete steps. Each step should be one unit of work.",
        "Respond with a JSON object in exactly this format:",
        "{",
        '  "description": "Overall plan description",',
        '  "steps": [',
        '    {"id": "1", "description": "Step description", "status": "pending"}',
        "  ]",
        "}",
    ]
    if context_summary:
        parts.extend(["", context_summary])
    return "\n".join(parts)


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` substring, skipping braces inside strings."""

    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _steps_from_payload(raw_steps: list[Any], task_prompt: str) -> list[PlanStep]:
    steps: list[PlanStep] = []
    for index, entry in enumerate(raw_steps):
        entry = entry if isinstance(entry, dict) else {}
        step_id = entry.get("id")
        description = entry.get("description")
        if not isinstance(description, str) or not description.strip():
            description = entry.get("step") if isinstance(entry.get("step"), str) else task_prompt
        steps.append(
            PlanStep(
                id=str(step_id) if step_id not in (None, "") else str(index + 1),
                description=description.strip() or task_prompt,
            )
        )
    return steps


def parse_plan(text: str) -> tuple[Plan | None, str | None]:
    candidate = extract_json_object(text)
    if candidate is None:
        return None, "no json object found"
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        return None, f"invalid json: {exc}"
    if not isinstance(payload, dict):
        return None, "plan must be a json object"
    raw_steps = payload.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        return None, "plan has no steps"
    description = payload.get("description")
    return (
        Plan(
            description=description if isinstance(description, str) else "",
            steps=_steps_from_payload(raw_steps, ""),
        ),
        None,
    )


def plan_from_response(text: str, task_prompt: str) -> tuple[Plan, str | None]:
    """Parse a planning response, falling back to a single step on any failure."""

    plan, error = parse_plan(text)
    if plan is not None:
        for step in plan.steps:
            if not step.description:
                step.description = task_prompt
        return plan, None
    description = text.strip()[:FALLBACK_DESCRIPTION_CHARS] or task_prompt
    return fallback_plan(description, task_prompt), error


def fallback_plan(step_description: str, task_prompt: str) -> Plan:
    return Plan(
        description=task_prompt,
        steps=[PlanStep(id="1", description=step_description)],
    )
