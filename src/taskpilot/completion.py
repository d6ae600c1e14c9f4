"""Completion contract checks and result summary selection.

Three independent requirements are derived from the task prompt:

* a recommendation-style question needs a direct answer in the final output
* a request to produce a file needs at least one file created by a tool
* a request to ground a recommendation (transcribe, research...) needs at
  least one evidence-producing tool result

When a recommendation is requested, a requested document is supplementary
and its absence does not block completion.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from taskpilot.models import Task

MIN_SUMMARY_CHARS = 20
MAX_SUMMARY_CHARS = 4000

PLACEHOLDER_SUMMARIES = frozenset(
    text.lower()
    for text in (
        "I understand. Let me continue.",
        "Done.",
        "Done",
        "Task complete.",
        "Task completed.",
        "Task completed successfully.",
        "Complete.",
        "Completed.",
        "All set.",
        "Finished.",
    )
)

_RECOMMENDATION_REQUEST = re.compile(
    r"\bshould i\b"
    r"|\b(if|whether) i should\b"
    r"|\brecommend"
    r"|\bworth (it|watching|reading|buying|the)\b"
    r"|\bwatch (it )?or skip\b"
    r"|\byes or no\b",
    re.IGNORECASE,
)
_ARTIFACT_REQUEST = re.compile(
    r"\b(create|generate|write|make|export|draft|produce|save)\b"
    r"[^.?!]*?\b(pdf|document|doc|report|file|spreadsheet|csv|slides?|markdown)\b",
    re.IGNORECASE,
)
_GROUNDING_REQUEST = re.compile(
    r"\b(transcribe|transcript|research|look up|fact-check|investigate|search for)\b",
    re.IGNORECASE,
)
_ANSWER_LANGUAGE = re.compile(
    r"\b(should|recommend|skip|watch|worth|because|yes|no)\b",
    re.IGNORECASE,
)
_ARTIFACT_ONLY = re.compile(
    r"^\s*(created|saved|generated|wrote|exported)\b[^\n]*$",
    re.IGNORECASE,
)

EVIDENCE_TOOL_PREFIXES = (
    "web_fetch",
    "web_search",
    "read_file",
    "transcribe",
    "youtube",
    "browser_",
    "fetch_",
    "search_",
)

MISSING_DIRECT_ANSWER = "missing direct answer"
MISSING_ARTIFACT_EVIDENCE = "missing artifact evidence"
MISSING_VERIFICATION_EVIDENCE = "missing verification evidence"


@dataclass(frozen=True)
class ContractRequirements:
    direct_answer: bool
    artifact: bool
    verification: bool


@dataclass(frozen=True)
class ContractResult:
    satisfied: bool
    failures: list[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return "Completion contract not satisfied: " + "; ".join(self.failures)


def derive_requirements(prompt: str) -> ContractRequirements:
    recommendation = bool(_RECOMMENDATION_REQUEST.search(prompt))
    artifact = bool(_ARTIFACT_REQUEST.search(prompt))
    grounding = bool(_GROUNDING_REQUEST.search(prompt))
    return ContractRequirements(
        direct_answer=recommendation,
        artifact=artifact and not recommendation,
        verification=grounding and recommendation and not artifact,
    )


def has_direct_answer(output: str | None) -> bool:
    text = (output or "").strip()
    if not text or _ARTIFACT_ONLY.match(text):
        return False
    return bool(_ANSWER_LANGUAGE.search(text))


def is_evidence_tool(name: str) -> bool:
    lowered = name.lower()
    return any(lowered.startswith(prefix) for prefix in EVIDENCE_TOOL_PREFIXES)


def verify_completion(
    prompt: str,
    final_output: str | None,
    files_created: Iterable[str],
    tools_used: Iterable[str],
) -> ContractResult:
    requirements = derive_requirements(prompt)
    failures: list[str] = []
    if requirements.direct_answer and not has_direct_answer(final_output):
        failures.append(MISSING_DIRECT_ANSWER)
    if requirements.artifact and not list(files_created):
        failures.append(MISSING_ARTIFACT_EVIDENCE)
    if requirements.verification and not any(is_evidence_tool(name) for name in tools_used):
        failures.append(MISSING_VERIFICATION_EVIDENCE)
    return ContractResult(satisfied=not failures, failures=failures)


def select_result_summary(*candidates: str | None) -> str | None:
    for candidate in candidates:
        if not candidate:
            continue
        text = candidate.strip()
        if not text or text.lower() in PLACEHOLDER_SUMMARIES:
            continue
        if len(text) < MIN_SUMMARY_CHARS:
            continue
        if len(text) > MAX_SUMMARY_CHARS:
            return text[:MAX_SUMMARY_CHARS] + "..."
        return text
    return None


def should_retain_memory(task: Task) -> bool:
    config = task.agent_config or {}
    explicit = config.get("retain_memory")
    if isinstance(explicit, bool):
        return explicit
    return not (task.agent_type == "sub" or task.parent_task_id)
