"""Per-tool circuit breaker.

Failures are classified, in priority order, as input-dependent (bad input,
ignored), non-retryable (quota, rate limits, billing: disable at once) or
systemic (counted; the tool is disabled at ``max_failures``). Disabling is a
one-way latch for the lifetime of the tracker.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

MAX_TOOL_FAILURES = 2

_NON_RETRYABLE_PATTERNS = (
    re.compile(r"quota.*exceeded", re.IGNORECASE),
    re.compile(r"rate.*limit", re.IGNORECASE),
    re.compile(r"exceeded.*quota", re.IGNORECASE),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"429"),
    re.compile(r"resource.*exhausted", re.IGNORECASE),
    re.compile(r"billing", re.IGNORECASE),
    re.compile(r"payment.*required", re.IGNORECASE),
)

_INPUT_DEPENDENT_PATTERNS = (
    re.compile(r"ENOENT", re.IGNORECASE),
    re.compile(r"ENOTDIR", re.IGNORECASE),
    re.compile(r"EISDIR", re.IGNORECASE),
    re.compile(r"no such file", re.IGNORECASE),
    re.compile(r"not found", re.IGNORECASE),
    re.compile(r"does not exist", re.IGNORECASE),
    re.compile(r"invalid path", re.IGNORECASE),
    re.compile(r"path.*invalid", re.IGNORECASE),
    re.compile(r"invalid input", re.IGNORECASE),
    re.compile(r"cannot find", re.IGNORECASE),
    re.compile(r"permission denied", re.IGNORECASE),
    re.compile(r"EACCES", re.IGNORECASE),
    re.compile(r"outside the (allowed|workspace) root", re.IGNORECASE),
)


class FailureKind(str, Enum):
    INPUT_DEPENDENT = "input_dependent"
    NON_RETRYABLE = "non_retryable"
    SYSTEMIC = "systemic"


def is_input_dependent_error(message: str) -> bool:
    return any(pattern.search(message) for pattern in _INPUT_DEPENDENT_PATTERNS)


def is_non_retryable_error(message: str) -> bool:
    return any(pattern.search(message) for pattern in _NON_RETRYABLE_PATTERNS)


def classify_tool_error(message: str) -> FailureKind:
    if is_input_dependent_error(message):
        return FailureKind.INPUT_DEPENDENT
    if is_non_retryable_error(message):
        return FailureKind.NON_RETRYABLE
    return FailureKind.SYSTEMIC


@dataclass
class ToolFailureRecord:
    count: int
    last_error: str


class ToolFailureTracker:
    def __init__(self, max_failures: int = MAX_TOOL_FAILURES) -> None:
        self.max_failures = max_failures
        self._failures: dict[str, ToolFailureRecord] = {}
        self._disabled: set[str] = set()
        self._disable_reasons: dict[str, str] = {}

    def record_failure(self, tool_name: str, error_message: str) -> bool:
        """Record a failure. Returns True when this failure disabled the tool."""

        kind = classify_tool_error(error_message)
        if kind == FailureKind.INPUT_DEPENDENT:
            logger.debug(
                "Ignoring input-dependent error for %s: %s", tool_name, error_message[:80]
            )
            return False
        if kind == FailureKind.NON_RETRYABLE:
            self._disable(tool_name, error_message)
            logger.warning(
                "Tool %s disabled due to non-retryable error: %s",
                tool_name,
                error_message[:100],
            )
            return True
        record = self._failures.setdefault(tool_name, ToolFailureRecord(count=0, last_error=""))
        record.count += 1
        record.last_error = error_message
        if record.count >= self.max_failures:
            self._disable(tool_name, error_message)
            logger.warning(
                "Tool %s disabled after %d consecutive systemic failures",
                tool_name,
                record.count,
            )
            return True
        return False

    def record_success(self, tool_name: str) -> None:
        self._failures.pop(tool_name, None)

    def is_disabled(self, tool_name: str) -> bool:
        return tool_name in self._disabled

    def failure_count(self, tool_name: str) -> int:
        record = self._failures.get(tool_name)
        return record.count if record else 0

    def get_last_error(self, tool_name: str) -> str | None:
        record = self._failures.get(tool_name)
        if record is not None:
            return record.last_error
        return self._disable_reasons.get(tool_name)

    def disabled_tools(self) -> list[str]:
        return sorted(self._disabled)

    def _disable(self, tool_name: str, reason: str) -> None:
        self._disabled.add(tool_name)
        self._disable_reasons[tool_name] = reason
