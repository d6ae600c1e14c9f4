from __future__ import annotations

import errno
import logging
import math
import threading
from collections.abc import Mapping
from typing import Any, Callable, Protocol

import httpx

from taskpilot.models import TaskStatus

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = frozenset(
    {"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "EAI_AGAIN", "ECONNREFUSED"}
)
TRANSIENT_MESSAGE_PATTERNS = ("fetch failed", "network", "timeout", "socket hang up")

_ERRNO_NAMES = {
    errno.ECONNRESET: "ECONNRESET",
    errno.ETIMEDOUT: "ETIMEDOUT",
    errno.ECONNREFUSED: "ECONNREFUSED",
}


def _error_code(error: Any) -> str | None:
    if isinstance(error, Mapping):
        code = error.get("code")
        return code if isinstance(code, str) else None
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    number = getattr(error, "errno", None)
    if isinstance(number, int):
        return _ERRNO_NAMES.get(number)
    return None


def _error_message(error: Any) -> str:
    if isinstance(error, Mapping):
        message = error.get("message")
        return message if isinstance(message, str) else ""
    if isinstance(error, BaseException):
        return str(error)
    if isinstance(error, str):
        return error
    return ""


def is_transient_provider_error(error: Any) -> bool:
    """True for network-level failures that are likely to succeed on retry."""

    if error is None:
        return False
    if isinstance(error, (httpx.NetworkError, httpx.TimeoutException, ConnectionError)):
        return True
    cause = error.get("cause") if isinstance(error, Mapping) else getattr(error, "__cause__", None)
    for candidate in (error, cause):
        if candidate is not None and _error_code(candidate) in TRANSIENT_ERROR_CODES:
            return True
    message = _error_message(error).lower()
    return any(pattern in message for pattern in TRANSIENT_MESSAGE_PATTERNS)


class RetryHost(Protocol):
    def update_task(self, task_id: str, **changes: Any) -> None:
        ...

    def log_event(self, task_id: str, event_type: str, payload: dict[str, Any]) -> None:
        ...

    def release_slot(self, task_id: str) -> None:
        ...

    def requeue_task(self, task_id: str) -> None:
        ...


TimerFactory = Callable[[float, Callable[[], None]], Any]


def thread_timer(delay_s: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay_s, callback)
    timer.daemon = True
    return timer


class RetryScheduler:
    """Per-task retry counts and at most one pending retry timer per task."""

    def __init__(
        self,
        host: RetryHost,
        max_retries: int = 2,
        delay_s: float = 30.0,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.host = host
        self.max_retries = max_retries
        self.delay_s = delay_s
        self.timer_factory = timer_factory
        self._lock = threading.Lock()
        self._counts: dict[str, int] = {}
        self._pending: dict[str, Any] = {}

    def retry_count(self, task_id: str) -> int:
        with self._lock:
            return self._counts.get(task_id, 0)

    def has_pending(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._pending

    def reset(self, task_id: str) -> None:
        with self._lock:
            self._counts.pop(task_id, None)
            timer = self._pending.pop(task_id, None)
        if timer is not None:
            timer.cancel()

    def handle_transient_failure(
        self, task_id: str, reason: str, delay_s: float | None = None
    ) -> bool:
        """Schedule a retry. Returns False once the retry ceiling is exhausted."""

        delay = self.delay_s if delay_s is None else delay_s
        with self._lock:
            attempt = self._counts.get(task_id, 0) + 1
            if attempt > self.max_retries:
                return False
            self._counts[task_id] = attempt
            if task_id in self._pending:
                return True
            timer = self.timer_factory(delay, lambda: self._fire(task_id))
            self._pending[task_id] = timer

        seconds = math.ceil(delay)
        self.host.update_task(
            task_id,
            status=TaskStatus.QUEUED,
            error=f"Transient provider error. Retry {attempt}/{self.max_retries} in {seconds}s.",
        )
        self.host.log_event(
            task_id,
            "log",
            {
                "message": (
                    "Transient provider error detected. "
                    f"Scheduling retry {attempt}/{self.max_retries} in {seconds}s."
                ),
                "reason": reason,
            },
        )
        self.host.release_slot(task_id)
        logger.warning(
            "Task %s hit a transient provider error; retry %d/%d in %ss: %s",
            task_id,
            attempt,
            self.max_retries,
            seconds,
            reason,
        )
        timer.start()
        return True

    def _fire(self, task_id: str) -> None:
        with self._lock:
            self._pending.pop(task_id, None)
        logger.info("Retrying task %s", task_id)
        self.host.requeue_task(task_id)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._pending.values())
            self._pending.clear()
        for timer in timers:
            timer.cancel()
