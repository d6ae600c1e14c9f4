import errno
import sys
import unittest
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from taskpilot.errors import LLMTimeoutError
from taskpilot.models import TaskStatus
from taskpilot.retry import RetryScheduler, is_transient_provider_error


class CodedError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


class TransientDetectionTests(unittest.TestCase):
    def test_codes_are_transient_regardless_of_message(self) -> None:
        for code in ("ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "EAI_AGAIN", "ECONNREFUSED"):
            self.assertTrue(is_transient_provider_error(CodedError("something odd", code)), code)
            self.assertTrue(is_transient_provider_error({"code": code}), code)

    def test_code_on_cause(self) -> None:
        try:
            try:
                raise CodedError("inner", "ECONNRESET")
            except CodedError as inner:
                raise RuntimeError("request failed") from inner
        except RuntimeError as outer:
            self.assertTrue(is_transient_provider_error(outer))
        self.assertTrue(is_transient_provider_error({"message": "x", "cause": {"code": "EAI_AGAIN"}}))

    def test_message_patterns(self) -> None:
        for message in ("TypeError: fetch failed", "Network unreachable", "Request TIMEOUT", "socket hang up"):
            self.assertTrue(is_transient_provider_error(Exception(message)), message)

    def test_os_and_http_errors(self) -> None:
        self.assertTrue(is_transient_provider_error(OSError(errno.ECONNRESET, "reset")))
        self.assertTrue(is_transient_provider_error(httpx.ConnectError("refused")))
        self.assertTrue(is_transient_provider_error(httpx.ReadTimeout("slow")))

    def test_non_transient(self) -> None:
        for error in (
            None,
            {},
            Exception("Permission denied"),
            Exception("Invalid input: missing field"),
            Exception("Rate limit exceeded"),
            {"message": "validation failed"},
        ):
            self.assertFalse(is_transient_provider_error(error), repr(error))

    def test_llm_timeout_is_not_transient_by_message(self) -> None:
        self.assertFalse(is_transient_provider_error(LLMTimeoutError("LLM call", 120)))


class FakeTimer:
    def __init__(self, delay: float, callback) -> None:
        self.delay = delay
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.callback()


class RecordingHost:
    def __init__(self) -> None:
        self.updates: list[tuple[str, dict]] = []
        self.events: list[tuple[str, str, dict]] = []
        self.released: list[str] = []
        self.requeued: list[str] = []

    def update_task(self, task_id: str, **changes) -> None:
        self.updates.append((task_id, changes))

    def log_event(self, task_id: str, event_type: str, payload: dict) -> None:
        self.events.append((task_id, event_type, payload))

    def release_slot(self, task_id: str) -> None:
        self.released.append(task_id)

    def requeue_task(self, task_id: str) -> None:
        self.requeued.append(task_id)


class RetrySchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.host = RecordingHost()
        self.timers: list[FakeTimer] = []

        def factory(delay, callback):
            timer = FakeTimer(delay, callback)
            self.timers.append(timer)
            return timer

        self.scheduler = RetryScheduler(self.host, max_retries=2, delay_s=30, timer_factory=factory)

    def test_first_failure_schedules_one_timer(self) -> None:
        self.assertTrue(self.scheduler.handle_transient_failure("t1", "socket hang up"))
        self.assertEqual(self.scheduler.retry_count("t1"), 1)
        self.assertEqual(len(self.timers), 1)
        self.assertTrue(self.timers[0].started)
        self.assertEqual(self.timers[0].delay, 30)
        task_id, changes = self.host.updates[0]
        self.assertEqual(changes["status"], TaskStatus.QUEUED)
        self.assertEqual(changes["error"], "Transient provider error. Retry 1/2 in 30s.")
        _, event_type, payload = self.host.events[0]
        self.assertEqual(event_type, "log")
        self.assertEqual(payload["reason"], "socket hang up")
        self.assertEqual(self.host.released, ["t1"])

    def test_second_failure_while_pending_does_not_add_timer(self) -> None:
        self.scheduler.handle_transient_failure("t1", "reset")
        self.assertTrue(self.scheduler.handle_transient_failure("t1", "reset"))
        self.assertEqual(self.scheduler.retry_count("t1"), 2)
        self.assertEqual(len(self.timers), 1)
        self.assertEqual(len(self.host.updates), 1)

    def test_exhausted_retries_leave_count_unchanged(self) -> None:
        self.scheduler.handle_transient_failure("t1", "reset")
        self.timers[0].fire()
        self.scheduler.handle_transient_failure("t1", "reset")
        self.assertFalse(self.scheduler.handle_transient_failure("t1", "reset"))
        self.assertEqual(self.scheduler.retry_count("t1"), 2)

    def test_timer_fire_clears_pending_and_requeues(self) -> None:
        self.scheduler.handle_transient_failure("t1", "reset", delay_s=1.2)
        self.assertTrue(self.scheduler.has_pending("t1"))
        self.assertEqual(self.host.updates[0][1]["error"], "Transient provider error. Retry 1/2 in 2s.")
        self.timers[0].fire()
        self.assertFalse(self.scheduler.has_pending("t1"))
        self.assertEqual(self.host.requeued, ["t1"])

    def test_reset_cancels_pending_timer(self) -> None:
        self.scheduler.handle_transient_failure("t1", "reset")
        self.scheduler.reset("t1")
        self.assertTrue(self.timers[0].cancelled)
        self.assertEqual(self.scheduler.retry_count("t1"), 0)

    def test_tasks_are_tracked_independently(self) -> None:
        self.scheduler.handle_transient_failure("a", "reset")
        self.scheduler.handle_transient_failure("b", "reset")
        self.assertEqual(len(self.timers), 2)
        self.assertEqual(self.scheduler.retry_count("a"), 1)


if __name__ == "__main__":
    unittest.main()
