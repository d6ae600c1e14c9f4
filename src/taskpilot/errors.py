from __future__ import annotations


class TaskpilotError(Exception):
    """Base class for errors raised by the task engine."""


class BudgetExceededError(TaskpilotError):
    """A guardrail ceiling was reached. Fatal for the current run."""

    def __init__(
        self,
        kind: str,
        current: float,
        limit: float,
        message: str,
        formatted: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.current = current
        self.limit = limit
        self.formatted = formatted


class LLMTimeoutError(TaskpilotError):
    def __init__(self, operation: str, timeout_s: float) -> None:
        seconds = int(timeout_s) if float(timeout_s).is_integer() else timeout_s
        super().__init__(f"{operation} timed out after {seconds}s")
        self.operation = operation
        self.timeout_s = timeout_s


class TaskBusyError(TaskpilotError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is still running; wait for it to finish")
        self.task_id = task_id


class ToolNotFoundError(TaskpilotError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool not found: {name}")
        self.name = name


class ToolInputError(TaskpilotError):
    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Invalid input for {name}: {reason}")
        self.name = name
        self.reason = reason
