from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    QUEUED = "queued"
    PLANNING = "planning"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STEP_STATUSES = {StepStatus.COMPLETED, StepStatus.FAILED}


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Workspace:
    id: str
    path: str
    permissions: dict[str, bool] = field(
        default_factory=lambda: {
            "read": True,
            "write": True,
            "delete": False,
            "network": True,
            "shell": False,
        }
    )


@dataclass
class Task:
    id: str
    title: str
    prompt: str
    created_at: int = field(default_factory=now_ms)
    workspace_id: str | None = None
    status: TaskStatus = TaskStatus.QUEUED
    current_attempt: int = 0
    max_attempts: int = 1
    parent_task_id: str | None = None
    agent_type: str | None = None
    agent_config: dict[str, Any] | None = None
    error: str | None = None
    result_summary: str | None = None
    completed_at: int | None = None


@dataclass
class PlanStep:
    id: str
    description: str
    status: StepStatus = StepStatus.PENDING
    started_at: int | None = None
    completed_at: int | None = None
    error: str | None = None

    def start(self) -> None:
        if self.status != StepStatus.PENDING:
            raise RuntimeError(f"Step {self.id} already {self.status.value}")
        self.status = StepStatus.IN_PROGRESS
        self.started_at = now_ms()

    def complete(self) -> None:
        self.status = StepStatus.COMPLETED
        self.completed_at = now_ms()

    def fail(self, error: str) -> None:
        self.status = StepStatus.FAILED
        self.error = error
        self.completed_at = now_ms()

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return {key: value for key, value in payload.items() if value is not None}


@dataclass
class Plan:
    description: str
    steps: list[PlanStep]

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass(frozen=True)
class TaskEvent:
    id: str
    task_id: str
    type: str
    payload: dict[str, Any]
    timestamp: int
