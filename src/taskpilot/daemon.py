from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from typing import Any, Callable

from taskpilot.config import AppConfig, Paths
from taskpilot.db import Database
from taskpilot.errors import TaskBusyError
from taskpilot.executor import RegistryFactory, TaskExecutor
from taskpilot.llm import LLMProvider
from taskpilot.models import Task, TaskEvent, TaskStatus, Workspace, now_ms
from taskpilot.retry import RetryScheduler, TimerFactory, thread_timer
from taskpilot.snapshots import SNAPSHOT_EVENT_TYPE, Snapshot, find_snapshots_to_prune

logger = logging.getLogger(__name__)

Spawn = Callable[[Callable[[], None]], Any]
SETTLED_STATUSES = {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}


def _thread_spawn(target: Callable[[], None]) -> threading.Thread:
    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread


class TaskQueueManager:
    """Start queued tasks while fewer than ``max_concurrent`` are running."""

    def __init__(self, max_concurrent: int, start: Callable[[str], None]) -> None:
        self.max_concurrent = max_concurrent
        self._start = start
        self._lock = threading.Lock()
        self._pending: deque[str] = deque()
        self._running: set[str] = set()

    def enqueue(self, task_id: str) -> None:
        with self._lock:
            if task_id in self._running or task_id in self._pending:
                return
            self._pending.append(task_id)
        self._drain()

    def on_task_finished(self, task_id: str) -> None:
        with self._lock:
            self._running.discard(task_id)
        self._drain()

    def remove(self, task_id: str) -> None:
        with self._lock:
            if task_id in self._pending:
                self._pending.remove(task_id)

    def running(self) -> set[str]:
        with self._lock:
            return set(self._running)

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._pending or len(self._running) >= self.max_concurrent:
                    return
                task_id = self._pending.popleft()
                self._running.add(task_id)
            self._start(task_id)


class AgentDaemon:
    def __init__(
        self,
        db: Database,
        paths: Paths,
        config: AppConfig,
        provider: LLMProvider,
        registry_factory: RegistryFactory | None = None,
        spawn: Spawn = _thread_spawn,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.db = db
        self.paths = paths
        self.config = config
        self.provider = provider
        self.registry_factory = registry_factory
        self.spawn = spawn
        self.queue = TaskQueueManager(config.daemon.max_concurrent_tasks, self._launch)
        self.retries = RetryScheduler(
            self,
            max_retries=config.daemon.max_task_retries,
            delay_s=config.daemon.retry_delay_s,
            timer_factory=timer_factory,
        )
        self._executors: dict[str, TaskExecutor] = {}
        # task id -> token of the launch that currently holds a queue slot
        self._slots: dict[str, str] = {}
        self._lock = threading.Lock()
        self._changed = threading.Condition()

    # -- task lifecycle ------------------------------------------------

    def create_task(
        self,
        title: str,
        prompt: str,
        workspace_id: str | None = None,
        parent_task_id: str | None = None,
        agent_type: str | None = None,
        agent_config: dict[str, Any] | None = None,
        max_attempts: int = 1,
    ) -> Task:
        task = Task(
            id=str(uuid.uuid4()),
            title=title,
            prompt=prompt,
            workspace_id=workspace_id,
            parent_task_id=parent_task_id,
            agent_type=agent_type,
            agent_config=agent_config,
            max_attempts=max_attempts,
        )
        self.db.insert_task(task)
        self.log_event(task.id, "task_created", {"title": title, "prompt": prompt})
        return task

    def start_task(self, task_id: str) -> None:
        self.queue.enqueue(task_id)

    def cancel_task(self, task_id: str) -> None:
        self.queue.remove(task_id)
        self.retries.reset(task_id)
        executor = self._executor(task_id)
        if executor is not None:
            executor.cancel()
        self.update_task(task_id, status=TaskStatus.CANCELLED, completed_at=now_ms())
        self.log_event(task_id, "task_cancelled", {"message": "Task cancelled by user"})

    def pause_task(self, task_id: str) -> bool:
        executor = self._executor(task_id)
        if executor is None:
            return False
        executor.pause()
        return True

    def resume_task(self, task_id: str) -> bool:
        executor = self._executor(task_id)
        if executor is None:
            return False
        executor.resume()
        return True

    def send_message(self, task_id: str, text: str) -> None:
        """Deliver a follow-up, rebuilding the executor from the event log if needed."""

        task = self.db.fetch_task(task_id)
        if task is None:
            raise KeyError(f"Unknown task: {task_id}")
        if self._is_busy(task_id):
            raise TaskBusyError(task_id)
        executor = self._build_executor(task)
        executor.rebuild_conversation_from_events(self.db.list_events(task_id))
        with self._lock:
            # Re-checked under the lock: one executor per task at a time.
            if task_id in self._executors or task_id in self._slots:
                raise TaskBusyError(task_id)
            self._executors[task_id] = executor

        def run() -> None:
            try:
                executor.send_message(text)
            finally:
                self._forget(task_id, executor)

        self.spawn(run)

    def wait_for_task(self, task_id: str, timeout: float | None = None) -> Task | None:
        with self._changed:
            self._changed.wait_for(lambda: self._is_settled(task_id), timeout=timeout)
        return self.db.fetch_task(task_id)

    def shutdown(self) -> None:
        self.retries.shutdown()
        with self._lock:
            executors = list(self._executors.values())
        for executor in executors:
            executor.cancel()

    # -- host interface used by executors and the retry scheduler -------

    def log_event(self, task_id: str, event_type: str, payload: dict[str, Any]) -> None:
        event = TaskEvent(
            id=str(uuid.uuid4()),
            task_id=task_id,
            type=event_type,
            payload=payload,
            timestamp=now_ms(),
        )
        self.db.insert_event(event)
        if event_type == SNAPSHOT_EVENT_TYPE:
            self.prune_snapshots(task_id)

    def prune_snapshots(self, task_id: str) -> int:
        snapshots = [
            Snapshot(id=event.id, timestamp=int(event.payload.get("timestamp") or event.timestamp))
            for event in self.db.list_events(task_id, SNAPSHOT_EVENT_TYPE)
        ]
        return self.db.delete_events(find_snapshots_to_prune(snapshots))

    def update_task_status(self, task_id: str, status: TaskStatus) -> None:
        self.update_task(task_id, status=status)

    def update_task(self, task_id: str, **changes: Any) -> None:
        self.db.update_task(task_id, **changes)
        if "status" in changes:
            self.log_event(task_id, "status_changed", {"status": TaskStatus(changes["status"]).value})
        self._notify()

    def complete_task(self, task_id: str, summary: str | None = None) -> None:
        self.retries.reset(task_id)
        self.update_task(
            task_id,
            status=TaskStatus.COMPLETED,
            result_summary=summary,
            error=None,
            completed_at=now_ms(),
        )
        self.log_event(task_id, "task_completed", {"summary": summary})

    def handle_transient_task_failure(
        self, task_id: str, reason: str, delay_s: float | None = None
    ) -> bool:
        return self.retries.handle_transient_failure(task_id, reason, delay_s)

    def release_slot(self, task_id: str) -> None:
        with self._lock:
            self._executors.pop(task_id, None)
            released = self._slots.pop(task_id, None) is not None
        if released:
            self.queue.on_task_finished(task_id)

    def requeue_task(self, task_id: str) -> None:
        task = self.db.fetch_task(task_id)
        if task is None or task.status != TaskStatus.QUEUED:
            return
        self.queue.enqueue(task_id)

    # -- internals -----------------------------------------------------

    def _launch(self, task_id: str) -> None:
        run_id = uuid.uuid4().hex
        with self._lock:
            self._slots[task_id] = run_id
        self.spawn(lambda: self._run_task(task_id, run_id))

    def _run_task(self, task_id: str, run_id: str) -> None:
        executor: TaskExecutor | None = None
        try:
            task = self.db.fetch_task(task_id)
            if task is None or task.status == TaskStatus.CANCELLED:
                return
            task.current_attempt += 1
            self.db.update_task(task_id, current_attempt=task.current_attempt, error=None)
            executor = self._build_executor(task)
            with self._lock:
                self._executors[task_id] = executor
            logger.info("Starting task %s (attempt %d)", task_id, task.current_attempt)
            executor.execute()
        except Exception:
            logger.exception("Task %s crashed outside the executor", task_id)
            self.update_task(task_id, status=TaskStatus.FAILED, error="Internal error")
        finally:
            if executor is not None:
                self._forget(task_id, executor)
            # A retry may have released this slot and relaunched the task already.
            with self._lock:
                owned = self._slots.get(task_id) == run_id
                if owned:
                    del self._slots[task_id]
            if owned:
                self.queue.on_task_finished(task_id)
            self._notify()

    def _build_executor(self, task: Task) -> TaskExecutor:
        return TaskExecutor(
            task=task,
            workspace=self._workspace_for(task),
            host=self,
            provider=self.provider,
            llm_settings=self.config.llm,
            settings=self.config.executor,
            guardrails=self.config.guardrails,
            tool_settings=self.config.tools,
            registry_factory=self.registry_factory,
            logs_dir=self.paths.logs_dir,
        )

    def _workspace_for(self, task: Task) -> Workspace:
        if task.workspace_id:
            workspace = self.db.fetch_workspace(task.workspace_id)
            if workspace is not None:
                return workspace
        self.paths.workspace_dir.mkdir(parents=True, exist_ok=True)
        return Workspace(id="default", path=str(self.paths.workspace_dir))

    def _executor(self, task_id: str) -> TaskExecutor | None:
        with self._lock:
            return self._executors.get(task_id)

    def _is_busy(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._executors or task_id in self._slots

    def _forget(self, task_id: str, executor: TaskExecutor) -> None:
        with self._lock:
            if self._executors.get(task_id) is executor:
                del self._executors[task_id]
        self._notify()

    def _is_settled(self, task_id: str) -> bool:
        task = self.db.fetch_task(task_id)
        if task is None:
            return True
        if self.retries.has_pending(task_id) or self._executor(task_id) is not None:
            return False
        return task.status in SETTLED_STATUSES

    def _notify(self) -> None:
        with self._changed:
            self._changed.notify_all()
