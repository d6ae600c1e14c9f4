from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from taskpilot.models import Task, TaskEvent, TaskStatus, Workspace

SCHEMA = """
CREATE TABLE IF NOT EXISTS workspaces (
  id TEXT PRIMARY KEY,
  path TEXT NOT NULL,
  permissions TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
  id TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  prompt TEXT NOT NULL,
  created_at INTEGER NOT NULL,
  workspace_id TEXT,
  status TEXT NOT NULL,
  current_attempt INTEGER DEFAULT 0,
  max_attempts INTEGER DEFAULT 1,
  parent_task_id TEXT,
  agent_type TEXT,
  agent_config TEXT,
  error TEXT,
  result_summary TEXT,
  completed_at INTEGER
);

CREATE TABLE IF NOT EXISTS task_events (
  id TEXT PRIMARY KEY,
  task_id TEXT NOT NULL,
  type TEXT NOT NULL,
  payload TEXT NOT NULL,
  timestamp INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_task_events_task ON task_events (task_id, timestamp);
"""

_TASK_COLUMNS = (
    "title",
    "prompt",
    "workspace_id",
    "status",
    "current_attempt",
    "max_attempts",
    "parent_task_id",
    "agent_type",
    "agent_config",
    "error",
    "result_summary",
    "completed_at",
)


def _encode(column: str, value: Any) -> Any:
    if column == "status" and isinstance(value, TaskStatus):
        return value.value
    if column == "agent_config" and value is not None:
        return json.dumps(value)
    return value


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        prompt=row["prompt"],
        created_at=row["created_at"],
        workspace_id=row["workspace_id"],
        status=TaskStatus(row["status"]),
        current_attempt=row["current_attempt"],
        max_attempts=row["max_attempts"],
        parent_task_id=row["parent_task_id"],
        agent_type=row["agent_type"],
        agent_config=json.loads(row["agent_config"]) if row["agent_config"] else None,
        error=row["error"],
        result_summary=row["result_summary"],
        completed_at=row["completed_at"],
    )


def _row_to_event(row: sqlite3.Row) -> TaskEvent:
    try:
        payload = json.loads(row["payload"])
    except json.JSONDecodeError:
        payload = {}
    return TaskEvent(
        id=row["id"],
        task_id=row["task_id"],
        type=row["type"],
        payload=payload if isinstance(payload, dict) else {},
        timestamp=row["timestamp"],
    )


@dataclass
class Database:
    path: Path

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self.path)
        connection.row_factory = sqlite3.Row
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def initialize(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as connection:
            connection.executescript(SCHEMA)

    def insert_workspace(self, workspace: Workspace) -> None:
        with self.connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO workspaces (id, path, permissions) VALUES (?, ?, ?)",
                (workspace.id, workspace.path, json.dumps(workspace.permissions)),
            )

    def fetch_workspace(self, workspace_id: str) -> Workspace | None:
        with self.connect() as connection:
            row = connection.execute(
                "SELECT * FROM workspaces WHERE id = ?", (workspace_id,)
            ).fetchone()
        if row is None:
            return None
        return Workspace(id=row["id"], path=row["path"], permissions=json.loads(row["permissions"]))

    def insert_task(self, task: Task) -> None:
        with self.connect() as connection:
            connection.execute(
                """
                INSERT INTO tasks (
                    id, title, prompt, created_at, workspace_id, status,
                    current_attempt, max_attempts, parent_task_id, agent_type,
                    agent_config, error, result_summary, completed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.title,
                    task.prompt,
                    task.created_at,
                    task.workspace_id,
                    task.status.value,
                    task.current_attempt,
                    task.max_attempts,
                    task.parent_task_id,
                    task.agent_type,
                    _encode("agent_config", task.agent_config),
                    task.error,
                    task.result_summary,
                    task.completed_at,
                ),
            )

    def fetch_task(self, task_id: str) -> Task | None:
        with self.connect() as connection:
            row = connection.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        with self.connect() as connection:
            if status is None:
                rows = connection.execute("SELECT * FROM tasks ORDER BY created_at ASC").fetchall()
            else:
                rows = connection.execute(
                    "SELECT * FROM tasks WHERE status = ? ORDER BY created_at ASC",
                    (status.value,),
                ).fetchall()
        return [_row_to_task(row) for row in rows]

    def update_task(self, task_id: str, **changes: Any) -> None:
        unknown = set(changes) - set(_TASK_COLUMNS)
        if unknown:
            raise ValueError(f"unknown task fields: {', '.join(sorted(unknown))}")
        if not changes:
            return
        assignments = ", ".join(f"{column} = ?" for column in changes)
        values = [_encode(column, value) for column, value in changes.items()]
        with self.connect() as connection:
            connection.execute(
                f"UPDATE tasks SET {assignments} WHERE id = ?", (*values, task_id)
            )

    def insert_event(self, event: TaskEvent) -> None:
        with self.connect() as connection:
            connection.execute(
                "INSERT INTO task_events (id, task_id, type, payload, timestamp) VALUES (?, ?, ?, ?, ?)",
                (
                    event.id,
                    event.task_id,
                    event.type,
                    json.dumps(event.payload, default=str),
                    event.timestamp,
                ),
            )

    def list_events(self, task_id: str, event_type: str | None = None) -> list[TaskEvent]:
        with self.connect() as connection:
            if event_type is None:
                rows = connection.execute(
                    "SELECT * FROM task_events WHERE task_id = ? ORDER BY timestamp ASC, rowid ASC",
                    (task_id,),
                ).fetchall()
            else:
                rows = connection.execute(
                    """
                    SELECT * FROM task_events WHERE task_id = ? AND type = ?
                    ORDER BY timestamp ASC, rowid ASC
                    """,
                    (task_id, event_type),
                ).fetchall()
        return [_row_to_event(row) for row in rows]

    def delete_events(self, event_ids: list[str]) -> int:
        if not event_ids:
            return 0
        placeholders = ", ".join("?" for _ in event_ids)
        with self.connect() as connection:
            cursor = connection.execute(
                f"DELETE FROM task_events WHERE id IN ({placeholders})", event_ids
            )
            return cursor.rowcount
