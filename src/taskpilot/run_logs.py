from __future__ import annotations

import json
from pathlib import Path
from typing import Any

RUN_LOG_NAME = "runs.log"


def append_run_log(logs_dir: Path, entry: dict[str, Any]) -> None:
    logs_dir.mkdir(parents=True, exist_ok=True)
    with (logs_dir / RUN_LOG_NAME).open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, default=str) + "\n")


def _iter_entries(logs_dir: Path) -> list[dict[str, Any]]:
    path = logs_dir / RUN_LOG_NAME
    if not path.exists():
        return []
    entries: list[dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            entries.append(payload)
    return entries


def read_recent_logs(logs_dir: Path, limit: int = 50) -> list[dict[str, Any]]:
    return _iter_entries(logs_dir)[-limit:]


def latest_metrics_for_task(logs_dir: Path, task_id: str) -> dict[str, Any] | None:
    for payload in reversed(_iter_entries(logs_dir)):
        if payload.get("task_id") == task_id and payload.get("kind", "run") == "run":
            return payload
    return None
