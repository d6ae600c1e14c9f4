import sqlite3
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from taskpilot.db import Database
from taskpilot.models import Task, TaskEvent, TaskStatus, Workspace


class DatabaseTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db = Database(Path(self._tmp.name) / "nested" / "db.sqlite")
        self.db.initialize()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_connect_context_manager_closes_connection(self) -> None:
        with self.db.connect() as connection:
            connection.execute("SELECT 1")
        with self.assertRaises(sqlite3.ProgrammingError):
            connection.execute("SELECT 1")

    def test_task_round_trip_and_update(self) -> None:
        task = Task(id="t1", title="Title", prompt="Prompt", agent_config={"retain_memory": True})
        self.db.insert_task(task)
        self.db.update_task("t1", status=TaskStatus.FAILED, error="boom", completed_at=10)
        stored = self.db.fetch_task("t1")
        self.assertEqual(stored.status, TaskStatus.FAILED)
        self.assertEqual(stored.error, "boom")
        self.assertEqual(stored.agent_config, {"retain_memory": True})
        self.assertEqual([t.id for t in self.db.list_tasks(TaskStatus.FAILED)], ["t1"])
        self.assertEqual(self.db.list_tasks(TaskStatus.QUEUED), [])
        self.assertIsNone(self.db.fetch_task("missing"))

    def test_update_rejects_unknown_columns(self) -> None:
        self.db.insert_task(Task(id="t1", title="t", prompt="p"))
        with self.assertRaises(ValueError):
            self.db.update_task("t1", id="other")

    def test_workspace_round_trip(self) -> None:
        workspace = Workspace(id="w", path="/tmp/ws", permissions={"read": True, "shell": False})
        self.db.insert_workspace(workspace)
        self.assertEqual(self.db.fetch_workspace("w"), workspace)
        self.assertIsNone(self.db.fetch_workspace("nope"))

    def test_events_are_ordered_and_filtered(self) -> None:
        self.db.insert_event(TaskEvent("b", "t1", "log", {"message": "second"}, 5))
        self.db.insert_event(TaskEvent("a", "t1", "log", {"message": "first"}, 1))
        self.db.insert_event(TaskEvent("c", "t1", "conversation_snapshot", {}, 5))
        self.db.insert_event(TaskEvent("d", "t2", "log", {}, 0))
        self.assertEqual([e.id for e in self.db.list_events("t1")], ["a", "b", "c"])
        self.assertEqual([e.id for e in self.db.list_events("t1", "log")], ["a", "b"])
        self.assertEqual(self.db.delete_events(["a", "c"]), 2)
        self.assertEqual(self.db.delete_events([]), 0)
        self.assertEqual([e.id for e in self.db.list_events("t1")], ["b"])


if __name__ == "__main__":
    unittest.main()
