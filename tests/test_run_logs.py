import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from taskpilot.run_logs import append_run_log, latest_metrics_for_task, read_recent_logs


class RunLogsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.logs_dir = Path(self.temp_dir.name) / "logs"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_append_and_read_logs(self) -> None:
        append_run_log(self.logs_dir, {"task_id": "t1", "kind": "run", "iterations": 2})
        append_run_log(self.logs_dir, {"task_id": "t2", "kind": "run", "iterations": 3})
        entries = read_recent_logs(self.logs_dir, limit=10)
        self.assertEqual(len(entries), 2)
        self.assertEqual(entries[0]["task_id"], "t1")
        self.assertEqual(read_recent_logs(self.logs_dir, limit=1)[0]["task_id"], "t2")

    def test_latest_metrics_skip_memory_entries(self) -> None:
        append_run_log(self.logs_dir, {"task_id": "t1", "kind": "run", "iterations": 1})
        append_run_log(self.logs_dir, {"task_id": "t1", "kind": "run", "iterations": 4})
        append_run_log(self.logs_dir, {"task_id": "t1", "kind": "memory", "summary": "x"})
        metrics = latest_metrics_for_task(self.logs_dir, "t1")
        self.assertEqual(metrics["iterations"], 4)
        self.assertIsNone(latest_metrics_for_task(self.logs_dir, "t9"))

    def test_missing_log_file(self) -> None:
        self.assertEqual(read_recent_logs(self.logs_dir), [])


if __name__ == "__main__":
    unittest.main()
