import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from taskpilot.completion import (
    PLACEHOLDER_SUMMARIES,
    select_result_summary,
    should_retain_memory,
    verify_completion,
)
from taskpilot.models import Task

RECOMMENDATION = (
    "Yes, you should watch it. The video gives a clear walkthrough of the setup "
    "and the examples are worth the time because they match your use case."
)


class CompletionContractTests(unittest.TestCase):
    def test_artifact_reference_is_not_a_direct_answer(self) -> None:
        result = verify_completion(
            "Transcribe https://youtu.be/abc and let me know if I should watch it or skip it.",
            "Created: review.pdf",
            ["review.pdf"],
            ["web_fetch"],
        )
        self.assertFalse(result.satisfied)
        self.assertIn("missing direct answer", result.reason)

    def test_claimed_file_without_evidence(self) -> None:
        result = verify_completion(
            "Create a PDF report summarizing last quarter's sales.",
            "I created the report and saved it as report.pdf.",
            [],
            [],
        )
        self.assertFalse(result.satisfied)
        self.assertIn("missing artifact evidence", result.reason)

    def test_recommendation_without_evidence_tool(self) -> None:
        prompt = "Transcribe this YouTube video and then let me know if I should watch it."
        result = verify_completion(prompt, RECOMMENDATION, [], [])
        self.assertFalse(result.satisfied)
        self.assertIn("missing verification evidence", result.reason)

        grounded = verify_completion(prompt, RECOMMENDATION, [], ["write_file", "web_fetch"])
        self.assertTrue(grounded.satisfied)

    def test_document_with_recommendation_completes(self) -> None:
        result = verify_completion(
            "Create a PDF review document for this movie and tell me whether I should watch it.",
            RECOMMENDATION,
            ["review.pdf"],
            [],
        )
        self.assertTrue(result.satisfied)

    def test_document_is_supplementary_to_recommendation(self) -> None:
        result = verify_completion(
            "Transcribe this YouTube video and create a document with the notes, "
            "then tell me if I should watch it.",
            RECOMMENDATION,
            [],
            [],
        )
        self.assertTrue(result.satisfied)

    def test_plain_chat_completes(self) -> None:
        result = verify_completion("Explain what a monad is.", "A monad is...", [], [])
        self.assertTrue(result.satisfied)

    def test_failures_are_joined(self) -> None:
        result = verify_completion(
            "Research the reviews and tell me if I should buy it.",
            "Created: notes.md",
            [],
            [],
        )
        self.assertEqual(
            result.reason,
            "Completion contract not satisfied: missing direct answer; missing verification evidence",
        )


class SummarySelectionTests(unittest.TestCase):
    def test_placeholders_are_skipped_in_any_position(self) -> None:
        for placeholder in PLACEHOLDER_SUMMARIES:
            self.assertIsNone(select_result_summary(placeholder.upper(), None, placeholder))
        self.assertEqual(
            select_result_summary("Done.", "All set.", "The migration finished cleanly."),
            "The migration finished cleanly.",
        )

    def test_length_boundary(self) -> None:
        self.assertEqual(select_result_summary("a" * 21), "a" * 21)
        self.assertEqual(select_result_summary("a" * 20), "a" * 20)
        self.assertIsNone(select_result_summary("a" * 19))

    def test_whitespace_is_trimmed(self) -> None:
        self.assertEqual(select_result_summary("   " + "b" * 25 + "\n"), "b" * 25)
        self.assertIsNone(select_result_summary("   ", "", None))

    def test_long_output_is_truncated(self) -> None:
        summary = select_result_summary("x" * 5000, None, None)
        self.assertEqual(len(summary), 4003)
        self.assertTrue(summary.endswith("..."))


class RetainMemoryTests(unittest.TestCase):
    def test_sub_agents_do_not_retain_by_default(self) -> None:
        task = Task(id="1", title="t", prompt="p", agent_type="sub", parent_task_id="p")
        self.assertFalse(should_retain_memory(task))
        child = Task(id="2", title="t", prompt="p", parent_task_id="p")
        self.assertFalse(should_retain_memory(child))

    def test_main_agents_retain(self) -> None:
        self.assertTrue(should_retain_memory(Task(id="1", title="t", prompt="p", agent_type="main")))

    def test_explicit_config_overrides(self) -> None:
        sub = Task(
            id="1",
            title="t",
            prompt="p",
            agent_type="sub",
            agent_config={"retain_memory": True},
        )
        self.assertTrue(should_retain_memory(sub))
        main = Task(id="2", title="t", prompt="p", agent_config={"retain_memory": False})
        self.assertFalse(should_retain_memory(main))


if __name__ == "__main__":
    unittest.main()
