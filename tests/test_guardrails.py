import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from taskpilot.config import GuardrailConfig
from taskpilot.errors import BudgetExceededError
from taskpilot.guardrails import BudgetCounters, Guardrails
from taskpilot.pricing import calculate_cost, format_cost, get_model_pricing


class GuardrailTests(unittest.TestCase):
    def test_iteration_limit_reached_at_limit(self) -> None:
        guardrails = Guardrails(GuardrailConfig(max_iterations_per_task=3))
        self.assertFalse(guardrails.check_iterations(2).exceeded)
        self.assertTrue(guardrails.check_iterations(3).exceeded)

    def test_disabled_limits_never_trip(self) -> None:
        guardrails = Guardrails(
            GuardrailConfig(
                max_tokens_per_task=10,
                token_budget_enabled=False,
                max_iterations_per_task=1,
                iteration_limit_enabled=False,
            )
        )
        counters = BudgetCounters(total_input_tokens=500, iteration_count=20)
        guardrails.enforce(counters)

    def test_token_budget_error_carries_values(self) -> None:
        guardrails = Guardrails(GuardrailConfig(max_tokens_per_task=1000))
        counters = BudgetCounters(total_input_tokens=800, total_output_tokens=300)
        with self.assertRaises(BudgetExceededError) as ctx:
            guardrails.enforce(counters)
        self.assertEqual(ctx.exception.kind, "tokens")
        self.assertEqual(ctx.exception.current, 1100)
        self.assertEqual(ctx.exception.limit, 1000)
        self.assertIn("Token budget exceeded: 1,100/1,000 tokens", str(ctx.exception))

    def test_cost_budget_error_is_formatted(self) -> None:
        guardrails = Guardrails(
            GuardrailConfig(cost_budget_enabled=True, max_cost_per_task=0.5)
        )
        counters = BudgetCounters(total_cost=0.75)
        with self.assertRaises(BudgetExceededError) as ctx:
            guardrails.enforce(counters)
        self.assertEqual(ctx.exception.kind, "cost")
        self.assertEqual(ctx.exception.formatted, "$0.75")
        self.assertIn("$0.75/$0.50", str(ctx.exception))

    def test_iterations_checked_before_tokens(self) -> None:
        guardrails = Guardrails(
            GuardrailConfig(max_iterations_per_task=1, max_tokens_per_task=1)
        )
        counters = BudgetCounters(total_input_tokens=5, iteration_count=1)
        with self.assertRaises(BudgetExceededError) as ctx:
            guardrails.enforce(counters)
        self.assertEqual(ctx.exception.kind, "iterations")

    def test_counters_only_grow(self) -> None:
        counters = BudgetCounters()
        counters.record(10, 5, 0.01)
        counters.record(-3, -1, -1.0)
        counters.tick()
        self.assertEqual(counters.total_tokens, 15)
        self.assertAlmostEqual(counters.total_cost, 0.01)
        self.assertEqual(counters.iteration_count, 1)


class PricingTests(unittest.TestCase):
    def test_partial_model_match(self) -> None:
        self.assertIsNotNone(get_model_pricing("gpt-4o-mini-2024-07-18"))

    def test_unknown_model_is_free(self) -> None:
        self.assertEqual(calculate_cost("local-llama", 1_000_000, 1_000_000), 0.0)

    def test_cost_for_known_model(self) -> None:
        cost = calculate_cost("claude-3-5-haiku-latest", 1_000_000, 1_000_000)
        self.assertAlmostEqual(cost, 4.80)

    def test_format_cost(self) -> None:
        self.assertEqual(format_cost(0.0012), "$0.0012")
        self.assertEqual(format_cost(1.234), "$1.23")


if __name__ == "__main__":
    unittest.main()
