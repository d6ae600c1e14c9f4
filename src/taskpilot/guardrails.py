from __future__ import annotations

from dataclasses import dataclass

from taskpilot.config import GuardrailConfig
from taskpilot.errors import BudgetExceededError
from taskpilot.pricing import format_cost


@dataclass(frozen=True)
class BudgetCheck:
    exceeded: bool
    current: float
    limit: float


@dataclass
class BudgetCounters:
    """Running totals for one executor. Only ever incremented."""

    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    iteration_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    def record(self, input_tokens: int, output_tokens: int, cost: float) -> None:
        self.total_input_tokens += max(0, input_tokens)
        self.total_output_tokens += max(0, output_tokens)
        self.total_cost += max(0.0, cost)

    def tick(self) -> None:
        self.iteration_count += 1


class Guardrails:
    def __init__(self, config: GuardrailConfig | None = None) -> None:
        self.config = config or GuardrailConfig()

    def check_iterations(self, iterations: int) -> BudgetCheck:
        limit = self.config.max_iterations_per_task
        exceeded = self.config.iteration_limit_enabled and iterations >= limit
        return BudgetCheck(exceeded=exceeded, current=iterations, limit=limit)

    def check_tokens(self, tokens_used: int) -> BudgetCheck:
        limit = self.config.max_tokens_per_task
        exceeded = self.config.token_budget_enabled and tokens_used >= limit
        return BudgetCheck(exceeded=exceeded, current=tokens_used, limit=limit)

    def check_cost(self, cost: float) -> BudgetCheck:
        limit = self.config.max_cost_per_task
        exceeded = self.config.cost_budget_enabled and cost >= limit
        return BudgetCheck(exceeded=exceeded, current=cost, limit=limit)

    def enforce(self, counters: BudgetCounters) -> None:
        """Raise ``BudgetExceededError`` for the first ceiling that has been reached."""

        iteration_check = self.check_iterations(counters.iteration_count)
        if iteration_check.exceeded:
            raise BudgetExceededError(
                kind="iterations",
                current=iteration_check.current,
                limit=iteration_check.limit,
                message=(
                    f"Iteration limit exceeded: {int(iteration_check.current)}/"
                    f"{int(iteration_check.limit)} iterations. "
                    "Task stopped to prevent runaway execution."
                ),
            )
        total_tokens = counters.total_tokens
        token_check = self.check_tokens(total_tokens)
        if token_check.exceeded:
            raise BudgetExceededError(
                kind="tokens",
                current=token_check.current,
                limit=token_check.limit,
                message=(
                    f"Token budget exceeded: {int(token_check.current):,}/"
                    f"{int(token_check.limit):,} tokens. "
                    f"Estimated cost: {format_cost(counters.total_cost)}"
                ),
                formatted=format_cost(counters.total_cost),
            )
        cost_check = self.check_cost(counters.total_cost)
        if cost_check.exceeded:
            raise BudgetExceededError(
                kind="cost",
                current=cost_check.current,
                limit=cost_check.limit,
                message=(
                    f"Cost budget exceeded: {format_cost(cost_check.current)}/"
                    f"{format_cost(cost_check.limit)}. "
                    f"Total tokens used: {total_tokens:,}"
                ),
                formatted=format_cost(cost_check.current),
            )
