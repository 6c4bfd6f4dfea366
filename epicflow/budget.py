"""Per-task cost budgets.

BudgetRegistry is an explicit object handed to the components that spend
money. Each task gets its own TaskBudget, removed by cleanup() when the task
finishes, so no budget state leaks between tasks.
"""

import logging
from dataclasses import dataclass, field

from epicflow.config import EpicflowConfig
from epicflow.errors import CostBudgetExceededError

logger = logging.getLogger(__name__)


@dataclass
class BudgetConfig:
    max_task_cost_usd: float = 1000.0
    max_phase_cost_usd: float = 200.0
    warning_threshold: float = 0.8
    hard_stop: bool = True

    @classmethod
    def from_config(cls, config: EpicflowConfig) -> "BudgetConfig":
        return cls(
            max_task_cost_usd=config.max_task_cost_usd,
            max_phase_cost_usd=config.max_phase_cost_usd,
            warning_threshold=config.budget_warning_threshold,
            hard_stop=config.budget_hard_stop,
        )


@dataclass
class TaskBudget:
    """Spend tracking for one task.

    Phase spend is keyed by phase key, so the phase limit applies to one
    phase run (architecture:E1) and not to every epic's run of that phase.
    """

    task_id: str
    config: BudgetConfig
    total_cost_usd: float = 0.0
    phase_costs: dict[str, float] = field(default_factory=dict)
    warned: set[str] = field(default_factory=set)

    def record_cost(self, phase: str, cost_usd: float) -> None:
        """Add spend and enforce limits.

        Raises:
            CostBudgetExceededError: If a limit is crossed and hard stop is on
        """
        if cost_usd <= 0:
            return
        self.total_cost_usd += cost_usd
        self.phase_costs[phase] = self.phase_costs.get(phase, 0.0) + cost_usd
        self.check_phase(phase)

    def check_phase(self, phase: str) -> None:
        """Warn near a limit and enforce limits already crossed.

        Raises:
            CostBudgetExceededError: If the task or phase limit is exceeded and
                hard stop is on
        """
        self._check("task", self.total_cost_usd, self.config.max_task_cost_usd)
        self._check(
            f"phase {phase}",
            self.phase_costs.get(phase, 0.0),
            self.config.max_phase_cost_usd,
        )

    def remaining(self) -> float:
        return max(0.0, self.config.max_task_cost_usd - self.total_cost_usd)

    def _check(self, scope: str, spent: float, limit: float) -> None:
        if spent > limit:
            if self.config.hard_stop:
                raise CostBudgetExceededError(self.task_id, scope, spent, limit)
            if f"exceeded:{scope}" not in self.warned:
                self.warned.add(f"exceeded:{scope}")
                logger.warning(
                    f"Task {self.task_id} {scope} over budget "
                    f"(${spent:.2f} > ${limit:.2f}); hard stop disabled"
                )
        elif spent >= limit * self.config.warning_threshold:
            if f"warning:{scope}" not in self.warned:
                self.warned.add(f"warning:{scope}")
                logger.warning(
                    f"Task {self.task_id} {scope} at {spent / limit:.0%} of budget "
                    f"(${spent:.2f} / ${limit:.2f})"
                )


class BudgetRegistry:
    """Budgets keyed by task id."""

    def __init__(self, default: BudgetConfig | None = None) -> None:
        self.default = default or BudgetConfig()
        self._budgets: dict[str, TaskBudget] = {}

    def configure(self, task_id: str, config: BudgetConfig | None = None) -> TaskBudget:
        budget = TaskBudget(task_id=task_id, config=config or self.default)
        self._budgets[task_id] = budget
        return budget

    def get(self, task_id: str) -> TaskBudget:
        """Budget for a task, configured with defaults on first use."""
        budget = self._budgets.get(task_id)
        if budget is None:
            budget = self.configure(task_id)
        return budget

    def record_cost(self, task_id: str, phase: str, cost_usd: float) -> None:
        self.get(task_id).record_cost(phase, cost_usd)

    def check_phase(self, task_id: str, phase: str) -> None:
        self.get(task_id).check_phase(phase)

    def cleanup(self, task_id: str) -> None:
        """Forget a finished task's budget."""
        self._budgets.pop(task_id, None)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._budgets
