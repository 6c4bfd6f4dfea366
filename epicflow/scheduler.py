"""Team scheduler.

Epics are grouped into batches by execution order and the batches run
strictly in ascending order. Inside a batch, epics run concurrently only when
every epic targets a different repository; a batch where two epics share a
repository runs one team at a time. After each batch the cumulative team
failure rate is compared with the configured threshold and the run is
aborted once the circuit breaker trips.
"""

import asyncio
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from epicflow import telemetry
from epicflow.errors import CircuitBreakerError, PhaseCancelledError
from epicflow.models import (
    Batch,
    CircuitBreakerState,
    Epic,
    ExecutionPlan,
    ImplementationOutput,
    PhaseOutput,
    Repository,
    TeamOrchestrationOutput,
    TokenUsage,
)
from epicflow.notifier import format_circuit_breaker
from epicflow.phase import RUN_FATAL_ERRORS, BasePhase, PhaseServices
from epicflow.team import SUB_PHASES, Team, TeamResult
from epicflow.workspace import WorkspaceManager

if TYPE_CHECKING:
    from epicflow.context import OrchestrationContext

logger = logging.getLogger(__name__)


def plan_batches(epics: Sequence[Epic], workspaces: WorkspaceManager) -> ExecutionPlan:
    """Group epics into ordered batches without running anything.

    A batch is concurrent when its epics' resolved repositories are pairwise
    distinct.

    Raises:
        HumanInterventionRequired: If an epic's repository cannot be resolved
    """
    groups: dict[int, list[Epic]] = {}
    for epic in epics:
        groups.setdefault(epic.execution_order, []).append(epic)

    batches = []
    for order in sorted(groups):
        group = groups[order]
        distinct = {
            workspaces.resolve_repository(e.target_repository).name for e in group
        }
        batches.append(
            Batch(
                execution_order=order,
                epics=group,
                concurrent=len(distinct) == len(group),
            )
        )
    return ExecutionPlan(batches=batches)


def summarize_teams(results: Sequence[TeamResult]) -> TeamOrchestrationOutput:
    """Run-level status and per-sub-phase costs for finished teams.

    The status is partial when some teams failed, or when every team
    succeeded but some stories were left unmerged.
    """
    failed = [r.epic_id for r in results if not r.success]
    costs = dict.fromkeys(SUB_PHASES, 0.0)
    unmerged = False
    for result in results:
        for name, cost in result.cost_breakdown.items():
            costs[name] = costs.get(name, 0.0) + cost
        implementation = result.phase_results.get("implementation")
        data = implementation.data if implementation else None
        if isinstance(data, ImplementationOutput) and (
            data.failed_stories or data.conflicted_stories
        ):
            unmerged = True

    if results and len(failed) == len(results):
        status = "failed"
    elif failed or unmerged:
        status = "partial"
    else:
        status = "completed"
    return TeamOrchestrationOutput(
        status=status,
        teams_total=len(results),
        teams_failed=len(failed),
        failed_epics=failed,
        cost_breakdown=costs,
    )


class TeamScheduler:
    """Runs one team per epic, batch by batch."""

    def __init__(self, services: PhaseServices, workspaces: WorkspaceManager) -> None:
        self.services = services
        self.workspaces = workspaces

    def resolve_repositories(self, epics: Sequence[Epic]) -> dict[str, Repository]:
        """Target repository of every epic, checked before anything runs.

        Raises:
            HumanInterventionRequired: If an epic's repository is missing or
                not part of the task
        """
        return {
            epic.id: self.workspaces.resolve_repository(epic.target_repository)
            for epic in epics
        }

    def plan_batches(self, epics: Sequence[Epic]) -> ExecutionPlan:
        return plan_batches(epics, self.workspaces)

    async def run(
        self, context: "OrchestrationContext", epics: Sequence[Epic]
    ) -> list[TeamResult]:
        """Run every batch in order.

        Returns:
            One TeamResult per epic that ran

        Raises:
            CircuitBreakerError: If the cumulative failure rate trips the breaker
            CostBudgetExceededError, HumanInterventionRequired,
            PhaseCancelledError: From a team, once its batch has finished
        """
        services = self.services
        task_id = context.task_id
        repositories = self.resolve_repositories(epics)
        plan = self.plan_batches(epics)
        breaker = CircuitBreakerState(threshold=services.config.failure_threshold)

        results: list[TeamResult] = []
        team_index = 0
        for batch in plan.batches:
            teams = []
            for epic in batch.epics:
                team_index += 1
                teams.append(
                    Team(
                        services,
                        self.workspaces,
                        team_index,
                        epic,
                        repositories[epic.id],
                    )
                )
            mode = "concurrently" if batch.concurrent else "sequentially"
            logger.info(
                f"[{task_id}] Batch {batch.execution_order}: running "
                f"{len(teams)} teams {mode}"
            )

            batch_results = await self._run_batch(context, batch, teams)
            results.extend(batch_results)

            breaker.total_count += len(batch_results)
            breaker.failed_count += sum(1 for r in batch_results if not r.success)
            logger.info(
                f"[{task_id}] Batch {batch.execution_order} done: "
                f"{breaker.failed_count}/{breaker.total_count} teams failed so far"
            )
            if breaker.should_trip:
                self._trip(task_id, breaker)

        return results

    async def _run_batch(
        self,
        context: "OrchestrationContext",
        batch: Batch,
        teams: list[Team],
    ) -> list[TeamResult]:
        """Run a batch's teams, each in its own child context.

        Concurrent teams all finish before a fatal error from any of them is
        raised. A sequential batch stops at the first fatal error.
        """
        children = [context.fork() for _ in teams]
        outcomes: list[TeamResult | BaseException]
        if batch.concurrent:
            outcomes = list(
                await asyncio.gather(
                    *(team.run(child) for team, child in zip(teams, children)),
                    return_exceptions=True,
                )
            )
        else:
            outcomes = []
            for team, child in zip(teams, children):
                try:
                    outcomes.append(await team.run(child))
                except Exception as e:
                    outcomes.append(e)
                    if isinstance(e, RUN_FATAL_ERRORS):
                        break

        task_id = context.task_id
        results: list[TeamResult] = []
        fatal: BaseException | None = None
        for team, child, outcome in zip(teams, children, outcomes):
            context.absorb(child)
            if isinstance(outcome, TeamResult):
                results.append(outcome)
                continue
            if not isinstance(outcome, Exception):
                fatal = fatal or outcome
                continue
            if not isinstance(outcome, PhaseCancelledError):
                self.services.event_store.append(
                    task_id,
                    "EpicFailed",
                    "orchestrator",
                    {"epic_id": team.epic.id, "error": str(outcome)},
                )
            if isinstance(outcome, RUN_FATAL_ERRORS):
                fatal = fatal or outcome
                continue
            logger.error(f"[{task_id}] Team for epic {team.epic.id} crashed: {outcome}")
            results.append(
                TeamResult(
                    team.epic.id,
                    team.repository.name,
                    success=False,
                    error=str(outcome),
                )
            )

        checkpoints = self.services.checkpoints
        if checkpoints is not None and not context.is_child:
            checkpoints.save_checkpoint(context, f"batch-{batch.execution_order}")

        if fatal is not None:
            raise fatal
        return results

    def _trip(self, task_id: str, breaker: CircuitBreakerState) -> None:
        logger.error(
            f"[{task_id}] Circuit breaker tripped: {breaker.failed_count}/"
            f"{breaker.total_count} teams failed "
            f"(threshold {breaker.threshold:.0%})"
        )
        self.services.notifier.emit(
            format_circuit_breaker(
                task_id, breaker.failed_count, breaker.total_count, breaker.threshold
            )
        )
        telemetry.record_circuit_breaker(task_id)
        raise CircuitBreakerError(
            breaker.failed_count, breaker.total_count, breaker.threshold
        )


class TeamOrchestrationPhase(BasePhase):
    """Runs the team scheduler as a single phase of the run.

    Cost and tokens reported here are the teams' own totals, already charged
    by their phases, so this phase does not charge them again.
    """

    name = "team_orchestration"
    aggregates_children = True

    def __init__(
        self,
        services: PhaseServices,
        workspaces: WorkspaceManager,
        epics: Sequence[Epic],
    ) -> None:
        super().__init__(services)
        self.scheduler = TeamScheduler(services, workspaces)
        self.epics = list(epics)

    async def execute_phase(self, context: "OrchestrationContext") -> PhaseOutput:
        results = await self.scheduler.run(context, self.epics)

        tokens = TokenUsage()
        for result in results:
            tokens = tokens + result.tokens
            if not result.success:
                self.warnings.append(f"epic {result.epic_id} failed: {result.error}")
        self.tokens = tokens
        self.cost_usd = sum(r.cost_usd for r in results)
        return summarize_teams(results)

    def failure_reason(self, output: PhaseOutput) -> str | None:
        if isinstance(output, TeamOrchestrationOutput) and output.status == "failed":
            return f"All {output.teams_total} teams failed"
        return None
