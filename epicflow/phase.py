"""Phase execution framework.

Every pipeline stage runs inside BasePhase.execute(), which drives the state
machine PENDING -> (SKIPPED | RUNNING -> SUCCEEDED | FAILED | CANCELLED) and
takes care of the bookkeeping around the phase's own logic: skip detection
after a restart, cooperative cancellation polling, cost and budget accounting,
run-state and event-log recording, notifications and checkpointing.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from opentelemetry import trace

from epicflow import telemetry
from epicflow.budget import BudgetRegistry
from epicflow.config import EpicflowConfig
from epicflow.errors import (
    CircuitBreakerError,
    CostBudgetExceededError,
    HumanInterventionRequired,
    PhaseCancelledError,
    RuleViolation,
    RuleViolationRetriesExhausted,
)
from epicflow.event_store import EventStore
from epicflow.models import (
    AgentResult,
    PhaseOutput,
    PhaseResult,
    RetryState,
    TokenUsage,
    utcnow,
)
from epicflow.notifier import (
    Notifier,
    format_phase_completed,
    format_phase_failed,
    format_phase_started,
)
from epicflow.run_state import RunState, RunStateStore

if TYPE_CHECKING:
    from epicflow.agent import AgentInvoker
    from epicflow.context import CheckpointService, OrchestrationContext
    from epicflow.git import GitRunner

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_BY_USER = "Task cancelled by user"

# Recorded like any failure, then re-raised to stop the run
RUN_FATAL_ERRORS = (
    CircuitBreakerError,
    CostBudgetExceededError,
    HumanInterventionRequired,
    PhaseCancelledError,
)


class PhaseStatus(Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PhaseServices:
    """Collaborators shared by every phase of a run.

    Attributes:
        config: Run configuration
        event_store: Authoritative event log
        run_states: Persisted run state (phase records, cancellation flag)
        budgets: Per-task cost budgets
        notifier: Fire-and-forget signal sink
        agent: External agent invoker
        git: Version-control boundary
        checkpoints: Checkpoint store, None to disable checkpointing
        tracer: OpenTelemetry tracer
    """

    config: EpicflowConfig
    event_store: EventStore
    run_states: RunStateStore
    budgets: BudgetRegistry
    notifier: Notifier
    agent: "AgentInvoker | None" = None
    git: "GitRunner | None" = None
    checkpoints: "CheckpointService | None" = None
    tracer: trace.Tracer = field(default_factory=lambda: trace.get_tracer("epicflow"))


def _merge_branch_records(
    existing: list[dict[str, Any]], current: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    by_name = {record["name"]: record for record in existing}
    by_name.update({record["name"]: record for record in current})
    return list(by_name.values())


class BasePhase(ABC):
    """Lifecycle wrapper around one pipeline stage.

    Subclasses implement execute_phase() and return their typed output.
    A phase signals failure by raising, or by overriding failure_reason()
    for outputs that describe a partial outcome.

    Phases scoped to one epic pass epic_id, which makes the phase key (and so
    skip detection) specific to that epic.
    """

    name = "phase"
    # Aggregate phases report their children's cost without charging it again
    aggregates_children = False

    def __init__(self, services: PhaseServices, epic_id: str | None = None) -> None:
        self.services = services
        self.epic_id = epic_id
        self.status = PhaseStatus.PENDING
        self.cost_usd = 0.0
        self.tokens = TokenUsage()
        self.warnings: list[str] = []
        self.task_id: str | None = None

    @property
    def phase_key(self) -> str:
        return f"{self.name}:{self.epic_id}" if self.epic_id else self.name

    def should_skip(self, context: "OrchestrationContext") -> bool:
        """True if this exact phase already succeeded before a restart.

        A successful result in the context counts, as does completion evidence
        rehydrated from the event log or the persisted run state.
        """
        previous = context.get_phase_result(self.phase_key)
        if previous is not None:
            return previous.success
        return self.phase_key in context.completed_phases

    @abstractmethod
    async def execute_phase(self, context: "OrchestrationContext") -> PhaseOutput:
        """Run the phase's substantive logic."""

    def failure_reason(self, output: PhaseOutput) -> str | None:
        """Error message if output describes a failed phase, else None."""
        return None

    async def cleanup(self, context: "OrchestrationContext") -> None:
        """Release phase resources. Awaited after every run, even on failure."""

    def track(self, result: AgentResult) -> None:
        """Account an agent invocation's cost and usage against this phase.

        Raises:
            CostBudgetExceededError: If the task or phase budget is exhausted
        """
        self.cost_usd += result.cost_usd
        self.tokens = self.tokens + result.usage
        if self.task_id is not None:
            self.services.budgets.record_cost(
                self.task_id, self.phase_key, result.cost_usd
            )

    async def execute(self, context: "OrchestrationContext") -> PhaseResult:
        """Run the phase through its full lifecycle.

        Returns:
            The PhaseResult, also stored in the context under phase_key

        Raises:
            PhaseCancelledError: If cancellation was requested before the phase
                started or observed while it was running
            CircuitBreakerError, CostBudgetExceededError,
            HumanInterventionRequired: After being recorded as a failure
        """
        services = self.services
        task_id = context.task_id
        self.task_id = task_id

        if self.should_skip(context):
            return self._skip(context)

        if services.run_states.is_cancel_requested(task_id):
            logger.info(f"[{task_id}] Not starting {self.phase_key}: cancelled")
            self.status = PhaseStatus.CANCELLED
            self._record_status(
                context,
                PhaseResult(
                    success=False, phase_name=self.name, error=CANCELLED_BY_USER
                ),
            )
            raise PhaseCancelledError(self.phase_key, task_id, CANCELLED_BY_USER)

        self.status = PhaseStatus.RUNNING
        started = time.monotonic()
        started_at = utcnow().isoformat()

        def _mark_running(state: RunState) -> None:
            record = state.phase(self.phase_key)
            record.status = "running"
            record.started_at = started_at
            record.completed_at = None
            record.error = None

        services.run_states.update(task_id, _mark_running)
        services.notifier.emit(format_phase_started(task_id, self.phase_key))
        logger.info(f"[{task_id}] Phase {self.phase_key} started")

        output: PhaseOutput | None = None
        error: str | None = None
        fatal: BaseException | None = None

        with services.tracer.start_as_current_span("epicflow.phase") as span:
            span.set_attribute("task.id", task_id)
            span.set_attribute("phase.name", self.name)
            if self.epic_id:
                span.set_attribute("epic.id", self.epic_id)

            try:
                services.budgets.check_phase(task_id, self.phase_key)
                output = await self._run_with_cancellation(context)
                error = self.failure_reason(output)
            except PhaseCancelledError as e:
                self.status = PhaseStatus.CANCELLED
                error = str(e)
                fatal = e
            except RUN_FATAL_ERRORS as e:
                error = str(e)
                fatal = e
            except Exception as e:
                logger.error(f"[{task_id}] Phase {self.phase_key} failed: {e}")
                error = str(e)
            finally:
                await self.cleanup(context)

            if self.status != PhaseStatus.CANCELLED:
                self.status = PhaseStatus.FAILED if error else PhaseStatus.SUCCEEDED
            span.set_attribute("phase.status", self.status.value)
            span.set_attribute("phase.cost_usd", self.cost_usd)

        duration = time.monotonic() - started
        result = PhaseResult(
            success=self.status == PhaseStatus.SUCCEEDED,
            phase_name=self.name,
            duration_seconds=duration,
            error=error,
            warnings=list(self.warnings),
            data=output,
            metrics={"duration_seconds": duration},
            cost_usd=self.cost_usd,
            tokens=self.tokens,
        )
        context.set_phase_result(self.phase_key, result)
        self._record_status(context, result)
        self._report(context, result)

        if fatal is not None:
            raise fatal
        return result

    def _skip(self, context: "OrchestrationContext") -> PhaseResult:
        """Mark the phase skipped and sync durable records.

        The persisted phase status is set to completed and any branches the
        run state knows about are put back into the registry.
        """
        self.status = PhaseStatus.SKIPPED
        task_id = context.task_id

        def _mark_skipped(state: RunState) -> None:
            record = state.phase(self.phase_key)
            record.status = "completed"
            record.skipped_on_recovery = True

        state = self.services.run_states.update(task_id, _mark_skipped)
        restored = context.restore_branches(state.branches)
        logger.info(
            f"[{task_id}] Skipping {self.phase_key}: completed before restart"
            + (f", {restored} branches restored" if restored else "")
        )
        previous = context.get_phase_result(self.phase_key)
        if previous is None:
            previous = PhaseResult(success=True, phase_name=self.name)
        return replace(previous, skipped=True)

    async def _run_with_cancellation(
        self, context: "OrchestrationContext"
    ) -> PhaseOutput:
        work = asyncio.create_task(self.execute_phase(context))
        poller = asyncio.create_task(self._poll_cancellation(context.task_id))
        try:
            done, _ = await asyncio.wait(
                {work, poller}, return_when=asyncio.FIRST_COMPLETED
            )
            if work in done:
                return work.result()

            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            raise PhaseCancelledError(self.phase_key, context.task_id)
        finally:
            for pending in (work, poller):
                if not pending.done():
                    pending.cancel()
            await asyncio.gather(work, poller, return_exceptions=True)

    async def _poll_cancellation(self, task_id: str) -> None:
        """Return once a cancellation request is observed."""
        interval = self.services.config.cancellation_check_interval
        while True:
            await asyncio.sleep(interval)
            if self.services.run_states.is_cancel_requested(task_id):
                logger.info(f"[{task_id}] Cancellation observed in {self.phase_key}")
                return

    def _record_status(
        self, context: "OrchestrationContext", result: PhaseResult
    ) -> None:
        completed_at = utcnow().isoformat()
        branches = context.branch_records()
        charge = 0.0 if self.aggregates_children else result.cost_usd

        def _mark_done(state: RunState) -> None:
            record = state.phase(self.phase_key)
            record.status = self.status.value
            record.completed_at = completed_at
            record.output = asdict(result.data) if result.data else None
            record.cost_usd = result.cost_usd
            record.usage = {
                "input_tokens": result.tokens.input_tokens,
                "output_tokens": result.tokens.output_tokens,
            }
            record.error = result.error
            state.branches = _merge_branch_records(state.branches, branches)
            state.total_cost_usd += charge

        self.services.run_states.update(context.task_id, _mark_done)

    def _report(self, context: "OrchestrationContext", result: PhaseResult) -> None:
        """Emit telemetry, notification and the phase's event, then checkpoint."""
        services = self.services
        task_id = context.task_id
        charge = 0.0 if self.aggregates_children else result.cost_usd

        telemetry.record_phase(
            task_id,
            self.name,
            self.status.value,
            result.duration_seconds,
            charge,
            0 if self.aggregates_children else result.tokens.total,
        )

        if result.success:
            logger.info(
                f"[{task_id}] Phase {self.phase_key} completed in "
                f"{result.duration_seconds:.1f}s (${result.cost_usd:.2f})"
            )
            services.notifier.emit(
                format_phase_completed(
                    task_id, self.phase_key, result.duration_seconds, result.cost_usd
                )
            )
        else:
            logger.warning(
                f"[{task_id}] Phase {self.phase_key} {self.status.value}: "
                f"{result.error}"
            )
            services.notifier.emit(
                format_phase_failed(task_id, self.phase_key, result.error or "")
            )

        metadata: dict[str, Any] = {"tokens": result.tokens.total}
        if charge:
            metadata["cost"] = charge
        services.event_store.append(
            task_id,
            "TaskCompleted" if result.success else "TaskFailed",
            self.name,
            {
                "phase": self.phase_key,
                "epic_id": self.epic_id,
                "success": result.success,
                "error": result.error,
            },
            metadata,
        )

        if services.checkpoints is not None and not context.is_child:
            services.checkpoints.save_checkpoint(context, self.phase_key)

    async def run_with_feedback(
        self,
        attempt_fn: Callable[[RetryState], Awaitable[T]],
        max_attempts: int | None = None,
    ) -> T:
        """Retry attempt_fn on rule violations, threading feedback forward.

        Args:
            attempt_fn: Called with the current RetryState; on attempts after
                the first, last_violation_type and last_feedback describe
                why the previous attempt was rejected
            max_attempts: Total attempts (default: config's
                max_rule_violation_retries)

        Returns:
            The first attempt's result that raised no RuleViolation

        Raises:
            RuleViolationRetriesExhausted: If every attempt was rejected
        """
        if max_attempts is None:
            max_attempts = self.services.config.max_rule_violation_retries
        max_attempts = max(1, max_attempts)

        retry_state = RetryState(attempt=1, max_attempts=max_attempts)
        while True:
            try:
                return await attempt_fn(retry_state)
            except RuleViolation as e:
                logger.warning(
                    f"{self.phase_key} attempt {retry_state.attempt}/{max_attempts} "
                    f"rejected ({e.violation_type}): {e.feedback}"
                )
                if retry_state.attempt >= max_attempts:
                    raise RuleViolationRetriesExhausted(max_attempts, e) from e
                retry_state = RetryState(
                    attempt=retry_state.attempt + 1,
                    max_attempts=max_attempts,
                    last_violation_type=e.violation_type,
                    last_feedback=e.feedback,
                )
