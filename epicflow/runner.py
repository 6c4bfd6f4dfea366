"""Top-level task run.

Loads a plan, records its epics and stories as events, rebuilds the
orchestration context from durable records, orders the epics and hands them
to the team scheduler. A run holds the task's PID lock for its whole
duration and always records its outcome, even when it is aborted.
"""

import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from opentelemetry import trace

from epicflow.agent import AgentInvoker, ClaudeCodeInvoker
from epicflow.budget import BudgetConfig, BudgetRegistry
from epicflow.config import EpicflowConfig
from epicflow.context import CheckpointService, OrchestrationContext, rehydrate_context
from epicflow.dependencies import (
    ConservativeDependencyPolicy,
    add_dependencies_for_overlaps,
    assign_execution_orders,
    validate_story_overlap,
)
from epicflow.errors import PhaseCancelledError, StateValidationError
from epicflow.event_store import EventStore, FileEventStore
from epicflow.git import GitRunner
from epicflow.lock import TaskLock
from epicflow.models import Epic, Repository, Story, TeamOrchestrationOutput
from epicflow.notifier import Notifier, format_run_completed
from epicflow.phase import RUN_FATAL_ERRORS, PhaseServices
from epicflow.run_state import RunState, RunStateStore
from epicflow.scheduler import TeamOrchestrationPhase
from epicflow.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

RunStatus = Literal["completed", "partial", "failed", "cancelled"]

# Fields recorded on creation events; status and progress come from later events
_EPIC_FIELDS = (
    "id",
    "name",
    "target_repository",
    "branch_name",
    "execution_order",
    "dependencies",
    "description",
    "explicit_order",
)
_STORY_FIELDS = (
    "id",
    "epic_id",
    "title",
    "target_repository",
    "assigned_developer",
    "description",
    "files_to_read",
    "files_to_modify",
    "files_to_create",
    "dependencies",
    "branch_name",
)


@dataclass
class TaskPlan:
    """A task as planned: repositories, epics and their stories.

    Attributes:
        task_id: Task identifier, also the name of its event log and lock
        repositories: Repositories epics may target, in priority order
        epics: Epics in planning order
        stories: Stories of all epics
        sources: Repository name to the local clone teams copy from
    """

    task_id: str
    repositories: list[Repository]
    epics: list[Epic]
    stories: list[Story] = field(default_factory=list)
    sources: dict[str, Path] = field(default_factory=dict)


@dataclass
class RunResult:
    """Outcome of one run of a task."""

    task_id: str
    status: RunStatus
    output: TeamOrchestrationOutput | None = None
    total_cost_usd: float = 0.0
    total_tokens: int = 0
    duration_seconds: float = 0.0
    error: str | None = None
    rehydrated_from: str = "none"


def load_plan(path: Path) -> TaskPlan:
    """Read a JSON plan file.

    The plan holds ``task_id``, ``repositories`` (each optionally with a
    ``path`` to its local clone) and ``epics`` with nested ``stories``.
    Stories inherit their epic's id and target repository. Relative clone
    paths are resolved against the plan's directory.

    Raises:
        ValueError: If the file is not a valid plan
    """
    try:
        data = json.loads(path.read_text())
        return plan_from_dict(data, base_dir=path.parent)
    except json.JSONDecodeError as e:
        raise ValueError(f"Plan {path} is not valid JSON: {e}") from e
    except (KeyError, TypeError) as e:
        raise ValueError(f"Plan {path} is missing required data: {e}") from e


def plan_from_dict(data: dict[str, Any], base_dir: Path = Path(".")) -> TaskPlan:
    repositories = [Repository.from_dict(r) for r in data.get("repositories", [])]
    sources = {
        r["name"]: (base_dir / r["path"]).resolve()
        for r in data.get("repositories", [])
        if r.get("path")
    }

    epics: list[Epic] = []
    stories: list[Story] = []
    for raw in data["epics"]:
        epic = Epic.from_dict(raw)
        for raw_story in raw.get("stories", []):
            story = Story.from_dict(
                {
                    "epic_id": epic.id,
                    "target_repository": epic.target_repository,
                    **raw_story,
                }
            )
            stories.append(story)
            epic.story_ids.append(story.id)
        epics.append(epic)

    return TaskPlan(
        task_id=data["task_id"],
        repositories=repositories,
        epics=epics,
        stories=stories,
        sources=sources,
    )


def record_plan(event_store: EventStore, plan: TaskPlan) -> int:
    """Append creation events for epics and stories not yet in the log.

    Returns:
        Number of events appended
    """
    state = event_store.get_current_state(plan.task_id)
    appended = 0
    for epic in plan.epics:
        if state.get_epic(epic.id) is None:
            payload = {name: getattr(epic, name) for name in _EPIC_FIELDS}
            event_store.append(plan.task_id, "EpicCreated", "planner", payload)
            appended += 1
    for story in plan.stories:
        if state.get_story(story.id) is None:
            payload = {name: getattr(story, name) for name in _STORY_FIELDS}
            event_store.append(plan.task_id, "StoryCreated", "planner", payload)
            appended += 1
    return appended


def order_epics(
    epics: Sequence[Epic],
    stories: Sequence[Story],
    repositories: Sequence[Repository],
) -> list[Epic]:
    """Apply the dependency policy and file-overlap ordering.

    Returns:
        Copies of epics whose execution orders respect every dependency

    Raises:
        HumanInterventionRequired: If an epic has no valid target repository
        ValueError: If the dependencies are unknown or cyclic
    """
    policy = ConservativeDependencyPolicy()
    result = policy.apply(epics, repositories)
    logger.info(policy.get_summary(result))

    ordered = result.modified_epics
    overlap = validate_story_overlap(ordered, stories)
    if overlap.conflicts:
        ordered = add_dependencies_for_overlaps(ordered, overlap.conflicts)
    return assign_execution_orders(ordered)


def build_services(
    config: EpicflowConfig,
    agent: AgentInvoker | None = None,
    event_store: EventStore | None = None,
    git: GitRunner | None = None,
    tracer: trace.Tracer | None = None,
) -> PhaseServices:
    """Wire the collaborators of a run from configuration."""
    state_dir = config.state_dir
    return PhaseServices(
        config=config,
        event_store=event_store or FileEventStore(state_dir / "events"),
        run_states=RunStateStore(state_dir),
        budgets=BudgetRegistry(BudgetConfig.from_config(config)),
        notifier=Notifier(config.webhook_url),
        agent=agent
        or ClaudeCodeInvoker(
            max_turns=config.agent_max_turns, timeout=config.agent_timeout_seconds
        ),
        git=git
        or GitRunner(
            network_timeout=config.git_network_timeout,
            local_timeout=config.git_local_timeout,
        ),
        checkpoints=CheckpointService(state_dir),
        tracer=tracer or trace.get_tracer("epicflow"),
    )


async def run_task(
    plan: TaskPlan,
    config: EpicflowConfig | None = None,
    services: PhaseServices | None = None,
) -> RunResult:
    """Run a planned task to completion, resuming earlier progress.

    Args:
        plan: The task's plan
        config: Configuration (default: from the environment)
        services: Pre-wired collaborators (default: built from config)

    Returns:
        RunResult describing the outcome; run-fatal errors are reported here
        rather than raised

    Raises:
        LockHeldError: If another process is running the same task
    """
    config = config or EpicflowConfig.from_env()
    services = services or build_services(config)
    task_id = plan.task_id

    with TaskLock(config.state_dir, task_id):
        return await _run_locked(plan, services)


async def _run_locked(plan: TaskPlan, services: PhaseServices) -> RunResult:
    task_id = plan.task_id
    config = services.config
    event_store = services.event_store
    started = time.monotonic()
    result = RunResult(task_id=task_id, status="failed")

    def _mark_started(state: RunState) -> None:
        state.status = "running"
        state.cancel_requested = False

    services.run_states.update(task_id, _mark_started)
    services.budgets.configure(task_id)

    with services.tracer.start_as_current_span("epicflow.run") as span:
        span.set_attribute("task.id", task_id)
        span.set_attribute("run.epics", len(plan.epics))

        try:
            appended = record_plan(event_store, plan)
            context = OrchestrationContext(
                task_id, plan.repositories, config.workspace_root
            )
            result.rehydrated_from = rehydrate_context(
                context, event_store, services.checkpoints, services.run_states
            )
            logger.info(
                f"[{task_id}] Run starting: {appended} new plan events, "
                f"context from {result.rehydrated_from}"
            )

            _validate_state(task_id, event_store)

            state = event_store.get_current_state(task_id)
            epics = order_epics(state.epics, state.stories, plan.repositories)
            workspaces = WorkspaceManager(
                config.workspace_root, plan.repositories, plan.sources
            )
            phase = TeamOrchestrationPhase(services, workspaces, epics)
            phase_result = await phase.execute(context)

            result.total_tokens = phase_result.tokens.total
            if isinstance(phase_result.data, TeamOrchestrationOutput):
                result.output = phase_result.data
                result.status = phase_result.data.status
            elif phase_result.success:
                result.status = "completed"
            result.error = phase_result.error
        except PhaseCancelledError as e:
            result.status = "cancelled"
            result.error = str(e)
        except RUN_FATAL_ERRORS as e:
            logger.error(f"[{task_id}] Run aborted: {e}")
            result.error = str(e)
        except (StateValidationError, ValueError) as e:
            logger.error(f"[{task_id}] Run could not start: {e}")
            result.error = str(e)

        result.duration_seconds = time.monotonic() - started
        result.total_cost_usd = event_store.get_current_state(task_id).total_cost
        span.set_attribute("run.status", result.status)
        span.set_attribute("run.cost_usd", result.total_cost_usd)

    def _mark_finished(state: RunState) -> None:
        state.status = result.status

    services.run_states.update(task_id, _mark_finished)
    services.notifier.emit(
        format_run_completed(
            task_id, result.status, result.total_cost_usd, result.duration_seconds
        )
    )
    await services.notifier.drain()
    services.budgets.cleanup(task_id)
    logger.info(
        f"[{task_id}] Run {result.status} in {result.duration_seconds:.1f}s "
        f"(${result.total_cost_usd:.2f})"
    )
    return result


def _validate_state(task_id: str, event_store: EventStore) -> None:
    """Fail the run on invalid folded state, recording the failure first.

    The failure is written as a completion event so recovery does not try
    the same validation again in a loop.

    Raises:
        StateValidationError: If the folded state breaks an invariant
    """
    report = event_store.validate_state(task_id)
    if report.valid:
        return
    event_store.append(
        task_id,
        "TaskFailed",
        "orchestrator",
        {
            "phase": "state_validation",
            "success": False,
            "error": "; ".join(report.errors),
        },
    )
    raise StateValidationError(report.errors)
