"""Run-scoped orchestration context and checkpointing.

OrchestrationContext carries the shared key/value data, branch registry and
phase results of one run. CheckpointService snapshots it after each phase;
rehydrate_context() rebuilds it once at run start from the latest checkpoint
plus the event log, which always wins.
"""

import json
import logging
from collections.abc import Sequence
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from epicflow.models import (
    BranchInfo,
    PhaseResult,
    Repository,
    TokenUsage,
    phase_output_from_dict,
    phase_result_from_dict,
    utcnow,
)

if TYPE_CHECKING:
    from epicflow.event_store import EventStore
    from epicflow.run_state import RunState, RunStateStore

logger = logging.getLogger(__name__)

# Only these shared-data keys survive a checkpoint round trip
SERIALIZABLE_KEYS = frozenset(
    {
        "epics",
        "stories",
        "team_composition",
        "story_assignments",
        "architecture_design",
        "injected_directives",
        "environment_config",
        "plan_approved",
        "plan_data",
    }
)


def _to_jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    return value


class OrchestrationContext:
    """Mutable state owned by the active run.

    The branch registry is the single source of truth for which branches
    exist and whether they were pushed or merged. Phases look branches up
    here instead of re-deriving names.
    """

    def __init__(
        self,
        task_id: str,
        repositories: Sequence[Repository] = (),
        workspace_path: Path | None = None,
    ) -> None:
        self.task_id = task_id
        self.repositories = list(repositories)
        self.workspace_path = workspace_path
        self.shared_data: dict[str, Any] = {}
        self.branch_registry: dict[str, BranchInfo] = {}
        self.phase_results: dict[str, PhaseResult] = {}
        # Phase keys known to have completed from durable records
        self.completed_phases: set[str] = set()
        self.parent: OrchestrationContext | None = None

    # Shared data

    def set_data(self, key: str, value: Any) -> None:
        self.shared_data[key] = value

    def get_data(self, key: str, default: Any = None) -> Any:
        return self.shared_data.get(key, default)

    def has_data(self, key: str) -> bool:
        return key in self.shared_data

    # Phase results

    def set_phase_result(self, phase_key: str, result: PhaseResult) -> None:
        self.phase_results[phase_key] = result

    def get_phase_result(self, phase_key: str) -> PhaseResult | None:
        return self.phase_results.get(phase_key)

    def all_phases_passed(self) -> bool:
        return all(r.success for r in self.phase_results.values())

    # Branch registry

    def register_branch(
        self,
        name: str,
        branch_type: Literal["epic", "story"],
        repository: str,
        base_branch: str,
        epic_id: str,
        story_id: str | None = None,
    ) -> BranchInfo:
        """Record a branch. Re-registering keeps its pushed/merged flags."""
        existing = self.branch_registry.get(name)
        info = BranchInfo(
            name=name,
            branch_type=branch_type,
            repository=repository,
            base_branch=base_branch,
            epic_id=epic_id,
            story_id=story_id,
            created_at=existing.created_at if existing else utcnow(),
            pushed=existing.pushed if existing else False,
            merged=existing.merged if existing else False,
        )
        self.branch_registry[name] = info
        return info

    def restore_branches(self, records: Sequence[dict[str, Any]]) -> int:
        """Register branches from durable records not already known.

        Returns:
            Number of branches added
        """
        added = 0
        for record in records:
            try:
                info = BranchInfo.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring unreadable branch record {record}: {e}")
                continue
            if info.name not in self.branch_registry:
                self.branch_registry[info.name] = info
                added += 1
        return added

    def get_branch(self, name: str) -> BranchInfo | None:
        return self.branch_registry.get(name)

    def get_epic_branch(
        self, epic_id: str, repository: str | None = None
    ) -> BranchInfo | None:
        for info in self.branch_registry.values():
            if (
                info.branch_type == "epic"
                and info.epic_id == epic_id
                and (repository is None or info.repository == repository)
            ):
                return info
        return None

    def get_story_branches(
        self, epic_id: str, repository: str | None = None
    ) -> list[BranchInfo]:
        return [
            info
            for info in self.branch_registry.values()
            if info.branch_type == "story"
            and info.epic_id == epic_id
            and (repository is None or info.repository == repository)
        ]

    def mark_branch_pushed(self, name: str) -> bool:
        info = self.branch_registry.get(name)
        if info is None:
            logger.warning(f"Cannot mark unregistered branch {name} as pushed")
            return False
        info.pushed = True
        return True

    def mark_branch_merged(self, name: str) -> bool:
        info = self.branch_registry.get(name)
        if info is None:
            logger.warning(f"Cannot mark unregistered branch {name} as merged")
            return False
        info.merged = True
        return True

    def branch_records(self) -> list[dict[str, Any]]:
        return [info.to_dict() for info in self.branch_registry.values()]

    # Team scoping

    def fork(self, workspace_path: Path | None = None) -> "OrchestrationContext":
        """Child context for one team.

        Concurrent teams each write only to their own child; the scheduler
        folds children back with absorb() once a team has finished.
        """
        child = OrchestrationContext(
            self.task_id,
            self.repositories,
            workspace_path or self.workspace_path,
        )
        child.parent = self
        child.shared_data = dict(self.shared_data)
        child.branch_registry = {
            name: BranchInfo.from_dict(info.to_dict())
            for name, info in self.branch_registry.items()
        }
        child.phase_results = dict(self.phase_results)
        child.completed_phases = set(self.completed_phases)
        return child

    def absorb(self, child: "OrchestrationContext") -> None:
        """Merge a finished child's branches, phase results and shared data.

        Dict values are merged key by key so per-epic entries written by
        sibling teams all survive.
        """
        self.branch_registry.update(child.branch_registry)
        self.phase_results.update(child.phase_results)
        self.completed_phases |= child.completed_phases
        for key, value in child.shared_data.items():
            current = self.shared_data.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                self.shared_data[key] = {**current, **value}
            else:
                self.shared_data[key] = value

    @property
    def is_child(self) -> bool:
        return self.parent is not None

    # Checkpointing

    def to_checkpoint(self) -> dict[str, Any]:
        """Snapshot the context as JSON-compatible data.

        Shared data outside SERIALIZABLE_KEYS is left out.
        """
        return {
            "task_id": self.task_id,
            "branch_registry": self.branch_records(),
            "shared_data": {
                key: _to_jsonable(value)
                for key, value in self.shared_data.items()
                if key in SERIALIZABLE_KEYS
            },
            "phase_results": {
                key: result.to_dict() for key, result in self.phase_results.items()
            },
            "timestamp": utcnow().isoformat(),
        }

    def restore_from_checkpoint(self, checkpoint: dict[str, Any]) -> None:
        """Load a checkpoint into this context.

        The branch registry and phase results are replaced wholesale. Shared
        data is merged key by key, and keys outside the whitelist are dropped.
        """
        self.branch_registry = {}
        self.restore_branches(checkpoint.get("branch_registry", []))

        self.phase_results = {
            key: phase_result_from_dict(data)
            for key, data in checkpoint.get("phase_results", {}).items()
        }

        for key, value in checkpoint.get("shared_data", {}).items():
            if key in SERIALIZABLE_KEYS:
                self.shared_data[key] = value
            else:
                logger.debug(f"Dropping non-serializable checkpoint key {key}")


class CheckpointService:
    """Stores context checkpoints as JSON under the state directory.

    Checkpoints only speed up recovery. Failing to write one is logged and
    never interrupts the run, and an unreadable one is treated as absent.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    def _path(self, task_id: str) -> Path:
        return self.state_dir / task_id / "checkpoint.json"

    def save_checkpoint(self, context: OrchestrationContext, phase_name: str) -> bool:
        """Write a checkpoint after phase_name completed.

        Returns:
            True if the checkpoint was written
        """
        path = self._path(context.task_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            data = context.to_checkpoint()
            data["phase"] = phase_name
            tmp = path.with_suffix(".json.tmp")
            with open(tmp, "w") as f:
                json.dump(data, f, indent=2, default=str)
            tmp.replace(path)
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to save checkpoint after {phase_name}: {e}")
            return False
        logger.debug(f"Checkpoint saved for task {context.task_id} after {phase_name}")
        return True

    def load_checkpoint(self, task_id: str) -> dict[str, Any] | None:
        path = self._path(task_id)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable checkpoint {path}: {e}")
            return None


def rehydrate_context(
    context: OrchestrationContext,
    event_store: "EventStore",
    checkpoints: CheckpointService | None = None,
    run_states: "RunStateStore | None" = None,
) -> str:
    """Rebuild a context from durable records, once, at run start.

    The checkpoint is applied first and the event log is applied over it.
    Branches recorded in events or in the persisted run state are registered
    if the checkpoint did not already know them. Phases completed according
    to either durable record are marked so they are skipped on this run.

    Returns:
        "checkpoint+events", "events" or "none" describing what was used
    """
    restored_checkpoint = False
    if checkpoints is not None:
        checkpoint = checkpoints.load_checkpoint(context.task_id)
        if checkpoint is not None:
            try:
                context.restore_from_checkpoint(checkpoint)
                restored_checkpoint = True
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Checkpoint for {context.task_id} unusable: {e}")
                context.branch_registry = {}
                context.phase_results = {}

    state = event_store.get_current_state(context.task_id)
    context.completed_phases |= state.completed_phases
    if state.epics:
        context.set_data("epics", [e.to_dict() for e in state.epics])
        context.set_data("stories", [s.to_dict() for s in state.stories])

    base_of = {r.name: r.default_branch for r in context.repositories}
    for epic in state.epics:
        repository = epic.target_repository or ""
        base = base_of.get(repository, "main")
        if epic.branch_name and epic.branch_name not in context.branch_registry:
            context.register_branch(
                epic.branch_name, "epic", repository, base, epic.id
            )
        for story in state.stories_for_epic(epic.id):
            if not story.branch_name or story.branch_name in context.branch_registry:
                continue
            info = context.register_branch(
                story.branch_name,
                "story",
                repository,
                epic.branch_name or base,
                epic.id,
                story.id,
            )
            info.pushed = story.push_verified
            info.merged = story.merged_to_epic

    if run_states is not None:
        run_state = run_states.find_by_id(context.task_id)
        if run_state is not None:
            context.restore_branches(run_state.branches)
            _restore_completed_phases(context, run_state)

    if restored_checkpoint:
        source = "checkpoint+events"
    elif state.epics or context.branch_registry:
        source = "events"
    else:
        source = "none"
    logger.info(f"Context for task {context.task_id} rehydrated from {source}")
    return source


def _restore_completed_phases(
    context: OrchestrationContext, run_state: "RunState"
) -> None:
    """Mark phases the run state recorded as completed.

    A phase with no result in the context gets one rebuilt from its record,
    so later phases can still read its output.
    """
    for key, record in run_state.phases.items():
        if not run_state.phase_completed(key):
            continue
        context.completed_phases.add(key)
        if key in context.phase_results:
            continue
        context.set_phase_result(
            key,
            PhaseResult(
                success=True,
                phase_name=key.split(":", 1)[0],
                data=phase_output_from_dict(record.output),
                cost_usd=record.cost_usd,
                tokens=TokenUsage(**record.usage),
            ),
        )
