"""Persisted run state.

Provides RunState, the externally visible record of a task run (per-phase
status, cancellation flag, branch snapshot, story progress), and
RunStateStore, which persists it as JSON so a run can be resumed and so a
separate process can request cancellation.
"""

import json
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from epicflow.models import utcnow

RecordStatus = Literal[
    "pending", "running", "completed", "failed", "cancelled", "skipped"
]

# Story recovery stages, in pipeline order
STORY_STAGES = (
    "code_generating",
    "pushed",
    "judge_evaluating",
    "merged_to_epic",
    "completed",
)


@dataclass
class PhaseRecord:
    """Externally visible status of one phase invocation."""

    status: RecordStatus = "pending"
    started_at: str | None = None
    completed_at: str | None = None
    output: dict[str, Any] | None = None
    cost_usd: float = 0.0
    usage: dict[str, int] = field(default_factory=dict)
    error: str | None = None
    skipped_on_recovery: bool = False


@dataclass
class RunState:
    """Persistent state for one task run.

    Attributes:
        task_id: Identifier for the task being orchestrated
        started_at: When the run first started
        status: Overall run status
        cancel_requested: Cooperative cancellation flag polled by phases
        phases: Map of phase key to PhaseRecord
        branches: Snapshot of the branch registry as dicts
        story_progress: Map of story id to last reached recovery stage
        total_cost_usd: Accumulated cost across phases
    """

    task_id: str
    started_at: datetime = field(default_factory=utcnow)
    status: str = "pending"
    cancel_requested: bool = False
    phases: dict[str, PhaseRecord] = field(default_factory=dict)
    branches: list[dict[str, Any]] = field(default_factory=list)
    story_progress: dict[str, str] = field(default_factory=dict)
    total_cost_usd: float = 0.0

    def phase(self, key: str) -> PhaseRecord:
        """Get the record for a phase, creating a pending one if needed."""
        return self.phases.setdefault(key, PhaseRecord())

    def phase_completed(self, key: str) -> bool:
        record = self.phases.get(key)
        return record is not None and record.status == "completed"

    def story_reached(self, story_id: str, stage: str) -> bool:
        """True if the story's recorded progress is at or past stage."""
        current = self.story_progress.get(story_id)
        if current is None:
            return False
        return STORY_STAGES.index(current) >= STORY_STAGES.index(stage)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunState":
        data = dict(data)
        data["started_at"] = datetime.fromisoformat(data["started_at"])
        data["phases"] = {
            key: PhaseRecord(**record)
            for key, record in data.get("phases", {}).items()
        }
        return cls(**data)


class RunStateStore:
    """JSON file store for RunState, one file per task.

    Every mutation re-reads the file first, so a cancellation flag written by
    another process is never overwritten by a stale in-memory copy.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    def _path(self, task_id: str) -> Path:
        return self.state_dir / f"{task_id}_run.json"

    def find_by_id(self, task_id: str) -> RunState | None:
        """Load state for a task.

        Returns:
            RunState if a file exists, None otherwise
        """
        path = self._path(task_id)
        if not path.exists():
            return None

        with open(path) as f:
            data = json.load(f)

        return RunState.from_dict(data)

    def save(self, state: RunState) -> None:
        """Persist state atomically, creating the state directory if needed."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(state.task_id)
        tmp = path.with_suffix(".json.tmp")

        with open(tmp, "w") as f:
            json.dump(state.to_dict(), f, indent=2, default=str)
        tmp.replace(path)

    def update(self, task_id: str, mutate: Callable[[RunState], None]) -> RunState:
        """Read-modify-write the state for a task.

        Args:
            task_id: Task to update; a fresh RunState is created if missing
            mutate: Callback applying changes in place

        Returns:
            The saved RunState
        """
        state = self.find_by_id(task_id) or RunState(task_id=task_id)
        mutate(state)
        self.save(state)
        return state

    def request_cancel(self, task_id: str) -> RunState:
        def _cancel(state: RunState) -> None:
            state.cancel_requested = True

        return self.update(task_id, _cancel)

    def is_cancel_requested(self, task_id: str) -> bool:
        state = self.find_by_id(task_id)
        return state is not None and state.cancel_requested

    def record_story_progress(self, task_id: str, story_id: str, stage: str) -> None:
        """Persist a story recovery checkpoint."""
        if stage not in STORY_STAGES:
            raise ValueError(f"Unknown story stage: {stage}")

        def _progress(state: RunState) -> None:
            state.story_progress[story_id] = stage

        self.update(task_id, _progress)
