"""Data models for epicflow.

Defines dataclasses for events, derived epic/story state, branch records,
phase results and scheduler bookkeeping. Persisted models round-trip through
to_dict()/from_dict() for JSON storage.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Union

EpicStatus = Literal["pending", "in_progress", "completed", "failed", "partial"]
StoryStatus = Literal["pending", "in_progress", "completed", "failed"]


def utcnow() -> datetime:
    """Timezone-aware current time used for all persisted timestamps."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """An immutable fact appended to a task's event log.

    Events are the only source of truth for epic/story existence and status.
    """

    task_id: str
    sequence_id: int
    event_type: str
    agent_name: str
    payload: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    checksum: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        data = dict(data)
        data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        return cls(**data)


@dataclass
class Repository:
    """A repository epics can target."""

    name: str
    full_name: str | None = None
    url: str | None = None
    default_branch: str = "main"

    def matches(self, reference: str | None) -> bool:
        """True if reference names this repository by full or short name."""
        if not reference:
            return False
        return reference in (self.name, self.full_name)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Repository":
        return cls(
            name=data["name"],
            full_name=data.get("full_name"),
            url=data.get("url"),
            default_branch=data.get("default_branch", "main"),
        )


@dataclass
class Epic:
    """A coarse unit of work targeting exactly one repository.

    As a folded entity its status is derived from events and never
    written directly.
    """

    id: str
    name: str
    target_repository: str | None
    branch_name: str | None = None
    story_ids: list[str] = field(default_factory=list)
    status: EpicStatus = "pending"
    execution_order: int = 1
    dependencies: list[str] = field(default_factory=list)
    description: str = ""
    # True when the planner declared execution_order rather than defaulting it
    explicit_order: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Epic":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            target_repository=data.get("target_repository"),
            branch_name=data.get("branch_name"),
            story_ids=list(data.get("story_ids", [])),
            status=data.get("status", "pending"),
            execution_order=int(data.get("execution_order", 1)),
            dependencies=list(data.get("dependencies", [])),
            description=data.get("description", ""),
            explicit_order=bool(
                data.get("explicit_order", "execution_order" in data)
            ),
        )


@dataclass
class Story:
    """The smallest assignable unit of work.

    A story belongs to exactly one epic, inherits its target repository and
    is assigned to exactly one developer.
    """

    id: str
    epic_id: str
    title: str
    target_repository: str | None = None
    assigned_developer: str | None = None
    description: str = ""
    files_to_read: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    files_to_create: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    branch_name: str | None = None
    status: StoryStatus = "pending"
    merged_to_epic: bool = False
    conflict_metadata: dict[str, Any] | None = None
    push_verified: bool = False
    commit_sha: str | None = None

    @property
    def written_files(self) -> set[str]:
        return set(self.files_to_modify) | set(self.files_to_create)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Story":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class TaskState:
    """Current epic/story state folded from a task's event log."""

    epics: list[Epic] = field(default_factory=list)
    stories: list[Story] = field(default_factory=list)
    current_phase: str | None = None
    total_cost: float = 0.0
    # Phase keys whose latest completion event reported success
    completed_phases: set[str] = field(default_factory=set)

    def get_epic(self, epic_id: str) -> Epic | None:
        return next((e for e in self.epics if e.id == epic_id), None)

    def get_story(self, story_id: str) -> Story | None:
        return next((s for s in self.stories if s.id == story_id), None)

    def stories_for_epic(self, epic_id: str) -> list[Story]:
        return [s for s in self.stories if s.epic_id == epic_id]


@dataclass
class TokenUsage:
    """Input/output token counts reported by an agent."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass
class AgentResult:
    """Result from an external agent invocation.

    The core only parses markers out of output and accounts cost/usage.
    """

    output: str
    cost_usd: float = 0.0
    usage: TokenUsage = field(default_factory=TokenUsage)
    session_id: str = ""


@dataclass
class BranchInfo:
    """A branch tracked by the orchestration context's registry."""

    name: str
    branch_type: Literal["epic", "story"]
    repository: str
    base_branch: str
    epic_id: str
    story_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    pushed: bool = False
    merged: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BranchInfo":
        data = dict(data)
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        return cls(**data)


# Typed phase outputs, one variant per phase, discriminated by ``kind``.


@dataclass(frozen=True)
class ArchitectureOutput:
    epic_id: str
    design: str
    kind: Literal["architecture"] = "architecture"


@dataclass(frozen=True)
class ImplementationOutput:
    epic_id: str
    completed_stories: list[str] = field(default_factory=list)
    failed_stories: list[str] = field(default_factory=list)
    conflicted_stories: list[str] = field(default_factory=list)
    kind: Literal["implementation"] = "implementation"


@dataclass(frozen=True)
class ReviewOutput:
    epic_id: str
    approved: bool
    feedback: str | None = None
    kind: Literal["review"] = "review"


@dataclass(frozen=True)
class TeamOrchestrationOutput:
    status: Literal["completed", "partial", "failed"]
    teams_total: int
    teams_failed: int
    failed_epics: list[str] = field(default_factory=list)
    cost_breakdown: dict[str, float] = field(default_factory=dict)
    kind: Literal["team_orchestration"] = "team_orchestration"


PhaseOutput = Union[
    ArchitectureOutput, ImplementationOutput, ReviewOutput, TeamOrchestrationOutput
]


@dataclass(frozen=True)
class PhaseResult:
    """Outcome of one phase invocation. Immutable once created."""

    success: bool
    phase_name: str
    duration_seconds: float = 0.0
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    data: PhaseOutput | None = None
    metrics: dict[str, float] = field(default_factory=dict)
    cost_usd: float = 0.0
    tokens: TokenUsage = field(default_factory=TokenUsage)
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RetryState:
    """Per-invocation bookkeeping for a phase's retry-with-feedback loop."""

    attempt: int
    max_attempts: int
    last_violation_type: str | None = None
    last_feedback: str | None = None

    @property
    def is_retry(self) -> bool:
        return self.attempt > 1


@dataclass
class CircuitBreakerState:
    """Cumulative failure counts across scheduled teams."""

    failed_count: int = 0
    total_count: int = 0
    threshold: float = 0.5

    @property
    def failure_rate(self) -> float:
        return self.failed_count / self.total_count if self.total_count else 0.0

    @property
    def should_trip(self) -> bool:
        return self.total_count > 1 and self.failure_rate > self.threshold


@dataclass
class Batch:
    """Epics sharing one execution order rank."""

    execution_order: int
    epics: list[Epic]
    concurrent: bool

    @property
    def repositories(self) -> set[str]:
        return {e.target_repository for e in self.epics if e.target_repository}


@dataclass
class ExecutionPlan:
    """Ordered batches consumed by the team scheduler."""

    batches: list[Batch] = field(default_factory=list)

    @property
    def epic_count(self) -> int:
        return sum(len(b.epics) for b in self.batches)


OUTPUT_TYPES = {
    "architecture": ArchitectureOutput,
    "implementation": ImplementationOutput,
    "review": ReviewOutput,
    "team_orchestration": TeamOrchestrationOutput,
}


def phase_output_from_dict(data: dict[str, Any] | None) -> PhaseOutput | None:
    """Rebuild a typed phase output from its dict form, keyed on ``kind``."""
    if not data:
        return None
    output_type = OUTPUT_TYPES.get(data.get("kind", ""))
    if output_type is None:
        return None
    return output_type(**data)


def phase_result_from_dict(data: dict[str, Any]) -> PhaseResult:
    data = dict(data)
    data["data"] = phase_output_from_dict(data.get("data"))
    data["tokens"] = TokenUsage(**data.get("tokens", {}))
    return PhaseResult(**data)
