"""Event-sourced state store.

Every epic/story fact is appended to a per-task log and current state is
derived by left-folding that log in sequence order. EventStore keeps the log
in memory; FileEventStore additionally writes each event to a JSONL file and
fsyncs before returning so an appended event survives a crash.
"""

import hashlib
import json
import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from epicflow.errors import AgentValidationError
from epicflow.models import Epic, Event, Story, TaskState, utcnow

if TYPE_CHECKING:
    from epicflow.git import GitRunner

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "EpicCreated": ("id", "name", "target_repository"),
    "EpicBranchCreated": ("epic_id", "branch_name"),
    "EpicFailed": ("epic_id",),
    "StoryCreated": ("id", "epic_id", "title", "target_repository"),
    "StoryStarted": ("story_id",),
    "StoryCompleted": ("story_id",),
    "StoryFailed": ("story_id",),
    "StoryBranchCreated": ("story_id", "branch_name"),
    "StoryPushVerified": ("story_id", "branch_name"),
    "StoryMerged": ("story_id",),
    "StoryConflicted": ("story_id",),
    "TechLeadCompleted": ("epic_id",),
    "PRCreated": ("epic_id", "pr_number", "pr_url"),
    "TeamCompositionDefined": ("developers",),
}

# Events that only move the task's current phase marker
PHASE_EVENTS = {
    "TechLeadCompleted": "architecture",
    "TeamCompositionDefined": "team_composition",
    "PRCreated": "pr_created",
}

DUPLICATE_WINDOW = timedelta(seconds=5)
DUPLICATE_LOOKBACK = 10


def compute_checksum(payload: dict[str, Any]) -> str:
    """Stable short checksum of an event payload."""
    encoded = json.dumps(payload, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()[:16]


def missing_fields(event_type: str, payload: dict[str, Any]) -> list[str]:
    """Required payload fields that are absent or empty."""
    return [
        name
        for name in REQUIRED_FIELDS.get(event_type, ())
        if payload.get(name) in (None, "", [])
    ]


@dataclass
class ValidationReport:
    """Result of checking folded state invariants."""

    valid: bool
    errors: list[str] = field(default_factory=list)


def fold_events(events: list[Event]) -> TaskState:
    """Left-fold an ordered event sequence into current task state.

    Later events for the same entity overwrite fields; entities never
    disappear once created.

    Args:
        events: Events in ascending sequence order

    Returns:
        TaskState with epics and stories in creation order
    """
    state = TaskState()
    epics: dict[str, Epic] = {}
    stories: dict[str, Story] = {}

    for event in events:
        p = event.payload
        etype = event.event_type

        if etype == "EpicCreated":
            existing = epics.get(p["id"])
            if existing is None:
                epic = Epic.from_dict(p)
                epic.story_ids = []
                epic.status = "pending"
                epics[epic.id] = epic
                state.epics.append(epic)
            else:
                existing.name = p.get("name", existing.name)
                existing.target_repository = p.get(
                    "target_repository", existing.target_repository
                )
                existing.execution_order = int(
                    p.get("execution_order", existing.execution_order)
                )
                existing.dependencies = list(
                    p.get("dependencies", existing.dependencies)
                )
                existing.description = p.get("description", existing.description)

        elif etype == "StoryCreated":
            story = stories.get(p["id"])
            if story is None:
                story = Story.from_dict(p)
                story.status = "pending"
                stories[story.id] = story
                state.stories.append(story)
            else:
                for key, value in p.items():
                    if key in Story.__dataclass_fields__ and key != "status":
                        setattr(story, key, value)
            epic = epics.get(story.epic_id)
            if epic is not None:
                if story.id not in epic.story_ids:
                    epic.story_ids.append(story.id)
                if not story.target_repository:
                    story.target_repository = epic.target_repository

        elif etype == "StoryStarted":
            story = stories.get(p["story_id"])
            if story is not None:
                story.status = "in_progress"
                epic = epics.get(story.epic_id)
                if epic is not None and epic.status == "pending":
                    epic.status = "in_progress"

        elif etype == "StoryCompleted":
            story = stories.get(p["story_id"])
            if story is not None:
                story.status = "completed"
                _refresh_epic_status(epics.get(story.epic_id), stories)

        elif etype == "StoryFailed":
            story = stories.get(p["story_id"])
            # Pushed work is ground truth; a later failure report cannot undo it
            if story is not None and not story.push_verified:
                story.status = "failed"
                _refresh_epic_status(epics.get(story.epic_id), stories)

        elif etype == "StoryPushVerified":
            story = stories.get(p["story_id"])
            if story is not None:
                story.status = "completed"
                story.push_verified = True
                story.branch_name = p["branch_name"]
                story.commit_sha = p.get("commit_sha", story.commit_sha)
                _refresh_epic_status(epics.get(story.epic_id), stories)

        elif etype == "StoryBranchCreated":
            story = stories.get(p["story_id"])
            if story is not None:
                story.branch_name = p["branch_name"]

        elif etype == "StoryMerged":
            story = stories.get(p["story_id"])
            if story is not None:
                story.merged_to_epic = True
                story.conflict_metadata = None

        elif etype == "StoryConflicted":
            story = stories.get(p["story_id"])
            if story is not None:
                story.merged_to_epic = False
                story.conflict_metadata = {
                    "files": list(p.get("files", [])),
                    "branch_name": p.get("branch_name", story.branch_name),
                    "detected_at": event.timestamp.isoformat(),
                }

        elif etype == "EpicBranchCreated":
            epic = epics.get(p["epic_id"])
            if epic is not None:
                epic.branch_name = p["branch_name"]

        elif etype == "EpicFailed":
            epic = epics.get(p["epic_id"])
            if epic is not None:
                epic.status = "failed"

        elif etype == "TeamCompositionDefined":
            for story_id, developer in p.get("assignments", {}).items():
                story = stories.get(story_id)
                if story is not None:
                    story.assigned_developer = developer

        elif etype in ("TaskCompleted", "TaskFailed") and p.get("phase"):
            state.current_phase = p["phase"]
            if etype == "TaskCompleted":
                state.completed_phases.add(p["phase"])
            else:
                state.completed_phases.discard(p["phase"])

        if etype in PHASE_EVENTS:
            state.current_phase = PHASE_EVENTS[etype]

        cost = event.metadata.get("cost")
        if isinstance(cost, (int, float)):
            state.total_cost += cost

    return state


def _refresh_epic_status(epic: Epic | None, stories: dict[str, Story]) -> None:
    if epic is None or epic.status == "failed":
        return
    owned = [stories[sid] for sid in epic.story_ids if sid in stories]
    if not owned:
        return
    statuses = {s.status for s in owned}
    if statuses == {"completed"}:
        epic.status = "completed"
    elif statuses <= {"completed", "failed"}:
        epic.status = "partial" if "completed" in statuses else "failed"
    elif epic.status == "pending":
        epic.status = "in_progress"


class EventStore:
    """Append-only, per-task event log held in memory.

    Subclasses override _load() and _persist() to add durability.
    """

    def __init__(self) -> None:
        self._events: dict[str, list[Event]] = {}

    def _load(self, task_id: str) -> list[Event]:
        return self._events.setdefault(task_id, [])

    def _persist(self, event: Event) -> None:
        """Durably record an event. No-op for the in-memory store."""

    def append(
        self,
        task_id: str,
        event_type: str,
        agent_name: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        """Append an event and return it with its sequence id.

        An identical event (same type and payload checksum) appended within
        the last few seconds is treated as a duplicate and the already
        committed event is returned instead.

        Args:
            task_id: Task whose log receives the event
            event_type: Event type name, e.g. "StoryCompleted"
            agent_name: Who produced the fact
            payload: Event-specific fields
            metadata: Optional accounting data such as cost

        Returns:
            The committed Event
        """
        log = self._load(task_id)
        checksum = compute_checksum(payload)
        now = utcnow()

        for previous in reversed(log[-DUPLICATE_LOOKBACK:]):
            if (
                previous.event_type == event_type
                and previous.checksum == checksum
                and now - previous.timestamp <= DUPLICATE_WINDOW
            ):
                logger.debug(
                    f"Duplicate {event_type} for task {task_id} suppressed "
                    f"(seq {previous.sequence_id})"
                )
                return previous

        event = Event(
            task_id=task_id,
            sequence_id=(log[-1].sequence_id + 1) if log else 1,
            event_type=event_type,
            agent_name=agent_name,
            payload=dict(payload),
            metadata=dict(metadata or {}),
            timestamp=now,
            checksum=checksum,
        )
        self._persist(event)
        log.append(event)
        return event

    def safe_append(
        self,
        task_id: str,
        event_type: str,
        agent_name: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        """Append after checking the event type's required fields.

        Raises:
            AgentValidationError: If a required field is missing or empty
        """
        missing = missing_fields(event_type, payload)
        if missing:
            raise AgentValidationError(
                f"{event_type} is missing required fields: {', '.join(missing)}",
                missing_fields=missing,
            )
        return self.append(task_id, event_type, agent_name, payload, metadata)

    def get_events(self, task_id: str) -> list[Event]:
        """Events for a task in ascending sequence order."""
        return list(self._load(task_id))

    def get_current_state(self, task_id: str) -> TaskState:
        return fold_events(self.get_events(task_id))

    def validate_state(self, task_id: str) -> ValidationReport:
        """Check folded state invariants.

        Verifies that every story references an existing epic, that every
        epic and story has a target repository, and that no developer holds
        more than one story and no story sits in two epics.
        """
        state = self.get_current_state(task_id)
        errors: list[str] = []
        epic_ids = {e.id for e in state.epics}

        for epic in state.epics:
            if not epic.target_repository:
                errors.append(f"Epic {epic.id} has no target repository")

        owners: dict[str, list[str]] = {}
        for epic in state.epics:
            for story_id in epic.story_ids:
                owners.setdefault(story_id, []).append(epic.id)
        for story_id, epic_list in owners.items():
            if len(epic_list) > 1:
                errors.append(
                    f"Story {story_id} belongs to multiple epics: "
                    f"{', '.join(epic_list)}"
                )

        by_developer: dict[str, list[str]] = {}
        for story in state.stories:
            if story.epic_id not in epic_ids:
                errors.append(
                    f"Story {story.id} references missing epic {story.epic_id}"
                )
            if not story.target_repository:
                errors.append(f"Story {story.id} has no target repository")
            if story.assigned_developer:
                by_developer.setdefault(story.assigned_developer, []).append(story.id)

        for developer, story_ids in by_developer.items():
            if len(story_ids) > 1:
                errors.append(
                    f"Developer {developer} assigned to multiple stories: "
                    f"{', '.join(story_ids)}"
                )

        return ValidationReport(valid=not errors, errors=errors)

    def verify_integrity(self, task_id: str) -> ValidationReport:
        """Check the raw log for gaps, clock regressions and tampering."""
        issues: list[str] = []
        events = self.get_events(task_id)
        for index, event in enumerate(events):
            expected = index + 1
            if event.sequence_id != expected:
                issues.append(
                    f"Sequence gap: expected {expected}, found {event.sequence_id}"
                )
            if index and event.timestamp < events[index - 1].timestamp:
                issues.append(f"Timestamp regression at sequence {event.sequence_id}")
            if event.checksum and event.checksum != compute_checksum(event.payload):
                issues.append(f"Checksum mismatch at sequence {event.sequence_id}")
            missing = missing_fields(event.event_type, event.payload)
            if missing:
                issues.append(
                    f"{event.event_type} at sequence {event.sequence_id} "
                    f"missing fields: {', '.join(missing)}"
                )
        return ValidationReport(valid=not issues, errors=issues)

    def get_statistics(self, task_id: str) -> dict[str, Any]:
        events = self.get_events(task_id)
        return {
            "total_events": len(events),
            "by_type": dict(Counter(e.event_type for e in events)),
            "by_agent": dict(Counter(e.agent_name for e in events)),
            "first_event": events[0].timestamp.isoformat() if events else None,
            "last_event": events[-1].timestamp.isoformat() if events else None,
        }

    def get_unverified_stories(self, task_id: str) -> list[Story]:
        """Completed stories whose push to the remote was never verified."""
        state = self.get_current_state(task_id)
        return [
            s for s in state.stories if s.status == "completed" and not s.push_verified
        ]

    async def verify_story_push(
        self,
        task_id: str,
        story_id: str,
        git: "GitRunner",
        repo_path: Path,
    ) -> bool:
        """Confirm a story branch exists on the remote and record it.

        Returns:
            True if the branch was found and StoryPushVerified was appended
        """
        story = self.get_current_state(task_id).get_story(story_id)
        if story is None or not story.branch_name:
            logger.warning(f"Cannot verify push for story {story_id}: no branch")
            return False

        sha = await git.ls_remote_head(repo_path, story.branch_name)
        if sha is None:
            logger.warning(
                f"Story {story_id} branch {story.branch_name} not found on remote"
            )
            return False

        self.append(
            task_id,
            "StoryPushVerified",
            "git-verifier",
            {"story_id": story_id, "branch_name": story.branch_name, "commit_sha": sha},
        )
        return True


class FileEventStore(EventStore):
    """Event store backed by one JSONL file per task.

    Each append is flushed and fsynced before returning. A final line left
    without its newline by an interrupted write is cut off when the log is
    first loaded, so later appends start on a fresh line. Other lines that
    fail to parse are skipped.
    """

    def __init__(self, directory: Path) -> None:
        super().__init__()
        self.directory = directory

    def _path(self, task_id: str) -> Path:
        return self.directory / f"{task_id}.jsonl"

    def _load(self, task_id: str) -> list[Event]:
        if task_id in self._events:
            return self._events[task_id]

        events: list[Event] = []
        path = self._path(task_id)
        if path.exists():
            _truncate_torn_tail(path)
            with open(path) as f:
                for line_no, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        events.append(Event.from_dict(json.loads(line)))
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                        logger.warning(
                            f"Skipping unreadable event at {path}:{line_no}: {e}"
                        )
        events.sort(key=lambda e: e.sequence_id)
        self._events[task_id] = events
        return events

    def _persist(self, event: Event) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self._path(event.task_id), "a") as f:
            f.write(json.dumps(event.to_dict(), default=str) + "\n")
            f.flush()
            os.fsync(f.fileno())



def _truncate_torn_tail(path: Path) -> None:
    """Cut the log back to its last complete line."""
    with open(path, "rb+") as f:
        data = f.read()
        if not data or data.endswith(b"\n"):
            return
        keep = data.rfind(b"\n") + 1
        logger.warning(
            f"Discarding {len(data) - keep} bytes of an interrupted write "
            f"at the end of {path}"
        )
        f.truncate(keep)
        f.flush()
        os.fsync(f.fileno())
