"""Tests for the event-sourced state store."""

from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from epicflow.errors import AgentValidationError
from epicflow.event_store import EventStore, FileEventStore, compute_checksum

TASK_ID = "task-1"


class TestAppend:
    """Tests for EventStore.append()."""

    def test_sequence_ids_start_at_one_and_increase(
        self, event_store: EventStore
    ) -> None:
        """Each appended event gets the next sequence id."""
        first = event_store.append(TASK_ID, "EpicCreated", "planner", {"id": "E1"})
        second = event_store.append(TASK_ID, "EpicCreated", "planner", {"id": "E2"})

        assert first.sequence_id == 1
        assert second.sequence_id == 2

    def test_logs_are_per_task(self, event_store: EventStore) -> None:
        """Sequence ids are scoped to one task."""
        event_store.append(TASK_ID, "EpicCreated", "planner", {"id": "E1"})
        other = event_store.append("task-2", "EpicCreated", "planner", {"id": "E1"})

        assert other.sequence_id == 1
        assert len(event_store.get_events(TASK_ID)) == 1

    def test_identical_event_is_deduplicated(self, event_store: EventStore) -> None:
        """Same type and payload within the window returns the committed event."""
        payload = {"story_id": "S1"}
        first = event_store.append(TASK_ID, "StoryStarted", "dev", payload)
        second = event_store.append(TASK_ID, "StoryStarted", "dev", payload)

        assert second is first
        assert len(event_store.get_events(TASK_ID)) == 1

    def test_same_payload_different_type_is_kept(
        self, event_store: EventStore
    ) -> None:
        """Deduplication considers the event type."""
        event_store.append(TASK_ID, "StoryStarted", "dev", {"story_id": "S1"})
        event_store.append(TASK_ID, "StoryCompleted", "dev", {"story_id": "S1"})

        assert len(event_store.get_events(TASK_ID)) == 2

    def test_identical_event_outside_window_is_kept(
        self, event_store: EventStore
    ) -> None:
        """An old identical event does not suppress a new one."""
        first = event_store.append(TASK_ID, "StoryStarted", "dev", {"story_id": "S1"})
        event_store._events[TASK_ID][0] = replace(
            first, timestamp=first.timestamp - timedelta(seconds=30)
        )

        event_store.append(TASK_ID, "StoryStarted", "dev", {"story_id": "S1"})

        assert len(event_store.get_events(TASK_ID)) == 2

    def test_safe_append_rejects_missing_fields(
        self, event_store: EventStore
    ) -> None:
        """Required payload fields are enforced before anything is written."""
        with pytest.raises(AgentValidationError) as exc_info:
            event_store.safe_append(
                TASK_ID, "StoryCreated", "planner", {"id": "S1", "epic_id": "E1"}
            )

        assert exc_info.value.missing_fields == ["title", "target_repository"]
        assert event_store.get_events(TASK_ID) == []


class TestFold:
    """Tests for state derived from the event log."""

    def test_created_entities_are_pending(self, event_store, seed_epic) -> None:
        """Creation events produce pending epics and stories."""
        seed_epic("E1", stories=[{"id": "S1"}, {"id": "S2"}])

        state = event_store.get_current_state(TASK_ID)

        assert [e.id for e in state.epics] == ["E1"]
        assert state.epics[0].status == "pending"
        assert state.epics[0].story_ids == ["S1", "S2"]
        assert {s.status for s in state.stories} == {"pending"}

    def test_story_inherits_epic_repository(self, event_store, seed_epic) -> None:
        """A story created without a repository takes its epic's."""
        seed_epic("E1", repository="backend")
        event_store.append(
            TASK_ID,
            "StoryCreated",
            "planner",
            {"id": "S1", "epic_id": "E1", "title": "t", "target_repository": None},
        )

        story = event_store.get_current_state(TASK_ID).get_story("S1")

        assert story.target_repository == "backend"

    def test_epic_completes_when_all_stories_complete(
        self, event_store, seed_epic
    ) -> None:
        """Epic status follows its stories."""
        seed_epic("E1", stories=[{"id": "S1"}, {"id": "S2"}])
        event_store.append(TASK_ID, "StoryStarted", "dev", {"story_id": "S1"})

        assert event_store.get_current_state(TASK_ID).epics[0].status == "in_progress"

        event_store.append(TASK_ID, "StoryCompleted", "dev", {"story_id": "S1"})
        event_store.append(TASK_ID, "StoryCompleted", "dev", {"story_id": "S2"})

        assert event_store.get_current_state(TASK_ID).epics[0].status == "completed"

    def test_epic_is_partial_with_mixed_outcomes(self, event_store, seed_epic) -> None:
        seed_epic("E1", stories=[{"id": "S1"}, {"id": "S2"}])
        event_store.append(TASK_ID, "StoryCompleted", "dev", {"story_id": "S1"})
        event_store.append(TASK_ID, "StoryFailed", "dev", {"story_id": "S2"})

        assert event_store.get_current_state(TASK_ID).epics[0].status == "partial"

    def test_failure_after_verified_push_is_ignored(
        self, event_store, seed_epic
    ) -> None:
        """Pushed work stays completed even if a failure is reported later."""
        seed_epic("E1", stories=[{"id": "S1"}])
        event_store.append(
            TASK_ID,
            "StoryPushVerified",
            "git-verifier",
            {"story_id": "S1", "branch_name": "story/t/S1", "commit_sha": "abc"},
        )
        event_store.append(TASK_ID, "StoryFailed", "dev", {"story_id": "S1"})

        story = event_store.get_current_state(TASK_ID).get_story("S1")

        assert story.status == "completed"
        assert story.push_verified is True
        assert story.commit_sha == "abc"

    def test_conflict_metadata_set_and_cleared(self, event_store, seed_epic) -> None:
        """A conflicted story carries file details until it is merged."""
        seed_epic("E1", stories=[{"id": "S1"}])
        event_store.append(
            TASK_ID,
            "StoryConflicted",
            "merge",
            {"story_id": "S1", "branch_name": "story/t/S1", "files": ["a.py"]},
        )

        story = event_store.get_current_state(TASK_ID).get_story("S1")
        assert story.conflict_metadata["files"] == ["a.py"]
        assert story.conflict_metadata["branch_name"] == "story/t/S1"

        event_store.append(TASK_ID, "StoryMerged", "merge", {"story_id": "S1"})

        story = event_store.get_current_state(TASK_ID).get_story("S1")
        assert story.conflict_metadata is None
        assert story.merged_to_epic is True

    def test_team_composition_assigns_developers(self, event_store, seed_epic) -> None:
        seed_epic("E1", stories=[{"id": "S1"}, {"id": "S2"}])
        event_store.append(
            TASK_ID,
            "TeamCompositionDefined",
            "tech-lead",
            {"developers": ["d1", "d2"], "assignments": {"S1": "d1", "S2": "d2"}},
        )

        state = event_store.get_current_state(TASK_ID)

        assert state.get_story("S1").assigned_developer == "d1"
        assert state.get_story("S2").assigned_developer == "d2"
        assert state.current_phase == "team_composition"

    def test_cost_metadata_is_summed(self, event_store) -> None:
        """Total cost is the sum of cost metadata across events."""
        event_store.append(
            TASK_ID, "TaskCompleted", "a", {"phase": "architecture"}, {"cost": 1.5}
        )
        event_store.append(
            TASK_ID, "TaskCompleted", "b", {"phase": "review"}, {"cost": 0.25}
        )
        event_store.append(TASK_ID, "TaskFailed", "c", {"phase": "x"}, {"tokens": 9})

        state = event_store.get_current_state(TASK_ID)

        assert state.total_cost == pytest.approx(1.75)
        assert state.current_phase == "x"


class TestValidateState:
    """Tests for EventStore.validate_state()."""

    def test_valid_state(self, event_store, seed_epic) -> None:
        seed_epic("E1", stories=[{"id": "S1"}])

        assert event_store.validate_state(TASK_ID).valid is True

    def test_developer_with_two_stories_is_invalid(
        self, event_store, seed_epic
    ) -> None:
        """One developer may own only one story."""
        seed_epic(
            "E1",
            stories=[
                {"id": "S1", "assigned_developer": "d1"},
                {"id": "S2", "assigned_developer": "d1"},
            ],
        )

        report = event_store.validate_state(TASK_ID)

        assert report.valid is False
        assert "Developer d1 assigned to multiple stories: S1, S2" in report.errors

    def test_missing_repository_and_orphan_story(self, event_store, seed_epic) -> None:
        seed_epic("E1", repository=None)
        event_store.append(
            TASK_ID,
            "StoryCreated",
            "planner",
            {"id": "S9", "epic_id": "E404", "title": "t", "target_repository": "x"},
        )

        errors = event_store.validate_state(TASK_ID).errors

        assert "Epic E1 has no target repository" in errors
        assert "Story S9 references missing epic E404" in errors


class TestVerifyIntegrity:
    """Tests for EventStore.verify_integrity()."""

    def test_untouched_log_is_valid(self, event_store, seed_epic) -> None:
        seed_epic("E1", stories=[{"id": "S1"}])

        assert event_store.verify_integrity(TASK_ID).valid is True

    def test_detects_tampered_payload(self, event_store, seed_epic) -> None:
        """A payload edited after append no longer matches its checksum."""
        seed_epic("E1")
        event = event_store._events[TASK_ID][0]
        event_store._events[TASK_ID][0] = replace(
            event, payload={**event.payload, "name": "changed"}
        )

        report = event_store.verify_integrity(TASK_ID)

        assert report.valid is False
        assert "Checksum mismatch at sequence 1" in report.errors

    def test_detects_sequence_gap(self, event_store) -> None:
        event_store.append(TASK_ID, "EpicCreated", "p", {"id": "E1"})
        second = event_store.append(TASK_ID, "EpicCreated", "p", {"id": "E2"})
        event_store._events[TASK_ID][1] = replace(second, sequence_id=5)

        errors = event_store.verify_integrity(TASK_ID).errors

        assert "Sequence gap: expected 2, found 5" in errors

    def test_checksum_is_order_independent(self) -> None:
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})


class TestQueries:
    """Tests for statistics and push verification."""

    def test_statistics(self, event_store, seed_epic) -> None:
        seed_epic("E1", stories=[{"id": "S1"}])

        stats = event_store.get_statistics(TASK_ID)

        assert stats["total_events"] == 2
        assert stats["by_type"] == {"EpicCreated": 1, "StoryCreated": 1}
        assert stats["by_agent"] == {"planner": 2}

    def test_unverified_stories(self, event_store, seed_epic) -> None:
        """Completed stories without a verified push are reported."""
        seed_epic("E1", stories=[{"id": "S1"}, {"id": "S2"}])
        event_store.append(TASK_ID, "StoryCompleted", "dev", {"story_id": "S1"})

        unverified = event_store.get_unverified_stories(TASK_ID)

        assert [s.id for s in unverified] == ["S1"]

    @pytest.mark.asyncio
    async def test_verify_story_push_records_remote_sha(
        self, event_store, seed_epic, tmp_path: Path
    ) -> None:
        """A branch found on the remote is recorded as verified."""
        seed_epic("E1", stories=[{"id": "S1"}])
        event_store.append(
            TASK_ID,
            "StoryBranchCreated",
            "orchestrator",
            {"story_id": "S1", "branch_name": "story/task-1/S1"},
        )
        git = AsyncMock()
        git.ls_remote_head.return_value = "deadbeef"

        verified = await event_store.verify_story_push(TASK_ID, "S1", git, tmp_path)

        assert verified is True
        git.ls_remote_head.assert_awaited_once_with(tmp_path, "story/task-1/S1")
        story = event_store.get_current_state(TASK_ID).get_story("S1")
        assert story.push_verified is True
        assert story.commit_sha == "deadbeef"

    @pytest.mark.asyncio
    async def test_verify_story_push_missing_branch(
        self, event_store, seed_epic, tmp_path: Path
    ) -> None:
        """A story whose branch is not on the remote stays unverified."""
        seed_epic("E1", stories=[{"id": "S1", "branch_name": "story/task-1/S1"}])
        git = AsyncMock()
        git.ls_remote_head.return_value = None

        verified = await event_store.verify_story_push(TASK_ID, "S1", git, tmp_path)

        assert verified is False
        assert len(event_store.get_events(TASK_ID)) == 2


class TestFileEventStore:
    """Tests for the JSONL-backed store."""

    def test_events_survive_reload(self, tmp_path: Path) -> None:
        """A new store instance reads back what an earlier one wrote."""
        store = FileEventStore(tmp_path / "events")
        store.append(TASK_ID, "EpicCreated", "planner", {"id": "E1"}, {"cost": 0.5})
        store.append(TASK_ID, "EpicFailed", "orchestrator", {"epic_id": "E1"})

        reloaded = FileEventStore(tmp_path / "events")
        events = reloaded.get_events(TASK_ID)

        assert [e.event_type for e in events] == ["EpicCreated", "EpicFailed"]
        assert events[0].metadata == {"cost": 0.5}
        assert reloaded.get_current_state(TASK_ID).epics[0].status == "failed"

    def test_torn_line_is_skipped(self, tmp_path: Path) -> None:
        """A partially written final line does not break loading."""
        store = FileEventStore(tmp_path)
        store.append(TASK_ID, "EpicCreated", "planner", {"id": "E1"})
        with open(tmp_path / f"{TASK_ID}.jsonl", "a") as f:
            f.write('{"task_id": "task-1", "sequ')

        reloaded = FileEventStore(tmp_path)

        assert len(reloaded.get_events(TASK_ID)) == 1

    def test_append_after_torn_line_survives_reload(self, tmp_path: Path) -> None:
        """An event appended after a crash mid-write is not fused to the tail."""
        path = tmp_path / f"{TASK_ID}.jsonl"
        FileEventStore(tmp_path).append(TASK_ID, "EpicCreated", "planner", {"id": "E1"})
        with open(path, "a") as f:
            f.write('{"task_id": "task-1", "seq')

        FileEventStore(tmp_path).append(
            TASK_ID, "StoryCreated", "planner", {"id": "S1", "epic_id": "E1"}
        )
        events = FileEventStore(tmp_path).get_events(TASK_ID)

        assert [e.event_type for e in events] == ["EpicCreated", "StoryCreated"]
        assert [e.sequence_id for e in events] == [1, 2]
        assert path.read_text().endswith("\n")
        assert '"seq\n' not in path.read_text()

    def test_append_after_reload_continues_sequence(self, tmp_path: Path) -> None:
        FileEventStore(tmp_path).append(TASK_ID, "EpicCreated", "p", {"id": "E1"})

        event = FileEventStore(tmp_path).append(
            TASK_ID, "EpicCreated", "p", {"id": "E2"}
        )

        assert event.sequence_id == 2
