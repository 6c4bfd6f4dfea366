"""Tests for the per-story pipeline."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from epicflow.errors import (
    AgentInvocationError,
    CostBudgetExceededError,
    GitError,
)
from epicflow.merge import MergeOutcome, StoryMerger
from epicflow.models import AgentResult
from epicflow.story_pipeline import (
    StoryPipeline,
    build_developer_prompt,
    build_review_prompt,
)
from epicflow.workspace import WorkspaceManager

TASK_ID = "task-1"
EPIC_BRANCH = "epic/task-1/E1"
STORY_BRANCH = "story/task-1/S1"

FINISHED = "✅ DEVELOPER_FINISHED_SUCCESSFULLY\n📍 Commit SHA: abc1234"


def scripted_agent(developer: list[str], judge: list[str]):
    """Agent double answering each agent type from its own script."""
    scripts = {"developer": iter(developer), "judge": iter(judge)}
    calls: list[tuple] = []

    async def _invoke(agent_type: str, prompt: str, *args) -> AgentResult:
        calls.append((agent_type, prompt, args))
        return AgentResult(
            output=next(scripts[agent_type]), cost_usd=0.1, session_id="sess-1"
        )

    return _invoke, calls


@pytest.fixture
def team_path(config) -> Path:
    path = config.workspace_root / TASK_ID / "team-1" / "backend"
    path.mkdir(parents=True)
    (path / "README.md").write_text("hello\n")
    return path


@pytest.fixture
def workspaces(config, repositories) -> WorkspaceManager:
    return WorkspaceManager(config.workspace_root, repositories, {})


@pytest.fixture
def merger() -> AsyncMock:
    merger = AsyncMock(spec=StoryMerger)
    merger.merge_story.return_value = MergeOutcome(True, "clean")
    return merger


@pytest.fixture
def track() -> MagicMock:
    return MagicMock()


@pytest.fixture
def pipeline(services, workspaces, merger, track) -> StoryPipeline:
    return StoryPipeline(services, workspaces, merger, track, fetch_backoff=0.0)


@pytest.fixture
def story_state(event_store, seed_epic):
    """Epic E1 with story S1, folded from the log."""
    seed_epic(
        "E1",
        stories=[{"id": "S1", "files_to_modify": ["app.py"]}],
        branch_name=EPIC_BRANCH,
    )
    state = event_store.get_current_state(TASK_ID)
    return state.get_epic("E1"), state.get_story("S1")


class TestPrompts:
    """Tests for prompt builders."""

    def test_developer_prompt_includes_feedback(self, story_state) -> None:
        _, story = story_state

        prompt = build_developer_prompt(story, feedback="add tests")

        assert "Modify: app.py" in prompt
        assert "add tests" in prompt
        assert "✅ DEVELOPER_FINISHED_SUCCESSFULLY" in prompt

    def test_review_prompt_names_commit(self, story_state) -> None:
        _, story = story_state

        assert "at abc1234" in build_review_prompt(story, "abc1234")


class TestStoryPipelineRun:
    """Tests for StoryPipeline.run()."""

    @pytest.mark.asyncio
    async def test_happy_path(
        self,
        pipeline,
        story_state,
        context,
        services,
        agent,
        git,
        merger,
        team_path,
        workspaces,
        track,
    ) -> None:
        """Developer, review and merge all succeed."""
        epic, story = story_state
        agent.side_effect, calls = scripted_agent([FINISHED], ["✅ APPROVED"])
        git.count_commits.return_value = 1
        git.ls_remote_head.return_value = "abc1234"

        outcome = await pipeline.run(context, epic, story, team_path, EPIC_BRANCH)

        assert outcome.status == "completed"
        assert outcome.commit_sha == "abc1234"
        assert outcome.merge_tier == "clean"
        assert [c[0] for c in calls] == ["developer", "judge"]
        assert track.call_count == 2
        merger.merge_story.assert_awaited_once()
        assert merger.merge_story.await_args.kwargs["source_ref"] == (
            f"origin/{STORY_BRANCH}"
        )
        merger.cleanup_story_branch.assert_awaited_once_with(
            TASK_ID, team_path, STORY_BRANCH
        )

        types = [e.event_type for e in services.event_store.get_events(TASK_ID)]
        assert types[-5:] == [
            "StoryBranchCreated",
            "StoryStarted",
            "StoryPushVerified",
            "StoryMerged",
            "StoryCompleted",
        ]
        folded = services.event_store.get_current_state(TASK_ID).get_story("S1")
        assert folded.merged_to_epic is True
        assert folded.push_verified is True
        assert context.get_branch(STORY_BRANCH).merged is True
        run_state = services.run_states.find_by_id(TASK_ID)
        assert run_state.story_progress["S1"] == "completed"
        assert not workspaces.story_path(team_path, "S1").exists()

    @pytest.mark.asyncio
    async def test_explicit_failure_marker(
        self, pipeline, story_state, context, services, agent, team_path, workspaces
    ) -> None:
        """A reported failure ends the story and keeps its workspace."""
        epic, story = story_state
        agent.side_effect, calls = scripted_agent(["❌ FAILED: cannot build"], [])

        outcome = await pipeline.run(context, epic, story, team_path, EPIC_BRANCH)

        assert outcome.status == "failed"
        assert outcome.error == "Developer reported explicit failure"
        assert len(calls) == 1
        last = services.event_store.get_events(TASK_ID)[-1]
        assert last.event_type == "StoryFailed"
        assert workspaces.story_path(team_path, "S1").exists()

    @pytest.mark.asyncio
    async def test_rejected_until_retries_exhausted(
        self, pipeline, story_state, context, agent, git, team_path
    ) -> None:
        """Reviewer feedback reaches the developer, up to the retry bound."""
        epic, story = story_state
        agent.side_effect, calls = scripted_agent(
            [FINISHED] * 3, ["❌ REJECTED: needs tests"] * 3
        )
        git.count_commits.return_value = 1
        git.ls_remote_head.return_value = "abc1234"

        outcome = await pipeline.run(context, epic, story, team_path, EPIC_BRANCH)

        assert outcome.status == "failed"
        assert outcome.attempts == 3
        assert "needs tests" in outcome.error
        developer_calls = [c for c in calls if c[0] == "developer"]
        assert len(developer_calls) == 3
        assert "needs tests" in developer_calls[1][1]
        assert developer_calls[1][2][-1] == {"session_id": "sess-1"}

    @pytest.mark.asyncio
    async def test_conflict_keeps_story_for_human(
        self, pipeline, story_state, context, services, agent, git, merger, team_path
    ) -> None:
        epic, story = story_state
        agent.side_effect, _ = scripted_agent([FINISHED], ["✅ APPROVED"])
        git.count_commits.return_value = 1
        git.ls_remote_head.return_value = "abc1234"
        merger.merge_story.return_value = MergeOutcome(
            False, "manual", ["app.py"], error="unresolved conflicts in app.py"
        )

        outcome = await pipeline.run(context, epic, story, team_path, EPIC_BRANCH)

        assert outcome.status == "conflicted"
        assert outcome.merge_tier == "manual"
        merger.cleanup_story_branch.assert_not_awaited()
        folded = services.event_store.get_current_state(TASK_ID).get_story("S1")
        assert folded.conflict_metadata["files"] == ["app.py"]
        assert folded.merged_to_epic is False

    @pytest.mark.asyncio
    async def test_already_merged_story_is_skipped(
        self, pipeline, story_state, context, services, agent, team_path
    ) -> None:
        epic, story = story_state
        services.run_states.record_story_progress(TASK_ID, "S1", "merged_to_epic")

        outcome = await pipeline.run(context, epic, story, team_path, EPIC_BRANCH)

        assert outcome.skipped is True
        assert outcome.status == "completed"
        agent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resume_from_pushed_commit(
        self, pipeline, story_state, context, services, agent, git, team_path
    ) -> None:
        """A story pushed before a restart goes straight to review."""
        epic, story = story_state
        services.run_states.record_story_progress(TASK_ID, "S1", "pushed")
        agent.side_effect, calls = scripted_agent([], ["✅ APPROVED"])
        git.ls_remote_head.return_value = "fedcba9"

        outcome = await pipeline.run(context, epic, story, team_path, EPIC_BRANCH)

        assert outcome.status == "completed"
        assert outcome.commit_sha == "fedcba9"
        assert [c[0] for c in calls] == ["judge"]

    @pytest.mark.asyncio
    async def test_agent_error_fails_story(
        self, pipeline, story_state, context, agent, team_path
    ) -> None:
        epic, story = story_state
        agent.side_effect = AgentInvocationError("invalid request")

        outcome = await pipeline.run(context, epic, story, team_path, EPIC_BRANCH)

        assert outcome.status == "failed"
        assert outcome.error == "invalid request"

    @pytest.mark.asyncio
    async def test_budget_error_propagates(
        self, pipeline, story_state, context, agent, track, team_path
    ) -> None:
        epic, story = story_state
        agent.side_effect, _ = scripted_agent([FINISHED], [])
        track.side_effect = CostBudgetExceededError(TASK_ID, "task", 2.0, 1.0)

        with pytest.raises(CostBudgetExceededError):
            await pipeline.run(context, epic, story, team_path, EPIC_BRANCH)

    @pytest.mark.asyncio
    async def test_registered_branch_is_reused(
        self, pipeline, story_state, context, services, agent, team_path
    ) -> None:
        """A branch already in the registry is not renamed or re-announced."""
        epic, story = story_state
        context.register_branch(
            "story/custom", "story", "backend", EPIC_BRANCH, "E1", "S1"
        )
        agent.side_effect, calls = scripted_agent(["❌ FAILED"], [])

        await pipeline.run(context, epic, story, team_path, EPIC_BRANCH)

        assert "Branch: story/custom" in calls[0][1]
        types = [e.event_type for e in services.event_store.get_events(TASK_ID)]
        assert "StoryBranchCreated" not in types


class TestValidateGit:
    """Tests for git-truth-first validation."""

    @pytest.mark.asyncio
    async def test_commits_win_over_missing_marker(
        self, pipeline, story_state, git, tmp_path
    ) -> None:
        """New commits prove the work even when the agent says nothing."""
        _, story = story_state
        story.branch_name = STORY_BRANCH
        git.count_commits.return_value = 2
        git.rev_parse.return_value = "1234567"
        git.ls_remote_head.return_value = None

        validation = await pipeline.validate_git(
            TASK_ID, story, tmp_path, EPIC_BRANCH, "I changed some files."
        )

        assert validation.success is True
        assert validation.git_verified is True
        assert validation.commit_sha == "1234567"
        git.push_with_fallback.assert_awaited_once_with(tmp_path, STORY_BRANCH)

    @pytest.mark.asyncio
    async def test_uncommitted_work_is_committed(
        self, pipeline, story_state, git, tmp_path
    ) -> None:
        _, story = story_state
        story.branch_name = STORY_BRANCH
        git.commit_all.return_value = True

        validation = await pipeline.validate_git(
            TASK_ID, story, tmp_path, EPIC_BRANCH, ""
        )

        assert validation.git_verified is True
        git.commit_all.assert_awaited_once_with(tmp_path, f"feat: {story.title}")
        git.push_with_fallback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_marker_is_fallback(self, pipeline, story_state, tmp_path) -> None:
        """Without commits the completion marker and its SHA are trusted."""
        _, story = story_state

        validation = await pipeline.validate_git(
            TASK_ID, story, tmp_path, EPIC_BRANCH, FINISHED
        )

        assert validation.success is True
        assert validation.git_verified is False
        assert validation.commit_sha == "abc1234"

    @pytest.mark.asyncio
    async def test_no_evidence_fails(self, pipeline, story_state, tmp_path) -> None:
        _, story = story_state

        validation = await pipeline.validate_git(
            TASK_ID, story, tmp_path, EPIC_BRANCH, "done"
        )

        assert validation.success is False
        assert validation.error == "No commits found and no finish marker"

    @pytest.mark.asyncio
    async def test_fetch_failure_is_tolerated(
        self, pipeline, story_state, git, tmp_path
    ) -> None:
        _, story = story_state
        git.fetch.side_effect = GitError(["fetch"], 128, "unreachable")

        validation = await pipeline.validate_git(
            TASK_ID, story, tmp_path, EPIC_BRANCH, FINISHED
        )

        assert validation.success is True
        assert git.fetch.await_count == 3
