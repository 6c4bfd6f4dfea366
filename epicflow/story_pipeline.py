"""Per-story pipeline: developer, git-truth validation, review, merge.

Each story runs in its own copy of the team's working tree. After the
developer agent returns, the remote is fetched and new commits on the story
branch are taken as proof of work; completion markers in the agent output are
only a fallback when no commits exist. Approved stories are merged into the
epic branch and their branches removed. Rejected and conflicted stories keep
their branches.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from epicflow import markers
from epicflow.errors import (
    AgentInvocationError,
    AgentTimeoutError,
    AgentValidationError,
    GitError,
)
from epicflow.git import GitRunner, story_branch_name
from epicflow.merge import StoryMerger
from epicflow.models import AgentResult, Epic, Story
from epicflow.retry import RetryPolicy, retry_async
from epicflow.workspace import WorkspaceManager

if TYPE_CHECKING:
    from epicflow.agent import AgentInvoker
    from epicflow.context import OrchestrationContext
    from epicflow.phase import PhaseServices

logger = logging.getLogger(__name__)

# Failures that end one story without affecting its siblings
STORY_ERRORS = (
    AgentInvocationError,
    AgentTimeoutError,
    AgentValidationError,
    GitError,
)


@dataclass
class GitValidation:
    """Whether the developer's work exists, by git or by marker."""

    success: bool
    commit_sha: str | None = None
    git_verified: bool = False
    error: str | None = None


@dataclass
class StoryOutcome:
    """Final state of one story in this run."""

    story_id: str
    status: Literal["completed", "failed", "conflicted"]
    commit_sha: str | None = None
    attempts: int = 0
    merge_tier: str | None = None
    error: str | None = None
    skipped: bool = False


def build_developer_prompt(story: Story, feedback: str | None = None) -> str:
    lines = [
        f"# Story {story.id}: {story.title}",
        "",
        story.description,
        "",
        f"Branch: {story.branch_name}",
    ]
    for label, files in (
        ("Read", story.files_to_read),
        ("Modify", story.files_to_modify),
        ("Create", story.files_to_create),
    ):
        if files:
            lines.append(f"{label}: {', '.join(files)}")
    if feedback:
        lines += ["", "## Reviewer feedback from the previous attempt", feedback]
    lines += [
        "",
        "Commit and push your work to the branch above, then output "
        f"{markers.DEVELOPER_FINISHED} and {markers.COMMIT_SHA} <sha>.",
        f"If you cannot complete the story, output {markers.FAILED}.",
    ]
    return "\n".join(lines)


def build_review_prompt(story: Story, commit_sha: str | None) -> str:
    return "\n".join(
        [
            f"# Review story {story.id}: {story.title}",
            "",
            story.description,
            "",
            f"Branch: {story.branch_name} at {commit_sha or 'HEAD'}",
            "",
            f"Output {markers.APPROVED} if the work is complete and correct,",
            f"otherwise {markers.REJECTED} followed by actionable feedback.",
        ]
    )


class StoryPipeline:
    """Runs the stories of one team.

    One pipeline instance serves one team workspace; merges into that
    workspace are serialized while everything else may run concurrently.
    """

    def __init__(
        self,
        services: "PhaseServices",
        workspaces: WorkspaceManager,
        merger: StoryMerger,
        track: Callable[[AgentResult], None],
        fetch_attempts: int = 3,
        fetch_backoff: float = 2.0,
    ) -> None:
        if services.agent is None or services.git is None:
            raise ValueError("StoryPipeline needs an agent invoker and a git runner")
        self.services = services
        self.agent: "AgentInvoker" = services.agent
        self.git: GitRunner = services.git
        self.workspaces = workspaces
        self.merger = merger
        self.track = track
        self.fetch_attempts = fetch_attempts
        self.fetch_backoff = fetch_backoff
        self.retry_policy = RetryPolicy.from_config(services.config)
        self._merge_lock = asyncio.Lock()

    async def run(
        self,
        context: "OrchestrationContext",
        epic: Epic,
        story: Story,
        team_path: Path,
        epic_branch: str,
    ) -> StoryOutcome:
        """Drive one story from development to merge.

        Agent and git failures end the story as failed and are not raised.

        Raises:
            CostBudgetExceededError: If agent spend exhausts the budget
        """
        services = self.services
        task_id = context.task_id

        run_state = services.run_states.find_by_id(task_id)
        if run_state is not None and run_state.story_reached(
            story.id, "merged_to_epic"
        ):
            logger.info(f"[{task_id}] Story {story.id} already merged, skipping")
            return StoryOutcome(story.id, "completed", story.commit_sha, skipped=True)
        resume_from_push = run_state is not None and run_state.story_reached(
            story.id, "pushed"
        )

        with services.tracer.start_as_current_span("epicflow.story") as span:
            span.set_attribute("story.id", story.id)
            span.set_attribute("epic.id", epic.id)

            branch = self._story_branch(context, epic, story, epic_branch)
            story = replace(story, branch_name=branch)
            services.event_store.append(
                task_id,
                "StoryStarted",
                story.assigned_developer or "developer",
                {"story_id": story.id, "epic_id": epic.id},
            )

            workspace = await self.workspaces.create_story_workspace(
                team_path, story.id
            )
            try:
                outcome = await self._run_in_workspace(
                    context,
                    epic,
                    story,
                    workspace,
                    team_path,
                    epic_branch,
                    resume_from_push,
                )
            except STORY_ERRORS as e:
                logger.error(f"[{task_id}] Story {story.id} failed: {e}")
                outcome = StoryOutcome(story.id, "failed", error=str(e))

            if outcome.status == "failed":
                services.event_store.append(
                    task_id,
                    "StoryFailed",
                    story.assigned_developer or "developer",
                    {"story_id": story.id, "error": outcome.error},
                )
            else:
                await self.workspaces.remove(workspace)

            span.set_attribute("story.status", outcome.status)
            return outcome

    async def _run_in_workspace(
        self,
        context: "OrchestrationContext",
        epic: Epic,
        story: Story,
        workspace: Path,
        team_path: Path,
        epic_branch: str,
        resume_from_push: bool,
    ) -> StoryOutcome:
        task_id = context.task_id
        branch = story.branch_name or ""
        run_states = self.services.run_states
        max_attempts = max(1, self.services.config.max_story_retries)

        if await self.git.branch_exists(workspace, branch):
            await self.git.checkout(workspace, branch)
        else:
            await self.git.checkout_new(workspace, branch, epic_branch)

        feedback: str | None = None
        session_id: str | None = None
        commit_sha: str | None = None
        approved = False
        attempt = 0
        while attempt < max_attempts and not approved:
            attempt += 1
            commit_sha = None
            if attempt == 1 and resume_from_push:
                commit_sha = await self.git.ls_remote_head(workspace, branch)
                if commit_sha:
                    logger.info(
                        f"[{task_id}] Story {story.id} resumed from pushed "
                        f"commit {commit_sha[:8]}"
                    )

            if commit_sha is None:
                run_states.record_story_progress(task_id, story.id, "code_generating")
                result = await self._invoke_developer(
                    context, story, workspace, feedback, session_id
                )
                session_id = result.session_id or session_id
                validation = await self.validate_git(
                    task_id, story, workspace, epic_branch, result.output
                )
                if not validation.success:
                    return StoryOutcome(
                        story.id, "failed", attempts=attempt, error=validation.error
                    )
                commit_sha = validation.commit_sha
                run_states.record_story_progress(task_id, story.id, "pushed")
                if validation.git_verified:
                    await self.services.event_store.verify_story_push(
                        task_id, story.id, self.git, workspace
                    )
                context.mark_branch_pushed(branch)

            run_states.record_story_progress(task_id, story.id, "judge_evaluating")
            approved, feedback = await self._review(
                context, story, workspace, commit_sha
            )
            if not approved:
                logger.info(
                    f"[{task_id}] Story {story.id} rejected "
                    f"(attempt {attempt}/{max_attempts}): {feedback}"
                )

        if not approved:
            return StoryOutcome(
                story.id,
                "failed",
                commit_sha,
                attempts=attempt,
                error=f"Review rejected after {attempt} attempts: {feedback}",
            )

        return await self._merge(
            context, epic, story, team_path, epic_branch, commit_sha, attempt
        )

    async def _merge(
        self,
        context: "OrchestrationContext",
        epic: Epic,
        story: Story,
        team_path: Path,
        epic_branch: str,
        commit_sha: str | None,
        attempts: int,
    ) -> StoryOutcome:
        task_id = context.task_id
        event_store = self.services.event_store
        branch = story.branch_name or ""

        async with self._merge_lock:
            await self._fetch_with_retries(task_id, team_path)
            outcome = await self.merger.merge_story(
                task_id, story, epic_branch, team_path, source_ref=f"origin/{branch}"
            )
            if outcome.agent_result is not None:
                self.track(outcome.agent_result)

            if not outcome.merged:
                event_store.append(
                    task_id,
                    "StoryConflicted",
                    "merge",
                    {
                        "story_id": story.id,
                        "branch_name": branch,
                        "files": outcome.conflicted_files,
                        "error": outcome.error,
                    },
                )
                return StoryOutcome(
                    story.id,
                    "conflicted",
                    commit_sha,
                    attempts,
                    outcome.tier,
                    outcome.error,
                )

            event_store.append(
                task_id,
                "StoryMerged",
                "merge",
                {"story_id": story.id, "epic_id": epic.id, "tier": outcome.tier},
            )
            context.mark_branch_merged(branch)
            self.services.run_states.record_story_progress(
                task_id, story.id, "merged_to_epic"
            )
            await self.merger.cleanup_story_branch(task_id, team_path, branch)

        event_store.append(
            task_id,
            "StoryCompleted",
            story.assigned_developer or "developer",
            {"story_id": story.id, "commit_sha": commit_sha},
        )
        self.services.run_states.record_story_progress(task_id, story.id, "completed")
        return StoryOutcome(story.id, "completed", commit_sha, attempts, outcome.tier)

    def _story_branch(
        self,
        context: "OrchestrationContext",
        epic: Epic,
        story: Story,
        epic_branch: str,
    ) -> str:
        """The story's branch from the registry, registering a new one if needed."""
        for info in context.get_story_branches(epic.id):
            if info.story_id == story.id:
                return info.name

        name = story.branch_name or story_branch_name(context.task_id, story.id)
        context.register_branch(
            name, "story", epic.target_repository or "", epic_branch, epic.id, story.id
        )
        if story.branch_name != name:
            self.services.event_store.append(
                context.task_id,
                "StoryBranchCreated",
                "orchestrator",
                {"story_id": story.id, "branch_name": name, "epic_id": epic.id},
            )
        return name

    async def _invoke_developer(
        self,
        context: "OrchestrationContext",
        story: Story,
        workspace: Path,
        feedback: str | None,
        session_id: str | None,
    ) -> AgentResult:
        prompt = build_developer_prompt(story, feedback)
        resume = {"session_id": session_id} if feedback and session_id else None

        result = await retry_async(
            lambda: self.agent(
                "developer",
                prompt,
                workspace,
                context.task_id,
                story.assigned_developer or "Developer",
                resume,
            ),
            self.retry_policy,
            f"developer for story {story.id}",
        )
        self.track(result)
        return result

    async def _review(
        self,
        context: "OrchestrationContext",
        story: Story,
        workspace: Path,
        commit_sha: str | None,
    ) -> tuple[bool, str]:
        """Ask the reviewer for a verdict. No verdict counts as rejection."""
        result = await retry_async(
            lambda: self.agent(
                "judge",
                build_review_prompt(story, commit_sha),
                workspace,
                context.task_id,
                "Judge",
            ),
            self.retry_policy,
            f"review of story {story.id}",
        )
        self.track(result)

        verdict = markers.review_verdict(result.output)
        feedback = markers.extract_feedback(result.output)
        if verdict is None:
            logger.warning(f"Reviewer gave no verdict for story {story.id}")
            return False, f"No verdict given. {feedback}"
        return verdict, feedback

    async def validate_git(
        self,
        task_id: str,
        story: Story,
        workspace: Path,
        base_branch: str,
        output: str,
    ) -> GitValidation:
        """Decide from git whether the developer's work exists.

        Order of evidence: an explicit failure marker, then new commits on
        the story branch, then uncommitted changes (committed on the
        developer's behalf), then the completion marker.
        """
        branch = story.branch_name or ""
        if markers.developer_reported_failure(output):
            return GitValidation(False, error="Developer reported explicit failure")

        await self._fetch_with_retries(task_id, workspace)

        if await self.git.count_commits(workspace, base_branch, branch) > 0:
            sha = await self.git.rev_parse(workspace, branch)
            await self._ensure_on_remote(task_id, workspace, branch, sha)
            return GitValidation(True, sha, git_verified=True)

        if await self.git.commit_all(workspace, f"feat: {story.title}"):
            logger.info(f"[{task_id}] Auto-committed uncommitted work for {story.id}")
            sha = await self.git.rev_parse(workspace, branch)
            await self.git.push_with_fallback(workspace, branch)
            return GitValidation(True, sha, git_verified=True)

        if not markers.developer_reported_success(output):
            return GitValidation(False, error="No commits found and no finish marker")
        sha = markers.extract_commit_sha(output)
        if not sha:
            return GitValidation(False, error="Could not determine commit SHA")
        logger.warning(
            f"[{task_id}] Story {story.id} has no commits on {branch}; "
            f"trusting completion marker ({sha})"
        )
        return GitValidation(True, sha, git_verified=False)

    async def _ensure_on_remote(
        self, task_id: str, workspace: Path, branch: str, sha: str
    ) -> None:
        remote_sha = await self.git.ls_remote_head(workspace, branch)
        if remote_sha != sha:
            logger.info(f"[{task_id}] Pushing {branch} ({sha[:8]}) to remote")
            await self.git.push_with_fallback(workspace, branch)

    async def _fetch_with_retries(self, task_id: str, repo_path: Path) -> None:
        """Fetch with exponential backoff. A final failure is only logged."""
        for attempt in range(1, self.fetch_attempts + 1):
            try:
                await self.git.fetch(repo_path)
                return
            except GitError as e:
                if attempt >= self.fetch_attempts:
                    logger.warning(
                        f"[{task_id}] Fetch failed after {attempt} attempts: {e}"
                    )
                    return
                delay = self.fetch_backoff * 2 ** (attempt - 1)
                logger.warning(
                    f"[{task_id}] Fetch failed (attempt {attempt}): {e}. "
                    f"Retrying in {delay:.0f}s"
                )
                await asyncio.sleep(delay)
