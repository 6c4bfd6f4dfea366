"""Team sub-pipeline for one epic.

A team owns exactly one epic and works in a private copy of the epic's target
repository. It runs architecture, implementation and review in that order and
stops at the first phase that fails. Each phase is keyed by the epic id, so a
restart skips only the phases this epic already finished.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING

from epicflow import markers
from epicflow.dependencies import (
    DependencyResolver,
    validate_developer_assignments,
    validate_story_file_overlap,
)
from epicflow.errors import GitError, HumanInterventionRequired, StateValidationError
from epicflow.git import GitRunner, epic_branch_name
from epicflow.merge import ConflictResolver, StoryMerger
from epicflow.models import (
    ArchitectureOutput,
    Epic,
    ImplementationOutput,
    PhaseOutput,
    PhaseResult,
    Repository,
    RetryState,
    ReviewOutput,
    Story,
    TokenUsage,
)
from epicflow.phase import RUN_FATAL_ERRORS, BasePhase, PhaseServices
from epicflow.retry import RetryPolicy, retry_async
from epicflow.story_pipeline import StoryOutcome, StoryPipeline
from epicflow.workspace import WorkspaceManager

if TYPE_CHECKING:
    from epicflow.agent import AgentInvoker
    from epicflow.context import OrchestrationContext

logger = logging.getLogger(__name__)

# Cost buckets reported per team and aggregated per run
SUB_PHASES = ("architecture", "implementation", "review", "testing")

_JSON_BLOCK = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def parse_story_assignments(output: str) -> dict[str, str]:
    """Story-to-developer map from the last JSON block carrying "assignments".

    Returns an empty dict when the output proposes no assignments.
    """
    for block in reversed(_JSON_BLOCK.findall(output or "")):
        try:
            data = json.loads(block)
        except json.JSONDecodeError:
            continue
        assignments = data.get("assignments") if isinstance(data, dict) else None
        if isinstance(assignments, dict):
            return {str(k): str(v) for k, v in assignments.items() if v}
    return {}


def build_architecture_prompt(
    epic: Epic, stories: list[Story], feedback: str | None = None
) -> str:
    lines = [
        f"# Epic {epic.id}: {epic.name}",
        "",
        epic.description,
        "",
        f"Target repository: {epic.target_repository}",
        "",
        "## Stories",
    ]
    for story in stories:
        line = f"- {story.id}: {story.title}"
        if story.written_files:
            line += f" (writes {', '.join(sorted(story.written_files))})"
        if story.dependencies:
            line += f" [depends on {', '.join(story.dependencies)}]"
        lines.append(line)
    if feedback:
        lines += ["", "## Your previous proposal was rejected", feedback]
    lines += [
        "",
        "Describe the technical design for this epic. Then assign exactly one",
        "developer to each story, and never give one developer two stories, as",
        'a ```json block: {"assignments": {"<story id>": "<developer>"}}.',
    ]
    return "\n".join(lines)


def build_epic_review_prompt(
    epic: Epic, branch: str, implementation: ImplementationOutput | None
) -> str:
    lines = [f"# Review epic {epic.id}: {epic.name}", "", f"Branch: {branch}"]
    if implementation is not None:
        lines.append(f"Merged stories: {', '.join(implementation.completed_stories)}")
        if implementation.conflicted_stories:
            lines.append(
                "Left for manual conflict resolution: "
                + ", ".join(implementation.conflicted_stories)
            )
    lines += [
        "",
        f"Output {markers.APPROVED} if the epic is coherent and complete,",
        f"otherwise {markers.REJECTED} followed by what is missing.",
    ]
    return "\n".join(lines)


class TeamPhase(BasePhase):
    """A phase of one team's sub-pipeline, bound to its epic and workspace."""

    def __init__(
        self,
        services: PhaseServices,
        epic: Epic,
        team_path: Path,
        epic_branch: str,
    ) -> None:
        super().__init__(services, epic_id=epic.id)
        if services.agent is None or services.git is None:
            raise ValueError(f"{self.name} phase needs an agent invoker and git")
        self.agent: "AgentInvoker" = services.agent
        self.git: GitRunner = services.git
        self.epic = epic
        self.team_path = team_path
        self.epic_branch = epic_branch
        self.retry_policy = RetryPolicy.from_config(services.config)

    def epic_stories(self, task_id: str) -> list[Story]:
        state = self.services.event_store.get_current_state(task_id)
        return state.stories_for_epic(self.epic.id)


class ArchitecturePhase(TeamPhase):
    """Tech-lead design plus developer assignment for the epic.

    Assignments proposed by the tech lead override the plan's. Stories left
    unassigned get a generated developer of their own. The combined team is
    checked for double assignment and for concurrent stories writing the same
    file; a rejection is sent back to the tech lead as feedback.
    """

    name = "architecture"

    async def execute_phase(self, context: "OrchestrationContext") -> PhaseOutput:
        task_id = context.task_id
        stories = self.epic_stories(task_id)
        if not stories:
            raise HumanInterventionRequired(
                f"epic {self.epic.id} has no stories", self.epic.id
            )

        design, assignments = await self.run_with_feedback(
            lambda retry_state: self._attempt(context, stories, retry_state)
        )

        designs = dict(context.get_data("architecture_design") or {})
        designs[self.epic.id] = design
        context.set_data("architecture_design", designs)
        known = dict(context.get_data("story_assignments") or {})
        known.update(assignments)
        context.set_data("story_assignments", known)

        event_store = self.services.event_store
        event_store.append(
            task_id,
            "TeamCompositionDefined",
            "tech-lead",
            {
                "epic_id": self.epic.id,
                "developers": sorted(set(assignments.values())),
                "assignments": assignments,
            },
        )
        event_store.append(
            task_id,
            "TechLeadCompleted",
            "tech-lead",
            {"epic_id": self.epic.id, "story_count": len(stories)},
        )
        return ArchitectureOutput(epic_id=self.epic.id, design=design)

    async def _attempt(
        self,
        context: "OrchestrationContext",
        stories: list[Story],
        retry_state: RetryState,
    ) -> tuple[str, dict[str, str]]:
        prompt = build_architecture_prompt(
            self.epic, stories, retry_state.last_feedback
        )
        result = await retry_async(
            lambda: self.agent(
                "tech-lead", prompt, self.team_path, context.task_id, "TechLead"
            ),
            self.retry_policy,
            f"tech lead for epic {self.epic.id}",
        )
        self.track(result)

        design = result.output.strip()
        if not design:
            raise HumanInterventionRequired(
                f"tech lead produced no architecture for epic {self.epic.id}",
                self.epic.id,
            )

        assignments = self._assign(stories, parse_story_assignments(design))
        assigned = [replace(s, assigned_developer=assignments[s.id]) for s in stories]
        validate_developer_assignments(assigned)
        validate_story_file_overlap(assigned)
        return design, assignments

    def _assign(self, stories: list[Story], proposed: dict[str, str]) -> dict[str, str]:
        assignments = {
            s.id: proposed.get(s.id) or s.assigned_developer or "" for s in stories
        }
        taken = set(assignments.values())
        counter = 0
        for story in stories:
            if assignments[story.id]:
                continue
            counter += 1
            while f"{self.epic.id}-dev-{counter}" in taken:
                counter += 1
            assignments[story.id] = f"{self.epic.id}-dev-{counter}"
            taken.add(assignments[story.id])
        return assignments


class ImplementationPhase(TeamPhase):
    """Runs the epic's stories level by level.

    Stories in one dependency level run concurrently, each in its own
    workspace. A story whose dependency did not complete is failed without
    running. The phase fails only when no story was merged.
    """

    name = "implementation"

    def __init__(
        self,
        services: PhaseServices,
        epic: Epic,
        team_path: Path,
        epic_branch: str,
        workspaces: WorkspaceManager,
    ) -> None:
        super().__init__(services, epic, team_path, epic_branch)
        merger = StoryMerger(
            self.git,
            ConflictResolver(self.git, self.agent),
            tracer=services.tracer,
        )
        self.pipeline = StoryPipeline(services, workspaces, merger, self.track)
        self.outcomes: dict[str, StoryOutcome] = {}

    async def execute_phase(self, context: "OrchestrationContext") -> PhaseOutput:
        task_id = context.task_id
        state = self.services.event_store.get_current_state(task_id)
        stories = state.stories_for_epic(self.epic.id)
        external = [s.id for s in state.stories if s.epic_id != self.epic.id]

        resolution = DependencyResolver().resolve(stories, satisfied=external)
        if not resolution.success:
            raise StateValidationError([f"epic {self.epic.id}: {resolution.error}"])

        levels: dict[int, list[Story]] = {}
        for story in resolution.execution_order:
            levels.setdefault(resolution.execution_levels[story.id], []).append(story)

        for level in sorted(levels):
            await self._run_level(context, levels[level])

        output = ImplementationOutput(
            epic_id=self.epic.id,
            completed_stories=self._with_status("completed"),
            failed_stories=self._with_status("failed"),
            conflicted_stories=self._with_status("conflicted"),
        )
        for story_id in output.failed_stories:
            self.warnings.append(
                f"story {story_id} failed: {self.outcomes[story_id].error}"
            )
        for story_id in output.conflicted_stories:
            self.warnings.append(
                f"story {story_id} kept for manual conflict resolution"
            )
        return output

    def failure_reason(self, output: PhaseOutput) -> str | None:
        if not isinstance(output, ImplementationOutput) or output.completed_stories:
            return None
        unmerged = output.failed_stories + output.conflicted_stories
        if not unmerged:
            return None
        return f"No stories merged for epic {self.epic.id}: {', '.join(unmerged)}"

    async def _run_level(
        self, context: "OrchestrationContext", stories: list[Story]
    ) -> None:
        task_id = context.task_id
        runnable: list[Story] = []
        for story in stories:
            unmet = [
                d
                for d in story.dependencies
                if d in self.outcomes and self.outcomes[d].status != "completed"
            ]
            if unmet:
                self._fail(
                    task_id, story, f"dependencies not merged: {', '.join(unmet)}"
                )
            else:
                runnable.append(story)

        results = await asyncio.gather(
            *(
                self.pipeline.run(
                    context, self.epic, story, self.team_path, self.epic_branch
                )
                for story in runnable
            ),
            return_exceptions=True,
        )

        fatal: BaseException | None = None
        for story, result in zip(runnable, results):
            if isinstance(result, StoryOutcome):
                self.outcomes[story.id] = result
            elif isinstance(result, RUN_FATAL_ERRORS) or not isinstance(
                result, Exception
            ):
                fatal = fatal or result
            else:
                logger.error(f"[{task_id}] Story {story.id} crashed: {result}")
                self._fail(task_id, story, str(result))
        if fatal is not None:
            raise fatal

    def _fail(self, task_id: str, story: Story, error: str) -> None:
        self.outcomes[story.id] = StoryOutcome(story.id, "failed", error=error)
        self.services.event_store.append(
            task_id,
            "StoryFailed",
            "orchestrator",
            {"story_id": story.id, "error": error},
        )

    def _with_status(self, status: str) -> list[str]:
        return [sid for sid, o in self.outcomes.items() if o.status == status]


class ReviewPhase(TeamPhase):
    """Final review of the merged epic branch. No verdict counts as rejection."""

    name = "review"

    async def execute_phase(self, context: "OrchestrationContext") -> PhaseOutput:
        implementation = context.get_phase_result(f"implementation:{self.epic.id}")
        data = implementation.data if implementation else None
        prompt = build_epic_review_prompt(
            self.epic,
            self.epic_branch,
            data if isinstance(data, ImplementationOutput) else None,
        )
        result = await retry_async(
            lambda: self.agent(
                "reviewer", prompt, self.team_path, context.task_id, "Reviewer"
            ),
            self.retry_policy,
            f"review of epic {self.epic.id}",
        )
        self.track(result)

        verdict = markers.review_verdict(result.output)
        return ReviewOutput(
            epic_id=self.epic.id,
            approved=verdict is True,
            feedback=markers.extract_feedback(result.output),
        )

    def failure_reason(self, output: PhaseOutput) -> str | None:
        if isinstance(output, ReviewOutput) and not output.approved:
            return f"Epic review rejected: {output.feedback or 'no verdict given'}"
        return None


@dataclass
class TeamResult:
    """Outcome of one team's sub-pipeline."""

    epic_id: str
    repository: str
    success: bool
    error: str | None = None
    workspace: Path | None = None
    phase_results: dict[str, PhaseResult] = field(default_factory=dict)

    @property
    def cost_breakdown(self) -> dict[str, float]:
        costs = dict.fromkeys(SUB_PHASES, 0.0)
        for name, result in self.phase_results.items():
            costs[name] = costs.get(name, 0.0) + result.cost_usd
        return costs

    @property
    def tokens(self) -> TokenUsage:
        total = TokenUsage()
        for result in self.phase_results.values():
            total = total + result.tokens
        return total

    @property
    def cost_usd(self) -> float:
        return sum(r.cost_usd for r in self.phase_results.values())


class Team:
    """One epic's sub-pipeline in an isolated workspace.

    Attributes:
        index: Team number, unique within the run, used for the workspace path
        epic: The epic this team owns
        repository: The epic's resolved target repository
    """

    def __init__(
        self,
        services: PhaseServices,
        workspaces: WorkspaceManager,
        index: int,
        epic: Epic,
        repository: Repository,
    ) -> None:
        if services.git is None:
            raise ValueError("Team needs a git runner")
        self.services = services
        self.git: GitRunner = services.git
        self.workspaces = workspaces
        self.index = index
        self.epic = epic
        self.repository = repository

    async def run(self, context: "OrchestrationContext") -> TeamResult:
        """Set up the workspace and epic branch, then run the phases.

        Args:
            context: The team's own child context

        Raises:
            CircuitBreakerError, CostBudgetExceededError,
            HumanInterventionRequired, PhaseCancelledError: From a phase
        """
        services = self.services
        task_id = context.task_id
        epic = self.epic
        result = TeamResult(epic.id, self.repository.name, success=False)

        with services.tracer.start_as_current_span("epicflow.team") as span:
            span.set_attribute("task.id", task_id)
            span.set_attribute("epic.id", epic.id)
            span.set_attribute("team.index", self.index)
            span.set_attribute("team.repository", self.repository.name)

            try:
                team_path = await self.workspaces.create_team_workspace(
                    task_id, self.index, self.repository
                )
                epic_branch = await self._prepare_epic_branch(context, team_path)
            except OSError as e:
                result.error = f"Workspace setup failed: {e}"
            except GitError as e:
                result.error = f"Epic branch setup failed: {e}"

            if result.error is None:
                context.workspace_path = team_path
                result.workspace = team_path
                logger.info(
                    f"[{task_id}] Team {self.index} started epic {epic.id} "
                    f"on {epic_branch} in {team_path}"
                )
                for phase in self.build_phases(team_path, epic_branch):
                    phase_result = await phase.execute(context)
                    result.phase_results[phase.name] = phase_result
                    if not phase_result.success:
                        result.error = f"{phase.name}: {phase_result.error}"
                        break
                else:
                    result.success = True

            if not result.success:
                logger.warning(
                    f"[{task_id}] Team for epic {epic.id} failed: {result.error}"
                )
                services.event_store.append(
                    task_id,
                    "EpicFailed",
                    "orchestrator",
                    {"epic_id": epic.id, "error": result.error},
                )

            span.set_attribute("team.success", result.success)
            span.set_attribute("team.cost_usd", result.cost_usd)
        return result

    def build_phases(self, team_path: Path, epic_branch: str) -> list[TeamPhase]:
        services = self.services
        return [
            ArchitecturePhase(services, self.epic, team_path, epic_branch),
            ImplementationPhase(
                services, self.epic, team_path, epic_branch, self.workspaces
            ),
            ReviewPhase(services, self.epic, team_path, epic_branch),
        ]

    async def _prepare_epic_branch(
        self, context: "OrchestrationContext", team_path: Path
    ) -> str:
        """Check out the epic branch, creating and pushing it if new.

        The registry is consulted first, then the epic's recorded branch name.
        """
        epic = self.epic
        base = self.repository.default_branch
        existing = context.get_epic_branch(epic.id)
        if existing is not None:
            name = existing.name
        else:
            name = epic.branch_name or epic_branch_name(context.task_id, epic.id)

        await self.git.fetch(team_path)
        if await self.git.branch_exists(team_path, name):
            await self.git.checkout(team_path, name)
        elif await self.git.ls_remote_head(team_path, name):
            await self.git.checkout_new(team_path, name, f"origin/{name}")
        else:
            await self.git.checkout_new(team_path, name, base)
            await self.git.push(team_path, name)

        context.register_branch(
            name, "epic", epic.target_repository or self.repository.name, base, epic.id
        )
        context.mark_branch_pushed(name)
        if epic.branch_name != name:
            self.services.event_store.append(
                context.task_id,
                "EpicBranchCreated",
                "orchestrator",
                {"epic_id": epic.id, "branch_name": name},
            )
        return name
