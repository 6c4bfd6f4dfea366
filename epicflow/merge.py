"""Story-to-epic merging with tiered conflict resolution.

A story branch is merged into its epic branch with --no-ff. Conflicts go
through three tiers:

1. mechanical: purely additive conflict regions are resolved by keeping the
   unique lines of both sides, ours first
2. assisted: the conflict-resolver agent edits the remaining files, and the
   files are re-scanned for markers afterwards
3. manual: the merge is aborted and the story is preserved for a human,
   its branch left in place

A conflict is never fatal to the run.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from opentelemetry import trace

from epicflow import markers, telemetry
from epicflow.agent import AgentInvoker
from epicflow.errors import (
    AgentInvocationError,
    AgentTimeoutError,
    AgentValidationError,
    GitError,
    HumanInterventionRequired,
)
from epicflow.git import GitRunner
from epicflow.models import AgentResult, Story

logger = logging.getLogger(__name__)

CONFLICT_START = "<<<<<<<"
CONFLICT_END = ">>>>>>>"

# One conflict region, with the optional diff3 base section
_REGION = re.compile(
    r"^<<<<<<<[^\n]*\n"
    r"(?P<ours>.*?)"
    r"(?:^\|\|\|\|\|\|\|[^\n]*\n(?P<base>.*?))?"
    r"^=======\n"
    r"(?P<theirs>.*?)"
    r"^>>>>>>>[^\n]*(?:\n|\Z)",
    re.DOTALL | re.MULTILINE,
)

MergeTier = Literal["clean", "mechanical", "assisted", "manual"]


def has_conflict_markers(text: str) -> bool:
    return CONFLICT_START in text or CONFLICT_END in text


def _keys(block: str) -> set[str]:
    return {line.strip() for line in block.splitlines() if line.strip()}


def _is_additive(base: str | None, ours: str, theirs: str) -> bool:
    """True if neither side changed or removed a line of the common base.

    Without a base section there is nothing to compare, and the region is
    treated as additive.
    """
    if base is None:
        return True
    base_keys = _keys(base)
    return base_keys <= _keys(ours) and base_keys <= _keys(theirs)


def _union(ours: str, theirs: str) -> str:
    merged: list[str] = []
    seen: set[str] = set()
    for line in ours.splitlines() + theirs.splitlines():
        key = line.strip()
        if key:
            if key in seen:
                continue
            seen.add(key)
        merged.append(line)
    return "".join(line + "\n" for line in merged)


def mechanical_resolve(text: str) -> str | None:
    """Resolve every conflict region in text by union of unique lines.

    Returns:
        The resolved text, or None if a region overlaps (a base line was
        edited on either side) or markers would remain
    """
    overlapping = False

    def _replace(match: re.Match) -> str:
        nonlocal overlapping
        if not _is_additive(match["base"], match["ours"], match["theirs"]):
            overlapping = True
            return match.group(0)
        return _union(match["ours"], match["theirs"])

    resolved = _REGION.sub(_replace, text)
    if overlapping or has_conflict_markers(resolved):
        return None
    return resolved


def build_conflict_prompt(
    story: Story, epic_branch: str, contents: dict[str, str]
) -> str:
    sections = [
        f"### File: {name}\n```\n{text}\n```" for name, text in contents.items()
    ]
    return "\n".join(
        [
            "# Git Merge Conflict Resolution Required",
            "",
            f"Story: {story.title} ({story.branch_name})",
            f"Epic branch: {epic_branch}",
            "",
            "Keep the functionality of BOTH sides and remove ALL conflict "
            "markers from every file below.",
            "",
            *sections,
            "",
            f"When every conflict is resolved, output: {markers.CONFLICT_RESOLVED}",
            f"If you cannot resolve them, output: "
            f"{markers.CONFLICT_UNRESOLVABLE}: <reason>",
        ]
    )


@dataclass
class MergeOutcome:
    """How a story merge ended.

    Attributes:
        merged: True if the story is now part of the epic branch
        tier: Which tier produced the merge, "manual" when none did
        conflicted_files: Files that conflicted, if any
        agent_result: The conflict-resolver invocation, for cost accounting
        error: Why the merge was left for manual resolution
    """

    merged: bool
    tier: MergeTier
    conflicted_files: list[str] = field(default_factory=list)
    agent_result: AgentResult | None = None
    error: str | None = None


class ConflictResolver:
    """Resolves an in-progress merge's conflicts tier by tier."""

    def __init__(self, git: GitRunner, agent: AgentInvoker | None = None) -> None:
        self.git = git
        self.agent = agent

    async def resolve(
        self,
        task_id: str,
        story: Story,
        epic_branch: str,
        repo_path: Path,
        conflicted_files: list[str],
        message: str,
    ) -> MergeOutcome:
        """Finish or abort the current merge in repo_path.

        Returns:
            MergeOutcome; merged is False only after the merge was aborted
        """
        logger.info(
            f"[{task_id}] Story {story.id}: {len(conflicted_files)} conflicted "
            f"files: {', '.join(conflicted_files)}"
        )
        remaining = self._resolve_mechanically(repo_path, conflicted_files)
        if not remaining:
            await self.git.add(repo_path)
            await self.git.commit(repo_path, f"{message} (auto-resolved conflicts)")
            telemetry.record_merge_conflict(task_id, "mechanical")
            logger.info(f"[{task_id}] Story {story.id} merged, conflicts auto-resolved")
            return MergeOutcome(True, "mechanical", conflicted_files)

        agent_result = None
        error = f"unresolved conflicts in {', '.join(remaining)}"
        if self.agent is not None:
            agent_result, error = await self._resolve_with_agent(
                self.agent,
                task_id,
                story,
                epic_branch,
                repo_path,
                conflicted_files,
                remaining,
            )
            if error is None:
                await self.git.add(repo_path)
                await self.git.commit(repo_path, f"{message} (AI-resolved conflicts)")
                telemetry.record_merge_conflict(task_id, "assisted")
                logger.info(
                    f"[{task_id}] Story {story.id} merged, conflicts AI-resolved"
                )
                return MergeOutcome(True, "assisted", conflicted_files, agent_result)

        try:
            await self.git.merge_abort(repo_path)
        except GitError as e:
            logger.warning(f"[{task_id}] Could not abort merge in {repo_path}: {e}")
        telemetry.record_merge_conflict(task_id, "manual")
        logger.warning(
            f"[{task_id}] Story {story.id} needs manual conflict resolution: {error}"
        )
        return MergeOutcome(False, "manual", conflicted_files, agent_result, error)

    def _resolve_mechanically(self, repo_path: Path, files: list[str]) -> list[str]:
        """Rewrite resolvable files in place and return the rest."""
        remaining = []
        for name in files:
            path = repo_path / name
            try:
                text = path.read_text()
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Cannot read conflicted file {name}: {e}")
                remaining.append(name)
                continue
            resolved = mechanical_resolve(text)
            if resolved is None:
                remaining.append(name)
                continue
            path.write_text(resolved)
            logger.debug(f"Mechanically resolved {name}")
        return remaining

    async def _resolve_with_agent(
        self,
        agent: AgentInvoker,
        task_id: str,
        story: Story,
        epic_branch: str,
        repo_path: Path,
        conflicted_files: list[str],
        remaining: list[str],
    ) -> tuple[AgentResult | None, str | None]:
        """Run the conflict-resolver agent and verify its work.

        Returns:
            (agent result, error); error is None when no markers remain
        """
        contents = {}
        for name in remaining:
            try:
                contents[name] = (repo_path / name).read_text()
            except (OSError, UnicodeDecodeError) as e:
                contents[name] = f"<unreadable: {e}>"

        try:
            result = await agent(
                "conflict-resolver",
                build_conflict_prompt(story, epic_branch, contents),
                repo_path,
                task_id,
                "ConflictResolver",
            )
        except (AgentInvocationError, AgentTimeoutError, AgentValidationError) as e:
            logger.warning(f"[{task_id}] Conflict-resolver agent failed: {e}")
            return None, f"conflict-resolver failed: {e}"

        if markers.has_marker(result.output, markers.CONFLICT_UNRESOLVABLE):
            reason = markers.extract_marker_value(
                result.output, markers.CONFLICT_UNRESOLVABLE + ":"
            )
            return result, f"agent could not resolve conflicts: {reason or 'unknown'}"

        for name in conflicted_files:
            path = repo_path / name
            if not path.exists():
                continue
            if has_conflict_markers(path.read_text(errors="replace")):
                return result, f"conflict markers remain in {name}"
        return result, None


class StoryMerger:
    """Merges story branches into epic branches and cleans up afterwards."""

    def __init__(
        self,
        git: GitRunner,
        resolver: ConflictResolver,
        push_attempts: int = 3,
        push_backoff: float = 2.0,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.git = git
        self.resolver = resolver
        self.push_attempts = push_attempts
        self.push_backoff = push_backoff
        self.tracer = tracer or trace.get_tracer("epicflow")

    async def merge_story(
        self,
        task_id: str,
        story: Story,
        epic_branch: str,
        repo_path: Path,
        source_ref: str | None = None,
    ) -> MergeOutcome:
        """Merge a story branch into the epic branch and push the epic.

        Args:
            task_id: Task being orchestrated
            story: Story whose branch is merged
            epic_branch: Branch receiving the merge
            repo_path: Working tree holding the epic branch
            source_ref: Ref to merge (default: the story's branch name)

        Raises:
            HumanInterventionRequired: If the story has no branch
            GitError: If the merge fails for a reason other than conflicts,
                or the epic branch cannot be pushed
        """
        if not story.branch_name:
            raise HumanInterventionRequired(
                f"story {story.id} has no branch name", story.id
            )
        ref = source_ref or story.branch_name
        message = f"Merge story: {story.title}"

        with self.tracer.start_as_current_span("epicflow.merge") as span:
            span.set_attribute("story.id", story.id)
            span.set_attribute("merge.source", ref)
            span.set_attribute("merge.target", epic_branch)

            await self.git.checkout(repo_path, epic_branch)
            try:
                await self.git.pull(repo_path, epic_branch)
            except GitError as e:
                logger.warning(f"[{task_id}] Pull of {epic_branch} failed: {e}")
            try:
                if await self.git.commit_all(
                    repo_path, "chore: add generated files before merge"
                ):
                    logger.info(f"[{task_id}] Committed stray files on {epic_branch}")
            except GitError as e:
                logger.warning(f"[{task_id}] Could not commit stray files: {e}")

            result = await self.git.merge_no_ff(repo_path, ref, message)
            if result.ok:
                outcome = MergeOutcome(True, "clean")
            else:
                conflicted = await self.git.conflicted_files(repo_path)
                if not conflicted:
                    raise GitError(
                        ["merge", "--no-ff", ref], result.returncode, result.combined
                    )
                outcome = await self.resolver.resolve(
                    task_id, story, epic_branch, repo_path, conflicted, message
                )

            span.set_attribute("merge.tier", outcome.tier)
            if outcome.merged:
                await self._push_with_retry(task_id, repo_path, epic_branch)
            return outcome

    async def _push_with_retry(
        self, task_id: str, repo_path: Path, branch: str
    ) -> None:
        for attempt in range(1, self.push_attempts + 1):
            try:
                await self.git.push(repo_path, branch)
                return
            except GitError as e:
                if attempt >= self.push_attempts:
                    raise
                delay = self.push_backoff * attempt
                logger.warning(
                    f"[{task_id}] Push of {branch} failed "
                    f"(attempt {attempt}/{self.push_attempts}): {e}. "
                    f"Retrying in {delay:.0f}s"
                )
                await asyncio.sleep(delay)

    async def cleanup_story_branch(
        self, task_id: str, repo_path: Path, branch: str
    ) -> None:
        """Delete a merged story branch locally and on the remote.

        Failures are logged as warnings.
        """
        try:
            await self.git.delete_remote_branch(repo_path, branch)
        except GitError as e:
            logger.warning(f"[{task_id}] Could not delete remote branch {branch}: {e}")
        try:
            if await self.git.branch_exists(repo_path, branch):
                await self.git.delete_local_branch(repo_path, branch)
        except GitError as e:
            logger.warning(f"[{task_id}] Could not delete local branch {branch}: {e}")
