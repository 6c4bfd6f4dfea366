"""Dependency ordering for epics and stories.

ConservativeDependencyPolicy injects ordering edges between epics that target
different repositories, since cross-repository work has no transactional
guarantee. DependencyResolver then topologically sorts the declared plus
injected edges, rejecting unknown dependencies and cycles.
"""

import heapq
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Protocol, TypeVar

from epicflow.errors import HumanInterventionRequired, RuleViolation
from epicflow.models import Epic, Repository, Story

logger = logging.getLogger(__name__)


class Orderable(Protocol):
    id: str
    dependencies: list[str]


T = TypeVar("T", bound=Orderable)


@dataclass
class AddedDependency:
    """Edges the policy added to one epic."""

    epic_id: str
    epic_name: str
    added_dependencies: list[str]
    reason: str


@dataclass
class PolicyResult:
    original_epics: list[Epic]
    modified_epics: list[Epic]
    added_dependencies: list[AddedDependency] = field(default_factory=list)
    policy_applied: bool = False


class ConservativeDependencyPolicy:
    """Serializes epics across repositories unless proven safe.

    Repositories are ranked by their position in the repositories list. Every
    epic of a later repository depends on every epic of all earlier ones.
    Epics that share an explicitly declared execution order and target
    pairwise distinct repositories are treated as proven-safe and are not
    chained to each other.
    """

    def validate_target_repositories(
        self, epics: Sequence[Epic], repositories: Sequence[Repository] = ()
    ) -> None:
        """Fail fast on epics with no, or an unknown, target repository.

        Raises:
            HumanInterventionRequired: For the first offending epic
        """
        for epic in epics:
            if not epic.target_repository:
                raise HumanInterventionRequired(
                    f"epic {epic.id} ({epic.name}) has no target repository",
                    entity_id=epic.id,
                )
            if repositories and not any(
                r.matches(epic.target_repository) for r in repositories
            ):
                raise HumanInterventionRequired(
                    f"epic {epic.id} targets unknown repository "
                    f"{epic.target_repository}",
                    entity_id=epic.id,
                )

    def would_apply_policy(self, epics: Sequence[Epic]) -> bool:
        return len({e.target_repository for e in epics}) > 1

    def detect_cross_repo_dependencies(
        self, epics: Sequence[Epic]
    ) -> list[tuple[str, str]]:
        """Declared (epic, dependency) pairs that span two repositories."""
        repo_of = {e.id: e.target_repository for e in epics}
        return [
            (epic.id, dep)
            for epic in epics
            for dep in epic.dependencies
            if dep in repo_of and repo_of[dep] != epic.target_repository
        ]

    def apply(
        self, epics: Sequence[Epic], repositories: Sequence[Repository] = ()
    ) -> PolicyResult:
        """Add cross-repository ordering edges.

        The input epics are never mutated. Applying the policy to its own
        output adds nothing further.

        Args:
            epics: Epics in planning order
            repositories: Known repositories, in priority order

        Returns:
            PolicyResult with copied, possibly modified epics

        Raises:
            HumanInterventionRequired: If an epic lacks a valid target repository
        """
        self.validate_target_repositories(epics, repositories)
        modified = [replace(e, dependencies=list(e.dependencies)) for e in epics]

        order = self._repository_order(modified, repositories)
        if len(order) <= 1:
            return PolicyResult(original_epics=list(epics), modified_epics=modified)

        by_repo: dict[str, list[Epic]] = {key: [] for key in order}
        for epic in modified:
            by_repo[self._repo_key(epic, repositories)].append(epic)

        safe_groups = self._disjoint_explicit_groups(modified)
        added: list[AddedDependency] = []
        earlier: list[Epic] = []
        for key in order:
            earlier_repos = sorted({self._repo_key(d, repositories) for d in earlier})
            for epic in by_repo[key]:
                new_deps = [
                    dep.id
                    for dep in earlier
                    if dep.id != epic.id
                    and dep.id not in epic.dependencies
                    and not self._same_safe_group(epic, dep, safe_groups)
                ]
                if new_deps:
                    epic.dependencies.extend(new_deps)
                    added.append(
                        AddedDependency(
                            epic_id=epic.id,
                            epic_name=epic.name,
                            added_dependencies=new_deps,
                            reason=(
                                f"Repository {key} runs after "
                                f"{', '.join(earlier_repos)}"
                            ),
                        )
                    )
            earlier.extend(by_repo[key])

        if added:
            logger.info(
                f"Conservative dependency policy added edges to {len(added)} epics "
                f"across {len(order)} repositories"
            )
        return PolicyResult(
            original_epics=list(epics),
            modified_epics=modified,
            added_dependencies=added,
            policy_applied=bool(added),
        )

    def get_summary(self, result: PolicyResult) -> str:
        if not result.policy_applied:
            return "Conservative dependency policy: no changes"
        lines = [
            f"Conservative dependency policy: {len(result.added_dependencies)} "
            "epics received extra dependencies"
        ]
        for item in result.added_dependencies:
            lines.append(
                f"  {item.epic_id} ({item.epic_name}) -> "
                f"{', '.join(item.added_dependencies)}: {item.reason}"
            )
        return "\n".join(lines)

    @staticmethod
    def _repo_key(epic: Epic, repositories: Sequence[Repository]) -> str:
        for repo in repositories:
            if repo.matches(epic.target_repository):
                return repo.name
        return epic.target_repository or ""

    def _repository_order(
        self, epics: Sequence[Epic], repositories: Sequence[Repository]
    ) -> list[str]:
        used = {self._repo_key(e, repositories) for e in epics}
        order = [r.name for r in repositories if r.name in used]
        for epic in epics:
            key = self._repo_key(epic, repositories)
            if key not in order:
                order.append(key)
        return order

    @staticmethod
    def _disjoint_explicit_groups(epics: Sequence[Epic]) -> dict[str, int]:
        """Epic id -> explicit group for groups whose repositories are distinct."""
        groups: dict[int, list[Epic]] = {}
        for epic in epics:
            if epic.explicit_order:
                groups.setdefault(epic.execution_order, []).append(epic)
        safe: dict[str, int] = {}
        for rank, members in groups.items():
            repos = [m.target_repository for m in members]
            if len(members) > 1 and len(set(repos)) == len(repos):
                for member in members:
                    safe[member.id] = rank
        return safe

    @staticmethod
    def _same_safe_group(a: Epic, b: Epic, safe_groups: dict[str, int]) -> bool:
        return a.id in safe_groups and safe_groups.get(b.id) == safe_groups[a.id]


@dataclass
class ResolutionResult:
    """Outcome of a topological sort."""

    success: bool
    execution_order: list = field(default_factory=list)
    execution_levels: dict[str, int] = field(default_factory=dict)
    error: str | None = None
    cycle: list[str] = field(default_factory=list)

    @property
    def ordered_ids(self) -> list[str]:
        return [item.id for item in self.execution_order]


class DependencyResolver:
    """Stable topological ordering over anything with ``id`` and ``dependencies``.

    Among items whose dependencies are satisfied, the one that came first in
    the input is emitted first, so identical input always yields identical
    output.
    """

    def resolve(
        self, items: Sequence[T], satisfied: Sequence[str] = ()
    ) -> ResolutionResult:
        """Order items so each follows all of its dependencies.

        Args:
            items: Epics or stories in planning order
            satisfied: Ids outside items that count as already complete

        Returns:
            ResolutionResult; success is False for unknown dependencies or
            cycles, with the offending path described in error
        """
        index = {item.id: position for position, item in enumerate(items)}
        external = set(satisfied)

        for item in items:
            for dep in item.dependencies:
                if dep not in index and dep not in external:
                    return ResolutionResult(
                        success=False,
                        error=f"{item.id} depends on unknown {dep}",
                    )

        indegree = {item.id: 0 for item in items}
        dependents: dict[str, list[str]] = {item.id: [] for item in items}
        for item in items:
            for dep in dict.fromkeys(item.dependencies):
                if dep in index and dep != item.id:
                    indegree[item.id] += 1
                    dependents[dep].append(item.id)
                elif dep == item.id:
                    return ResolutionResult(
                        success=False,
                        error=f"Dependency cycle: {item.id} -> {item.id}",
                        cycle=[item.id, item.id],
                    )

        ready = [index[i] for i, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: list[T] = []
        levels: dict[str, int] = {}
        while ready:
            item = items[heapq.heappop(ready)]
            levels[item.id] = 1 + max(
                (levels[d] for d in item.dependencies if d in levels), default=0
            )
            ordered.append(item)
            for dependent in dependents[item.id]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, index[dependent])

        if len(ordered) < len(items):
            cycle = self._find_cycle(items, set(levels))
            return ResolutionResult(
                success=False,
                error=f"Dependency cycle: {' -> '.join(cycle)}",
                cycle=cycle,
            )

        return ResolutionResult(
            success=True, execution_order=ordered, execution_levels=levels
        )

    @staticmethod
    def _find_cycle(items: Sequence[T], resolved: set[str]) -> list[str]:
        deps = {
            item.id: [d for d in item.dependencies if d not in resolved]
            for item in items
            if item.id not in resolved
        }
        for start in deps:
            path: list[str] = []
            seen: dict[str, int] = {}
            node = start
            while node not in seen:
                seen[node] = len(path)
                path.append(node)
                node = next(d for d in deps[node] if d in deps)
            return path[seen[node] :] + [node]
        return []

    def get_ready(self, items: Sequence[T], completed: Sequence[str]) -> list[T]:
        """Items not yet completed whose dependencies all are."""
        done = set(completed)
        return [
            item
            for item in items
            if item.id not in done and all(d in done for d in item.dependencies)
        ]

    def get_dependents(self, items: Sequence[T], item_id: str) -> list[T]:
        """Items that directly depend on item_id."""
        return [item for item in items if item_id in item.dependencies]

    def can_execute(self, item: Orderable, completed: Sequence[str]) -> bool:
        done = set(completed)
        return all(d in done for d in item.dependencies)


def assign_execution_orders(epics: Sequence[Epic]) -> list[Epic]:
    """Push each epic's execution order past those of its dependencies.

    The scheduler batches by execution order only, so dependency edges have
    to be reflected there to take effect. Returns copies; raises ValueError
    if the epics cannot be ordered.
    """
    result = DependencyResolver().resolve(epics)
    if not result.success:
        raise ValueError(result.error)

    orders: dict[str, int] = {}
    updated: dict[str, Epic] = {}
    for epic in result.execution_order:
        order = max(
            [epic.execution_order] + [orders[d] + 1 for d in epic.dependencies]
        )
        orders[epic.id] = order
        updated[epic.id] = replace(
            epic, execution_order=order, dependencies=list(epic.dependencies)
        )
    return [updated[e.id] for e in epics]


@dataclass
class FileConflict:
    """A file written by more than one epic in the same repository."""

    file: str
    repository: str
    epic_ids: list[str]


@dataclass
class OverlapReport:
    can_run_in_parallel: bool
    conflicts: list[FileConflict] = field(default_factory=list)


def validate_story_overlap(
    epics: Sequence[Epic], stories: Sequence[Story]
) -> OverlapReport:
    """Find files that several epics of one repository modify or create."""
    repo_of = {e.id: e.target_repository or "" for e in epics}
    writers: dict[tuple[str, str], list[str]] = {}
    for story in stories:
        if story.epic_id not in repo_of:
            continue
        for path in sorted(story.written_files):
            key = (repo_of[story.epic_id], path)
            owners = writers.setdefault(key, [])
            if story.epic_id not in owners:
                owners.append(story.epic_id)

    position = {e.id: i for i, e in enumerate(epics)}
    conflicts = [
        FileConflict(
            file=path,
            repository=repo,
            epic_ids=sorted(owners, key=position.__getitem__),
        )
        for (repo, path), owners in writers.items()
        if len(owners) > 1
    ]
    for conflict in conflicts:
        logger.warning(
            f"File overlap in {conflict.repository}: {conflict.file} is written "
            f"by epics {', '.join(conflict.epic_ids)}"
        )
    return OverlapReport(can_run_in_parallel=not conflicts, conflicts=conflicts)


def add_dependencies_for_overlaps(
    epics: Sequence[Epic], conflicts: Sequence[FileConflict]
) -> list[Epic]:
    """Chain overlapping epics behind the first writer and bump their order."""
    extra: dict[str, list[str]] = {}
    for conflict in conflicts:
        first, *later = conflict.epic_ids
        for epic_id in later:
            deps = extra.setdefault(epic_id, [])
            if first not in deps:
                deps.append(first)

    order_of = {e.id: e.execution_order for e in epics}
    result = []
    for epic in epics:
        new_deps = [d for d in extra.get(epic.id, []) if d not in epic.dependencies]
        if not new_deps:
            result.append(replace(epic, dependencies=list(epic.dependencies)))
            continue
        order = max(epic.execution_order, max(order_of[d] for d in new_deps) + 1)
        logger.info(
            f"Epic {epic.id} overlaps {', '.join(new_deps)}; "
            f"execution order {epic.execution_order} -> {order}"
        )
        result.append(
            replace(
                epic,
                dependencies=list(epic.dependencies) + new_deps,
                execution_order=order,
                explicit_order=True,
            )
        )
    return result


def validate_developer_assignments(stories: Sequence[Story]) -> None:
    """Enforce one developer per story and one story per developer.

    Raises:
        RuleViolation: With feedback naming every offending assignment
    """
    problems: list[str] = []
    by_developer: dict[str, list[str]] = {}
    for story in stories:
        if not story.assigned_developer:
            problems.append(f"story {story.id} has no assigned developer")
            continue
        by_developer.setdefault(story.assigned_developer, []).append(story.id)

    for developer, story_ids in by_developer.items():
        if len(story_ids) > 1:
            problems.append(
                f"developer {developer} is assigned {len(story_ids)} stories "
                f"({', '.join(story_ids)}); each developer must own exactly one"
            )

    if problems:
        raise RuleViolation("developer_assignment", "; ".join(problems))


def validate_story_file_overlap(stories: Sequence[Story]) -> None:
    """Reject sibling stories that may run concurrently and write the same file.

    Stories ordered by a direct dependency are allowed to share files.

    Raises:
        RuleViolation: With feedback listing each shared file
    """
    deps = {s.id: set(s.dependencies) for s in stories}
    owners: dict[str, list[str]] = {}
    for story in stories:
        for path in sorted(story.written_files):
            owners.setdefault(path, []).append(story.id)

    clashes: list[str] = []
    for path, ids in owners.items():
        concurrent = [
            a
            for a in ids
            if any(b != a and b not in deps[a] and a not in deps[b] for b in ids)
        ]
        if concurrent:
            clashes.append(f"{path} is written by {', '.join(concurrent)}")
    if clashes:
        raise RuleViolation("file_overlap", "; ".join(clashes))
