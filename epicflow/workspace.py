"""Isolated working trees for teams and stories.

Each team works in a private copy of its target repository, and each story
works in a private copy of its team's tree, so concurrent units of work never
observe each other's uncommitted changes. Copies include the .git directory
and therefore share the source clone's remotes.
"""

import asyncio
import logging
import shutil
from collections.abc import Mapping, Sequence
from pathlib import Path

from epicflow.errors import HumanInterventionRequired
from epicflow.models import Repository

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """Creates and removes isolated workspaces under a root directory.

    Attributes:
        root: Directory holding all workspaces
        sources: Map of repository name to its local clone
    """

    def __init__(
        self,
        root: Path,
        repositories: Sequence[Repository],
        sources: Mapping[str, Path],
    ) -> None:
        self.root = root
        self.repositories = list(repositories)
        self.sources = dict(sources)

    def resolve_repository(self, reference: str | None) -> Repository:
        """Find the repository an epic targets.

        Raises:
            HumanInterventionRequired: If reference is empty or unknown
        """
        if not reference:
            raise HumanInterventionRequired("epic has no target repository")
        for repository in self.repositories:
            if repository.matches(reference):
                return repository
        raise HumanInterventionRequired(
            f"target repository {reference} is not part of this task"
        )

    def source_for(self, repository: Repository) -> Path:
        source = self.sources.get(repository.name)
        if source is None and repository.full_name:
            source = self.sources.get(repository.full_name)
        if source is None:
            raise HumanInterventionRequired(
                f"no local clone configured for repository {repository.name}"
            )
        return source

    def team_path(self, task_id: str, team_index: int, repository: Repository) -> Path:
        return self.root / task_id / f"team-{team_index}" / repository.name

    def story_path(self, team_path: Path, story_id: str) -> Path:
        return team_path.parent / "stories" / story_id / team_path.name

    async def create_team_workspace(
        self, task_id: str, team_index: int, repository: Repository
    ) -> Path:
        """Copy the repository's clone into a team workspace.

        An existing workspace from an earlier attempt is reused as is.
        """
        destination = self.team_path(task_id, team_index, repository)
        await self._copy(self.source_for(repository), destination)
        return destination

    async def create_story_workspace(self, team_path: Path, story_id: str) -> Path:
        """Copy a team's working tree into a story workspace."""
        destination = self.story_path(team_path, story_id)
        await self._copy(team_path, destination)
        return destination

    async def remove(self, path: Path) -> None:
        """Delete a workspace. Failures are logged, not raised."""
        if not path.exists():
            return
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except OSError as e:
            logger.warning(f"Failed to remove workspace {path}: {e}")

    async def _copy(self, source: Path, destination: Path) -> None:
        if destination.exists():
            logger.info(f"Reusing existing workspace {destination}")
            return
        destination.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Creating workspace {destination} from {source}")
        await asyncio.to_thread(shutil.copytree, source, destination, symlinks=True)
