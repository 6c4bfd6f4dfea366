"""Shared fixtures for epicflow tests."""

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from epicflow.budget import BudgetConfig, BudgetRegistry
from epicflow.config import EpicflowConfig
from epicflow.context import CheckpointService, OrchestrationContext
from epicflow.event_store import EventStore
from epicflow.git import GitResult, GitRunner
from epicflow.models import Repository
from epicflow.notifier import Notifier
from epicflow.phase import PhaseServices
from epicflow.run_state import RunStateStore

TASK_ID = "task-1"


@pytest.fixture
def config(tmp_path: Path) -> EpicflowConfig:
    """Fast config: no webhook, no backoff delays, quick cancellation polling."""
    return EpicflowConfig(
        workspace_root=tmp_path / "workspaces",
        state_dir=tmp_path / "state",
        webhook_url=None,
        cancellation_check_interval_ms=10,
        retry_initial_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest.fixture
def event_store() -> EventStore:
    return EventStore()


@pytest.fixture
def agent() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def git() -> AsyncMock:
    """GitRunner double where nothing exists yet and every command succeeds."""
    git = AsyncMock(spec=GitRunner)
    git.branch_exists.return_value = False
    git.ls_remote_head.return_value = None
    git.count_commits.return_value = 0
    git.commit_all.return_value = False
    git.has_changes.return_value = False
    git.rev_parse.return_value = "abc1234"
    git.current_branch.return_value = "main"
    git.conflicted_files.return_value = []
    git.merge_no_ff.return_value = GitResult(0, "", "")
    return git


@pytest.fixture
def services(
    config: EpicflowConfig, event_store: EventStore, agent: AsyncMock, git: AsyncMock
) -> PhaseServices:
    return PhaseServices(
        config=config,
        event_store=event_store,
        run_states=RunStateStore(config.state_dir),
        budgets=BudgetRegistry(BudgetConfig.from_config(config)),
        notifier=Notifier(None),
        agent=agent,
        git=git,
        checkpoints=CheckpointService(config.state_dir),
    )


@pytest.fixture
def repositories() -> list[Repository]:
    return [
        Repository(name="backend", full_name="acme/backend"),
        Repository(name="frontend", full_name="acme/frontend"),
    ]


@pytest.fixture
def context(
    config: EpicflowConfig, repositories: list[Repository]
) -> OrchestrationContext:
    return OrchestrationContext(TASK_ID, repositories, config.workspace_root)


@pytest.fixture
def seed_epic(event_store: EventStore) -> Callable[..., None]:
    """Append creation events for an epic and its stories."""

    def _seed(
        epic_id: str = "E1",
        repository: str | None = "backend",
        stories: Sequence[dict[str, Any]] = (),
        **epic_fields: Any,
    ) -> None:
        event_store.append(
            TASK_ID,
            "EpicCreated",
            "planner",
            {
                "id": epic_id,
                "name": f"Epic {epic_id}",
                "target_repository": repository,
                **epic_fields,
            },
        )
        for story in stories:
            event_store.append(
                TASK_ID,
                "StoryCreated",
                "planner",
                {
                    "epic_id": epic_id,
                    "title": f"Story {story['id']}",
                    "target_repository": repository,
                    **story,
                },
            )

    return _seed
