"""Tests for the epicflow CLI.

Runs are patched out; status, validate and cancel work on a real state
directory.
"""

import json
import os
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from epicflow.cli import cli
from epicflow.errors import LockHeldError
from epicflow.event_store import FileEventStore
from epicflow.models import TeamOrchestrationOutput
from epicflow.run_state import RunStateStore
from epicflow.runner import RunResult

TASK_ID = "task-1"


def make_run_result(status: str = "completed", error: str | None = None) -> RunResult:
    return RunResult(
        task_id=TASK_ID,
        status=status,  # type: ignore[arg-type]
        output=TeamOrchestrationOutput(
            status="completed" if status == "completed" else "partial",
            teams_total=2,
            teams_failed=0 if status == "completed" else 1,
            failed_epics=[] if status == "completed" else ["E2"],
            cost_breakdown={"architecture": 1.0, "implementation": 3.5},
        ),
        total_cost_usd=4.5,
        total_tokens=12000,
        duration_seconds=95.0,
        error=error,
        rehydrated_from="events",
    )


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def env(tmp_path: Path, state_dir: Path) -> dict[str, str]:
    return {
        "EPICFLOW_STATE_DIR": str(state_dir),
        "EPICFLOW_WORKSPACE_ROOT": str(tmp_path / "workspaces"),
        "OTLP_ENABLED": "false",
    }


@pytest.fixture
def plan_file(tmp_path: Path) -> Path:
    path = tmp_path / "plan.json"
    path.write_text(
        json.dumps(
            {
                "task_id": TASK_ID,
                "repositories": [{"name": "backend"}, {"name": "frontend"}],
                "epics": [
                    {
                        "id": "E1",
                        "target_repository": "backend",
                        "stories": [{"id": "S1", "title": "API"}],
                    },
                    {
                        "id": "E2",
                        "target_repository": "frontend",
                        "stories": [{"id": "S2", "title": "Page"}],
                    },
                ],
            }
        )
    )
    return path


def seed_events(state_dir: Path, target_repository: str | None = "backend") -> None:
    event_store = FileEventStore(state_dir / "events")
    event_store.append(
        TASK_ID,
        "EpicCreated",
        "planner",
        {"id": "E1", "name": "API", "target_repository": target_repository},
    )
    event_store.append(
        TASK_ID,
        "StoryCreated",
        "planner",
        {
            "id": "S1",
            "epic_id": "E1",
            "title": "Endpoint",
            "target_repository": target_repository,
        },
    )


class TestPlanCommand:
    """Tests for `epicflow plan`."""

    def test_shows_batches(self, plan_file: Path, env) -> None:
        result = CliRunner().invoke(cli, ["plan", str(plan_file)], env=env)

        assert result.exit_code == 0
        assert "Execution Plan: task-1" in result.output
        assert "2 epics in 2 batches" in result.output

    def test_invalid_plan(self, tmp_path: Path, env) -> None:
        plan_file = tmp_path / "bad.json"
        plan_file.write_text("{")

        result = CliRunner().invoke(cli, ["plan", str(plan_file)], env=env)

        assert result.exit_code == 1
        assert "not valid JSON" in result.output

    def test_requires_existing_file(self, env) -> None:
        result = CliRunner().invoke(cli, ["plan", "missing.json"], env=env)

        assert result.exit_code != 0


class TestRunCommand:
    """Tests for `epicflow run`."""

    @pytest.fixture(autouse=True)
    def telemetry(self):
        with patch(
            "epicflow.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())
        ), patch("epicflow.cli.create_metrics") as create_metrics:
            yield create_metrics

    def test_completed_run(self, plan_file: Path, env, telemetry) -> None:
        with patch("epicflow.cli.run_task", new_callable=AsyncMock) as run_task:
            run_task.return_value = make_run_result()

            result = CliRunner().invoke(cli, ["run", str(plan_file)], env=env)

        assert result.exit_code == 0
        assert "Run COMPLETED" in result.output
        assert "Teams: 2/2 succeeded" in result.output
        assert "Cost: $4.50" in result.output
        assert "1m 35s" in result.output
        assert run_task.await_args.args[0].task_id == TASK_ID
        telemetry.assert_called_once()

    def test_failed_run_exits_nonzero(self, plan_file: Path, env) -> None:
        with patch("epicflow.cli.run_task", new_callable=AsyncMock) as run_task:
            run_task.return_value = make_run_result("failed", error="breaker")

            result = CliRunner().invoke(cli, ["run", str(plan_file)], env=env)

        assert result.exit_code == 1
        assert "Failed epics: E2" in result.output

    def test_partial_run_exits_zero(self, plan_file: Path, env) -> None:
        with patch("epicflow.cli.run_task", new_callable=AsyncMock) as run_task:
            run_task.return_value = make_run_result("partial")

            result = CliRunner().invoke(cli, ["run", str(plan_file)], env=env)

        assert result.exit_code == 0
        assert "Run PARTIAL" in result.output

    def test_lock_held(self, plan_file: Path, env) -> None:
        with patch("epicflow.cli.run_task", new_callable=AsyncMock) as run_task:
            run_task.side_effect = LockHeldError(TASK_ID, 42)

            result = CliRunner().invoke(cli, ["run", str(plan_file)], env=env)

        assert result.exit_code == 1
        assert "already running (PID: 42)" in result.output


class TestStatusCommand:
    """Tests for `epicflow status`."""

    def test_no_events(self, env) -> None:
        result = CliRunner().invoke(cli, ["status", TASK_ID], env=env)

        assert result.exit_code == 0
        assert "No events recorded for task-1" in result.output

    def test_shows_epics_and_run_state(self, state_dir: Path, env) -> None:
        seed_events(state_dir)
        RunStateStore(state_dir).request_cancel(TASK_ID)

        result = CliRunner().invoke(cli, ["status", TASK_ID], env=env)

        assert result.exit_code == 0
        assert "E1" in result.output
        assert "0/1" in result.output
        assert "cancel requested" in result.output

    def test_shows_live_lock_holder(self, state_dir: Path, env) -> None:
        seed_events(state_dir)
        (state_dir / f"{TASK_ID}.lock").write_text(json.dumps({"pid": os.getppid()}))

        result = CliRunner().invoke(cli, ["status", TASK_ID], env=env)

        assert f"Running in PID {os.getppid()}" in result.output


class TestValidateCommand:
    """Tests for `epicflow validate`."""

    def test_valid_log(self, state_dir: Path, env) -> None:
        seed_events(state_dir)

        result = CliRunner().invoke(cli, ["validate", TASK_ID], env=env)

        assert result.exit_code == 0
        assert "State: OK" in result.output
        assert "Integrity: OK" in result.output

    def test_invalid_state(self, state_dir: Path, env) -> None:
        seed_events(state_dir, target_repository=None)

        result = CliRunner().invoke(cli, ["validate", TASK_ID], env=env)

        assert result.exit_code == 1
        assert "Epic E1 has no target repository" in result.output


class TestCancelCommand:
    """Tests for `epicflow cancel`."""

    def test_sets_flag(self, state_dir: Path, env) -> None:
        result = CliRunner().invoke(cli, ["cancel", TASK_ID], env=env)

        assert result.exit_code == 0
        assert RunStateStore(state_dir).is_cancel_requested(TASK_ID) is True
