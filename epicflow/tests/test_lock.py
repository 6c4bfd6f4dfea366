"""Tests for the task run lock."""

import json
import os
from pathlib import Path

import pytest

from epicflow.errors import LockHeldError
from epicflow.lock import LockHolder, TaskLock


def write_lock(state_dir: Path, pid: int, task_id: str = "task-1") -> Path:
    path = state_dir / f"{task_id}.lock"
    path.write_text(json.dumps({"pid": pid, "acquired_at": "2026-01-01T00:00:00"}))
    return path


class TestTaskLockAcquire:
    """Tests for TaskLock.acquire()."""

    def test_acquire_records_holder(self, tmp_path: Path) -> None:
        lock = TaskLock(tmp_path, "task-1")

        lock.acquire()

        holder = lock.holder()
        assert holder.pid == os.getpid()
        assert holder.acquired_at is not None

    def test_acquire_creates_state_dir(self, tmp_path: Path) -> None:
        lock = TaskLock(tmp_path / "state", "task-1")

        lock.acquire()

        assert lock.lock_path.exists()

    def test_running_holder_blocks(self, tmp_path: Path) -> None:
        """The parent process is alive for the whole test."""
        holder = os.getppid()
        write_lock(tmp_path, holder)

        with pytest.raises(LockHeldError) as exc_info:
            TaskLock(tmp_path, "task-1").acquire()

        assert exc_info.value.holder_pid == holder
        assert exc_info.value.acquired_at == "2026-01-01T00:00:00"
        assert exc_info.value.task_id == "task-1"

    def test_own_lock_is_reacquired(self, tmp_path: Path) -> None:
        write_lock(tmp_path, os.getpid())

        TaskLock(tmp_path, "task-1").acquire()

    def test_stale_lock_is_taken_over(self, tmp_path: Path) -> None:
        write_lock(tmp_path, 99999999)
        lock = TaskLock(tmp_path, "task-1")

        lock.acquire()

        assert lock.holder().pid == os.getpid()

    def test_unreadable_lock_is_taken_over(self, tmp_path: Path) -> None:
        (tmp_path / "task-1.lock").write_text("not json")
        lock = TaskLock(tmp_path, "task-1")

        lock.acquire()

        assert lock.holder().pid == os.getpid()

    def test_locks_are_per_task(self, tmp_path: Path) -> None:
        write_lock(tmp_path, os.getppid())

        TaskLock(tmp_path, "task-2").acquire()

        assert (tmp_path / "task-2.lock").exists()


class TestLockHolder:
    """Tests for LockHolder liveness checks."""

    def test_current_process(self) -> None:
        holder = LockHolder(os.getpid())

        assert holder.is_alive is True
        assert holder.is_current_process is True

    def test_exited_process(self) -> None:
        assert LockHolder(99999999).is_alive is False

    def test_missing_lock_has_no_holder(self, tmp_path: Path) -> None:
        assert TaskLock(tmp_path, "task-1").holder() is None


class TestTaskLockRelease:
    """Tests for TaskLock.release()."""

    def test_release_removes_lock_file(self, tmp_path: Path) -> None:
        lock = TaskLock(tmp_path, "task-1")
        lock.acquire()

        lock.release()

        assert not lock.lock_path.exists()

    def test_release_without_lock(self, tmp_path: Path) -> None:
        TaskLock(tmp_path, "task-1").release()

    def test_release_keeps_foreign_lock(self, tmp_path: Path) -> None:
        lock_file = write_lock(tmp_path, os.getppid())

        TaskLock(tmp_path, "task-1").release()

        assert lock_file.exists()


class TestTaskLockContextManager:
    """Tests for TaskLock as a context manager."""

    def test_acquires_and_releases(self, tmp_path: Path) -> None:
        lock = TaskLock(tmp_path, "task-1")

        with lock:
            assert lock.holder().pid == os.getpid()

        assert not lock.lock_path.exists()

    def test_raises_when_held(self, tmp_path: Path) -> None:
        holder = os.getppid()
        write_lock(tmp_path, holder)

        with pytest.raises(LockHeldError, match=f"PID: {holder}"):
            with TaskLock(tmp_path, "task-1"):
                pass

    def test_releases_on_exception(self, tmp_path: Path) -> None:
        lock = TaskLock(tmp_path, "task-1")

        with pytest.raises(ValueError):
            with lock:
                raise ValueError("boom")

        assert not lock.lock_path.exists()
