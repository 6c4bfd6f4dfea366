"""Per-task run lock.

A task's lock file under the state directory records which process is
running it. The file is created exclusively, so two processes starting the
same task at once cannot both win. A lock left behind by a process that has
exited is stale and is replaced.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

from epicflow.errors import LockHeldError
from epicflow.models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class LockHolder:
    """Process recorded in a task's lock file."""

    pid: int
    acquired_at: str | None = None

    @property
    def is_alive(self) -> bool:
        try:
            os.kill(self.pid, 0)  # signal 0 only checks existence
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    @property
    def is_current_process(self) -> bool:
        return self.pid == os.getpid()


class TaskLock:
    """Lock held for the whole of one task's run.

    Usage:
        with TaskLock(state_dir, "task-42"):
            ...  # run the task

    Attributes:
        task_id: Task the lock guards
        lock_path: Path to the lock file
    """

    def __init__(self, state_dir: Path, task_id: str) -> None:
        self.task_id = task_id
        self.lock_path = state_dir / f"{task_id}.lock"

    def holder(self) -> LockHolder | None:
        """Process named in the lock file, None if absent or unreadable."""
        try:
            data = json.loads(self.lock_path.read_text())
            return LockHolder(int(data["pid"]), data.get("acquired_at"))
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    def acquire(self) -> None:
        """Take the lock, replacing a stale one.

        Raises:
            LockHeldError: If another running process holds the lock
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        record = json.dumps({"pid": os.getpid(), "acquired_at": utcnow().isoformat()})
        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                self._clear_if_stale()
                continue
            with os.fdopen(fd, "w") as f:
                f.write(record)
            logger.debug(f"[{self.task_id}] Lock acquired at {self.lock_path}")
            return
        self._raise_held()

    def _clear_if_stale(self) -> None:
        holder = self.holder()
        if holder is not None and holder.is_alive and not holder.is_current_process:
            self._raise_held(holder)
        if holder is None:
            logger.warning(f"[{self.task_id}] Replacing unreadable lock file")
        elif not holder.is_current_process:
            logger.warning(
                f"[{self.task_id}] Replacing stale lock of exited PID {holder.pid}"
            )
        self.lock_path.unlink(missing_ok=True)

    def _raise_held(self, holder: LockHolder | None = None) -> None:
        holder = holder or self.holder()
        raise LockHeldError(
            self.task_id,
            holder.pid if holder else None,
            holder.acquired_at if holder else None,
        )

    def release(self) -> None:
        """Remove the lock file if this process holds it."""
        holder = self.holder()
        if holder is not None and holder.is_current_process:
            self.lock_path.unlink(missing_ok=True)

    def __enter__(self) -> "TaskLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
