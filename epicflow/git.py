"""Async git command execution.

Provides GitRunner, which runs the git binary in a repository working tree
with a mandatory timeout. Network operations (fetch, pull, push, ls-remote)
use the longer network timeout. Non-zero exits raise GitError carrying stderr
unless the caller asks to inspect the result itself.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from epicflow.errors import GitError

logger = logging.getLogger(__name__)

_UNSAFE_REF_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def branch_slug(value: str) -> str:
    """Make value safe to use as one component of a branch name."""
    return _UNSAFE_REF_CHARS.sub("-", value).strip("-.") or "x"


def epic_branch_name(task_id: str, epic_id: str) -> str:
    return f"epic/{branch_slug(task_id)}/{branch_slug(epic_id)}"


def story_branch_name(task_id: str, story_id: str) -> str:
    return f"story/{branch_slug(task_id)}/{branch_slug(story_id)}"


@dataclass
class GitResult:
    """Captured output of one git invocation."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def combined(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


class GitRunner:
    """Runs git commands against working trees on the local filesystem."""

    def __init__(
        self,
        network_timeout: float = 120,
        local_timeout: float = 30,
        binary: str = "git",
    ) -> None:
        self.network_timeout = network_timeout
        self.local_timeout = local_timeout
        self.binary = binary

    async def run(
        self,
        repo_path: Path,
        *args: str,
        timeout: float | None = None,
        check: bool = True,
    ) -> GitResult:
        """Execute a git command in repo_path.

        Args:
            repo_path: Working tree to run in
            *args: Arguments after the git binary
            timeout: Seconds before the process is killed (default: local timeout)
            check: Raise GitError on non-zero exit

        Returns:
            GitResult with decoded stdout/stderr

        Raises:
            GitError: On timeout, or on non-zero exit when check is set
        """
        timeout = timeout or self.local_timeout
        proc = await asyncio.create_subprocess_exec(
            self.binary,
            *args,
            cwd=str(repo_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise GitError(list(args), -1, f"timed out after {timeout}s") from None

        result = GitResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        if check and not result.ok:
            raise GitError(list(args), result.returncode, result.stderr.strip())
        return result

    # Network operations

    async def fetch(self, repo_path: Path, remote: str = "origin") -> None:
        await self.run(repo_path, "fetch", remote, timeout=self.network_timeout)

    async def pull(self, repo_path: Path, branch: str, remote: str = "origin") -> None:
        await self.run(
            repo_path,
            "pull",
            "--no-rebase",
            remote,
            branch,
            timeout=self.network_timeout,
        )

    async def push(
        self,
        repo_path: Path,
        branch: str,
        force_with_lease: bool = False,
        remote: str = "origin",
    ) -> None:
        args = ["push", "-u", remote, branch]
        if force_with_lease:
            args.insert(1, "--force-with-lease")
        await self.run(repo_path, *args, timeout=self.network_timeout)

    async def push_with_fallback(self, repo_path: Path, branch: str) -> None:
        """Push a branch, retrying once with --force-with-lease if rejected."""
        try:
            await self.push(repo_path, branch)
        except GitError as e:
            logger.warning(
                f"Push of {branch} rejected, retrying with lease: {e.stderr}"
            )
            await self.push(repo_path, branch, force_with_lease=True)

    async def ls_remote_head(
        self, repo_path: Path, branch: str, remote: str = "origin"
    ) -> str | None:
        """Commit SHA of a remote branch, or None if it does not exist."""
        result = await self.run(
            repo_path,
            "ls-remote",
            "--heads",
            remote,
            branch,
            timeout=self.network_timeout,
        )
        for line in result.stdout.splitlines():
            sha, _, ref = line.partition("\t")
            if ref.strip() == f"refs/heads/{branch}":
                return sha.strip()
        return None

    async def delete_remote_branch(
        self, repo_path: Path, branch: str, remote: str = "origin"
    ) -> None:
        await self.run(
            repo_path, "push", remote, "--delete", branch, timeout=self.network_timeout
        )

    # Local operations

    async def checkout(self, repo_path: Path, branch: str) -> None:
        await self.run(repo_path, "checkout", branch)

    async def checkout_new(self, repo_path: Path, branch: str, base: str) -> None:
        await self.run(repo_path, "checkout", "-B", branch, base)

    async def branch_exists(self, repo_path: Path, branch: str) -> bool:
        result = await self.run(
            repo_path,
            "show-ref",
            "--verify",
            "--quiet",
            f"refs/heads/{branch}",
            check=False,
        )
        return result.ok

    async def delete_local_branch(self, repo_path: Path, branch: str) -> None:
        await self.run(repo_path, "branch", "-D", branch)

    async def current_branch(self, repo_path: Path) -> str:
        result = await self.run(repo_path, "branch", "--show-current")
        return result.stdout.strip()

    async def rev_parse(self, repo_path: Path, ref: str = "HEAD") -> str:
        result = await self.run(repo_path, "rev-parse", ref)
        return result.stdout.strip()

    async def count_commits(self, repo_path: Path, base: str, branch: str) -> int:
        """Number of commits on branch that are not on base."""
        result = await self.run(
            repo_path, "rev-list", "--count", f"{base}..{branch}", check=False
        )
        if not result.ok:
            return 0
        return int(result.stdout.strip() or "0")

    async def has_changes(self, repo_path: Path) -> bool:
        result = await self.run(repo_path, "status", "--porcelain")
        return bool(result.stdout.strip())

    async def add(self, repo_path: Path, *paths: str) -> None:
        await self.run(repo_path, "add", *(paths or ("-A",)))

    async def commit(self, repo_path: Path, message: str) -> None:
        await self.run(repo_path, "commit", "--no-verify", "-m", message)

    async def commit_all(self, repo_path: Path, message: str) -> bool:
        """Stage and commit everything. Returns False when the tree was clean."""
        if not await self.has_changes(repo_path):
            return False
        await self.add(repo_path)
        await self.commit(repo_path, message)
        return True

    async def merge_no_ff(
        self, repo_path: Path, branch: str, message: str
    ) -> GitResult:
        """Merge branch with a merge commit. The caller inspects the result.

        Conflicts are written in diff3 style so the common ancestor is visible
        inside each conflict region.
        """
        return await self.run(
            repo_path,
            "-c",
            "merge.conflictStyle=diff3",
            "merge",
            "--no-ff",
            branch,
            "-m",
            message,
            check=False,
        )

    async def merge_abort(self, repo_path: Path) -> None:
        await self.run(repo_path, "merge", "--abort")

    async def conflicted_files(self, repo_path: Path) -> list[str]:
        result = await self.run(repo_path, "diff", "--name-only", "--diff-filter=U")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]
