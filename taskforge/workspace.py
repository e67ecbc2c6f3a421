"""Git worktree management for per-task workspaces.

Each task works in its own worktree at <worktree_dir>/<branch>, so
concurrent agents never share a checkout. All methods are synchronous git
invocations; the orchestrator runs them in a thread.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path

import structlog

from taskforge.errors import GitError, RebaseConflictError

logger = structlog.get_logger(__name__)

# Characters of test output kept for the failure reason
TEST_OUTPUT_TAIL = 2000


@dataclass
class TestRun:
    """Outcome of running the configured test command in a workspace."""

    __test__ = False

    passed: bool
    output: str

    @property
    def tail(self) -> str:
        return self.output[-TEST_OUTPUT_TAIL:].strip()


class WorkspaceManager:
    """Creates, inspects and removes task worktrees of one repository.

    Args:
        repo_path: Root of the main checkout
        worktree_dir: Directory under which worktrees are created
        remote: Remote to fetch from; empty for a purely local repository
    """

    def __init__(self, repo_path: Path, worktree_dir: Path, remote: str = "origin"):
        self.repo_path = repo_path
        self.worktree_dir = worktree_dir
        self.remote = remote

    def base_ref(self, base_branch: str) -> str:
        return f"{self.remote}/{base_branch}" if self.remote else base_branch

    def path_for(self, branch: str) -> Path:
        return self.worktree_dir / branch

    def _git(self, args: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", *args],
            cwd=cwd or self.repo_path,
            capture_output=True,
            text=True,
        )

    def _git_checked(self, args: list[str], cwd: Path | None = None) -> str:
        result = self._git(args, cwd)
        if result.returncode != 0:
            logger.error(
                "Git command failed",
                command=" ".join(args[:2]),
                stderr=result.stderr.strip(),
            )
            raise GitError(f"git {args[0]} failed: {result.stderr.strip()}")
        return result.stdout

    def _fetch(self, base_branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess | None:
        if not self.remote:
            return None
        return self._git(["fetch", self.remote, base_branch], cwd)

    def create(self, branch: str, base_branch: str) -> Path:
        """Create the worktree for a branch, or return it if it already exists.

        Raises:
            GitError: If the worktree cannot be added
        """
        path = self.path_for(branch)
        if path.exists():
            logger.info("Worktree already exists", path=str(path))
            return path

        path.parent.mkdir(parents=True, exist_ok=True)

        fetch = self._fetch(base_branch)
        if fetch is not None and fetch.returncode != 0:
            logger.debug("Fetch before worktree add failed", stderr=fetch.stderr.strip())

        logger.info("Creating worktree", path=str(path), branch=branch)
        result = self._git(
            ["worktree", "add", "-b", branch, str(path), self.base_ref(base_branch)]
        )
        if result.returncode != 0:
            if "already exists" not in result.stderr:
                raise GitError(f"worktree add failed: {result.stderr.strip()}")
            logger.debug("Branch exists, attaching worktree", branch=branch)
            self._git_checked(["worktree", "add", str(path), branch])

        return path

    def commit_count(self, path: Path, base_branch: str) -> int:
        """Number of commits on the worktree's HEAD that the base does not have."""
        output = self._git_checked(
            ["rev-list", "--count", f"{self.base_ref(base_branch)}..HEAD"], cwd=path
        )
        try:
            return int(output.strip())
        except ValueError as e:
            raise GitError(f"unexpected rev-list output: {output.strip()!r}") from e

    def rebase(self, path: Path, base_branch: str) -> None:
        """Fetch the base branch and rebase the worktree onto it.

        Raises:
            GitError: If the fetch fails
            RebaseConflictError: If the rebase fails; it is aborted first
        """
        fetch = self._fetch(base_branch, cwd=path)
        if fetch is not None and fetch.returncode != 0:
            raise GitError(f"fetch failed: {fetch.stderr.strip()}")

        base_ref = self.base_ref(base_branch)
        logger.info("Rebasing worktree", path=str(path), onto=base_ref)
        result = self._git(["rebase", base_ref], cwd=path)
        if result.returncode != 0:
            abort = self._git(["rebase", "--abort"], cwd=path)
            if abort.returncode != 0:
                logger.warning("Rebase abort failed", path=str(path), stderr=abort.stderr.strip())
            detail = (result.stderr or result.stdout).strip()
            raise RebaseConflictError(detail or f"cannot rebase onto {base_ref}")

    def diff(self, path: Path, base_branch: str) -> str:
        return self._git_checked(
            ["diff", f"{self.base_ref(base_branch)}...HEAD"], cwd=path
        )

    def push(self, path: Path, branch: str) -> None:
        if not self.remote:
            raise GitError("cannot push without a configured remote")
        logger.info("Pushing branch", branch=branch, remote=self.remote)
        self._git_checked(["push", "-u", self.remote, branch], cwd=path)

    def delete_branch(self, branch: str) -> None:
        self._git_checked(["branch", "-D", branch])

    def list(self) -> list[Path]:
        """Worktrees of the repository that live under worktree_dir."""
        output = self._git_checked(["worktree", "list", "--porcelain"])
        root = self.worktree_dir.resolve()
        worktrees = []
        for line in output.splitlines():
            if not line.startswith("worktree "):
                continue
            path = Path(line[len("worktree ") :])
            if path.resolve().is_relative_to(root) and path.resolve() != root:
                worktrees.append(path)
        return worktrees

    def remove(self, path: Path) -> None:
        logger.info("Removing worktree", path=str(path))
        self._git_checked(["worktree", "remove", "--force", str(path)])

    def run_tests(self, path: Path, command: str) -> TestRun:
        """Run a shell test command in the worktree."""
        logger.info("Running tests", path=str(path), command=command)
        result = subprocess.run(
            command,
            shell=True,
            cwd=path,
            capture_output=True,
            text=True,
        )
        return TestRun(passed=result.returncode == 0, output=result.stdout + result.stderr)
