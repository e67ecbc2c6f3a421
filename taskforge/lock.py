"""Single-process lock for a state file.

Two orchestrators sharing one state file would each process the same
tasks, so runs hold a PID lock file next to the state file.
"""

import os
from pathlib import Path
from types import TracebackType

import structlog

from taskforge.errors import StateError

logger = structlog.get_logger(__name__)


class RunLock:
    """PID-based lock guarding a state file.

    Usage:
        with RunLock(config.state_file):
            # This process owns the state file
            ...

    Attributes:
        lock_path: Path to the lock file (<state_file>.lock)
    """

    def __init__(self, state_file: Path) -> None:
        self.lock_path = state_file.with_name(f"{state_file.name}.lock")

    def acquire(self) -> bool:
        """Try to acquire the lock.

        Stale locks left by dead processes are removed first.

        Returns:
            True if lock acquired, False if held by another running process
        """
        holder_pid = self.get_holder_pid()
        if self.lock_path.exists():
            if holder_pid is not None and holder_pid != os.getpid():
                if self._is_process_running(holder_pid):
                    return False
            logger.info("Removing stale lock", path=str(self.lock_path), pid=holder_pid)
            self.lock_path.unlink(missing_ok=True)

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            # Another process won the race between unlink and create
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return True

    def release(self) -> None:
        """Release the lock if this process holds it."""
        if self.get_holder_pid() == os.getpid():
            self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        """PID stored in the lock file, or None if missing or unreadable."""
        try:
            return int(self.lock_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # Signal 0 doesn't kill, just checks existence
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but we don't have permission to signal it
            return True

    def __enter__(self) -> "RunLock":
        """Acquire lock on context entry.

        Raises:
            StateError: If the lock is held by another running process
        """
        if not self.acquire():
            holder_pid = self.get_holder_pid()
            raise StateError(
                f"Another taskforge process owns {self.lock_path.with_suffix('')} "
                f"(PID: {holder_pid})"
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
