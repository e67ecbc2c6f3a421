"""Shared error types for the taskforge package.

The hierarchy mirrors how failures are handled by the orchestrator:
stage-local errors are recorded against a single task, while config and
state errors abort the process because nothing can be trusted without them.
"""


class ForgeError(Exception):
    """Base exception for taskforge errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class ConfigError(ForgeError):
    """Configuration file could not be read or contains invalid settings."""

    pass


class StateError(ForgeError):
    """The persisted state file is unreadable or corrupt."""

    pass


class AgentError(ForgeError):
    """The agent process failed to start, exited non-zero, or reported an error."""

    pass


class AgentTimeoutError(AgentError):
    """The agent process exceeded its timeout and was killed."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"agent timed out after {timeout:g}s")


class MalformedOutputError(AgentError):
    """The agent responded, but not with the expected JSON shape."""

    pass


class GitError(ForgeError):
    """A git command failed."""

    pass


class RebaseConflictError(GitError):
    """Rebase could not be applied cleanly. The rebase has been aborted."""

    pass


class SourceError(ForgeError):
    """The issue source could not be read or written."""

    pass
