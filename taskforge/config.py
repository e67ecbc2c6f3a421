"""Configuration for taskforge.

Provides centralized configuration with sensible defaults, an optional YAML
config file, and environment variable overrides for the settings most often
changed per machine.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from taskforge.errors import ConfigError


@dataclass
class ModelSettings:
    """Model names per role. Aliases (haiku/sonnet/opus) or full model ids."""

    triage: str = "sonnet"
    default: str = "sonnet"
    complex: str = "opus"


@dataclass
class GitHubSettings:
    """GitHub issue source settings. Disabled while repo is None."""

    repo: str | None = None
    label: str = "taskforge"
    api_url: str = "https://api.github.com"
    token: str | None = field(default_factory=lambda: os.getenv("GITHUB_TOKEN"))


@dataclass
class ForgeConfig:
    """Configuration for orchestrator execution.

    All settings have sensible defaults. Use load() to read a YAML file and
    apply environment overrides on top of it.
    """

    # Repository
    repo_path: Path = field(default_factory=Path.cwd)
    base_branch: str = "main"
    remote: str = "origin"

    # Concurrency
    parallel_workers: int = 4
    poll_interval_secs: int = 300

    # Claude Code settings
    models: ModelSettings = field(default_factory=ModelSettings)
    triage_tools: list[str] = field(default_factory=lambda: ["Read", "Glob", "Grep"])
    worker_tools: list[str] = field(
        default_factory=lambda: ["Bash", "Read", "Write", "Edit", "Glob", "Grep"]
    )
    triage_timeout_secs: int = 600
    worker_timeout_secs: int = 1200

    # Pipeline policy
    max_review_retries: int = 2
    review_fail_open: bool = True
    test_command: str | None = None
    push_on_success: bool = False

    # Filesystem layout (relative paths resolve against repo_path)
    worktree_dir: Path = Path(".taskforge/worktrees")
    state_file: Path = Path(".taskforge/state.json")
    clarification_dir: Path = Path(".taskforge/clarifications")
    tasks_dir: Path = Path(".taskforge/tasks")

    # Issue source
    github: GitHubSettings = field(default_factory=GitHubSettings)

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "taskforge"

    def __post_init__(self) -> None:
        self.repo_path = Path(self.repo_path)
        for name in ("worktree_dir", "state_file", "clarification_dir", "tasks_dir"):
            path = Path(getattr(self, name))
            if not path.is_absolute():
                path = self.repo_path / path
            setattr(self, name, path)
        if self.parallel_workers < 1:
            raise ConfigError("parallel_workers must be at least 1")
        if self.max_review_retries < 0:
            raise ConfigError("max_review_retries must not be negative")

    @property
    def max_attempts(self) -> int:
        """Implement attempts per task: the first try plus one per retry."""
        return self.max_review_retries + 1

    @classmethod
    def load(cls, path: Path | None = None) -> "ForgeConfig":
        """Load config from a YAML file (if present) with environment overrides.

        Environment variables:
            TASKFORGE_REPO_PATH: Override repo_path
            TASKFORGE_BASE_BRANCH: Override base_branch (default: main)
            TASKFORGE_PARALLEL_WORKERS: Override parallel_workers (default: 4)
            TASKFORGE_POLL_INTERVAL: Override poll_interval_secs (default: 300)
            TASKFORGE_TRIAGE_TIMEOUT: Override triage_timeout_secs (default: 600)
            TASKFORGE_WORKER_TIMEOUT: Override worker_timeout_secs (default: 1200)
            TASKFORGE_MAX_REVIEW_RETRIES: Override max_review_retries (default: 2)

        Args:
            path: Optional path to a YAML config file. A missing file is fine.

        Returns:
            ForgeConfig with file values and environment overrides applied

        Raises:
            ConfigError: If the file is not valid YAML or has unknown keys
        """
        data: dict[str, Any] = {}
        if path is not None and Path(path).exists():
            try:
                loaded = yaml.safe_load(Path(path).read_text())
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Failed to read config file {path}: {e}") from e
            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                raise ConfigError(f"Config file {path} must contain a mapping")
            data = loaded

        data = {**data, **_env_overrides()}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ForgeConfig":
        """Build a config from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

        kwargs = dict(data)
        try:
            if "models" in kwargs:
                kwargs["models"] = ModelSettings(**(kwargs["models"] or {}))
            if "github" in kwargs:
                kwargs["github"] = GitHubSettings(**(kwargs["github"] or {}))
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigError(f"Invalid config: {e}") from e


_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "TASKFORGE_REPO_PATH": ("repo_path", Path),
    "TASKFORGE_BASE_BRANCH": ("base_branch", str),
    "TASKFORGE_PARALLEL_WORKERS": ("parallel_workers", int),
    "TASKFORGE_POLL_INTERVAL": ("poll_interval_secs", int),
    "TASKFORGE_TRIAGE_TIMEOUT": ("triage_timeout_secs", int),
    "TASKFORGE_WORKER_TIMEOUT": ("worker_timeout_secs", int),
    "TASKFORGE_MAX_REVIEW_RETRIES": ("max_review_retries", int),
}


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_name, (key, convert) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            overrides[key] = convert(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {env_name}: {raw!r}") from e
    return overrides
