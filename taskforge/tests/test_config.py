"""Tests for taskforge configuration."""

from pathlib import Path

import pytest

from taskforge.config import ForgeConfig, GitHubSettings, ModelSettings
from taskforge.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove taskforge environment overrides for every test."""
    for name in (
        "TASKFORGE_REPO_PATH",
        "TASKFORGE_BASE_BRANCH",
        "TASKFORGE_PARALLEL_WORKERS",
        "TASKFORGE_POLL_INTERVAL",
        "TASKFORGE_TRIAGE_TIMEOUT",
        "TASKFORGE_WORKER_TIMEOUT",
        "TASKFORGE_MAX_REVIEW_RETRIES",
    ):
        monkeypatch.delenv(name, raising=False)


class TestForgeConfigDefaults:
    """Tests for default configuration values."""

    def test_defaults(self, tmp_path: Path) -> None:
        """Defaults match the documented values."""
        config = ForgeConfig(repo_path=tmp_path)

        assert config.base_branch == "main"
        assert config.parallel_workers == 4
        assert config.poll_interval_secs == 300
        assert config.triage_timeout_secs == 600
        assert config.worker_timeout_secs == 1200
        assert config.max_review_retries == 2
        assert config.triage_tools == ["Read", "Glob", "Grep"]
        assert config.models == ModelSettings(triage="sonnet", default="sonnet", complex="opus")
        assert config.review_fail_open is True

    def test_relative_paths_resolve_against_repo(self, tmp_path: Path) -> None:
        """Layout paths live under the repository."""
        config = ForgeConfig(repo_path=tmp_path)

        assert config.state_file == tmp_path / ".taskforge" / "state.json"
        assert config.worktree_dir == tmp_path / ".taskforge" / "worktrees"
        assert config.clarification_dir == tmp_path / ".taskforge" / "clarifications"

    def test_absolute_paths_are_kept(self, tmp_path: Path) -> None:
        """Absolute layout paths are not rebased."""
        state = tmp_path / "elsewhere" / "state.json"
        config = ForgeConfig(repo_path=tmp_path / "repo", state_file=state)

        assert config.state_file == state

    def test_max_attempts_is_retries_plus_one(self, tmp_path: Path) -> None:
        """Attempt budget is the first attempt plus one per retry."""
        assert ForgeConfig(repo_path=tmp_path, max_review_retries=3).max_attempts == 4

    def test_rejects_zero_workers(self, tmp_path: Path) -> None:
        """At least one worker is required."""
        with pytest.raises(ConfigError, match="parallel_workers"):
            ForgeConfig(repo_path=tmp_path, parallel_workers=0)


class TestForgeConfigLoad:
    """Tests for ForgeConfig.load()."""

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        """A config path that doesn't exist is not an error."""
        config = ForgeConfig.load(tmp_path / "missing.yaml")

        assert config.parallel_workers == 4

    def test_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        """An empty YAML document yields all defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        config = ForgeConfig.load(path)

        assert config.base_branch == "main"

    def test_reads_nested_settings(self, tmp_path: Path) -> None:
        """Nested model and github sections become their dataclasses."""
        path = tmp_path / "config.yaml"
        path.write_text(
            f"repo_path: {tmp_path}\n"
            "parallel_workers: 2\n"
            "models:\n"
            "  complex: sonnet\n"
            "github:\n"
            "  repo: acme/widgets\n"
            "  token: secret\n"
        )

        config = ForgeConfig.load(path)

        assert config.repo_path == tmp_path
        assert config.parallel_workers == 2
        assert config.models.complex == "sonnet"
        assert config.models.default == "sonnet"
        assert config.github == GitHubSettings(
            repo="acme/widgets", label="taskforge", api_url="https://api.github.com", token="secret"
        )

    def test_unknown_keys_are_rejected(self, tmp_path: Path) -> None:
        """Typos in config keys are reported instead of ignored."""
        path = tmp_path / "config.yaml"
        path.write_text("paralel_workers: 2\n")

        with pytest.raises(ConfigError, match="paralel_workers"):
            ForgeConfig.load(path)

    def test_unknown_nested_keys_are_rejected(self, tmp_path: Path) -> None:
        """Unknown keys inside a nested section raise ConfigError."""
        path = tmp_path / "config.yaml"
        path.write_text("models:\n  fast: haiku\n")

        with pytest.raises(ConfigError):
            ForgeConfig.load(path)

    def test_non_mapping_document_is_rejected(self, tmp_path: Path) -> None:
        """A YAML list is not a config."""
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="mapping"):
            ForgeConfig.load(path)

    def test_invalid_yaml_is_rejected(self, tmp_path: Path) -> None:
        """Unparseable YAML raises ConfigError."""
        path = tmp_path / "config.yaml"
        path.write_text("base_branch: [unclosed\n")

        with pytest.raises(ConfigError):
            ForgeConfig.load(path)


class TestForgeConfigEnvOverrides:
    """Tests for environment variable overrides."""

    def test_env_overrides_file_values(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Environment variables win over the config file."""
        path = tmp_path / "config.yaml"
        path.write_text("parallel_workers: 2\nbase_branch: develop\n")
        monkeypatch.setenv("TASKFORGE_PARALLEL_WORKERS", "8")
        monkeypatch.setenv("TASKFORGE_REPO_PATH", str(tmp_path))

        config = ForgeConfig.load(path)

        assert config.parallel_workers == 8
        assert config.base_branch == "develop"
        assert config.repo_path == tmp_path

    def test_invalid_env_value_is_rejected(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Non-numeric values for numeric settings raise ConfigError."""
        monkeypatch.setenv("TASKFORGE_WORKER_TIMEOUT", "soon")

        with pytest.raises(ConfigError, match="TASKFORGE_WORKER_TIMEOUT"):
            ForgeConfig.load(tmp_path / "missing.yaml")
