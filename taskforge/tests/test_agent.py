"""Tests for Claude Code invocation and output parsing."""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from taskforge.agent import (
    MODEL_ALIASES,
    ClaudeRunner,
    extract_json,
    parse_result_json,
    resolve_model,
    select_model,
)
from taskforge.config import ModelSettings
from taskforge.errors import AgentError, AgentTimeoutError, MalformedOutputError
from taskforge.models import Complexity


def make_process(
    stdout: str = "", stderr: str = "", returncode: int = 0
) -> MagicMock:
    """Create a mock asyncio subprocess."""
    process = MagicMock()
    process.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    process.returncode = returncode
    process.wait = AsyncMock(return_value=returncode)
    return process


def envelope(result: str, is_error: bool = False, cost: float = 0.02) -> str:
    """Serialize a claude --output-format json envelope."""
    return json.dumps(
        {
            "type": "result",
            "is_error": is_error,
            "result": result,
            "total_cost_usd": cost,
            "duration_ms": 1500,
            "num_turns": 3,
            "session_id": "sess-1",
        }
    )


async def run_default(runner: ClaudeRunner, tmp_path: Path, **overrides):
    """Invoke runner.run with standard arguments."""
    kwargs = {
        "system_prompt": "You are a reviewer",
        "model": "sonnet",
        "cwd": tmp_path,
        "allowed_tools": ["Read", "Grep"],
        "timeout": 5,
    }
    kwargs.update(overrides)
    return await runner.run("Do the thing", **kwargs)


class TestExtractJson:
    """Tests for extract_json()."""

    def test_fenced_json_block(self) -> None:
        """A ```json block wins over surrounding text."""
        assert extract_json('text ```json\n{"a":1}\n``` more text') == '{"a":1}'

    def test_raw_json_unchanged(self) -> None:
        """Unfenced JSON is returned as-is."""
        assert extract_json('{"a":1}') == '{"a":1}'

    def test_prose_wrapped_object(self) -> None:
        """Prose around an object is cut from the first { to the last }."""
        text = 'The analysis shows: {"key": {"nested": "value"}} end'

        assert extract_json(text) == '{"key": {"nested": "value"}}'

    def test_any_fenced_block_skips_language_line(self) -> None:
        """Other fenced blocks are used, minus their language tag line."""
        assert extract_json('Result:\n```javascript\n{"a": 2}\n```') == '{"a": 2}'

    def test_untagged_fence(self) -> None:
        """A bare ``` fence also works."""
        assert extract_json('```\n{"a": 3}\n```') == '{"a": 3}'

    def test_no_json_returns_trimmed_text(self) -> None:
        """Text without an object comes back trimmed."""
        assert extract_json("  nothing here \n") == "nothing here"


class TestParseResultJson:
    """Tests for parse_result_json()."""

    def test_parses_embedded_object(self) -> None:
        """The object embedded in the result text is deserialized."""
        assert parse_result_json('Here:\n```json\n{"approved": true}\n```') == {
            "approved": True
        }

    def test_invalid_json_is_malformed(self) -> None:
        """Unparseable text raises MalformedOutputError."""
        with pytest.raises(MalformedOutputError):
            parse_result_json("I could not decide")

    def test_array_is_malformed(self) -> None:
        """Only JSON objects are accepted."""
        with pytest.raises(MalformedOutputError, match="object"):
            parse_result_json("[1, 2]")


class TestModelSelection:
    """Tests for resolve_model() and select_model()."""

    @pytest.mark.parametrize("alias", ["haiku", "sonnet", "opus", "Opus"])
    def test_aliases_resolve(self, alias: str) -> None:
        """Aliases map to full model ids."""
        assert resolve_model(alias) == MODEL_ALIASES[alias.lower()]

    def test_full_ids_pass_through(self) -> None:
        """Full claude-* ids are used as given."""
        assert resolve_model("claude-sonnet-4-20250514") == "claude-sonnet-4-20250514"

    def test_unknown_name_falls_back_to_sonnet(self) -> None:
        """Unknown names use the default model instead of failing."""
        assert resolve_model("gpt-4") == MODEL_ALIASES["sonnet"]

    @pytest.mark.parametrize(
        "complexity,expected",
        [
            (Complexity.LOW, "haiku"),
            (Complexity.MEDIUM, "haiku"),
            (Complexity.HIGH, "opus"),
        ],
    )
    def test_select_model_by_complexity(self, complexity: Complexity, expected: str) -> None:
        """LOW and MEDIUM use the default tier, HIGH the complex tier."""
        models = ModelSettings(triage="sonnet", default="haiku", complex="opus")

        assert select_model(complexity, models) == MODEL_ALIASES[expected]


class TestClaudeRunnerRun:
    """Tests for ClaudeRunner.run()."""

    @pytest.mark.asyncio
    async def test_builds_command_and_writes_prompt_to_stdin(self, tmp_path: Path) -> None:
        """The prompt goes to stdin and options become CLI flags."""
        runner = ClaudeRunner(claude_path="/usr/bin/claude")
        process = make_process(stdout=envelope("done"))

        with patch(
            "taskforge.agent.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ) as mock_exec:
            result = await run_default(runner, tmp_path)

        args = mock_exec.call_args.args
        assert args == (
            "/usr/bin/claude",
            "-p",
            "--model",
            MODEL_ALIASES["sonnet"],
            "--output-format",
            "json",
            "--allowedTools",
            "Read,Grep",
            "--append-system-prompt",
            "You are a reviewer",
        )
        assert mock_exec.call_args.kwargs["cwd"] == tmp_path
        process.communicate.assert_awaited_once_with(b"Do the thing")
        assert result.result == "done"
        assert result.total_cost_usd == 0.02

    @pytest.mark.asyncio
    async def test_removes_nested_session_env(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """CLAUDECODE and CLAUDE_CODE_ENTRYPOINT are not passed on."""
        monkeypatch.setenv("CLAUDECODE", "1")
        monkeypatch.setenv("CLAUDE_CODE_ENTRYPOINT", "cli")
        runner = ClaudeRunner(claude_path="claude")

        with patch(
            "taskforge.agent.asyncio.create_subprocess_exec",
            AsyncMock(return_value=make_process(stdout=envelope("ok"))),
        ) as mock_exec:
            await run_default(runner, tmp_path)

        env = mock_exec.call_args.kwargs["env"]
        assert "CLAUDECODE" not in env
        assert "CLAUDE_CODE_ENTRYPOINT" not in env

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path: Path) -> None:
        """A hung agent is killed, reaped and reported as a timeout."""
        runner = ClaudeRunner(claude_path="claude")
        process = make_process()

        async def hang(*args):
            await asyncio.sleep(10)

        process.communicate = AsyncMock(side_effect=hang)

        with patch(
            "taskforge.agent.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            with pytest.raises(AgentTimeoutError):
                await run_default(runner, tmp_path, timeout=0.05)

        process.kill.assert_called_once()
        process.wait.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_agent_error(self, tmp_path: Path) -> None:
        """A failing process raises AgentError with its stderr."""
        runner = ClaudeRunner(claude_path="claude")

        with patch(
            "taskforge.agent.asyncio.create_subprocess_exec",
            AsyncMock(return_value=make_process(stderr="rate limited", returncode=1)),
        ):
            with pytest.raises(AgentError, match="rate limited"):
                await run_default(runner, tmp_path)

    @pytest.mark.asyncio
    async def test_spawn_failure_raises_agent_error(self, tmp_path: Path) -> None:
        """A missing executable raises AgentError."""
        runner = ClaudeRunner(claude_path="/nonexistent/claude")

        with patch(
            "taskforge.agent.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("no such file")),
        ):
            with pytest.raises(AgentError, match="failed to start"):
                await run_default(runner, tmp_path)

    @pytest.mark.asyncio
    async def test_error_envelope_raises_agent_error(self, tmp_path: Path) -> None:
        """An envelope with is_error set is a failed invocation."""
        runner = ClaudeRunner(claude_path="claude")

        with patch(
            "taskforge.agent.asyncio.create_subprocess_exec",
            AsyncMock(return_value=make_process(stdout=envelope("max turns", is_error=True))),
        ):
            with pytest.raises(AgentError, match="max turns"):
                await run_default(runner, tmp_path)

    @pytest.mark.asyncio
    async def test_non_json_stdout_is_malformed(self, tmp_path: Path) -> None:
        """Plain text on stdout cannot be unwrapped."""
        runner = ClaudeRunner(claude_path="claude")

        with patch(
            "taskforge.agent.asyncio.create_subprocess_exec",
            AsyncMock(return_value=make_process(stdout="Hello")),
        ):
            with pytest.raises(MalformedOutputError):
                await run_default(runner, tmp_path)


class TestClaudeRunnerRunJson:
    """Tests for ClaudeRunner.run_json()."""

    @pytest.mark.asyncio
    async def test_returns_embedded_object(self, tmp_path: Path) -> None:
        """The JSON inside the envelope's result text is returned."""
        runner = ClaudeRunner(claude_path="claude")
        result_text = 'Analysis done.\n```json\n{"plan": "x", "relevant_files": ["a.py"]}\n```'

        with patch(
            "taskforge.agent.asyncio.create_subprocess_exec",
            AsyncMock(return_value=make_process(stdout=envelope(result_text))),
        ):
            data = await runner.run_json(
                "Analyze",
                model="sonnet",
                cwd=tmp_path,
                allowed_tools=["Read"],
                timeout=5,
            )

        assert data == {"plan": "x", "relevant_files": ["a.py"]}
