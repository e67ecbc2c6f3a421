"""Claude Code invocation.

Runs the claude CLI in print mode as a subprocess with a role-specific
system prompt, model, tool allowlist and timeout, and unwraps the JSON
envelope it prints. Agents often wrap their JSON answer in prose or
markdown fences, so extract_json() digs the object out before parsing.
"""

import asyncio
import json
import os
import shutil
import time
from pathlib import Path
from typing import Any

import structlog

from taskforge import telemetry
from taskforge.config import ModelSettings
from taskforge.errors import AgentError, AgentTimeoutError, MalformedOutputError
from taskforge.models import ClaudeResult, Complexity

logger = structlog.get_logger(__name__)

MODEL_ALIASES = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-6",
}

DEFAULT_MODEL = MODEL_ALIASES["sonnet"]

# Env vars that make claude refuse to start inside another claude session
NESTED_SESSION_VARS = ("CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT")

# Cache for the Claude CLI path
_claude_cli_path: str | None = None


def find_claude_cli() -> str | None:
    """Find the Claude CLI executable.

    Checks:
    1. shutil.which("claude") - standard PATH lookup
    2. ~/.claude/local/claude - common installation location

    Returns:
        Path to the Claude CLI, or None if not found.
    """
    global _claude_cli_path

    if _claude_cli_path is not None:
        return _claude_cli_path

    path_result = shutil.which("claude")
    if path_result:
        _claude_cli_path = path_result
        return _claude_cli_path

    home = Path.home()
    for location in (home / ".claude" / "local" / "claude", home / ".claude" / "bin" / "claude"):
        if location.exists() and os.access(location, os.X_OK):
            _claude_cli_path = str(location)
            return _claude_cli_path

    return None


def resolve_model(name: str) -> str:
    """Map a model alias to a full model id.

    Full claude-* ids pass through; anything unrecognised falls back to sonnet.
    """
    normalized = name.strip().lower()
    if normalized in MODEL_ALIASES:
        return MODEL_ALIASES[normalized]
    if normalized.startswith("claude-"):
        return name.strip()
    logger.warning("Unknown model name, using default", model=name, default=DEFAULT_MODEL)
    return DEFAULT_MODEL


def select_model(complexity: Complexity, models: ModelSettings) -> str:
    """Pick the model tier for a task: LOW/MEDIUM -> default, HIGH -> complex."""
    if complexity == Complexity.HIGH:
        return resolve_model(models.complex)
    return resolve_model(models.default)


def extract_json(text: str) -> str:
    """Extract a JSON document from agent output text.

    Tries, in order: a ```json fenced block, any fenced block (skipping the
    language tag line), the span from the first '{' to the last '}', and
    finally the trimmed text itself.
    """
    start = text.find("```json")
    if start != -1:
        body_start = start + len("```json")
        end = text.find("```", body_start)
        if end != -1:
            return text[body_start:end].strip()

    start = text.find("```")
    if start != -1:
        body_start = start + 3
        newline = text.find("\n", body_start)
        if newline != -1:
            body_start = newline + 1
        end = text.find("```", body_start)
        if end != -1:
            return text[body_start:end].strip()

    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        return text[first : last + 1]

    return text.strip()


class ClaudeRunner:
    """Runs Claude Code in print mode and returns its result envelope.

    Usage:
        runner = ClaudeRunner()
        result = await runner.run(
            "Fix the bug", system_prompt=IMPLEMENT_PROMPT, model="sonnet",
            cwd=worktree, allowed_tools=["Read", "Edit"], timeout=600,
        )
    """

    def __init__(self, claude_path: str | None = None):
        self.claude_path = claude_path or find_claude_cli() or "claude"

    def build_args(
        self,
        model: str,
        allowed_tools: list[str],
        system_prompt: str | None = None,
    ) -> list[str]:
        args = [
            self.claude_path,
            "-p",
            "--model",
            resolve_model(model),
            "--output-format",
            "json",
            "--allowedTools",
            ",".join(allowed_tools),
        ]
        if system_prompt:
            args.extend(["--append-system-prompt", system_prompt])
        return args

    @staticmethod
    def build_env() -> dict[str, str]:
        env = dict(os.environ)
        for name in NESTED_SESSION_VARS:
            env.pop(name, None)
        return env

    async def run(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        model: str = "sonnet",
        cwd: Path,
        allowed_tools: list[str],
        timeout: float,
        role: str = "agent",
    ) -> ClaudeResult:
        """Run one agent invocation and return the parsed envelope.

        Raises:
            AgentTimeoutError: If the process outlives the timeout; it is killed
            AgentError: If the process can't start, exits non-zero or reports is_error
            MalformedOutputError: If stdout is not a JSON envelope
        """
        args = self.build_args(model, allowed_tools, system_prompt)
        logger.info(
            "Invoking Claude Code",
            role=role,
            model=args[3],
            cwd=str(cwd),
            timeout=timeout,
        )
        started = time.monotonic()

        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *args,
                    cwd=cwd,
                    env=self.build_env(),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                logger.error("Failed to start Claude Code process", role=role, error=str(e))
                raise AgentError(f"failed to start claude: {e}") from e

            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(prompt.encode("utf-8")),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.error("Claude Code invocation timed out", role=role, timeout=timeout)
                process.kill()
                await process.wait()
                raise AgentTimeoutError(timeout) from None

            stdout_str = stdout.decode("utf-8", errors="replace")
            stderr_str = stderr.decode("utf-8", errors="replace")

            if process.returncode != 0:
                logger.error(
                    "Claude Code invocation failed",
                    role=role,
                    exit_code=process.returncode,
                    stderr=stderr_str.strip(),
                )
                raise AgentError(
                    f"claude exited with {process.returncode}: {stderr_str.strip()}"
                )

            try:
                envelope = json.loads(stdout_str)
            except json.JSONDecodeError as e:
                raise MalformedOutputError(
                    f"failed to parse claude output as JSON: {e}"
                ) from e
            if not isinstance(envelope, dict):
                raise MalformedOutputError("claude output is not a JSON object")

            result = ClaudeResult.from_envelope(envelope)
            if result.is_error:
                raise AgentError(f"claude reported an error: {result.result[:500]}")
        except AgentError as e:
            outcome = "timeout" if isinstance(e, AgentTimeoutError) else "error"
            telemetry.agent_calls_counter.add(1, {"role": role, "outcome": outcome})
            raise
        finally:
            telemetry.agent_duration.record(time.monotonic() - started, {"role": role})

        telemetry.agent_calls_counter.add(1, {"role": role, "outcome": "success"})
        telemetry.cost_counter.add(result.total_cost_usd, {"role": role})
        logger.info(
            "Claude Code invocation completed",
            role=role,
            cost_usd=result.total_cost_usd,
            turns=result.num_turns,
            duration_ms=result.duration_ms,
        )
        return result

    async def run_json(self, prompt: str, **kwargs: Any) -> dict[str, Any]:
        """Run an invocation and parse the JSON object embedded in its result.

        Raises:
            MalformedOutputError: If the result text holds no JSON object
        """
        result = await self.run(prompt, **kwargs)
        return parse_result_json(result.result)


def parse_result_json(text: str) -> dict[str, Any]:
    extracted = extract_json(text)
    try:
        data = json.loads(extracted)
    except json.JSONDecodeError as e:
        raise MalformedOutputError(f"failed to parse agent result as JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedOutputError(
            f"agent result must be a JSON object, got {type(data).__name__}"
        )
    return data
