"""Interactive operator session.

Replaces the current process with an interactive Claude Code session that
knows how to drive the taskforge CLI. Nothing runs after the hand-off.
"""

import os

import structlog

from taskforge.agent import NESTED_SESSION_VARS, find_claude_cli, resolve_model
from taskforge.clarification import ClarificationChannel
from taskforge.errors import AgentError
from taskforge.prompts import OPERATOR_PROMPT
from taskforge.state import StateStore

logger = structlog.get_logger(__name__)


def build_initial_message(store: StateStore, channel: ClarificationChannel) -> str:
    """Opening message for the operator: state summary and pending questions."""
    message = f"Current state: {store.summary()}\n"

    pending = channel.list_pending()
    if pending:
        message += "\nThere are pending clarification questions:\n\n"
        for clarification in pending:
            message += f"### {clarification.task_id}\n{clarification.questions}\n\n"
        message += "Please present these questions to the user and help resolve them."
    else:
        message += (
            "\nNo pending clarifications. You can run `taskforge run` to process "
            "new tasks or `taskforge status` to check on existing ones."
        )
    return message


def build_operator_args(claude_path: str, initial_message: str, model: str | None = None) -> list[str]:
    args = [
        claude_path,
        "--append-system-prompt",
        OPERATOR_PROMPT,
        "--allowedTools",
        "Bash",
    ]
    if model:
        args.extend(["--model", resolve_model(model)])
    args.append(initial_message)
    return args


def launch(store: StateStore, channel: ClarificationChannel, model: str | None = None) -> None:
    """Exec an interactive claude session. Does not return on success.

    Raises:
        AgentError: If the claude executable cannot be found or exec fails
    """
    claude_path = find_claude_cli()
    if claude_path is None:
        raise AgentError("claude CLI not found on PATH")

    args = build_operator_args(claude_path, build_initial_message(store, channel), model)
    for name in NESTED_SESSION_VARS:
        os.environ.pop(name, None)

    logger.info("Launching operator session", model=model)
    try:
        os.execvp(claude_path, args)
    except OSError as e:
        raise AgentError(f"failed to exec claude: {e}") from e
