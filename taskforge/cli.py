"""CLI for taskforge.

Provides commands to run the orchestrator once or continuously, inspect
task state, answer clarification questions and clean up worktrees.
"""

import asyncio
import functools
import logging
import signal
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from taskforge import operator
from taskforge.agent import ClaudeRunner
from taskforge.clarification import ClarificationChannel
from taskforge.config import ForgeConfig
from taskforge.errors import ForgeError
from taskforge.lock import RunLock
from taskforge.logging_config import configure_logging
from taskforge.runner import (
    Orchestrator,
    TaskSource,
    cleanup_worktrees,
    gather_tasks,
    report_outcomes,
)
from taskforge.sources import GitHubIssueSource, LocalTaskSource
from taskforge.state import StateStore, TaskStatus
from taskforge.telemetry import setup_telemetry
from taskforge.workspace import WorkspaceManager

console = Console()

DEFAULT_CONFIG = Path(".taskforge/config.yaml")

STATUS_COLORS = {
    TaskStatus.PENDING: "white",
    TaskStatus.TRIAGING: "cyan",
    TaskStatus.EXECUTING: "cyan",
    TaskStatus.NEEDS_CLARIFICATION: "yellow",
    TaskStatus.SUCCESS: "green",
    TaskStatus.TEST_FAILURE: "red",
    TaskStatus.ERROR: "red",
}


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Print taskforge errors as one line and exit with status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ForgeError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)

    return wrapper


def _config(ctx: click.Context) -> ForgeConfig:
    if "config" not in ctx.obj:
        ctx.obj["config"] = ForgeConfig.load(ctx.obj["config_path"])
    return ctx.obj["config"]


def _source(config: ForgeConfig) -> TaskSource:
    if config.github.repo:
        return GitHubIssueSource(config.github)
    return LocalTaskSource(config.tasks_dir)


def _orchestrator(config: ForgeConfig, store: StateStore) -> Orchestrator:
    tracer, _ = setup_telemetry(config)
    return Orchestrator(
        config=config,
        store=store,
        channel=ClarificationChannel(config.clarification_dir),
        workspace=WorkspaceManager(config.repo_path, config.worktree_dir, config.remote),
        runner=ClaudeRunner(),
        tracer=tracer,
    )


async def _close(source: TaskSource) -> None:
    if isinstance(source, GitHubIssueSource):
        await source.aclose()


@click.group()
@click.version_option(package_name="taskforge")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG,
    show_default=True,
    help="YAML config file (missing file means defaults)",
)
@click.option("--log-json", is_flag=True, help="Emit logs as JSON lines")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write DEBUG logs to this file (rotated)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path,
    log_json: bool,
    log_file: Path | None,
    verbose: bool,
) -> None:
    """taskforge - resolve repository tasks with Claude Code agents."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    configure_logging(
        level=logging.DEBUG if verbose else logging.INFO,
        json_output=log_json,
        log_file=log_file,
    )


@cli.command()
@click.option("--resume", is_flag=True, help="Also retry tasks that failed or were interrupted")
@click.pass_context
@handle_errors
def run(ctx: click.Context, resume: bool) -> None:
    """Process all open tasks once."""
    config = _config(ctx)
    with RunLock(config.state_file):
        asyncio.run(_run_once(config, resume))


async def _run_once(config: ForgeConfig, resume: bool) -> None:
    store = StateStore.load(config.state_file)
    orchestrator = _orchestrator(config, store)
    source = _source(config)
    try:
        tasks = await gather_tasks(source, store, orchestrator.channel, resume=resume)
        if not tasks:
            console.print("[yellow]No tasks to process[/yellow]")
            return
        console.print(f"[bold]Processing {len(tasks)} task(s)[/bold]")
        summary = await orchestrator.run_once(tasks, resume=resume)
        await report_outcomes(source, store, tasks)
    finally:
        await _close(source)

    for task_id, status in sorted(summary.statuses.items()):
        color = STATUS_COLORS[status]
        console.print(f"Task {task_id}: [bold {color}]{status.value.upper()}[/bold {color}]")
    console.print(f"\n{summary}")


@cli.command()
@click.option("--resume", is_flag=True, help="Retry failed or interrupted tasks on the first cycle")
@click.pass_context
@handle_errors
def watch(ctx: click.Context, resume: bool) -> None:
    """Poll for tasks and process them until interrupted."""
    config = _config(ctx)
    with RunLock(config.state_file):
        asyncio.run(_watch(config, resume))


async def _watch(config: ForgeConfig, resume: bool) -> None:
    store = StateStore.load(config.state_file)
    orchestrator = _orchestrator(config, store)
    source = _source(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    console.print(
        f"[bold]Watching for tasks[/bold] every {config.poll_interval_secs}s "
        "(Ctrl+C to stop after the current cycle)"
    )
    try:
        await orchestrator.watch(source, stop_event, resume=resume)
    finally:
        await _close(source)


@cli.command()
@click.pass_context
@handle_errors
def status(ctx: click.Context) -> None:
    """Show task counts and per-task status."""
    config = _config(ctx)
    store = StateStore.load(config.state_file)
    records = store.records()

    if not records:
        console.print("[yellow]No tasks recorded yet[/yellow]")
        return

    table = Table(title="Tasks")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Branch")
    table.add_column("Error")

    for task_id, record in sorted(records.items()):
        color = STATUS_COLORS[record.status]
        table.add_row(
            task_id,
            record.title,
            f"[{color}]{record.status.value}[/{color}]",
            record.branch or "-",
            record.error or "",
        )

    console.print(table)
    console.print(str(store.summary()))


@cli.command()
@click.pass_context
@handle_errors
def clarifications(ctx: click.Context) -> None:
    """List questions waiting for an answer."""
    config = _config(ctx)
    pending = ClarificationChannel(config.clarification_dir).list_pending()

    if not pending:
        console.print("No pending clarifications")
        return

    for clarification in pending:
        console.rule(f"Task {clarification.task_id}")
        console.print(clarification.questions or "(no questions recorded)")
    console.print(
        f"\nAnswer with: taskforge answer <id> <text>  "
        f"(questions in {config.clarification_dir})"
    )


@cli.command()
@click.argument("task_id")
@click.argument("text", required=False)
@click.option(
    "--file",
    "answer_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Read the answer from a file",
)
@click.pass_context
@handle_errors
def answer(ctx: click.Context, task_id: str, text: str | None, answer_file: Path | None) -> None:
    """Answer a clarification question. The task is retried on the next run."""
    if answer_file is not None:
        text = answer_file.read_text()
    if not text or not text.strip():
        raise click.UsageError("Provide the answer as TEXT or with --file")

    config = _config(ctx)
    channel = ClarificationChannel(config.clarification_dir)
    if not channel.question_path(task_id).exists():
        console.print(f"[yellow]No question is pending for task {task_id}[/yellow]")
    path = channel.write_answer(task_id, text)
    console.print(f"Answer for task {task_id} written to {path}")


@cli.command()
@click.option(
    "--delete-branches", is_flag=True, help="Also delete the local branch of each removed worktree"
)
@click.pass_context
@handle_errors
def clean(ctx: click.Context, delete_branches: bool) -> None:
    """Remove worktrees of finished tasks."""
    config = _config(ctx)
    with RunLock(config.state_file):
        store = StateStore.load(config.state_file)
        workspace = WorkspaceManager(config.repo_path, config.worktree_dir, config.remote)
        removed = cleanup_worktrees(store, workspace, delete_branches)

    for path in removed:
        console.print(f"Removed {path}")
    console.print(f"{len(removed)} worktree(s) removed")


@cli.command(name="operator")
@click.option(
    "-m",
    "--model",
    type=click.Choice(["haiku", "sonnet", "opus"]),
    default=None,
    help="Claude model for the operator session",
)
@click.pass_context
@handle_errors
def operator_command(ctx: click.Context, model: str | None) -> None:
    """Open an interactive Claude Code session for operating taskforge."""
    config = _config(ctx)
    store = StateStore.load(config.state_file)
    operator.launch(store, ClarificationChannel(config.clarification_dir), model)


@cli.command()
@click.argument("title")
@click.argument("body")
@click.option("--label", "-l", "labels", multiple=True, help="Label to attach (repeatable)")
@click.pass_context
@handle_errors
def create(ctx: click.Context, title: str, body: str, labels: tuple[str, ...]) -> None:
    """Create a local task file."""
    config = _config(ctx)
    task = LocalTaskSource(config.tasks_dir).create(title, body, labels)
    console.print(f"Created task {task.id}: {task.title}")


def main() -> None:
    """Main entry point for the taskforge CLI."""
    cli()


if __name__ == "__main__":
    main()
