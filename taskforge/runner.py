"""Task orchestration.

The Orchestrator drives each task through triage, optional consult,
implementation, integration (commit check, rebase, tests) and review,
writing every status transition to the state store before moving on.
Tasks run concurrently; a shared semaphore bounds how many agent
invocations are in flight at once. The permit is held only for the agent
call itself, so git and filesystem work never occupies a slot.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, TypeVar

import structlog
from opentelemetry import trace

from taskforge import telemetry
from taskforge.agent import ClaudeRunner
from taskforge.clarification import AnswerContext, ClarificationChannel
from taskforge.config import ForgeConfig
from taskforge.errors import (
    AgentError,
    ForgeError,
    GitError,
    MalformedOutputError,
    RebaseConflictError,
    SourceError,
)
from taskforge.models import NeedsClarification, ReviewResult, Task, TriageResult
from taskforge.stages import consult, implement, review, triage
from taskforge.state import StateStore, TaskRecord, TaskStatus
from taskforge.workspace import WorkspaceManager

logger = structlog.get_logger(__name__)

T = TypeVar("T")

BRANCH_PREFIX = "forge/"


class TaskSource(Protocol):
    """Where tasks come from and where outcomes are reported."""

    async def fetch_open(self, store: StateStore) -> list[Task]: ...

    async def fetch(self, task_id: str) -> Task | None: ...

    async def report(self, task: Task, record: TaskRecord) -> None: ...


@dataclass
class RunSummary:
    """Final status of every task a run_once() call processed."""

    statuses: dict[str, TaskStatus] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    def count(self, *statuses: TaskStatus) -> int:
        return sum(1 for status in self.statuses.values() if status in statuses)

    @property
    def completed(self) -> int:
        return self.count(TaskStatus.SUCCESS)

    @property
    def needs_clarification(self) -> int:
        return self.count(TaskStatus.NEEDS_CLARIFICATION)

    @property
    def failed(self) -> int:
        return self.count(TaskStatus.ERROR, TaskStatus.TEST_FAILURE)

    def __str__(self) -> str:
        return (
            f"processed={len(self.statuses)}, completed={self.completed}, "
            f"needs_clarification={self.needs_clarification}, failed={self.failed}, "
            f"skipped={len(self.skipped)}"
        )


@dataclass
class _Progress:
    stage: str = "triage"


class Orchestrator:
    """Runs batches of tasks through the pipeline.

    Args:
        config: Orchestrator configuration
        store: State store; the only place task status is written
        channel: Clarification channel for paused tasks
        workspace: Worktree manager for the repository
        runner: Claude Code runner shared by all stages
        tracer: Optional OpenTelemetry tracer; defaults to the global one
    """

    def __init__(
        self,
        config: ForgeConfig,
        store: StateStore,
        channel: ClarificationChannel,
        workspace: WorkspaceManager,
        runner: ClaudeRunner,
        tracer: trace.Tracer | None = None,
    ):
        self.config = config
        self.store = store
        self.channel = channel
        self.workspace = workspace
        self.runner = runner
        self.tracer = tracer or trace.get_tracer("taskforge")
        self._permits = asyncio.Semaphore(config.parallel_workers)
        self._in_flight: set[str] = set()

    async def run_once(self, tasks: list[Task], resume: bool = False) -> RunSummary:
        """Process a batch until every task is terminal or paused.

        Args:
            tasks: Tasks to consider; duplicates by id are ignored
            resume: Also reprocess tasks whose last run ended in Error or TestFailure

        Returns:
            RunSummary with the final status of each processed task
        """
        summary = RunSummary()
        selected: list[tuple[Task, AnswerContext | None]] = []
        seen: set[str] = set()

        for task in tasks:
            if task.id in seen:
                continue
            seen.add(task.id)
            if task.id in self._in_flight:
                logger.debug("Task already in flight", task_id=task.id)
                summary.skipped.append(task.id)
                continue
            eligible, answer = self._select(task, resume)
            if not eligible:
                summary.skipped.append(task.id)
                continue
            selected.append((task, answer))

        if not selected:
            logger.info("No eligible tasks", skipped=len(summary.skipped))
            return summary

        logger.info(
            "Starting run",
            tasks=len(selected),
            skipped=len(summary.skipped),
            parallel_workers=self.config.parallel_workers,
        )
        with self.tracer.start_as_current_span("taskforge.run") as span:
            span.set_attribute("run.tasks", len(selected))
            results = await asyncio.gather(
                *(self._run_task(task, answer) for task, answer in selected)
            )

        summary.statuses.update(results)
        logger.info("Run finished", summary=str(summary))
        return summary

    def _select(self, task: Task, resume: bool) -> tuple[bool, AnswerContext | None]:
        record = self.store.get(task.id)
        if record is not None:
            status = record.status
            if status == TaskStatus.SUCCESS:
                return False, None
            if status == TaskStatus.NEEDS_CLARIFICATION:
                answer = self.channel.check_answer(task.id)
                if answer is None:
                    return False, None
                self.store.reset_to_pending(task.id)
                return True, answer
            if status in (TaskStatus.ERROR, TaskStatus.TEST_FAILURE) and not resume:
                return False, None

        # A task reset to Pending before a crash still carries its answer
        return True, self.channel.check_answer(task.id)

    async def _run_task(
        self, task: Task, answer: AnswerContext | None
    ) -> tuple[str, TaskStatus]:
        self._in_flight.add(task.id)
        try:
            with self.tracer.start_as_current_span("taskforge.task") as span:
                span.set_attribute("task.id", task.id)
                status = await self.process_task(task, answer)
                span.set_attribute("task.status", status.value)
        finally:
            self._in_flight.discard(task.id)

        telemetry.tasks_counter.add(1, {"status": status.value})
        return task.id, status

    async def process_task(
        self, task: Task, answer: AnswerContext | None = None
    ) -> TaskStatus:
        """Run one task through the pipeline and return its final status.

        Failures are recorded against the task and never propagate, so one
        task cannot abort the batch.
        """
        progress = _Progress()
        try:
            status = await self._pipeline(task, answer, progress)
        except ForgeError as e:
            self.store.set_error(task.id, f"{progress.stage} failed: {e}")
            status = TaskStatus.ERROR
        except Exception as e:
            logger.exception(
                "Unexpected error processing task", task_id=task.id, stage=progress.stage
            )
            self.store.set_error(task.id, f"{progress.stage} failed: {e}")
            status = TaskStatus.ERROR

        if status.is_terminal and status != TaskStatus.NEEDS_CLARIFICATION:
            await asyncio.to_thread(self.channel.cleanup, task.id)
        return status

    async def _call_agent(
        self, task: Task, stage: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        with self.tracer.start_as_current_span(f"taskforge.stage.{stage}") as span:
            span.set_attribute("task.id", task.id)
            async with self._permits:
                return await call()

    async def _pipeline(
        self, task: Task, answer: AnswerContext | None, progress: _Progress
    ) -> TaskStatus:
        config = self.config
        self.store.set_status(task.id, task.title, TaskStatus.TRIAGING)
        self.store.set_started(task.id)

        progress.stage = "triage"
        plan = await self._call_agent(
            task,
            "triage",
            lambda: triage(task, self.runner, config, config.repo_path, answer),
        )

        if not plan.is_sufficient():
            progress.stage = "consult"
            outcome = await self._call_agent(
                task,
                "consult",
                lambda: consult(task, plan, self.runner, config, config.repo_path),
            )
            if isinstance(outcome, NeedsClarification):
                await asyncio.to_thread(
                    self.channel.write_question, task, plan, outcome.message
                )
                self.store.set_status(task.id, task.title, TaskStatus.NEEDS_CLARIFICATION)
                telemetry.clarifications_counter.add(1)
                return TaskStatus.NEEDS_CLARIFICATION
            plan = outcome.result

        progress.stage = "workspace"
        branch = task.branch_name
        self.store.set_branch(task.id, branch)
        path = await asyncio.to_thread(self.workspace.create, branch, config.base_branch)
        self.store.set_status(task.id, task.title, TaskStatus.EXECUTING)

        return await self._execute(task, plan, path, progress)

    async def _execute(
        self, task: Task, plan: TriageResult, path: Path, progress: _Progress
    ) -> TaskStatus:
        config = self.config
        base = config.base_branch
        feedback: ReviewResult | None = None

        for attempt in range(1, config.max_attempts + 1):
            logger.info(
                "Implementation attempt",
                task_id=task.id,
                attempt=attempt,
                max_attempts=config.max_attempts,
            )
            progress.stage = "implement"
            previous = feedback
            await self._call_agent(
                task,
                "implement",
                lambda: implement(task, plan, self.runner, config, path, previous),
            )

            progress.stage = "integrate"
            commits = await asyncio.to_thread(self.workspace.commit_count, path, base)
            if commits == 0:
                self.store.set_error(task.id, "no commits produced")
                return TaskStatus.ERROR

            try:
                await asyncio.to_thread(self.workspace.rebase, path, base)
            except RebaseConflictError as e:
                logger.warning(
                    "Rebase conflict, branch left as-is", task_id=task.id, branch=task.branch_name
                )
                self.store.set_error(task.id, f"rebase conflict: {e}")
                return TaskStatus.ERROR

            if config.test_command:
                progress.stage = "test"
                run = await asyncio.to_thread(
                    self.workspace.run_tests, path, config.test_command
                )
                if not run.passed:
                    self.store.set_error(
                        task.id, f"tests failed: {run.tail}", status=TaskStatus.TEST_FAILURE
                    )
                    return TaskStatus.TEST_FAILURE

            progress.stage = "review"
            diff = await asyncio.to_thread(self.workspace.diff, path, base)
            verdict = await self._review(task, plan, diff, path)

            if verdict.approved:
                if config.push_on_success:
                    progress.stage = "push"
                    await asyncio.to_thread(self.workspace.push, path, task.branch_name)
                self.store.set_status(task.id, task.title, TaskStatus.SUCCESS)
                return TaskStatus.SUCCESS

            telemetry.review_rejections_counter.add(1)
            logger.info(
                "Review rejected",
                task_id=task.id,
                attempt=attempt,
                issues=verdict.issues,
            )
            feedback = verdict

        issues = "; ".join(feedback.issues) if feedback else ""
        self.store.set_error(
            task.id, f"review rejected after {config.max_attempts} attempts: {issues}"
        )
        return TaskStatus.ERROR

    async def _review(
        self, task: Task, plan: TriageResult, diff: str, path: Path
    ) -> ReviewResult:
        try:
            return await self._call_agent(
                task,
                "review",
                lambda: review(task, plan, diff, self.runner, self.config, path),
            )
        except MalformedOutputError:
            raise
        except AgentError as e:
            if not self.config.review_fail_open:
                raise
            logger.warning(
                "Review could not run, treating as approved", task_id=task.id, error=str(e)
            )
            telemetry.review_fail_open_counter.add(1)
            return ReviewResult(approved=True)

    async def watch(
        self, source: TaskSource, stop_event: asyncio.Event, resume: bool = False
    ) -> None:
        """Gather and run tasks every poll interval until stop_event is set.

        resume applies to the first cycle only; later cycles leave failed
        tasks alone so they are not retried on every poll.
        """
        cycle = 0
        while not stop_event.is_set():
            cycle += 1
            try:
                tasks = await gather_tasks(
                    source, self.store, self.channel, resume=resume and cycle == 1
                )
            except SourceError as e:
                logger.error("Failed to fetch tasks", error=str(e))
                tasks = []

            if tasks:
                await self.run_once(tasks, resume=resume and cycle == 1)
                await report_outcomes(source, self.store, tasks)
            else:
                logger.info("No tasks to process", cycle=cycle)

            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self.config.poll_interval_secs
                )
            except asyncio.TimeoutError:
                pass

        logger.info("Watch loop stopped", cycles=cycle)


async def gather_tasks(
    source: TaskSource,
    store: StateStore,
    channel: ClarificationChannel,
    resume: bool = False,
) -> list[Task]:
    """Collect the tasks a run should consider.

    Open tasks that are not terminal, paused tasks whose question has been
    answered, and with resume, tasks left failed or interrupted.
    """
    tasks = await source.fetch_open(store)
    seen = {task.id for task in tasks}

    extra_ids = [
        task_id for task_id in store.needs_clarification_ids() if channel.has_answer(task_id)
    ]
    if resume:
        extra_ids.extend(store.resumable_ids())

    for task_id in extra_ids:
        if task_id in seen:
            continue
        try:
            task = await source.fetch(task_id)
        except SourceError as e:
            logger.warning("Failed to fetch task", task_id=task_id, error=str(e))
            continue
        if task is None:
            logger.warning("Task no longer exists at its source", task_id=task_id)
            continue
        tasks.append(task)
        seen.add(task_id)

    return tasks


async def report_outcomes(source: TaskSource, store: StateStore, tasks: list[Task]) -> None:
    """Report terminal outcomes of tasks back to their source."""
    for task in tasks:
        record = store.get(task.id)
        if record is None or not record.status.is_terminal:
            continue
        try:
            await source.report(task, record)
        except SourceError as e:
            logger.warning("Failed to report task outcome", task_id=task.id, error=str(e))


def cleanup_worktrees(
    store: StateStore, workspace: WorkspaceManager, delete_branches: bool = False
) -> list[Path]:
    """Remove worktrees of tasks that have finished.

    A worktree is removed only when its branch maps to a task the store
    marks terminal. Tasks waiting on clarification and worktrees the store
    knows nothing about are kept. With delete_branches the local task
    branch is deleted too.
    """
    records = store.records()
    root = workspace.worktree_dir.resolve()
    removed: list[Path] = []

    for path in workspace.list():
        branch = path.resolve().relative_to(root).as_posix()
        if not branch.startswith(BRANCH_PREFIX):
            continue
        record = records.get(branch[len(BRANCH_PREFIX) :])
        if record is None or not record.status.is_terminal:
            continue
        if record.status == TaskStatus.NEEDS_CLARIFICATION:
            continue
        try:
            workspace.remove(path)
        except GitError as e:
            logger.warning("Failed to remove worktree", path=str(path), error=str(e))
            continue
        removed.append(path)
        if delete_branches:
            try:
                workspace.delete_branch(branch)
            except GitError as e:
                logger.warning("Failed to delete branch", branch=branch, error=str(e))

    logger.info("Cleaned up worktrees", removed=len(removed))
    return removed
