"""Pipeline stages.

Each stage turns a task (plus whatever earlier stages produced) into one
outcome by invoking Claude Code once. Stages do not touch the state store,
the workspace or the clarification channel; sequencing them is the
orchestrator's job.
"""

from pathlib import Path

import structlog

from taskforge.agent import ClaudeRunner, resolve_model, select_model
from taskforge.clarification import AnswerContext
from taskforge.config import ForgeConfig
from taskforge.models import (
    ClaudeResult,
    EscalationOutcome,
    NeedsClarification,
    Resolved,
    ReviewResult,
    Task,
    TriageResult,
)
from taskforge.prompts import CONSULT_PROMPT, IMPLEMENT_PROMPT, REVIEW_PROMPT, TRIAGE_PROMPT

logger = structlog.get_logger(__name__)

MAX_DIFF_CHARS = 50_000
DEFAULT_CLARIFICATION = "Unable to determine implementation plan"


def _task_header(task: Task) -> str:
    return f"## Task {task.id}: {task.title}\n\n{task.body}".rstrip()


def _analysis_lines(result: TriageResult) -> str:
    return (
        f"- Plan: {result.plan}\n"
        f"- Relevant files: {', '.join(result.relevant_files)}\n"
        f"- Steps: {'; '.join(result.implementation_steps)}\n"
        f"- Context: {result.context}"
    )


def build_triage_prompt(task: Task, clarification: AnswerContext | None = None) -> str:
    prompt = _task_header(task)
    if task.labels:
        prompt += f"\n\nLabels: {', '.join(task.labels)}"
    if clarification is not None:
        prompt += (
            "\n\n## Previous Analysis (from prior analysis attempt)\n"
            f"{_analysis_lines(clarification.previous_analysis)}\n\n"
            "## Questions asked\n"
            f"{clarification.questions}\n\n"
            "## Clarification from maintainer\n"
            f"{clarification.answer.strip()}\n\n"
            "Use the previous analysis as a starting point. The clarification above "
            "resolves the questions from the prior attempt. Update the plan accordingly."
        )
    return prompt


def build_consult_prompt(task: Task, previous: TriageResult) -> str:
    return (
        f"{_task_header(task)}\n\n"
        "## Previous triage attempt (insufficient)\n"
        f"{_analysis_lines(previous)}"
    )


def build_implement_prompt(
    task: Task, plan: TriageResult, feedback: ReviewResult | None = None
) -> str:
    steps = "\n".join(
        f"{number}. {step}" for number, step in enumerate(plan.implementation_steps, 1)
    )
    files = "\n".join(f"- {path}" for path in plan.relevant_files)
    prompt = (
        f"{_task_header(task)}\n\n"
        f"## Plan\n\n{plan.plan}\n\n"
        f"## Relevant Files\n\n{files}\n\n"
        f"## Steps\n\n{steps}"
    )
    if plan.context:
        prompt += f"\n\n## Context\n\n{plan.context}"

    if feedback is not None:
        prompt += (
            "\n\n## Previous Review Feedback\n\n"
            "The previous implementation was rejected. Address the following:\n"
        )
        if feedback.issues:
            prompt += "\n### Issues\n" + "".join(f"- {issue}\n" for issue in feedback.issues)
        if feedback.suggestions:
            prompt += "\n### Suggestions\n" + "".join(
                f"- {suggestion}\n" for suggestion in feedback.suggestions
            )
    return prompt


def build_review_prompt(task: Task, plan: TriageResult, diff: str) -> str:
    if len(diff) > MAX_DIFF_CHARS:
        diff = diff[:MAX_DIFF_CHARS]
    return (
        f"{_task_header(task)}\n\n"
        f"## Implementation Plan\n\n{plan.plan}\n\n"
        f"## Diff\n\n```\n{diff}\n```"
    )


async def triage(
    task: Task,
    runner: ClaudeRunner,
    config: ForgeConfig,
    cwd: Path,
    clarification: AnswerContext | None = None,
) -> TriageResult:
    """Analyze a task read-only and produce a plan."""
    logger.info("Triaging task", task_id=task.id, with_answer=clarification is not None)
    data = await runner.run_json(
        build_triage_prompt(task, clarification),
        system_prompt=TRIAGE_PROMPT,
        model=resolve_model(config.models.triage),
        cwd=cwd,
        allowed_tools=config.triage_tools,
        timeout=config.triage_timeout_secs,
        role="triage",
    )
    result = TriageResult.from_dict(data)
    logger.info(
        "Triage finished",
        task_id=task.id,
        complexity=result.complexity.value,
        files=len(result.relevant_files),
        steps=len(result.implementation_steps),
        sufficient=result.is_sufficient(),
    )
    return result


async def consult(
    task: Task,
    previous: TriageResult,
    runner: ClaudeRunner,
    config: ForgeConfig,
    cwd: Path,
) -> EscalationOutcome:
    """Second analysis pass on the complex tier after insufficient triage.

    A resolved answer that is itself insufficient is treated as a request
    for clarification, so the pipeline never implements an incomplete plan.
    """
    logger.info("Consulting on task", task_id=task.id)
    data = await runner.run_json(
        build_consult_prompt(task, previous),
        system_prompt=CONSULT_PROMPT,
        model=resolve_model(config.models.complex),
        cwd=cwd,
        allowed_tools=config.triage_tools,
        timeout=config.triage_timeout_secs,
        role="consult",
    )

    if data.get("status") == "resolved":
        result = TriageResult.from_dict(data)
        if result.is_sufficient():
            logger.info(
                "Consult resolved task", task_id=task.id, files=len(result.relevant_files)
            )
            return Resolved(result)
        logger.warning("Consult resolved with an incomplete plan", task_id=task.id)
        return NeedsClarification(DEFAULT_CLARIFICATION)

    message = data.get("message")
    if not isinstance(message, str) or not message.strip():
        message = DEFAULT_CLARIFICATION
    logger.info("Consult needs clarification", task_id=task.id)
    return NeedsClarification(message.strip())


async def implement(
    task: Task,
    plan: TriageResult,
    runner: ClaudeRunner,
    config: ForgeConfig,
    cwd: Path,
    feedback: ReviewResult | None = None,
) -> ClaudeResult:
    """Let the agent change and commit code in the task's worktree."""
    model = select_model(plan.complexity, config.models)
    logger.info(
        "Implementing task",
        task_id=task.id,
        model=model,
        retry=feedback is not None,
    )
    return await runner.run(
        build_implement_prompt(task, plan, feedback),
        system_prompt=IMPLEMENT_PROMPT,
        model=model,
        cwd=cwd,
        allowed_tools=config.worker_tools,
        timeout=config.worker_timeout_secs,
        role="implement",
    )


async def review(
    task: Task,
    plan: TriageResult,
    diff: str,
    runner: ClaudeRunner,
    config: ForgeConfig,
    cwd: Path,
) -> ReviewResult:
    """Judge the rebased diff against the task and the plan."""
    logger.info("Reviewing task", task_id=task.id, diff_chars=len(diff))
    data = await runner.run_json(
        build_review_prompt(task, plan, diff),
        system_prompt=REVIEW_PROMPT,
        model=resolve_model(config.models.default),
        cwd=cwd,
        allowed_tools=config.triage_tools,
        timeout=config.triage_timeout_secs,
        role="review",
    )
    result = ReviewResult.from_dict(data)
    if not result.approved and not result.issues:
        result.issues = ["reviewer rejected the change without listing issues"]
    logger.info(
        "Review finished",
        task_id=task.id,
        approved=result.approved,
        issues=len(result.issues),
        suggestions=len(result.suggestions),
    )
    return result
