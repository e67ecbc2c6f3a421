"""File-backed clarification channel.

A task that cannot be planned without human input pauses by writing a
question document. It resumes once a non-empty answer document appears
next to it. Both are plain markdown so a human can read and answer them
directly:

    <clarification_dir>/<task_id>.md          question
    <clarification_dir>/<task_id>.answer.md   answer
"""

import threading
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from taskforge.models import Complexity, Task, TriageResult

logger = structlog.get_logger(__name__)

ANALYSIS_HEADING = "## Previous Analysis"
QUESTIONS_HEADING = "## Questions"

QUESTION_TEMPLATE = """# Clarification needed: Task {id}

## Task
{title}
{body}

## Previous Analysis
Complexity: {complexity}
Relevant files:
{files}
Plan: {plan}
Steps:
{steps}
Context: {context}

## Questions
{questions}
"""

# Analysis line prefixes, mapped to the TriageResult field they fill
_ANALYSIS_FIELDS = {
    "Complexity:": "complexity",
    "Relevant files:": "relevant_files",
    "Plan:": "plan",
    "Steps:": "implementation_steps",
    "Context:": "context",
}

_LIST_FIELDS = {"relevant_files", "implementation_steps"}


@dataclass
class AnswerContext:
    """A human answer plus the analysis and questions it responds to."""

    previous_analysis: TriageResult
    questions: str
    answer: str


@dataclass
class PendingClarification:
    """A question document with no answer yet."""

    task_id: str
    questions: str
    content: str = field(repr=False)


class ClarificationChannel:
    """Question/answer exchange through files in a single directory."""

    def __init__(self, directory: Path):
        self.directory = directory
        self._lock = threading.Lock()

    def question_path(self, task_id: str) -> Path:
        return self.directory / f"{task_id}.md"

    def answer_path(self, task_id: str) -> Path:
        return self.directory / f"{task_id}.answer.md"

    def write_question(
        self, task: Task, previous: TriageResult, questions: str
    ) -> Path:
        """Write the question document for a task.

        Any existing answer is removed, since it answered an older question.
        """
        content = QUESTION_TEMPLATE.format(
            id=task.id,
            title=task.title,
            body=task.body,
            complexity=previous.complexity.value,
            files=_bullets(previous.relevant_files),
            plan=previous.plan,
            steps=_bullets(previous.implementation_steps),
            context=previous.context,
            questions=questions.strip(),
        )
        path = self.question_path(task.id)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            self.answer_path(task.id).unlink(missing_ok=True)

        logger.info("Wrote clarification question", task_id=task.id, path=str(path))
        return path

    def write_answer(self, task_id: str, text: str) -> Path:
        """Create or overwrite the answer document for a task."""
        path = self.answer_path(task_id)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(text)

        logger.info("Wrote clarification answer", task_id=task_id, path=str(path))
        return path

    def has_answer(self, task_id: str) -> bool:
        with self._lock:
            return self._read_answer(task_id) is not None

    def check_answer(self, task_id: str) -> AnswerContext | None:
        """Return the answer with its context, or None while unanswered.

        An empty or whitespace-only answer document counts as unanswered.
        """
        with self._lock:
            answer = self._read_answer(task_id)
            if answer is None:
                return None
            question_file = self.question_path(task_id)
            content = question_file.read_text() if question_file.exists() else ""

        previous, questions = parse_question(content)
        logger.info(
            "Found clarification answer", task_id=task_id, answer_bytes=len(answer)
        )
        return AnswerContext(previous_analysis=previous, questions=questions, answer=answer)

    def cleanup(self, task_id: str) -> None:
        """Remove both documents for a task, if present."""
        with self._lock:
            for path in (self.question_path(task_id), self.answer_path(task_id)):
                if path.exists():
                    path.unlink()
                    logger.debug("Removed clarification file", path=str(path))

    def list_pending(self) -> list[PendingClarification]:
        """All question documents without a non-empty answer, sorted by id."""
        pending: list[PendingClarification] = []
        with self._lock:
            if not self.directory.exists():
                return pending
            for path in self.directory.glob("*.md"):
                if path.name.endswith(".answer.md"):
                    continue
                task_id = path.name[: -len(".md")]
                if self._read_answer(task_id) is not None:
                    continue
                content = path.read_text()
                _, questions = parse_question(content)
                pending.append(
                    PendingClarification(task_id=task_id, questions=questions, content=content)
                )

        return sorted(pending, key=lambda p: p.task_id)

    def _read_answer(self, task_id: str) -> str | None:
        path = self.answer_path(task_id)
        if not path.exists():
            return None
        answer = path.read_text()
        return answer if answer.strip() else None


def _heading_indexes(lines: list[str], heading: str) -> list[int]:
    return [i for i, line in enumerate(lines) if line.startswith(heading)]


def _split_sections(lines: list[str]) -> tuple[list[str], list[str]]:
    """Split a question document into (analysis lines, question lines).

    The analysis is the last Previous Analysis heading that is followed by
    a Questions heading, so a task body with its own headings cannot shadow
    it. The questions run from the first Questions heading after it to the
    end of the document, so headings inside the questions are kept.
    """
    analysis_starts = _heading_indexes(lines, ANALYSIS_HEADING)
    question_starts = _heading_indexes(lines, QUESTIONS_HEADING)
    for analysis_start in reversed(analysis_starts):
        following = [i for i in question_starts if i > analysis_start]
        if following:
            return lines[analysis_start + 1 : following[0]], lines[following[0] + 1 :]

    analysis = lines[analysis_starts[-1] + 1 :] if analysis_starts else []
    questions = lines[question_starts[-1] + 1 :] if question_starts else []
    return analysis, questions


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def parse_question(content: str) -> tuple[TriageResult, str]:
    """Parse a question document back into (previous analysis, questions).

    List fields hold one ``- item`` line per entry. A value written on the
    label line itself is read as a single entry.
    """
    analysis_lines, question_lines = _split_sections(content.splitlines())

    values: dict[str, str] = {}
    items: dict[str, list[str]] = {name: [] for name in _LIST_FIELDS}
    current: str | None = None
    for line in analysis_lines:
        for prefix, name in _ANALYSIS_FIELDS.items():
            if line.startswith(prefix):
                current = name
                value = line[len(prefix) :].strip()
                if name not in _LIST_FIELDS:
                    values[name] = value
                elif value:
                    items[name].append(value)
                break
        else:
            if current is None or not line.strip():
                continue
            if current not in _LIST_FIELDS:
                values[current] = f"{values[current]}\n{line}"
            elif line.startswith("- "):
                items[current].append(line[2:].strip())
            elif items[current]:
                items[current][-1] = f"{items[current][-1]}\n{line}"

    previous = TriageResult(
        complexity=Complexity.parse(values.get("complexity")),
        plan=values.get("plan", ""),
        relevant_files=items["relevant_files"],
        implementation_steps=items["implementation_steps"],
        context=values.get("context", ""),
    )
    return previous, "\n".join(question_lines).strip()
