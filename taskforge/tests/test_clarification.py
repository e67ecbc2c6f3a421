"""Tests for the file-backed clarification channel."""

from pathlib import Path

from taskforge.clarification import ClarificationChannel, parse_question
from taskforge.models import Complexity, Task, TriageResult


def make_task(task_id: str = "12", body: str = "Users see a 500 on login.") -> Task:
    """Create a test Task."""
    return Task(id=task_id, title="Fix login", body=body)


def make_analysis() -> TriageResult:
    """Create a partial analysis like the one that triggers a question."""
    return TriageResult(
        complexity=Complexity.HIGH,
        plan="Fix the session lookup",
        relevant_files=["app/auth.py", "app/session.py"],
        implementation_steps=["Find the crash", "Add a guard"],
        context="Sessions are stored in redis",
    )


class TestWriteQuestion:
    """Tests for ClarificationChannel.write_question()."""

    def test_writes_labeled_sections(self, tmp_path: Path) -> None:
        """The question document is readable markdown with labeled sections."""
        channel = ClarificationChannel(tmp_path)

        path = channel.write_question(make_task(), make_analysis(), "Which login page?")

        content = path.read_text()
        assert path == tmp_path / "12.md"
        assert content.startswith("# Clarification needed: Task 12\n")
        assert "## Task\nFix login\nUsers see a 500 on login.\n" in content
        assert "Relevant files:\n- app/auth.py\n- app/session.py\n" in content
        assert "Steps:\n- Find the crash\n- Add a guard\n" in content
        assert content.rstrip().endswith("## Questions\nWhich login page?")

    def test_removes_stale_answer(self, tmp_path: Path) -> None:
        """A new question invalidates the answer to the old one."""
        channel = ClarificationChannel(tmp_path)
        channel.write_question(make_task(), make_analysis(), "First?")
        channel.write_answer("12", "old answer")

        channel.write_question(make_task(), make_analysis(), "Second?")

        assert channel.check_answer("12") is None


class TestCheckAnswer:
    """Tests for ClarificationChannel.check_answer()."""

    def test_round_trip(self, tmp_path: Path) -> None:
        """An answer written is returned verbatim with its context."""
        channel = ClarificationChannel(tmp_path)
        channel.write_question(make_task(), make_analysis(), "Which login page?")

        channel.write_answer("12", "X")
        ctx = channel.check_answer("12")

        assert ctx is not None
        assert ctx.answer == "X"
        assert ctx.questions == "Which login page?"
        assert ctx.previous_analysis == make_analysis()

    def test_questions_with_headings_are_kept_whole(self, tmp_path: Path) -> None:
        """Markdown headings inside the questions do not cut them short."""
        channel = ClarificationChannel(tmp_path)
        questions = "Which endpoint?\n\n## Details\nThe handler has two routes."
        channel.write_question(make_task(), make_analysis(), questions)

        assert channel.list_pending()[0].questions == questions

        channel.write_answer("12", "X")
        ctx = channel.check_answer("12")

        assert ctx.questions == questions
        assert ctx.previous_analysis == make_analysis()

    def test_separators_inside_items_survive(self, tmp_path: Path) -> None:
        """Commas and semicolons inside a file or step stay in that entry."""
        channel = ClarificationChannel(tmp_path)
        analysis = TriageResult(
            complexity=Complexity.MEDIUM,
            plan="Add a default",
            relevant_files=["docs/a, b.md", "app/config.py"],
            implementation_steps=["Update config; add default", "Run the tests"],
        )
        channel.write_question(make_task(), analysis, "Which default?")
        channel.write_answer("12", "Use 30s")

        ctx = channel.check_answer("12")

        assert ctx.previous_analysis.relevant_files == ["docs/a, b.md", "app/config.py"]
        assert ctx.previous_analysis.implementation_steps == [
            "Update config; add default",
            "Run the tests",
        ]

    def test_none_without_answer(self, tmp_path: Path) -> None:
        """An unanswered question is not ready."""
        channel = ClarificationChannel(tmp_path)
        channel.write_question(make_task(), make_analysis(), "Which login page?")

        assert channel.check_answer("12") is None

    def test_blank_answer_counts_as_unanswered(self, tmp_path: Path) -> None:
        """Whitespace-only answer files are ignored."""
        channel = ClarificationChannel(tmp_path)
        channel.write_question(make_task(), make_analysis(), "Which login page?")
        channel.write_answer("12", "  \n")

        assert channel.check_answer("12") is None
        assert channel.has_answer("12") is False

    def test_answer_without_question_has_empty_context(self, tmp_path: Path) -> None:
        """An answer alone still resumes the task, with no prior analysis."""
        channel = ClarificationChannel(tmp_path)
        channel.write_answer("12", "Use /login")

        ctx = channel.check_answer("12")

        assert ctx.answer == "Use /login"
        assert ctx.previous_analysis.is_sufficient() is False

    def test_cleanup_removes_both_documents(self, tmp_path: Path) -> None:
        """After cleanup there is nothing to resume from."""
        channel = ClarificationChannel(tmp_path)
        channel.write_question(make_task(), make_analysis(), "Which login page?")
        channel.write_answer("12", "X")

        channel.cleanup("12")

        assert channel.check_answer("12") is None
        assert list(tmp_path.iterdir()) == []

    def test_cleanup_without_documents_is_noop(self, tmp_path: Path) -> None:
        """Cleaning up a task that never paused does nothing."""
        ClarificationChannel(tmp_path / "missing").cleanup("12")


class TestListPending:
    """Tests for ClarificationChannel.list_pending()."""

    def test_lists_unanswered_questions_sorted(self, tmp_path: Path) -> None:
        """Only questions without answers are listed, sorted by id."""
        channel = ClarificationChannel(tmp_path)
        channel.write_question(make_task("b"), make_analysis(), "Question b?")
        channel.write_question(make_task("a"), make_analysis(), "Question a?")
        channel.write_question(make_task("c"), make_analysis(), "Question c?")
        channel.write_answer("c", "answered")

        pending = channel.list_pending()

        assert [p.task_id for p in pending] == ["a", "b"]
        assert pending[0].questions == "Question a?"
        assert pending[0].content.startswith("# Clarification needed: Task a")

    def test_blank_answer_keeps_question_pending(self, tmp_path: Path) -> None:
        """A whitespace-only answer file does not hide the question."""
        channel = ClarificationChannel(tmp_path)
        channel.write_question(make_task("a"), make_analysis(), "Question a?")
        channel.write_answer("a", "\n  \n")

        pending = channel.list_pending()

        assert [p.task_id for p in pending] == ["a"]
        assert channel.check_answer("a") is None

    def test_missing_directory_lists_nothing(self, tmp_path: Path) -> None:
        """No directory means no questions."""
        assert ClarificationChannel(tmp_path / "missing").list_pending() == []


class TestParseQuestion:
    """Tests for parse_question()."""

    def test_task_body_headings_do_not_shadow_sections(self) -> None:
        """Headings in the task body do not shadow the real sections."""
        task = make_task(
            body="## Questions\nNot the real question\n## Previous Analysis\nPlan: fake"
        )
        channel_content = (
            "# Clarification needed: Task 12\n\n## Task\nFix login\n"
            f"{task.body}\n\n"
            "## Previous Analysis\nComplexity: low\nRelevant files: a.py\n"
            "Plan: real plan\nSteps: one\nContext: none\n\n"
            "## Questions\nReal question?\n"
        )

        analysis, questions = parse_question(channel_content)

        assert analysis.plan == "real plan"
        assert analysis.relevant_files == ["a.py"]
        assert questions == "Real question?"

    def test_continuation_lines_extend_previous_field(self) -> None:
        """A multi-line plan is read back in full."""
        content = (
            "## Previous Analysis\n"
            "Plan: first line\n"
            "second line\n"
            "Context: ctx\n"
            "## Questions\nQ?\n"
        )

        analysis, _ = parse_question(content)

        assert analysis.plan == "first line\nsecond line"
        assert analysis.context == "ctx"

    def test_multi_line_questions(self) -> None:
        """Every line of the Questions section is kept."""
        _, questions = parse_question("## Questions\n1. Which page?\n2. Which role?\n")

        assert questions == "1. Which page?\n2. Which role?"

    def test_list_fields_read_one_item_per_line(self) -> None:
        """Bulleted entries are read back as they were written."""
        content = (
            "## Previous Analysis\n"
            "Relevant files:\n"
            "- app/a.py\n"
            "- app/b.py\n"
            "Plan: p\n"
            "Steps:\n"
            "- Update config; add default\n"
            "Context: ctx\n"
            "\n"
            "## Questions\nQ?\n"
        )

        analysis, _ = parse_question(content)

        assert analysis.relevant_files == ["app/a.py", "app/b.py"]
        assert analysis.implementation_steps == ["Update config; add default"]
        assert analysis.plan == "p"
