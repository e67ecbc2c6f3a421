"""Persistent task state for taskforge.

The StateStore is the single source of truth for where each task is in its
lifecycle. Every mutation rewrites the whole JSON file through a temp file
and os.replace, so the file on disk is always a complete snapshot that is
safe to read or hand-edit for recovery.
"""

import json
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from taskforge.errors import StateError

logger = structlog.get_logger(__name__)


class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    PENDING = "pending"
    TRIAGING = "triaging"
    NEEDS_CLARIFICATION = "needs_clarification"
    EXECUTING = "executing"
    SUCCESS = "success"
    TEST_FAILURE = "test_failure"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """No further automated transition without external intervention."""
        return self in _TERMINAL

    @property
    def is_resumable(self) -> bool:
        """Eligible for re-fetch and reprocessing by an explicit resume sweep."""
        return self in _RESUMABLE


_TERMINAL = frozenset(
    {
        TaskStatus.NEEDS_CLARIFICATION,
        TaskStatus.SUCCESS,
        TaskStatus.TEST_FAILURE,
        TaskStatus.ERROR,
    }
)

_RESUMABLE = frozenset(
    {
        TaskStatus.TRIAGING,
        TaskStatus.EXECUTING,
        TaskStatus.ERROR,
        TaskStatus.TEST_FAILURE,
    }
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TaskRecord:
    """Persisted lifecycle record of a single task."""

    title: str
    status: TaskStatus = TaskStatus.PENDING
    branch: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        data["completed_at"] = (
            self.completed_at.isoformat() if self.completed_at else None
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRecord":
        started_at = data.get("started_at")
        completed_at = data.get("completed_at")
        return cls(
            title=data.get("title", ""),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            branch=data.get("branch"),
            started_at=datetime.fromisoformat(started_at) if started_at else None,
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
            error=data.get("error"),
        )


@dataclass
class StateSummary:
    """Counts of tasks per status bucket, plus error text per failed task."""

    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    needs_clarification: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return (
            self.pending
            + self.in_progress
            + self.completed
            + self.needs_clarification
            + self.failed
        )

    def __str__(self) -> str:
        return (
            f"pending={self.pending}, in_progress={self.in_progress}, "
            f"completed={self.completed}, "
            f"needs_clarification={self.needs_clarification}, failed={self.failed}"
        )


class StateStore:
    """Durable map from task id to TaskRecord.

    All access goes through this class; the underlying map is never handed
    out. A single lock serializes every read-modify-write so concurrent
    workers cannot interleave partial updates.

    Usage:
        store = StateStore.load(Path(".taskforge/state.json"))
        store.set_status("42", "Fix login", TaskStatus.TRIAGING)
    """

    def __init__(self, path: Path, records: dict[str, TaskRecord] | None = None):
        self.path = path
        self._records: dict[str, TaskRecord] = records or {}
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: Path) -> "StateStore":
        """Load state from a JSON file, or start empty if it doesn't exist.

        Raises:
            StateError: If the file exists but cannot be read or parsed.
        """
        if not path.exists():
            return cls(path)

        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(f"Cannot read state file {path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("tasks", {}), dict):
            raise StateError(f"State file {path} has an unexpected structure")

        records: dict[str, TaskRecord] = {}
        for task_id, raw in data.get("tasks", {}).items():
            if not isinstance(raw, dict):
                raise StateError(f"State entry for task {task_id} is not an object")
            try:
                records[str(task_id)] = TaskRecord.from_dict(raw)
            except (ValueError, TypeError) as e:
                raise StateError(f"State entry for task {task_id} is invalid: {e}") from e

        logger.debug("Loaded state", path=str(path), tasks=len(records))
        return cls(path, records)

    def _save(self, records: dict[str, TaskRecord]) -> None:
        """Serialize records and atomically replace the state file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "tasks": {
                task_id: record.to_dict()
                for task_id, record in sorted(records.items())
            }
        }
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2)
                f.write("\n")
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _commit(self, task_id: str, record: TaskRecord) -> None:
        """Persist a changed record, then make it visible in memory.

        Must be called with the lock held. If the write fails, memory keeps
        the previous record.
        """
        records = {**self._records, task_id: record}
        self._save(records)
        self._records = records

    def get(self, task_id: str) -> TaskRecord | None:
        """Return a copy of the record for task_id, if any."""
        with self._lock:
            record = self._records.get(task_id)
            return replace(record) if record is not None else None

    def records(self) -> dict[str, TaskRecord]:
        """Return copies of all records keyed by task id."""
        with self._lock:
            return {task_id: replace(r) for task_id, r in self._records.items()}

    def set_status(self, task_id: str, title: str, status: TaskStatus) -> None:
        """Set a task's status, creating its record on first observation."""
        with self._lock:
            current = self._records.get(task_id)
            record = TaskRecord(title=title) if current is None else replace(current)
            if title:
                record.title = title

            previous = record.status
            record.status = status
            if status.is_terminal:
                record.completed_at = _now()
            if status == TaskStatus.SUCCESS:
                record.error = None
            self._commit(task_id, record)

        logger.info(
            "Task transitioned",
            task_id=task_id,
            previous=previous.value,
            status=status.value,
        )

    def set_error(
        self, task_id: str, message: str, status: TaskStatus = TaskStatus.ERROR
    ) -> None:
        """Move a known task to a failed terminal status with a reason."""
        if status not in (TaskStatus.ERROR, TaskStatus.TEST_FAILURE):
            raise ValueError(f"set_error cannot set status {status.value}")

        with self._lock:
            current = self._records.get(task_id)
            if current is None:
                return
            previous = current.status
            record = replace(current, status=status, error=message, completed_at=_now())
            self._commit(task_id, record)

        logger.warning(
            "Task failed",
            task_id=task_id,
            previous=previous.value,
            status=status.value,
            error=message,
        )

    def set_branch(self, task_id: str, branch: str) -> None:
        with self._lock:
            current = self._records.get(task_id)
            if current is None:
                return
            self._commit(task_id, replace(current, branch=branch))

    def set_started(self, task_id: str) -> None:
        """Stamp the start of a pipeline run for a known task."""
        with self._lock:
            current = self._records.get(task_id)
            if current is None:
                return
            self._commit(
                task_id, replace(current, started_at=_now(), completed_at=None)
            )

    def reset_to_pending(self, task_id: str) -> None:
        """Return a task to Pending and clear its error.

        Idempotent. Used when a clarification answer arrives.
        """
        with self._lock:
            current = self._records.get(task_id)
            if current is None:
                return
            if current.status == TaskStatus.PENDING and current.error is None:
                return
            previous = current.status
            self._commit(
                task_id, replace(current, status=TaskStatus.PENDING, error=None)
            )

        logger.info(
            "Task reset to pending", task_id=task_id, previous=previous.value
        )

    def is_terminal(self, task_id: str) -> bool:
        record = self.get(task_id)
        return record is not None and record.status.is_terminal

    def resumable_ids(self) -> list[str]:
        with self._lock:
            return sorted(
                task_id
                for task_id, record in self._records.items()
                if record.status.is_resumable
            )

    def needs_clarification_ids(self) -> list[str]:
        with self._lock:
            return sorted(
                task_id
                for task_id, record in self._records.items()
                if record.status == TaskStatus.NEEDS_CLARIFICATION
            )

    def summary(self) -> StateSummary:
        """Count tasks per status bucket."""
        summary = StateSummary()
        with self._lock:
            for task_id, record in self._records.items():
                status = record.status
                if status == TaskStatus.PENDING:
                    summary.pending += 1
                elif status in (TaskStatus.TRIAGING, TaskStatus.EXECUTING):
                    summary.in_progress += 1
                elif status == TaskStatus.SUCCESS:
                    summary.completed += 1
                elif status == TaskStatus.NEEDS_CLARIFICATION:
                    summary.needs_clarification += 1
                else:
                    summary.failed += 1
                    if record.error:
                        summary.errors[task_id] = record.error
        return summary
