"""Task sources.

A source lists open tasks, fetches a single task by id and reports
terminal outcomes back. Two are provided: YAML files in a local directory
and labelled GitHub issues.
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
import structlog
import yaml

from taskforge.config import GitHubSettings
from taskforge.errors import SourceError
from taskforge.models import Task
from taskforge.state import StateStore, TaskRecord, TaskStatus

logger = structlog.get_logger(__name__)


def _parse_created_at(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _outcome_comment(task: Task, record: TaskRecord) -> str:
    status = record.status
    if status == TaskStatus.SUCCESS:
        return f"taskforge finished this task on branch `{record.branch or task.branch_name}`."
    if status == TaskStatus.NEEDS_CLARIFICATION:
        return (
            "taskforge needs clarification before it can work on this task.\n\n"
            f"Run `taskforge clarifications` to see the questions and "
            f"`taskforge answer {task.id} ...` to answer them."
        )
    return f"taskforge could not finish this task ({status.value}):\n\n```\n{record.error or ''}\n```"


class LocalTaskSource:
    """Tasks stored as <tasks_dir>/<id>.yaml with title, body and labels.

    Example file:
        title: Fix login redirect
        body: |
          After login the user lands on / instead of the page they came from.
        labels: [bug]
    """

    def __init__(self, tasks_dir: Path):
        self.tasks_dir = tasks_dir

    def load(self, path: Path) -> Task:
        try:
            data = yaml.safe_load(path.read_text())
        except (OSError, yaml.YAMLError) as e:
            raise SourceError(f"Cannot read task file {path}: {e}") from e
        if not isinstance(data, dict) or not data.get("title"):
            raise SourceError(f"Task file {path} must be a mapping with a title")

        return Task(
            id=path.stem,
            title=str(data["title"]),
            body=str(data.get("body") or ""),
            labels=tuple(str(label) for label in data.get("labels") or ()),
            created_at=_parse_created_at(data.get("created_at")),
        )

    def load_all(self) -> list[Task]:
        if not self.tasks_dir.exists():
            return []
        tasks = []
        for path in sorted(self.tasks_dir.glob("*.yaml")):
            try:
                tasks.append(self.load(path))
            except SourceError as e:
                logger.warning("Skipping invalid task file", path=str(path), error=str(e))
        return tasks

    def create(self, title: str, body: str, labels: tuple[str, ...] = ()) -> Task:
        """Write a new task file with the next free numeric id."""
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        numbers = [int(p.stem) for p in self.tasks_dir.glob("*.yaml") if p.stem.isdigit()]
        task_id = f"{max(numbers, default=0) + 1:03d}"
        created_at = datetime.now().astimezone()
        content = {
            "title": title,
            "body": body,
            "labels": list(labels),
            "created_at": created_at.isoformat(),
        }
        path = self.tasks_dir / f"{task_id}.yaml"
        path.write_text(yaml.safe_dump(content, sort_keys=False, allow_unicode=True))
        logger.info("Created task", task_id=task_id, path=str(path))
        return Task(id=task_id, title=title, body=body, labels=tuple(labels), created_at=created_at)

    async def fetch_open(self, store: StateStore) -> list[Task]:
        tasks = await asyncio.to_thread(self.load_all)
        return [task for task in tasks if not store.is_terminal(task.id)]

    async def fetch(self, task_id: str) -> Task | None:
        path = self.tasks_dir / f"{task_id}.yaml"
        if not path.exists():
            return None
        return await asyncio.to_thread(self.load, path)

    async def report(self, task: Task, record: TaskRecord) -> None:
        logger.info(
            "Task outcome",
            task_id=task.id,
            status=record.status.value,
            error=record.error,
        )


class GitHubIssueSource:
    """Open GitHub issues carrying a label, via the REST API.

    Usage:
        async with GitHubIssueSource(config.github) as source:
            tasks = await source.fetch_open(store)
    """

    def __init__(self, settings: GitHubSettings, client: httpx.AsyncClient | None = None):
        if not settings.repo or "/" not in settings.repo:
            raise SourceError("github.repo must be set as owner/name")
        if not settings.token and client is None:
            raise SourceError("GITHUB_TOKEN is not set")

        self.settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.api_url,
            headers={
                "Authorization": f"Bearer {settings.token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=30.0,
        )

    async def __aenter__(self) -> "GitHubIssueSource":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise SourceError(f"GitHub request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise SourceError(f"GitHub request failed: {method} {path}: {e}") from e
        return response

    @staticmethod
    def _check(response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise SourceError(
                f"GitHub returned {response.status_code} for "
                f"{response.request.method} {response.request.url.path}: {response.text[:200]}"
            )

    @staticmethod
    def _to_task(issue: dict[str, Any]) -> Task:
        return Task(
            id=str(issue["number"]),
            title=issue.get("title") or "",
            body=issue.get("body") or "",
            labels=tuple(label["name"] for label in issue.get("labels", [])),
            created_at=_parse_created_at(issue.get("created_at")),
        )

    async def fetch_open(self, store: StateStore) -> list[Task]:
        repo = self.settings.repo
        logger.info("Fetching issues", repo=repo, label=self.settings.label)
        response = await self._request(
            "GET",
            f"/repos/{repo}/issues",
            params={"state": "open", "labels": self.settings.label, "per_page": 100},
        )
        issues: list[dict[str, Any]] = []
        while True:
            self._check(response)
            issues.extend(response.json())
            # GitHub pages with Link headers; the next URL carries the query
            next_url = response.links.get("next", {}).get("url")
            if not next_url:
                break
            response = await self._request("GET", next_url)

        tasks = [self._to_task(issue) for issue in issues if "pull_request" not in issue]
        open_tasks = [task for task in tasks if not store.is_terminal(task.id)]
        logger.info("Found issues", total=len(tasks), open=len(open_tasks))
        return open_tasks

    async def fetch(self, task_id: str) -> Task | None:
        response = await self._request("GET", f"/repos/{self.settings.repo}/issues/{task_id}")
        if response.status_code == 404:
            return None
        self._check(response)
        issue = response.json()
        if "pull_request" in issue:
            return None
        return self._to_task(issue)

    async def report(self, task: Task, record: TaskRecord) -> None:
        """Comment on the issue and label it with the outcome."""
        base = f"/repos/{self.settings.repo}/issues/{task.id}"
        response = await self._request(
            "POST", f"{base}/comments", json={"body": _outcome_comment(task, record)}
        )
        self._check(response)
        response = await self._request(
            "POST", f"{base}/labels", json={"labels": [f"taskforge:{record.status.value}"]}
        )
        self._check(response)
        logger.info("Reported task outcome", task_id=task.id, status=record.status.value)
