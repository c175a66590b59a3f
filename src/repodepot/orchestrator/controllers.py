"""Controllers for orchestration CLI commands."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from repodepot.config import Settings
from repodepot.http.client import ApiClient
from repodepot.orchestrator.errors import NotFoundError, ValidationError
from repodepot.orchestrator.models import (
    AgentStatus,
    Priority,
    RepositoryCreate,
    TaskCreate,
)
from repodepot.orchestrator.task_repository import TaskRepository

MAX_LONG_POLL_MS = 30_000

STEP_ICONS = {
    "pending": "[ ]",
    "in_progress": "[~]",
    "done": "[x]",
    "failed": "[!]",
    "skipped": "[-]",
}

ClientFactory = Callable[[str], ApiClient]


@dataclass(slots=True)
class DbInitCommand:
    """CLI input for schema migration."""

    db_path: Path | None


@dataclass(slots=True)
class RepoAddCommand:
    """CLI input for registering a repository."""

    db_path: Path | None
    full_name: str
    clone_url: str | None
    local_path: Path | None
    default_branch: str


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for registering a task."""

    db_path: Path | None
    repo_id: int
    title: str
    description: str | None
    priority: str
    issue_number: int | None
    issue_url: str | None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    repo_id: int | None
    agent_status: str | None
    limit: int


@dataclass(slots=True)
class PlanCommand:
    api_url: str | None
    task_id: str
    steps: tuple[str, ...]


@dataclass(slots=True)
class StepUpdateCommand:
    api_url: str | None
    task_id: str
    index: int
    status: str
    note: str | None


@dataclass(slots=True)
class StepAddCommand:
    api_url: str | None
    task_id: str
    after_index: int
    description: str


@dataclass(slots=True)
class AskCommand:
    api_url: str | None
    task_id: str
    question: str
    choices: tuple[str, ...]


@dataclass(slots=True)
class WaitCommand:
    """CLI input for waiting on an answer; repeats server long-polls until the timeout."""

    api_url: str | None
    task_id: str
    timeout_seconds: int


@dataclass(slots=True)
class ShowCommand:
    api_url: str | None
    task_id: str


@dataclass(slots=True)
class AgentStartCommand:
    api_url: str | None
    repo_id: int
    work_dir: Path | None


@dataclass(slots=True)
class AgentRepoCommand:
    """CLI input for stop/status of one repository's agent."""

    api_url: str | None
    repo_id: int


@dataclass(slots=True)
class AgentFleetCommand:
    """CLI input for commands spanning every agent."""

    api_url: str | None


class CatalogCliController:
    """Direct database commands: schema, repositories, tasks."""

    def init_db(self, command: DbInitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings):
            pass
        return [f"Database ready: {settings.db_path}"]

    def add_repository(self, command: RepoAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        clone_url = command.clone_url or f"https://github.com/{command.full_name.strip()}.git"
        with _repository(settings) as repository:
            created = repository.add_repository(
                RepositoryCreate(
                    full_name=command.full_name,
                    clone_url=clone_url,
                    local_path=str(command.local_path.resolve()) if command.local_path else None,
                    default_branch=command.default_branch,
                ),
            )
        return [
            f"Repository added: id={created.id} {created.full_name}",
            f"  clone_url={created.clone_url}",
            f"  local_path={created.local_path or '-'}",
        ]

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.add_task(
                TaskCreate(
                    repo_id=command.repo_id,
                    title=command.title,
                    description=command.description,
                    priority=Priority(command.priority),
                    github_issue_number=command.issue_number,
                    github_issue_url=command.issue_url,
                ),
            )
        lines = [f"Task added: {task.id}", f"  title={task.title} priority={task.priority.value}"]
        if task.github_issue_number is None:
            lines.append("  note: no issue number; agents will not see this task as claimable")
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        agent_status = _parse_agent_status(command.agent_status)
        with _repository(settings) as repository:
            if command.repo_id is not None and repository.get_repository(command.repo_id) is None:
                raise NotFoundError(f"Repository not found: {command.repo_id}")
            tasks = repository.list_tasks(
                repo_id=command.repo_id,
                agent_status=agent_status,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            issue = f"#{task.github_issue_number}" if task.github_issue_number is not None else "-"
            lines.append(
                f"  {task.id} repo={task.repo_id} issue={issue} "
                f"agent_status={task.agent_status.value} status={task.status.value} "
                f"priority={task.priority.value} title={task.title}",
            )
        return lines


class _ApiCliController:
    def __init__(self, client_factory: ClientFactory = ApiClient) -> None:
        self.client_factory = client_factory

    @contextmanager
    def _client(self, api_url: str | None) -> Iterator[ApiClient]:
        client = self.client_factory(_resolve_api_url(api_url))
        try:
            yield client
        finally:
            client.close()


class ProgressCliController(_ApiCliController):
    """Progress reporting commands; agents call these through the HTTP API."""

    def plan(self, command: PlanCommand) -> list[str]:
        with self._client(command.api_url) as client:
            result = client.create_plan(command.task_id, command.steps)
        return [f"Plan created for task {command.task_id}:", *_step_lines(result["steps"])]

    def update(self, command: StepUpdateCommand) -> list[str]:
        with self._client(command.api_url) as client:
            result = client.update_step(
                command.task_id,
                command.index,
                status=command.status,
                note=command.note,
            )
        return [f"Step {command.index} updated:", *_step_lines([result["step"]])]

    def add(self, command: StepAddCommand) -> list[str]:
        with self._client(command.api_url) as client:
            result = client.add_step(
                command.task_id,
                command.description,
                after_index=command.after_index,
            )
        return ["Step added:", *_step_lines([result["step"]])]

    def ask(self, command: AskCommand) -> list[str]:
        with self._client(command.api_url) as client:
            result = client.ask(command.task_id, command.question, choices=command.choices)
        return [
            f"Question submitted for task {command.task_id}:",
            *_question_lines(result["question"]),
            "",
            f"Use 'repodepot progress wait --task {command.task_id}' to wait for the answer.",
        ]

    def wait(self, command: WaitCommand) -> list[str]:
        lines = [f"Waiting for answer (timeout: {command.timeout_seconds}s)..."]
        deadline = time.monotonic() + command.timeout_seconds
        with self._client(command.api_url) as client:
            while True:
                remaining_ms = max(0, int((deadline - time.monotonic()) * 1000))
                result = client.wait_for_answer(
                    command.task_id,
                    timeout_ms=min(remaining_ms, MAX_LONG_POLL_MS),
                )
                question = result.get("question")
                if result.get("answered") and question is not None:
                    return [
                        *lines,
                        "",
                        "Answer received!",
                        f"  Q: {question['question']}",
                        f"  A: {question['answer']}",
                    ]
                if question is None:
                    message = result.get("message") or "No pending question for this task."
                    return [*lines, "", message]
                if remaining_ms == 0 or time.monotonic() >= deadline:
                    return [*lines, "", "No answer yet.", *_question_lines(question)]

    def show(self, command: ShowCommand) -> list[str]:
        with self._client(command.api_url) as client:
            result = client.get_progress(command.task_id)
        steps = result.get("steps") or []
        lines = [f"Progress for task {result['taskId']}:"]
        if not steps:
            lines.append("  No steps defined yet.")
        else:
            lines.extend(_step_lines(steps))
            done = sum(1 for step in steps if step["status"] == "done")
            lines.append("")
            lines.append(f"  Progress: {done}/{len(steps)} ({round(done * 100 / len(steps))}%)")
        if result.get("currentQuestion"):
            lines.extend(_question_lines(result["currentQuestion"]))
        return lines


class AgentCliController(_ApiCliController):
    """Agent supervision commands sent to a running server."""

    def start(self, command: AgentStartCommand) -> list[str]:
        work_dir = str(command.work_dir.resolve()) if command.work_dir else None
        with self._client(command.api_url) as client:
            result = client.start_agent(command.repo_id, work_dir=work_dir)
        return [
            f"Agent started for repository {command.repo_id}",
            f"  pid={result['pid']} started_at={result['startedAt']}",
            f"  log_file={result['logFile']}",
        ]

    def stop(self, command: AgentRepoCommand) -> list[str]:
        with self._client(command.api_url) as client:
            result = client.stop_agent(command.repo_id)
        return [f"Agent stopped for repository {command.repo_id} (pid={result.get('pid')})"]

    def status(self, command: AgentRepoCommand) -> list[str]:
        with self._client(command.api_url) as client:
            result = client.agent_status(command.repo_id)
        if not result.get("running"):
            return [f"Repository {command.repo_id}: no agent running"]
        lines = [
            f"Repository {command.repo_id}: running pid={result['pid']} "
            f"since {result['startedAt']}",
            f"  log_file={result['logFile']}",
        ]
        recent = result.get("recentLogs") or []
        if recent:
            lines.append("  recent output:")
            lines.extend(f"    {line}" for line in recent)
        return lines

    def running(self, command: AgentFleetCommand) -> list[str]:
        with self._client(command.api_url) as client:
            result = client.running_agents()
        agents = result.get("agents") or []
        lines = [f"Running agents: {len(agents)}"]
        lines.extend(
            f"  repo={agent['repoId']} pid={agent['pid']} started_at={agent['startedAt']}"
            for agent in agents
        )
        return lines

    def start_all(self, command: AgentFleetCommand) -> list[str]:
        with self._client(command.api_url) as client:
            result = client.start_all()
        summary: dict[str, Any] = result["summary"]
        lines = [
            f"Repositories: {summary['totalRepos']} "
            f"started={summary['agentsStarted']} "
            f"already_running={summary['alreadyRunning']} "
            f"no_tasks={summary['noTasks']} "
            f"no_local_path={summary['noLocalPath']} "
            f"errors={summary['errors']} "
            f"pending_tasks={summary['totalPendingTasks']}",
        ]
        for entry in result.get("results") or []:
            detail = f" error={entry['error']}" if entry.get("error") else ""
            lines.append(
                f"  {entry['repoName']} (id={entry['repoId']}): {entry['status']} "
                f"pending={entry['pendingTasks']}{detail}",
            )
        return lines

    def stop_all(self, command: AgentFleetCommand) -> list[str]:
        with self._client(command.api_url) as client:
            result = client.stop_all()
        stopped = result.get("stoppedRepos") or []
        return [f"Stopped {result['stoppedCount']} agent(s): {', '.join(map(str, stopped)) or '-'}"]


def _resolve_api_url(api_url: str | None) -> str:
    return (api_url or Settings.from_env().server.api_url).rstrip("/")


def _parse_agent_status(value: str | None) -> AgentStatus | None:
    if value is None:
        return None
    try:
        return AgentStatus(value)
    except ValueError as error:
        raise ValidationError(f"Unknown agent status: {value}") from error


def _step_lines(steps: list[dict[str, Any]]) -> list[str]:
    lines = []
    for step in steps:
        note = f" ({step['note']})" if step.get("note") else ""
        icon = STEP_ICONS.get(step["status"], "[ ]")
        lines.append(f"  {step['index']}. {icon} {step['description']}{note}")
    return lines


def _question_lines(question: dict[str, Any]) -> list[str]:
    lines = ["", "Pending question:", f"  Q: {question['question']}"]
    choices = question.get("choices") or []
    if choices:
        lines.append("  Choices:")
        lines.extend(
            f"    {position}. {choice}" for position, choice in enumerate(choices, start=1)
        )
    if question.get("answer"):
        lines.append(f"  A: {question['answer']}")
    return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
