"""CLI entrypoint for repodepot."""

import copy
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import rich_click as click
import uvicorn
from uvicorn.config import LOGGING_CONFIG

from repodepot import __version__
from repodepot.api.app import create_app
from repodepot.config import Settings
from repodepot.http.client import ApiClientError
from repodepot.orchestrator.controllers import (
    AgentCliController,
    AgentFleetCommand,
    AgentRepoCommand,
    AgentStartCommand,
    AskCommand,
    CatalogCliController,
    DbInitCommand,
    PlanCommand,
    ProgressCliController,
    RepoAddCommand,
    ShowCommand,
    StepAddCommand,
    StepUpdateCommand,
    TaskAddCommand,
    TaskListCommand,
    WaitCommand,
)
from repodepot.orchestrator.errors import OrchestrationError
from repodepot.orchestrator.models import PRIORITY_RANK, AgentStatus, StepStatus

click.rich_click.USE_MARKDOWN = True
CATALOG_CONTROLLER = CatalogCliController()
PROGRESS_CONTROLLER = ProgressCliController()
AGENT_CONTROLLER = AgentCliController()

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_api_option = click.option(
    "--api",
    "api_url",
    default=None,
    help="Orchestration API URL. Defaults to REPODEPOT_API_URL.",
)
_task_option = click.option("-t", "--task", "task_id", required=True, help="Task ID.")


@click.group()
@click.version_option(version=__version__, prog_name="repodepot")
def repodepot() -> None:
    """Agent orchestration: task claims, progress reporting and agent supervision."""


@repodepot.command("serve")
@_db_path_option
@click.option("--host", default=None, help="Bind host. Defaults to REPODEPOT_HOST.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None, help="Bind port.")
def serve(db_path: Path | None, host: str | None, port: int | None) -> None:
    """Run the orchestration HTTP API."""

    with _cli_errors():
        settings = Settings.from_env(db_path=db_path)
        if host:
            settings.server.host = host
        if port:
            settings.server.port = port
        settings.validate()
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level,
        log_config=_log_config(settings.server.log_level),
    )


@repodepot.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@_db_path_option
def db_init(db_path: Path | None) -> None:
    """Create or upgrade the database schema."""

    with _cli_errors():
        _emit_lines(CATALOG_CONTROLLER.init_db(DbInitCommand(db_path=db_path)))


@repodepot.group()
def repo() -> None:
    """Repository catalog commands."""


@repo.command("add")
@_db_path_option
@click.argument("full_name")
@click.option("--clone-url", default=None, help="Clone URL. Defaults to the GitHub HTTPS URL.")
@click.option(
    "--local-path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working copy agents run in.",
)
@click.option("--default-branch", default="main", show_default=True)
def repo_add(
    db_path: Path | None,
    full_name: str,
    clone_url: str | None,
    local_path: Path | None,
    default_branch: str,
) -> None:
    """Register repository `FULL_NAME` (owner/repo)."""

    with _cli_errors():
        _emit_lines(
            CATALOG_CONTROLLER.add_repository(
                RepoAddCommand(
                    db_path=db_path,
                    full_name=full_name,
                    clone_url=clone_url,
                    local_path=local_path,
                    default_branch=default_branch,
                ),
            ),
        )


@repodepot.group()
def task() -> None:
    """Task catalog commands."""


@task.command("add")
@_db_path_option
@click.option("--repo", "repo_id", type=int, required=True, help="Repository id.")
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default=None, help="Task description.")
@click.option(
    "--priority",
    type=click.Choice(list(PRIORITY_RANK), case_sensitive=False),
    default="medium",
    show_default=True,
)
@click.option("--issue", "issue_number", type=int, default=None, help="GitHub issue number.")
@click.option("--issue-url", default=None, help="GitHub issue URL.")
def task_add(  # noqa: PLR0913
    db_path: Path | None,
    repo_id: int,
    title: str,
    description: str | None,
    priority: str,
    issue_number: int | None,
    issue_url: str | None,
) -> None:
    """Register a task; only tasks with an issue number are claimable."""

    with _cli_errors():
        _emit_lines(
            CATALOG_CONTROLLER.add_task(
                TaskAddCommand(
                    db_path=db_path,
                    repo_id=repo_id,
                    title=title,
                    description=description,
                    priority=priority.lower(),
                    issue_number=issue_number,
                    issue_url=issue_url,
                ),
            ),
        )


@task.command("list")
@_db_path_option
@click.option("--repo", "repo_id", type=int, default=None, help="Repository id filter.")
@click.option(
    "--agent-status",
    type=click.Choice([status.value for status in AgentStatus]),
    default=None,
    help="Agent status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def task_list(
    db_path: Path | None,
    repo_id: int | None,
    agent_status: str | None,
    limit: int,
) -> None:
    """List recent tasks."""

    with _cli_errors():
        _emit_lines(
            CATALOG_CONTROLLER.list_tasks(
                TaskListCommand(
                    db_path=db_path,
                    repo_id=repo_id,
                    agent_status=agent_status,
                    limit=limit,
                ),
            ),
        )


@repodepot.group()
def progress() -> None:
    """Report and track agent progress on tasks."""


@progress.command("plan")
@_task_option
@_api_option
@click.argument("steps", nargs=-1, required=True)
def progress_plan(task_id: str, api_url: str | None, steps: tuple[str, ...]) -> None:
    """Declare the steps for a task, replacing any previous plan."""

    with _cli_errors():
        _emit_lines(
            PROGRESS_CONTROLLER.plan(PlanCommand(api_url=api_url, task_id=task_id, steps=steps)),
        )


@progress.command("update")
@_task_option
@click.option(
    "-s",
    "--step",
    "index",
    type=click.IntRange(min=0),
    required=True,
    help="Step index (0-based).",
)
@click.option(
    "--status",
    type=click.Choice([status.value for status in StepStatus]),
    required=True,
    help="New step status.",
)
@click.option("-n", "--note", default=None, help="Optional note about the step.")
@_api_option
def progress_update(
    task_id: str,
    index: int,
    status: str,
    note: str | None,
    api_url: str | None,
) -> None:
    """Update the status of a step."""

    with _cli_errors():
        _emit_lines(
            PROGRESS_CONTROLLER.update(
                StepUpdateCommand(
                    api_url=api_url,
                    task_id=task_id,
                    index=index,
                    status=status,
                    note=note,
                ),
            ),
        )


@progress.command("add")
@_task_option
@click.option(
    "-a",
    "--after",
    "after_index",
    type=click.IntRange(min=-1),
    required=True,
    help="Insert after this index (-1 to insert at the beginning).",
)
@click.argument("description")
@_api_option
def progress_add(task_id: str, after_index: int, description: str, api_url: str | None) -> None:
    """Add a new step after a given index."""

    with _cli_errors():
        _emit_lines(
            PROGRESS_CONTROLLER.add(
                StepAddCommand(
                    api_url=api_url,
                    task_id=task_id,
                    after_index=after_index,
                    description=description,
                ),
            ),
        )


@progress.command("ask")
@_task_option
@click.argument("question")
@click.argument("more_choices", nargs=-1, metavar="[CHOICE]...")
@click.option(
    "-c",
    "--choice",
    "--choices",
    "choices",
    multiple=True,
    help="Answer choice. Repeat it, or list several values after --choices.",
)
@_api_option
def progress_ask(
    task_id: str,
    question: str,
    more_choices: tuple[str, ...],
    choices: tuple[str, ...],
    api_url: str | None,
) -> None:
    """Ask the user a question about the task."""

    if more_choices and not choices:
        raise click.UsageError(f"Unexpected extra argument: {more_choices[0]}")
    with _cli_errors():
        _emit_lines(
            PROGRESS_CONTROLLER.ask(
                AskCommand(
                    api_url=api_url,
                    task_id=task_id,
                    question=question,
                    choices=choices + more_choices,
                ),
            ),
        )


@progress.command("wait")
@_task_option
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=0),
    default=30,
    show_default=True,
    help="Total seconds to wait; long-polls are repeated until then.",
)
@_api_option
def progress_wait(task_id: str, timeout_seconds: int, api_url: str | None) -> None:
    """Wait for the answer to the pending question."""

    with _cli_errors():
        _emit_lines(
            PROGRESS_CONTROLLER.wait(
                WaitCommand(api_url=api_url, task_id=task_id, timeout_seconds=timeout_seconds),
            ),
        )


@progress.command("show")
@_task_option
@_api_option
def progress_show(task_id: str, api_url: str | None) -> None:
    """Show steps and the pending question of a task."""

    with _cli_errors():
        _emit_lines(PROGRESS_CONTROLLER.show(ShowCommand(api_url=api_url, task_id=task_id)))


@repodepot.group()
def agent() -> None:
    """Control worker agents through a running server."""


@agent.command("start")
@click.argument("repo_id", type=int)
@click.option(
    "--work-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory. Defaults to the repository's local path.",
)
@_api_option
def agent_start(repo_id: int, work_dir: Path | None, api_url: str | None) -> None:
    """Start the agent for repository `REPO_ID`."""

    with _cli_errors():
        _emit_lines(
            AGENT_CONTROLLER.start(
                AgentStartCommand(api_url=api_url, repo_id=repo_id, work_dir=work_dir),
            ),
        )


@agent.command("stop")
@click.argument("repo_id", type=int)
@_api_option
def agent_stop(repo_id: int, api_url: str | None) -> None:
    """Stop the agent for repository `REPO_ID`."""

    with _cli_errors():
        _emit_lines(AGENT_CONTROLLER.stop(AgentRepoCommand(api_url=api_url, repo_id=repo_id)))


@agent.command("status")
@click.argument("repo_id", type=int)
@_api_option
def agent_status(repo_id: int, api_url: str | None) -> None:
    """Show agent status and recent output for repository `REPO_ID`."""

    with _cli_errors():
        _emit_lines(AGENT_CONTROLLER.status(AgentRepoCommand(api_url=api_url, repo_id=repo_id)))


@agent.command("running")
@_api_option
def agent_running(api_url: str | None) -> None:
    """List running agents."""

    with _cli_errors():
        _emit_lines(AGENT_CONTROLLER.running(AgentFleetCommand(api_url=api_url)))


@agent.command("start-all")
@_api_option
def agent_start_all(api_url: str | None) -> None:
    """Start agents for every repository with claimable tasks."""

    with _cli_errors():
        _emit_lines(AGENT_CONTROLLER.start_all(AgentFleetCommand(api_url=api_url)))


@agent.command("stop-all")
@_api_option
def agent_stop_all(api_url: str | None) -> None:
    """Stop every running agent."""

    with _cli_errors():
        _emit_lines(AGENT_CONTROLLER.stop_all(AgentFleetCommand(api_url=api_url)))


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (ApiClientError, OrchestrationError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _log_config(level: str) -> dict[str, Any]:
    config = copy.deepcopy(LOGGING_CONFIG)
    config["loggers"]["repodepot"] = {
        "handlers": ["default"],
        "level": level.upper(),
        "propagate": False,
    }
    return config


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    repodepot()
