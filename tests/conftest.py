"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from repodepot.orchestrator.models import Priority, RepositoryCreate, RepositoryView, TaskCreate
from repodepot.orchestrator.progress_repository import ProgressRepository
from repodepot.orchestrator.task_repository import TaskRepository


@pytest.fixture()
def python_agent_template() -> str:
    """Agent command whose prompt is executed as Python source."""

    return f"{shlex.quote(sys.executable)} -c {{prompt}}"


@pytest.fixture()
def idle_agent_template() -> str:
    """Agent command that ignores its prompt and idles until stopped."""

    idle = shlex.quote("import time; time.sleep(30)")
    return f"{shlex.quote(sys.executable)} -c {idle} {{prompt}}"


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "repodepot.db"


@pytest.fixture()
def task_repository(db_path: Path) -> Iterator[TaskRepository]:
    repository = TaskRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def progress_repository(task_repository: TaskRepository) -> Iterator[ProgressRepository]:
    repository = ProgressRepository(task_repository.db_path)
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def repo(task_repository: TaskRepository, tmp_path: Path) -> RepositoryView:
    work_dir = tmp_path / "checkout"
    work_dir.mkdir()
    return task_repository.add_repository(
        RepositoryCreate(
            full_name="acme/widgets",
            clone_url="https://github.com/acme/widgets.git",
            local_path=str(work_dir),
        ),
    )


@pytest.fixture()
def task_id(task_repository: TaskRepository, repo: RepositoryView) -> str:
    task = task_repository.add_task(
        TaskCreate(
            repo_id=repo.id,
            title="Fix flaky login",
            description="Login fails every other time.",
            priority=Priority.HIGH,
            github_issue_number=42,
            github_issue_url="https://github.com/acme/widgets/issues/42",
        ),
    )
    return task.id
