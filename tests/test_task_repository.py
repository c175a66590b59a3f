from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from repodepot.orchestrator.errors import InvalidTransitionError, NotFoundError, ValidationError
from repodepot.orchestrator.models import (
    AgentStatus,
    Priority,
    RepositoryCreate,
    RepositoryView,
    TaskCreate,
    WorkflowStatus,
)
from repodepot.orchestrator.task_repository import TaskRepository

pytestmark = [
    allure.epic("Agent Orchestration"),
    allure.feature("Task Claims"),
]


def _add_task(
    repository: TaskRepository,
    repo_id: int,
    title: str,
    *,
    priority: Priority = Priority.MEDIUM,
    issue_number: int | None = 1,
) -> str:
    return repository.add_task(
        TaskCreate(
            repo_id=repo_id,
            title=title,
            priority=priority,
            github_issue_number=issue_number,
        ),
    ).id


def test_add_repository_defaults_name_and_rejects_bare_names(
    task_repository: TaskRepository,
) -> None:
    created = task_repository.add_repository(
        RepositoryCreate(full_name="acme/gadgets", clone_url="https://github.com/acme/gadgets.git"),
    )
    assert created.name == "gadgets"
    assert created.default_branch == "main"
    assert task_repository.get_repository(created.id) == created

    with pytest.raises(ValidationError, match="owner/repo"):
        task_repository.add_repository(RepositoryCreate(full_name="gadgets", clone_url="x"))


def test_add_task_requires_existing_repository_and_title(task_repository: TaskRepository) -> None:
    with pytest.raises(NotFoundError):
        task_repository.add_task(TaskCreate(repo_id=999, title="Orphan"))

    repo = task_repository.add_repository(
        RepositoryCreate(full_name="acme/gadgets", clone_url="https://github.com/acme/gadgets.git"),
    )
    with pytest.raises(ValidationError):
        task_repository.add_task(TaskCreate(repo_id=repo.id, title="   "))

    task = task_repository.add_task(TaskCreate(repo_id=repo.id, title="  Trim me "))
    assert task.title == "Trim me"
    assert task.status is WorkflowStatus.TODO
    assert task.agent_status is AgentStatus.PENDING


def test_list_claimable_orders_by_priority_then_age(
    task_repository: TaskRepository,
    repo: RepositoryView,
) -> None:
    low = _add_task(task_repository, repo.id, "low", priority=Priority.LOW)
    medium_first = _add_task(task_repository, repo.id, "medium first")
    critical = _add_task(task_repository, repo.id, "critical", priority=Priority.CRITICAL)
    medium_second = _add_task(task_repository, repo.id, "medium second")
    high = _add_task(task_repository, repo.id, "high", priority=Priority.HIGH)
    _add_task(task_repository, repo.id, "no issue", priority=Priority.CRITICAL, issue_number=None)
    claimed = _add_task(task_repository, repo.id, "claimed", priority=Priority.CRITICAL)
    task_repository.claim(claimed)

    ordered = [task.id for task in task_repository.list_claimable(repo.id)]

    assert ordered == [critical, high, medium_first, medium_second, low]


def test_list_claimable_unknown_repository_is_not_found(task_repository: TaskRepository) -> None:
    with pytest.raises(NotFoundError):
        task_repository.list_claimable(12345)


def test_claim_moves_task_to_assigned_once(task_repository: TaskRepository, task_id: str) -> None:
    transition = task_repository.claim(task_id)

    assert transition.previous is AgentStatus.PENDING
    assert transition.current is AgentStatus.ASSIGNED
    assert transition.task.agent_status is AgentStatus.ASSIGNED
    assert transition.task.status is WorkflowStatus.IN_PROGRESS
    assert transition.task.agent_claimed_at is not None
    assert transition.task.agent_claimed_at.tzinfo is not None

    with pytest.raises(InvalidTransitionError, match="already assigned"):
        task_repository.claim(task_id)
    with pytest.raises(NotFoundError):
        task_repository.claim("missing-task")


def test_concurrent_claims_have_exactly_one_winner(
    task_repository: TaskRepository,
    task_id: str,
    db_path: Path,
) -> None:
    contenders = 4
    barrier = threading.Barrier(contenders)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def _claim() -> None:
        repository = TaskRepository(db_path)
        try:
            barrier.wait(timeout=5)
            repository.claim(task_id)
            outcome = "won"
        except InvalidTransitionError:
            outcome = "lost"
        finally:
            repository.close()
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_claim) for _ in range(contenders)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(outcomes) == ["lost"] * (contenders - 1) + ["won"]
    assert task_repository.require_task(task_id).agent_status is AgentStatus.ASSIGNED


def test_set_status_failed_records_default_error_and_reopens_workflow(
    task_repository: TaskRepository,
    task_id: str,
) -> None:
    task_repository.claim(task_id)

    transition = task_repository.set_status(task_id, AgentStatus.FAILED)

    assert transition.task.agent_status is AgentStatus.FAILED
    assert transition.task.agent_error == "Unknown error"
    assert transition.task.status is WorkflowStatus.TODO


def test_set_status_rejects_unknown_and_non_reportable_statuses(
    task_repository: TaskRepository,
    task_id: str,
) -> None:
    with pytest.raises(ValidationError, match="Invalid status"):
        task_repository.set_status(task_id, "bogus")
    with pytest.raises(ValidationError, match="Must be one of"):
        task_repository.set_status(task_id, "pending")
    with pytest.raises(NotFoundError):
        task_repository.set_status("missing-task", "in_progress")


def test_set_status_is_forward_only_and_idempotent_for_same_status(
    task_repository: TaskRepository,
    task_id: str,
) -> None:
    task_repository.claim(task_id)
    task_repository.set_status(task_id, "in_progress")

    again = task_repository.set_status(task_id, "in_progress")
    assert again.task.agent_status is AgentStatus.IN_PROGRESS

    with pytest.raises(InvalidTransitionError, match="cannot move back"):
        task_repository.set_status(task_id, "assigned")

    task_repository.set_status(task_id, "completed")
    with pytest.raises(InvalidTransitionError, match="already completed"):
        task_repository.set_status(task_id, "failed", error="late failure")


def test_complete_appends_summary_and_pr_link(
    task_repository: TaskRepository,
    task_id: str,
) -> None:
    task_repository.claim(task_id)

    transition = task_repository.complete(
        task_id,
        summary="Retried the token refresh.",
        pr_url="https://github.com/acme/widgets/pull/7",
    )

    task = transition.task
    assert task.agent_status is AgentStatus.COMPLETED
    assert task.status is WorkflowStatus.REVIEW
    assert task.agent_completed_at is not None
    assert task.description == (
        "Login fails every other time.\n\n---\n**Agent Summary:** Retried the token refresh."
        "\n**PR:** https://github.com/acme/widgets/pull/7"
    )


def test_complete_without_summary_keeps_description(
    task_repository: TaskRepository,
    task_id: str,
) -> None:
    transition = task_repository.complete(task_id, summary=None)

    assert transition.previous is AgentStatus.PENDING
    assert transition.task.description == "Login fails every other time."


def test_promote_for_plan_only_from_pending_or_assigned(
    task_repository: TaskRepository,
    task_id: str,
) -> None:
    task_repository.claim(task_id)

    promoted = task_repository.promote_for_plan(task_id)
    assert promoted is not None
    assert promoted.previous is AgentStatus.ASSIGNED
    assert promoted.current is AgentStatus.IN_PROGRESS

    assert task_repository.promote_for_plan(task_id) is None


def test_count_tasks_by_agent_status(task_repository: TaskRepository, repo: RepositoryView) -> None:
    first = _add_task(task_repository, repo.id, "first")
    _add_task(task_repository, repo.id, "second")
    task_repository.claim(first)

    counts = task_repository.count_tasks_by_agent_status(repo.id)

    assert counts[AgentStatus.PENDING] == 1
    assert counts[AgentStatus.ASSIGNED] == 1
    assert counts[AgentStatus.COMPLETED] == 0
