from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from fastapi.testclient import TestClient

from repodepot.api.app import create_app
from repodepot.api.dependencies import AppServices, build_services
from repodepot.config import AgentSettings, ClarificationSettings, Settings
from repodepot.orchestrator.models import (
    AgentStatus,
    RepositoryCreate,
    RepositoryView,
    StatusTransition,
    TaskCreate,
)
from repodepot.orchestrator.task_repository import TaskRepository

pytestmark = [
    allure.epic("Agent Orchestration"),
    allure.feature("HTTP API"),
]


class RecordingLabelSync:
    def __init__(self) -> None:
        self.transitions: list[tuple[str, AgentStatus, AgentStatus]] = []

    def submit(self, transition: StatusTransition, *, repo_full_name: str) -> None:
        self.transitions.append((repo_full_name, transition.previous, transition.current))

    def close(self) -> None:
        return None


@pytest.fixture()
def label_sync() -> RecordingLabelSync:
    return RecordingLabelSync()


@pytest.fixture()
def services(
    task_repository: TaskRepository,
    label_sync: RecordingLabelSync,
    idle_agent_template: str,
    tmp_path: Path,
) -> Iterator[AppServices]:
    settings = Settings(
        db_path=task_repository.db_path,
        agent=AgentSettings(
            command_template=idle_agent_template,
            log_dir=tmp_path / "agent-logs",
            stop_grace_seconds=2.0,
        ),
        clarification=ClarificationSettings(poll_interval_ms=50, max_wait_ms=3_000),
    )
    built = build_services(settings, label_sync=label_sync)
    try:
        yield built
    finally:
        built.close()


@pytest.fixture()
def client(services: AppServices) -> Iterator[TestClient]:
    with TestClient(create_app(services=services)) as test_client:
        yield test_client


def test_health(client: TestClient) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_list_claimable_tasks(client: TestClient, repo: RepositoryView, task_id: str) -> None:
    response = client.get(f"/api/tasks/{repo.id}")

    assert response.status_code == 200
    body = response.json()
    assert body["repository"]["fullName"] == "acme/widgets"
    assert body["count"] == 1
    assert body["tasks"][0]["id"] == task_id
    assert body["tasks"][0]["agentStatus"] == "pending"
    assert body["tasks"][0]["priority"] == "high"


def test_unknown_repository_is_404(client: TestClient) -> None:
    response = client.get("/api/tasks/999")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"
    assert "999" in response.json()["error"]


def test_claim_then_conflict(
    client: TestClient,
    task_id: str,
    label_sync: RecordingLabelSync,
) -> None:
    first = client.post(f"/api/tasks/{task_id}/claim")
    second = client.post(f"/api/tasks/{task_id}/claim")

    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["task"]["agentStatus"] == "assigned"
    assert first.json()["task"]["status"] == "in-progress"
    assert second.status_code == 409
    assert second.json()["code"] == "INVALID_TRANSITION"
    assert label_sync.transitions == [
        ("acme/widgets", AgentStatus.PENDING, AgentStatus.ASSIGNED),
    ]


def test_set_status_validation_and_failure(client: TestClient, task_id: str) -> None:
    invalid = client.post(f"/api/tasks/{task_id}/status", json={"status": "sleeping"})
    failed = client.post(
        f"/api/tasks/{task_id}/status",
        json={"status": "failed", "error": "tests do not compile"},
    )

    assert invalid.status_code == 400
    assert invalid.json()["code"] == "VALIDATION_ERROR"
    assert failed.status_code == 200
    assert failed.json()["task"]["agentStatus"] == "failed"
    assert failed.json()["task"]["agentError"] == "tests do not compile"
    assert failed.json()["task"]["status"] == "todo"


def test_complete_appends_summary(client: TestClient, task_id: str) -> None:
    client.post(f"/api/tasks/{task_id}/claim")

    response = client.post(
        f"/api/tasks/{task_id}/complete",
        json={"summary": "Fixed it", "prUrl": "https://github.com/acme/widgets/pull/9"},
    )

    assert response.status_code == 200
    task = response.json()["task"]
    assert task["agentStatus"] == "completed"
    assert task["status"] == "review"
    assert task["description"].endswith(
        "**Agent Summary:** Fixed it\n**PR:** https://github.com/acme/widgets/pull/9",
    )


def test_plan_promotes_task_and_reports_steps(
    client: TestClient,
    task_repository: TaskRepository,
    task_id: str,
    label_sync: RecordingLabelSync,
) -> None:
    client.post(f"/api/tasks/{task_id}/claim")

    response = client.post(f"/api/progress/{task_id}/plan", json={"steps": ["a", "b", "c"]})

    assert response.status_code == 200
    body = response.json()
    assert body["taskId"] == task_id
    assert [(step["index"], step["status"]) for step in body["steps"]] == [
        (0, "pending"),
        (1, "pending"),
        (2, "pending"),
    ]
    assert task_repository.require_task(task_id).agent_status is AgentStatus.IN_PROGRESS
    assert label_sync.transitions[-1] == (
        "acme/widgets",
        AgentStatus.ASSIGNED,
        AgentStatus.IN_PROGRESS,
    )


def test_plan_validation(client: TestClient, task_id: str) -> None:
    empty = client.post(f"/api/progress/{task_id}/plan", json={"steps": []})
    malformed = client.post(f"/api/progress/{task_id}/plan", json={"steps": "a"})
    unknown = client.post("/api/progress/missing-task/plan", json={"steps": ["a"]})

    assert empty.status_code == 400
    assert empty.json()["error"] == "steps must be a non-empty array of strings"
    assert malformed.status_code == 422
    assert unknown.status_code == 404


def test_step_update_add_and_progress_view(client: TestClient, task_id: str) -> None:
    client.post(f"/api/progress/{task_id}/plan", json={"steps": ["a", "b", "c"]})

    updated = client.put(
        f"/api/progress/{task_id}/step/0",
        json={"status": "done", "note": "trivial"},
    )
    added = client.post(
        f"/api/progress/{task_id}/step",
        json={"description": "X", "afterIndex": 1},
    )
    out_of_range = client.post(
        f"/api/progress/{task_id}/step",
        json={"description": "Y", "afterIndex": 9},
    )
    missing_step = client.put(f"/api/progress/{task_id}/step/9", json={"status": "done"})
    progress = client.get(f"/api/progress/{task_id}")

    assert updated.status_code == 200
    assert updated.json()["step"]["completedAt"] is not None
    assert updated.json()["step"]["note"] == "trivial"
    assert added.json()["step"]["index"] == 2
    assert out_of_range.status_code == 400
    assert missing_step.status_code == 404
    body = progress.json()
    assert [step["description"] for step in body["steps"]] == ["a", "b", "X", "c"]
    assert body["currentQuestion"] is None


def test_question_round_trip(client: TestClient, task_id: str) -> None:
    asked = client.post(
        f"/api/progress/{task_id}/ask",
        json={"question": "Which DB?", "choices": ["sqlite", "postgres"]},
    )
    duplicate = client.post(f"/api/progress/{task_id}/ask", json={"question": "Again?"})
    awaiting = client.get("/api/progress/awaiting/all")
    before = client.get(f"/api/progress/{task_id}/answer", params={"timeout": 0})
    progress = client.get(f"/api/progress/{task_id}")
    answered = client.post(f"/api/progress/{task_id}/answer", json={"answer": "sqlite"})
    after = client.get(f"/api/progress/{task_id}/answer", params={"timeout": 0})

    assert asked.status_code == 200
    assert asked.json()["question"]["choices"] == ["sqlite", "postgres"]
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "QUESTION_ALREADY_PENDING"
    assert awaiting.json()["count"] == 1
    assert awaiting.json()["tasks"][0]["taskTitle"] == "Fix flaky login"
    assert before.json()["answered"] is False
    assert before.json()["question"]["question"] == "Which DB?"
    assert progress.json()["currentQuestion"]["question"] == "Which DB?"
    assert answered.json()["success"] is True
    assert after.json()["answered"] is True
    assert after.json()["question"]["answer"] == "sqlite"
    assert client.get("/api/progress/awaiting/all").json()["count"] == 0


def test_wait_without_question_and_answer_without_question(
    client: TestClient,
    task_id: str,
) -> None:
    waited = client.get(f"/api/progress/{task_id}/answer", params={"timeout": 0})
    answered = client.post(f"/api/progress/{task_id}/answer", json={"answer": "hi"})

    assert waited.json() == {
        "answered": False,
        "message": "No pending question for this task",
    }
    assert answered.status_code == 409
    assert answered.json()["code"] == "NO_PENDING_QUESTION"


def test_progress_routes_reject_unknown_task(client: TestClient) -> None:
    progress = client.get("/api/progress/no-such-task")
    waited = client.get("/api/progress/no-such-task/answer", params={"timeout": 0})
    answered = client.post("/api/progress/no-such-task/answer", json={"answer": "hi"})

    for response in (progress, waited, answered):
        assert response.status_code == 404
        assert response.json()["error"] == "Task not found: no-such-task"


def test_wait_without_timeout_returns_at_once(client: TestClient, task_id: str) -> None:
    client.post(f"/api/progress/{task_id}/ask", json={"question": "Ship it?"})

    started = time.monotonic()
    response = client.get(f"/api/progress/{task_id}/answer")
    elapsed = time.monotonic() - started

    assert response.status_code == 200
    assert response.json()["answered"] is False
    assert response.json()["question"]["question"] == "Ship it?"
    assert elapsed < 1.0


def test_open_long_polls_leave_other_routes_responsive(
    client: TestClient,
    services: AppServices,
    task_id: str,
) -> None:
    client.post(f"/api/progress/{task_id}/ask", json={"question": "Deploy now?"})
    waiter_count = 45
    responses = []

    def _long_poll() -> None:
        responses.append(
            client.get(f"/api/progress/{task_id}/answer", params={"timeout": 3_000}),
        )

    pollers = [threading.Thread(target=_long_poll) for _ in range(waiter_count)]
    for poller in pollers:
        poller.start()
    channel = services.progress_service.channel
    deadline = time.monotonic() + 5
    while channel._waiters.get(task_id, 0) < waiter_count and time.monotonic() < deadline:
        time.sleep(0.02)
    in_flight = channel._waiters.get(task_id, 0)

    started = time.monotonic()
    health = client.get("/api/health")
    health_elapsed = time.monotonic() - started
    answered = client.post(f"/api/progress/{task_id}/answer", json={"answer": "yes"})
    for poller in pollers:
        poller.join(timeout=10)

    assert in_flight == waiter_count
    assert channel._waiters.get(task_id, 0) == 0
    assert health.status_code == 200
    assert health_elapsed < 1.0
    assert answered.status_code == 200
    assert len(responses) == waiter_count
    assert all(response.json()["answered"] is True for response in responses)


def test_long_poll_returns_when_answer_arrives(
    client: TestClient,
    services: AppServices,
    task_id: str,
) -> None:
    client.post(f"/api/progress/{task_id}/ask", json={"question": "Ship it?"})

    def _answer_later() -> None:
        time.sleep(0.2)
        services.progress_service.answer(task_id, "yes")

    answerer = threading.Thread(target=_answer_later)
    answerer.start()
    started = time.monotonic()
    response = client.get(f"/api/progress/{task_id}/answer", params={"timeout": 3_000})
    elapsed = time.monotonic() - started
    answerer.join(timeout=5)

    assert response.json()["answered"] is True
    assert response.json()["question"]["answer"] == "yes"
    assert elapsed < 2.5


def test_agent_start_status_stop(client: TestClient, repo: RepositoryView) -> None:
    started = client.post(f"/api/agent/start/{repo.id}")
    duplicate = client.post(f"/api/agent/start/{repo.id}")
    status = client.get(f"/api/agent/status/{repo.id}")
    running = client.get("/api/agent/running")
    stopped = client.post(f"/api/agent/stop/{repo.id}")
    stopped_again = client.post(f"/api/agent/stop/{repo.id}")
    idle = client.get(f"/api/agent/status/{repo.id}")

    assert started.status_code == 200
    assert started.json()["success"] is True
    assert started.json()["repoId"] == repo.id
    assert started.json()["logFile"].endswith(".log")
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "ALREADY_RUNNING"
    assert status.json()["running"] is True
    assert status.json()["pid"] == started.json()["pid"]
    assert running.json()["count"] == 1
    assert stopped.json()["pid"] == started.json()["pid"]
    assert stopped_again.status_code == 409
    assert stopped_again.json()["code"] == "NOT_RUNNING"
    assert idle.json() == {"repoId": repo.id, "running": False}


def test_agent_start_errors(
    client: TestClient,
    task_repository: TaskRepository,
) -> None:
    repository = task_repository.add_repository(
        RepositoryCreate(full_name="acme/remote-only", clone_url="https://example.test/r.git"),
    )

    unknown = client.post("/api/agent/start/999")
    no_work_dir = client.post(f"/api/agent/start/{repository.id}")

    assert unknown.status_code == 404
    assert no_work_dir.status_code == 409
    assert no_work_dir.json()["code"] == "NO_WORK_DIR"


def test_agent_start_with_explicit_work_dir(
    client: TestClient,
    task_repository: TaskRepository,
    tmp_path: Path,
) -> None:
    repository = task_repository.add_repository(
        RepositoryCreate(full_name="acme/remote-only", clone_url="https://example.test/r.git"),
    )

    response = client.post(
        f"/api/agent/start/{repository.id}",
        json={"workDir": str(tmp_path)},
    )

    assert response.status_code == 200
    assert client.post("/api/agent/stop-all").json()["stoppedCount"] == 1


def test_start_all_classifies_repositories(
    client: TestClient,
    task_repository: TaskRepository,
    repo: RepositoryView,
    task_id: str,
) -> None:
    idle_repo = task_repository.add_repository(
        RepositoryCreate(full_name="acme/idle", clone_url="https://example.test/idle.git"),
    )
    remote_repo = task_repository.add_repository(
        RepositoryCreate(full_name="acme/remote", clone_url="https://example.test/remote.git"),
    )
    task_repository.add_task(
        TaskCreate(repo_id=remote_repo.id, title="Remote work", github_issue_number=3),
    )

    first = client.post("/api/agent/start-all").json()
    second = client.post("/api/agent/start-all").json()
    stopped = client.post("/api/agent/stop-all").json()

    statuses = {entry["repoId"]: entry["status"] for entry in first["results"]}
    assert statuses == {
        repo.id: "started",
        idle_repo.id: "no_tasks",
        remote_repo.id: "no_local_path",
    }
    assert first["summary"] == {
        "totalRepos": 3,
        "agentsStarted": 1,
        "alreadyRunning": 0,
        "noTasks": 1,
        "noLocalPath": 1,
        "errors": 0,
        "totalPendingTasks": 2,
    }
    assert second["summary"]["alreadyRunning"] == 1
    assert stopped == {"success": True, "stoppedCount": 1, "stoppedRepos": [repo.id]}


def test_repository_overview_counts(
    client: TestClient,
    task_repository: TaskRepository,
    repo: RepositoryView,
    task_id: str,
) -> None:
    second = task_repository.add_task(
        TaskCreate(repo_id=repo.id, title="Second", github_issue_number=43),
    )
    task_repository.claim(second.id)

    body = client.get("/api/agent/repos").json()

    assert body["total"] == 1
    assert body["repos"][0]["taskCounts"] == {"pending": 1, "assigned": 1, "inProgress": 0}
