from __future__ import annotations

import json
from dataclasses import replace

import allure
import httpx
import pytest

from repodepot.orchestrator.errors import ExternalSyncError
from repodepot.orchestrator.label_sync import GitHubLabelSync, NullLabelSync, agent_label
from repodepot.orchestrator.models import AgentStatus, StatusTransition
from repodepot.orchestrator.task_repository import TaskRepository

pytestmark = [
    allure.epic("Agent Orchestration"),
    allure.feature("Issue Label Sync"),
]


def _sync_with(handler) -> GitHubLabelSync:
    client = httpx.Client(
        base_url="https://api.github.test",
        transport=httpx.MockTransport(handler),
    )
    return GitHubLabelSync(token="token", client=client)


@pytest.fixture()
def transition(task_repository: TaskRepository, task_id: str) -> StatusTransition:
    return task_repository.claim(task_id)


def test_agent_label_uses_prefix_and_dashes() -> None:
    assert agent_label(AgentStatus.IN_PROGRESS) == "claude-code-in-progress"
    assert agent_label(AgentStatus.COMPLETED, prefix="bot-") == "bot-completed"


def test_apply_swaps_previous_label_for_current(transition: StatusTransition) -> None:
    requests: list[tuple[str, str, bytes]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path, request.content))
        if request.method == "DELETE":
            return httpx.Response(404, json={"message": "Label does not exist"})
        return httpx.Response(200, json=[{"name": "claude-code-assigned"}])

    sync = _sync_with(handler)
    try:
        sync.apply(transition, repo_full_name="acme/widgets")
    finally:
        sync.close()

    assert [(method, path) for method, path, _ in requests] == [
        ("DELETE", "/repos/acme/widgets/issues/42/labels/claude-code-pending"),
        ("POST", "/repos/acme/widgets/issues/42/labels"),
    ]
    assert json.loads(requests[1][2]) == {"labels": ["claude-code-assigned"]}


def test_apply_raises_on_github_error(transition: StatusTransition) -> None:
    sync = _sync_with(lambda request: httpx.Response(500))
    try:
        with pytest.raises(ExternalSyncError, match="HTTP 500"):
            sync.apply(transition, repo_full_name="acme/widgets")
    finally:
        sync.close()


def test_submit_swallows_failures(transition: StatusTransition) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("github unreachable", request=request)

    sync = _sync_with(handler)
    try:
        future = sync.submit(transition, repo_full_name="acme/widgets")
        assert future is not None
        assert future.result(timeout=5) is None
    finally:
        sync.close()


def test_submit_skips_tasks_without_issue(transition: StatusTransition) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    detached = replace(transition, task=replace(transition.task, github_issue_number=None))
    sync = _sync_with(handler)
    try:
        assert sync.submit(detached, repo_full_name="acme/widgets") is None
    finally:
        sync.close()
    assert calls == []


def test_null_label_sync_does_nothing(transition: StatusTransition) -> None:
    sync = NullLabelSync()

    assert sync.submit(transition, repo_full_name="acme/widgets") is None
    sync.close()
