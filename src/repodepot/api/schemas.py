"""Request bodies and JSON payload builders for the orchestration API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from repodepot.orchestrator.models import (
    AgentStatusView,
    AnswerWait,
    AwaitingInput,
    ProgressSnapshot,
    QuestionView,
    RepositoryOverview,
    RepositoryView,
    RunningAgent,
    StartAllReport,
    StepView,
    StopAllReport,
    TaskView,
)


class _CamelBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StatusRequest(_CamelBody):
    status: str
    error: str | None = None


class CompleteRequest(_CamelBody):
    summary: str | None = None
    pr_url: str | None = None


class PlanRequest(_CamelBody):
    steps: list[str]


class StepUpdateRequest(_CamelBody):
    status: str
    note: str | None = None


class StepAddRequest(_CamelBody):
    description: str
    after_index: int


class AskRequest(_CamelBody):
    question: str
    choices: list[str] | None = None


class AnswerRequest(_CamelBody):
    answer: str


class StartAgentRequest(_CamelBody):
    work_dir: str | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def repository_payload(repository: RepositoryView) -> dict[str, Any]:
    return {
        "id": repository.id,
        "name": repository.name,
        "fullName": repository.full_name,
        "localPath": repository.local_path,
        "cloneUrl": repository.clone_url,
        "defaultBranch": repository.default_branch,
        "createdAt": _iso(repository.created_at),
    }


def task_payload(task: TaskView) -> dict[str, Any]:
    return {
        "id": task.id,
        "repoId": task.repo_id,
        "title": task.title,
        "description": task.description,
        "status": task.status.value,
        "priority": task.priority.value,
        "githubIssueNumber": task.github_issue_number,
        "githubIssueUrl": task.github_issue_url,
        "agentStatus": task.agent_status.value,
        "agentClaimedAt": _iso(task.agent_claimed_at),
        "agentCompletedAt": _iso(task.agent_completed_at),
        "agentError": task.agent_error,
        "createdAt": _iso(task.created_at),
        "updatedAt": _iso(task.updated_at),
    }


def step_payload(step: StepView) -> dict[str, Any]:
    return {
        "id": step.id,
        "taskId": step.task_id,
        "index": step.index,
        "description": step.description,
        "status": step.status.value,
        "note": step.note,
        "startedAt": _iso(step.started_at),
        "completedAt": _iso(step.completed_at),
    }


def question_payload(question: QuestionView) -> dict[str, Any]:
    return {
        "id": question.id,
        "taskId": question.task_id,
        "question": question.question,
        "choices": question.choices,
        "answer": question.answer,
        "askedAt": _iso(question.asked_at),
        "answeredAt": _iso(question.answered_at),
    }


def progress_payload(snapshot: ProgressSnapshot) -> dict[str, Any]:
    return {
        "taskId": snapshot.task_id,
        "steps": [step_payload(step) for step in snapshot.steps],
        "currentQuestion": (
            question_payload(snapshot.current_question)
            if snapshot.current_question is not None
            else None
        ),
    }


def answer_wait_payload(result: AnswerWait) -> dict[str, Any]:
    payload: dict[str, Any] = {"answered": result.answered}
    if result.question is not None:
        payload["question"] = question_payload(result.question)
    if result.message is not None:
        payload["message"] = result.message
    return payload


def awaiting_payload(items: list[AwaitingInput]) -> dict[str, Any]:
    return {
        "tasks": [
            {
                "taskId": item.task_id,
                "taskTitle": item.task_title,
                "taskStatus": item.task_status,
                "question": question_payload(item.question),
            }
            for item in items
        ],
        "count": len(items),
    }


def running_agent_payload(agent: RunningAgent) -> dict[str, Any]:
    return {
        "repoId": agent.repo_id,
        "startedAt": _iso(agent.started_at),
        "pid": agent.pid,
        "logFile": agent.log_file,
    }


def agent_status_payload(view: AgentStatusView) -> dict[str, Any]:
    if not view.running:
        return {"repoId": view.repo_id, "running": False}
    return {
        "repoId": view.repo_id,
        "running": True,
        "startedAt": _iso(view.started_at),
        "pid": view.pid,
        "logFile": view.log_file,
        "recentLogs": view.recent_logs,
    }


def start_all_payload(report: StartAllReport) -> dict[str, Any]:
    summary = report.summary
    return {
        "success": True,
        "summary": {
            "totalRepos": summary.total_repos,
            "agentsStarted": summary.agents_started,
            "alreadyRunning": summary.already_running,
            "noTasks": summary.no_tasks,
            "noLocalPath": summary.no_local_path,
            "errors": summary.errors,
            "totalPendingTasks": summary.total_pending_tasks,
        },
        "results": [
            {
                "repoId": entry.repo_id,
                "repoName": entry.repo_name,
                "status": entry.status.value,
                "pendingTasks": entry.pending_tasks,
                "error": entry.error,
                "pid": entry.pid,
                "logFile": entry.log_file,
            }
            for entry in report.results
        ],
    }


def stop_all_payload(report: StopAllReport) -> dict[str, Any]:
    return {
        "success": True,
        "stoppedCount": report.stopped_count,
        "stoppedRepos": report.stopped_repos,
    }


def repository_overview_payload(overview: RepositoryOverview) -> dict[str, Any]:
    repository = overview.repository
    return {
        "id": repository.id,
        "fullName": repository.full_name,
        "localPath": repository.local_path,
        "cloneUrl": repository.clone_url,
        "taskCounts": {
            "pending": overview.pending,
            "assigned": overview.assigned,
            "inProgress": overview.in_progress,
        },
    }
