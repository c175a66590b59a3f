"""Task discovery and claim routes used by worker agents."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from repodepot.api.dependencies import AppServices, get_services
from repodepot.api.schemas import (
    CompleteRequest,
    StatusRequest,
    repository_payload,
    task_payload,
)

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("/{repo_id}")
def list_claimable_tasks(
    repo_id: int,
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    repository, tasks = services.task_service.list_claimable(repo_id)
    return {
        "repository": repository_payload(repository),
        "tasks": [task_payload(task) for task in tasks],
        "count": len(tasks),
    }


@router.post("/{task_id}/claim")
def claim_task(task_id: str, services: AppServices = Depends(get_services)) -> dict[str, Any]:
    task = services.task_service.claim(task_id)
    return {"success": True, "task": task_payload(task)}


@router.post("/{task_id}/status")
def set_task_status(
    task_id: str,
    body: StatusRequest,
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    task = services.task_service.set_status(task_id, body.status, error=body.error)
    return {"success": True, "task": task_payload(task)}


@router.post("/{task_id}/complete")
def complete_task(
    task_id: str,
    body: CompleteRequest,
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    task = services.task_service.complete(task_id, summary=body.summary, pr_url=body.pr_url)
    return {"success": True, "task": task_payload(task)}
