"""Agent process supervision routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from repodepot.api.dependencies import AppServices, get_services
from repodepot.api.schemas import (
    StartAgentRequest,
    agent_status_payload,
    repository_overview_payload,
    running_agent_payload,
    start_all_payload,
    stop_all_payload,
)

router = APIRouter(prefix="/agent", tags=["agent"])


@router.get("/repos")
def list_repositories(services: AppServices = Depends(get_services)) -> dict[str, Any]:
    overviews = services.agent_service.list_repositories()
    return {
        "repos": [repository_overview_payload(item) for item in overviews],
        "total": len(overviews),
    }


@router.post("/start-all")
def start_all_agents(services: AppServices = Depends(get_services)) -> dict[str, Any]:
    return start_all_payload(services.agent_service.start_all())


@router.post("/stop-all")
def stop_all_agents(services: AppServices = Depends(get_services)) -> dict[str, Any]:
    return stop_all_payload(services.agent_service.stop_all())


@router.post("/start/{repo_id}")
def start_agent(
    repo_id: int,
    body: StartAgentRequest | None = Body(default=None),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    agent = services.agent_service.start(
        repo_id,
        work_dir=body.work_dir if body is not None else None,
    )
    return {
        "success": True,
        "message": f"Agent started for repository {repo_id}",
        **running_agent_payload(agent),
    }


@router.post("/stop/{repo_id}")
def stop_agent(repo_id: int, services: AppServices = Depends(get_services)) -> dict[str, Any]:
    agent = services.agent_service.stop(repo_id)
    return {
        "success": True,
        "message": f"Agent stopped for repository {repo_id}",
        "pid": agent.pid,
    }


@router.get("/status/{repo_id}")
def agent_status(repo_id: int, services: AppServices = Depends(get_services)) -> dict[str, Any]:
    return agent_status_payload(services.agent_service.status(repo_id))


@router.get("/running")
def list_running_agents(services: AppServices = Depends(get_services)) -> dict[str, Any]:
    agents = services.agent_service.list_running()
    return {"agents": [running_agent_payload(agent) for agent in agents], "count": len(agents)}
