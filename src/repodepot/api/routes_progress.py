"""Progress ledger and clarification routes."""

from __future__ import annotations

import asyncio
import threading
from functools import partial
from typing import Any

import anyio
import anyio.to_thread
from fastapi import APIRouter, Depends, Query, Request

from repodepot.api.dependencies import AppServices, get_services
from repodepot.api.schemas import (
    AnswerRequest,
    AskRequest,
    PlanRequest,
    StepAddRequest,
    StepUpdateRequest,
    answer_wait_payload,
    awaiting_payload,
    progress_payload,
    question_payload,
    step_payload,
)

router = APIRouter(prefix="/progress", tags=["progress"])

_DISCONNECT_POLL_SECONDS = 0.25


@router.get("/awaiting/all")
def list_awaiting_input(services: AppServices = Depends(get_services)) -> dict[str, Any]:
    return awaiting_payload(services.progress_service.list_awaiting_input())


@router.post("/{task_id}/plan")
def create_plan(
    task_id: str,
    body: PlanRequest,
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    steps = services.progress_service.create_plan(task_id, body.steps)
    return {"taskId": task_id, "steps": [step_payload(step) for step in steps]}


@router.get("/{task_id}")
def get_progress(task_id: str, services: AppServices = Depends(get_services)) -> dict[str, Any]:
    return progress_payload(services.progress_service.get_progress(task_id))


@router.put("/{task_id}/step/{index}")
def update_step(
    task_id: str,
    index: int,
    body: StepUpdateRequest,
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    step = services.progress_service.update_step(task_id, index, body.status, note=body.note)
    return {"step": step_payload(step)}


@router.post("/{task_id}/step")
def add_step(
    task_id: str,
    body: StepAddRequest,
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    step = services.progress_service.add_step(
        task_id,
        body.description,
        after_index=body.after_index,
    )
    return {"step": step_payload(step)}


@router.post("/{task_id}/ask")
def ask_question(
    task_id: str,
    body: AskRequest,
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    question = services.progress_service.ask(task_id, body.question, choices=body.choices)
    return {"question": question_payload(question)}


@router.get("/{task_id}/answer")
async def wait_for_answer(
    task_id: str,
    request: Request,
    timeout: int = Query(default=0, description="Milliseconds to wait; 0 returns at once."),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    """Long-poll for the answer on a worker thread from the answer-wait limiter."""

    disconnected = threading.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, disconnected))
    try:
        result = await anyio.to_thread.run_sync(
            partial(
                services.progress_service.wait_for_answer,
                task_id,
                timeout,
                should_abort=disconnected.is_set,
            ),
            limiter=_answer_wait_limiter(request, services),
        )
    finally:
        watcher.cancel()
    return answer_wait_payload(result)


@router.post("/{task_id}/answer")
def answer_question(
    task_id: str,
    body: AnswerRequest,
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    question = services.progress_service.answer(task_id, body.answer)
    return {"success": True, "question": question_payload(question)}


async def _watch_disconnect(request: Request, disconnected: threading.Event) -> None:
    while not disconnected.is_set():
        if await request.is_disconnected():
            disconnected.set()
            return
        await asyncio.sleep(_DISCONNECT_POLL_SECONDS)


def _answer_wait_limiter(request: Request, services: AppServices) -> anyio.CapacityLimiter:
    limiter = getattr(request.app.state, "answer_wait_limiter", None)
    if limiter is None:
        limiter = anyio.CapacityLimiter(services.settings.clarification.max_waiters)
        request.app.state.answer_wait_limiter = limiter
    return limiter
