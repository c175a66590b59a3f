"""Service wiring shared by the API routes."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request

from repodepot.config import Settings
from repodepot.orchestrator.clarification import ClarificationChannel
from repodepot.orchestrator.label_sync import GitHubLabelSync, LabelSync, NullLabelSync
from repodepot.orchestrator.progress_repository import ProgressRepository
from repodepot.orchestrator.services import AgentService, ProgressService, TaskService
from repodepot.orchestrator.supervisor import ProcessSupervisor
from repodepot.orchestrator.task_repository import TaskRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AppServices:
    """Long-lived collaborators of one server process."""

    settings: Settings
    tasks: TaskRepository
    progress_store: ProgressRepository
    supervisor: ProcessSupervisor
    label_sync: LabelSync
    task_service: TaskService
    progress_service: ProgressService
    agent_service: AgentService

    def close(self) -> None:
        """Stop agents, drain label sync, release DB resources."""

        self.supervisor.shutdown()
        self.label_sync.close()
        self.progress_store.close()
        self.tasks.close()


def build_services(
    settings: Settings,
    *,
    label_sync: LabelSync | None = None,
    supervisor: ProcessSupervisor | None = None,
) -> AppServices:
    tasks = TaskRepository(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    progress_store = ProgressRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    channel = ClarificationChannel(
        progress_store,
        poll_interval_ms=settings.clarification.poll_interval_ms,
        max_wait_ms=settings.clarification.max_wait_ms,
    )
    if label_sync is None:
        label_sync = _build_label_sync(settings)
    if supervisor is None:
        supervisor = ProcessSupervisor(
            command_template=settings.agent.command_template,
            log_dir=settings.agent.log_dir,
            api_url=settings.server.api_url,
            buffer_lines=settings.agent.log_buffer_lines,
            status_lines=settings.agent.status_log_lines,
            stop_grace_seconds=settings.agent.stop_grace_seconds,
        )
    return AppServices(
        settings=settings,
        tasks=tasks,
        progress_store=progress_store,
        supervisor=supervisor,
        label_sync=label_sync,
        task_service=TaskService(tasks=tasks, label_sync=label_sync),
        progress_service=ProgressService(
            tasks=tasks,
            progress=progress_store,
            channel=channel,
            label_sync=label_sync,
        ),
        agent_service=AgentService(tasks=tasks, supervisor=supervisor),
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def _build_label_sync(settings: Settings) -> LabelSync:
    github = settings.github
    if not github.enabled or github.token is None:
        logger.info("REPODEPOT_GITHUB_TOKEN is not set; issue label sync is disabled")
        return NullLabelSync()
    return GitHubLabelSync(
        token=github.token,
        api_url=github.api_url,
        timeout_seconds=github.timeout_seconds,
        label_prefix=github.label_prefix,
    )
