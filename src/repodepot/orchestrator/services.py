"""Use-case services composing the task store, progress ledger and supervisor."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from repodepot.orchestrator.clarification import ClarificationChannel
from repodepot.orchestrator.errors import NotFoundError, OrchestrationError
from repodepot.orchestrator.label_sync import LabelSync
from repodepot.orchestrator.models import (
    AgentStatus,
    AgentStatusView,
    AnswerWait,
    AwaitingInput,
    ProgressSnapshot,
    QuestionView,
    RepositoryOverview,
    RepositoryView,
    RunningAgent,
    StartAllEntry,
    StartAllReport,
    StartAllSummary,
    StartOutcome,
    StatusTransition,
    StepStatus,
    StepView,
    StopAllReport,
    TaskView,
)
from repodepot.orchestrator.progress_repository import ProgressRepository
from repodepot.orchestrator.supervisor import ProcessSupervisor
from repodepot.orchestrator.task_repository import TaskRepository

logger = logging.getLogger(__name__)


class _LabelSyncMixin:
    tasks: TaskRepository
    label_sync: LabelSync

    def _sync_labels(self, transition: StatusTransition) -> None:
        repository = self.tasks.get_repository(transition.task.repo_id)
        if repository is None:
            return
        self.label_sync.submit(transition, repo_full_name=repository.full_name)


class TaskService(_LabelSyncMixin):
    """Claim state machine operations with label mirroring after commit."""

    def __init__(self, *, tasks: TaskRepository, label_sync: LabelSync) -> None:
        self.tasks = tasks
        self.label_sync = label_sync

    def list_claimable(self, repo_id: int) -> tuple[RepositoryView, list[TaskView]]:
        repository = self.tasks.get_repository(repo_id)
        if repository is None:
            raise NotFoundError(f"Repository not found: {repo_id}")
        return repository, self.tasks.list_claimable(repo_id)

    def claim(self, task_id: str) -> TaskView:
        transition = self.tasks.claim(task_id)
        logger.info("Task %s claimed", task_id)
        self._sync_labels(transition)
        return transition.task

    def set_status(
        self,
        task_id: str,
        status: AgentStatus | str,
        *,
        error: str | None = None,
    ) -> TaskView:
        transition = self.tasks.set_status(task_id, status, error=error)
        logger.info(
            "Task %s agent status %s -> %s",
            task_id,
            transition.previous.value,
            transition.current.value,
        )
        self._sync_labels(transition)
        return transition.task

    def complete(self, task_id: str, *, summary: str | None, pr_url: str | None = None) -> TaskView:
        transition = self.tasks.complete(task_id, summary=summary, pr_url=pr_url)
        logger.info("Task %s completed", task_id)
        self._sync_labels(transition)
        return transition.task


class ProgressService(_LabelSyncMixin):
    """Plan/step reporting and the clarification channel for one task at a time."""

    def __init__(
        self,
        *,
        tasks: TaskRepository,
        progress: ProgressRepository,
        channel: ClarificationChannel,
        label_sync: LabelSync,
    ) -> None:
        self.tasks = tasks
        self.progress = progress
        self.channel = channel
        self.label_sync = label_sync

    def create_plan(self, task_id: str, steps: Sequence[str]) -> list[StepView]:
        """Replace the plan; a pending or assigned task moves to in_progress."""

        created = self.progress.create_plan(task_id, steps)
        transition = self.tasks.promote_for_plan(task_id)
        if transition is not None:
            self._sync_labels(transition)
        logger.info("Task %s plan declared with %s step(s)", task_id, len(created))
        return created

    def update_step(
        self,
        task_id: str,
        index: int,
        status: StepStatus | str,
        *,
        note: str | None = None,
    ) -> StepView:
        return self.progress.update_step(task_id, index, status, note=note)

    def add_step(self, task_id: str, description: str, *, after_index: int) -> StepView:
        return self.progress.add_step(task_id, description, after_index=after_index)

    def get_progress(self, task_id: str) -> ProgressSnapshot:
        self.tasks.require_task(task_id)
        return ProgressSnapshot(
            task_id=task_id,
            steps=self.progress.get_steps(task_id),
            current_question=self.channel.get_pending_question(task_id),
        )

    def ask(
        self,
        task_id: str,
        question: str,
        *,
        choices: Sequence[str] | None = None,
    ) -> QuestionView:
        return self.channel.ask(task_id, question, choices=choices)

    def wait_for_answer(
        self,
        task_id: str,
        timeout_ms: int | None,
        *,
        should_abort: Callable[[], bool] | None = None,
    ) -> AnswerWait:
        self.tasks.require_task(task_id)
        return self.channel.wait_for_answer(task_id, timeout_ms, should_abort=should_abort)

    def answer(self, task_id: str, answer: str) -> QuestionView:
        return self.channel.answer(task_id, answer)

    def list_awaiting_input(self) -> list[AwaitingInput]:
        return self.channel.list_awaiting_input()


class AgentService:
    """Supervisor operations that need the repository catalog."""

    def __init__(self, *, tasks: TaskRepository, supervisor: ProcessSupervisor) -> None:
        self.tasks = tasks
        self.supervisor = supervisor

    def start(self, repo_id: int, *, work_dir: str | None = None) -> RunningAgent:
        repository = self.tasks.get_repository(repo_id)
        if repository is None:
            raise NotFoundError(f"Repository not found: {repo_id}")
        return self.supervisor.start(repository, work_dir=work_dir)

    def stop(self, repo_id: int) -> RunningAgent:
        return self.supervisor.stop(repo_id)

    def status(self, repo_id: int) -> AgentStatusView:
        return self.supervisor.status(repo_id)

    def list_running(self) -> list[RunningAgent]:
        return self.supervisor.list_running()

    def stop_all(self) -> StopAllReport:
        return self.supervisor.stop_all()

    def start_all(self) -> StartAllReport:
        """Start an agent for every repository with claimable work; never fails the batch."""

        repositories = self.tasks.list_repositories()
        results = [self._start_one(repository) for repository in repositories]
        summary = StartAllSummary(
            total_repos=len(repositories),
            agents_started=_count(results, StartOutcome.STARTED),
            already_running=_count(results, StartOutcome.ALREADY_RUNNING),
            no_tasks=_count(results, StartOutcome.NO_TASKS),
            no_local_path=_count(results, StartOutcome.NO_LOCAL_PATH),
            errors=_count(results, StartOutcome.ERROR),
            total_pending_tasks=sum(entry.pending_tasks for entry in results),
        )
        logger.info(
            "start-all: %s started, %s already running, %s without tasks, %s error(s)",
            summary.agents_started,
            summary.already_running,
            summary.no_tasks,
            summary.errors,
        )
        return StartAllReport(summary=summary, results=results)

    def list_repositories(self) -> list[RepositoryOverview]:
        overviews: list[RepositoryOverview] = []
        for repository in self.tasks.list_repositories():
            counts = self.tasks.count_tasks_by_agent_status(repository.id)
            overviews.append(
                RepositoryOverview(
                    repository=repository,
                    pending=len(self.tasks.list_claimable(repository.id)),
                    assigned=counts[AgentStatus.ASSIGNED],
                    in_progress=counts[AgentStatus.IN_PROGRESS],
                ),
            )
        return overviews

    def _start_one(self, repository: RepositoryView) -> StartAllEntry:
        entry = StartAllEntry(
            repo_id=repository.id,
            repo_name=repository.full_name,
            status=StartOutcome.NO_TASKS,
        )
        try:
            entry.pending_tasks = len(self.tasks.list_claimable(repository.id))
            if entry.pending_tasks == 0:
                return entry
            if self.supervisor.is_running(repository.id):
                entry.status = StartOutcome.ALREADY_RUNNING
                return entry
            if not repository.local_path:
                entry.status = StartOutcome.NO_LOCAL_PATH
                return entry
            running = self.supervisor.start(repository)
        except OrchestrationError as exc:
            logger.warning("start-all: repository %s failed: %s", repository.id, exc)
            entry.status = StartOutcome.ERROR
            entry.error = str(exc)
            return entry
        entry.status = StartOutcome.STARTED
        entry.pid = running.pid
        entry.log_file = running.log_file
        return entry


def _count(results: list[StartAllEntry], outcome: StartOutcome) -> int:
    return sum(1 for entry in results if entry.status is outcome)
