"""Persistent task-claim repository backed by SQLModel + SQLite."""

from __future__ import annotations

from collections.abc import Callable, Collection
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from repodepot.orchestrator.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from repodepot.orchestrator.models import (
    PRIORITY_RANK,
    REPORTABLE_AGENT_STATUSES,
    AgentStatus,
    Priority,
    RepositoryCreate,
    RepositoryView,
    StatusTransition,
    TaskCreate,
    TaskView,
    WorkflowStatus,
)
from repodepot.storage.alembic_runner import upgrade_head
from repodepot.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from repodepot.storage.sqlmodel_models import Issue, Repository

_MAX_TRANSITION_ATTEMPTS = 3

ValuesFactory = Callable[[Issue, datetime], dict[str, Any]]


class TaskRepository:
    """Task catalog and claim state machine persistence facade."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- catalog --------------------------------------------------------------

    def add_repository(self, payload: RepositoryCreate) -> RepositoryView:
        """Register a repository agents can be started for."""

        full_name = payload.full_name.strip()
        if "/" not in full_name:
            raise ValidationError(f"Repository full name must look like owner/repo: {full_name!r}")
        with Session(self.engine) as session:
            row = Repository(
                name=payload.name or full_name.split("/", 1)[1],
                full_name=full_name,
                local_path=payload.local_path,
                clone_url=payload.clone_url,
                default_branch=payload.default_branch,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_repository_view(row)

    def get_repository(self, repo_id: int) -> RepositoryView | None:
        with Session(self.engine) as session:
            row = session.get(Repository, repo_id)
            return _to_repository_view(row) if row is not None else None

    def list_repositories(self) -> list[RepositoryView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Repository).order_by(col(Repository.id).asc())).all()
        return [_to_repository_view(row) for row in rows]

    def add_task(self, payload: TaskCreate) -> TaskView:
        """Create a task in the pending claim state."""

        title = payload.title.strip()
        if not title:
            raise ValidationError("Task title must be a non-empty string")
        now = utc_now()
        with Session(self.engine) as session:
            if session.get(Repository, payload.repo_id) is None:
                raise NotFoundError(f"Repository not found: {payload.repo_id}")
            row = Issue(
                id=payload.task_id or str(uuid4()),
                repo_id=payload.repo_id,
                title=title,
                description=payload.description,
                status=WorkflowStatus.TODO.value,
                priority=Priority(payload.priority).value,
                github_issue_number=payload.github_issue_number,
                github_issue_url=payload.github_issue_url,
                agent_status=AgentStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Issue, task_id)
            return _to_task_view(row) if row is not None else None

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def list_tasks(
        self,
        *,
        repo_id: int | None = None,
        agent_status: AgentStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by repository and agent status."""

        with Session(self.engine) as session:
            statement = select(Issue).order_by(col(Issue.created_at).desc()).limit(limit)
            if repo_id is not None:
                statement = statement.where(Issue.repo_id == repo_id)
            if agent_status is not None:
                statement = statement.where(Issue.agent_status == agent_status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def count_tasks_by_agent_status(self, repo_id: int) -> dict[AgentStatus, int]:
        counts = dict.fromkeys(AgentStatus, 0)
        with Session(self.engine) as session:
            rows = session.exec(
                select(Issue.agent_status, func.count())
                .where(Issue.repo_id == repo_id)
                .group_by(Issue.agent_status),
            ).all()
        for status, count in rows:
            counts[AgentStatus(status)] = int(count)
        return counts

    # -- claim state machine --------------------------------------------------

    def list_claimable(self, repo_id: int) -> list[TaskView]:
        """Pending tasks with an external issue reference, best priority first."""

        priority_rank = case(PRIORITY_RANK, value=col(Issue.priority), else_=-1)
        with Session(self.engine) as session:
            if session.get(Repository, repo_id) is None:
                raise NotFoundError(f"Repository not found: {repo_id}")
            rows = session.exec(
                select(Issue)
                .where(
                    Issue.repo_id == repo_id,
                    Issue.agent_status == AgentStatus.PENDING.value,
                    col(Issue.github_issue_number).is_not(None),
                )
                .order_by(priority_rank.desc(), col(Issue.created_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def claim(self, task_id: str) -> StatusTransition:
        """Atomically move a pending task to assigned; only one concurrent caller wins."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Issue)
                .where(
                    col(Issue.id) == task_id,
                    col(Issue.agent_status) == AgentStatus.PENDING.value,
                )
                .values(
                    agent_status=AgentStatus.ASSIGNED.value,
                    agent_claimed_at=to_db_datetime(now),
                    status=WorkflowStatus.IN_PROGRESS.value,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                current = session.get(Issue, task_id)
                if current is None:
                    raise NotFoundError(f"Task not found: {task_id}")
                raise InvalidTransitionError(f"Task already {current.agent_status}")
            session.commit()
            claimed = session.get(Issue, task_id)
            if claimed is None:
                raise NotFoundError(f"Task not found: {task_id}")
            return StatusTransition(
                task=_to_task_view(claimed),
                previous=AgentStatus.PENDING,
                current=AgentStatus.ASSIGNED,
            )

    def set_status(
        self,
        task_id: str,
        status: AgentStatus | str,
        *,
        error: str | None = None,
    ) -> StatusTransition:
        """Record an agent-reported status change."""

        try:
            target = AgentStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Invalid status: {status!r}") from exc
        if target not in REPORTABLE_AGENT_STATUSES:
            allowed = ", ".join(sorted(s.value for s in REPORTABLE_AGENT_STATUSES))
            raise ValidationError(f"Invalid status {target.value!r}. Must be one of: {allowed}")

        def _values(row: Issue, now: datetime) -> dict[str, Any]:
            return _status_values(target, error=error, now=now)

        return self._transition(task_id, target=target, values=_values)

    def complete(
        self,
        task_id: str,
        *,
        summary: str | None,
        pr_url: str | None = None,
    ) -> StatusTransition:
        """Mark a task completed and append the agent summary to its description."""

        def _values(row: Issue, now: datetime) -> dict[str, Any]:
            values = _status_values(AgentStatus.COMPLETED, error=None, now=now)
            if summary and summary.strip():
                values["description"] = _append_summary(row.description, summary.strip(), pr_url)
            return values

        return self._transition(task_id, target=AgentStatus.COMPLETED, values=_values)

    def promote_for_plan(self, task_id: str) -> StatusTransition | None:
        """Move a pending/assigned task to in_progress once a plan is declared."""

        try:
            return self._transition(
                task_id,
                target=AgentStatus.IN_PROGRESS,
                values=lambda _row, now: _status_values(
                    AgentStatus.IN_PROGRESS,
                    error=None,
                    now=now,
                ),
                allowed_from={AgentStatus.PENDING, AgentStatus.ASSIGNED},
            )
        except InvalidTransitionError:
            return None

    def _transition(
        self,
        task_id: str,
        *,
        target: AgentStatus,
        values: ValuesFactory,
        allowed_from: Collection[AgentStatus] | None = None,
    ) -> StatusTransition:
        for _ in range(_MAX_TRANSITION_ATTEMPTS):
            now = utc_now()
            with Session(self.engine) as session:
                row = session.get(Issue, task_id)
                if row is None:
                    raise NotFoundError(f"Task not found: {task_id}")
                previous = AgentStatus(row.agent_status)
                if allowed_from is not None and previous not in allowed_from:
                    raise InvalidTransitionError(
                        f"Task {task_id} cannot move from {previous.value} to {target.value}",
                    )
                _ensure_forward(task_id, previous, target)

                result = session.exec(
                    sa_update(Issue)
                    .where(
                        col(Issue.id) == task_id,
                        col(Issue.agent_status) == previous.value,
                    )
                    .values(**values(row, now)),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                session.expire_all()
                updated = session.get(Issue, task_id)
                if updated is None:
                    raise NotFoundError(f"Task not found: {task_id}")
                return StatusTransition(
                    task=_to_task_view(updated),
                    previous=previous,
                    current=target,
                )
        raise InvalidTransitionError(
            f"Task state changed concurrently; please retry (task_id={task_id}).",
        )


def _ensure_forward(task_id: str, previous: AgentStatus, target: AgentStatus) -> None:
    if previous.is_terminal:
        raise InvalidTransitionError(f"Task {task_id} already {previous.value}")
    if target.rank < previous.rank:
        raise InvalidTransitionError(
            f"Task {task_id} cannot move back from {previous.value} to {target.value}",
        )


def _status_values(target: AgentStatus, *, error: str | None, now: datetime) -> dict[str, Any]:
    values: dict[str, Any] = {
        "agent_status": target.value,
        "updated_at": to_db_datetime(now),
    }
    if target is AgentStatus.ASSIGNED:
        values["agent_claimed_at"] = to_db_datetime(now)
        values["status"] = WorkflowStatus.IN_PROGRESS.value
    elif target is AgentStatus.IN_PROGRESS:
        values["status"] = WorkflowStatus.IN_PROGRESS.value
    elif target is AgentStatus.COMPLETED:
        values["agent_completed_at"] = to_db_datetime(now)
        values["status"] = WorkflowStatus.REVIEW.value
    elif target is AgentStatus.FAILED:
        values["agent_error"] = error or "Unknown error"
        values["status"] = WorkflowStatus.TODO.value
    return values


def _append_summary(description: str | None, summary: str, pr_url: str | None) -> str:
    text = f"{description or ''}\n\n---\n**Agent Summary:** {summary}"
    if pr_url:
        text += f"\n**PR:** {pr_url}"
    return text


def _to_repository_view(row: Repository) -> RepositoryView:
    return RepositoryView(
        id=row.id or 0,
        name=row.name,
        full_name=row.full_name,
        local_path=row.local_path,
        clone_url=row.clone_url,
        default_branch=row.default_branch,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_task_view(row: Issue) -> TaskView:
    return TaskView(
        id=row.id,
        repo_id=row.repo_id,
        title=row.title,
        description=row.description,
        status=WorkflowStatus(row.status),
        priority=Priority(row.priority),
        github_issue_number=row.github_issue_number,
        github_issue_url=row.github_issue_url,
        agent_status=AgentStatus(row.agent_status),
        agent_claimed_at=optional_utc(row.agent_claimed_at),
        agent_completed_at=optional_utc(row.agent_completed_at),
        agent_error=row.agent_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
