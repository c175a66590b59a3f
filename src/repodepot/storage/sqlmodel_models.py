"""SQLModel ORM tables for orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel

WORKFLOW_STATUSES = ("backlog", "todo", "in-progress", "review", "done")
PRIORITIES = ("low", "medium", "high", "critical")
AGENT_STATUSES = ("pending", "assigned", "in_progress", "completed", "failed")
STEP_STATUSES = ("pending", "in_progress", "done", "failed", "skipped")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Repository(SQLModel, table=True):
    __tablename__ = "repositories"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    name: str
    full_name: str = Field(unique=True, index=True)
    local_path: str | None = None
    clone_url: str
    default_branch: str = Field(default="main")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Issue(SQLModel, table=True):
    __tablename__ = "issues"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(_in_list("status", WORKFLOW_STATUSES), name="ck_issues_status"),
        CheckConstraint(_in_list("priority", PRIORITIES), name="ck_issues_priority"),
        CheckConstraint(
            _in_list("agent_status", AGENT_STATUSES),
            name="ck_issues_agent_status",
        ),
        Index("idx_issues_claimable", "repo_id", "agent_status", "priority", "created_at"),
    )

    id: str = Field(primary_key=True)
    repo_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("repositories.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(default="todo", index=True)
    priority: str = Field(default="medium")
    github_issue_number: int | None = None
    github_issue_url: str | None = None
    agent_status: str = Field(default="pending", index=True)
    agent_claimed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    agent_completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    agent_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskStep(SQLModel, table=True):
    __tablename__ = "task_steps"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "idx", name="uq_task_steps_task_idx"),
        CheckConstraint(_in_list("status", STEP_STATUSES), name="ck_task_steps_status"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("issues.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    idx: int
    description: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(default="pending")
    note: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class TaskQuestion(SQLModel, table=True):
    __tablename__ = "task_questions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_questions_task_asked", "task_id", "asked_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("issues.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    question: str = Field(sa_column=Column(Text, nullable=False))
    choices_json: str | None = Field(default=None, sa_column=Column(Text))
    answer: str | None = Field(default=None, sa_column=Column(Text))
    asked_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    answered_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
