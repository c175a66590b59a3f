"""Initial orchestration schema: repositories, issues, task steps and questions."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "repositories",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("local_path", sa.String(), nullable=True),
        sa.Column("clone_url", sa.String(), nullable=False),
        sa.Column("default_branch", sa.String(), nullable=False, server_default="main"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_repositories_full_name",
        "repositories",
        ["full_name"],
        unique=True,
    )

    op.create_table(
        "issues",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("repo_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="todo"),
        sa.Column("priority", sa.String(), nullable=False, server_default="medium"),
        sa.Column("github_issue_number", sa.Integer(), nullable=True),
        sa.Column("github_issue_url", sa.String(), nullable=True),
        sa.Column("agent_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("agent_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("agent_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("agent_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["repo_id"], ["repositories.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('backlog', 'todo', 'in-progress', 'review', 'done')",
            name="ck_issues_status",
        ),
        sa.CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'critical')",
            name="ck_issues_priority",
        ),
        sa.CheckConstraint(
            "agent_status IN ('pending', 'assigned', 'in_progress', 'completed', 'failed')",
            name="ck_issues_agent_status",
        ),
    )
    op.create_index("ix_issues_repo_id", "issues", ["repo_id"], unique=False)
    op.create_index("ix_issues_status", "issues", ["status"], unique=False)
    op.create_index("ix_issues_agent_status", "issues", ["agent_status"], unique=False)
    op.create_index(
        "idx_issues_claimable",
        "issues",
        ["repo_id", "agent_status", "priority", "created_at"],
        unique=False,
    )

    op.create_table(
        "task_steps",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("idx", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["issues.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_id", "idx", name="uq_task_steps_task_idx"),
        sa.CheckConstraint(
            "status IN ('pending', 'in_progress', 'done', 'failed', 'skipped')",
            name="ck_task_steps_status",
        ),
    )
    op.create_index("ix_task_steps_task_id", "task_steps", ["task_id"], unique=False)

    op.create_table(
        "task_questions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("choices_json", sa.Text(), nullable=True),
        sa.Column("answer", sa.Text(), nullable=True),
        sa.Column("asked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("answered_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["issues.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_questions_task_id", "task_questions", ["task_id"], unique=False)
    op.create_index(
        "idx_task_questions_task_asked",
        "task_questions",
        ["task_id", "asked_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_task_questions_task_asked", table_name="task_questions")
    op.drop_index("ix_task_questions_task_id", table_name="task_questions")
    op.drop_table("task_questions")
    op.drop_index("ix_task_steps_task_id", table_name="task_steps")
    op.drop_table("task_steps")
    op.drop_index("idx_issues_claimable", table_name="issues")
    op.drop_index("ix_issues_agent_status", table_name="issues")
    op.drop_index("ix_issues_status", table_name="issues")
    op.drop_index("ix_issues_repo_id", table_name="issues")
    op.drop_table("issues")
    op.drop_index("ix_repositories_full_name", table_name="repositories")
    op.drop_table("repositories")
