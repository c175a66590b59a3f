"""Domain models for task claims, progress steps, questions and supervised agents."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AgentStatus(str, Enum):
    """Claim lifecycle of a task as seen by worker agents."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {AgentStatus.COMPLETED, AgentStatus.FAILED}

    @property
    def rank(self) -> int:
        return _AGENT_STATUS_RANK[self]


_AGENT_STATUS_RANK = {
    AgentStatus.PENDING: 0,
    AgentStatus.ASSIGNED: 1,
    AgentStatus.IN_PROGRESS: 2,
    AgentStatus.COMPLETED: 3,
    AgentStatus.FAILED: 3,
}

# Statuses an agent may report through set_status; pending is reachable only on creation.
REPORTABLE_AGENT_STATUSES = frozenset(
    {
        AgentStatus.ASSIGNED,
        AgentStatus.IN_PROGRESS,
        AgentStatus.COMPLETED,
        AgentStatus.FAILED,
    },
)


class WorkflowStatus(str, Enum):
    """Board column of the underlying issue."""

    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    DONE = "done"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self.value]


PRIORITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


class StepStatus(str, Enum):
    """Status of one declared plan step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in {StepStatus.DONE, StepStatus.FAILED, StepStatus.SKIPPED}


class StartOutcome(str, Enum):
    """Per-repository result of a start-all sweep."""

    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    NO_TASKS = "no_tasks"
    NO_LOCAL_PATH = "no_local_path"
    ERROR = "error"


@dataclass(slots=True)
class RepositoryCreate:
    """Input payload for registering a repository."""

    full_name: str
    clone_url: str
    name: str | None = None
    local_path: str | None = None
    default_branch: str = "main"


@dataclass(slots=True)
class RepositoryView:
    id: int
    name: str
    full_name: str
    local_path: str | None
    clone_url: str
    default_branch: str
    created_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for registering a task backed by an issue."""

    repo_id: int
    title: str
    description: str | None = None
    priority: Priority = Priority.MEDIUM
    github_issue_number: int | None = None
    github_issue_url: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for API and CLI."""

    id: str
    repo_id: int
    title: str
    description: str | None
    status: WorkflowStatus
    priority: Priority
    github_issue_number: int | None
    github_issue_url: str | None
    agent_status: AgentStatus
    agent_claimed_at: datetime | None
    agent_completed_at: datetime | None
    agent_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class StatusTransition:
    """Committed agent-status change, handed to external label sync."""

    task: TaskView
    previous: AgentStatus
    current: AgentStatus


@dataclass(slots=True)
class StepView:
    id: int
    task_id: str
    index: int
    description: str
    status: StepStatus
    note: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class QuestionView:
    id: int
    task_id: str
    question: str
    asked_at: datetime
    choices: list[str] | None = None
    answer: str | None = None
    answered_at: datetime | None = None

    @property
    def is_answered(self) -> bool:
        return self.answer is not None


@dataclass(slots=True)
class AwaitingInput:
    """Task paired with its unanswered question, for dashboard aggregation."""

    task_id: str
    task_title: str
    task_status: str
    question: QuestionView


@dataclass(slots=True)
class AnswerWait:
    """Result of a bounded wait for a human answer."""

    answered: bool
    question: QuestionView | None = None
    message: str | None = None


@dataclass(slots=True)
class AgentStatusView:
    repo_id: int
    running: bool
    started_at: datetime | None = None
    pid: int | None = None
    log_file: str | None = None
    recent_logs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RunningAgent:
    repo_id: int
    started_at: datetime
    pid: int
    log_file: str


@dataclass(slots=True)
class StartAllEntry:
    repo_id: int
    repo_name: str
    status: StartOutcome
    pending_tasks: int = 0
    error: str | None = None
    pid: int | None = None
    log_file: str | None = None


@dataclass(slots=True)
class StartAllSummary:
    total_repos: int = 0
    agents_started: int = 0
    already_running: int = 0
    no_tasks: int = 0
    no_local_path: int = 0
    errors: int = 0
    total_pending_tasks: int = 0


@dataclass(slots=True)
class StartAllReport:
    summary: StartAllSummary
    results: list[StartAllEntry]


@dataclass(slots=True)
class StopAllReport:
    stopped_count: int
    stopped_repos: list[int]


@dataclass(slots=True)
class ProgressSnapshot:
    """Steps plus the open question of one task."""

    task_id: str
    steps: list[StepView]
    current_question: QuestionView | None = None


@dataclass(slots=True)
class RepositoryOverview:
    """Repository with claimable and active task counts."""

    repository: RepositoryView
    pending: int
    assigned: int
    in_progress: int
