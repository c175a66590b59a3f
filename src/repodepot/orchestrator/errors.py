"""Error taxonomy shared by the orchestration core, API and CLI."""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for domain errors surfaced to callers with a stable code."""

    code = "ORCHESTRATION_ERROR"


class NotFoundError(OrchestrationError):
    """Task, step, question or repository is absent."""

    code = "NOT_FOUND"


class InvalidTransitionError(OrchestrationError):
    """Requested state change is not allowed from the current state."""

    code = "INVALID_TRANSITION"


class NoPendingQuestionError(InvalidTransitionError):
    code = "NO_PENDING_QUESTION"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"No pending question for task {task_id}")
        self.task_id = task_id


class QuestionAlreadyPendingError(InvalidTransitionError):
    code = "QUESTION_ALREADY_PENDING"

    def __init__(self, task_id: str, question_id: int) -> None:
        super().__init__(
            f"Task {task_id} already has an unanswered question (id={question_id}); "
            "wait for the answer before asking again.",
        )
        self.task_id = task_id
        self.question_id = question_id


class ValidationError(OrchestrationError):
    """Malformed input: empty plan, blank text, bad choices, unknown status."""

    code = "VALIDATION_ERROR"


class ProcessError(OrchestrationError):
    """Agent process lifecycle failure."""

    code = "PROCESS_ERROR"


class AlreadyRunningError(ProcessError):
    code = "ALREADY_RUNNING"

    def __init__(self, repo_id: int, started_at: object | None = None) -> None:
        super().__init__(f"Agent already running for repository {repo_id}")
        self.repo_id = repo_id
        self.started_at = started_at


class NotRunningError(ProcessError):
    code = "NOT_RUNNING"

    def __init__(self, repo_id: int) -> None:
        super().__init__(f"No agent running for repository {repo_id}")
        self.repo_id = repo_id


class NoWorkDirError(ProcessError):
    code = "NO_WORK_DIR"

    def __init__(self, repo_id: int) -> None:
        super().__init__(
            f"No local path configured for repository {repo_id}. "
            "Provide workDir in request body.",
        )
        self.repo_id = repo_id


class SpawnFailedError(ProcessError):
    code = "SPAWN_FAILED"


class ExternalSyncError(OrchestrationError):
    """Mirroring state to an external tracker failed; never fails the local operation."""

    code = "EXTERNAL_SYNC_ERROR"
