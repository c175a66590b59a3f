"""Human-in-the-loop question channel with bounded waits for answers."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence

from repodepot.orchestrator.models import AnswerWait, AwaitingInput, QuestionView
from repodepot.orchestrator.progress_repository import ProgressRepository

logger = logging.getLogger(__name__)

NO_PENDING_QUESTION_MESSAGE = "No pending question for this task"


class ClarificationChannel:
    """Ask/answer protocol on top of the question store.

    Waiters block on a shared condition that ``answer`` notifies; they also re-read
    the store every ``poll_interval_ms`` so answers written by another process are seen.
    Per-task wake-up versions exist only while the task has waiters.
    """

    def __init__(
        self,
        repository: ProgressRepository,
        *,
        poll_interval_ms: int = 500,
        max_wait_ms: int = 30_000,
    ) -> None:
        self.repository = repository
        self.poll_interval_ms = max(1, poll_interval_ms)
        self.max_wait_ms = max(0, max_wait_ms)
        self._answered = threading.Condition()
        self._answer_versions: dict[str, int] = {}
        self._waiters: dict[str, int] = {}

    def ask(
        self,
        task_id: str,
        question: str,
        *,
        choices: Sequence[str] | None = None,
    ) -> QuestionView:
        asked = self.repository.ask_question(task_id, question, choices=choices)
        logger.info("Task %s asked question %s", task_id, asked.id)
        return asked

    def get_pending_question(self, task_id: str) -> QuestionView | None:
        return self.repository.get_pending_question(task_id)

    def answer(self, task_id: str, answer: str) -> QuestionView:
        """Answer the pending question and wake any waiter for the task."""

        answered = self.repository.answer_question(task_id, answer)
        with self._answered:
            if task_id in self._waiters:
                self._answer_versions[task_id] = self._answer_versions.get(task_id, 0) + 1
                self._answered.notify_all()
        logger.info("Task %s question %s answered", task_id, answered.id)
        return answered

    def clamp_timeout(self, timeout_ms: int | None) -> int:
        if timeout_ms is None:
            return 0
        return min(max(0, int(timeout_ms)), self.max_wait_ms)

    def wait_for_answer(
        self,
        task_id: str,
        timeout_ms: int | None,
        *,
        should_abort: Callable[[], bool] | None = None,
    ) -> AnswerWait:
        """Block until the pending question is answered or the wait ends.

        A missing timeout means no wait: the current state is returned at once.
        """

        deadline = time.monotonic() + self.clamp_timeout(timeout_ms) / 1000.0
        with self._answered:
            self._waiters[task_id] = self._waiters.get(task_id, 0) + 1
        try:
            return self._wait(task_id, deadline, should_abort)
        finally:
            with self._answered:
                left = self._waiters[task_id] - 1
                if left:
                    self._waiters[task_id] = left
                else:
                    del self._waiters[task_id]
                    self._answer_versions.pop(task_id, None)

    def list_awaiting_input(self) -> list[AwaitingInput]:
        return self.repository.list_awaiting_input()

    def _wait(
        self,
        task_id: str,
        deadline: float,
        should_abort: Callable[[], bool] | None,
    ) -> AnswerWait:
        poll_seconds = self.poll_interval_ms / 1000.0
        while True:
            with self._answered:
                seen_version = self._answer_versions.get(task_id, 0)

            resolved, pending = self._resolve(task_id)
            if resolved is not None:
                return resolved

            remaining = deadline - time.monotonic()
            if remaining <= 0 or (should_abort is not None and should_abort()):
                return AnswerWait(answered=False, question=pending)

            with self._answered:
                if self._answer_versions.get(task_id, 0) == seen_version:
                    self._answered.wait(timeout=min(remaining, poll_seconds))

    def _resolve(self, task_id: str) -> tuple[AnswerWait | None, QuestionView | None]:
        pending = self.repository.get_pending_question(task_id)
        latest = self.repository.get_latest_answered(task_id)
        if latest is not None and (pending is None or latest.id > pending.id):
            return AnswerWait(answered=True, question=latest), None
        if pending is None:
            return AnswerWait(answered=False, message=NO_PENDING_QUESTION_MESSAGE), None
        return None, pending
