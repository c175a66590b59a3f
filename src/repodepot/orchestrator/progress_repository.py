"""Progress ledger and clarification question persistence."""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from repodepot.orchestrator.errors import (
    NoPendingQuestionError,
    NotFoundError,
    QuestionAlreadyPendingError,
    ValidationError,
)
from repodepot.orchestrator.locking import KeyedLock
from repodepot.orchestrator.models import AwaitingInput, QuestionView, StepStatus, StepView
from repodepot.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from repodepot.storage.sqlmodel_models import Issue, TaskQuestion, TaskStep


class ProgressRepository:
    """Steps and questions attached to tasks.

    Writes that renumber steps or open a question are serialized per task with an
    in-process lock on top of SQLite's single-writer transactions.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._task_locks = KeyedLock()

    def close(self) -> None:
        self.engine.dispose()

    # -- steps ----------------------------------------------------------------

    def create_plan(self, task_id: str, descriptions: Sequence[str]) -> list[StepView]:
        """Replace the task's plan with fresh pending steps numbered from zero."""

        cleaned = _clean_descriptions(descriptions)
        with self._task_locks.hold(task_id), Session(self.engine) as session:
            _require_task(session, task_id)
            session.exec(sa_delete(TaskStep).where(col(TaskStep.task_id) == task_id))
            rows = [
                TaskStep(
                    task_id=task_id,
                    idx=index,
                    description=text,
                    status=StepStatus.PENDING.value,
                )
                for index, text in enumerate(cleaned)
            ]
            session.add_all(rows)
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_step_view(row) for row in rows]

    def update_step(
        self,
        task_id: str,
        index: int,
        status: StepStatus | str,
        *,
        note: str | None = None,
    ) -> StepView:
        try:
            target = StepStatus(status)
        except ValueError as exc:
            allowed = ", ".join(s.value for s in StepStatus)
            raise ValidationError(f"Invalid status: {status!r}. Must be one of: {allowed}") from exc

        now = utc_now()
        with self._task_locks.hold(task_id), Session(self.engine) as session:
            row = session.exec(
                select(TaskStep).where(TaskStep.task_id == task_id, TaskStep.idx == index),
            ).one_or_none()
            if row is None:
                raise NotFoundError(f"Step {index} not found for task {task_id}")
            row.status = target.value
            if target is StepStatus.IN_PROGRESS:
                row.started_at = to_db_datetime(now)
            elif target.is_terminal:
                row.completed_at = to_db_datetime(now)
            if note is not None:
                row.note = note
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_step_view(row)

    def add_step(self, task_id: str, description: str, *, after_index: int) -> StepView:
        """Insert a pending step after ``after_index`` (-1 prepends), renumbering later steps."""

        text = description.strip() if isinstance(description, str) else ""
        if not text:
            raise ValidationError("Step description must be a non-empty string")

        with self._task_locks.hold(task_id), Session(self.engine) as session:
            _require_task(session, task_id)
            existing = session.exec(
                select(TaskStep.idx).where(TaskStep.task_id == task_id),
            ).all()
            if not -1 <= after_index <= len(existing) - 1:
                raise ValidationError(
                    f"afterIndex must be between -1 and {len(existing) - 1}, got {after_index}",
                )
            # UNIQUE(task_id, idx) is checked row by row, so shift through negative indices.
            session.exec(
                sa_update(TaskStep)
                .where(col(TaskStep.task_id) == task_id, col(TaskStep.idx) > after_index)
                .values(idx=-(col(TaskStep.idx) + 1))
                .execution_options(synchronize_session=False),
            )
            session.exec(
                sa_update(TaskStep)
                .where(col(TaskStep.task_id) == task_id, col(TaskStep.idx) < 0)
                .values(idx=-col(TaskStep.idx))
                .execution_options(synchronize_session=False),
            )
            row = TaskStep(
                task_id=task_id,
                idx=after_index + 1,
                description=text,
                status=StepStatus.PENDING.value,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_step_view(row)

    def get_steps(self, task_id: str) -> list[StepView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskStep)
                .where(TaskStep.task_id == task_id)
                .order_by(col(TaskStep.idx).asc()),
            ).all()
        return [_to_step_view(row) for row in rows]

    # -- questions ------------------------------------------------------------

    def ask_question(
        self,
        task_id: str,
        question: str,
        *,
        choices: Sequence[str] | None = None,
    ) -> QuestionView:
        """Open a question; a task may have at most one unanswered question."""

        text = question.strip() if isinstance(question, str) else ""
        if not text:
            raise ValidationError("Question must be a non-empty string")
        cleaned_choices = _clean_choices(choices)

        with self._task_locks.hold(task_id), Session(self.engine) as session:
            _require_task(session, task_id)
            pending = _pending_question_row(session, task_id)
            if pending is not None:
                raise QuestionAlreadyPendingError(task_id, pending.id or 0)
            row = TaskQuestion(
                task_id=task_id,
                question=text,
                choices_json=json.dumps(cleaned_choices) if cleaned_choices is not None else None,
                asked_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_question_view(row)

    def get_pending_question(self, task_id: str) -> QuestionView | None:
        with Session(self.engine) as session:
            row = _pending_question_row(session, task_id)
            return _to_question_view(row) if row is not None else None

    def get_latest_answered(self, task_id: str) -> QuestionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskQuestion)
                .where(TaskQuestion.task_id == task_id, col(TaskQuestion.answer).is_not(None))
                .order_by(col(TaskQuestion.id).desc())
                .limit(1),
            ).one_or_none()
            return _to_question_view(row) if row is not None else None

    def answer_question(self, task_id: str, answer: str) -> QuestionView:
        """Set the answer of the pending question exactly once."""

        text = answer.strip() if isinstance(answer, str) else ""
        if not text:
            raise ValidationError("Answer must be a non-empty string")

        with Session(self.engine) as session:
            _require_task(session, task_id)
            pending = _pending_question_row(session, task_id)
            if pending is None:
                raise NoPendingQuestionError(task_id)
            question_id = pending.id
            result = session.exec(
                sa_update(TaskQuestion)
                .where(col(TaskQuestion.id) == question_id, col(TaskQuestion.answer).is_(None))
                .values(answer=text, answered_at=to_db_datetime(utc_now()))
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NoPendingQuestionError(task_id)
            session.commit()
            answered = session.get(TaskQuestion, question_id)
            if answered is None:
                raise NoPendingQuestionError(task_id)
            session.refresh(answered)
            return _to_question_view(answered)

    def list_awaiting_input(self) -> list[AwaitingInput]:
        """Unanswered questions across all tasks, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskQuestion, Issue)
                .join(Issue, col(Issue.id) == col(TaskQuestion.task_id))
                .where(col(TaskQuestion.answer).is_(None))
                .order_by(col(TaskQuestion.asked_at).asc(), col(TaskQuestion.id).asc()),
            ).all()
        return [
            AwaitingInput(
                task_id=issue.id,
                task_title=issue.title,
                task_status=issue.agent_status,
                question=_to_question_view(question),
            )
            for question, issue in rows
        ]


def _require_task(session: Session, task_id: str) -> Issue:
    row = session.get(Issue, task_id)
    if row is None:
        raise NotFoundError(f"Task not found: {task_id}")
    return row


def _pending_question_row(session: Session, task_id: str) -> TaskQuestion | None:
    return session.exec(
        select(TaskQuestion)
        .where(TaskQuestion.task_id == task_id, col(TaskQuestion.answer).is_(None))
        .order_by(col(TaskQuestion.id).desc())
        .limit(1),
    ).one_or_none()


def _clean_descriptions(descriptions: Sequence[str]) -> list[str]:
    if isinstance(descriptions, str) or not descriptions:
        raise ValidationError("steps must be a non-empty array of strings")
    cleaned: list[str] = []
    for item in descriptions:
        if not isinstance(item, str) or not item.strip():
            raise ValidationError("Each step must be a non-empty string")
        cleaned.append(item.strip())
    return cleaned


def _clean_choices(choices: Sequence[str] | None) -> list[str] | None:
    if choices is None:
        return None
    if isinstance(choices, str) or not choices:
        raise ValidationError("choices must be a non-empty array of strings")
    cleaned: list[str] = []
    for item in choices:
        if not isinstance(item, str) or not item.strip():
            raise ValidationError("Each choice must be a non-empty string")
        cleaned.append(item.strip())
    return cleaned


def _to_step_view(row: TaskStep) -> StepView:
    return StepView(
        id=row.id or 0,
        task_id=row.task_id,
        index=row.idx,
        description=row.description,
        status=StepStatus(row.status),
        note=row.note,
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_question_view(row: TaskQuestion) -> QuestionView:
    return QuestionView(
        id=row.id or 0,
        task_id=row.task_id,
        question=row.question,
        asked_at=to_utc_aware_datetime(row.asked_at),
        choices=json.loads(row.choices_json) if row.choices_json else None,
        answer=row.answer,
        answered_at=optional_utc(row.answered_at),
    )
