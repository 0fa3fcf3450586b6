from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Protocol

from pydantic import BaseModel
from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .db import SessionLocal
from .models import PrelimsAttempt
from .questions import Attempt


logger = logging.getLogger(__name__)


class AttemptRecorder(Protocol):
    async def record(self, attempt: Attempt, user_id: str) -> None:
        ...


class DatabaseAttemptRecorder:
    """Appends each answered question to prelims_attempts."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    async def record(self, attempt: Attempt, user_id: str) -> None:
        await asyncio.to_thread(self._insert, attempt, user_id)

    def _insert(self, attempt: Attempt, user_id: str) -> None:
        db = self._session_factory()
        try:
            db.add(
                PrelimsAttempt(
                    user_id=user_id,
                    session_id=attempt.session_id,
                    question_id=attempt.question_id,
                    selected_answer=attempt.selected_label,
                    is_correct=attempt.is_correct,
                    level=attempt.level,
                    time_taken_seconds=attempt.time_taken_seconds,
                    # stored naive UTC like the other timestamp columns
                    attempted_at=attempt.timestamp.replace(tzinfo=None),
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.debug("Recorded attempt on %s for %s", attempt.question_id, user_id)


class LevelStats(BaseModel):
    level: int
    attempts: int
    correct: int
    accuracy: float


class AttemptStats(BaseModel):
    user_id: str
    attempts: int
    correct: int
    accuracy: float
    by_level: List[LevelStats]


def _accuracy(correct: int, attempts: int) -> float:
    return round(correct / attempts, 4) if attempts else 0.0


def attempt_stats(db: Session, user_id: str) -> AttemptStats:
    correct_expr = func.sum(case((PrelimsAttempt.is_correct.is_(True), 1), else_=0))
    rows = db.execute(
        select(PrelimsAttempt.level, func.count(PrelimsAttempt.id), correct_expr)
        .where(PrelimsAttempt.user_id == user_id)
        .group_by(PrelimsAttempt.level)
        .order_by(PrelimsAttempt.level)
    ).all()

    total = 0
    correct_total = 0
    by_level: List[LevelStats] = []
    for level, attempts, correct in rows:
        correct = int(correct or 0)
        total += attempts
        correct_total += correct
        if level is not None:
            by_level.append(
                LevelStats(level=level, attempts=attempts, correct=correct, accuracy=_accuracy(correct, attempts))
            )
    return AttemptStats(
        user_id=user_id,
        attempts=total,
        correct=correct_total,
        accuracy=_accuracy(correct_total, total),
        by_level=by_level,
    )
