"""Level-gated prelims practice.

A session walks one user through batches of ``QUESTIONS_PER_LEVEL``
questions, starting at level 1. A batch scored at ``PASS_THRESHOLD`` or
better unlocks the next level; passing ``MAX_LEVEL`` is mastery. Any level
can be retried with a fresh batch.

The engine owns no I/O beyond its two collaborators: a question source
(awaited, failures end in ``SessionError``) and an attempt recorder (never
awaited by callers, failures are logged and dropped).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable, FrozenSet, List, Optional, Set

from pydantic import BaseModel, ConfigDict

from .errors import AcquisitionError, InvalidAnswerError, InvalidStateError, RecordingError
from .questions import OPTION_LABELS, Attempt, Question, normalize_label, validate_batch

if TYPE_CHECKING:
    from .recorders import AttemptRecorder
    from .sources import QuestionSource


logger = logging.getLogger(__name__)


QUESTIONS_PER_LEVEL = 5
PASS_THRESHOLD = 0.6
MIN_LEVEL = 1
MAX_LEVEL = 5


class Phase(str, Enum):
    SELECTING_SUBJECT = "SelectingSubject"
    LOADING = "Loading"
    AWAITING_ANSWER = "AwaitingAnswer"
    SHOWING_RESULT = "ShowingResult"
    LEVEL_COMPLETE = "LevelComplete"
    SESSION_ERROR = "SessionError"


class AnswerResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    selected_label: str
    correct_label: str
    is_correct: bool
    explanation: str = ""


class LevelResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: int
    correct_count: int
    total: int
    accuracy: float
    passed: bool
    # passed the final level; there is nothing left to advance to
    mastered: bool = False


class QuizState(BaseModel):
    """Read-only snapshot for rendering."""

    model_config = ConfigDict(frozen=True)

    phase: Phase
    level: int
    subject: Optional[str] = None
    current_index: int
    correct_count: int
    batch_size: int
    current_question: Optional[Question] = None
    last_answer: Optional[AnswerResult] = None
    last_result: Optional[LevelResult] = None
    error: Optional[str] = None


def evaluate_level(level: int, correct_count: int) -> LevelResult:
    accuracy = correct_count / QUESTIONS_PER_LEVEL
    passed = accuracy >= PASS_THRESHOLD
    return LevelResult(
        level=level,
        correct_count=correct_count,
        total=QUESTIONS_PER_LEVEL,
        accuracy=accuracy,
        passed=passed,
        mastered=passed and level >= MAX_LEVEL,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuizProgressionEngine:
    """State machine for one play-through.

    Not safe for concurrent mutation: hosts that share an engine across
    request handlers must serialise calls per session.
    """

    def __init__(
        self,
        source: "QuestionSource",
        recorder: Optional["AttemptRecorder"] = None,
        *,
        user_id: str,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._source = source
        self._recorder = recorder
        self._user_id = user_id
        self._session_id = session_id
        self._timeout = timeout
        self._clock = clock or _utcnow

        self._phase = Phase.SELECTING_SUBJECT
        self._level = MIN_LEVEL
        self._subject: Optional[str] = None
        self._batch: List[Question] = []
        self._index = 0
        self._correct = 0
        self._last_answer: Optional[AnswerResult] = None
        self._last_result: Optional[LevelResult] = None
        self._failure: Optional[AcquisitionError] = None
        self._shown_at: Optional[datetime] = None

        # bumped on every load and reset so late batches can be recognised
        self._generation = 0
        self._inflight: Optional[asyncio.Future] = None
        self._recordings: Set[asyncio.Task] = set()

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def last_error(self) -> Optional[AcquisitionError]:
        return self._failure

    def get_state(self) -> QuizState:
        current: Optional[Question] = None
        if self._phase is Phase.AWAITING_ANSWER:
            current = self._batch[self._index]
        elif self._phase is Phase.SHOWING_RESULT:
            current = self._batch[self._index - 1]
        return QuizState(
            phase=self._phase,
            level=self._level,
            subject=self._subject,
            current_index=self._index,
            correct_count=self._correct,
            batch_size=len(self._batch),
            current_question=current,
            last_answer=self._last_answer,
            last_result=self._last_result,
            error=str(self._failure) if self._phase is Phase.SESSION_ERROR and self._failure else None,
        )

    def available_actions(self) -> FrozenSet[str]:
        actions = {"change_subject"}
        if self._phase is Phase.SELECTING_SUBJECT:
            actions.add("start_session")
        elif self._phase is Phase.AWAITING_ANSWER:
            actions.add("submit_answer")
        elif self._phase is Phase.SHOWING_RESULT:
            actions.add("advance")
        elif self._phase is Phase.LEVEL_COMPLETE:
            actions.add("retry_level")
            if self._can_advance_level():
                actions.add("advance_level")
        elif self._phase is Phase.SESSION_ERROR:
            actions.update(("retry_level", "start_session"))
        return frozenset(actions)

    async def start_session(self, subject_filter: Optional[str] = None) -> QuizState:
        self._require("start_session", Phase.SELECTING_SUBJECT, Phase.SESSION_ERROR)
        if subject_filter is not None:
            self._subject = subject_filter.strip() or None
        self._last_result = None
        logger.info("Session %s: starting for user %s [subject: %s]", self._session_id, self._user_id, self._subject or "any")
        return await self._load(MIN_LEVEL)

    def submit_answer(self, label: str) -> QuizState:
        """Score the current question and hand the attempt to the recorder.

        Must be called from a running event loop; the recorder call is
        scheduled as a background task and its outcome never affects scoring.
        """
        self._require("submit_answer", Phase.AWAITING_ANSWER)
        selected = normalize_label(label)
        if selected is None:
            raise InvalidAnswerError(f"{label!r} is not one of {', '.join(OPTION_LABELS)}")

        question = self._batch[self._index]
        is_correct = selected == question.correct_label
        answered_at = self._clock()
        taken = (answered_at - self._shown_at).total_seconds() if self._shown_at else None

        if is_correct:
            self._correct += 1
        self._index += 1
        self._phase = Phase.SHOWING_RESULT
        self._last_answer = AnswerResult(
            question_id=question.id,
            selected_label=selected,
            correct_label=question.correct_label,
            is_correct=is_correct,
            explanation=question.explanation,
        )
        self._dispatch(
            Attempt(
                question_id=question.id,
                selected_label=selected,
                is_correct=is_correct,
                timestamp=answered_at,
                session_id=self._session_id,
                level=self._level,
                time_taken_seconds=taken,
            )
        )
        return self.get_state()

    def advance(self) -> QuizState:
        self._require("advance", Phase.SHOWING_RESULT)
        self._last_answer = None
        if self._index < len(self._batch):
            self._phase = Phase.AWAITING_ANSWER
            self._shown_at = self._clock()
            return self.get_state()

        result = evaluate_level(self._level, self._correct)
        self._last_result = result
        self._phase = Phase.LEVEL_COMPLETE
        logger.info(
            "Session %s: level %d complete, %d/%d correct (%s)",
            self._session_id,
            result.level,
            result.correct_count,
            result.total,
            "passed" if result.passed else "failed",
        )
        return self.get_state()

    async def advance_level(self) -> QuizState:
        self._require("advance_level", Phase.LEVEL_COMPLETE)
        if self._last_result is None or not self._last_result.passed:
            raise InvalidStateError("advance_level", self._phase.value, f"level {self._level} was not passed")
        if self._level >= MAX_LEVEL:
            raise InvalidStateError("advance_level", self._phase.value, f"level {MAX_LEVEL} is the final level")
        return await self._load(self._level + 1)

    async def retry_level(self) -> QuizState:
        self._require("retry_level", Phase.LEVEL_COMPLETE, Phase.SESSION_ERROR)
        return await self._load(self._level)

    def change_subject(self, subject_filter: Optional[str] = None) -> QuizState:
        self._cancel_inflight()
        self._generation += 1
        self._subject = subject_filter.strip() or None if subject_filter else None
        self._level = MIN_LEVEL
        self._batch = []
        self._index = 0
        self._correct = 0
        self._last_answer = None
        self._last_result = None
        self._failure = None
        self._shown_at = None
        self._phase = Phase.SELECTING_SUBJECT
        logger.info("Session %s: subject changed to %s", self._session_id, self._subject or "any")
        return self.get_state()

    async def flush_recordings(self) -> None:
        """Wait for attempts that are still being recorded."""
        if self._recordings:
            await asyncio.gather(*list(self._recordings), return_exceptions=True)

    async def aclose(self) -> None:
        self._cancel_inflight()
        self._generation += 1
        await self.flush_recordings()

    def _require(self, operation: str, *phases: Phase) -> None:
        if self._phase not in phases:
            raise InvalidStateError(operation, self._phase.value)

    def _can_advance_level(self) -> bool:
        return self._last_result is not None and self._last_result.passed and self._level < MAX_LEVEL

    def _cancel_inflight(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None

    async def _load(self, level: int) -> QuizState:
        self._cancel_inflight()
        self._generation += 1
        generation = self._generation
        self._phase = Phase.LOADING
        self._level = level
        self._batch = []
        self._index = 0
        self._correct = 0
        self._last_answer = None
        self._failure = None

        request: Optional[asyncio.Future] = None
        try:
            request = asyncio.ensure_future(self._source.request_batch(level, QUESTIONS_PER_LEVEL, self._subject))
            self._inflight = request
            raw = await asyncio.wait_for(request, timeout=self._timeout)
            if generation != self._generation:
                return self._discard(level)
            batch = validate_batch(raw, count=QUESTIONS_PER_LEVEL)
        except asyncio.CancelledError as exc:
            if generation != self._generation:
                return self._discard(level)
            caller = asyncio.current_task()
            if caller is not None and caller.cancelling():
                # caller went away; leave the session retryable, then honour the cancellation
                self._fail(generation, AcquisitionError("question request abandoned", cause=exc))
                raise
            return self._fail(generation, AcquisitionError("question request was cancelled", cause=exc))
        except asyncio.TimeoutError as exc:
            return self._fail(generation, AcquisitionError(f"question source timed out after {self._timeout}s", cause=exc))
        except AcquisitionError as exc:
            return self._fail(generation, exc)
        except Exception as exc:
            return self._fail(generation, AcquisitionError("question source failed", cause=exc))
        finally:
            if self._inflight is request:
                self._inflight = None

        self._batch = batch
        self._phase = Phase.AWAITING_ANSWER
        self._shown_at = self._clock()
        logger.info("Session %s: level %d batch of %d ready", self._session_id, level, len(batch))
        return self.get_state()

    def _discard(self, level: int) -> QuizState:
        logger.info("Session %s: dropped level %d batch for a superseded request", self._session_id, level)
        return self.get_state()

    def _fail(self, generation: int, error: AcquisitionError) -> QuizState:
        if generation != self._generation:
            return self._discard(self._level)
        self._failure = error
        self._phase = Phase.SESSION_ERROR
        logger.warning("Session %s: could not load level %d: %s", self._session_id, self._level, error)
        return self.get_state()

    def _dispatch(self, attempt: Attempt) -> None:
        if self._recorder is None:
            return
        task = asyncio.get_running_loop().create_task(self._record(attempt))
        self._recordings.add(task)
        task.add_done_callback(self._recordings.discard)

    async def _record(self, attempt: Attempt) -> None:
        try:
            await self._recorder.record(attempt, self._user_id)
        except Exception as exc:
            logger.warning("Session %s: %s", self._session_id, RecordingError(attempt.question_id, exc))
