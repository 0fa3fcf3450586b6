from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import InvalidAnswerError, InvalidStateError
from ..progression import (
    MAX_LEVEL,
    PASS_THRESHOLD,
    QUESTIONS_PER_LEVEL,
    Phase,
    QuizProgressionEngine,
    QuizState,
)
from ..questions import Question
from ..recorders import AttemptRecorder, DatabaseAttemptRecorder, attempt_stats
from ..settings import settings
from ..sources import LEVEL_DESCRIPTIONS, UPSC_SUBJECTS, QuestionSource, build_question_source
from .auth import User, get_current_user


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/prelims", tags=["prelims"])


class StartRequest(BaseModel):
    subject: Optional[str] = Field(default=None, description="Subject filter; a random subject is used when empty")


class AnswerRequest(BaseModel):
    label: str = Field(description="Selected option label A-D")


class SubjectRequest(BaseModel):
    subject: Optional[str] = None


class HostedSession:
    """One engine plus the lock that serialises operations on it."""

    def __init__(self, session_id: str, username: str, engine: QuizProgressionEngine) -> None:
        self.session_id = session_id
        self.username = username
        self.engine = engine
        self.lock = asyncio.Lock()
        self.touched_at = datetime.utcnow()

    def touch(self) -> None:
        self.touched_at = datetime.utcnow()


_sessions: Dict[str, HostedSession] = {}


def get_question_source() -> QuestionSource:
    return build_question_source()


def get_attempt_recorder() -> AttemptRecorder:
    return DatabaseAttemptRecorder()


def _question_payload(question: Question, *, reveal: bool) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": question.id,
        "question": question.prompt,
        "options": [{"label": label, "text": text} for label, text in question.labelled_options()],
        "subject": question.subject,
        "topic": question.topic,
        "level": question.difficulty_level,
    }
    if reveal:
        payload["correct_label"] = question.correct_label
        payload["explanation"] = question.explanation
    return payload


def _state_payload(hosted: HostedSession) -> Dict[str, Any]:
    state: QuizState = hosted.engine.get_state()
    question = None
    if state.current_question is not None:
        question = _question_payload(state.current_question, reveal=state.phase is Phase.SHOWING_RESULT)
    return {
        "session_id": hosted.session_id,
        "phase": state.phase.value,
        "level": state.level,
        "max_level": MAX_LEVEL,
        "subject": state.subject,
        "current_index": state.current_index,
        "correct_count": state.correct_count,
        "batch_size": state.batch_size,
        "question": question,
        "last_answer": state.last_answer.model_dump() if state.last_answer else None,
        "last_result": state.last_result.model_dump() if state.last_result else None,
        "error": state.error,
        "actions": sorted(hosted.engine.available_actions()),
    }


def _get_session(session_id: str, user: User) -> HostedSession:
    hosted = _sessions.get(session_id)
    if not hosted or hosted.username != user.username:
        raise HTTPException(status_code=404, detail="Session not found")
    return hosted


async def _run(hosted: HostedSession, operation: Callable[[], Union[QuizState, Awaitable[QuizState]]]) -> Dict[str, Any]:
    async with hosted.lock:
        hosted.touch()
        try:
            result = operation()
            if inspect.isawaitable(result):
                await result
        except InvalidAnswerError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except InvalidStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return _state_payload(hosted)


@router.get("/subjects")
async def list_subjects():
    return {
        "subjects": UPSC_SUBJECTS,
        "levels": [{"level": level, "description": text} for level, text in sorted(LEVEL_DESCRIPTIONS.items())],
        "questions_per_level": QUESTIONS_PER_LEVEL,
        "pass_threshold": PASS_THRESHOLD,
    }


@router.post("/session", status_code=201)
async def start_session(
    req: StartRequest,
    user: User = Depends(get_current_user),
    source: QuestionSource = Depends(get_question_source),
    recorder: AttemptRecorder = Depends(get_attempt_recorder),
):
    session_id = uuid.uuid4().hex
    engine = QuizProgressionEngine(
        source,
        recorder,
        user_id=user.username,
        session_id=session_id,
        timeout=settings.question_timeout_seconds,
    )
    hosted = HostedSession(session_id, user.username, engine)
    _sessions[session_id] = hosted
    logger.info("New prelims session %s for %s", session_id, user.username)
    return await _run(hosted, lambda: engine.start_session(req.subject))


@router.get("/session/{session_id}")
async def get_session_state(session_id: str, user: User = Depends(get_current_user)):
    hosted = _get_session(session_id, user)
    hosted.touch()
    return _state_payload(hosted)


@router.post("/session/{session_id}/start")
async def restart_session(session_id: str, req: StartRequest, user: User = Depends(get_current_user)):
    hosted = _get_session(session_id, user)
    return await _run(hosted, lambda: hosted.engine.start_session(req.subject))


@router.post("/session/{session_id}/answer")
async def submit_answer(session_id: str, req: AnswerRequest, user: User = Depends(get_current_user)):
    hosted = _get_session(session_id, user)
    return await _run(hosted, lambda: hosted.engine.submit_answer(req.label))


@router.post("/session/{session_id}/advance")
async def advance(session_id: str, user: User = Depends(get_current_user)):
    hosted = _get_session(session_id, user)
    return await _run(hosted, hosted.engine.advance)


@router.post("/session/{session_id}/advance-level")
async def advance_level(session_id: str, user: User = Depends(get_current_user)):
    hosted = _get_session(session_id, user)
    return await _run(hosted, hosted.engine.advance_level)


@router.post("/session/{session_id}/retry")
async def retry_level(session_id: str, user: User = Depends(get_current_user)):
    hosted = _get_session(session_id, user)
    return await _run(hosted, hosted.engine.retry_level)


@router.post("/session/{session_id}/subject")
async def change_subject(session_id: str, req: SubjectRequest, user: User = Depends(get_current_user)):
    hosted = _get_session(session_id, user)
    # Not taken under the lock: a reset must be able to abandon an in-flight load
    hosted.touch()
    hosted.engine.change_subject(req.subject)
    return _state_payload(hosted)


@router.delete("/session/{session_id}")
async def end_session(session_id: str, user: User = Depends(get_current_user)):
    hosted = _get_session(session_id, user)
    _sessions.pop(session_id, None)
    await hosted.engine.aclose()
    return {"status": "success"}


@router.get("/stats")
async def get_stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return attempt_stats(db, user.username)


async def purge_idle_sessions(max_idle: Optional[timedelta] = None) -> int:
    if max_idle is None:
        max_idle = timedelta(minutes=settings.session_idle_minutes)
    threshold = datetime.utcnow() - max_idle
    stale = [sid for sid, hosted in _sessions.items() if hosted.touched_at < threshold]
    for sid in stale:
        hosted = _sessions.pop(sid, None)
        if hosted is not None:
            await hosted.engine.aclose()
    if stale:
        logger.info("Purged %d idle prelims sessions", len(stale))
    return len(stale)


async def close_all_sessions() -> None:
    hosted_sessions = list(_sessions.values())
    _sessions.clear()
    for hosted in hosted_sessions:
        await hosted.engine.aclose()
