from __future__ import annotations

import asyncio
import json
import logging
import random
import re
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Union

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import SessionLocal
from .errors import AcquisitionError
from .llm_client import LLMClient, LLMError
from .models import PrelimsQuestion
from .questions import OPTION_LABELS, Question, normalize_label
from .settings import settings


logger = logging.getLogger(__name__)


UPSC_SUBJECTS: List[str] = [
    "Indian History",
    "Indian Polity",
    "Geography",
    "Economy",
    "Environment & Ecology",
    "Science & Technology",
    "Current Affairs",
    "Art & Culture",
]

LEVEL_DESCRIPTIONS: Dict[int, str] = {
    1: "Basic factual questions. Direct recall from NCERT books. Single concept questions.",
    2: "Moderate difficulty. Requires understanding of concepts. May involve 2 related concepts.",
    3: "Intermediate level. Application-based questions. Requires connecting multiple concepts.",
    4: "Advanced level. Analytical questions. Requires deep understanding and current affairs linkage.",
    5: (
        "Expert level. Complex multi-dimensional questions. Requires critical thinking, "
        "elimination skills, and comprehensive knowledge."
    ),
}


def level_description(level: int) -> str:
    return LEVEL_DESCRIPTIONS.get(level, "Standard UPSC Prelims level question.")


def difficulty_label(level: int) -> str:
    return f"Level {level}"


class QuestionSource(Protocol):
    async def request_batch(
        self, level: int, count: int, subject: Optional[str] = None
    ) -> Sequence[Union[Question, Mapping[str, Any]]]:
        ...


def _system_prompt(count: int, subject: str, level: int) -> str:
    return (
        f"You are a UPSC Prelims question generator. Generate exactly {count} multiple choice questions "
        f"for the subject: {subject}.\n\n"
        f"Difficulty Level: {level}/5\n"
        f"Level Description: {level_description(level)}\n\n"
        "IMPORTANT RULES:\n"
        "1. Each question must have exactly 4 options (A, B, C, D)\n"
        "2. Only ONE option should be correct\n"
        "3. Questions should be UPSC Prelims style - factual, analytical, and elimination-based\n"
        "4. Include questions from various topics within the subject\n"
        "5. Make wrong options plausible but clearly incorrect upon analysis\n"
        "6. For higher levels (4-5), include statement-based questions, match the following, or assertion-reason type\n"
        "7. Explanations should be educational and cite sources where applicable\n\n"
        "You must respond with a valid JSON array of questions in this exact format:\n"
        "[\n"
        "  {\n"
        '    "question": "The question text here?",\n'
        '    "option_a": "First option",\n'
        '    "option_b": "Second option",\n'
        '    "option_c": "Third option",\n'
        '    "option_d": "Fourth option",\n'
        '    "correct_answer": "A",\n'
        '    "explanation": "Detailed explanation of why the answer is correct and why others are wrong.",\n'
        f'    "subject": "{subject}",\n'
        '    "topic": "Specific topic within subject",\n'
        f'    "difficulty": "Level {level}"\n'
        "  }\n"
        "]"
    )


def _user_prompt(count: int, subject: str, level: int) -> str:
    return (
        f"Generate {count} UPSC Prelims questions for {subject} at difficulty Level {level}. "
        "Make them challenging but fair, typical of actual UPSC exam patterns. Include variety in question types."
    )


def _extract_json_payload(text: str) -> Any:
    try:
        return json.loads(text)
    except Exception:
        pass
    code_block = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
    if code_block:
        candidate = code_block.group(1)
        try:
            return json.loads(candidate)
        except Exception:
            pass
    for opener, closer in (("[", "]"), ("{", "}")):
        first = text.find(opener)
        last = text.rfind(closer)
        if first != -1 and last != -1 and last > first:
            try:
                return json.loads(text[first : last + 1])
            except Exception:
                pass
    raise AcquisitionError("LLM did not return valid JSON")


def _generated_options(data: Mapping[str, Any]) -> List[Any]:
    keyed = [data.get(f"option_{label.lower()}") for label in OPTION_LABELS]
    if all(option is None for option in keyed) and isinstance(data.get("options"), list):
        return list(data["options"])
    return keyed


def _question_from_generated(data: Any, *, number: int, tag: str, level: int, subject: str) -> Question:
    if not isinstance(data, Mapping):
        raise AcquisitionError(f"generated question {number} is not an object")
    text = data.get("question")
    options = _generated_options(data)
    if not isinstance(text, str) or not text.strip():
        raise AcquisitionError(f"generated question {number} has no question text")
    if any(not isinstance(option, str) or not option.strip() for option in options):
        raise AcquisitionError(f"generated question {number} has a missing or empty option")
    correct = normalize_label(data.get("correct_answer"))
    if correct is None:
        raise AcquisitionError(f"generated question {number} has no valid correct_answer")
    try:
        return Question(
            id=f"ai-{tag}-{number}",
            prompt=text.strip(),
            options=tuple(option.strip() for option in options),
            correct_label=correct,
            explanation=str(data.get("explanation") or "No explanation provided.").strip(),
            subject=str(data.get("subject") or subject),
            topic=str(data.get("topic") or "General"),
            difficulty_level=level,
        )
    except ValidationError as exc:
        raise AcquisitionError(f"generated question {number} is malformed", cause=exc) from exc


class LLMQuestionSource:
    """Generates each batch with one chat-completion call."""

    def __init__(
        self,
        client_factory: Callable[[], LLMClient] = LLMClient,
        *,
        subjects: Optional[Sequence[str]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._client_factory = client_factory
        self._subjects = list(subjects or UPSC_SUBJECTS)
        self._rng = rng or random.Random()

    async def request_batch(self, level: int, count: int, subject: Optional[str] = None) -> List[Question]:
        selected = subject or self._rng.choice(self._subjects)
        try:
            client = self._client_factory()
        except ValueError as exc:
            raise AcquisitionError("question generator is not configured", cause=exc) from exc
        logger.info("Generating %d questions for %s at level %d", count, selected, level)
        try:
            raw = await client.complete(_system_prompt(count, selected, level), _user_prompt(count, selected, level))
        except LLMError as exc:
            raise AcquisitionError("question generation failed", cause=exc) from exc
        finally:
            await client.aclose()

        payload = _extract_json_payload(raw)
        if isinstance(payload, Mapping) and isinstance(payload.get("questions"), list):
            payload = payload["questions"]
        if not isinstance(payload, list):
            raise AcquisitionError("LLM response is not a JSON array of questions")
        tag = uuid.uuid4().hex[:8]
        return [
            _question_from_generated(item, number=i + 1, tag=tag, level=level, subject=selected)
            for i, item in enumerate(payload)
        ]


def _question_from_row(row: PrelimsQuestion, level: int) -> Question:
    return Question(
        id=row.id,
        prompt=row.question,
        options=(row.option_a, row.option_b, row.option_c, row.option_d),
        correct_label=row.correct_answer or "",
        explanation=row.explanation or "",
        subject=row.subject,
        topic=row.topic or "General",
        difficulty_level=level,
    )


class BankQuestionSource:
    """Samples batches from the prelims_questions table."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._session_factory = session_factory
        self._rng = rng or random.Random()

    async def request_batch(self, level: int, count: int, subject: Optional[str] = None) -> List[Question]:
        return await asyncio.to_thread(self._sample, level, count, subject)

    def _sample(self, level: int, count: int, subject: Optional[str]) -> List[Question]:
        stmt = select(PrelimsQuestion).where(PrelimsQuestion.difficulty == difficulty_label(level))
        if subject:
            stmt = stmt.where(PrelimsQuestion.subject == subject)
        db = self._session_factory()
        try:
            rows = list(db.execute(stmt).scalars().all())
        finally:
            db.close()
        if len(rows) < count:
            scope = f" in {subject}" if subject else ""
            raise AcquisitionError(f"question bank has {len(rows)} level {level} questions{scope}, need {count}")
        return [_question_from_row(row, level) for row in self._rng.sample(rows, count)]


def build_question_source(kind: Optional[str] = None) -> QuestionSource:
    kind = (kind or settings.question_source).lower()
    if kind == "llm":
        return LLMQuestionSource()
    if kind == "bank":
        return BankQuestionSource()
    raise ValueError(f"QUESTION_SOURCE must be 'llm' or 'bank', got {kind!r}")
