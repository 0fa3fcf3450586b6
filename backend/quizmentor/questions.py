from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import AcquisitionError


OPTION_LABELS: Tuple[str, ...] = ("A", "B", "C", "D")


class Question(BaseModel):
    """One multiple-choice item. Option labels are assigned by position."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    prompt: str
    options: Tuple[str, ...]
    correct_label: str
    explanation: str = ""
    subject: str = ""
    topic: str = "General"
    difficulty_level: int = Field(default=1, ge=1, le=5)

    def labelled_options(self) -> List[Tuple[str, str]]:
        return list(zip(OPTION_LABELS, self.options))

    def option_text(self, label: str) -> Optional[str]:
        for option_label, text in self.labelled_options():
            if option_label == label:
                return text
        return None


class Attempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    selected_label: str
    is_correct: bool
    timestamp: datetime
    session_id: Optional[str] = None
    level: Optional[int] = None
    time_taken_seconds: Optional[float] = None


def normalize_label(label: Any) -> Optional[str]:
    if not isinstance(label, str):
        return None
    cleaned = label.strip().upper()
    return cleaned if cleaned in OPTION_LABELS else None


def validate_batch(items: Any, *, count: int) -> List[Question]:
    """Accept a raw batch from a question source or raise AcquisitionError.

    Items may be Question instances or plain mappings with the same fields.
    Nothing is coerced: a short batch, a question with anything other than
    four options, or a correct label outside A-D rejects the whole batch.
    """
    if items is None:
        raise AcquisitionError("question source returned no batch")
    if isinstance(items, (str, bytes)) or not isinstance(items, Sequence):
        raise AcquisitionError(f"question source returned {type(items).__name__}, expected a list")
    if len(items) == 0:
        raise AcquisitionError("question source returned an empty batch")
    if len(items) != count:
        raise AcquisitionError(f"question source returned {len(items)} questions, expected {count}")

    batch: List[Question] = []
    seen_ids = set()
    for position, item in enumerate(items, start=1):
        question = _coerce_question(item, position)
        if len(question.options) != len(OPTION_LABELS):
            raise AcquisitionError(
                f"question {position} has {len(question.options)} options, expected {len(OPTION_LABELS)}"
            )
        if question.correct_label not in OPTION_LABELS:
            raise AcquisitionError(f"question {position} has no correct label among {', '.join(OPTION_LABELS)}")
        if question.id in seen_ids:
            raise AcquisitionError(f"question {position} repeats id {question.id}")
        seen_ids.add(question.id)
        batch.append(question)
    return batch


def _coerce_question(item: Union[Question, Mapping[str, Any]], position: int) -> Question:
    if isinstance(item, Question):
        return item
    if not isinstance(item, Mapping):
        raise AcquisitionError(f"question {position} is {type(item).__name__}, expected an object")
    try:
        return Question.model_validate(dict(item))
    except ValidationError as exc:
        raise AcquisitionError(f"question {position} is malformed", cause=exc) from exc
