"""Error taxonomy for the prelims quiz."""

from __future__ import annotations

from typing import Optional


class QuizError(Exception):
    """Base class for quiz errors."""


class AcquisitionError(QuizError):
    """The question source produced nothing usable for a batch."""

    def __init__(self, reason: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.reason} ({type(self.cause).__name__}: {self.cause})"
        return self.reason


class InvalidStateError(QuizError):
    """An operation was invoked in a phase that does not allow it."""

    def __init__(self, operation: str, phase: str, detail: str = "") -> None:
        message = f"{operation} is not valid in phase {phase}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
        self.phase = phase


class InvalidAnswerError(QuizError, ValueError):
    """The submitted label is not one of the option labels."""


class RecordingError(QuizError):
    """The attempt recorder failed. Only ever logged."""

    def __init__(self, question_id: str, cause: BaseException) -> None:
        super().__init__(f"failed to record attempt for question {question_id}: {cause}")
        self.question_id = question_id
        self.cause = cause
