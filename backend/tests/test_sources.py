import json
import random

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from quizmentor.db import Base
from quizmentor.errors import AcquisitionError
from quizmentor.llm_client import LLMRateLimitError
from quizmentor.models import PrelimsQuestion
from quizmentor.questions import validate_batch
from quizmentor.sources import (
    UPSC_SUBJECTS,
    BankQuestionSource,
    LLMQuestionSource,
    build_question_source,
    level_description,
)


def _generated(number, **overrides):
    item = {
        "question": f"Generated question {number}?",
        "option_a": "Harappa",
        "option_b": "Lothal",
        "option_c": "Dholavira",
        "option_d": "Kalibangan",
        "correct_answer": "c",
        "explanation": "Dholavira lies in the Rann of Kutch.",
        "subject": "Indian History",
        "topic": "Indus Valley",
        "difficulty": "Level 2",
    }
    item.update(overrides)
    return item


class FakeClient:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []
        self.closed = False

    async def complete(self, system, user, *, temperature=None):
        self.calls.append((system, user))
        if self.error is not None:
            raise self.error
        return self.reply

    async def aclose(self):
        self.closed = True


async def test_llm_source_parses_fenced_json():
    reply = "```json\n" + json.dumps([_generated(n) for n in range(1, 6)]) + "\n```"
    client = FakeClient(reply)
    source = LLMQuestionSource(lambda: client)

    batch = await source.request_batch(2, 5, "Indian History")

    assert client.closed is True
    system, user = client.calls[0]
    assert "Generate exactly 5 multiple choice questions for the subject: Indian History" in system
    assert level_description(2) in system
    assert "at difficulty Level 2" in user
    assert len(batch) == 5
    assert batch[0].options == ("Harappa", "Lothal", "Dholavira", "Kalibangan")
    assert batch[0].correct_label == "C"
    assert batch[0].difficulty_level == 2
    assert batch[0].topic == "Indus Valley"
    assert len({q.id for q in batch}) == 5
    assert validate_batch(batch, count=5) == batch


async def test_llm_source_accepts_wrapped_object_and_defaults():
    item = _generated(1, explanation=None, topic=None, subject=None)
    client = FakeClient(json.dumps({"questions": [item]}))
    batch = await LLMQuestionSource(lambda: client).request_batch(1, 1, "Economy")
    assert batch[0].explanation == "No explanation provided."
    assert batch[0].topic == "General"
    assert batch[0].subject == "Economy"


async def test_llm_source_picks_random_subject():
    client = FakeClient(json.dumps([_generated(1)]))
    source = LLMQuestionSource(lambda: client, rng=random.Random(7))
    await source.request_batch(1, 1)
    system, _ = client.calls[0]
    assert any(f"for the subject: {subject}." in system for subject in UPSC_SUBJECTS)


async def test_llm_source_rejects_missing_correct_answer():
    item = _generated(1)
    del item["correct_answer"]
    client = FakeClient(json.dumps([item]))
    with pytest.raises(AcquisitionError, match="correct_answer"):
        await LLMQuestionSource(lambda: client).request_batch(1, 1, "Geography")


async def test_llm_source_rejects_prose():
    client = FakeClient("Sorry, I cannot help with that.")
    with pytest.raises(AcquisitionError, match="valid JSON"):
        await LLMQuestionSource(lambda: client).request_batch(1, 5, "Geography")


async def test_llm_source_wraps_gateway_errors_and_closes_client():
    client = FakeClient(error=LLMRateLimitError("Rate limit exceeded.", status_code=429))
    with pytest.raises(AcquisitionError) as info:
        await LLMQuestionSource(lambda: client).request_batch(1, 5, "Economy")
    assert isinstance(info.value.cause, LLMRateLimitError)
    assert client.closed is True


async def test_llm_source_without_api_key():
    def unconfigured():
        raise ValueError("AI_GATEWAY_API_KEY is not configured")

    with pytest.raises(AcquisitionError, match="not configured"):
        await LLMQuestionSource(unconfigured).request_batch(1, 5, "Economy")


@pytest.fixture
def bank_sessions():
    memory = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=memory)
    factory = sessionmaker(bind=memory, future=True)
    db = factory()
    for n in range(6):
        db.add(
            PrelimsQuestion(
                id=f"polity-{n}",
                question=f"Polity question {n}",
                option_a="a",
                option_b="b",
                option_c="c",
                option_d="d",
                correct_answer="B",
                subject="Indian Polity",
                difficulty="Level 1",
            )
        )
    for n in range(2):
        db.add(
            PrelimsQuestion(
                id=f"economy-{n}",
                question=f"Economy question {n}",
                option_a="a",
                option_b="b",
                option_c="c",
                option_d="d",
                correct_answer="A",
                explanation="Fiscal deficit.",
                subject="Economy",
                topic="Budget",
                difficulty="Level 1",
            )
        )
    for n in range(5):
        db.add(
            PrelimsQuestion(
                id=f"geo-{n}",
                question=f"Geography question {n}",
                option_a="a",
                option_b="b",
                option_c="c",
                option_d="d",
                correct_answer="c",
                subject="Geography",
                difficulty="Level 2",
            )
        )
    db.commit()
    db.close()
    yield factory
    memory.dispose()


async def test_bank_source_samples_by_level_and_subject(bank_sessions):
    source = BankQuestionSource(bank_sessions, rng=random.Random(1))
    batch = await source.request_batch(1, 5, "Indian Polity")
    assert len(batch) == 5
    assert all(q.id.startswith("polity-") for q in batch)
    assert all(q.correct_label == "B" for q in batch)
    assert all(q.topic == "General" for q in batch)


async def test_bank_source_passes_stored_labels_through(bank_sessions):
    source = BankQuestionSource(bank_sessions)
    batch = await source.request_batch(2, 5, "Geography")
    assert [q.correct_label for q in batch] == ["c"] * 5
    with pytest.raises(AcquisitionError, match="no correct label"):
        validate_batch(batch, count=5)


async def test_bank_source_never_returns_partial_batch(bank_sessions):
    source = BankQuestionSource(bank_sessions)
    with pytest.raises(AcquisitionError, match="has 2 level 1 questions in Economy, need 5"):
        await source.request_batch(1, 5, "Economy")
    with pytest.raises(AcquisitionError, match="has 0 level 3 questions"):
        await source.request_batch(3, 5)


def test_build_question_source():
    assert isinstance(build_question_source("llm"), LLMQuestionSource)
    assert isinstance(build_question_source("BANK"), BankQuestionSource)
    with pytest.raises(ValueError):
        build_question_source("static")
