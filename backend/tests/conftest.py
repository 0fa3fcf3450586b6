import asyncio
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="quizmentor-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ.pop("OPENROUTER_API_KEY", None)

import pytest

from quizmentor.db import Base, engine
from quizmentor.questions import Question


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


def _question(level=1, number=1, correct="A", *, options=None, subject="Indian Polity", tag="q"):
    return Question(
        id=f"{tag}-L{level}-{number}",
        prompt=f"Level {level} question {number}?",
        options=tuple(options) if options is not None else ("first", "second", "third", "fourth"),
        correct_label=correct,
        explanation=f"Because {correct}.",
        subject=subject,
        topic="Constitution",
        difficulty_level=level,
    )


@pytest.fixture
def make_question():
    return _question


@pytest.fixture
def make_batch():
    def build(level=1, count=5, correct="A", tag="q"):
        return [_question(level, number, correct, tag=tag) for number in range(1, count + 1)]

    return build


class ScriptedSource:
    """Question source stub that hands out queued responses and logs each request.

    A queued exception is raised, a queued callable is awaited, anything
    else is returned as the batch. With an empty queue a fresh valid batch
    at the requested level is built.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    async def request_batch(self, level, count, subject=None):
        self.requests.append((level, count, subject))
        number = len(self.requests)
        if not self.responses:
            return [_question(level, i, "A", tag=f"r{number}") for i in range(1, count + 1)]
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return await response()
        return response


class StubRecorder:
    def __init__(self, fail=False):
        self.fail = fail
        self.recorded = []

    async def record(self, attempt, user_id):
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("analytics store unavailable")
        self.recorded.append((attempt, user_id))


@pytest.fixture
def scripted_source():
    return ScriptedSource


@pytest.fixture
def recorder():
    return StubRecorder()


@pytest.fixture
def failing_recorder():
    return StubRecorder(fail=True)
