from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from quizmentor.errors import AcquisitionError
from quizmentor.main import app
from quizmentor.routers import prelims


@pytest.fixture
def source(scripted_source):
    return scripted_source()


@pytest.fixture
def client(source):
    app.dependency_overrides[prelims.get_question_source] = lambda: source
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _login(client, username="guest"):
    response = client.post("/auth/token", data={"username": username, "password": "unused"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _answer_all(client, headers, session_id, label="A"):
    body = None
    for _ in range(5):
        assert client.post(f"/prelims/session/{session_id}/answer", json={"label": label}, headers=headers).status_code == 200
        body = client.post(f"/prelims/session/{session_id}/advance", headers=headers).json()
    return body


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"


def test_requires_authentication(client):
    assert client.post("/prelims/session", json={}).status_code == 401


def test_subjects(client):
    headers = _login(client)
    body = client.get("/prelims/subjects", headers=headers).json()
    assert "Indian Polity" in body["subjects"]
    assert [level["level"] for level in body["levels"]] == [1, 2, 3, 4, 5]
    assert body["questions_per_level"] == 5
    assert body["pass_threshold"] == 0.6


def test_full_level_flow(client, source):
    headers = _login(client)
    response = client.post("/prelims/session", json={"subject": "Economy"}, headers=headers)
    assert response.status_code == 201
    body = response.json()
    session_id = body["session_id"]
    assert body["phase"] == "AwaitingAnswer"
    assert body["level"] == 1
    assert body["actions"] == ["change_subject", "submit_answer"]
    assert "correct_label" not in body["question"]
    assert [option["label"] for option in body["question"]["options"]] == ["A", "B", "C", "D"]
    assert source.requests == [(1, 5, "Economy")]

    body = client.post(f"/prelims/session/{session_id}/answer", json={"label": "b"}, headers=headers).json()
    assert body["phase"] == "ShowingResult"
    assert body["last_answer"]["is_correct"] is False
    assert body["question"]["correct_label"] == "A"
    assert body["correct_count"] == 0
    client.post(f"/prelims/session/{session_id}/advance", headers=headers)

    for _ in range(4):
        client.post(f"/prelims/session/{session_id}/answer", json={"label": "A"}, headers=headers)
        body = client.post(f"/prelims/session/{session_id}/advance", headers=headers).json()
    assert body["phase"] == "LevelComplete"
    assert body["last_result"]["correct_count"] == 4
    assert body["last_result"]["passed"] is True
    assert "advance_level" in body["actions"]

    body = client.post(f"/prelims/session/{session_id}/advance-level", headers=headers).json()
    assert body["phase"] == "AwaitingAnswer"
    assert body["level"] == 2
    assert source.requests[-1] == (2, 5, "Economy")

    state = client.get(f"/prelims/session/{session_id}", headers=headers).json()
    assert state == body


def test_contract_violations(client):
    headers = _login(client)
    session_id = client.post("/prelims/session", json={}, headers=headers).json()["session_id"]

    response = client.post(f"/prelims/session/{session_id}/advance", headers=headers)
    assert response.status_code == 409
    response = client.post(f"/prelims/session/{session_id}/answer", json={"label": "Z"}, headers=headers)
    assert response.status_code == 400
    response = client.post(f"/prelims/session/{session_id}/retry", headers=headers)
    assert response.status_code == 409


def test_failed_level_cannot_advance(client):
    headers = _login(client)
    session_id = client.post("/prelims/session", json={}, headers=headers).json()["session_id"]
    body = _answer_all(client, headers, session_id, label="D")
    assert body["last_result"]["passed"] is False
    assert "advance_level" not in body["actions"]

    assert client.post(f"/prelims/session/{session_id}/advance-level", headers=headers).status_code == 409
    body = client.post(f"/prelims/session/{session_id}/retry", headers=headers).json()
    assert body["phase"] == "AwaitingAnswer"
    assert body["level"] == 1


def test_source_failure_then_retry(client, source):
    source.responses.append(AcquisitionError("LLM did not return valid JSON"))
    headers = _login(client)
    body = client.post("/prelims/session", json={}, headers=headers).json()
    assert body["phase"] == "SessionError"
    assert body["level"] == 1
    assert "valid JSON" in body["error"]

    body = client.post(f"/prelims/session/{body['session_id']}/retry", headers=headers).json()
    assert body["phase"] == "AwaitingAnswer"
    assert body["error"] is None


def test_change_subject_and_restart(client, source):
    headers = _login(client)
    session_id = client.post("/prelims/session", json={}, headers=headers).json()["session_id"]

    body = client.post(f"/prelims/session/{session_id}/subject", json={"subject": "Geography"}, headers=headers).json()
    assert body["phase"] == "SelectingSubject"
    assert body["subject"] == "Geography"

    body = client.post(f"/prelims/session/{session_id}/start", json={}, headers=headers).json()
    assert body["phase"] == "AwaitingAnswer"
    assert source.requests[-1] == (1, 5, "Geography")


def test_sessions_are_private_and_deletable(client):
    owner = _login(client, "guest")
    other = _login(client, "guests")
    session_id = client.post("/prelims/session", json={}, headers=owner).json()["session_id"]

    assert client.get(f"/prelims/session/{session_id}", headers=other).status_code == 404
    assert client.delete(f"/prelims/session/{session_id}", headers=owner).json() == {"status": "success"}
    assert client.get(f"/prelims/session/{session_id}", headers=owner).status_code == 404


def test_attempts_are_recorded_for_stats(client):
    headers = _login(client)
    session_id = client.post("/prelims/session", json={}, headers=headers).json()["session_id"]
    client.post(f"/prelims/session/{session_id}/answer", json={"label": "A"}, headers=headers)
    client.post(f"/prelims/session/{session_id}/advance", headers=headers)
    client.post(f"/prelims/session/{session_id}/answer", json={"label": "C"}, headers=headers)
    client.portal.call(prelims._sessions[session_id].engine.flush_recordings)

    stats = client.get("/prelims/stats", headers=headers).json()
    assert stats["user_id"] == "guest"
    assert stats["attempts"] == 2
    assert stats["correct"] == 1
    assert stats["by_level"] == [{"level": 1, "attempts": 2, "correct": 1, "accuracy": 0.5}]


def test_purge_idle_sessions(client):
    headers = _login(client)
    session_id = client.post("/prelims/session", json={}, headers=headers).json()["session_id"]
    removed = client.portal.call(prelims.purge_idle_sessions, timedelta(seconds=-1))
    assert removed >= 1
    assert session_id not in prelims._sessions
