from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

import chapter_tutor.main as main
from chapter_tutor.core.settings import settings
from chapter_tutor.main import app
from tests.fakes import (
    GRAMMAR_CHAPTER_ID,
    GRAMMAR_CHAPTER_TITLE,
    FakeLanguageModel,
    FakeSpeechBackend,
    build_test_container,
)


@pytest.fixture
def fakes(monkeypatch):
    llm = FakeLanguageModel()
    speech = FakeSpeechBackend()
    container = build_test_container(language_model=llm, speech_backend=speech)
    monkeypatch.setattr(main, "build_container", lambda: container)
    return container, llm, speech


def _sse_events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


def _set_deployed() -> tuple[str, str, bool, str]:
    original = (settings.APP_ENV, settings.ENVIRONMENT, settings.RUNNING_IN_DOCKER, settings.TUTOR_SERVICE_SECRET)
    settings.APP_ENV = "production"
    settings.ENVIRONMENT = "production"
    settings.RUNNING_IN_DOCKER = True
    settings.TUTOR_SERVICE_SECRET = "topsecret"
    return original


def _restore(original: tuple[str, str, bool, str]) -> None:
    settings.APP_ENV, settings.ENVIRONMENT, settings.RUNNING_IN_DOCKER, settings.TUTOR_SERVICE_SECRET = original


def test_health(fakes) -> None:
    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["service"] == "chapter-tutor"


def test_json_turn_returns_reply_costs_and_audio(fakes) -> None:
    with TestClient(app) as client:
        response = client.post(
            "/api/v1/chat/turns",
            data={"chapterId": GRAMMAR_CHAPTER_ID, "message": "What is a noun?"},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "A noun is a naming word. For example, dog is a noun."
    assert body["inScope"] is True
    assert body["wasFiltered"] is False
    assert body["audio"]
    assert body["sessionId"]
    assert set(body["costs"]) == {"whisper", "claude", "tts", "total"}
    assert body["tokens"]["cachedInputTokens"] == 900
    assert "x-correlation-id" in {key.lower() for key in response.headers}


def test_streamed_turn_is_server_sent_events_ending_in_complete(fakes) -> None:
    with TestClient(app) as client:
        response = client.post(
            "/api/v1/chat/turns",
            data={"chapterId": GRAMMAR_CHAPTER_ID, "message": "What is a noun?", "stream": "true"},
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = _sse_events(response.text)
    assert events[-1]["type"] == "complete"
    assert {event["type"] for event in events[:-1]} == {"text", "audio"}


def test_streamed_off_topic_turn_is_filtered(fakes) -> None:
    _, llm, _ = fakes
    with TestClient(app) as client:
        response = client.post(
            "/api/v1/chat/turns",
            data={"chapterId": GRAMMAR_CHAPTER_ID, "message": "What's the capital of France?", "stream": "true"},
        )

    events = _sse_events(response.text)
    assert [event["type"] for event in events] == ["text", "audio", "complete"]
    assert GRAMMAR_CHAPTER_TITLE in events[0]["data"]
    assert events[-1]["wasFiltered"] is True
    assert llm.calls == 0


def test_voice_turn_is_accepted_as_multipart(fakes) -> None:
    with TestClient(app) as client:
        response = client.post(
            "/api/v1/chat/turns",
            data={"chapterId": GRAMMAR_CHAPTER_ID},
            files={"audio": ("question.webm", b"webm-bytes", "audio/webm")},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["transcript"] == "What is a noun?"
    assert body["costs"]["whisper"] == pytest.approx(0.003)


def test_empty_turn_is_rejected_before_any_work(fakes) -> None:
    _, llm, speech = fakes
    with TestClient(app) as client:
        response = client.post(
            "/api/v1/chat/turns",
            data={"chapterId": GRAMMAR_CHAPTER_ID, "message": "   ", "stream": "true"},
        )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "EMPTY_QUESTION"
    assert llm.calls == 0
    assert speech.calls == 0


def test_unknown_chapter_is_404(fakes) -> None:
    with TestClient(app) as client:
        response = client.post("/api/v1/chat/turns", data={"chapterId": "calculus-limits", "message": "What is a noun?"})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "CHAPTER_NOT_FOUND"


def test_missing_chapter_is_a_contract_breach(fakes) -> None:
    with TestClient(app) as client:
        response = client.post("/api/v1/chat/turns", data={"message": "What is a noun?"})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "FRONTEND_CONTRACT_BREACH"


def test_cache_maintenance_endpoints(fakes) -> None:
    _, _, speech = fakes
    with TestClient(app) as client:
        client.post("/api/v1/chat/turns", data={"chapterId": GRAMMAR_CHAPTER_ID, "message": "What is a noun?"})
        precache = client.post("/api/v1/cache/speech/precache", json={"phrases": ["Great question!"]})
        again = client.post("/api/v1/cache/speech/precache", json={"phrases": ["Great question!"]})
        sweep = client.post("/api/v1/cache/speech/sweep")
        chapters = client.post("/api/v1/cache/chapters/clear")
        cleared = client.post("/api/v1/cache/speech/clear")

    assert precache.json() == {"cached": 0, "synthesized": 1, "failed": 0}
    assert again.json() == {"cached": 1, "synthesized": 0, "failed": 0}
    assert sweep.json()["affected"] == 0
    assert chapters.json() == {"cache": "chapters", "action": "clear", "affected": 1}
    assert cleared.json()["affected"] == 2
    assert speech.calls == 2


def test_deployed_turns_require_service_secret_and_user(fakes) -> None:
    original = _set_deployed()
    try:
        with TestClient(app) as client:
            anonymous = client.post(
                "/api/v1/chat/turns", data={"chapterId": GRAMMAR_CHAPTER_ID, "message": "What is a noun?"}
            )
            no_user = client.post(
                "/api/v1/chat/turns",
                data={"chapterId": GRAMMAR_CHAPTER_ID, "message": "What is a noun?"},
                headers={"Authorization": "Bearer topsecret"},
            )
            allowed = client.post(
                "/api/v1/chat/turns",
                data={"chapterId": GRAMMAR_CHAPTER_ID, "message": "What is a noun?"},
                headers={"X-Service-Secret": "topsecret", "X-User-Id": "student-9"},
            )
            maintenance = client.post("/api/v1/cache/speech/sweep")
    finally:
        _restore(original)

    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "UNAUTHORIZED"
    assert no_user.status_code == 401
    assert allowed.status_code == 200
    assert maintenance.status_code == 401
