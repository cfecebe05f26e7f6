"""Tests for the API endpoints, with the provider manager swapped out."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from backend.app import create_app
from backend.config import ServerConfig
from backend.deps import get_manager, get_optional_manager
from backend.routes.voice import match_voice, rule_based_voice
from chronicles.llm import GeminiProvider, LLMError
from chronicles.models import validate_turn_response

CONTEXT = {
    "scenario": "The Third War",
    "character": {
        "name": "Jaina", "hp": 90, "maxHp": 100, "inventory": ["Staff"],
        "location": "Dalaran", "class": "Mage", "level": 10,
    },
    "narrative_history": ["> look"],
    "current_context": "A study",
}

TURN = {
    "response_type": "narrative",
    "content": {"text": "Snow falls on Dalaran."},
    "environment": {"description": "A quiet study"},
    "action_choices": [{"id": "read", "text": "Read the tome"}],
    "character_updates": {"location": "Violet Citadel"},
}

VOICES = ["Samantha (en-US)", "Daniel (en-GB)", "Amelie (fr-FR)"]

KEY_HEADERS = {"x-llm-provider": "gemini", "x-llm-api-key": "client-key"}


@pytest.fixture
def app():
    return create_app(ServerConfig(stream_chunk_delay=0, aux_min_interval=0))


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def manager(app) -> MagicMock:
    manager = MagicMock()
    manager.generate_response = AsyncMock(return_value=validate_turn_response(TURN))
    manager.generate_story_recap = AsyncMock(return_value="The tale so far.")
    manager.generate_text = AsyncMock(return_value="Daniel")
    app.dependency_overrides[get_manager] = lambda: manager
    app.dependency_overrides[get_optional_manager] = lambda: manager
    return manager


def _events(body: str) -> list[dict]:
    return [
        json.loads(line[6:])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


# ── health / providers ───────────────────────────────────────


def test_health(client: TestClient):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_providers(client: TestClient):
    providers = client.get("/api/providers").json()
    assert [p["id"] for p in providers] == ["gemini", "openai"]
    gemini = providers[0]
    assert gemini["default_model"] == "gemini-1.5-flash"
    assert gemini["model_info"]["gemini-1.5-flash"]["cost"] == "low"


# ── game-response ────────────────────────────────────────────


class TestGameResponse:
    def test_not_configured_is_plain_500(self, client: TestClient) -> None:
        resp = client.post("/api/game-response", json={"gameContext": CONTEXT, "playerAction": "x"})
        assert resp.status_code == 500
        assert "API key" in resp.json()["error"]

    def test_unknown_provider_header_is_500(self, client: TestClient) -> None:
        resp = client.post(
            "/api/game-response",
            json={"gameContext": CONTEXT, "playerAction": "x"},
            headers={"x-llm-provider": "kobold", "x-llm-api-key": "k"},
        )
        assert resp.status_code == 500
        assert "Unknown LLM provider" in resp.json()["error"]

    def test_streams_events(self, client: TestClient, manager: MagicMock) -> None:
        resp = client.post("/api/game-response", json={"gameContext": CONTEXT, "playerAction": "Look"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = _events(resp.text)
        types = [e["type"] for e in events]
        assert types[0] == "processing"
        assert types[-4:] == ["environment", "action_choices", "character_updates", "complete"]
        text = "".join(e["text"] for e in events if e["type"] == "text_chunk")
        assert text == "Snow falls on Dalaran."

        context, action = manager.generate_response.call_args.args
        assert action == "Look"
        assert context.character.max_hp == 100

    def test_client_credentials_reach_adapter(self, client: TestClient) -> None:
        with patch.object(
            GeminiProvider, "generate_response",
            AsyncMock(return_value=validate_turn_response(TURN)),
        ):
            resp = client.post(
                "/api/game-response",
                json={"gameContext": CONTEXT, "playerAction": "Look"},
                headers={"x-llm-provider": "gemini", "x-llm-api-key": "client-key"},
            )
        assert resp.status_code == 200
        assert _events(resp.text)[-1] == {"type": "complete"}

    def test_missing_action_rejected(self, client: TestClient, manager: MagicMock) -> None:
        resp = client.post("/api/game-response", json={"gameContext": CONTEXT})
        assert resp.status_code == 422


# ── generate-story-recap ─────────────────────────────────────


class TestStoryRecap:
    def test_returns_recap(self, client: TestClient, manager: MagicMock) -> None:
        resp = client.post(
            "/api/generate-story-recap",
            json={"gameContext": CONTEXT, "prompt": "Summarise"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"recap": "The tale so far."}
        manager.generate_story_recap.assert_awaited_once()
        assert manager.generate_story_recap.call_args.kwargs == {"fallback": False}

    def test_not_configured(self, client: TestClient) -> None:
        resp = client.post(
            "/api/generate-story-recap",
            json={"gameContext": CONTEXT, "prompt": "Summarise"},
        )
        assert resp.status_code == 500
        assert "error" in resp.json()

    def test_limiter_disabled(self, app, client: TestClient, manager: MagicMock) -> None:
        app.state.limiters.story_recap.disable(300)
        resp = client.post(
            "/api/generate-story-recap",
            json={"gameContext": CONTEXT, "prompt": "Summarise"},
        )
        assert resp.status_code == 500
        manager.generate_story_recap.assert_not_called()

    def test_vendor_429_disables_recap_limiter(self, app, client: TestClient) -> None:
        limited = httpx.Response(429, request=httpx.Request("POST", "https://vendor.test"))
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=limited)) as vendor:
            first = client.post(
                "/api/generate-story-recap",
                json={"gameContext": CONTEXT, "prompt": "Summarise"},
                headers=KEY_HEADERS,
            )
            second = client.post(
                "/api/generate-story-recap",
                json={"gameContext": CONTEXT, "prompt": "Summarise"},
                headers=KEY_HEADERS,
            )
        assert first.status_code == 500
        assert "429" in first.json()["error"]
        assert app.state.limiters.story_recap.disabled
        assert not app.state.limiters.voice_selection.disabled
        assert second.status_code == 500
        assert vendor.await_count == 1


# ── voice-selection ──────────────────────────────────────────


class TestVoiceSelection:
    def _post(self, client: TestClient) -> dict:
        resp = client.post("/api/voice-selection", json={
            "character": "Thrall", "available_voices": VOICES, "scenario": "third-war",
        })
        assert resp.status_code == 200
        return resp.json()

    def test_llm_recommendation_used(self, client: TestClient, manager: MagicMock) -> None:
        assert self._post(client) == {"recommended_voice": "Daniel (en-GB)"}
        kwargs = manager.generate_text.call_args.kwargs
        assert kwargs == {"max_output_tokens": 50, "temperature": 0.3}
        assert "Thrall" in manager.generate_text.call_args.args[0]

    def test_invalid_answer_falls_back(self, client: TestClient, manager: MagicMock) -> None:
        manager.generate_text.return_value = "Gandalf"
        assert self._post(client) == {"recommended_voice": "Samantha (en-US)"}

    def test_vendor_error_falls_back(self, client: TestClient, manager: MagicMock) -> None:
        manager.generate_text.side_effect = LLMError("HTTP 429")
        assert self._post(client) == {"recommended_voice": "Samantha (en-US)"}

    def test_rate_limit_error_disables_voice_limiter_only(
        self, app, client: TestClient, manager: MagicMock
    ) -> None:
        manager.generate_text.side_effect = LLMError("Gemini API returned HTTP 429")
        self._post(client)
        assert app.state.limiters.voice_selection.disabled
        assert not app.state.limiters.story_recap.disabled

        manager.generate_text.reset_mock()
        assert self._post(client) == {"recommended_voice": "Samantha (en-US)"}
        manager.generate_text.assert_not_called()

    def test_no_provider_uses_rules(self, client: TestClient) -> None:
        assert self._post(client) == {"recommended_voice": "Samantha (en-US)"}

    def test_vendor_transport_error_falls_back(self, client: TestClient) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadError("reset"))):
            resp = client.post(
                "/api/voice-selection",
                json={"character": "Thrall", "available_voices": VOICES},
                headers=KEY_HEADERS,
            )
        assert resp.status_code == 200
        assert resp.json() == {"recommended_voice": "Samantha (en-US)"}

    def test_camel_case_body_accepted(self, client: TestClient) -> None:
        resp = client.post("/api/voice-selection", json={
            "character": "Thrall", "availableVoices": ["Amelie (fr-FR)"],
        })
        assert resp.json() == {"recommended_voice": "Amelie (fr-FR)"}

    def test_no_voices(self, client: TestClient) -> None:
        resp = client.post("/api/voice-selection", json={"character": "Thrall", "available_voices": []})
        assert resp.json() == {"recommended_voice": None}


def test_match_voice():
    assert match_voice("Daniel", VOICES) == "Daniel (en-GB)"
    assert match_voice("  samantha (en-US) ", VOICES) == "Samantha (en-US)"
    assert match_voice("I would pick Amelie", VOICES) == "Amelie (fr-FR)"
    assert match_voice("", VOICES) is None
    assert match_voice("Gandalf", VOICES) is None


def test_rule_based_voice_prefers_english():
    assert rule_based_voice(["Amelie (fr-FR)", "Karen (en-AU)"]) == "Karen (en-AU)"
    assert rule_based_voice(["Amelie (fr-FR)"]) == "Amelie (fr-FR)"
    assert rule_based_voice([]) is None


# ── validate-key / token-estimate ────────────────────────────


class TestValidateKey:
    def test_valid(self, client: TestClient) -> None:
        with patch.object(GeminiProvider, "validate_api_key", AsyncMock(return_value=True)) as check:
            resp = client.post("/api/validate-key", json={"provider": "gemini", "api_key": "k"})
        assert resp.json() == {"valid": True}
        check.assert_awaited_once_with("k")

    def test_invalid(self, client: TestClient) -> None:
        with patch.object(GeminiProvider, "validate_api_key", AsyncMock(return_value=False)):
            resp = client.post("/api/validate-key", json={"provider": "gemini", "api_key": "k"})
        assert resp.json() == {"valid": False}

    def test_unknown_provider(self, client: TestClient) -> None:
        resp = client.post("/api/validate-key", json={"provider": "kobold", "api_key": "k"})
        assert resp.status_code == 400


def test_token_estimate(client: TestClient):
    resp = client.post("/api/token-estimate", json={"context_detail": "standard"})
    assert resp.json() == {
        "input": 1030,
        "output": 1024,
        "total": 2054,
        "cost_tier": "high",
        "formatted_total": "2.1k",
        "description": "Premium cost",
    }
