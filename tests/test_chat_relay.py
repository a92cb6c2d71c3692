"""
Test suite for the chat relay service.

Tests cover:
- Configuration management
- Input validation (400 / 413) before any upstream call
- Non-streaming chat end-to-end against a stub upstream
- Fallback, rate limiting (429) and exhaustion (500) mapping
- Streaming endpoint
"""

import json
import os
from dataclasses import replace
from unittest.mock import patch

import httpx
import pytest
from fastapi import Request

import chat_relay_service as service
from config import DEFAULT_FALLBACK_MODELS, AppConfig
from conftest import make_config
from extractor import SAFETY_APOLOGY
from stream_decoder import STREAM_ERROR_TEXT


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
async def client():
    """Create an in-process ASGI client."""
    transport = httpx.ASGITransport(app=service.app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


class StubUpstream:
    """Gemini stand-in served through httpx.MockTransport."""

    def __init__(self, responder):
        self.responder = responder
        self.calls = []
        self.clients = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        model_id, _, method = request.url.path.rsplit("/", 1)[-1].partition(":")
        body = json.loads(request.content)
        self.calls.append({"model": model_id, "method": method, "body": body, "request": request})
        return self.responder(model_id, method, body)

    def factory(self, cfg, *, stream=False):
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        self.clients.append(client)
        return client

    def patch(self):
        return patch("chat_relay_service.new_http_client", self.factory)


def _reply_envelope(*texts):
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": t} for t in texts]}}]}


# ============================================================================
# Config Tests
# ============================================================================

class TestConfig:
    def test_from_env_defaults(self):
        with patch.dict(os.environ, {"GEMINI_API_KEY": "k"}, clear=True):
            cfg = AppConfig.from_env()
        assert cfg.gemini_api_key == "k"
        assert cfg.gemini_api_version == "v1beta"
        assert cfg.fallback_models == DEFAULT_FALLBACK_MODELS
        assert cfg.system_placement == "field"
        assert cfg.history_window == 6
        assert cfg.expose_upstream_errors is True
        cfg.validate()

    def test_from_env_custom_values(self):
        env_vars = {
            "GEMINI_API_KEY": "custom-key",
            "GEMINI_MODEL": "gemini-exp",
            "GEMINI_FALLBACK_MODELS": "a, b,,c",
            "GEMINI_API_VERSION": "V1",
            "SYSTEM_PROMPT_PLACEMENT": "priming",
            "HISTORY_WINDOW": "4",
            "REQUEST_TIMEOUT_S": "12.5",
            "EXPOSE_UPSTREAM_ERRORS": "no",
            "TOP_K": "not-a-number",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = AppConfig.from_env()
        assert cfg.model_override == "gemini-exp"
        assert cfg.fallback_models == ("a", "b", "c")
        assert cfg.gemini_api_version == "v1"
        assert cfg.history_window == 4
        assert cfg.request_timeout_s == 12.5
        assert cfg.expose_upstream_errors is False
        assert cfg.top_k == 40
        cfg.validate()

    def test_validate_missing_api_key(self, test_config):
        with pytest.raises(ValueError, match="GEMINI_API_KEY"):
            replace(test_config, gemini_api_key="").validate()

    def test_validate_bad_placement(self, test_config):
        with pytest.raises(ValueError, match="SYSTEM_PROMPT_PLACEMENT"):
            replace(test_config, system_placement="sideways").validate()

    def test_validate_v1_with_field_placement(self, test_config):
        with pytest.raises(ValueError, match="v1"):
            replace(test_config, gemini_api_version="v1").validate()

    def test_validate_no_models(self, test_config):
        with pytest.raises(ValueError, match="GEMINI_MODEL"):
            replace(test_config, model_override="", fallback_models=("", " ")).validate()

    def test_fixture_config_is_valid(self):
        make_config().validate()


# ============================================================================
# Validation Tests
# ============================================================================

class TestValidation:
    @pytest.mark.asyncio
    async def test_healthz(self, client):
        response = await client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_missing_message_and_image(self, client):
        stub = StubUpstream(lambda *a: httpx.Response(200, json=_reply_envelope("x")))
        with stub.patch():
            response = await client.post("/chat", json={"history": []})
        assert response.status_code == 400
        assert stub.calls == []

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        response = await client.post(
            "/chat", content="invalid json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert "Invalid JSON" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_non_object_body(self, client):
        response = await client.post("/chat", json=["oi"])
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_image_only(self, client):
        stub = StubUpstream(lambda *a: httpx.Response(200, json=_reply_envelope("x")))
        with stub.patch():
            response = await client.post("/chat", json={"imageBase64": "not-a-data-uri"})
        assert response.status_code == 400
        assert stub.calls == []

    @pytest.mark.asyncio
    async def test_request_too_large(self, client):
        small = replace(service.config, max_request_bytes=100)
        with patch("chat_relay_service.config", small):
            response = await client.post("/chat", json={"message": "x" * 500})
        assert response.status_code == 413
        assert "Request too large" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_no_api_key(self, client):
        empty = replace(service.config, gemini_api_key="")
        with patch("chat_relay_service.config", empty):
            response = await client.post("/chat", json={"message": "oi"})
        assert response.status_code == 500
        assert "GEMINI_API_KEY" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_missing_input_is_400_even_without_api_key(self, client):
        empty = replace(service.config, gemini_api_key="")
        with patch("chat_relay_service.config", empty):
            response = await client.post("/chat", json={})
        assert response.status_code == 400
        assert response.json()["detail"] == service.MISSING_INPUT_MESSAGE


# ============================================================================
# Chat Tests
# ============================================================================

class TestChat:
    @pytest.mark.asyncio
    async def test_end_to_end_reply(self, client):
        stub = StubUpstream(lambda *a: httpx.Response(200, json=_reply_envelope("olá")))
        with stub.patch():
            response = await client.post("/chat", json={"message": "oi", "history": []})

        assert response.status_code == 200
        assert response.json() == {"reply": "olá"}
        assert len(stub.calls) == 1
        call = stub.calls[0]
        assert call["method"] == "generateContent"
        assert call["request"].headers["x-goog-api-key"] == service.config.gemini_api_key
        assert call["body"]["contents"][-1] == {"role": "user", "parts": [{"text": "oi"}]}

    @pytest.mark.asyncio
    async def test_api_alias_and_image(self, client, png_data_uri):
        stub = StubUpstream(lambda *a: httpx.Response(200, json=_reply_envelope("30g", "proteína")))
        with stub.patch():
            response = await client.post(
                "/api/chat",
                json={
                    "imageBase64": png_data_uri,
                    "history": [
                        {"role": "user", "text": "Minha altura é 1.80m"},
                        {"role": "model", "text": "Legal!"},
                        {"role": "user"},
                    ],
                },
            )

        assert response.status_code == 200
        assert response.json() == {"reply": "30g\nproteína"}
        contents = stub.calls[0]["body"]["contents"]
        roles = [c["role"] for c in contents]
        assert roles == ["user", "model", "user"]
        parts = contents[-1]["parts"]
        assert parts[0] == {"text": service.config.default_image_prompt}
        assert parts[1]["inlineData"]["mimeType"] == "image/png"

    @pytest.mark.asyncio
    async def test_fallback_to_next_model(self, client):
        first = service.model_selector.choose_candidates(service.config)[0]

        def responder(model_id, method, body):
            if model_id == first:
                return httpx.Response(404, json={"error": {"message": "model not found"}})
            return httpx.Response(200, json=_reply_envelope("ok"))

        stub = StubUpstream(responder)
        with stub.patch():
            response = await client.post("/chat", json={"message": "oi"})

        assert response.status_code == 200
        assert response.json() == {"reply": "ok"}
        assert len(stub.calls) == 2

    @pytest.mark.asyncio
    async def test_all_candidates_fail(self, client):
        candidates = service.model_selector.choose_candidates(service.config)
        stub = StubUpstream(
            lambda model_id, *a: httpx.Response(500, json={"error": {"message": f"boom {model_id}"}})
        )
        with stub.patch():
            response = await client.post("/chat", json={"message": "oi"})

        assert response.status_code == 500
        data = response.json()
        assert data["detail"] == f"boom {candidates[-1]}"
        assert data["req_id"]
        assert len(stub.calls) == len(candidates)

    @pytest.mark.asyncio
    async def test_detail_hidden_when_not_exposed(self, client):
        hidden = replace(service.config, expose_upstream_errors=False)
        stub = StubUpstream(lambda *a: httpx.Response(500, json={"error": {"message": "secret internals"}}))
        with stub.patch(), patch("chat_relay_service.config", hidden):
            response = await client.post("/chat", json={"message": "oi"})
        assert response.status_code == 500
        assert "secret internals" not in response.text

    @pytest.mark.asyncio
    async def test_rate_limited(self, client):
        body = {"error": {"code": 429, "message": "Quota exceeded", "status": "RESOURCE_EXHAUSTED"}}
        stub = StubUpstream(lambda *a: httpx.Response(429, json=body))
        with stub.patch():
            response = await client.post("/chat", json={"message": "oi"})
        assert response.status_code == 429
        assert response.json()["error"] == service.RATE_LIMIT_MESSAGE

    @pytest.mark.asyncio
    async def test_rate_limited_detail_hidden_when_not_exposed(self, client):
        hidden = replace(service.config, expose_upstream_errors=False)
        body = {"error": {"code": 429, "message": "Quota exceeded for project 42", "status": "RESOURCE_EXHAUSTED"}}
        stub = StubUpstream(lambda *a: httpx.Response(429, json=body))
        with stub.patch(), patch("chat_relay_service.config", hidden):
            response = await client.post("/chat", json={"message": "oi"})
        assert response.status_code == 429
        assert "project 42" not in response.text
        assert response.json()["error"] == service.RATE_LIMIT_MESSAGE

    @pytest.mark.asyncio
    async def test_safety_block_is_not_an_error(self, client):
        stub = StubUpstream(
            lambda *a: httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})
        )
        with stub.patch():
            response = await client.post("/chat", json={"message": "oi"})
        assert response.status_code == 200
        assert response.json()["reply"]

    @pytest.mark.asyncio
    async def test_empty_envelope_is_500(self, client):
        stub = StubUpstream(lambda *a: httpx.Response(200, json={"candidates": []}))
        with stub.patch():
            response = await client.post("/chat", json={"message": "oi"})
        assert response.status_code == 500
        assert "no valid content" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_request_id_is_propagated(self, client):
        stub = StubUpstream(lambda *a: httpx.Response(500, json={"error": {"message": "x"}}))
        with stub.patch():
            response = await client.post(
                "/chat", json={"message": "oi"}, headers={"x-request-id": "abc123"}
            )
        assert response.json()["req_id"] == "abc123"


# ============================================================================
# Streaming Tests
# ============================================================================

class TestChatStream:
    @pytest.mark.asyncio
    async def test_stream_concatenates_fragments(self, client):
        stream_body = json.dumps(
            [_reply_envelope("Olá"), _reply_envelope(", tudo bem?")], ensure_ascii=False
        ).encode("utf-8")

        async def chunks():
            for i in range(0, len(stream_body), 5):
                yield stream_body[i:i + 5]

        stub = StubUpstream(lambda *a: httpx.Response(200, content=chunks()))
        with stub.patch():
            response = await client.post("/chat/stream", json={"message": "oi"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "Olá, tudo bem?"
        assert stub.calls[0]["method"] == "streamGenerateContent"

    @pytest.mark.asyncio
    async def test_stream_rate_limited_before_start(self, client):
        stub = StubUpstream(lambda *a: httpx.Response(429, json={"error": {"message": "quota"}}))
        with stub.patch():
            response = await client.post("/api/chat/stream", json={"message": "oi"})
        assert response.status_code == 429

    @pytest.mark.asyncio
    async def test_stream_validation(self, client):
        response = await client.post("/chat/stream", json={})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_stream_safety_block_returns_apology(self, client):
        stub = StubUpstream(
            lambda *a: httpx.Response(200, content=b'[{"promptFeedback": {"blockReason": "SAFETY"}}]')
        )
        with stub.patch():
            response = await client.post("/chat/stream", json={"message": "oi"})
        assert response.status_code == 200
        assert response.text == SAFETY_APOLOGY

    @pytest.mark.asyncio
    async def test_stream_without_text_returns_error_text(self, client):
        body = b'[{"error": {"code": 500, "message": "internal", "status": "INTERNAL"}}]'
        stub = StubUpstream(lambda *a: httpx.Response(200, content=body))
        with stub.patch():
            response = await client.post("/chat/stream", json={"message": "oi"})
        assert response.status_code == 200
        assert response.text == STREAM_ERROR_TEXT

    @pytest.mark.asyncio
    async def test_stream_upstream_released_when_body_never_iterated(self):
        payload = json.dumps({"message": "oi"}).encode("utf-8")

        async def receive():
            return {"type": "http.request", "body": payload, "more_body": False}

        scope = {
            "type": "http",
            "method": "POST",
            "path": "/chat/stream",
            "query_string": b"",
            "headers": [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(payload)).encode("ascii")),
            ],
        }
        stub = StubUpstream(lambda *a: httpx.Response(200, content=b'[{"text": "oi"}]'))
        with stub.patch():
            response = await service.handle_chat_stream(Request(scope, receive))

        upstream_resp = response.background.tasks[0].args[1]
        await response.background()
        await response.body_iterator.aclose()

        assert upstream_resp.is_closed
        assert stub.clients[0].is_closed


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])