"""Upstream Gemini API communication.

The orchestration core only knows OutgoingRequest; everything that depends
on the wire version (field names, system placement, endpoint path) lives in
a small envelope format object chosen from config.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Protocol

import httpx

from config import AppConfig
from logger import LOGGER_NAME, redact_secret
from request_builder import InlineMedia, OutgoingRequest

log = logging.getLogger(LOGGER_NAME)


class EnvelopeFormat(Protocol):
    """Translate an OutgoingRequest into one provider wire shape."""

    api_version: str

    def render(self, request: OutgoingRequest, generation_config: Dict[str, Any]) -> Dict[str, Any]:
        ...


def _turn_contents(request: OutgoingRequest, media_part) -> List[Dict[str, Any]]:
    contents: List[Dict[str, Any]] = [
        {"role": t.role, "parts": [{"text": t.text}]} for t in request.turns
    ]
    parts: List[Dict[str, Any]] = []
    for item in request.current_content:
        if isinstance(item, InlineMedia):
            parts.append(media_part(item))
        else:
            parts.append({"text": item})
    contents.append({"role": "user", "parts": parts})
    return contents


class GeminiV1BetaFormat:
    """v1beta: camelCase inlineData and a dedicated systemInstruction field."""

    api_version = "v1beta"

    def render(self, request: OutgoingRequest, generation_config: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": _turn_contents(
                request,
                lambda m: {"inlineData": {"mimeType": m.mime_type, "data": m.to_base64()}},
            ),
            "generationConfig": dict(generation_config),
        }
        if request.system_framing:
            payload["systemInstruction"] = {"parts": [{"text": request.system_framing}]}
        return payload


class GeminiV1Format:
    """v1: snake_case inline_data; system framing must arrive as priming turns."""

    api_version = "v1"

    def render(self, request: OutgoingRequest, generation_config: Dict[str, Any]) -> Dict[str, Any]:
        if request.system_framing:
            raise ValueError("v1 envelope has no system field; use priming placement")
        return {
            "contents": _turn_contents(
                request,
                lambda m: {"inline_data": {"mime_type": m.mime_type, "data": m.to_base64()}},
            ),
            "generationConfig": dict(generation_config),
        }


ENVELOPE_FORMATS: Dict[str, EnvelopeFormat] = {
    "v1beta": GeminiV1BetaFormat(),
    "v1": GeminiV1Format(),
}


def error_message_from_body(raw: str, status_code: int) -> str:
    """Pull ``error.message`` out of a Gemini error body, falling back to the raw text."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        data = None
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str) and err["message"]:
            status = err.get("status")
            if isinstance(status, str) and status:
                return f"{status}: {err['message']}"
            return err["message"]
    raw = (raw or "").strip()
    return raw or f"Upstream error {status_code}"


class UpstreamClient:
    """Handle communication with the Gemini generateContent API."""

    def __init__(self, config: AppConfig, envelope: EnvelopeFormat | None = None) -> None:
        self._config = config
        self._envelope = envelope or ENVELOPE_FORMATS[config.gemini_api_version]

    @property
    def envelope(self) -> EnvelopeFormat:
        return self._envelope

    def get_headers(self) -> Dict[str, str]:
        """Get default headers for the Gemini API."""
        return {
            "x-goog-api-key": self._config.gemini_api_key,
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }

    def generation_config(self) -> Dict[str, Any]:
        return {
            "temperature": self._config.temperature,
            "topP": self._config.top_p,
            "topK": self._config.top_k,
            "maxOutputTokens": self._config.max_output_tokens,
        }

    def build_url(self, model_id: str, stream: bool = False) -> str:
        method = "streamGenerateContent" if stream else "generateContent"
        return (
            f"{self._config.gemini_base_url}/{self._envelope.api_version}"
            f"/models/{model_id}:{method}"
        )

    def build_payload(self, request: OutgoingRequest) -> Dict[str, Any]:
        return self._envelope.render(request, self.generation_config())

    async def generate(
        self,
        client: httpx.AsyncClient,
        request: OutgoingRequest,
        model_id: str,
        *,
        stream: bool = False,
    ) -> httpx.Response:
        """
        Send one generate call for ``model_id``.

        For streaming requests the body is left unread so the caller can
        consume it incrementally.
        """
        payload = self.build_payload(request)

        t0 = time.time()
        req = client.build_request(
            "POST",
            self.build_url(model_id, stream=stream),
            headers=self.get_headers(),
            json=payload,
        )
        resp = await client.send(req, stream=stream)

        dt = (time.time() - t0) * 1000
        log.info(
            "Upstream generate model=%s stream=%s status=%s ms=%.1f",
            model_id,
            stream,
            resp.status_code,
            dt,
        )
        if resp.status_code != 200:
            log.warning(
                "Upstream generate error model=%s status=%s content-type=%s",
                model_id,
                resp.status_code,
                resp.headers.get("content-type", ""),
            )
        return resp

    async def read_error_message(
        self, resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read the error body without risking a hang, and redact the key."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
            txt = raw.decode("utf-8", errors="replace")[:limit]
        except (asyncio.TimeoutError, httpx.HTTPError):
            txt = ""
        msg = error_message_from_body(txt, resp.status_code)
        return redact_secret(msg, self._config.gemini_api_key)
