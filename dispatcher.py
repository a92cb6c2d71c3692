"""Ordered model fallback.

Each candidate model is tried in order; the first accepted attempt wins.
Transport errors, non-200 statuses and unparseable success bodies are all
plain failures that move on to the next candidate. When the list runs out
the last failure is raised as UpstreamError.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Union

import httpx

from config import AppConfig
from errors import UpstreamError
from logger import LOGGER_NAME, redact_secret
from request_builder import OutgoingRequest
from upstream import UpstreamClient

log = logging.getLogger(LOGGER_NAME)

KIND_TRANSPORT = "transport"
KIND_STATUS = "status"
KIND_MALFORMED = "malformed"


@dataclass(frozen=True)
class ProviderSuccess:
    model_id: str
    envelope: Dict[str, Any]


@dataclass(frozen=True)
class ProviderFailure:
    model_id: str
    message: str
    status_code: Optional[int] = None
    kind: str = KIND_STATUS


ProviderResult = Union[ProviderSuccess, ProviderFailure]


@dataclass
class DispatchResult:
    """Winning attempt of a non-streaming dispatch."""

    model_id: str
    envelope: Dict[str, Any]
    attempts: int


@dataclass
class StreamHandle:
    """Open upstream stream from the first candidate that accepted the request."""

    model_id: str
    response: httpx.Response
    attempts: int


class ModelFallbackDispatcher:
    """Try an OutgoingRequest against candidate models until one succeeds."""

    def __init__(self, config: AppConfig, upstream: UpstreamClient | None = None) -> None:
        self._config = config
        self._upstream = upstream or UpstreamClient(config)

    def _transport_failure(self, model_id: str, exc: BaseException) -> ProviderFailure:
        if isinstance(exc, asyncio.TimeoutError):
            msg = f"Upstream timeout after {self._config.request_timeout_s:.1f}s"
        else:
            msg = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        return ProviderFailure(
            model_id=model_id,
            message=redact_secret(msg, self._config.gemini_api_key),
            kind=KIND_TRANSPORT,
        )

    async def attempt(
        self,
        client: httpx.AsyncClient,
        request: OutgoingRequest,
        model_id: str,
    ) -> ProviderResult:
        """Run a single non-streaming attempt and classify its outcome."""
        try:
            resp = await asyncio.wait_for(
                self._upstream.generate(client, request, model_id),
                timeout=self._config.request_timeout_s,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            return self._transport_failure(model_id, e)

        if resp.status_code != 200:
            message = await self._upstream.read_error_message(resp)
            return ProviderFailure(
                model_id=model_id,
                message=message,
                status_code=resp.status_code,
                kind=KIND_STATUS,
            )

        try:
            envelope = resp.json()
        except ValueError as e:
            return ProviderFailure(
                model_id=model_id,
                message=f"Malformed JSON from upstream: {e}",
                status_code=resp.status_code,
                kind=KIND_MALFORMED,
            )
        if not isinstance(envelope, dict):
            return ProviderFailure(
                model_id=model_id,
                message=f"Unexpected upstream envelope type: {type(envelope).__name__}",
                status_code=resp.status_code,
                kind=KIND_MALFORMED,
            )
        return ProviderSuccess(model_id=model_id, envelope=envelope)

    @staticmethod
    def _log_failure(failure: ProviderFailure, i: int, total: int, req_id: str) -> None:
        log.warning(
            "Attempt %d/%d failed req_id=%s model=%s kind=%s status=%s err=%r; trying next",
            i,
            total,
            req_id,
            failure.model_id,
            failure.kind,
            failure.status_code,
            failure.message[:300],
        )

    @staticmethod
    def _exhausted(last: Optional[ProviderFailure], attempts: int) -> UpstreamError:
        if last is None:
            return UpstreamError("No candidate models configured", kind="config", attempts=attempts)
        return UpstreamError(
            last.message,
            status_code=last.status_code,
            model_id=last.model_id,
            kind=last.kind,
            attempts=attempts,
        )

    async def dispatch(
        self,
        client: httpx.AsyncClient,
        request: OutgoingRequest,
        candidates: Sequence[str],
        req_id: str = "",
    ) -> DispatchResult:
        """Return the first successful attempt or raise the last failure."""
        total = len(candidates)
        last_failure: Optional[ProviderFailure] = None

        for i, model_id in enumerate(candidates, start=1):
            log.info("Attempt %d/%d req_id=%s -> %s", i, total, req_id, model_id)
            result = await self.attempt(client, request, model_id)
            if isinstance(result, ProviderSuccess):
                return DispatchResult(model_id=model_id, envelope=result.envelope, attempts=i)
            last_failure = result
            self._log_failure(result, i, total, req_id)

        log.error(
            "All %d candidates failed req_id=%s last_model=%s",
            total,
            req_id,
            last_failure.model_id if last_failure else None,
        )
        raise self._exhausted(last_failure, total)

    async def open_stream(
        self,
        client: httpx.AsyncClient,
        request: OutgoingRequest,
        candidates: Sequence[str],
        req_id: str = "",
    ) -> StreamHandle:
        """
        Open a streaming response from the first candidate answering 200.

        Only the response head is awaited here; the body is left for the
        stream decoder. The caller owns the returned response and must close it.
        """
        total = len(candidates)
        last_failure: Optional[ProviderFailure] = None

        for i, model_id in enumerate(candidates, start=1):
            log.info("Stream attempt %d/%d req_id=%s -> %s", i, total, req_id, model_id)
            try:
                resp = await asyncio.wait_for(
                    self._upstream.generate(client, request, model_id, stream=True),
                    timeout=self._config.request_timeout_s,
                )
            except (httpx.HTTPError, asyncio.TimeoutError) as e:
                last_failure = self._transport_failure(model_id, e)
                self._log_failure(last_failure, i, total, req_id)
                continue

            if resp.status_code == 200:
                return StreamHandle(model_id=model_id, response=resp, attempts=i)

            message = await self._upstream.read_error_message(resp)
            await resp.aclose()
            last_failure = ProviderFailure(
                model_id=model_id,
                message=message,
                status_code=resp.status_code,
                kind=KIND_STATUS,
            )
            self._log_failure(last_failure, i, total, req_id)

        raise self._exhausted(last_failure, total)

