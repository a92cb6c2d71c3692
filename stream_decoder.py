"""Incremental text extraction from a chunked generation stream.

streamGenerateContent answers with a JSON array that arrives in arbitrary
slices, so no single chunk is guaranteed to be valid JSON. Instead of parsing
the document we scan the accumulated text for complete ``"text": "..."``
fields and emit each decoded value once the part object holding it closes.
Parts flagged ``"thought": true`` are dropped, same as the non-streaming reply.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
from typing import AsyncGenerator, AsyncIterator, List, Optional

import httpx

from errors import StreamDecodeError
from extractor import SAFETY_APOLOGY, SAFETY_FINISH_REASONS, is_safety_blocked
from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)

STREAM_ERROR_TEXT = "Erro técnico de conexão com a IA. Tente novamente."

# raw upstream text kept for diagnosis while nothing has been emitted yet
_MAX_PREAMBLE_CHARS = 65536

_THOUGHT_RE = re.compile(r'"thought"\s*:\s*true')
_BLOCK_REASON_RE = re.compile(r'"blockReason"\s*:\s*"[^"]+"')
_FINISH_REASON_RE = re.compile(r'"finishReason"\s*:\s*"([A-Z_]+)"')


def _field_pattern(field: str) -> re.Pattern[str]:
    return re.compile(r'"%s"\s*:\s*"((?:[^"\\]|\\.)*)"' % re.escape(field), re.S)


def unescape_json_string(raw: str) -> Optional[str]:
    """Decode the body of a JSON string literal; None when it is not valid."""
    try:
        value = json.loads('"' + raw + '"', strict=False)
    except ValueError:
        return None
    return value if isinstance(value, str) else None


def stream_safety_blocked(raw: str) -> bool:
    """True when a text-less stream body carries a safety block marker."""
    try:
        data = json.loads(raw)
    except ValueError:
        data = None
    if isinstance(data, dict):
        data = [data]
    if isinstance(data, list):
        return any(isinstance(d, dict) and is_safety_blocked(d) for d in data)
    # not a complete JSON document (SSE framing or truncated): scan for markers
    if _BLOCK_REASON_RE.search(raw):
        return True
    return any(m.group(1) in SAFETY_FINISH_REASONS for m in _FINISH_REASON_RE.finditer(raw))


class StreamChunkDecoder:
    """Stateful scanner: feed raw chunks, get decoded text fragments back."""

    def __init__(self, field: str = "text") -> None:
        self._key = f'"{field}"'
        self._pattern = _field_pattern(field)
        self._buf = ""
        self.skipped = 0
        self.thoughts = 0

    def feed(self, chunk: str) -> List[str]:
        """
        Consume one chunk and return every fragment completed by it.

        A field stays buffered until the part object holding it is closed,
        so a trailing ``"thought": true`` can still drop it. An undecodable
        match is skipped, never raised.
        """
        if not chunk:
            return []
        self._buf += chunk
        return self._drain(final=False)

    def flush(self) -> List[str]:
        """Emit fields whose part object never closed (upstream ended early)."""
        out = self._drain(final=True)
        self._buf = ""
        return out

    def _drain(self, final: bool) -> List[str]:
        out: List[str] = []
        consumed = 0
        for m in self._pattern.finditer(self._buf):
            close = self._buf.find("}", m.end())
            if close < 0 and not final:
                break
            consumed = m.end()
            if close >= 0 and _THOUGHT_RE.search(self._buf, m.end(), close):
                self.thoughts += 1
                continue
            text = unescape_json_string(m.group(1))
            if text is None:
                self.skipped += 1
                log.debug("Skipping undecodable stream fragment %r", m.group(1)[:80])
                continue
            if text:
                out.append(text)

        rest = self._buf[consumed:]
        idx = rest.find(self._key)
        if idx >= 0:
            rest = rest[idx:]
        else:
            # keep just enough to complete a key split across chunks
            rest = rest[-(len(self._key) - 1):]
        self._buf = rest
        return out


async def decode_text_stream(
    chunks: AsyncIterator[str],
    *,
    idle_timeout_s: float | None = None,
    decoder: StreamChunkDecoder | None = None,
    safety_message: str = SAFETY_APOLOGY,
) -> AsyncGenerator[str, None]:
    """
    Lazily turn an upstream chunk iterator into text fragments.

    Ends when upstream ends. A read error (or idle timeout) before any
    fragment was produced raises StreamDecodeError; after partial output the
    sequence just ends. A stream that ends cleanly without any text yields
    ``safety_message`` when it was blocked and raises StreamDecodeError
    otherwise.
    """
    decoder = decoder or StreamChunkDecoder()
    it = chunks.__aiter__()
    emitted = 0
    preamble: List[str] = []
    preamble_len = 0
    while True:
        try:
            if idle_timeout_s is None:
                chunk = await it.__anext__()
            else:
                chunk = await asyncio.wait_for(it.__anext__(), timeout=idle_timeout_s)
        except StopAsyncIteration:
            break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                reason = f"stream idle for more than {idle_timeout_s:.1f}s"
            else:
                reason = f"{type(e).__name__}: {e}"
            if not emitted:
                raise StreamDecodeError(f"Upstream stream failed: {reason}") from e
            log.warning("Upstream stream ended early after %d fragments: %s", emitted, reason)
            return

        if not emitted and preamble_len < _MAX_PREAMBLE_CHARS:
            preamble.append(chunk)
            preamble_len += len(chunk)
        for text in decoder.feed(chunk):
            emitted += 1
            yield text

    for text in decoder.flush():
        emitted += 1
        yield text

    if emitted:
        return
    raw = "".join(preamble)
    if stream_safety_blocked(raw):
        log.warning("Stream blocked by safety filter chars=%d", len(raw))
        yield safety_message
        return
    raise StreamDecodeError(f"Upstream stream carried no text: {raw[:200]!r}")


class TextStreamer:
    """Forward decoded fragments of an open upstream response to the caller."""

    @staticmethod
    async def release(client: httpx.AsyncClient, resp: httpx.Response) -> None:
        """Close the upstream response and its client; safe to call twice."""
        with contextlib.suppress(Exception):
            await resp.aclose()
        with contextlib.suppress(Exception):
            await client.aclose()

    @staticmethod
    async def stream_text(
        client: httpx.AsyncClient,
        resp: httpx.Response,
        *,
        idle_timeout_s: float,
        req_id: str,
        model_id: str,
        error_text: str = STREAM_ERROR_TEXT,
    ) -> AsyncGenerator[bytes, None]:
        """
        Yield UTF-8 encoded fragments; always release upstream on exit.

        Client disconnects surface here as cancellation / GeneratorExit, which
        skips further emission and closes the upstream connection.
        """
        fragments = 0
        chars = 0
        cancelled = False
        gen = decode_text_stream(resp.aiter_text(), idle_timeout_s=idle_timeout_s)
        try:
            async for text in gen:
                fragments += 1
                chars += len(text)
                yield text.encode("utf-8")
        except StreamDecodeError as e:
            log.error("Stream produced no text req_id=%s model=%s err=%s", req_id, model_id, e)
            yield error_text.encode("utf-8")
        except (asyncio.CancelledError, GeneratorExit):
            cancelled = True
            raise
        finally:
            log.info(
                "Stream finished req_id=%s model=%s fragments=%d chars=%d cancelled=%s",
                req_id,
                model_id,
                fragments,
                chars,
                cancelled,
            )
            with contextlib.suppress(Exception):
                await gen.aclose()
            await TextStreamer.release(client, resp)
