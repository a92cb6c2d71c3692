"""
Chat relay service: web chat turns -> Gemini generateContent.

Endpoints:
  POST /chat            {message?, imageBase64?, history?} -> {reply}
  POST /chat/stream     same body, text/plain chunked reply
  POST /api/chat        alias of /chat used by the web client
  POST /api/chat/stream alias of /chat/stream
  GET  /healthz

Each request runs: history normalization -> request building -> ordered
model fallback -> reply extraction (or incremental stream decoding).
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import AppConfig, load_config
from dispatcher import ModelFallbackDispatcher
from errors import ChatRelayError, EnvelopeError, InputError, UpstreamError
from extractor import extract_reply
from logger import setup_logging
from models import ModelSelector
from request_builder import OutgoingRequest, RequestBuilder
from stream_decoder import TextStreamer
from upstream import UpstreamClient
from utils import dump_config, load_env_files

RATE_LIMIT_MESSAGE = (
    "Opa! O cérebro da IA atingiu o limite de uso do provedor. Espere 60s e tente de novo! ⏳"
)
GENERIC_ERROR_MESSAGE = "Erro técnico de conexão com a IA. Tente atualizar a página."
MISSING_INPUT_MESSAGE = "Mensagem ou imagem é obrigatória"

# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate(require_api_key=False)

# Initialize logging
log = setup_logging(config.log_path)
dump_config(config)

model_selector = ModelSelector()
text_streamer = TextStreamer()


def new_http_client(cfg: AppConfig, *, stream: bool = False) -> httpx.AsyncClient:
    """Per-request client; streaming reads are bounded by the idle watchdog instead."""
    t = float(cfg.request_timeout_s)
    if stream:
        timeout = httpx.Timeout(connect=t, write=t, pool=t, read=None)
    else:
        timeout = httpx.Timeout(t)
    return httpx.AsyncClient(timeout=timeout)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Lifespan context manager for FastAPI application."""
    if not config.gemini_api_key:
        log.warning("GEMINI_API_KEY is not set; chat requests will be rejected")
    log.info("Chat relay ready candidates=%s", model_selector.choose_candidates(config))
    yield
    log.info("Chat relay shutting down")


app = FastAPI(
    title="chat-relay",
    version="0.3.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


def _request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or (request.headers.get("x-trace-id") or "").strip()
        or uuid.uuid4().hex
    )


async def _read_chat_body(request: Request) -> Dict[str, Any]:
    """Parse and validate the inbound body; raises HTTPException before any upstream cost."""
    # Basic request size guard (images travel inline, but not unbounded).
    cl = request.headers.get("content-length")
    if cl:
        try:
            n = int(cl)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid Content-Length header: {cl!r}",
            )
        if n > config.max_request_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Request too large: {n} bytes (max {config.max_request_bytes})",
            )

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body: expected object")

    if not body.get("message") and not body.get("imageBase64"):
        raise HTTPException(status_code=400, detail=MISSING_INPUT_MESSAGE)

    if not config.gemini_api_key:
        raise HTTPException(
            status_code=500, detail="GEMINI_API_KEY environment variable required"
        )
    return body


def _build_request(body: Dict[str, Any], req_id: str) -> OutgoingRequest:
    history = body.get("history")
    try:
        outgoing = RequestBuilder(config).build(
            message=body.get("message"),
            image=body.get("imageBase64"),
            history=history,
        )
    except InputError as e:
        log.warning("Rejected chat req_id=%s err=%s", req_id, e.message)
        raise HTTPException(status_code=400, detail=e.message)

    log.info(
        "Incoming chat req_id=%s message_len=%d has_media=%s history=%s turns=%d",
        req_id,
        len(body["message"]) if isinstance(body.get("message"), str) else 0,
        outgoing.has_media,
        len(history) if isinstance(history, list) else None,
        len(outgoing.turns),
    )
    return outgoing


def error_response(exc: ChatRelayError, req_id: str) -> JSONResponse:
    """Convert a chat failure into the structured JSON error body."""
    if isinstance(exc, UpstreamError) and exc.rate_limited:
        detail = exc.message if config.expose_upstream_errors else RATE_LIMIT_MESSAGE
        return JSONResponse(
            status_code=429,
            content={"error": RATE_LIMIT_MESSAGE, "detail": detail, "req_id": req_id},
        )
    detail = exc.message if config.expose_upstream_errors else GENERIC_ERROR_MESSAGE
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": GENERIC_ERROR_MESSAGE, "detail": detail, "req_id": req_id},
    )


async def handle_chat(request: Request) -> Response:
    body = await _read_chat_body(request)
    req_id = _request_id(request)
    outgoing = _build_request(body, req_id)

    dispatcher = ModelFallbackDispatcher(config, UpstreamClient(config))
    candidates = model_selector.choose_candidates(config)

    async with new_http_client(config) as client:
        try:
            result = await dispatcher.dispatch(client, outgoing, candidates, req_id=req_id)
            reply = extract_reply(result.envelope)
        except UpstreamError as e:
            log.error(
                "Chat failed req_id=%s kind=%s status=%s attempts=%d err=%s",
                req_id,
                e.kind,
                e.upstream_status,
                e.attempts,
                e.message,
            )
            return error_response(e, req_id)
        except EnvelopeError as e:
            log.error("Chat failed req_id=%s kind=envelope err=%s", req_id, e.message)
            return error_response(e, req_id)

    log.info(
        "Chat ok req_id=%s model=%s attempts=%d reply_len=%d",
        req_id,
        result.model_id,
        result.attempts,
        len(reply),
    )
    return JSONResponse({"reply": reply})


async def handle_chat_stream(request: Request) -> Response:
    body = await _read_chat_body(request)
    req_id = _request_id(request)
    outgoing = _build_request(body, req_id)

    dispatcher = ModelFallbackDispatcher(config, UpstreamClient(config))
    candidates = model_selector.choose_candidates(config)

    client = new_http_client(config, stream=True)
    try:
        handle = await dispatcher.open_stream(client, outgoing, candidates, req_id=req_id)
    except UpstreamError as e:
        with contextlib.suppress(Exception):
            await client.aclose()
        log.error(
            "Chat stream failed req_id=%s kind=%s status=%s attempts=%d err=%s",
            req_id,
            e.kind,
            e.upstream_status,
            e.attempts,
            e.message,
        )
        return error_response(e, req_id)
    except BaseException:
        with contextlib.suppress(Exception):
            await client.aclose()
        raise

    # Runs after the response even when the body iterator never started.
    cleanup = BackgroundTasks()
    cleanup.add_task(TextStreamer.release, client, handle.response)

    return StreamingResponse(
        text_streamer.stream_text(
            client,
            handle.response,
            idle_timeout_s=config.stream_idle_timeout_s,
            req_id=req_id,
            model_id=handle.model_id,
        ),
        media_type="text/plain; charset=utf-8",
        background=cleanup,
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Chat-Relay-Model": handle.model_id,
        },
    )


@app.post("/chat")
async def chat(request: Request) -> Response:
    """Relay one chat turn and return the full reply."""
    return await handle_chat(request)


@app.post("/api/chat")
async def api_chat(request: Request) -> Response:
    return await handle_chat(request)


@app.post("/chat/stream")
async def chat_stream(request: Request) -> Response:
    """Relay one chat turn and stream reply fragments as plain text."""
    return await handle_chat_stream(request)


@app.post("/api/chat/stream")
async def api_chat_stream(request: Request) -> Response:
    return await handle_chat_stream(request)


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort guard: no failure may escape as a bare 500 page."""
    req_id = _request_id(request)
    log.exception("Unhandled error req_id=%s path=%s", req_id, request.url.path)
    detail: Optional[str] = str(exc) if config.expose_upstream_errors else GENERIC_ERROR_MESSAGE
    return JSONResponse(
        status_code=500,
        content={"error": GENERIC_ERROR_MESSAGE, "detail": detail, "req_id": req_id},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
