"""
OpenRouter relay service (OpenAI-compatible) with resilient streaming.

Routes:
  POST /v1/chat/completions   relayed with stall detection, retries and fast-path fallback
  GET  /v1/models             single forward to OpenRouter
  GET  /v1/generation[/{id}]  single forward to OpenRouter
  GET  /healthz

Models listed in FAST_PATH_MODELS (default deepseek/deepseek-chat) are tried
once on the fast-path provider first; any failure there falls back to
OpenRouter with the caller's original body.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import load_config
from errors import UpstreamConnectionError, error_body
from history import HistoryStore
from logger import setup_logging, setup_traffic_logging
from models import CompletionRequest
from providers import ProviderSelector
from relay import RelayChunk, RelayOutput, RelayReply, RelaySession
from upstream import UpstreamClient
from utils import dump_config, load_env_files

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# How often to check for a vanished caller while no response has started yet.
DISCONNECT_POLL_S = 0.5

# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate()

# Initialize logging
log = setup_logging(config.log_path, config.log_level)
dump_config(config)

if config.debug_sse_traffic:
    setup_traffic_logging(config.debug_sse_traffic_log_path)

upstream_client = UpstreamClient(config)
provider_selector = ProviderSelector(config)
history_store: Optional[HistoryStore] = HistoryStore(config.history_dir) if config.history_enabled else None


app = FastAPI(
    title="openrouter-relay",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def _error_response(message: str, status: int, error_type: str) -> JSONResponse:
    return JSONResponse(error_body(message, status, error_type), status_code=status)


def _request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or (request.headers.get("x-trace-id") or "").strip()
        or uuid.uuid4().hex
    )


async def _wait_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_S)


async def _first_output(request: Request, outputs: AsyncIterator[RelayOutput]) -> Optional[RelayOutput]:
    """
    Wait for the session's first output while watching the caller.

    Returns None if the caller went away first; the session (upstream
    connection and any pending backoff) is cancelled in that case.
    """
    first = asyncio.ensure_future(outputs.__anext__())
    watcher = asyncio.ensure_future(_wait_disconnect(request))
    try:
        done, _ = await asyncio.wait({first, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        first.cancel()
        raise
    finally:
        watcher.cancel()

    if first in done:
        return first.result()

    first.cancel()
    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
        await first
    await outputs.aclose()
    return None


async def _relay_body(first: RelayChunk, outputs: AsyncIterator[RelayOutput]) -> AsyncIterator[bytes]:
    try:
        yield first.data
        async for out in outputs:
            if isinstance(out, RelayChunk):
                yield out.data
            else:
                log.error("Session produced a reply after stream bytes; ignored status=%s", out.status)
    finally:
        await outputs.aclose()


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.post("/v1/chat/completions")
async def v1_chat_completions(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    referer: Optional[str] = Header(default=None),
) -> Response:
    """Relay a chat completion request."""
    # Basic request size guard (prevents trivial DoS via huge JSON bodies).
    cl = request.headers.get("content-length")
    if cl:
        try:
            n = int(cl)
        except ValueError:
            return _error_response(f"Invalid Content-Length header: {cl!r}", 400, "InvalidRequestError")
        if n > config.max_request_bytes:
            return _error_response(
                f"Request too large: {n} bytes (max {config.max_request_bytes})", 413, "InvalidRequestError"
            )

    raw = await request.body()
    if len(raw) > config.max_request_bytes:
        return _error_response(
            f"Request too large: {len(raw)} bytes (max {config.max_request_bytes})", 413, "InvalidRequestError"
        )

    try:
        chat = CompletionRequest.from_body(raw, authorization=authorization, referer=referer)
    except ValueError as e:
        return _error_response(str(e), 400, "InvalidRequestError")

    req_id = _request_id(request)
    client_ip = request.client.host if request.client else "unknown"
    log.info(
        "Incoming chat req_id=%s from=%s model=%r stream=%s",
        req_id,
        client_ip,
        chat.model,
        chat.stream,
    )

    session = RelaySession(
        chat,
        config=config,
        upstream=upstream_client,
        selector=provider_selector,
        history=history_store,
        req_id=req_id,
        url=str(request.url),
        inbound_headers=request.headers,
    )
    outputs = session.run()

    first = await _first_output(request, outputs)
    if first is None:
        log.info("Caller disconnected before any response req_id=%s", req_id)
        return Response(status_code=499)

    if isinstance(first, RelayReply):
        await outputs.aclose()
        return Response(content=first.content, status_code=first.status, media_type=first.media_type)

    return StreamingResponse(
        _relay_body(first, outputs),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


async def _forward_get(
    path: str,
    params: Optional[Dict[str, str]],
    authorization: Optional[str],
    referer: Optional[str],
) -> Response:
    """Single unconditional forward; whatever upstream says goes back verbatim."""
    async with upstream_client.new_http_client(read_timeout_s=config.request_timeout_s) as client:
        try:
            resp = await upstream_client.forward_get(
                client,
                path,
                params=params,
                authorization=authorization,
                referer=referer,
            )
        except UpstreamConnectionError as e:
            log.error("Forward %s failed: %s", path, e)
            return _error_response(e.message, 500, type(e).__name__)

    if resp.status_code != 200:
        log.warning("Forward %s status=%s", path, resp.status_code)
    return Response(
        content=resp.content,
        status_code=resp.status_code,
        media_type=resp.headers.get("content-type", "application/json"),
    )


@app.get("/v1/models")
async def v1_models(
    authorization: Optional[str] = Header(default=None),
    referer: Optional[str] = Header(default=None),
) -> Response:
    """List upstream models."""
    return await _forward_get("/models", None, authorization, referer)


@app.get("/v1/generation")
async def v1_generation(
    id: str = Query(default=""),
    authorization: Optional[str] = Header(default=None),
    referer: Optional[str] = Header(default=None),
) -> Response:
    """Generation stats for a completed request."""
    return await _forward_get("/generation", {"id": id}, authorization, referer)


@app.get("/v1/generation/{generation_id}")
async def v1_generation_by_id(
    generation_id: str,
    authorization: Optional[str] = Header(default=None),
    referer: Optional[str] = Header(default=None),
) -> Response:
    """Same as /v1/generation?id=..."""
    return await _forward_get("/generation", {"id": generation_id}, authorization, referer)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
