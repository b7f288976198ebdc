"""HTTP proxy server for rescue-proxy.

Sits between a chat client and an OpenAI-compatible upstream, relaying
completions unchanged while capturing the assistant text on the side. A
captured reply is appended to the chat transcript unless the client confirms
receipt within the confirmation window, so a reply generated while the
browser was gone is not lost.

Usage:
    rescue-proxy -c rescue-proxy.yaml serve
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .. import __version__
from ..config import load_config
from ..core.reconciler import ChatAppender, Reconciler, is_test_message
from ..errors import MalformedRequest, ParseError, RescueProxyError, register_exception_handlers
from ..sse import SSEDeltaAccumulator, extract_message_text
from ..storage.chat_store import ChatStore
from ..storage.request_log import RequestLog
from ..types import (
    Capture,
    ChatContext,
    ProxySettings,
    ReconcileState,
    RequestRecord,
    RequestStatus,
    UserDirectories,
    utc_now_iso,
)
from ..upstream import UpstreamClient
from .control import register_control_routes
from .middleware import ProxyAccessMiddleware

logger = logging.getLogger(__name__)

PLUGIN_ID = "rescue-proxy"
REQUEST_ID_HEADER = "X-Rescue-Request-Id"
CHAT_CONTEXT_HEADER = "X-Chat-Context"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_SYNTHETIC_MODELS = {
    "object": "list",
    "data": [{"id": PLUGIN_ID, "object": "model", "owned_by": PLUGIN_ID}],
}

_STREAM_END = object()


# ---------------------------------------------------------------------------
# ProxyState: everything a request handler shares with other requests
# ---------------------------------------------------------------------------

class ProxyState:
    """Shared mutable state for the proxy lifetime."""

    def __init__(
        self,
        settings: ProxySettings,
        *,
        config_path: str | Path | None = None,
        upstream: UpstreamClient | None = None,
        chat_store: ChatAppender | None = None,
        request_log: RequestLog | None = None,
    ) -> None:
        self.settings = settings
        self.config_path = Path(config_path) if config_path else None
        self.upstream = upstream or UpstreamClient(settings)
        self.request_log = request_log or RequestLog(settings.request_log)
        self.reconciler = Reconciler(
            chat_store if chat_store is not None else ChatStore(),
            window_s=settings.confirm_window_s,
        )
        self.last_chat_context: ChatContext | None = None
        self.directories: UserDirectories | None = (
            UserDirectories.from_root(settings.data_root) if settings.data_root else None
        )
        self._streams: set[asyncio.Task] = set()

    def resolve_chat_context(self, header_value: str | None) -> ChatContext | None:
        """Per-request header first, then the last context synced by the frontend."""
        if header_value:
            try:
                raw = json.loads(header_value)
                if isinstance(raw, dict):
                    return ChatContext.from_dict(raw)
                logger.warning("Ignoring %s header: not a JSON object", CHAT_CONTEXT_HEADER)
            except json.JSONDecodeError as e:
                logger.warning("Ignoring unparseable %s header: %s", CHAT_CONTEXT_HEADER, e)
        if self.last_chat_context is not None:
            logger.debug("Using synced chat context")
        return self.last_chat_context

    def track(self, task: asyncio.Task) -> None:
        self._streams.add(task)
        task.add_done_callback(self._streams.discard)

    async def shutdown(self) -> None:
        for task in list(self._streams):
            task.cancel()
        if self._streams:
            await asyncio.gather(*self._streams, return_exceptions=True)
        await self.reconciler.shutdown()
        await self.upstream.aclose()


def create_app(
    config_path: str | Path | None = None,
    *,
    settings: ProxySettings | None = None,
    state: ProxyState | None = None,
) -> FastAPI:
    """Create the FastAPI proxy application.

    Args:
        config_path: Path to the rescue-proxy config file; also where the
            settings route writes changes back.
        settings: Use these settings instead of loading *config_path*.
        state: Use a prebuilt state (tests inject fake collaborators here).
    """
    if state is None:
        if settings is None:
            settings = load_config(config_path)
        state = ProxyState(settings, config_path=config_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        yield
        await state.shutdown()

    app = FastAPI(title="rescue-proxy", version=__version__, lifespan=lifespan)
    app.state.proxy = state
    app.add_middleware(ProxyAccessMiddleware, settings_provider=lambda: state.settings)
    register_exception_handlers(app)
    register_control_routes(app, state)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "plugin": PLUGIN_ID,
            "version": __version__,
            "port": state.settings.proxy_port,
        }

    @app.get("/v1/models")
    @app.get("/models")
    async def list_models():
        if not state.upstream.configured:
            return JSONResponse(_SYNTHETIC_MODELS)
        try:
            resp = await state.upstream.list_models()
        except httpx.HTTPError as e:
            logger.warning("Model listing failed, answering with synthetic list: %s", e)
            return JSONResponse(_SYNTHETIC_MODELS)
        return Response(
            content=resp.content,
            status_code=resp.status_code,
            media_type="application/json",
        )

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        return await _handle_chat_completions(state, request)

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
    async def not_found(path: str):
        return JSONResponse({"error": "Not found"}, status_code=404)

    return app


# ---------------------------------------------------------------------------
# Request handlers
# ---------------------------------------------------------------------------

async def _handle_chat_completions(state: ProxyState, request: Request) -> Response:
    body_bytes = await request.body()
    try:
        body = json.loads(body_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedRequest() from e
    if not isinstance(body, dict):
        raise MalformedRequest()

    request_id = request.headers.get(REQUEST_ID_HEADER) or f"req-{uuid.uuid4().hex[:16]}"
    chat_context = state.resolve_chat_context(request.headers.get(CHAT_CONTEXT_HEADER))
    is_streaming = body.get("stream") is True
    model = body.get("model") or "unknown"

    capture = Capture(
        request_id=request_id,
        model_name=model,
        gen_started=utc_now_iso(),
        is_test=is_test_message(body),
        chat_context=chat_context,
        directories=state.directories,
    )
    state.request_log.open(RequestRecord(
        id=request_id,
        model=model,
        character=chat_context.character_name if chat_context else "",
        streaming=is_streaming,
        is_test=capture.is_test,
    ))
    logger.info(
        "Request %s: model=%s stream=%s test=%s",
        request_id, model, is_streaming, capture.is_test,
    )

    try:
        if is_streaming:
            upstream = await state.upstream.open_stream(body)
        else:
            upstream = await state.upstream.complete(body)
    except RescueProxyError as e:
        state.request_log.close(request_id, RequestStatus.ERROR, error=e.message)
        raise
    except httpx.HTTPError as e:
        logger.error("Upstream request %s failed: %s", request_id, e)
        state.request_log.close(request_id, RequestStatus.ERROR, error=str(e))
        raise RescueProxyError(f"Rescue Proxy error: {e}") from e

    if is_streaming:
        return _handle_streaming(state, upstream, capture)
    return _handle_non_streaming(state, upstream, capture)


def _finish_capture(state: ProxyState, capture: Capture) -> ReconcileState:
    """Hand a finished capture to the reconciler and close its log record."""
    capture.gen_finished = utc_now_iso()
    outcome = state.reconciler.reconcile(capture)
    state.request_log.close(
        capture.request_id,
        RequestStatus.ERROR if capture.has_error else RequestStatus.SUCCESS,
        error="stream interrupted" if capture.has_error else None,
        outcome=outcome.value,
    )
    return outcome


async def _pump_stream(
    state: ProxyState,
    upstream: httpx.Response,
    capture: Capture,
    queue: asyncio.Queue,
) -> None:
    """Drain the upstream body into *queue*, capturing text on the side.

    Runs as its own task so the upstream is read to the end even when the
    caller disconnects halfway; that is exactly the case worth rescuing.
    """
    accumulator = SSEDeltaAccumulator()
    try:
        async for raw_chunk in upstream.aiter_bytes():
            queue.put_nowait(raw_chunk)  # relay first, extraction is a side observation
            accumulator.feed(raw_chunk)
    except httpx.HTTPError as e:
        capture.has_error = True
        logger.error("Stream %s broke mid-flight: %s", capture.request_id, e)
    except asyncio.CancelledError:
        capture.has_error = True
        raise
    finally:
        queue.put_nowait(_STREAM_END)
        accumulator.flush()
        capture.text = accumulator.text
        _finish_capture(state, capture)
        try:
            await upstream.aclose()
        except httpx.HTTPError as e:
            logger.warning("Closing upstream stream %s failed: %s", capture.request_id, e)
        logger.info(
            "Stream %s finished: chars=%d error=%s",
            capture.request_id, len(capture.text), capture.has_error,
        )


def _handle_streaming(
    state: ProxyState,
    upstream: httpx.Response,
    capture: Capture,
) -> StreamingResponse:
    """Relay upstream SSE bytes unchanged while capturing the reply text."""
    queue: asyncio.Queue = asyncio.Queue()
    state.track(asyncio.create_task(
        _pump_stream(state, upstream, capture, queue),
        name=f"stream-{capture.request_id}",
    ))

    async def stream_generator():
        while True:
            chunk = await queue.get()
            if chunk is _STREAM_END:
                return
            yield chunk

    return StreamingResponse(
        stream_generator(),
        status_code=200,
        media_type="text/event-stream",
        headers={**SSE_HEADERS, REQUEST_ID_HEADER: capture.request_id},
    )


def _handle_non_streaming(
    state: ProxyState,
    upstream: httpx.Response,
    capture: Capture,
) -> Response:
    """Relay a buffered completion verbatim and capture its message text."""
    try:
        payload = upstream.json()
    except ValueError as e:
        logger.error("Upstream body for %s is not JSON: %s", capture.request_id, e)
        state.request_log.close(capture.request_id, RequestStatus.ERROR, error=str(e))
        raise ParseError(str(e)) from e

    capture.text = extract_message_text(payload)
    _finish_capture(state, capture)
    logger.info("Completion %s finished: chars=%d", capture.request_id, len(capture.text))

    return Response(
        content=upstream.content,
        status_code=200,
        media_type="application/json",
        headers={REQUEST_ID_HEADER: capture.request_id},
    )
