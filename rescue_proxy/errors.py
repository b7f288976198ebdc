"""Exception types raised while proxying a completion.

Errors raised before or during response delivery carry the HTTP status and
error ``type`` they are reported with; ``register_exception_handlers`` turns
them into the OpenAI-style error body. ``SaveError`` and ``StreamError`` are
never rendered: by the time they happen the response is already committed.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

logger = logging.getLogger(__name__)


class RescueProxyError(Exception):
    """Base exception for everything the proxy reports to a caller."""

    status_code = 500
    error_type = "proxy_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_body(self) -> dict:
        return {"error": {"message": self.message, "type": self.error_type}}


class AuthError(RescueProxyError):
    status_code = 401
    error_type = "auth_error"

    def __init__(self, message: str = "Unauthorized: Invalid API Key") -> None:
        super().__init__(message)


class MalformedRequest(RescueProxyError):
    status_code = 400
    error_type = "invalid_request_error"

    def __init__(self, message: str = "Invalid JSON") -> None:
        super().__init__(message)


class ConfigurationError(RescueProxyError):
    status_code = 500
    error_type = "configuration_error"

    def __init__(self, message: str = "Rescue Proxy: no upstream API key configured") -> None:
        super().__init__(message)


class ParseError(RescueProxyError):
    status_code = 500
    error_type = "parse_error"


class UpstreamError(RescueProxyError):
    """Upstream answered with a non-success status.

    The upstream body is relayed verbatim rather than wrapped.
    """

    error_type = "upstream_error"

    def __init__(self, status_code: int, body: bytes, content_type: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.content_type = content_type or "application/json"
        super().__init__(f"Upstream returned {status_code}")


class StreamError(RescueProxyError):
    """Upstream stream broke mid-flight; the caller stream is closed early."""

    error_type = "stream_error"


class SaveError(RescueProxyError):
    """Chat store append failed after the confirmation window elapsed."""

    error_type = "save_error"


class ProfileError(RescueProxyError):
    status_code = 400
    error_type = "profile_error"


class ProfileNotFound(ProfileError):
    status_code = 404


def register_exception_handlers(app: FastAPI) -> None:
    """Render RescueProxyError subclasses as JSON error responses."""

    @app.exception_handler(UpstreamError)
    async def _upstream_error(request: Request, exc: UpstreamError) -> Response:
        return Response(
            content=exc.body,
            status_code=exc.status_code,
            media_type=exc.content_type,
        )

    @app.exception_handler(RescueProxyError)
    async def _proxy_error(request: Request, exc: RescueProxyError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
        return JSONResponse(content=exc.to_body(), status_code=exc.status_code)
