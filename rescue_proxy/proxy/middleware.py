"""CORS and shared bearer-token check for every proxy route."""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ..errors import AuthError
from ..types import ProxySettings

logger = logging.getLogger(__name__)

UNAUTHENTICATED_PATHS = frozenset({"/health"})

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": (
        "Content-Type, Authorization, X-Chat-Context, X-Rescue-Request-Id"
    ),
    "Access-Control-Expose-Headers": "X-Rescue-Request-Id",
}


def bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    return header[7:] if header.startswith("Bearer ") else ""


class ProxyAccessMiddleware(BaseHTTPMiddleware):
    """Answers pre-flights, enforces the proxy key, and adds CORS headers.

    The key is looked up per request so a key changed through the settings
    route takes effect immediately.
    """

    def __init__(self, app, settings_provider: Callable[[], ProxySettings]) -> None:
        super().__init__(app)
        self._settings = settings_provider

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=CORS_HEADERS)

        proxy_key = self._settings().proxy_api_key
        if proxy_key and request.url.path not in UNAUTHENTICATED_PATHS:
            token = bearer_token(request)
            if not token or not hmac.compare_digest(token.encode(), proxy_key.encode()):
                logger.warning("Rejected unauthorized request: %s", request.url.path)
                error = AuthError()
                return JSONResponse(
                    error.to_body(), status_code=error.status_code, headers=CORS_HEADERS,
                )

        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response
