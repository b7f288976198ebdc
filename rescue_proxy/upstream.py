"""Client for the real OpenAI-compatible completion API."""

from __future__ import annotations

import logging
import time

import httpx

from .errors import ConfigurationError, UpstreamError
from .types import ProxySettings

logger = logging.getLogger(__name__)


class UpstreamClient:
    """Issues forwarded requests against ``settings.real_api_url``.

    The settings object is read on every call so that changes made through
    the control routes apply to the next request.
    """

    def __init__(
        self,
        settings: ProxySettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.upstream_timeout_s, connect=10.0),
        )

    @property
    def configured(self) -> bool:
        return bool(self.settings.real_api_key)

    def _url(self, path: str) -> str:
        return f"{self.settings.real_api_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self) -> dict[str, str]:
        if not self.configured:
            raise ConfigurationError()
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.real_api_key}",
        }

    async def complete(self, body: dict) -> httpx.Response:
        """Send a buffered chat completion; the whole body is read before returning."""
        headers = self._headers()
        t0 = time.monotonic()
        resp = await self._client.request(
            "POST", self._url("chat/completions"), headers=headers, json=body,
        )
        logger.debug(
            "Upstream buffered completion: %d in %.0fms",
            resp.status_code, (time.monotonic() - t0) * 1000,
        )
        if resp.status_code >= 300:
            logger.error("Upstream request failed: %d", resp.status_code)
            raise UpstreamError(
                resp.status_code, resp.content, resp.headers.get("content-type", ""),
            )
        return resp

    async def open_stream(self, body: dict) -> httpx.Response:
        """Open a streamed chat completion.

        Resolves once response headers arrive; the body is consumed lazily
        via ``aiter_bytes()`` and the caller owns ``aclose()``.
        """
        headers = self._headers()
        # Relayed bytes must match the wire bytes; no transparent decompression
        headers["Accept-Encoding"] = "identity"
        req = self._client.build_request(
            "POST", self._url("chat/completions"), headers=headers, json=body,
        )
        upstream = await self._client.send(req, stream=True)
        if upstream.status_code >= 300:
            error_bytes = await upstream.aread()
            await upstream.aclose()
            logger.error(
                "Upstream stream request failed: %d | %s",
                upstream.status_code,
                error_bytes[:200].decode("utf-8", errors="replace"),
            )
            raise UpstreamError(
                upstream.status_code, error_bytes, upstream.headers.get("content-type", ""),
            )
        return upstream

    async def list_models(self) -> httpx.Response:
        return await self._client.request("GET", self._url("models"), headers=self._headers())

    async def aclose(self) -> None:
        await self._client.aclose()
