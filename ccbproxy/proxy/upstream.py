from __future__ import annotations

import logging
from typing import Optional

import httpx

from .errors import UpstreamHTTPError, UpstreamNetworkError, UpstreamTimeoutError
from .models import ProviderConfig
from .transformers.base import UPSTREAM_TIMEOUT_CEILING, UpstreamRequest

CONNECT_TIMEOUT = 30.0


class UpstreamClient:
    """One pooled HTTP client per provider; carries no provider credentials itself."""

    def __init__(
        self,
        provider: ProviderConfig,
        proxy: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._provider_name = provider.name
        timeout = httpx.Timeout(UPSTREAM_TIMEOUT_CEILING, connect=CONNECT_TIMEOUT)
        if transport is not None:
            self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        else:
            self._client = httpx.AsyncClient(timeout=timeout, proxy=proxy)
        self._log = logging.getLogger(__name__)

    async def close(self) -> None:
        await self._client.aclose()

    def _build(self, upstream: UpstreamRequest) -> httpx.Request:
        timeout = httpx.Timeout(upstream.timeout, connect=min(CONNECT_TIMEOUT, upstream.timeout))
        return self._client.build_request(
            upstream.method,
            upstream.url,
            headers=upstream.headers,
            json=upstream.json,
            timeout=timeout,
        )

    async def send(self, upstream: UpstreamRequest) -> httpx.Response:
        """Send a request and read the whole reply; non-2xx raises UpstreamHTTPError."""
        self._log.debug("POST %s (%s)", _redact(upstream.url), self._provider_name)
        response = await self._send(self._build(upstream), stream=False)
        self._log.debug("POST %s -> %s", _redact(upstream.url), response.status_code)
        if response.is_error:
            raise UpstreamHTTPError(response.status_code, response.content, response.headers.get("content-type"))
        return response

    async def open_stream(self, upstream: UpstreamRequest) -> httpx.Response:
        """Start a streamed request; the caller owns the response and must close it."""
        self._log.debug("STREAM POST %s (%s)", _redact(upstream.url), self._provider_name)
        response = await self._send(self._build(upstream), stream=True)
        self._log.debug("STREAM %s -> %s", _redact(upstream.url), response.status_code)
        if response.is_error:
            try:
                body = await response.aread()
            except httpx.HTTPError:
                body = b""
            finally:
                await response.aclose()
            raise UpstreamHTTPError(response.status_code, body, response.headers.get("content-type"))
        return response

    async def _send(self, request: httpx.Request, stream: bool) -> httpx.Response:
        try:
            return await self._client.send(request, stream=stream)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(f"Upstream request to {self._provider_name} timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamNetworkError(
                f"Cannot reach upstream provider {self._provider_name}: {exc.__class__.__name__}: {exc}"
            ) from exc


def _redact(url: str) -> str:
    # strip query strings, some providers accept keys there
    return url.split("?", 1)[0]
