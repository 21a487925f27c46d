from __future__ import annotations

import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, Optional
from uuid import uuid4

import anyio
import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .errors import (
    AuthenticationError,
    GatewayError,
    InvalidRequestError,
    NotFoundError,
    UpstreamHTTPError,
    error_envelope,
)
from .events import EventChannel
from .models import ProviderConfig, mask_secret
from .runtime import GatewayService
from .transformers.base import BaseTransformer, StreamState
from .transformers.sse import SSEEvent

GATEWAY_VERSION = "1.1.0"

logger = logging.getLogger(__name__)


def _summarize_canonical_payload(payload: Dict) -> Dict:
    msgs = payload.get("messages") or []
    return {
        "model": payload.get("model"),
        "stream": bool(payload.get("stream", False)),
        "messages_count": len(msgs),
        "first_roles": [m.get("role") for m in msgs[:3] if isinstance(m, dict)],
        "tools": len(payload.get("tools") or []),
        "max_tokens": payload.get("max_tokens"),
    }


def _summarize_upstream_headers(headers: Dict[str, str]) -> Dict[str, str]:
    masked = {}
    for key, value in headers.items():
        if key.lower() in ("authorization", "x-api-key", "x-goog-api-key"):
            masked[key] = mask_secret(value)
        else:
            masked[key] = value
    return masked


class RequestLog:
    """Publishes request/response/error events for one request when logging is on."""

    def __init__(self, channel: EventChannel, enabled: bool, request_id: str) -> None:
        self._channel = channel
        self._enabled = enabled
        self.request_id = request_id
        self._started = time.monotonic()

    def _duration_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def request(self, provider: ProviderConfig, url: str, payload: Dict, headers: Dict[str, str]) -> None:
        if not self._enabled:
            return
        stream = bool(payload.get("stream"))
        self._channel.log(
            f"request {provider.name}{' (stream)' if stream else ''}",
            type="request",
            id=self.request_id,
            provider=provider.name,
            url=url.split("?", 1)[0],
            headers=_summarize_upstream_headers(headers),
            body=_summarize_canonical_payload(payload),
        )

    def response(self, provider: ProviderConfig, status_code: int, stream: bool, usage: Optional[Dict] = None) -> None:
        if not self._enabled:
            return
        self._channel.log(
            "stream completed" if stream else f"response ok ({status_code})",
            type="response",
            id=self.request_id,
            provider=provider.name,
            statusCode=status_code,
            stream=stream,
            duration=self._duration_ms(),
            usage=usage,
        )

    def error(self, status_code: int, message: str, error_type: str) -> None:
        if not self._enabled:
            return
        self._channel.log(
            message,
            level="error",
            type="error",
            id=self.request_id,
            statusCode=status_code,
            errorType=error_type,
            duration=self._duration_ms(),
        )


class ErrorEnvelopeMiddleware:
    """Last line of defence: any unhandled exception becomes the error envelope."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        response_started = False

        async def _send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, _send)
        except Exception:
            logger.exception("unhandled error while serving %s", scope.get("path"))
            if response_started:
                # the body is already on the wire; the connection just ends here
                return
            response = JSONResponse(status_code=500, content=error_envelope("api_error", "Internal server error"))
            await response(scope, receive, send)


def _extract_token(request: Request) -> Optional[str]:
    api_key = request.headers.get("x-api-key")
    if api_key:
        return api_key.strip()
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


def authenticate(request: Request, access_token: str) -> None:
    if not access_token:
        return
    token = _extract_token(request)
    if not token:
        raise AuthenticationError("Missing access token")
    if not secrets.compare_digest(token.encode("utf-8"), access_token.encode("utf-8")):
        raise AuthenticationError("Invalid access token")


async def read_payload(request: Request) -> Dict[str, Any]:
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        raise InvalidRequestError("Request body is not valid JSON") from None
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    if not isinstance(payload.get("messages"), list):
        raise InvalidRequestError("messages: field required")
    return payload


def upstream_error_response(exc: UpstreamHTTPError, transformer: BaseTransformer) -> Response:
    try:
        body = json.loads(exc.body) if exc.body else None
    except ValueError:
        body = None
    if isinstance(body, dict):
        return Response(content=exc.body, status_code=exc.status_code, media_type="application/json")
    text = exc.body.decode("utf-8", errors="replace") if exc.body else ""
    return JSONResponse(status_code=exc.status_code, content=transformer.transform_error(exc.status_code, text))


async def relay_stream(
    response: httpx.Response,
    transformer: BaseTransformer,
    provider: ProviderConfig,
    state: StreamState,
    log: Optional[RequestLog] = None,
) -> AsyncGenerator[bytes, None]:
    """Translate an upstream SSE body into canonical events, one flush per event.

    Closing the generator (client went away) closes the upstream response.
    """
    request_id = log.request_id if log else "-"
    try:
        async for chunk in response.aiter_bytes():
            for event in transformer.transform_stream_chunk(chunk, provider, state):
                yield event.encode()
        for event in transformer.finish_stream(provider, state):
            yield event.encode()
        logger.info("[%s] stream from %s completed", request_id, provider.name)
        if log:
            log.response(
                provider,
                response.status_code,
                stream=True,
                usage={"input_tokens": state.input_tokens, "output_tokens": state.output_tokens},
            )
    except httpx.HTTPError as exc:
        logger.warning("[%s] upstream stream from %s broke: %s", request_id, provider.name, exc)
        if log:
            log.error(502, f"upstream stream interrupted: {exc}", "api_error")
        yield SSEEvent("error", error_envelope("api_error", f"Upstream stream interrupted: {exc}")).encode()
    except Exception as exc:
        logger.exception("[%s] failed to translate stream from %s", request_id, provider.name)
        if log:
            log.error(500, f"stream translation failed: {exc}", "api_error")
        yield SSEEvent("error", error_envelope("api_error", "Stream translation failed")).encode()
    finally:
        with anyio.CancelScope(shield=True):
            await response.aclose()


def create_app(service: GatewayService) -> FastAPI:
    app = FastAPI(title="ccbproxy gateway", version=GATEWAY_VERSION, docs_url=None, redoc_url=None, openapi_url=None)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ErrorEnvelopeMiddleware)
    app.state.service = service

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "-")
        logger.warning("[%s] %s %s failed: %s", request_id, request.method, request.url.path, exc.message)
        log = getattr(request.state, "log", None)
        if log is not None:
            log.error(exc.status_code, exc.message, exc.error_type)
        return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            missing = NotFoundError(f"Endpoint {request.method} {request.url.path} does not exist")
            return JSONResponse(status_code=missing.status_code, content=missing.to_envelope())
        if exc.status_code == 405:
            error_type, message = "invalid_request_error", f"Method {request.method} not allowed on {request.url.path}"
        else:
            error_type, message = "api_error", str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content=error_envelope(error_type, message))

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        config = service.config
        provider = config.find_provider(config.current_provider_id)
        return {
            "status": "ok",
            "version": GATEWAY_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "currentProvider": provider.name if provider else None,
            "networkProxy": {"enabled": config.proxy_url is not None},
        }

    @app.get("/v1/models")
    async def list_models(request: Request) -> Dict[str, Any]:
        authenticate(request, service.config.access_token)
        provider = service.resolve_provider()
        return {
            "data": [{"id": model, "type": "model", "display_name": model} for model in provider.models],
            "has_more": False,
        }

    @app.post("/v1/messages")
    async def proxy_messages(request: Request) -> Response:
        req_id = f"req_{uuid4().hex[:12]}"
        request.state.request_id = req_id
        log = RequestLog(service.channel, service.config.logging.enabled, req_id)
        request.state.log = log

        payload = await read_payload(request)
        authenticate(request, service.config.access_token)
        provider = service.resolve_provider()
        transformer = service.transformer_for(provider)
        logger.debug("[%s] /v1/messages request: %s", req_id, _summarize_canonical_payload(payload))

        upstream = transformer.transform_request(payload, provider, request.headers)
        client = await service.get_client(provider)
        logger.info(
            "[%s] forwarding to %s via %s (model=%s, stream=%s)",
            req_id,
            provider.name,
            transformer.name,
            upstream.model,
            upstream.stream,
        )
        log.request(provider, upstream.url, payload, upstream.headers)

        if upstream.stream:
            try:
                response = await client.open_stream(upstream)
            except UpstreamHTTPError as exc:
                logger.warning("[%s] upstream(stream) error status=%s", req_id, exc.status_code)
                log.error(exc.status_code, exc.message, "upstream_error")
                return upstream_error_response(exc, transformer)
            state = transformer.create_stream_state(payload, provider)
            return StreamingResponse(
                relay_stream(response, transformer, provider, state, log),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )

        try:
            response = await client.send(upstream)
        except UpstreamHTTPError as exc:
            logger.warning("[%s] upstream error status=%s", req_id, exc.status_code)
            log.error(exc.status_code, exc.message, "upstream_error")
            return upstream_error_response(exc, transformer)
        try:
            body = response.json()
        except ValueError:
            raise GatewayError(f"Upstream {provider.name} returned a non-JSON body", status_code=502) from None
        if not isinstance(body, dict):
            raise GatewayError(f"Upstream {provider.name} returned an unexpected body", status_code=502)
        result = transformer.transform_response(body, provider, upstream.model)
        log.response(provider, response.status_code, stream=False, usage=result.get("usage"))
        return JSONResponse(result)

    return app
