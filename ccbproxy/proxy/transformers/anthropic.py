from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping, Optional

from ..errors import StreamFramingError
from ..models import ProviderConfig
from .base import BaseTransformer, StreamState, UpstreamRequest
from .sse import SSEEvent, SSEFrame

DEFAULT_ANTHROPIC_VERSION = "2023-06-01"

logger = logging.getLogger(__name__)


class AnthropicTransformer(BaseTransformer):
    """Passthrough for upstreams that already speak the Messages API."""

    name = "anthropic"

    def endpoint(self, provider: ProviderConfig) -> str:
        base = provider.base_url
        if base.endswith("/v1"):
            return f"{base}/messages"
        return f"{base}/v1/messages"

    def transform_request(
        self,
        request: Dict[str, Any],
        provider: ProviderConfig,
        headers: Optional[Mapping[str, str]] = None,
    ) -> UpstreamRequest:
        headers = headers or {}
        upstream_headers = {
            "Content-Type": "application/json",
            "x-api-key": provider.api_key.get_secret_value(),
            "anthropic-version": headers.get("anthropic-version") or DEFAULT_ANTHROPIC_VERSION,
        }
        if headers.get("anthropic-beta"):
            upstream_headers["anthropic-beta"] = headers["anthropic-beta"]
        payload = copy.deepcopy(request)
        logger.debug("[%s] passthrough request for model %s", self.name, payload.get("model"))
        return UpstreamRequest(
            method="POST",
            url=self.endpoint(provider),
            headers=upstream_headers,
            json=payload,
            model=payload.get("model", ""),
            stream=bool(payload.get("stream", False)),
            timeout=self.timeout_for(provider),
        )

    def transform_response(
        self, response: Dict[str, Any], provider: ProviderConfig, model: Optional[str] = None
    ) -> Dict[str, Any]:
        return response

    def translate_frame(self, frame: SSEFrame, provider: ProviderConfig, state: StreamState) -> List[SSEEvent]:
        data = self.parse_frame_json(frame)
        event = frame.event or data.get("type")
        if not event:
            raise StreamFramingError("event without a type")
        if event == "message_start":
            state.started = True
            message = data.get("message")
            self._record_usage(message.get("usage") if isinstance(message, dict) else None, state)
        elif event == "message_delta":
            self._record_usage(data.get("usage"), state)
        elif event == "message_stop":
            state.finished = True
        return [SSEEvent(event, data)]

    @staticmethod
    def _record_usage(usage: Any, state: StreamState) -> None:
        if not isinstance(usage, dict):
            return
        if isinstance(usage.get("input_tokens"), int):
            state.input_tokens = usage["input_tokens"]
        if isinstance(usage.get("output_tokens"), int):
            state.output_tokens = usage["output_tokens"]

    def end_of_stream(self, provider: ProviderConfig, state: StreamState) -> List[SSEEvent]:
        # the upstream owns the event sequence; nothing to synthesise
        return []
