from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Union
from uuid import uuid4

from ..errors import StreamFramingError, error_envelope
from ..models import ProviderConfig
from .sse import SSEDecoder, SSEEvent, SSEFrame

UPSTREAM_TIMEOUT_CEILING = 300.0

logger = logging.getLogger(__name__)


def new_message_id() -> str:
    return f"msg_{uuid4().hex[:24]}"


def new_tool_id() -> str:
    return f"toolu_{uuid4().hex[:24]}"


def collapse_text(content: Union[str, Iterable[Dict], None]) -> str:
    """Join the text of a string or list of content blocks."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return str(content)


@dataclass
class UpstreamRequest:
    method: str
    url: str
    headers: Dict[str, str]
    json: Dict[str, Any]
    model: str
    stream: bool = False
    timeout: float = UPSTREAM_TIMEOUT_CEILING


@dataclass
class StreamState:
    """Per-connection translation state for one streamed reply."""

    model: str
    message_id: str = field(default_factory=new_message_id)
    decoder: SSEDecoder = field(default_factory=SSEDecoder)
    started: bool = False
    finished: bool = False
    block_index: int = -1
    block_type: Optional[str] = None
    tool_blocks: Dict[int, int] = field(default_factory=dict)
    saw_tool_use: bool = False
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0

    def start(self) -> List[SSEEvent]:
        if self.started:
            return []
        self.started = True
        message = {
            "id": self.message_id,
            "type": "message",
            "role": "assistant",
            "model": self.model,
            "content": [],
            "stop_reason": None,
            "stop_sequence": None,
            "usage": {"input_tokens": self.input_tokens, "output_tokens": 0},
        }
        return [SSEEvent("message_start", {"type": "message_start", "message": message})]

    def open_block(self, content_block: Dict[str, Any]) -> List[SSEEvent]:
        events = self.start() + self.close_block()
        self.block_index += 1
        self.block_type = content_block["type"]
        if self.block_type == "tool_use":
            self.saw_tool_use = True
        events.append(
            SSEEvent(
                "content_block_start",
                {"type": "content_block_start", "index": self.block_index, "content_block": content_block},
            )
        )
        return events

    def close_block(self) -> List[SSEEvent]:
        if self.block_type is None:
            return []
        self.block_type = None
        return [SSEEvent("content_block_stop", {"type": "content_block_stop", "index": self.block_index})]

    def delta(self, delta: Dict[str, Any]) -> SSEEvent:
        return SSEEvent(
            "content_block_delta",
            {"type": "content_block_delta", "index": self.block_index, "delta": delta},
        )

    def text(self, text: str) -> List[SSEEvent]:
        events: List[SSEEvent] = []
        if self.block_type != "text":
            events.extend(self.open_block({"type": "text", "text": ""}))
        events.append(self.delta({"type": "text_delta", "text": text}))
        return events

    def thinking(self, text: str) -> List[SSEEvent]:
        events: List[SSEEvent] = []
        if self.block_type != "thinking":
            events.extend(self.open_block({"type": "thinking", "thinking": ""}))
        events.append(self.delta({"type": "thinking_delta", "thinking": text}))
        return events

    def fail(self, envelope: Dict[str, Any]) -> List[SSEEvent]:
        self.finished = True
        return [SSEEvent("error", envelope)]

    def finish(self) -> List[SSEEvent]:
        if self.finished:
            return []
        events = self.start() + self.close_block()
        self.finished = True
        stop_reason = self.stop_reason or ("tool_use" if self.saw_tool_use else "end_turn")
        events.append(
            SSEEvent(
                "message_delta",
                {
                    "type": "message_delta",
                    "delta": {"stop_reason": stop_reason, "stop_sequence": None},
                    "usage": {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens},
                },
            )
        )
        events.append(SSEEvent("message_stop", {"type": "message_stop"}))
        return events


class BaseTransformer(ABC):
    """Translates between the Claude Messages format and one provider family."""

    name: ClassVar[str]
    default_model: ClassVar[Optional[str]] = None
    model_aliases: ClassVar[Dict[str, str]] = {}
    native_prefixes: ClassVar[tuple] = ()
    error_types: ClassVar[Dict[str, str]] = {}

    @abstractmethod
    def transform_request(
        self,
        request: Dict[str, Any],
        provider: ProviderConfig,
        headers: Optional[Mapping[str, str]] = None,
    ) -> UpstreamRequest:
        ...

    @abstractmethod
    def transform_response(
        self, response: Dict[str, Any], provider: ProviderConfig, model: Optional[str] = None
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    def translate_frame(self, frame: SSEFrame, provider: ProviderConfig, state: StreamState) -> List[SSEEvent]:
        ...

    def create_stream_state(self, request: Dict[str, Any], provider: ProviderConfig) -> StreamState:
        return StreamState(model=request.get("model") or self.default_model or "")

    def transform_stream_chunk(
        self, chunk: bytes, provider: ProviderConfig, state: StreamState
    ) -> List[SSEEvent]:
        events: List[SSEEvent] = []
        for frame in state.decoder.feed(chunk):
            events.extend(self._handle_frame(frame, provider, state))
        return events

    def finish_stream(self, provider: ProviderConfig, state: StreamState) -> List[SSEEvent]:
        events: List[SSEEvent] = []
        for frame in state.decoder.close():
            events.extend(self._handle_frame(frame, provider, state))
        events.extend(self.end_of_stream(provider, state))
        return events

    def end_of_stream(self, provider: ProviderConfig, state: StreamState) -> List[SSEEvent]:
        return state.finish()

    def _handle_frame(self, frame: SSEFrame, provider: ProviderConfig, state: StreamState) -> List[SSEEvent]:
        if state.finished:
            return []
        try:
            return self.translate_frame(frame, provider, state)
        except StreamFramingError as exc:
            logger.warning("[%s] skipping malformed stream frame: %s", self.name, exc.message)
            return []
        except (AttributeError, TypeError, KeyError, IndexError, ValueError) as exc:
            logger.warning("[%s] skipping stream frame with unexpected shape: %r", self.name, exc)
            return []

    @staticmethod
    def parse_frame_json(frame: SSEFrame) -> Dict[str, Any]:
        try:
            data = json.loads(frame.data)
        except ValueError as exc:
            raise StreamFramingError(f"invalid JSON payload {frame.data[:80]!r}") from exc
        if not isinstance(data, dict):
            raise StreamFramingError(f"unexpected payload type {type(data).__name__}")
        return data

    def resolve_model(self, requested: str, provider: ProviderConfig) -> str:
        if requested and (requested in provider.models or self.is_native_model(requested)):
            return requested
        if requested in self.model_aliases:
            return self.model_aliases[requested]
        if provider.models:
            return provider.models[0]
        return self.default_model or requested

    def is_native_model(self, model: str) -> bool:
        return bool(self.native_prefixes) and model.startswith(self.native_prefixes)

    def timeout_for(self, provider: ProviderConfig) -> float:
        if provider.timeout:
            return min(provider.timeout / 1000.0, UPSTREAM_TIMEOUT_CEILING)
        return UPSTREAM_TIMEOUT_CEILING

    def transform_error(self, status_code: Optional[int], payload: Any) -> Dict[str, Any]:
        """Wrap an upstream error body that is not already a Claude envelope."""
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            upstream = payload["error"]
            raw_type = upstream.get("type") or upstream.get("status") or upstream.get("code")
            error_type = self.error_types.get(str(raw_type), None) if raw_type is not None else None
            return error_envelope(
                error_type or map_http_status(status_code),
                upstream.get("message") or f"{self.name} upstream error",
            )
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")
        message = str(payload).strip() if payload else ""
        return error_envelope(map_http_status(status_code), message or f"{self.name} upstream error")


def map_http_status(status_code: Optional[int]) -> str:
    if status_code == 400:
        return "invalid_request_error"
    if status_code == 401:
        return "authentication_error"
    if status_code == 403:
        return "permission_error"
    if status_code == 404:
        return "not_found_error"
    if status_code == 429:
        return "rate_limit_error"
    if status_code == 529:
        return "overloaded_error"
    return "api_error"
