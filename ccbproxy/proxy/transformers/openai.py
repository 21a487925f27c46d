from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from ..errors import GatewayError, InvalidRequestError, StreamFramingError
from ..models import ProviderConfig
from .base import (
    BaseTransformer,
    StreamState,
    UpstreamRequest,
    collapse_text,
    new_message_id,
    new_tool_id,
)
from .sse import SSEEvent, SSEFrame

logger = logging.getLogger(__name__)

STOP_REASONS: Dict[Optional[str], Optional[str]] = {
    None: None,
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "end_turn",
}


def map_stop_reason(openai_reason: Optional[str]) -> Optional[str]:
    return STOP_REASONS.get(openai_reason, "end_turn")


def _image_url(source: Dict[str, Any]) -> str:
    if source.get("type") == "url":
        return source.get("url", "")
    return f"data:{source.get('media_type', 'image/png')};base64,{source.get('data', '')}"


def _parse_arguments(arguments: Union[str, Dict, None]) -> Dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError:
        logger.warning("tool call arguments are not valid JSON; passing them through raw")
        return {"_raw": arguments}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _tool_choice(choice: Dict[str, Any]) -> Union[str, Dict[str, Any], None]:
    kind = choice.get("type")
    if kind == "auto":
        return "auto"
    if kind == "any":
        return "required"
    if kind == "none":
        return "none"
    if kind == "tool" and choice.get("name"):
        return {"type": "function", "function": {"name": choice["name"]}}
    return None


class OpenAITransformer(BaseTransformer):
    """Claude Messages <-> OpenAI Chat Completions."""

    name = "openai"
    error_types = {
        "invalid_api_key": "authentication_error",
        "insufficient_quota": "rate_limit_error",
        "rate_limit_exceeded": "rate_limit_error",
        "model_not_found": "invalid_request_error",
        "invalid_request_error": "invalid_request_error",
    }

    def endpoint(self, provider: ProviderConfig) -> str:
        return f"{provider.base_url}/chat/completions"

    def build_headers(self, provider: ProviderConfig, headers: Mapping[str, str]) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {provider.api_key.get_secret_value()}",
            "Content-Type": "application/json",
        }

    def map_max_tokens(self, max_tokens: Any, model: str) -> Any:
        return max_tokens

    def transform_request(
        self,
        request: Dict[str, Any],
        provider: ProviderConfig,
        headers: Optional[Mapping[str, str]] = None,
    ) -> UpstreamRequest:
        model = self.resolve_model(request.get("model", ""), provider)
        messages: List[Dict[str, Any]] = []

        system_prompt = request.get("system")
        if system_prompt:
            # system may be a string or a list of content blocks
            messages.append({"role": "system", "content": collapse_text(system_prompt)})

        for message in request.get("messages", []):
            messages.extend(self._convert_message(message))

        stream = bool(request.get("stream", False))
        payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": stream}
        if stream:
            payload["stream_options"] = {"include_usage": True}

        if "max_tokens" in request:
            payload["max_tokens"] = self.map_max_tokens(request["max_tokens"], model)
        if "temperature" in request:
            payload["temperature"] = request["temperature"]
        if "top_p" in request:
            payload["top_p"] = request["top_p"]
        if request.get("stop_sequences"):
            payload["stop"] = list(request["stop_sequences"])
        user_id = (request.get("metadata") or {}).get("user_id")
        if user_id:
            payload["user"] = user_id

        tools = request.get("tools")
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.get("name"),
                        "description": tool.get("description", ""),
                        "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
                    },
                }
                for tool in tools
            ]
            if isinstance(request.get("tool_choice"), dict):
                choice = _tool_choice(request["tool_choice"])
                if choice is not None:
                    payload["tool_choice"] = choice

        return UpstreamRequest(
            method="POST",
            url=self.endpoint(provider),
            headers=self.build_headers(provider, headers or {}),
            json=payload,
            model=model,
            stream=stream,
            timeout=self.timeout_for(provider),
        )

    def _convert_message(self, message: Dict[str, Any]) -> List[Dict[str, Any]]:
        role = message.get("role")
        content = message.get("content")
        if isinstance(content, str):
            return [{"role": role, "content": content}]
        if not isinstance(content, list):
            logger.warning("Invalid message content type: %s", type(content).__name__)
            raise InvalidRequestError("Invalid content format")

        if role == "assistant":
            text = collapse_text(content)
            tool_calls = [
                {
                    "id": block.get("id"),
                    "type": "function",
                    "function": {
                        "name": block.get("name"),
                        "arguments": json.dumps(block.get("input") or {}, ensure_ascii=False),
                    },
                }
                for block in content
                if block.get("type") == "tool_use"
            ]
            converted: Dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_calls:
                converted["tool_calls"] = tool_calls
            return [converted]

        results: List[Dict[str, Any]] = []
        parts: List[Dict[str, Any]] = []
        for block in content:
            kind = block.get("type")
            if kind == "text":
                parts.append({"type": "text", "text": block.get("text", "")})
            elif kind == "image":
                parts.append({"type": "image_url", "image_url": {"url": _image_url(block.get("source") or {})}})
            elif kind == "tool_result":
                # tool replies must directly follow the assistant tool call
                results.append(
                    {
                        "role": "tool",
                        "tool_call_id": block.get("tool_use_id"),
                        "content": collapse_text(block.get("content")),
                    }
                )
        if parts:
            if all(part["type"] == "text" for part in parts):
                results.append({"role": role, "content": "".join(part["text"] for part in parts)})
            else:
                results.append({"role": role, "content": parts})
        return results

    def transform_response(
        self, response: Dict[str, Any], provider: ProviderConfig, model: Optional[str] = None
    ) -> Dict[str, Any]:
        choices = response.get("choices") or []
        if not choices:
            raise GatewayError("Upstream response missing choices", status_code=502)
        choice = choices[0]
        message = choice.get("message") or {}

        content: List[Dict[str, Any]] = []
        reasoning = message.get("reasoning_content") or message.get("reasoning")
        if reasoning:
            content.append({"type": "thinking", "thinking": reasoning, "signature": ""})
        text = collapse_text(message.get("content"))
        if text:
            content.append({"type": "text", "text": text})
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            content.append(
                {
                    "type": "tool_use",
                    "id": call.get("id") or new_tool_id(),
                    "name": function.get("name", ""),
                    "input": _parse_arguments(function.get("arguments")),
                }
            )
        if not content:
            content.append({"type": "text", "text": ""})

        usage = response.get("usage") or {}
        return {
            "id": response.get("id") or new_message_id(),
            "type": "message",
            "role": "assistant",
            "model": response.get("model") or model or "",
            "content": content,
            "stop_reason": map_stop_reason(choice.get("finish_reason")),
            "stop_sequence": None,
            "usage": {
                "input_tokens": usage.get("prompt_tokens") or 0,
                "output_tokens": usage.get("completion_tokens") or 0,
            },
        }

    def translate_frame(self, frame: SSEFrame, provider: ProviderConfig, state: StreamState) -> List[SSEEvent]:
        if frame.data.strip() == "[DONE]":
            return state.finish()

        chunk = self.parse_frame_json(frame)
        if "error" in chunk:
            logger.warning("[%s] upstream reported an error mid-stream", self.name)
            return state.fail(self.transform_error(None, chunk))

        usage = chunk.get("usage")
        choices = chunk.get("choices") or []
        choice = choices[0] if isinstance(choices, list) and choices else {}
        delta = (choice.get("delta") or {}) if isinstance(choice, dict) else None
        tool_calls = (delta.get("tool_calls") or []) if isinstance(delta, dict) else None
        if (
            not isinstance(usage, (dict, type(None)))
            or not isinstance(choices, list)
            or not isinstance(delta, dict)
            or not isinstance(tool_calls, list)
            or not all(isinstance(call, dict) for call in tool_calls)
        ):
            raise StreamFramingError("chunk does not have the chat.completion.chunk shape")

        events: List[SSEEvent] = []
        if usage:
            state.input_tokens = usage.get("prompt_tokens") or state.input_tokens
            state.output_tokens = usage.get("completion_tokens") or state.output_tokens
        if not state.started:
            if chunk.get("id"):
                state.message_id = chunk["id"]
            if chunk.get("model"):
                state.model = chunk["model"]
            events.extend(state.start())

        if not choices:
            return events

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if reasoning:
            events.extend(state.thinking(reasoning))
        text = delta.get("content")
        if text:
            events.extend(state.text(text))
        for call in tool_calls:
            events.extend(self._tool_call_delta(call, state))

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            state.stop_reason = map_stop_reason(finish_reason)
        return events

    def _tool_call_delta(self, call: Dict[str, Any], state: StreamState) -> List[SSEEvent]:
        events: List[SSEEvent] = []
        index = call.get("index", len(state.tool_blocks))
        function = call.get("function") or {}
        if index not in state.tool_blocks:
            events.extend(
                state.open_block(
                    {
                        "type": "tool_use",
                        "id": call.get("id") or new_tool_id(),
                        "name": function.get("name", ""),
                        "input": {},
                    }
                )
            )
            state.tool_blocks[index] = state.block_index
        elif state.tool_blocks[index] != state.block_index or state.block_type != "tool_use":
            logger.warning("[%s] dropping arguments for closed tool call %s", self.name, index)
            return events
        arguments = function.get("arguments")
        if arguments:
            events.append(state.delta({"type": "input_json_delta", "partial_json": arguments}))
        return events
