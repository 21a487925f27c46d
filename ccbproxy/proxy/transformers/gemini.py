from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from ..errors import InvalidRequestError, StreamFramingError
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

SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
]

FINISH_REASONS = {
    "STOP": "end_turn",
    "MAX_TOKENS": "max_tokens",
    "SAFETY": "stop_sequence",
    "RECITATION": "stop_sequence",
    "OTHER": "end_turn",
}

# JSON-schema keywords the function declaration schema rejects
_UNSUPPORTED_SCHEMA_KEYS = {"$schema", "$id", "additionalProperties", "default", "examples"}


def map_finish_reason(reason: Optional[str]) -> Optional[str]:
    if not reason:
        return None
    if reason.startswith("FINISH_REASON_"):
        reason = reason[len("FINISH_REASON_"):]
    return FINISH_REASONS.get(reason, "end_turn")


def clean_schema(schema: Any) -> Any:
    if isinstance(schema, list):
        return [clean_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema
    cleaned: Dict[str, Any] = {}
    for key, value in schema.items():
        if key in _UNSUPPORTED_SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {name: clean_schema(sub) for name, sub in value.items()}
        else:
            cleaned[key] = clean_schema(value)
    return cleaned


class GeminiTransformer(BaseTransformer):
    """Claude Messages <-> Gemini generateContent."""

    name = "gemini"
    default_model = "gemini-1.5-pro"
    native_prefixes = ("gemini",)
    model_aliases = {
        "claude-3-5-sonnet-20241022": "gemini-1.5-pro",
        "claude-3-5-haiku-20241022": "gemini-1.5-flash",
        "claude-3-opus-20240229": "gemini-1.5-pro",
        "claude-3-sonnet-20240229": "gemini-1.5-pro",
        "claude-3-haiku-20240307": "gemini-1.5-flash",
        "gpt-4": "gemini-1.5-pro",
        "gpt-4-turbo": "gemini-1.5-pro",
        "gpt-3.5-turbo": "gemini-1.5-flash",
    }
    error_types = {
        "INVALID_ARGUMENT": "invalid_request_error",
        "FAILED_PRECONDITION": "invalid_request_error",
        "PERMISSION_DENIED": "permission_error",
        "UNAUTHENTICATED": "authentication_error",
        "RESOURCE_EXHAUSTED": "rate_limit_error",
        "NOT_FOUND": "not_found_error",
        "ALREADY_EXISTS": "invalid_request_error",
        "OUT_OF_RANGE": "invalid_request_error",
        "ABORTED": "api_error",
        "UNIMPLEMENTED": "api_error",
        "INTERNAL": "api_error",
        "UNAVAILABLE": "overloaded_error",
        "DATA_LOSS": "api_error",
    }

    def endpoint(self, provider: ProviderConfig, model: str, stream: bool) -> str:
        if stream:
            return f"{provider.base_url}/models/{model}:streamGenerateContent?alt=sse"
        return f"{provider.base_url}/models/{model}:generateContent"

    def transform_request(
        self,
        request: Dict[str, Any],
        provider: ProviderConfig,
        headers: Optional[Mapping[str, str]] = None,
    ) -> UpstreamRequest:
        model = self.resolve_model(request.get("model", ""), provider)
        stream = bool(request.get("stream", False))

        tool_names: Dict[str, str] = {}
        contents: List[Dict[str, Any]] = []
        for message in request.get("messages", []):
            role = "model" if message.get("role") == "assistant" else "user"
            parts = self._convert_parts(message.get("content"), tool_names)
            if parts:
                contents.append({"role": role, "parts": parts})

        generation_config: Dict[str, Any] = {}
        if request.get("max_tokens"):
            generation_config["maxOutputTokens"] = request["max_tokens"]
        if request.get("temperature") is not None:
            generation_config["temperature"] = request["temperature"]
        if request.get("top_p") is not None:
            generation_config["topP"] = request["top_p"]
        if request.get("top_k") is not None:
            generation_config["topK"] = request["top_k"]
        if request.get("stop_sequences"):
            generation_config["stopSequences"] = list(request["stop_sequences"])
        if stream:
            generation_config["candidateCount"] = 1

        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
            "safetySettings": [dict(setting) for setting in SAFETY_SETTINGS],
        }
        system_prompt = request.get("system")
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": collapse_text(system_prompt)}]}

        tools = request.get("tools")
        if tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.get("name"),
                            "description": tool.get("description", ""),
                            "parameters": clean_schema(tool.get("input_schema") or {"type": "object"}),
                        }
                        for tool in tools
                    ]
                }
            ]
            tool_config = self._tool_config(request.get("tool_choice"))
            if tool_config:
                payload["toolConfig"] = tool_config

        return UpstreamRequest(
            method="POST",
            url=self.endpoint(provider, model, stream),
            headers={
                "x-goog-api-key": provider.api_key.get_secret_value(),
                "Content-Type": "application/json",
            },
            json=payload,
            model=model,
            stream=stream,
            timeout=self.timeout_for(provider),
        )

    def _convert_parts(self, content: Any, tool_names: Dict[str, str]) -> List[Dict[str, Any]]:
        if isinstance(content, str):
            return [{"text": content}]
        if not isinstance(content, list):
            raise InvalidRequestError("Invalid content format")
        parts: List[Dict[str, Any]] = []
        for block in content:
            kind = block.get("type")
            if kind == "text":
                parts.append({"text": block.get("text", "")})
            elif kind == "image":
                source = block.get("source") or {}
                if source.get("type") == "base64":
                    parts.append({"inlineData": {"mimeType": source.get("media_type"), "data": source.get("data")}})
                else:
                    logger.debug("[%s] skipping non-inline image source", self.name)
            elif kind == "tool_use":
                tool_names[block.get("id", "")] = block.get("name", "")
                parts.append({"functionCall": {"name": block.get("name"), "args": block.get("input") or {}}})
            elif kind == "tool_result":
                tool_use_id = block.get("tool_use_id", "")
                parts.append(
                    {
                        "functionResponse": {
                            "name": tool_names.get(tool_use_id, tool_use_id),
                            "response": {"content": collapse_text(block.get("content"))},
                        }
                    }
                )
        return parts

    @staticmethod
    def _tool_config(choice: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(choice, dict):
            return None
        kind = choice.get("type")
        if kind == "auto":
            return {"functionCallingConfig": {"mode": "AUTO"}}
        if kind == "any":
            return {"functionCallingConfig": {"mode": "ANY"}}
        if kind == "none":
            return {"functionCallingConfig": {"mode": "NONE"}}
        if kind == "tool" and choice.get("name"):
            return {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [choice["name"]]}}
        return None

    def transform_response(
        self, response: Dict[str, Any], provider: ProviderConfig, model: Optional[str] = None
    ) -> Dict[str, Any]:
        candidates = response.get("candidates") or []
        candidate = candidates[0] if candidates else {}

        content: List[Dict[str, Any]] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "functionCall" in part:
                call = part["functionCall"]
                content.append(
                    {
                        "type": "tool_use",
                        "id": call.get("id") or new_tool_id(),
                        "name": call.get("name", ""),
                        "input": call.get("args") or {},
                    }
                )
            elif part.get("thought") and "text" in part:
                content.append({"type": "thinking", "thinking": part["text"], "signature": ""})
            elif "text" in part:
                content.append({"type": "text", "text": part["text"]})
            elif "inlineData" in part:
                inline = part["inlineData"]
                content.append(
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": inline.get("mimeType"), "data": inline.get("data")},
                    }
                )
        if not content:
            content.append({"type": "text", "text": ""})

        stop_reason = map_finish_reason(candidate.get("finishReason"))
        if any(block["type"] == "tool_use" for block in content):
            stop_reason = "tool_use"

        usage = response.get("usageMetadata") or {}
        return {
            "id": response.get("responseId") or new_message_id(),
            "type": "message",
            "role": "assistant",
            "model": response.get("modelVersion") or model or self.default_model,
            "content": content,
            "stop_reason": stop_reason or "end_turn",
            "stop_sequence": None,
            "usage": {
                "input_tokens": usage.get("promptTokenCount") or 0,
                "output_tokens": usage.get("candidatesTokenCount") or 0,
            },
        }

    def translate_frame(self, frame: SSEFrame, provider: ProviderConfig, state: StreamState) -> List[SSEEvent]:
        chunk = self.parse_frame_json(frame)
        if "error" in chunk:
            logger.warning("[%s] upstream reported an error mid-stream", self.name)
            return state.fail(self.transform_error(None, chunk))

        usage = chunk.get("usageMetadata")
        candidates = chunk.get("candidates") or []
        candidate = candidates[0] if isinstance(candidates, list) and candidates else {}
        content = (candidate.get("content") or {}) if isinstance(candidate, dict) else None
        parts = (content.get("parts") or []) if isinstance(content, dict) else None
        if (
            not isinstance(usage, (dict, type(None)))
            or not isinstance(candidates, list)
            or not isinstance(parts, list)
            or not all(isinstance(part, dict) for part in parts)
        ):
            raise StreamFramingError("chunk does not have the GenerateContentResponse shape")

        if usage:
            state.input_tokens = usage.get("promptTokenCount") or state.input_tokens
            state.output_tokens = usage.get("candidatesTokenCount") or state.output_tokens

        events: List[SSEEvent] = []
        if not state.started:
            if chunk.get("responseId"):
                state.message_id = chunk["responseId"]
            if chunk.get("modelVersion"):
                state.model = chunk["modelVersion"]
            events.extend(state.start())

        if not candidates:
            return events
        for part in parts:
            if "functionCall" in part:
                call = part["functionCall"]
                # Gemini delivers each call whole, never as argument fragments
                events.extend(
                    state.open_block(
                        {
                            "type": "tool_use",
                            "id": call.get("id") or new_tool_id(),
                            "name": call.get("name", ""),
                            "input": {},
                        }
                    )
                )
                arguments = json.dumps(call.get("args") or {}, ensure_ascii=False)
                events.append(state.delta({"type": "input_json_delta", "partial_json": arguments}))
                events.extend(state.close_block())
            elif part.get("thought") and part.get("text"):
                events.extend(state.thinking(part["text"]))
            elif part.get("text"):
                events.extend(state.text(part["text"]))

        finish_reason = map_finish_reason(candidate.get("finishReason"))
        if finish_reason:
            state.stop_reason = "tool_use" if state.saw_tool_use else finish_reason
        return events
