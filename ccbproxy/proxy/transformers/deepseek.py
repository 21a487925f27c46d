from __future__ import annotations

from typing import Any

from .openai import OpenAITransformer

DEEPSEEK_CHAT_MAX_TOKENS = 4096


class DeepSeekTransformer(OpenAITransformer):
    name = "deepseek"
    default_model = "deepseek-chat"
    native_prefixes = ("deepseek",)
    model_aliases = {
        "claude-3-5-sonnet-20241022": "deepseek-chat",
        "claude-3-5-haiku-20241022": "deepseek-chat",
        "claude-3-opus-20240229": "deepseek-chat",
        "claude-3-sonnet-20240229": "deepseek-chat",
        "claude-3-haiku-20240307": "deepseek-chat",
        "gpt-4": "deepseek-chat",
        "gpt-4-turbo": "deepseek-chat",
        "gpt-3.5-turbo": "deepseek-chat",
    }
    error_types = {
        "invalid_api_key": "authentication_error",
        "authentication_error": "authentication_error",
        "insufficient_quota": "rate_limit_error",
        "model_not_found": "invalid_request_error",
        "rate_limit_exceeded": "rate_limit_error",
        "content_filter": "invalid_request_error",
        "invalid_request": "invalid_request_error",
        "invalid_request_error": "invalid_request_error",
    }

    def map_max_tokens(self, max_tokens: Any, model: str) -> Any:
        if isinstance(max_tokens, int) and model == "deepseek-chat":
            return min(max_tokens, DEEPSEEK_CHAT_MAX_TOKENS)
        return max_tokens
