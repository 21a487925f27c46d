from __future__ import annotations

from typing import Any, Dict, Mapping

from ..models import ProviderConfig
from .openai import OpenAITransformer

APP_REFERER = "https://claudecodebutler.com"
APP_TITLE = "Claude Code Butler"


class OpenRouterTransformer(OpenAITransformer):
    name = "openrouter"
    model_aliases = {
        "claude-3-5-sonnet-20241022": "anthropic/claude-3.5-sonnet",
        "claude-3-5-haiku-20241022": "anthropic/claude-3.5-haiku",
        "claude-3-opus-20240229": "anthropic/claude-3-opus",
        "claude-3-sonnet-20240229": "anthropic/claude-3-sonnet",
        "claude-3-haiku-20240307": "anthropic/claude-3-haiku",
        "claude-3-7-sonnet-20250219": "anthropic/claude-3.7-sonnet",
        "claude-sonnet-4-20250514": "anthropic/claude-sonnet-4",
        "claude-opus-4-20250514": "anthropic/claude-opus-4",
    }
    error_types = {
        "invalid_api_key": "authentication_error",
        "insufficient_credits": "rate_limit_error",
        "rate_limit_exceeded": "rate_limit_error",
        "model_not_found": "invalid_request_error",
        "content_policy_violation": "invalid_request_error",
    }

    def is_native_model(self, model: str) -> bool:
        # OpenRouter ids are namespaced, e.g. "anthropic/claude-3.5-sonnet"
        return "/" in model

    def build_headers(self, provider: ProviderConfig, headers: Mapping[str, str]) -> Dict[str, str]:
        built = super().build_headers(provider, headers)
        built["HTTP-Referer"] = APP_REFERER
        built["X-Title"] = APP_TITLE
        return built

    def map_max_tokens(self, max_tokens: Any, model: str) -> Any:
        if isinstance(max_tokens, int):
            return max(1, max_tokens)
        return max_tokens
