from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from ..errors import UnknownTransformerError
from ..models import ManagedModeConfig
from .anthropic import AnthropicTransformer
from .base import BaseTransformer
from .deepseek import DeepSeekTransformer
from .gemini import GeminiTransformer
from .openai import OpenAITransformer
from .openrouter import OpenRouterTransformer

logger = logging.getLogger(__name__)


class TransformerRegistry:
    """Closed mapping of transformer id to strategy."""

    def __init__(self, transformers: Optional[Iterable[BaseTransformer]] = None) -> None:
        self._transformers: Dict[str, BaseTransformer] = {}
        for transformer in transformers or []:
            self.register(transformer)

    def register(self, transformer: BaseTransformer) -> None:
        if transformer.name in self._transformers:
            logger.warning("transformer %s already registered; replacing it", transformer.name)
        self._transformers[transformer.name] = transformer

    def get(self, transformer_id: Optional[str]) -> BaseTransformer:
        try:
            return self._transformers[transformer_id or ""]
        except KeyError:
            raise UnknownTransformerError(transformer_id or "") from None

    def names(self) -> List[str]:
        return sorted(self._transformers)

    def __contains__(self, transformer_id: object) -> bool:
        return transformer_id in self._transformers

    def validate(self, config: ManagedModeConfig) -> None:
        for provider in config.providers:
            if provider.transformer_id not in self._transformers:
                raise UnknownTransformerError(provider.transformer_id or "", provider.name)


def default_transformers() -> TransformerRegistry:
    return TransformerRegistry(
        [
            AnthropicTransformer(),
            OpenAITransformer(),
            OpenRouterTransformer(),
            DeepSeekTransformer(),
            GeminiTransformer(),
        ]
    )
