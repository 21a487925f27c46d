from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional

import httpx

from .config_manager import get_active
from .events import EventChannel
from .models import ManagedModeConfig, ProviderConfig
from .transformers.base import BaseTransformer
from .transformers.registry import TransformerRegistry, default_transformers
from .upstream import UpstreamClient


class GatewayService:
    """Everything one gateway run needs: an immutable config snapshot plus its clients."""

    def __init__(
        self,
        config: ManagedModeConfig,
        transformers: Optional[TransformerRegistry] = None,
        channel: Optional[EventChannel] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config.model_copy(deep=True)
        self._transformers = transformers or default_transformers()
        self._transformers.validate(self._config)
        self._channel = channel or EventChannel()
        self._transport = transport
        self._clients: Dict[str, UpstreamClient] = {}
        self._lock = asyncio.Lock()
        self.started_at = time.time()
        for provider in self._config.providers:
            if provider.enabled:
                self._clients[provider.id] = self._build_client(provider)

    @property
    def config(self) -> ManagedModeConfig:
        return self._config

    @property
    def channel(self) -> EventChannel:
        return self._channel

    @property
    def transformers(self) -> TransformerRegistry:
        return self._transformers

    def resolve_provider(self) -> ProviderConfig:
        return get_active(self._config)

    def transformer_for(self, provider: ProviderConfig) -> BaseTransformer:
        return self._transformers.get(provider.transformer_id)

    async def get_client(self, provider: ProviderConfig) -> UpstreamClient:
        async with self._lock:
            if provider.id not in self._clients:
                self._clients[provider.id] = self._build_client(provider)
            return self._clients[provider.id]

    def _build_client(self, provider: ProviderConfig) -> UpstreamClient:
        return UpstreamClient(provider, proxy=self._config.proxy_url, transport=self._transport)

    async def shutdown(self) -> None:
        async with self._lock:
            for client in self._clients.values():
                await client.close()
            self._clients = {}
