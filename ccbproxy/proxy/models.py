from __future__ import annotations

import time
from typing import Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    SecretStr,
    model_validator,
)
from pydantic.alias_generators import to_camel

ProviderType = Literal["anthropic", "openrouter", "deepseek", "gemini", "custom"]
LogLevel = Literal["debug", "info", "warn", "error"]

# transformer used when a provider entry does not name one
DEFAULT_TRANSFORMERS: Dict[str, str] = {
    "anthropic": "anthropic",
    "openrouter": "openrouter",
    "deepseek": "deepseek",
    "gemini": "gemini",
    "custom": "anthropic",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def mask_secret(value: str) -> str:
    if not value or len(value) < 7:
        return "***" if value else value
    return f"{value[:3]}***{value[-3:]}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProviderConfig(_CamelModel):
    id: str = Field(default_factory=lambda: uuid4().hex, description="Unique provider id")
    name: str = Field(..., min_length=1, description="Human-friendly provider label")
    type: ProviderType = Field("custom", description="Provider family")
    api_base_url: HttpUrl = Field(..., description="Upstream API base URL")
    api_key: SecretStr = Field(default=SecretStr(""), description="API key used for upstream authentication")
    models: List[str] = Field(default_factory=list, description="Upstream model ids offered to clients")
    transformer_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("transformerId", "transformer", "transformer_id"),
        serialization_alias="transformerId",
        description="Strategy translating between the Claude format and the provider",
    )
    enabled: bool = True
    description: Optional[str] = None
    created_at: int = Field(default_factory=_now_ms)
    updated_at: int = Field(default_factory=_now_ms)
    timeout: Optional[int] = Field(default=None, gt=0, description="Upstream timeout in milliseconds")

    @model_validator(mode="after")
    def _fill_transformer(self) -> "ProviderConfig":
        if not self.transformer_id:
            self.transformer_id = DEFAULT_TRANSFORMERS[self.type]
        return self

    @property
    def base_url(self) -> str:
        # `HttpUrl` has no string helpers and may carry a trailing slash
        return str(self.api_base_url).rstrip("/")

    @property
    def masked_api_key(self) -> str:
        return mask_secret(self.api_key.get_secret_value())


class LoggingConfig(_CamelModel):
    enabled: bool = True
    level: LogLevel = "info"


class NetworkProxyConfig(_CamelModel):
    enabled: bool = False
    host: str = ""
    port: int = Field(default=0, ge=0, le=65535)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class ManagedModeConfig(_CamelModel):
    enabled: bool = True
    port: int = Field(default=8487, ge=1024, le=65535)
    current_provider_id: str = Field(
        default="",
        validation_alias=AliasChoices("currentProviderId", "currentProvider", "current_provider_id"),
        serialization_alias="currentProviderId",
    )
    providers: List[ProviderConfig] = Field(default_factory=list)
    access_token: str = ""
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    network_proxy: Optional[NetworkProxyConfig] = None

    @model_validator(mode="after")
    def _unique_provider_ids(self) -> "ManagedModeConfig":
        seen = set()
        for provider in self.providers:
            if provider.id in seen:
                raise ValueError(f"duplicate provider id {provider.id!r}")
            seen.add(provider.id)
        return self

    def find_provider(self, provider_id: str) -> Optional[ProviderConfig]:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    @property
    def proxy_url(self) -> Optional[str]:
        if self.network_proxy and self.network_proxy.enabled and self.network_proxy.host:
            return self.network_proxy.url
        return None
