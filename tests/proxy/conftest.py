import pytest

from ccbproxy.proxy.models import ManagedModeConfig, ProviderConfig

PROVIDER_DEFAULTS = {
    "anthropic": ("anthropic", "https://api.anthropic.com", ["claude-3-5-sonnet-20241022"]),
    "openai": ("custom", "https://api.openai.com/v1", ["gpt-4o"]),
    "openrouter": ("openrouter", "https://openrouter.ai/api/v1", ["anthropic/claude-3.5-sonnet"]),
    "deepseek": ("deepseek", "https://api.deepseek.com/v1", ["deepseek-chat"]),
    "gemini": ("gemini", "https://generativelanguage.googleapis.com/v1beta", ["gemini-1.5-pro"]),
}


def build_provider(transformer: str, **overrides) -> ProviderConfig:
    provider_type, base_url, models = PROVIDER_DEFAULTS[transformer]
    data = {
        "id": f"{transformer}-1",
        "name": f"{transformer.title()} test",
        "type": provider_type,
        "api_base_url": base_url,
        "api_key": f"sk-{transformer}-secret",
        "models": list(models),
        "transformer_id": transformer,
    }
    data.update(overrides)
    return ProviderConfig(**data)


def build_config(*providers: ProviderConfig, **overrides) -> ManagedModeConfig:
    data = {
        "providers": list(providers),
        "current_provider_id": providers[0].id if providers else "",
        "logging": {"enabled": False, "level": "info"},
    }
    data.update(overrides)
    return ManagedModeConfig(**data)


@pytest.fixture
def make_provider():
    return build_provider


@pytest.fixture
def make_config():
    return build_config
