from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .errors import ConfigError, ProviderDisabledError, ProviderNotFoundError
from .models import ManagedModeConfig, ProviderConfig, _now_ms
from .transformers.registry import TransformerRegistry, default_transformers

CONFIG_PATH_ENV = "CCB_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path.home() / ".ccb" / "managed-mode-config.json"

logger = logging.getLogger(__name__)


def default_config_path() -> Path:
    override = os.environ.get(CONFIG_PATH_ENV)
    if override:
        return Path(override).expanduser()
    return DEFAULT_CONFIG_PATH


def default_config() -> ManagedModeConfig:
    return ManagedModeConfig()


def generate_access_token() -> str:
    return f"ccb-{secrets.token_hex(24)}"


def get_active(config: ManagedModeConfig) -> ProviderConfig:
    provider = config.find_provider(config.current_provider_id) if config.current_provider_id else None
    if provider is None:
        raise ProviderNotFoundError(config.current_provider_id)
    if not provider.enabled:
        raise ProviderDisabledError(provider.name)
    return provider


class ProviderRegistry:
    """Reads and atomically writes the managed-mode config file.

    The gateway only ever calls :meth:`load` and :meth:`get_active`; the
    mutating helpers exist for the desktop settings layer and persist on every
    call. A running gateway picks the changes up on its next restart.
    """

    def __init__(self, config_path: Optional[Path] = None, transformers: Optional[TransformerRegistry] = None) -> None:
        self._config_path = Path(config_path) if config_path else default_config_path()
        self._transformers = transformers or default_transformers()
        self._lock = asyncio.Lock()

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def transformers(self) -> TransformerRegistry:
        return self._transformers

    def load(self) -> ManagedModeConfig:
        try:
            config = self._load_file()
        except ConfigError as exc:
            logger.warning("config at %s unusable (%s); using defaults", self._config_path, exc.message)
            config = default_config()
        self._transformers.validate(config)
        return config

    def _load_file(self) -> ManagedModeConfig:
        if not self._config_path.exists():
            logger.info("no config at %s; using defaults", self._config_path)
            return default_config()
        try:
            data = json.loads(self._config_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            raise ConfigError(f"cannot read config: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError("config root is not a JSON object")
        try:
            return ManagedModeConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"invalid config: {exc.error_count()} validation error(s)") from exc

    def save(self, config: ManagedModeConfig) -> None:
        serialised = self._serialise(config)
        directory = self._config_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._config_path.name}.", suffix=".tmp", dir=str(directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(serialised, handle, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._config_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("config written to %s", self._config_path)

    @staticmethod
    def _serialise(config: ManagedModeConfig) -> Dict[str, Any]:
        data = config.model_dump(mode="json", by_alias=True)
        # secrets dump masked; the desktop app needs the real key on disk
        for entry, provider in zip(data["providers"], config.providers):
            entry["apiKey"] = provider.api_key.get_secret_value()
        return data

    def get_active(self, config: ManagedModeConfig) -> ProviderConfig:
        return get_active(config)

    async def add_provider(self, provider: ProviderConfig) -> ManagedModeConfig:
        async with self._lock:
            config = self.load()
            if config.find_provider(provider.id) is not None:
                raise ConfigError(f"Provider id {provider.id} already exists")
            self._transformers.get(provider.transformer_id)
            providers = config.providers + [provider]
            updates: Dict[str, Any] = {"providers": providers}
            if len(providers) == 1:
                updates["current_provider_id"] = provider.id
            config = config.model_copy(update=updates)
            self.save(config)
            return config

    async def update_provider(self, provider: ProviderConfig) -> ManagedModeConfig:
        async with self._lock:
            config = self.load()
            if config.find_provider(provider.id) is None:
                raise ProviderNotFoundError(provider.id)
            self._transformers.get(provider.transformer_id)
            updated = provider.model_copy(update={"updated_at": _now_ms()})
            providers = [updated if item.id == provider.id else item for item in config.providers]
            config = config.model_copy(update={"providers": providers})
            self.save(config)
            return config

    async def delete_provider(self, provider_id: str) -> ManagedModeConfig:
        async with self._lock:
            config = self.load()
            if config.current_provider_id == provider_id:
                raise ConfigError("Cannot delete the provider that is currently in use")
            if config.find_provider(provider_id) is None:
                raise ProviderNotFoundError(provider_id)
            providers = [item for item in config.providers if item.id != provider_id]
            config = config.model_copy(update={"providers": providers})
            self.save(config)
            return config

    async def switch_provider(self, provider_id: str) -> ManagedModeConfig:
        async with self._lock:
            config = self.load()
            if config.find_provider(provider_id) is None:
                raise ProviderNotFoundError(provider_id)
            config = config.model_copy(update={"current_provider_id": provider_id})
            self.save(config)
            return config

    async def update_config(self, **fields: Any) -> ManagedModeConfig:
        async with self._lock:
            config = self.load()
            data = config.model_dump()
            data.update(fields)
            try:
                config = ManagedModeConfig.model_validate(data)
            except ValidationError as exc:
                raise ConfigError(f"invalid config update: {exc.error_count()} validation error(s)") from exc
            self._transformers.validate(config)
            self.save(config)
            return config

    async def reset_access_token(self) -> ManagedModeConfig:
        async with self._lock:
            config = self.load().model_copy(update={"access_token": generate_access_token()})
            self.save(config)
            return config
