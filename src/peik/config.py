"""Configuration management for Peik.

Two kinds of configuration live here:

* ``EngineConfig`` -- static engine configuration read from ``peik.yaml``
  (limits, retry policy, storage location, sync channel).
* ``Settings`` -- user settings (active provider, API keys) persisted
  through the storage adapter and editable at runtime.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant named Peik."

HOSTED_PROVIDERS = ("gemini", "openai")
CUSTOM_PROVIDER = "custom"
_DISPLAY_NAMES = {"gemini": "Gemini", "openai": "ChatGPT", CUSTOM_PROVIDER: "Custom"}


# ---------------------------------------------------------------------------
# User settings
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    """Persisted with camelCase keys; accepts snake_case too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProviderSettings(_CamelModel):
    model_name: str = ""
    api_key: str = ""


class CustomProviderSettings(_CamelModel):
    id: str
    name: str = ""
    model_name: str = ""
    api_key: str = ""
    endpoint_url: str = ""


class ProvidersSettings(_CamelModel):
    gemini: ProviderSettings = Field(default_factory=ProviderSettings)
    openai: ProviderSettings = Field(default_factory=ProviderSettings)
    custom: list[CustomProviderSettings] = Field(default_factory=list)

    @field_validator("custom")
    @classmethod
    def _unique_custom_ids(
        cls, value: list[CustomProviderSettings],
    ) -> list[CustomProviderSettings]:
        seen: set[str] = set()
        for item in value:
            if item.id in seen or item.id in HOSTED_PROVIDERS:
                raise ValueError(f"duplicate custom provider id: {item.id}")
            seen.add(item.id)
        return value


class ProviderConfig(BaseModel):
    """Fully resolved configuration for one provider.

    ``kind`` selects the registered handler (``gemini``, ``openai`` or
    ``custom``); ``id`` is the settings identifier (equal to ``kind`` for
    hosted providers, the user-chosen id for custom ones).
    """

    kind: str
    id: str
    name: str = ""
    model_name: str = ""
    api_key: str = ""
    endpoint_url: str = ""

    @property
    def display_name(self) -> str:
        return self.name or _DISPLAY_NAMES.get(self.kind, self.kind)

    def is_complete(self) -> bool:
        if not self.model_name:
            return False
        if self.kind == CUSTOM_PROVIDER:
            return bool(self.endpoint_url)
        return bool(self.api_key)


class Settings(_CamelModel):
    active_provider_id: str | None = None
    providers: ProvidersSettings = Field(default_factory=ProvidersSettings)

    def resolve(self, provider_id: str | None = None) -> ProviderConfig | None:
        """Resolve *provider_id* (default: the active one) to a config."""
        pid = provider_id or self.active_provider_id
        if not pid:
            return None
        if pid in HOSTED_PROVIDERS:
            p: ProviderSettings = getattr(self.providers, pid)
            return ProviderConfig(
                kind=pid, id=pid, model_name=p.model_name, api_key=p.api_key,
            )
        for custom in self.providers.custom:
            if custom.id == pid:
                return ProviderConfig(
                    kind=CUSTOM_PROVIDER,
                    id=custom.id,
                    name=custom.name,
                    model_name=custom.model_name,
                    api_key=custom.api_key,
                    endpoint_url=custom.endpoint_url,
                )
        return None

    def is_valid(self) -> bool:
        """True if the active provider has every field its kind requires."""
        resolved = self.resolve()
        return resolved is not None and resolved.is_complete()

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_storage(cls, raw: dict[str, Any] | None) -> Settings:
        if not raw:
            return cls()
        return cls.model_validate(raw)


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------

class LimitsConfig(BaseModel):
    max_message_length: int | None = 10_000
    max_messages_per_chat: int | None = None  # counts user messages
    max_chat_title_length: int | None = 100
    max_chats: int | None = None


class FetchConfig(BaseModel):
    max_retries: int = 3
    backoff_base: float = 1.0  # seconds -- exponential: 1, 2, 4
    connect_timeout: float = 30
    read_timeout: float = 60


class SaveConfig(BaseModel):
    max_retries: int = 3
    retry_delay: float = 0.5
    sweep_interval: float = 5.0


class SyncConfig(BaseModel):
    enabled: bool = True
    channel_name: str = "peik-chat-sync"
    poll_interval: float = 1.0  # seconds between checks of the shared SQLite file


class StorageConfig(BaseModel):
    backend: str = "sqlite"  # "sqlite" | "memory"
    db_path: str = "~/.peik/peik.db"


class EngineConfig(BaseModel):
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    save: SaveConfig = Field(default_factory=SaveConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    default_provider: ProviderConfig | None = None


CONFIG_FILENAME = "peik.yaml"


def load_config(
    config_path: str | Path | None = None,
) -> tuple[EngineConfig, Path | None]:
    """Load engine configuration from YAML.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. ``./peik.yaml``
      3. ``~/.peik/peik.yaml``
    """
    if config_path is None:
        for candidate in (Path.cwd() / CONFIG_FILENAME,
                          Path.home() / ".peik" / CONFIG_FILENAME):
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return EngineConfig(), None

    resolved = Path(config_path)
    if not resolved.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    _logger.info("Loading config from %s", resolved)
    with open(resolved) as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}
    return EngineConfig.model_validate(raw), resolved.resolve()
