from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from memchain.capture import DEFAULT_MAX_MESSAGE_CHARS, CaptureStrategy
from memchain.models.anchors import AnchorPolicy
from memchain.models.jobs import DEFAULT_MAX_ATTEMPTS

DEFAULT_KEY_CONTEXT = "MEMCHAIN_ENCRYPTION_KEY_V1"


class IdentityConfig(BaseModel):
    owner: str = "owner"
    agent_id: str = "default"
    signing_key_hex: SecretStr | None = None
    """32-byte Ed25519 seed as hex. When unset the seed is read from the OS keyring."""
    keyring_service: str = "memchain"


class StorageConfig(BaseModel):
    data_dir: Path = Path("./data")
    state_backend: Literal["json", "sqlite"] = "json"
    state_file: str = "state.json"
    state_db: str = "state.db"
    queue_file: str = "queue.jsonl"

    @property
    def state_path(self) -> Path:
        return self.data_dir / self.state_file

    @property
    def state_db_path(self) -> Path:
        return self.data_dir / self.state_db

    @property
    def queue_path(self) -> Path:
        return self.data_dir / self.queue_file


class ContentStoreConfig(BaseModel):
    base_url: str = "http://localhost:5001"
    gateway_urls: list[str] = Field(default_factory=list)
    """Read gateways in fallback order; empty means ``base_url`` only."""
    timeout_s: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    memory_prefix: str = "memory/"


class AnchorConfig(BaseModel):
    enabled: bool = False
    policy: AnchorPolicy = AnchorPolicy.DAILY
    endpoints: list[str] = Field(default_factory=list)
    timeout_s: float = Field(default=8.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    min_request_interval_s: float = Field(default=0.1, ge=0)

    @model_validator(mode="after")
    def _enabled_requires_endpoint(self) -> AnchorConfig:
        if self.enabled and not self.endpoints:
            raise ValueError("anchor.endpoints must list at least one endpoint when anchoring is enabled")
        return self


class CryptoConfig(BaseModel):
    key_context: str = DEFAULT_KEY_CONTEXT
    key_cache_ttl_s: float = Field(default=600.0, gt=0)
    key_cache_max_entries: int = Field(default=64, ge=1)


class CaptureConfig(BaseModel):
    enabled: bool = True
    strategy: CaptureStrategy = CaptureStrategy.LAST_TURN
    max_message_chars: int = Field(default=DEFAULT_MAX_MESSAGE_CHARS, ge=1)


class RecallConfig(BaseModel):
    limit: int = Field(default=10, ge=1)
    fetch_concurrency: int = Field(default=4, ge=1)


class WorkerConfig(BaseModel):
    interval_s: float = Field(default=2.0, gt=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_backoff_ms: int = Field(default=2000, ge=0)
    lease_duration_s: float = Field(default=300.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class MemchainSettings(BaseSettings):
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    content_store: ContentStoreConfig = Field(default_factory=ContentStoreConfig)
    anchor: AnchorConfig = Field(default_factory=AnchorConfig)
    crypto: CryptoConfig = Field(default_factory=CryptoConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    recall: RecallConfig = Field(default_factory=RecallConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="MEMCHAIN_",
        env_nested_delimiter="__",
        extra="ignore",
    )


def _env_tree(environ: Mapping[str, str], prefix: str, delimiter: str) -> dict[str, Any]:
    """``MEMCHAIN_ANCHOR__ENDPOINTS='[a, b]'`` → ``{"anchor": {"endpoints": ["a", "b"]}}``.

    Flow collections (`[...]`, `{...}`) are parsed as YAML; every other value
    stays a string for pydantic to coerce, so a hex seed never becomes an int.
    """
    tree: dict[str, Any] = {}
    for name in sorted(environ):
        if not name.startswith(prefix):
            continue
        *parents, leaf = name[len(prefix) :].lower().split(delimiter)
        node = tree
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        raw = environ[name]
        node[leaf] = yaml.safe_load(raw) if raw.lstrip().startswith(("[", "{")) else raw
    return tree


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def load_config(
    path: str | Path = "config/memchain.yaml", *, environ: Mapping[str, str] | None = None
) -> MemchainSettings:
    """Read a YAML config (optionally under a top-level ``memchain:`` key) and apply
    ``MEMCHAIN_*`` environment overrides on top of it."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"config file not found: {config_path}")

    document = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(document, dict):
        raise ValueError("config file must contain a top-level mapping")
    section = document.get("memchain", document)
    if not isinstance(section, dict):
        raise ValueError("memchain config section must be a mapping")

    settings_config = MemchainSettings.model_config
    overrides = _env_tree(
        os.environ if environ is None else environ,
        settings_config.get("env_prefix", ""),
        settings_config.get("env_nested_delimiter") or "__",
    )
    return MemchainSettings.model_validate(_deep_merge(section, overrides))


__all__ = [
    "DEFAULT_KEY_CONTEXT",
    "AnchorConfig",
    "CaptureConfig",
    "ContentStoreConfig",
    "CryptoConfig",
    "IdentityConfig",
    "LoggingConfig",
    "MemchainSettings",
    "RecallConfig",
    "StorageConfig",
    "WorkerConfig",
    "load_config",
]
