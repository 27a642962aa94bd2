"""
Configuration management for doc-translator.

Settings are pydantic models; YAML files and the environment feed them.
"""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file if present (before Settings initialization)
load_dotenv()


class LLMProvider(str, Enum):
    """Available LLM providers."""

    OPENAI = "openai"
    OPENROUTER = "openrouter"


class DispatchMode(str, Enum):
    """How pending chunks are handed to workers."""

    BATCH = "batch"
    SERIAL = "serial"


class PathsConfig(BaseModel):
    """Configuration for file paths."""

    database_path: Path = Field(default=Path("./data/doc_translator.duckdb"), validate_default=True)
    storage_dir: Path = Field(default=Path("./data/storage"), validate_default=True)
    logs: Path = Field(default=Path("./logs"), validate_default=True)

    @field_validator("database_path", "storage_dir", "logs")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        """Expand user home directory and make path absolute."""
        return Path(v).expanduser().resolve()


class TranslationConfig(BaseModel):
    """Configuration for the translation engine."""

    provider: LLMProvider = Field(default=LLMProvider.OPENAI)
    model: str = Field(default="gpt-4o-mini")
    # Optional second provider used when the primary request fails
    fallback_provider: LLMProvider | None = Field(default=None)
    fallback_model: str | None = Field(default=None)
    openai_api_key: str = Field(default="")
    openrouter_api_key: str = Field(default="")
    base_url: str | None = Field(default=None)
    source_language: str = Field(default="fr")
    target_language: str = Field(default="en")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, ge=256, le=32000)
    timeout_seconds: float = Field(default=120.0, ge=5.0, le=600.0)
    request_retries: int = Field(default=3, ge=1, le=10)
    # First attempt plus one corrective retry on structural mismatch
    structure_attempts: int = Field(default=2, ge=1, le=5)
    # Chunks with at least this many labeled spans use the id->text batch path
    span_batch_threshold: int = Field(default=12, ge=2, le=1000)


class ProcessingConfig(BaseModel):
    """Configuration for the worker side of the pipeline."""

    dispatch_mode: DispatchMode = Field(default=DispatchMode.BATCH)
    concurrent_chunks: int = Field(default=4, ge=1, le=32)
    poll_interval_seconds: float = Field(default=2.0, ge=0.1, le=60.0)
    # Embed assets without a source URL as data URIs in assembled HTML
    embed_assets_inline: bool = Field(default=True)


class StorageConfig(BaseModel):
    """Configuration for blob storage."""

    # Chunk payloads larger than this (characters) move to blob storage
    offload_threshold: int = Field(default=16000, ge=0)
    signed_url_ttl_seconds: int = Field(default=900, ge=30, le=86400)


class HealthConfig(BaseModel):
    """Configuration for the health monitor."""

    interval_seconds: float = Field(default=300.0, ge=1.0)
    stale_minutes: float = Field(default=15.0, gt=0.0)
    retry_limit: int = Field(default=3, ge=0, le=50)
    max_chunk_retries: int = Field(default=3, ge=1, le=50)


class TranslationNotifications(BaseModel):
    """Which translation job events send a notification."""

    started: bool = False
    completed: bool = True
    failed: bool = True
    paused: bool = False
    resumed: bool = False
    cancelled: bool = False


class DocumentationNotifications(BaseModel):
    """Which ingestion job events send a notification."""

    started: bool = False
    completed: bool = True
    failed: bool = True


class NotificationConfig(BaseModel):
    """Configuration for job notifications."""

    enabled: bool = Field(default=True)
    translation: TranslationNotifications = Field(default_factory=TranslationNotifications)
    documentation: DocumentationNotifications = Field(default_factory=DocumentationNotifications)
    recipients: list[str] = Field(default_factory=list)
    subject_prefix: str = Field(default="[Doc Translator]")


class JobLogConfig(BaseModel):
    """Configuration for the per-job audit log."""

    retention_days: int = Field(default=10, ge=1, le=365)


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="INFO")
    file: Path | None = Field(default=Path("./logs/doc_translator.log"))
    format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    max_file_size_mb: int = Field(default=10, ge=1, le=100)
    backup_count: int = Field(default=5, ge=1, le=20)


class Settings(BaseSettings):
    """Main settings class that combines all configurations."""

    model_config = SettingsConfigDict(
        env_prefix="",  # No prefix for simpler env vars
        env_nested_delimiter="__",
        extra="ignore",
    )

    paths: PathsConfig = Field(default_factory=PathsConfig)
    translation: TranslationConfig = Field(default_factory=TranslationConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    job_log: JobLogConfig = Field(default_factory=JobLogConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def __init__(self, **data: Any) -> None:
        """Initialize with environment variable fallbacks for API keys."""
        super().__init__(**data)
        if not self.translation.openai_api_key:
            self.translation.openai_api_key = os.getenv("OPENAI_API_KEY", "")
        if not self.translation.openrouter_api_key:
            self.translation.openrouter_api_key = os.getenv("OPENROUTER_API_KEY", "")
        # TRANSLATION_MODEL only replaces the built-in default model
        env_model = os.getenv("TRANSLATION_MODEL")
        if env_model and self.translation.model == TranslationConfig().model:
            self.translation.model = env_model

    @classmethod
    def from_yaml(cls, path: Path | str) -> Settings:
        """
        Build settings from a YAML file; a missing file yields the defaults.

        String values of the form ``${VAR}`` or ``${VAR:-fallback}`` are read
        from the environment.
        """
        path = Path(path)
        if not path.exists():
            return cls()
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return cls(**_expand_env(raw))


_ENV_REF = re.compile(r"^\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>.*))?\}$")


def _expand_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if isinstance(value, str):
        match = _ENV_REF.match(value)
        if match:
            return os.getenv(match["name"], match["default"] or "")
    return value


CONFIG_SEARCH_PATHS = ("config.yaml", "config.yml", ".doc-translator.yaml")


def load_config(path: Path | str | None = None) -> Settings:
    """
    Load settings from ``path``, or from the first config file found in the
    working directory, or the defaults when there is none.
    """
    if path is None:
        path = next((Path(p) for p in CONFIG_SEARCH_PATHS if Path(p).exists()), None)
    if path is None:
        return Settings()
    return Settings.from_yaml(path)


DEFAULT_CONFIG = """# doc-translator configuration

paths:
  database_path: ./data/doc_translator.duckdb
  storage_dir: ./data/storage
  logs: ./logs

translation:
  # "openai" or "openrouter"
  provider: openai
  model: gpt-4o-mini
  # fallback_provider: openrouter
  # fallback_model: openai/gpt-4o-mini
  source_language: fr
  target_language: en
  temperature: 0.2
  max_tokens: 2048
  # openai_api_key: ${OPENAI_API_KEY}
  # openrouter_api_key: ${OPENROUTER_API_KEY}

processing:
  # "batch" sends every pending chunk at once, "serial" one at a time
  dispatch_mode: batch
  concurrent_chunks: 4

storage:
  offload_threshold: 16000
  signed_url_ttl_seconds: 900

health:
  interval_seconds: 300
  stale_minutes: 15
  retry_limit: 3
  max_chunk_retries: 3

notifications:
  enabled: true
  recipients: []
  translation:
    started: false
    completed: true
    failed: true

job_log:
  retention_days: 10

logging:
  level: INFO
  file: ./logs/doc_translator.log
"""


def create_default_config(path: Path | str = "config.yaml") -> None:
    """Create a default configuration file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(DEFAULT_CONFIG)
