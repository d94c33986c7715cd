"""Kripa configuration management with environment variable overrides.

This module provides centralized configuration management with support for:
- Environment variable overrides
- YAML config file loading
- Pydantic validation
- Path resolution with StoragePathResolver (XDG-compliant)

Priority order for configuration values:
1. YAML config file (passed explicitly or via KRIPA_CONFIG)
2. Environment variables (KRIPA_*, nested with "__")
3. StoragePathResolver for paths
4. Pydantic defaults (lowest priority)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kripa.storage.path_resolver import StoragePathResolver

logger = logging.getLogger(__name__)


class RetrievalConfig(BaseModel):
    """Retrieval and ranking configuration.

    Threshold and top_k are deployment-time constants; requests never
    override them.

    Attributes:
        similarity_threshold: Minimum cosine similarity for a story to match
        top_k: Maximum number of stories returned
        max_question_words: Questions are truncated to this many words
        corpus_dir: Directory holding the corpus artifacts
        embedded_corpus_file: Gzipped JSON corpus with embeddings
        plain_corpus_file: Un-embedded JSON corpus used as fallback
        default_source: Citation used when a story carries none
    """

    similarity_threshold: float = Field(default=0.30, ge=-1.0, le=1.0)
    top_k: int = Field(default=3, ge=1, le=50)
    max_question_words: int = Field(default=25, ge=1)
    corpus_dir: Path | None = None
    embedded_corpus_file: str = "stories-with-embeddings.json.gz"
    plain_corpus_file: str = "stories.json"
    default_source: str = "Miracle of Love, Ram Dass"

    @model_validator(mode="after")
    def resolve_paths(self) -> "RetrievalConfig":
        """Resolve corpus directory using StoragePathResolver."""
        if self.corpus_dir is None:
            self.corpus_dir = StoragePathResolver().get_corpus_dir()
        return self


class EmbeddingConfig(BaseModel):
    """External embedding service configuration.

    Attributes:
        provider: "openai" (HTTP API) or "hash" (deterministic, development only)
        model: Embedding model name
        api_key: API key for the embedding service
        base_url: Base URL of an OpenAI-compatible API
        dimensions: Dimension used by the hash provider
        timeout_seconds: Per-call timeout
    """

    provider: str = "openai"
    model: str = "text-embedding-3-large"
    api_key: str = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    base_url: str = "https://api.openai.com/v1"
    dimensions: int = 3072
    timeout_seconds: float = 15.0

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Validate embedding provider name."""
        if v not in {"openai", "hash"}:
            raise ValueError(f"Unknown embedding provider: {v}")
        return v


class CompletionConfig(BaseModel):
    """Optional completion service used to enrich guidance text.

    Attributes:
        enabled: Whether to call the completion service at all
        model: Chat completion model name
        api_key: API key (falls back to OPENAI_API_KEY)
        base_url: Base URL of an OpenAI-compatible API
        timeout_seconds: Per-call timeout
    """

    enabled: bool = False
    model: str = "gpt-4o-mini"
    api_key: str = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    base_url: str = "https://api.openai.com/v1"
    timeout_seconds: float = 10.0


class QuotaConfig(BaseModel):
    """Daily quota configuration.

    Attributes:
        daily_cap: Requests admitted per identity per day
        utc_offset_minutes: Fixed offset applied before taking the calendar day
        store_path: JSON file holding current counters
        gc_interval_seconds: Minimum spacing between opportunistic GC passes
    """

    daily_cap: int = Field(default=3, ge=1)
    utc_offset_minutes: int = Field(default=0, ge=-14 * 60, le=14 * 60)
    store_path: Path | None = None
    gc_interval_seconds: float = 300.0

    @model_validator(mode="after")
    def resolve_paths(self) -> "QuotaConfig":
        """Resolve quota store path using StoragePathResolver."""
        if self.store_path is None:
            self.store_path = StoragePathResolver().get_quota_store_path()
        return self


class LedgerConfig(BaseModel):
    """Event ledger configuration.

    Attributes:
        analytics_dir: Directory holding one shard file per day
        shard_size_ceiling_bytes: Serialized size that triggers archival rotation
        session_window_minutes: Width of the epoch-aligned session window
        record_server_questions: Record question_asked events from the search path
    """

    analytics_dir: Path | None = None
    shard_size_ceiling_bytes: int = Field(default=5 * 1024 * 1024, ge=1024)
    session_window_minutes: int = Field(default=30, ge=1)
    record_server_questions: bool = True

    @model_validator(mode="after")
    def resolve_paths(self) -> "LedgerConfig":
        """Resolve analytics directory using StoragePathResolver."""
        if self.analytics_dir is None:
            self.analytics_dir = StoragePathResolver().get_analytics_dir()
        return self


class GateConfig(BaseModel):
    """Admission gate configuration.

    Attributes:
        bot_patterns: Case-insensitive user-agent substrings treated as automation
        required_headers: Headers every interactive browser sends
        challenge_window_seconds: Validity window of a human-verification challenge
        verification_ttl_seconds: How long a passed challenge is remembered
        require_verification: Whether search requires a passed challenge
    """

    bot_patterns: list[str] = Field(
        default_factory=lambda: [
            "bot",
            "crawler",
            "spider",
            "scraper",
            "headless",
            "phantom",
            "selenium",
        ]
    )
    required_headers: list[str] = Field(default_factory=lambda: ["accept", "accept-language"])
    challenge_window_seconds: float = 60.0
    verification_ttl_seconds: float = 30 * 60.0
    require_verification: bool = True


class KripaConfig(BaseSettings):
    """Main Kripa configuration.

    This class loads configuration from multiple sources:
    1. YAML config file (if KRIPA_CONFIG is set)
    2. Environment variables (KRIPA_*)
    3. Pydantic defaults

    Attributes:
        retrieval: Retrieval configuration
        embedding: Embedding service configuration
        completion: Completion service configuration
        quota: Quota configuration
        ledger: Ledger configuration
        gate: Admission gate configuration
        api_host: API bind host
        api_port: API server port
        admin_token: Bearer token protecting the stats endpoint
        trust_forwarded_for: Use the first X-Forwarded-For hop as origin
        cors_origins: Comma-separated allowed frontend origins
        debug: Enable debug mode
    """

    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    gate: GateConfig = Field(default_factory=GateConfig)

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    admin_token: str = ""
    trust_forwarded_for: bool = False
    cors_origins: str = "http://localhost:3000"
    debug: bool = False

    # Monitoring
    metrics_enabled: bool = True

    # Environment
    environment: str = Field(default_factory=lambda: os.getenv("KRIPA_ENVIRONMENT", "development"))

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        env_prefix="kripa_",
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Split comma-separated CORS origins into a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


def load_config_from_file(config_path: str) -> dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary
    """
    path = Path(config_path).expanduser()
    if not path.exists():
        logger.warning(f"Config file not found: {config_path}")
        return {}

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}


def get_config(config_path: str | None = None) -> KripaConfig:
    """Get configuration instance.

    Args:
        config_path: Optional path to YAML config file (defaults to KRIPA_CONFIG)

    Returns:
        KripaConfig instance
    """
    config_path = config_path or os.getenv("KRIPA_CONFIG")
    if config_path:
        file_config = load_config_from_file(config_path)
        return KripaConfig(**file_config)

    return KripaConfig()


# Global configuration instance
config = get_config()
