"""
Configuration module for Obsidian Research MCP Server.

Uses pydantic-settings for configuration management with environment variable support.
Environment variables use OBSIDIAN_ prefix (e.g., OBSIDIAN_API_URL).
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    Durations are in seconds.

    Environment variables:
    - OBSIDIAN_API_URL: Base URL of the Local REST API plugin
    - OBSIDIAN_API_KEY: Bearer token for the Local REST API
    - OBSIDIAN_VAULT_PATH: Optional vault directory used when the API is unreachable
    - OBSIDIAN_SMART_CONNECTIONS_ENABLED: Use the semantic search endpoint
    - OBSIDIAN_CACHE_ENABLED / OBSIDIAN_CACHE_TTL / OBSIDIAN_CACHE_MAX_SIZE / OBSIDIAN_CACHE_MAX_MEMORY_MB
    - OBSIDIAN_RETRY_* and OBSIDIAN_BREAKER_*: Resilience tuning
    - OBSIDIAN_LOG_LEVEL: DEBUG, INFO, WARNING or ERROR
    """

    api_url: str = "https://127.0.0.1:27124"
    api_key: str | None = None
    verify_ssl: bool = False
    request_timeout: float = Field(default=30.0, ge=1.0, le=60.0)
    vault_path: Path | None = None

    smart_connections_enabled: bool = True
    semantic_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_search_results: int = Field(default=50, ge=1, le=2000)

    cache_enabled: bool = True
    cache_ttl: float = Field(default=300.0, ge=0.0)
    cache_max_size: int = Field(default=500, ge=1)
    cache_max_memory_mb: float = Field(default=25.0, gt=0.0)
    cache_warmup_keys: list[str] = Field(default_factory=list)

    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0.0)
    retry_max_delay: float = Field(default=10.0, ge=0.0)
    retry_backoff_factor: float = Field(default=2.0, ge=1.0)

    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_recovery_timeout: float = Field(default=30.0, ge=0.0)
    breaker_monitoring_window: float = Field(default=300.0, gt=0.0)

    batch_concurrency: int = Field(default=5, ge=1, le=100)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="OBSIDIAN_")


# Global settings instance
settings = Settings()
