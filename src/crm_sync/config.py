"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING

from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from src.crm_sync.sync.schemas import SyncConfig


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"
    test = "test"


class Settings(BaseSettings):
    """Settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Redis (cache service)
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_KEY_PREFIX: str = "crm"

    # Connectors
    CRM_USE_MOCKS: bool = False
    CRM_HTTP_TIMEOUT_SECONDS: float = 30.0

    # Sync orchestration
    SYNC_BATCH_SIZE: int = 100
    SYNC_MAX_CONCURRENT: int = 3
    SYNC_INTERVAL_MINUTES: int = 30
    SYNC_BIDIRECTIONAL: bool = True

    # Cache TTLs (seconds)
    CLIENT_CACHE_TTL_SECONDS: int = 6 * 60 * 60
    LAST_SYNC_TTL_SECONDS: int = 24 * 60 * 60

    # OAuth authorization-code flow
    OAUTH_STATE_TTL_SECONDS: int = 10 * 60
    OAUTH_CLEANUP_INTERVAL_SECONDS: int = 5 * 60

    # Retry executor
    RATE_LIMIT_MAX_WAIT_SECONDS: float = 5 * 60

    @property
    def is_test(self) -> bool:
        """True when running under the test environment."""
        return self.ENVIRONMENT == Environment.test

    def sync_defaults(self) -> SyncConfig:
        """Build the default SyncConfig from the SYNC_* settings."""
        from src.crm_sync.sync.schemas import SyncConfig

        return SyncConfig(
            batch_size=self.SYNC_BATCH_SIZE,
            max_concurrent_syncs=self.SYNC_MAX_CONCURRENT,
            sync_interval_minutes=self.SYNC_INTERVAL_MINUTES,
            enable_bidirectional_sync=self.SYNC_BIDIRECTIONAL,
            client_cache_ttl_seconds=self.CLIENT_CACHE_TTL_SECONDS,
            last_sync_ttl_seconds=self.LAST_SYNC_TTL_SECONDS,
        )


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
