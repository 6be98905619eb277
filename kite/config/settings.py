"""
Configuration Management for Kite

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Every tunable the data layer uses (retry counts, cache TTLs, batch sizes)
is declared once and validated at startup.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreSettings(BaseSettings):
    """Embedded SQLite store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KITE_STORE_",
        extra="ignore"
    )

    path: str = Field(
        default=":memory:",
        description="Path to the SQLite database file (':memory:' for an ephemeral store)"
    )
    busy_timeout_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="How long SQLite waits on a locked database before reporting contention"
    )


class TransactionSettings(BaseSettings):
    """Atomic unit (transaction) retry and timeout configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KITE_TX_",
        extra="ignore"
    )

    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts for a transaction hitting contention or timeout"
    )
    backoff_multiplier: float = Field(
        default=0.1,
        ge=0.0,
        description="Exponential backoff multiplier in seconds"
    )
    backoff_max: float = Field(
        default=2.0,
        ge=0.0,
        description="Upper bound for a single backoff wait in seconds"
    )
    timeout_seconds: Optional[float] = Field(
        default=10.0,
        description="Per-attempt timeout; None disables the timeout"
    )

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: Optional[float]) -> Optional[float]:
        """A timeout must be positive when set."""
        if v is not None and v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v


class CacheSettings(BaseSettings):
    """Read cache configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KITE_CACHE_",
        extra="ignore"
    )

    default_ttl_seconds: float = Field(
        default=60.0,
        gt=0,
        description="TTL for cached find_all reads"
    )
    search_ttl_seconds: float = Field(
        default=30.0,
        gt=0,
        description="TTL for cached transaction searches"
    )


class SyncSettings(BaseSettings):
    """Offline write queue configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KITE_SYNC_",
        extra="ignore"
    )

    max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts per queued item before it is marked failed"
    )
    backoff_multiplier: float = Field(
        default=1.0,
        ge=0.0,
        description="Exponential backoff multiplier in seconds"
    )
    backoff_max: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound for a single backoff wait in seconds"
    )


class RepositorySettings(BaseSettings):
    """Batching and matching thresholds used by repositories."""

    model_config = SettingsConfigDict(
        env_prefix="KITE_REPO_",
        extra="ignore"
    )

    batch_size: int = Field(
        default=100,
        ge=1,
        description="Chunk size for batch create and bulk operations"
    )
    import_batch_size: int = Field(
        default=50,
        ge=1,
        description="Chunk size for transaction imports"
    )
    duplicate_threshold_ms: int = Field(
        default=60_000,
        ge=0,
        description="Maximum time distance for duplicate candidates"
    )
    amount_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        description="Amount tolerance for import duplicate checks and balance drift"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_version: str = Field(
        default="1.0.0",
        description="Application version recorded in app metadata"
    )
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access. Sub-settings can be
    overridden by passing instances, which is how tests shrink backoff.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    store: StoreSettings = Field(default_factory=StoreSettings)
    transaction: TransactionSettings = Field(default_factory=TransactionSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    repository: RepositorySettings = Field(default_factory=RepositorySettings)
    app: AppSettings = Field(default_factory=AppSettings)


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}
    sections = {
        "store": StoreSettings,
        "transaction": TransactionSettings,
        "cache": CacheSettings,
        "sync": SyncSettings,
        "repository": RepositorySettings,
        "app": AppSettings,
    }
    for name, settings_cls in sections.items():
        try:
            settings_cls()
            results[name] = True
        except ValueError:
            results[name] = False
    return results
