"""Configuration package."""

from kite.config.settings import (
    AppSettings,
    CacheSettings,
    RepositorySettings,
    Settings,
    StoreSettings,
    SyncSettings,
    TransactionSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "CacheSettings",
    "RepositorySettings",
    "Settings",
    "StoreSettings",
    "SyncSettings",
    "TransactionSettings",
    "get_settings",
    "validate_all_settings",
]
