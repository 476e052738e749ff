"""Configuration package."""

from mealbot.config.settings import (
    BackendType,
    LedgerSettings,
    get_settings,
)

__all__ = [
    "BackendType",
    "LedgerSettings",
    "get_settings",
]
