"""Configuration loading and mode resolution."""

from circle.config.settings import (
    AppConfig,
    RuntimeSettings,
    get_config,
    missing_settings,
    resolve_settings,
)

__all__ = [
    "AppConfig",
    "RuntimeSettings",
    "get_config",
    "missing_settings",
    "resolve_settings",
]
