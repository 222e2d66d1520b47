"""Settings package exposing environment and file configuration helpers."""

from resilient_fetch.settings.app import AppSettings, get_settings
from resilient_fetch.settings.loader import (
    ConfigValidationError,
    load_layer_config,
    resolve_layer_config,
)


__all__ = [
    "AppSettings",
    "ConfigValidationError",
    "get_settings",
    "load_layer_config",
    "resolve_layer_config",
]
