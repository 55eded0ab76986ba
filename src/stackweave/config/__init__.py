"""Configuration management for stackweave."""

from .models import (
    PollingSettings,
    RetrySettings,
    Settings,
    StackConfig,
)
from .parser import DEFAULT_CONFIG_FILE, Config, ConfigValidationError

__all__ = [
    "PollingSettings",
    "RetrySettings",
    "Settings",
    "StackConfig",
    "Config",
    "ConfigValidationError",
    "DEFAULT_CONFIG_FILE",
]
