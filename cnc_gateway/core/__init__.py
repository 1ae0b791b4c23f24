"""Core package exports."""

from .config_loader import (
    AUTO_DISCOVER,
    ConfigError,
    RuntimeConfiguration,
    build_configuration,
    load_config,
)

__all__ = [
    "AUTO_DISCOVER",
    "ConfigError",
    "RuntimeConfiguration",
    "build_configuration",
    "load_config",
]
