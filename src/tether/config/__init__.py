"""Configuration management for tether.

This module provides configuration loading and validation.
"""

from .config import (
    BroadcasterConfig,
    Config,
    ConfigError,
    EngineConfig,
    HistoryConfig,
    LoggingConfig,
    MetricsConfig,
    ServerConfig,
    StorageConfig,
    find_config_file,
    load_config,
    load_config_from_env,
    load_config_from_file,
    validate_config,
)

__all__ = [
    "BroadcasterConfig",
    "Config",
    "ConfigError",
    "EngineConfig",
    "HistoryConfig",
    "LoggingConfig",
    "MetricsConfig",
    "ServerConfig",
    "StorageConfig",
    "find_config_file",
    "load_config",
    "load_config_from_env",
    "load_config_from_file",
    "validate_config",
]
