"""Core configuration management for tether.

This module provides the main configuration classes and loading functionality
with YAML file and environment variable support.
"""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tether.core.orchestrator import OrchestratorConfig


class ConfigError(Exception):
    """Configuration-related errors."""

    pass


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    enable_pii_redaction: bool = True


class MetricsConfig(BaseModel):
    """Metrics and tracing configuration."""

    enabled: bool = True
    path: str = "/metrics"
    tracing_enabled: bool = False
    otlp_endpoint: str | None = None


class BroadcasterConfig(BaseModel):
    """Stream fan-out configuration."""

    heartbeat_interval_seconds: float = 30.0
    max_pending_frames: int = 1000


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 3001
    auth_token: str | None = None
    allowed_origins: list[str] = Field(default_factory=lambda: ["*"])


class StorageConfig(BaseModel):
    """Session info storage configuration."""

    session_info_path: str = "~/.tether/session-info.db"
    in_memory: bool = False


class HistoryConfig(BaseModel):
    """Conversation history configuration."""

    projects_dir: str | None = None


class EngineConfig(BaseModel):
    """Execution engine selection."""

    kind: Literal["claude", "scripted"] = "claude"
    cli_path: str | None = None


class Config(BaseModel):
    """Main configuration class for tether.

    This class combines all configuration sections and provides
    validation and environment variable loading.
    """

    # Core orchestrator configuration
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)

    # Subsystem configurations
    broadcaster: BroadcasterConfig = Field(default_factory=BroadcasterConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)

    # Environment and deployment
    environment: Literal["development", "staging", "production", "testing"] = "development"
    debug: bool = False

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("orchestrator", mode="before")
    @classmethod
    def validate_orchestrator_config(cls, v):
        """Validate orchestrator configuration."""
        if isinstance(v, dict):
            return OrchestratorConfig(**v)
        return v

    def to_dict(self) -> dict[str, Any]:
        """Plain-data view of the configuration for display."""
        data = self.model_dump(exclude={"orchestrator"})
        data["orchestrator"] = self.orchestrator.to_dict()
        return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_config_file(config_path: Path) -> dict[str, Any]:
    try:
        with open(config_path) as f:
            config_data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration file: {e}") from e

    if config_data is None:
        return {}
    if not isinstance(config_data, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {config_path}")
    return config_data


def _parse_number(name: str, value: str, kind: type) -> Any:
    try:
        return kind(value)
    except ValueError as e:
        raise ConfigError(f"Invalid {name}: {value}") from e


def _env_overrides() -> dict[str, Any]:
    config_data: dict[str, Any] = {}

    def section(name: str) -> dict[str, Any]:
        return config_data.setdefault(name, {})

    # Environment and debug
    if env_val := os.getenv("TETHER_ENVIRONMENT"):
        config_data["environment"] = env_val.lower()
    if env_val := os.getenv("TETHER_DEBUG"):
        config_data["debug"] = env_val.lower() in ("true", "1", "yes", "on")

    # Logging configuration
    if env_val := os.getenv("TETHER_LOG_LEVEL"):
        section("logging")["level"] = env_val.upper()

    # Server configuration
    if env_val := os.getenv("TETHER_HOST"):
        section("server")["host"] = env_val
    if env_val := os.getenv("TETHER_PORT"):
        section("server")["port"] = _parse_number("TETHER_PORT", env_val, int)
    if env_val := os.getenv("TETHER_AUTH_TOKEN"):
        section("server")["auth_token"] = env_val

    # Orchestrator configuration
    if env_val := os.getenv("TETHER_INIT_TIMEOUT"):
        section("orchestrator")["init_timeout_seconds"] = _parse_number(
            "TETHER_INIT_TIMEOUT", env_val, float
        )
    if env_val := os.getenv("TETHER_PERMISSION_TIMEOUT"):
        section("orchestrator")["permission_timeout_seconds"] = _parse_number(
            "TETHER_PERMISSION_TIMEOUT", env_val, float
        )
    if env_val := os.getenv("TETHER_DEFAULT_MODEL"):
        section("orchestrator")["default_model"] = env_val

    # Broadcaster configuration
    if env_val := os.getenv("TETHER_HEARTBEAT_INTERVAL"):
        section("broadcaster")["heartbeat_interval_seconds"] = _parse_number(
            "TETHER_HEARTBEAT_INTERVAL", env_val, float
        )

    # Storage, history and engine
    if env_val := os.getenv("TETHER_SESSION_DB"):
        section("storage")["session_info_path"] = env_val
    if env_val := os.getenv("TETHER_PROJECTS_DIR"):
        section("history")["projects_dir"] = env_val
    if env_val := os.getenv("TETHER_ENGINE"):
        section("engine")["kind"] = env_val.lower()

    # Tracing
    if env_val := os.getenv("TETHER_OTLP_ENDPOINT"):
        section("metrics")["otlp_endpoint"] = env_val
        section("metrics")["tracing_enabled"] = True

    return config_data


def _build(config_data: dict[str, Any], source: str) -> Config:
    try:
        return Config(**config_data)
    except (ValidationError, TypeError) as e:
        raise ConfigError(f"{source} configuration validation failed: {e}") from e


def load_config_from_file(config_path: Path) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Loaded configuration

    Raises:
        ConfigError: If configuration is invalid or file cannot be read
    """
    return _build(_read_config_file(config_path), "File")


def load_config_from_env() -> Config:
    """Load configuration from environment variables.

    Environment variables are mapped as follows:
    - TETHER_ENVIRONMENT: Environment name (development/staging/production/testing)
    - TETHER_DEBUG: Enable debug mode (true/false)
    - TETHER_LOG_LEVEL: Logging level
    - TETHER_HOST / TETHER_PORT: Server bind address
    - TETHER_AUTH_TOKEN: Bearer token required on the API
    - TETHER_INIT_TIMEOUT: Engine init deadline in seconds
    - TETHER_PERMISSION_TIMEOUT: Permission decision deadline in seconds
    - TETHER_DEFAULT_MODEL: Model used when a run does not choose one
    - TETHER_HEARTBEAT_INTERVAL: Seconds between stream keepalives
    - TETHER_SESSION_DB: Session info database path
    - TETHER_PROJECTS_DIR: Claude projects directory for history
    - TETHER_ENGINE: Execution engine (claude/scripted)
    - TETHER_OTLP_ENDPOINT: OTLP trace exporter endpoint (enables tracing)

    Returns:
        Configuration loaded from environment variables
    """
    return _build(_env_overrides(), "Environment")


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from file and environment variables.

    Configuration is loaded in the following order (later sources override earlier):
    1. Default values
    2. Configuration file (if provided)
    3. Environment variables

    Args:
        config_path: Optional path to configuration file

    Returns:
        Merged configuration
    """
    config_data: dict[str, Any] = {}
    if config_path and config_path.exists():
        config_data = _read_config_file(config_path)

    return _build(_deep_merge(config_data, _env_overrides()), "Merged")


CONFIG_SEARCH_PATHS = (
    Path("tether.yaml"),
    Path("tether.yml"),
    Path("~/.config/tether/config.yaml"),
)


def find_config_file() -> Path | None:
    """Locate the configuration file used when none is given explicitly.

    ``TETHER_CONFIG`` names the file directly and must exist. Otherwise the
    first existing entry of ``CONFIG_SEARCH_PATHS`` wins.

    Raises:
        ConfigError: If ``TETHER_CONFIG`` points at a missing file
    """
    if explicit := os.getenv("TETHER_CONFIG"):
        path = Path(explicit).expanduser()
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        return path

    for candidate in CONFIG_SEARCH_PATHS:
        path = candidate.expanduser()
        if path.exists():
            return path
    return None


def validate_config(config: Config) -> None:
    """Validate configuration for consistency and correctness.

    Args:
        config: Configuration to validate

    Raises:
        ConfigError: If configuration is invalid
    """
    orchestrator = config.orchestrator
    if orchestrator.init_timeout_seconds <= 0:
        raise ConfigError("init_timeout_seconds must be positive")
    if orchestrator.permission_timeout_seconds <= 0:
        raise ConfigError("permission_timeout_seconds must be positive")
    if orchestrator.stop_grace_seconds < 0:
        raise ConfigError("stop_grace_seconds must be non-negative")
    if "{streaming_id}" not in orchestrator.stream_url_template:
        raise ConfigError("stream_url_template must contain {streaming_id}")

    if config.broadcaster.heartbeat_interval_seconds <= 0:
        raise ConfigError("broadcaster.heartbeat_interval_seconds must be positive")
    if config.broadcaster.max_pending_frames <= 0:
        raise ConfigError("broadcaster.max_pending_frames must be positive")

    if config.server.port <= 0 or config.server.port > 65535:
        raise ConfigError("server.port must be between 1 and 65535")

    # Environment-specific validations
    if config.environment == "production":
        if config.debug:
            raise ConfigError("Debug mode should not be enabled in production")

        if config.logging.level == "DEBUG":
            raise ConfigError("DEBUG logging should not be used in production")

        if not config.logging.enable_pii_redaction:
            raise ConfigError("PII redaction should be enabled in production")

        if config.engine.kind == "scripted":
            raise ConfigError("The scripted engine should not be used in production")
