"""CLI for running the Web adapter server.

This module provides a command-line interface for starting the FastAPI-based
Web adapter server with configurable options.
"""

from pathlib import Path

import click
import uvicorn

from tether.adapters.web.server import create_web_adapter
from tether.config import ConfigError, find_config_file, load_config, validate_config
from tether.core.services import ServiceContainer
from tether.utils.telemetry import get_logger, setup_logging, setup_tracing


@click.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file (YAML)",
)
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to bind to")
@click.option("--log-level", default=None, help="Log level")
@click.option("--auth-token", default=None, help="Bearer token required on /api/*")
@click.option(
    "--engine",
    type=click.Choice(["claude", "scripted"]),
    default=None,
    help="Execution engine",
)
def run_server(
    config_path: Path | None,
    host: str | None,
    port: int | None,
    log_level: str | None,
    auth_token: str | None,
    engine: str | None,
) -> None:
    """Run the Web adapter server."""
    try:
        config = load_config(config_path or find_config_file())
    except ConfigError as e:
        raise click.ClickException(str(e)) from e

    # CLI options override file and environment
    if host is not None:
        config.server.host = host
    if port is not None:
        config.server.port = port
    if log_level is not None:
        config.logging.level = log_level.upper()
    if auth_token is not None:
        config.server.auth_token = auth_token
    if engine is not None:
        config.engine.kind = engine

    try:
        validate_config(config)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config.logging.level, config.logging.enable_pii_redaction)
    if config.metrics.tracing_enabled:
        setup_tracing(otlp_endpoint=config.metrics.otlp_endpoint)
    logger = get_logger("tether.web_cli")

    logger.info(
        "Starting web server",
        host=config.server.host,
        port=config.server.port,
        engine=config.engine.kind,
        environment=config.environment,
        auth_enabled=config.server.auth_token is not None,
    )

    web_adapter = create_web_adapter(ServiceContainer(config))

    uvicorn.run(
        web_adapter.app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


@click.group()
def cli() -> None:
    """Web adapter CLI."""
    pass


cli.add_command(run_server, name="server")


if __name__ == "__main__":
    cli()
