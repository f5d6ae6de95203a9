"""``tether config`` commands for checking what a deployment will load."""

import json
import os
from pathlib import Path

import click
import yaml

from tether.config import (
    Config,
    ConfigError,
    find_config_file,
    load_config,
    load_config_from_env,
    validate_config,
)

ENV_VARS = [
    "TETHER_CONFIG",
    "TETHER_ENVIRONMENT",
    "TETHER_DEBUG",
    "TETHER_LOG_LEVEL",
    "TETHER_HOST",
    "TETHER_PORT",
    "TETHER_AUTH_TOKEN",
    "TETHER_INIT_TIMEOUT",
    "TETHER_PERMISSION_TIMEOUT",
    "TETHER_DEFAULT_MODEL",
    "TETHER_HEARTBEAT_INTERVAL",
    "TETHER_SESSION_DB",
    "TETHER_PROJECTS_DIR",
    "TETHER_ENGINE",
    "TETHER_OTLP_ENDPOINT",
]

SECRET_ENV_VARS = {"TETHER_AUTH_TOKEN"}

config_file_argument = click.argument(
    "config_path", required=False, type=click.Path(dir_okay=False, path_type=Path)
)


def _load(config_path: Path | None) -> Config:
    if config_path is not None and not config_path.exists():
        raise click.ClickException(f"Configuration file not found: {config_path}")
    try:
        return load_config(config_path or find_config_file())
    except ConfigError as e:
        raise click.ClickException(f"Error loading configuration: {e}") from e


def masked_config(config: Config) -> dict:
    """Config as a plain dict with the auth token hidden."""
    data = config.to_dict()
    if data["server"].get("auth_token"):
        data["server"]["auth_token"] = "***"
    return data


@click.group(name="config")
def config_group() -> None:
    """Inspect and validate tether configuration."""


@config_group.command()
@config_file_argument
def validate(config_path: Path | None) -> None:
    """Validate CONFIG_PATH merged with TETHER_* variables.

    Without CONFIG_PATH only the environment is checked.
    """
    if config_path is None:
        click.echo("Validating configuration from environment variables")
        try:
            config = load_config_from_env()
        except ConfigError as e:
            raise click.ClickException(f"Configuration validation failed: {e}") from e
    else:
        click.echo(f"Validating configuration file: {config_path}")
        config = _load(config_path)

    try:
        validate_config(config)
    except ConfigError as e:
        raise click.ClickException(f"Configuration validation failed: {e}") from e
    click.echo("Configuration is valid")


@config_group.command()
@config_file_argument
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(["yaml", "json"]),
    default="yaml",
    show_default=True,
)
def show(config_path: Path | None, output_format: str) -> None:
    """Print the effective configuration with secrets masked."""
    data = masked_config(_load(config_path))
    if output_format == "json":
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=True))


@config_group.command()
@click.option("--all", "-a", "show_all", is_flag=True, help="Include unset variables")
def env(show_all: bool) -> None:
    """Show the TETHER_* variables the server reads."""
    try:
        config_file = find_config_file()
    except ConfigError as e:
        config_file = None
        click.echo(f"Warning: {e}", err=True)

    click.echo(f"Environment: {os.getenv('TETHER_ENVIRONMENT') or 'development'}")
    click.echo(f"Config file: {config_file or 'None found'}")
    click.echo()
    click.echo("Environment Variables:")
    for var in ENV_VARS:
        value = os.getenv(var)
        if value and var in SECRET_ENV_VARS:
            value = "***"
        if value or show_all:
            click.echo(f"  {var}={value or '(not set)'}")
