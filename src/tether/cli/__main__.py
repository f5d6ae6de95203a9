"""The ``tether`` command, also runnable as ``python -m tether.cli``."""

import sys

import click

from tether import __version__
from tether.adapters.web.cli import run_server
from tether.cli.config import config_group


@click.group(
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Supervised agent conversation service."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"tether {__version__}")


cli.add_command(run_server, name="serve")
cli.add_command(config_group)


def main(args: list[str] | None = None) -> int:
    """Run the CLI and return its exit code."""
    try:
        cli.main(args=args, prog_name="tether", standalone_mode=False)
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.Abort:
        click.echo("Aborted!", err=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
