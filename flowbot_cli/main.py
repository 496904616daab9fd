"""FlowBot CLI - Main entry point."""

import click

from flowbot_core.config import get_settings
from flowbot_core.core.logging import configure_logging

from . import __version__
from .commands import canvas, labels, simulate, template, validate


@click.group()
@click.version_option(version=__version__, prog_name="flowbot")
@click.option("--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table",
              help="Output format")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, output: str, debug: bool):
    """FlowBot CLI - Validate, inspect and simulate conversation flows.

    \b
    Examples:
      flowbot validate support.json
      flowbot labels support.yaml
      flowbot simulate support.json -m "hi there" -m "yes"
    """
    ctx.ensure_object(dict)

    settings = get_settings()
    configure_logging(
        level="DEBUG" if debug else settings.log_level,
        format=settings.log_format,
        service_name=settings.service_name,
    )

    ctx.obj["output"] = output
    ctx.obj["debug"] = debug


# Register commands
cli.add_command(validate)
cli.add_command(labels)
cli.add_command(canvas)
cli.add_command(simulate)
cli.add_command(template)


def main():
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
