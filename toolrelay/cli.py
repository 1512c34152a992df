"""CLI for toolrelay - a local tool-orchestration relay."""

from __future__ import annotations

import asyncio
import logging
import sys

import click

from toolrelay import __version__
from toolrelay.config import DEFAULT_CONFIG_NAME, load_config
from toolrelay.errors import ConfigError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    """Send logs to stderr; stdout carries the JSON-RPC transport."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


@click.group()
@click.version_option(version=__version__, prog_name="toolrelay")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity (logs go to stderr)",
)
def main(log_level: str) -> None:
    """toolrelay - Aggregate tool providers behind one stdio endpoint.

    Starts the configured provider processes, publishes their tools under
    namespaced names, and adds a multi-language code execution tool.
    """
    configure_logging(log_level)


config_option = click.option(
    "--config", "-c",
    "config_path",
    default=DEFAULT_CONFIG_NAME,
    type=click.Path(dir_okay=False),
    help=f"Provider configuration file (defaults to {DEFAULT_CONFIG_NAME})",
)


@main.command()
@config_option
def serve(config_path: str) -> None:
    """Run the relay as a stdio JSON-RPC server.

    \b
    Configure in .mcp.json:
        {
            "mcpServers": {
                "toolrelay": {
                    "command": "toolrelay",
                    "args": ["serve", "--config", "/path/to/.toolrelay.json"]
                }
            }
        }
    """
    from mcp_toolrelay.server import run

    try:
        run(config_path)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


async def _collect_tools(config_path: str) -> list[dict]:
    from toolrelay.context import build_context

    context = await build_context(load_config(config_path))
    try:
        return context.catalog.list_tools()
    finally:
        await context.close()


@main.command()
@config_option
def tools(config_path: str) -> None:
    """Start the providers, list the aggregated tools, and exit.

    \b
    Example:
        toolrelay tools --config .toolrelay.json
    """
    try:
        catalog = asyncio.run(_collect_tools(config_path))
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"{len(catalog)} tools available:\n")
    for tool in catalog:
        description = tool.get("description", "")
        click.echo(f"  - {tool['name']}: {description[:80]}")


if __name__ == "__main__":
    main()
