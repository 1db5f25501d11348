"""Unified CLI entry point for Space Relay.

Config precedence: settings.default.toml -> settings.<env>.toml -> settings.local.toml
-> env vars (SPACERELAY_* with double underscores) -> CLI flags.
"""

from __future__ import annotations

import logging
import sys

import typer

from spacerelay.cli.capture import capture_app
from spacerelay.cli.discover import discover_app
from spacerelay.cli.settings_cmd import settings_app
from spacerelay.cli.sink_cmd import sink_app

try:
    from importlib.metadata import version

    VERSION = version("spacerelay")
except Exception:
    VERSION = "unknown"

APP_HELP = (
    "spacerelay: capture live audio rooms and relay them over WebSocket. "
    "Config precedence: settings.default.toml -> settings.local.toml -> env vars (SPACERELAY_* with __) -> CLI flags."
)

app = typer.Typer(add_completion=True, help=APP_HELP)

app.add_typer(capture_app, name="capture")
app.add_typer(discover_app, name="discover")
app.add_typer(sink_app, name="sink")
app.add_typer(settings_app, name="settings")


def configure_logging(debug: bool = False) -> None:
    """Send log records to stderr so stdout stays clean for command output."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stderr,
        force=True,
    )
    # Quieten noisy libraries
    for name in ("websockets", "asyncio", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging."),
) -> None:
    """Show help when no subcommand is provided."""
    if version:
        typer.echo(f"spacerelay {VERSION}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()
    configure_logging(debug)


if __name__ == "__main__":
    app()
