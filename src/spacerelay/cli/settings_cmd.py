"""CLI commands for inspecting and validating Space Relay settings."""

from __future__ import annotations

import json

import typer
from rich.console import Console

settings_app = typer.Typer(help="Inspect and validate Space Relay configuration.")
console = Console()


@settings_app.command("show")
def show_settings() -> None:
    """Display the currently resolved settings (secrets masked)."""
    from spacerelay.settings import get_settings

    settings = get_settings()
    console.print_json(json.dumps(settings.model_dump(mode="json"), indent=2, default=str))


@settings_app.command("validate")
def validate_settings() -> None:
    """Validate settings and report any issues."""
    from spacerelay.settings import get_settings

    try:
        settings = get_settings()
    except Exception as e:
        console.print(f"[red]✗[/red] Settings validation failed: {e}")
        raise typer.Exit(code=1)

    console.print("[green]✓[/green] Settings are valid.")
    console.print(f"  Environment: {settings.env}")
    console.print(f"  Capture mode: {settings.audio.mode}")
    console.print(f"  Relay endpoint: {settings.transport.endpoint or '(not set)'}")
    console.print(f"  Recordings dir: {settings.audio.recordings_dir}")
    if not settings.credentials.username:
        console.print("[yellow]⚠[/yellow] No platform credentials configured (SPACERELAY_CREDENTIALS__USERNAME).")
