"""CLI commands for finding live rooms on the listing surface."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

discover_app = typer.Typer(help="Discover live rooms.")
console = Console()


def _rooms_table(rooms: list[Any], title: str) -> Table:
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Host")
    table.add_column("Listeners", justify="right")
    table.add_column("Status")
    table.add_column("URL", overflow="fold")
    for i, room in enumerate(rooms, start=1):
        table.add_row(str(i), room.title, room.host, f"{room.listeners:,}", room.status.value, room.url)
    return table


def _discovery(language: Optional[str], mode: Optional[str], limit: Optional[int], query: str = "") -> tuple[Any, Any]:
    from spacerelay.discovery.rooms import RoomDiscovery

    discovery = RoomDiscovery()
    filters = discovery.default_filters(language=language, mode=mode, limit=limit, query=query or None)
    return discovery, filters


@discover_app.command("list")
def list_rooms(
    query: str = typer.Option("", "--query", "-q", help="Search term."),
    language: Optional[str] = typer.Option(None, "--lang", "-l", help="Listing language (e.g. en)."),
    mode: Optional[str] = typer.Option(None, "--mode", help="Listing mode (e.g. top)."),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", min=1, help="Maximum rooms to return."),
    as_json: bool = typer.Option(False, "--json", help="Print rooms as JSON."),
) -> None:
    """List live rooms in listing order."""
    from spacerelay.exceptions import DiscoveryError

    discovery, filters = _discovery(language, mode, limit, query)
    try:
        rooms = asyncio.run(discovery.discover(filters))
    except DiscoveryError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps([room.model_dump(mode="json") for room in rooms], indent=2))
        return
    console.print(_rooms_table(rooms, f"{len(rooms)} live room(s)"))


@discover_app.command("popular")
def popular_room(
    query: str = typer.Option("", "--query", "-q", help="Search term."),
    language: Optional[str] = typer.Option(None, "--lang", "-l", help="Listing language (e.g. en)."),
    as_json: bool = typer.Option(False, "--json", help="Print the room as JSON."),
) -> None:
    """Show the room with the most listeners."""
    from spacerelay.exceptions import DiscoveryError

    discovery, filters = _discovery(language, None, None, query)
    try:
        room = asyncio.run(discovery.most_popular(filters))
    except DiscoveryError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(room.model_dump_json(indent=2))
        return
    console.print(f"[bold]{room.title}[/bold] by {room.host}")
    console.print(f"  Listeners: {room.listeners:,}")
    console.print(f"  URL: {room.url}")


@discover_app.command("watch")
def watch_rooms(
    interval: Optional[float] = typer.Option(None, "--interval", "-i", min=5, help="Seconds between polls."),
    query: str = typer.Option("", "--query", "-q", help="Search term."),
    language: Optional[str] = typer.Option(None, "--lang", "-l", help="Listing language (e.g. en)."),
) -> None:
    """Poll the listing and print rooms as they appear. Stop with Ctrl-C."""
    discovery, filters = _discovery(language, None, None, query)

    def _report(rooms: list[Any], is_initial: bool) -> None:
        title = f"{len(rooms)} room(s) currently live" if is_initial else f"{len(rooms)} new room(s)"
        console.print(_rooms_table(rooms, title))

    async def _watch() -> None:
        monitor = discovery.monitor(_report, filters, interval)
        try:
            await monitor.wait()
        finally:
            monitor.stop()
            await monitor.wait()

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped watching.[/yellow]")
