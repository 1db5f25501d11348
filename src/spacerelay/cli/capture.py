"""CLI commands for capturing and relaying a room's audio."""

from __future__ import annotations

import asyncio
import sys
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

capture_app = typer.Typer(help="Capture live room audio and relay it over WebSocket.")
console = Console(stderr=True)


def _effective_settings(
    *,
    headless: Optional[bool] = None,
    mode: Optional[str] = None,
    skip_audio_verification: bool = False,
) -> Any:
    """Return a copy of the resolved settings with CLI flags applied."""
    from spacerelay.settings import get_settings

    from spacerelay.audio.factory import MODES

    settings = get_settings().model_copy(deep=True)
    if headless is not None:
        settings.browser.headless = headless
    if mode:
        if mode.lower() not in MODES:
            raise typer.BadParameter(f"expected one of {', '.join(MODES)}", param_hint="--mode")
        settings.audio.mode = mode.lower()
    if skip_audio_verification:
        settings.audio.skip_audio_verification = True
    return settings


def _run_session(
    *,
    room_url: Optional[str],
    endpoint: Optional[str],
    mode: Optional[str],
    headless: Optional[bool],
    duration: Optional[float],
    events: bool,
    skip_audio_verification: bool,
    query: str = "",
) -> None:
    from spacerelay.discovery.rooms import DiscoveryFilters
    from spacerelay.exceptions import ConfigError
    from spacerelay.monitoring.event_bus import ConsoleSink, EventBus, JsonlSink
    from spacerelay.runner.orchestrator import SessionOrchestrator

    settings = _effective_settings(headless=headless, mode=mode, skip_audio_verification=skip_audio_verification)
    bus = EventBus()
    bus.add_sink(JsonlSink(sys.stdout) if events else ConsoleSink(console))

    orchestrator = SessionOrchestrator(settings, endpoint=endpoint, event_bus=bus)
    filters = DiscoveryFilters.from_settings(settings, query=query or None) if not room_url else None

    console.print(
        Panel(
            f"[bold]Room:[/bold] {room_url or 'most popular live room'}\n"
            f"[bold]Relay:[/bold] {orchestrator.endpoint or '(not set)'}\n"
            f"[bold]Mode:[/bold] {orchestrator.capture_mode}",
            title="spacerelay",
            border_style="blue",
        )
    )

    try:
        result = asyncio.run(orchestrator.run(room_url, filters, duration_seconds=duration))
    except ConfigError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(code=2)

    if result.success:
        console.print(f"\n[green]✓[/green] Session {result.session_id} finished")
    else:
        console.print(f"\n[red]✗[/red] Session {result.session_id} failed ({result.error_type}): {result.error}")
    console.print(f"  Room: {result.room_url}")
    if result.backup_path:
        console.print(f"  Backup: {result.backup_path}")
    console.print(
        f"  Chunks: {result.chunks_captured} captured, {result.chunks_relayed} relayed, "
        f"{result.chunks_dropped} dropped (relay {result.relay_state or '-'})"
    )
    if result.snapshot_path:
        console.print(f"  Snapshot: {result.snapshot_path}")
    failed_steps = [step for step in result.teardown if step.get("status") != "ok"]
    for step in failed_steps:
        console.print(f"  [yellow]⚠[/yellow] Teardown {step['step']} failed: {step.get('error', '')}")
    if not result.success:
        raise typer.Exit(code=1)


@capture_app.command("url")
def capture_url(
    url: str = typer.Argument(..., help="Room URL to capture."),
    endpoint: Optional[str] = typer.Option(None, "--endpoint", "-e", help="Relay WebSocket endpoint (ws:// or wss://)."),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="Capture mode: auto, device, or graph."),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed", help="Run the browser headless or headed."),
    duration: Optional[float] = typer.Option(None, "--duration", "-d", min=1, help="Stop after this many seconds."),
    events: bool = typer.Option(False, "--events", help="Emit JSONL events to stdout."),
    skip_audio_verification: bool = typer.Option(
        False, "--skip-audio-verification", help="Start capture even if no audio is detected."
    ),
) -> None:
    """Join a room, capture its audio and relay it until interrupted."""
    _run_session(
        room_url=url,
        endpoint=endpoint,
        mode=mode,
        headless=headless,
        duration=duration,
        events=events,
        skip_audio_verification=skip_audio_verification,
    )


@capture_app.command("top")
def capture_top(
    query: str = typer.Option("", "--query", "-q", help="Only consider rooms matching this search."),
    endpoint: Optional[str] = typer.Option(None, "--endpoint", "-e", help="Relay WebSocket endpoint (ws:// or wss://)."),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="Capture mode: auto, device, or graph."),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed", help="Run the browser headless or headed."),
    duration: Optional[float] = typer.Option(None, "--duration", "-d", min=1, help="Stop after this many seconds."),
    events: bool = typer.Option(False, "--events", help="Emit JSONL events to stdout."),
    skip_audio_verification: bool = typer.Option(
        False, "--skip-audio-verification", help="Start capture even if no audio is detected."
    ),
) -> None:
    """Capture the live room with the most listeners."""
    _run_session(
        room_url=None,
        endpoint=endpoint,
        mode=mode,
        headless=headless,
        duration=duration,
        events=events,
        skip_audio_verification=skip_audio_verification,
        query=query,
    )


@capture_app.command("multi")
def capture_multi(
    urls: Optional[list[str]] = typer.Argument(None, help="Room URLs. When omitted the top rooms are discovered."),
    count: int = typer.Option(3, "--count", "-c", min=1, max=20, help="Rooms to capture when no URLs are given."),
    endpoint: Optional[list[str]] = typer.Option(None, "--endpoint", "-e", help="Endpoint per room, in order."),
    endpoint_base: str = typer.Option("", "--endpoint-base", help="Base endpoint; the room index is appended."),
    base_port: int = typer.Option(8080, "--base-port", "-b", help="First local sink port (incremented per room)."),
    local_sinks: bool = typer.Option(False, "--local-sinks", help="Start a local sink for every localhost endpoint."),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="Capture mode: auto, device, or graph."),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed", help="Run the browsers headless or headed."),
    start_delay: float = typer.Option(5.0, "--start-delay", min=0, help="Seconds between capture launches."),
) -> None:
    """Capture several rooms at once, one process per room."""
    from spacerelay.exceptions import DiscoveryError
    from spacerelay.runner.multi import MultiCaptureRunner, plan_targets

    settings = _effective_settings(headless=headless, mode=mode)
    room_urls = list(urls or [])
    if not room_urls:
        from spacerelay.discovery.rooms import RoomDiscovery, rank_by_listeners

        discovery = RoomDiscovery(settings)
        # Over-fetch: some listed rooms may have ended by the time they are joined
        filters = discovery.default_filters(limit=count * 2)
        try:
            rooms = rank_by_listeners(asyncio.run(discovery.discover(filters)))
        except DiscoveryError as e:
            console.print(f"[red]✗[/red] {e}")
            raise typer.Exit(code=1)
        room_urls = [room.url for room in rooms[:count]]

    targets = plan_targets(room_urls, endpoints=endpoint or (), endpoint_base=endpoint_base, base_port=base_port)
    table = Table(title=f"Capturing {len(targets)} room(s)")
    table.add_column("#", justify="right")
    table.add_column("Room")
    table.add_column("Endpoint")
    for target in targets:
        table.add_row(str(target.index + 1), target.room_url, target.endpoint)
    console.print(table)

    runner = MultiCaptureRunner(
        targets,
        headless=headless,
        mode=mode,
        start_local_sinks=local_sinks,
        sink_output_dir=settings.sink.output_dir,
        start_delay=start_delay,
    )
    try:
        codes = asyncio.run(runner.run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; capture processes stopped.[/yellow]")
        raise typer.Exit(code=130)
    failed = [label for label, code in codes.items() if code not in (0, None)]
    if failed or not codes:
        console.print(f"[red]✗[/red] Failed captures: {', '.join(failed) or 'none started'}")
        raise typer.Exit(code=1)
    console.print("[green]✓[/green] All captures finished")
