"""CLI command for running the reference receiving sink."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

sink_app = typer.Typer(help="Run a WebSocket sink that stores relayed audio as WAV files.")
console = Console(stderr=True)


@sink_app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from settings)."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Listen port (default from settings)."),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="Directory for received WAV files."),
) -> None:
    """Accept relay connections on any path until interrupted."""
    import uvicorn

    from spacerelay.settings import get_settings
    from spacerelay.transport.sink import create_app

    settings = get_settings()
    bind_host = host or settings.sink.host
    bind_port = port or settings.sink.port
    target_dir = output_dir or Path(settings.sink.output_dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    console.print(f"Sink listening on ws://{bind_host}:{bind_port}/<any-path> -> {target_dir}")
    uvicorn.run(create_app(target_dir), host=bind_host, port=bind_port, log_level="info")
