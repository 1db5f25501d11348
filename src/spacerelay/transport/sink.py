"""Reference receiving sink for relayed audio.

A FastAPI WebSocket endpoint that accepts connections on any path and
speaks the relay protocol: it acknowledges ``metadata`` and
``heartbeat`` messages, accepts audio as binary frames or base64
``audio_data`` messages, and writes one WAV file per connection.

Run with ``spacerelay sink serve`` or::

    uvicorn --factory spacerelay.transport.sink:create_app --port 8080
"""

from __future__ import annotations

import binascii
import logging
import time
import uuid
from pathlib import Path
from typing import Any

from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect

from spacerelay.audio.backup import WavBackupWriter
from spacerelay.audio.quantize import peak_level
from spacerelay.models.audio import AudioFormat
from spacerelay.transport.protocol import MessageType, decode_audio_data, parse_message

logger = logging.getLogger(__name__)

sink_router = APIRouter(tags=["sink"])

_PROGRESS_EVERY = 100


# ---------------------------------------------------------------------------
# Per-connection state
# ---------------------------------------------------------------------------


class SinkConnection:
    """Tracks one relay connection and its output file."""

    def __init__(self, output_dir: Path, stream_path: str) -> None:
        self.connection_id = uuid.uuid4().hex[:8]
        self.output_dir = output_dir
        self.stream_path = stream_path
        self.audio_format: AudioFormat | None = None
        self.writer: WavBackupWriter | None = None
        self.chunks = 0
        self.total_bytes = 0
        self.heartbeats = 0
        self.peak = 0.0
        self.started = time.monotonic()
        self.ended = False

    def handle_metadata(self, message: dict[str, Any]) -> dict[str, Any]:
        """Open the output file for the announced format and build the ack."""
        self.audio_format = AudioFormat(
            sample_rate=int(message.get("sampleRate") or 16_000),
            bits_per_sample=int(message.get("bitsPerSample") or 16),
            channels=int(message.get("channels") or 1),
            encoding=str(message.get("encoding") or "S16LE"),
        )
        if self.writer is None:
            slug = self.stream_path.strip("/").replace("/", "-") or "stream"
            path = self.output_dir / f"{slug}-{self.connection_id}.wav"
            self.writer = WavBackupWriter(path, self.audio_format).open()
        logger.info("[%s] metadata: %s", self.connection_id, message)
        return {
            "type": MessageType.METADATA_ACK.value,
            "status": "ok",
            "sessionId": self.connection_id,
            "format": {
                "encoding": self.audio_format.encoding,
                "sampleRate": self.audio_format.sample_rate,
                "channels": self.audio_format.channels,
                "bitsPerSample": self.audio_format.bits_per_sample,
            },
        }

    def handle_audio(self, data: bytes) -> None:
        if not data:
            return
        self.chunks += 1
        self.total_bytes += len(data)
        self.peak = max(self.peak, peak_level(data))
        if self.writer is None:
            logger.warning("[%s] audio before metadata; assuming canonical format", self.connection_id)
            self.handle_metadata({})
        self.writer.write(data)
        if self.chunks % _PROGRESS_EVERY == 0:
            logger.info(
                "[%s] received %d chunks (%.2f MB)",
                self.connection_id,
                self.chunks,
                self.total_bytes / 1024 / 1024,
            )

    def finish(self) -> Path | None:
        path = self.writer.close() if self.writer else None
        logger.info(
            "[%s] session summary: chunks=%d bytes=%d heartbeats=%d peak=%.2f duration=%.1fs file=%s",
            self.connection_id,
            self.chunks,
            self.total_bytes,
            self.heartbeats,
            self.peak,
            time.monotonic() - self.started,
            path or "-",
        )
        return path


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@sink_router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    return {"status": "ok", "connections": request.app.state.active_connections}


@sink_router.websocket("/{stream_path:path}")
async def ws_audio(websocket: WebSocket, stream_path: str) -> None:
    """Receive one relayed audio stream."""
    await websocket.accept()
    app_state = websocket.app.state
    conn = SinkConnection(Path(app_state.output_dir), stream_path)
    app_state.active_connections += 1
    logger.info("[%s] client connected on /%s", conn.connection_id, stream_path)

    try:
        while not conn.ended:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break

            if frame.get("bytes") is not None:
                conn.handle_audio(frame["bytes"])
                continue

            message = parse_message(frame.get("text") or "")
            if message is None:
                logger.warning("[%s] ignoring malformed text frame", conn.connection_id)
                continue

            kind = message.get("type")
            if kind == MessageType.METADATA.value:
                await websocket.send_json(conn.handle_metadata(message))
            elif kind == MessageType.AUDIO_DATA.value:
                try:
                    conn.handle_audio(decode_audio_data(message))
                except (binascii.Error, ValueError) as exc:
                    logger.warning("[%s] bad audio_data payload: %s", conn.connection_id, exc)
            elif kind == MessageType.HEARTBEAT.value:
                conn.heartbeats += 1
                await websocket.send_json(
                    {"type": MessageType.HEARTBEAT_ACK.value, "timestamp": int(time.time() * 1000)}
                )
            elif kind == MessageType.END.value:
                logger.info("[%s] end of stream: %s", conn.connection_id, message.get("reason", ""))
                conn.ended = True
            else:
                logger.debug("[%s] unknown message type %r", conn.connection_id, kind)
    except WebSocketDisconnect:
        logger.info("[%s] client disconnected", conn.connection_id)
    finally:
        app_state.active_connections -= 1
        conn.finish()


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(output_dir: str | Path | None = None) -> FastAPI:
    """Build the sink application writing WAV files to ``output_dir``."""
    if output_dir is None:
        from spacerelay.settings import get_settings

        output_dir = get_settings().sink.output_dir

    application = FastAPI(title="Space Relay Sink", description="Receives relayed room audio.")
    application.state.output_dir = str(output_dir)
    application.state.active_connections = 0
    application.include_router(sink_router)
    return application
