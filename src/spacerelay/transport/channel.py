"""Reconnecting WebSocket channel that relays audio chunks to a sink.

The channel owns at most one live connection. Every connection instance
starts with the metadata handshake, so a sink can always interpret the
binary frames that follow. Unexpected closures are retried with a
linear backoff until ``max_reconnect_attempts`` is exceeded, after which
the channel is ``degraded`` for the rest of the session and ``send``
returns False.

Usage::

    channel = TransportChannel.from_settings("wss://sink.example/audio")
    await channel.connect()
    channel.send(chunk)
    await channel.close()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from spacerelay.exceptions import ConnectError, SendError
from spacerelay.models.audio import CANONICAL_FORMAT, AudioChunk, AudioFormat
from spacerelay.transport.protocol import (
    MessageType,
    PayloadMode,
    audio_data_message,
    end_message,
    heartbeat_message,
    metadata_message,
    parse_message,
)

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000

Connector = Callable[[str], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[Any]]

# Errors that mean "this attempt failed, try again later"
_OPEN_ERRORS = (OSError, TimeoutError, WebSocketException, SendError)


class ChannelState(str, Enum):
    """Connection lifecycle of a ``TransportChannel``."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    DEGRADED = "degraded"


class TransportChannel:
    """Fire-and-forget audio relay over a single WebSocket connection.

    Args:
        endpoint: ``ws://`` or ``wss://`` URL of the sink.
        audio_format: Encoding descriptor announced in every handshake.
        payload_mode: ``binary`` (raw frames) or ``base64`` (``audio_data`` messages).
        max_reconnect_attempts: Failed attempts tolerated before degrading.
        backoff_seconds: Base delay; attempt ``n`` waits ``n * backoff_seconds``.
        max_backoff_seconds: Upper bound for a single delay.
        heartbeat_seconds: Heartbeat cadence; a connection that stays open
            this long resets the attempt counter.
        queue_depth: Pending chunks kept before the oldest are dropped.
        source: Name announced in the metadata handshake.
        connector: Coroutine that opens a connection for an endpoint.
        sleep: Coroutine used for backoff waits.
    """

    def __init__(
        self,
        endpoint: str,
        audio_format: AudioFormat = CANONICAL_FORMAT,
        *,
        payload_mode: PayloadMode | str = PayloadMode.BINARY,
        max_reconnect_attempts: int = 5,
        backoff_seconds: float = 2.0,
        max_backoff_seconds: float = 30.0,
        heartbeat_seconds: float = 30.0,
        queue_depth: int = 100,
        open_timeout_seconds: float = 10.0,
        source: str = "spacerelay",
        connector: Connector | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.endpoint = endpoint
        self.audio_format = audio_format
        self.payload_mode = PayloadMode(payload_mode)
        self.max_reconnect_attempts = max_reconnect_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.open_timeout_seconds = open_timeout_seconds
        self.source = source
        self._connector = connector or self._default_connector
        self._sleep = sleep

        self.state = ChannelState.CLOSED
        self.reconnect_attempts = 0
        self.handshakes = 0
        self.backoff_delays: list[float] = []
        self.last_activity: float = 0.0
        self.sent_chunks = 0
        self.dropped_chunks = 0
        self.heartbeat_acks = 0

        self._queue: deque[AudioChunk] = deque(maxlen=max(1, queue_depth))
        self._pending = asyncio.Event()
        self._ws: Any = None
        self._opened_at: float = 0.0
        self._closing = False
        self._supervisor: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        endpoint: str | None = None,
        audio_format: AudioFormat = CANONICAL_FORMAT,
        settings: Any = None,
        **overrides: Any,
    ) -> "TransportChannel":
        """Build a channel from the ``transport`` settings section."""
        if settings is None:
            from spacerelay.settings import get_settings

            settings = get_settings()
        cfg = settings.transport
        kwargs: dict[str, Any] = {
            "payload_mode": cfg.payload_mode,
            "max_reconnect_attempts": cfg.max_reconnect_attempts,
            "backoff_seconds": cfg.backoff_seconds,
            "max_backoff_seconds": cfg.max_backoff_seconds,
            "heartbeat_seconds": cfg.heartbeat_seconds,
            "queue_depth": cfg.queue_depth,
            "open_timeout_seconds": cfg.open_timeout_seconds,
            "source": cfg.source_name,
        }
        kwargs.update(overrides)
        return cls(endpoint or cfg.endpoint, audio_format, **kwargs)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.state == ChannelState.OPEN

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def connect(self) -> None:
        """Open the connection, send the handshake and start background tasks.

        Raises:
            ConnectError: The endpoint is malformed, or every attempt within
                the retry bound failed (the channel is then ``degraded``).
        """
        scheme = urlsplit(self.endpoint or "").scheme.lower()
        if scheme not in ("ws", "wss"):
            self.state = ChannelState.DEGRADED
            raise ConnectError(self.endpoint, f"unsupported scheme {scheme or '(none)'!r}")

        self._closing = False
        self.reconnect_attempts = 0
        opened = await self._open_with_retry()
        if not opened:
            raise ConnectError(self.endpoint, f"gave up after {self.reconnect_attempts - 1} reconnect attempts")
        self._supervisor = asyncio.create_task(self._supervise(), name="transport-supervisor")

    def send(self, chunk: AudioChunk) -> bool:
        """Queue ``chunk`` for delivery. Never blocks and never raises.

        Returns:
            True when the chunk was accepted; False when the channel is not open.
        """
        if self.state != ChannelState.OPEN:
            return False
        if len(self._queue) == self._queue.maxlen:
            self.dropped_chunks += 1
            if self.dropped_chunks % 100 == 1:
                logger.warning("Relay backpressure: dropped %d chunks so far", self.dropped_chunks)
        self._queue.append(chunk)
        self._pending.set()
        return True

    async def close(self) -> None:
        """Send ``end`` and close with code 1000. Safe to call more than once."""
        self._closing = True
        if self._supervisor is not None:
            self._supervisor.cancel()
            await asyncio.gather(self._supervisor, return_exceptions=True)
            self._supervisor = None

        ws = self._ws
        if ws is not None and self.state == ChannelState.OPEN:
            self.state = ChannelState.CLOSING
            try:
                while self._queue:
                    await self._send_frame(ws, self._queue.popleft())
                await ws.send(end_message())
                await ws.close(code=NORMAL_CLOSURE, reason="capture ended")
            except (SendError, ConnectionClosed, OSError) as exc:
                logger.warning("Error while closing relay connection: %s", exc)
        self._ws = None
        self._queue.clear()
        if self.state != ChannelState.DEGRADED:
            self.state = ChannelState.CLOSED
        logger.info(
            "Relay closed (sent=%d dropped=%d handshakes=%d)",
            self.sent_chunks,
            self.dropped_chunks,
            self.handshakes,
        )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _default_connector(self, endpoint: str) -> Any:
        return await ws_connect(endpoint, open_timeout=self.open_timeout_seconds, max_size=None)

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_seconds * attempt, self.max_backoff_seconds)

    async def _open_once(self) -> None:
        self.state = ChannelState.CONNECTING
        ws = await self._connector(self.endpoint)
        try:
            await ws.send(metadata_message(self.audio_format, self.source))
        except (ConnectionClosed, OSError) as exc:
            raise SendError(f"handshake failed: {exc}") from exc
        self.handshakes += 1
        self._ws = ws
        self._opened_at = time.monotonic()
        self.last_activity = self._opened_at
        self.state = ChannelState.OPEN
        logger.info("Relay connected to %s (handshake #%d)", self.endpoint, self.handshakes)

    async def _open_with_retry(self) -> bool:
        """Open a connection, retrying with backoff. Returns False once degraded."""
        while not self._closing:
            try:
                await self._open_once()
                return True
            except _OPEN_ERRORS as exc:
                self.reconnect_attempts += 1
                logger.warning(
                    "Relay connection attempt %d to %s failed: %s",
                    self.reconnect_attempts,
                    self.endpoint,
                    exc,
                )
                if not await self._wait_before_retry():
                    return False
        return False

    async def _wait_before_retry(self) -> bool:
        """Sleep for the current attempt's backoff, or degrade past the bound."""
        if self.reconnect_attempts > self.max_reconnect_attempts:
            self.state = ChannelState.DEGRADED
            logger.error(
                "Relay degraded after %d attempts; continuing with local capture only",
                self.max_reconnect_attempts,
            )
            return False
        delay = self._backoff(self.reconnect_attempts)
        self.backoff_delays.append(delay)
        self.state = ChannelState.CONNECTING
        await self._sleep(delay)
        return True

    async def _supervise(self) -> None:
        """Pump the live connection and reconnect after unexpected closures."""
        while not self._closing:
            code = await self._pump(self._ws)
            if self._closing:
                return
            if code == NORMAL_CLOSURE:
                logger.info("Relay endpoint closed the connection normally")
                self._ws = None
                self.state = ChannelState.CLOSED
                return

            if time.monotonic() - self._opened_at >= self.heartbeat_seconds:
                self.reconnect_attempts = 0
            self.reconnect_attempts += 1
            self._ws = None
            logger.warning("Relay connection lost (code=%s); reconnecting", code)
            if not await self._wait_before_retry():
                return
            if not await self._open_with_retry():
                return

    async def _pump(self, ws: Any) -> int | None:
        """Run writer and heartbeat until the reader sees the connection close."""
        writer = asyncio.create_task(self._writer(ws), name="transport-writer")
        heartbeat = asyncio.create_task(self._heartbeat(ws), name="transport-heartbeat")
        try:
            await self._reader(ws)
        finally:
            writer.cancel()
            heartbeat.cancel()
            await asyncio.gather(writer, heartbeat, return_exceptions=True)
        return getattr(ws, "close_code", None)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _send_frame(self, ws: Any, chunk: AudioChunk) -> None:
        if self.payload_mode == PayloadMode.BASE64:
            frame: str | bytes = audio_data_message(chunk.data, chunk.sequence, self.audio_format.encoding)
        else:
            frame = chunk.data
        try:
            await ws.send(frame)
        except (ConnectionClosed, OSError) as exc:
            raise SendError(f"chunk {chunk.sequence}: {exc}") from exc
        self.sent_chunks += 1
        self.last_activity = time.monotonic()

    async def _writer(self, ws: Any) -> None:
        while True:
            await self._pending.wait()
            self._pending.clear()
            while self._queue:
                chunk = self._queue.popleft()
                try:
                    await self._send_frame(ws, chunk)
                except SendError as exc:
                    self.dropped_chunks += 1
                    logger.debug("Relay write failed: %s", exc)
                    return

    async def _reader(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self.last_activity = time.monotonic()
                if isinstance(raw, bytes):
                    continue
                message = parse_message(raw)
                if message is None:
                    continue
                kind = message.get("type")
                if kind == MessageType.HEARTBEAT_ACK.value:
                    self.heartbeat_acks += 1
                elif kind == MessageType.METADATA_ACK.value:
                    logger.debug("Relay handshake acknowledged: %s", message)
        except ConnectionClosed as exc:
            logger.debug("Relay reader stopped: %s", exc)

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                await ws.send(heartbeat_message())
            except (ConnectionClosed, OSError) as exc:
                logger.debug("Heartbeat failed: %s", exc)
                return
            # A connection that survived a full interval is healthy again
            self.reconnect_attempts = 0
