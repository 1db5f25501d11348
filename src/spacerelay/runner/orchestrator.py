"""Top-level capture session orchestrator.

Coordinates discovery, login, room join, audio capture and relay for one
room and produces a ``SessionResult``. Resources are acquired in order
and always released in reverse: audio, transport, browser, infra. Every
teardown step is attempted even when an earlier one fails.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from playwright.async_api import Error as PlaywrightError
from pydantic import BaseModel, Field

from spacerelay.audio.base import AudioSource
from spacerelay.audio.factory import select_audio_source
from spacerelay.browser.driver import SessionDriver
from spacerelay.discovery.rooms import DiscoveryFilters, RoomDiscovery
from spacerelay.exceptions import ConfigError, ConnectError, JoinError, SpaceRelayError
from spacerelay.infra.provisioner import Provisioner, get_provisioner
from spacerelay.models.audio import AudioFormat
from spacerelay.models.room import Room
from spacerelay.models.session import Credentials, Session, SessionState, can_transition
from spacerelay.monitoring.event_bus import EventBus, EventType
from spacerelay.store.metadata import MetadataStore
from spacerelay.transport.channel import TransportChannel

logger = logging.getLogger(__name__)

_STATUS_INTERVAL_SECONDS = 30.0


class SessionResult(BaseModel):
    """Outcome of one capture session."""

    session_id: str
    success: bool = False
    room_url: str = ""
    final_state: str = ""
    audio_detected: bool = False
    playback_strategy: str = ""
    backup_path: str = ""
    relay_state: str = ""
    chunks_captured: int = 0
    chunks_relayed: int = 0
    chunks_dropped: int = 0
    error: str = ""
    error_type: str = ""
    snapshot_path: str = ""
    duration_seconds: float = 0.0
    teardown: list[dict[str, str]] = Field(default_factory=list)


class SessionOrchestrator:
    """Runs one capture session end to end.

    Collaborators are injectable so that tests can replace the browser,
    audio and transport layers with fakes.

    Args:
        settings: Root ``Settings``. Defaults to ``get_settings()``.
        credentials: Login credentials; read from settings when omitted.
        endpoint: Relay endpoint; read from settings when omitted.
        capture_mode: ``auto``, ``device`` or ``graph``.
        event_bus: Bus receiving lifecycle events.
        driver: Session driver (defaults to a ``SessionDriver``).
        discovery: Room discovery used when no room URL is given.
        provisioner: Infra provisioner (defaults per ``infra.provider``).
        audio_source_factory: Builds the ``AudioSource`` for the room page.
        channel_factory: Builds the ``TransportChannel``.
        metadata_store: Writes ``current-room.json``.
    """

    def __init__(
        self,
        settings: Any = None,
        *,
        credentials: Credentials | None = None,
        endpoint: str | None = None,
        capture_mode: str | None = None,
        event_bus: EventBus | None = None,
        driver: SessionDriver | None = None,
        discovery: RoomDiscovery | None = None,
        provisioner: Provisioner | None = None,
        audio_source_factory: Callable[..., AudioSource] = select_audio_source,
        channel_factory: Callable[..., TransportChannel] = TransportChannel.from_settings,
        metadata_store: MetadataStore | None = None,
    ) -> None:
        if settings is None:
            from spacerelay.settings import get_settings

            settings = get_settings()
        self.settings = settings
        self.credentials = credentials if credentials is not None else self._credentials_from_settings()
        self.endpoint = endpoint if endpoint is not None else settings.transport.endpoint
        self.capture_mode = capture_mode or settings.audio.mode
        self.event_bus = event_bus or EventBus()
        self.driver = driver or SessionDriver(settings, event_bus=self.event_bus)
        self.discovery = discovery or RoomDiscovery(settings)
        self.provisioner = provisioner or get_provisioner(settings)
        self.audio_source_factory = audio_source_factory
        self.channel_factory = channel_factory
        self.metadata_store = metadata_store or MetadataStore(settings.session.output_dir)

        self.session: Session | None = None
        self.audio_source: AudioSource | None = None

    def _credentials_from_settings(self) -> Credentials | None:
        cfg = self.settings.credentials
        if not cfg.username or not cfg.password.get_secret_value():
            return None
        return Credentials(identifier=cfg.username, secret=cfg.password, secondary_identifier=cfg.email)

    # ------------------------------------------------------------------
    # Preflight
    # ------------------------------------------------------------------

    def preflight(self) -> None:
        """Validate external inputs before anything is acquired.

        Raises:
            ConfigError: Missing credentials or a missing/malformed endpoint.
        """
        problems: list[str] = []
        if self.credentials is None:
            problems.append("platform credentials (SPACERELAY_CREDENTIALS__USERNAME / __PASSWORD)")
        if not self.endpoint:
            problems.append("relay endpoint (SPACERELAY_TRANSPORT__ENDPOINT or --endpoint)")
        elif urlsplit(self.endpoint).scheme.lower() not in ("ws", "wss"):
            problems.append(f"relay endpoint must be ws:// or wss:// (got {self.endpoint!r})")
        if problems:
            raise ConfigError("Missing or invalid configuration: " + "; ".join(problems))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        room_url: str | None = None,
        filters: DiscoveryFilters | None = None,
        stop_event: asyncio.Event | None = None,
        *,
        duration_seconds: float | None = None,
    ) -> SessionResult:
        """Capture and relay one room until stopped.

        Args:
            room_url: Room to join; the most popular room is used when omitted.
            filters: Discovery filters for the most-popular lookup.
            stop_event: Set to end the session. SIGINT/SIGTERM set it.
            duration_seconds: Optional upper bound on capture time.

        Raises:
            ConfigError: From ``preflight``; nothing has been acquired yet.
        """
        self.preflight()

        session = Session(
            room_url=room_url or "",
            endpoint=self.endpoint,
            capture_mode=self.capture_mode,
            credential_ref=self.credentials.identifier if self.credentials else "",
        )
        self.session = session
        self.event_bus.session_id = session.session_id
        result = SessionResult(session_id=session.session_id)
        started = time.monotonic()
        await self.event_bus.emit(EventType.SESSION_STARTED, {"room_url": session.room_url, "mode": self.capture_mode})

        try:
            room = await self._resolve_room(room_url, filters)
            session.room_url = room.url
            result.room_url = room.url

            session.infra = await self.provisioner.acquire(session.session_id)
            await self.driver.launch(session)
            context = await self.driver.authenticate(session, self.credentials)
            active = await self.driver.join_room(context, room.url)
            result.room_url = session.room_url = active.room_url
            result.audio_detected = active.audio_detected
            result.playback_strategy = active.strategy

            await self._start_capture(session, active.page)
            await self._start_relay(session)
            self.metadata_store.write_current_room(session, room)

            await self._wait_for_stop(session, active, stop_event, duration_seconds)
            result.success = True
        except (SpaceRelayError, PlaywrightError) as exc:
            logger.error("Session %s failed: %s", session.session_id, exc)
            session.fail(exc)
            result.error = str(exc)
            result.error_type = type(exc).__name__
            result.snapshot_path = getattr(exc, "snapshot_path", "") or await self._failure_snapshot(session)
            if result.snapshot_path:
                session.artifacts.append(result.snapshot_path)
            await self.event_bus.emit(EventType.ERROR, {"error": result.error, "type": result.error_type})
        finally:
            result.teardown = await self.teardown(session)

        self._fill_result(result, session)
        result.duration_seconds = round(time.monotonic() - started, 1)
        await self.event_bus.emit(
            EventType.SESSION_COMPLETED,
            {"success": result.success, "backup": result.backup_path, "state": result.final_state},
        )
        return result

    async def _resolve_room(self, room_url: str | None, filters: DiscoveryFilters | None) -> Room:
        if room_url:
            try:
                room = Room.from_url(room_url, url_rules=self.settings.platform.url_rules)
            except ValueError as exc:
                raise JoinError(room_url, "not a room URL") from exc
            if not room.id:
                raise JoinError(room_url, "not a room URL")
            return room
        room = await self.discovery.most_popular(filters)
        await self.event_bus.emit(
            EventType.ROOM_SELECTED,
            {"url": room.url, "title": room.title, "listeners": room.listeners},
        )
        return room

    async def _start_capture(self, session: Session, page: Any) -> None:
        cfg = self.settings.audio
        source = self.audio_source_factory(
            page,
            settings=self.settings,
            mode=self.capture_mode,
            interaction_hook=lambda: self.driver.nudge_playback(page),
        )
        self.audio_source = source
        await self._transition(session, SessionState.CAPTURING)
        handle = await source.start(session)
        await self.event_bus.emit(
            EventType.CAPTURE_STARTED,
            {"mode": handle.mode, "backup": str(handle.backup_path), "verified": handle.verified},
        )
        logger.info("Capturing %d Hz / %d-bit / %d ch", cfg.sample_rate, cfg.bits_per_sample, cfg.channels)

    async def _start_relay(self, session: Session) -> None:
        cfg = self.settings.audio
        audio_format = AudioFormat(
            sample_rate=cfg.sample_rate,
            bits_per_sample=cfg.bits_per_sample,
            channels=cfg.channels,
            encoding=cfg.encoding,
        )
        channel = self.channel_factory(self.endpoint, audio_format, settings=self.settings)
        session.transport = channel
        try:
            await channel.connect()
        except ConnectError as exc:
            logger.warning("Relay unavailable, continuing with local capture only: %s", exc)

        # Wired regardless: send() refuses chunks unless the channel is open
        self.audio_source.on_chunk(session.capture, channel.send)
        if channel.is_open:
            await self._transition(session, SessionState.RELAYING)
        await self.event_bus.emit(EventType.RELAY_STATE, {"state": channel.state.value, "endpoint": self.endpoint})

    async def _wait_for_stop(
        self,
        session: Session,
        active: Any,
        stop_event: asyncio.Event | None,
        duration_seconds: float | None,
    ) -> None:
        stop_event = stop_event or asyncio.Event()
        remove_handlers = self._install_signal_handlers(stop_event)
        deadline = time.monotonic() + duration_seconds if duration_seconds else None
        try:
            while not stop_event.is_set():
                timeout = _STATUS_INTERVAL_SECONDS
                if deadline is not None:
                    timeout = min(timeout, max(0.0, deadline - time.monotonic()))
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=timeout)
                except TimeoutError:
                    pass
                if deadline is not None and time.monotonic() >= deadline:
                    logger.info("Capture duration reached")
                    break
                if not stop_event.is_set():
                    await self._log_status(session, active)
        finally:
            remove_handlers()
        logger.info("Stop requested for session %s", session.session_id)

    def _install_signal_handlers(self, stop_event: asyncio.Event) -> Callable[[], None]:
        loop = asyncio.get_running_loop()
        installed: list[int] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
                installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("Cannot install handler for %s", sig)

        def _remove() -> None:
            for sig in installed:
                loop.remove_signal_handler(sig)

        return _remove

    async def _log_status(self, session: Session, active: Any) -> None:
        playing = await self.driver.check_audio_playing(active)
        channel = session.transport
        snapshot = self.event_bus.get_snapshot()
        logger.info(
            "Status: state=%s uptime=%.0fs audio=%s chunks=%d relay=%s sent=%d dropped=%d",
            snapshot["state"],
            snapshot["uptime_sec"],
            "yes" if playing else "unconfirmed",
            session.capture.sequence if session.capture else 0,
            channel.state.value if channel else "-",
            channel.sent_chunks if channel else 0,
            channel.dropped_chunks if channel else 0,
        )

    async def _transition(self, session: Session, state: SessionState) -> None:
        previous = session.state
        session.transition(state)
        await self.event_bus.emit(EventType.STATE_CHANGED, {"old_state": previous.value, "new_state": state.value})

    async def _failure_snapshot(self, session: Session) -> str:
        if session.browser is None:
            return ""
        path = await self.driver.snapshot(session.browser.page, "failure")
        return str(path or "")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self, session: Session) -> list[dict[str, str]]:
        """Release everything the session holds: audio, transport, browser, infra.

        Every step is attempted; failures are logged and recorded.
        """
        if can_transition(session.state, SessionState.TEARDOWN):
            await self._transition(session, SessionState.TEARDOWN)

        steps: list[tuple[str, Callable[[Session], Awaitable[None]]]] = [
            ("stop_audio", self._stop_audio),
            ("close_transport", self._close_transport),
            ("close_browser", self._close_browser),
            ("release_infra", self._release_infra),
        ]
        outcome: list[dict[str, str]] = []
        for name, step in steps:
            try:
                await step(session)
                outcome.append({"step": name, "status": "ok"})
            except Exception as exc:
                logger.error("Teardown step %s failed: %s", name, exc)
                outcome.append({"step": name, "status": "error", "error": str(exc)})

        if can_transition(session.state, SessionState.CLOSED):
            await self._transition(session, SessionState.CLOSED)
        try:
            self.metadata_store.write_current_room(session)
        except OSError as exc:
            logger.warning("Cannot write final session metadata: %s", exc)
        return outcome

    async def _stop_audio(self, session: Session) -> None:
        if session.capture is None or self.audio_source is None:
            return
        session.backup_path = Path(await self.audio_source.stop(session.capture))
        session.recording = False

    async def _close_transport(self, session: Session) -> None:
        if session.transport is not None:
            await session.transport.close()

    async def _close_browser(self, session: Session) -> None:
        await self.driver.close()

    async def _release_infra(self, session: Session) -> None:
        if session.infra is None:
            return
        if self.settings.infra.keep_after_session:
            logger.info("Keeping infra %s after session", session.infra)
            return
        await self.provisioner.release(session.infra)
        session.infra = None

    def _fill_result(self, result: SessionResult, session: Session) -> None:
        result.final_state = session.state.value
        result.backup_path = str(session.backup_path or "")
        if session.capture is not None:
            result.chunks_captured = session.capture.sequence
        channel = session.transport
        if channel is not None:
            result.relay_state = channel.state.value
            result.chunks_relayed = channel.sent_chunks
            result.chunks_dropped = channel.dropped_chunks
