"""Unit tests for the session orchestrator, with every collaborator faked."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from pydantic import SecretStr

from spacerelay.audio.backup import WavBackupWriter
from spacerelay.audio.base import AudioSource, CaptureHandle
from spacerelay.exceptions import AuthError, ConfigError, ConnectError
from spacerelay.infra.provisioner import InfraHandle
from spacerelay.models.audio import AudioFormat
from spacerelay.models.room import Room
from spacerelay.models.session import (
    ActiveSession,
    AuthenticatedContext,
    BrowserHandle,
    Credentials,
    SessionState,
)
from spacerelay.monitoring.event_bus import EventBus, EventType, InMemorySink
from spacerelay.runner.orchestrator import SessionOrchestrator
from spacerelay.store.metadata import MetadataStore
from spacerelay.transport.channel import ChannelState

ROOM = "https://x.com/i/spaces/1OwxWzqkXAbJQ"
CANONICAL_ROOM = "https://twitter.com/i/spaces/1OwxWzqkXAbJQ"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeDriver:
    def __init__(self, *, auth_error=None, close_error=None):
        self.auth_error = auth_error
        self.close_error = close_error
        self.calls: list[str] = []
        self.session = None

    async def launch(self, session):
        self.calls.append("launch")
        self.session = session
        session.browser = BrowserHandle(playwright=None, browser=None, context=None, page="page")
        return session.browser

    async def authenticate(self, session, credentials):
        self.calls.append("authenticate")
        session.transition(SessionState.AUTHENTICATING)
        if self.auth_error is not None:
            raise self.auth_error
        session.transition(SessionState.AUTHENTICATED)
        return AuthenticatedContext(handle=session.browser, identifier=credentials.identifier)

    async def join_room(self, context, room_url):
        self.calls.append("join_room")
        self.joined_url = room_url
        self.session.transition(SessionState.JOINING_ROOM)
        self.session.transition(SessionState.IN_ROOM)
        return ActiveSession(context, room_url, audio_detected=True, strategy="attribute")

    async def check_audio_playing(self, active):
        return True

    async def nudge_playback(self, page):
        return True

    async def snapshot(self, page, label):
        return None

    async def close(self):
        self.calls.append("close")
        if self.close_error is not None:
            raise self.close_error


class FakeSource(AudioSource):
    mode = "graph"

    def __init__(self, recordings_dir: Path, *, stop_error=None):
        self.recordings_dir = recordings_dir
        self.stop_error = stop_error
        self.callbacks = []
        self.stopped = False

    async def start(self, session):
        handle = CaptureHandle(
            session_id=session.session_id,
            mode=self.mode,
            audio_format=AudioFormat(),
            backup=WavBackupWriter(self.recordings_dir / "space.wav").open(),
            verified=True,
        )
        handle.sequence = 12
        session.capture = handle
        session.backup_path = handle.backup_path
        return handle

    def on_chunk(self, handle, callback):
        self.callbacks.append(callback)

    async def stop(self, handle):
        self.stopped = True
        if self.stop_error is not None:
            raise self.stop_error
        return handle.backup.close()


class FakeChannel:
    def __init__(self, endpoint, *, connect_error=None):
        self.endpoint = endpoint
        self.connect_error = connect_error
        self.state = ChannelState.CLOSED
        self.sent_chunks = 10
        self.dropped_chunks = 2
        self.closed = False

    @property
    def is_open(self):
        return self.state == ChannelState.OPEN

    async def connect(self):
        if self.connect_error is not None:
            self.state = ChannelState.DEGRADED
            raise self.connect_error
        self.state = ChannelState.OPEN

    def send(self, chunk):
        return self.is_open

    async def close(self):
        self.closed = True
        if self.state != ChannelState.DEGRADED:
            self.state = ChannelState.CLOSED


class FakeProvisioner:
    def __init__(self):
        self.acquired = []
        self.released = []

    async def acquire(self, session_id):
        self.acquired.append(session_id)
        return InfraHandle(provider="fake", host="test-host")

    async def release(self, handle):
        self.released.append(handle)


class FakeDiscovery:
    def __init__(self, room):
        self.room = room
        self.filters = []

    async def most_popular(self, filters=None):
        self.filters.append(filters)
        return self.room


class Harness:
    """Builds an orchestrator wired to fakes and exposes them for assertions."""

    def __init__(self, settings, tmp_path, *, driver=None, source=None, connect_error=None, **kwargs):
        self.driver = driver or FakeDriver()
        self.source = source or FakeSource(tmp_path / "recordings")
        self.provisioner = FakeProvisioner()
        self.discovery = FakeDiscovery(Room.from_url("https://x.com/i/spaces/TopRoom", listeners=900))
        self.events = InMemorySink()
        self.channels: list[FakeChannel] = []
        self.factory_calls = []
        bus = EventBus()
        bus.add_sink(self.events)

        def source_factory(page, **kw):
            self.factory_calls.append((page, kw))
            return self.source

        def channel_factory(endpoint, audio_format, settings=None):
            channel = FakeChannel(endpoint, connect_error=connect_error)
            self.channels.append(channel)
            return channel

        self.store = MetadataStore(tmp_path / "sessions")
        self.orchestrator = SessionOrchestrator(
            settings,
            event_bus=bus,
            driver=self.driver,
            discovery=self.discovery,
            provisioner=self.provisioner,
            audio_source_factory=source_factory,
            channel_factory=channel_factory,
            metadata_store=self.store,
            **kwargs,
        )

    def states(self) -> list[str]:
        return [e.data["new_state"] for e in self.events.of_type(EventType.STATE_CHANGED)]


def _stopped() -> asyncio.Event:
    event = asyncio.Event()
    event.set()
    return event


# ---------------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------------


class TestPreflight:
    @pytest.mark.anyio
    async def test_missing_credentials_acquire_nothing(self, settings, tmp_path):
        settings.credentials.username = ""
        h = Harness(settings, tmp_path)

        with pytest.raises(ConfigError, match="credentials"):
            await h.orchestrator.run(ROOM, stop_event=_stopped())

        assert h.driver.calls == []
        assert h.provisioner.acquired == []
        assert h.events.count == 0

    @pytest.mark.anyio
    async def test_missing_endpoint(self, settings, tmp_path):
        settings.transport.endpoint = ""
        h = Harness(settings, tmp_path)
        with pytest.raises(ConfigError, match="relay endpoint"):
            await h.orchestrator.run(ROOM, stop_event=_stopped())

    def test_rejects_http_endpoint(self, settings, tmp_path):
        h = Harness(settings, tmp_path, endpoint="http://localhost:8080/audio")
        with pytest.raises(ConfigError, match="ws:// or wss://"):
            h.orchestrator.preflight()

    def test_explicit_credentials_win(self, settings, tmp_path):
        settings.credentials.username = ""
        creds = Credentials(identifier="other", secret=SecretStr("pw"))
        h = Harness(settings, tmp_path, credentials=creds)
        h.orchestrator.preflight()
        assert h.orchestrator.credentials.identifier == "other"


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


class TestRun:
    @pytest.mark.anyio
    async def test_full_session(self, settings, tmp_path):
        h = Harness(settings, tmp_path)

        result = await h.orchestrator.run(ROOM, stop_event=_stopped())

        assert result.success is True
        assert result.room_url == CANONICAL_ROOM
        assert result.final_state == "closed"
        assert result.audio_detected is True
        assert result.playback_strategy == "attribute"
        assert result.chunks_captured == 12
        assert result.chunks_relayed == 10
        assert result.chunks_dropped == 2
        assert result.relay_state == "closed"
        assert result.backup_path.endswith("space.wav")
        assert h.driver.calls == ["launch", "authenticate", "join_room", "close"]
        assert h.states()[-4:] == ["capturing", "relaying", "teardown", "closed"]

    @pytest.mark.anyio
    async def test_chunks_wired_to_channel(self, settings, tmp_path):
        h = Harness(settings, tmp_path)
        await h.orchestrator.run(ROOM, stop_event=_stopped())

        (channel,) = h.channels
        assert h.source.callbacks == [channel.send]
        assert channel.endpoint == "ws://localhost:8080/audio"
        page, kwargs = h.factory_calls[0]
        assert page == "page"
        assert kwargs["mode"] == settings.audio.mode

    @pytest.mark.anyio
    async def test_teardown_releases_in_order(self, settings, tmp_path):
        h = Harness(settings, tmp_path)
        result = await h.orchestrator.run(ROOM, stop_event=_stopped())

        assert [step["step"] for step in result.teardown] == [
            "stop_audio",
            "close_transport",
            "close_browser",
            "release_infra",
        ]
        assert all(step["status"] == "ok" for step in result.teardown)
        assert h.source.stopped
        assert h.channels[0].closed
        assert len(h.provisioner.released) == 1

    @pytest.mark.anyio
    async def test_current_room_written(self, settings, tmp_path):
        h = Harness(settings, tmp_path)
        result = await h.orchestrator.run(ROOM, stop_event=_stopped())

        data = h.store.read_current_room()
        assert data["session"]["session_id"] == result.session_id
        assert data["session"]["state"] == "closed"

    @pytest.mark.anyio
    async def test_discovers_most_popular_room(self, settings, tmp_path):
        h = Harness(settings, tmp_path)

        result = await h.orchestrator.run(None, stop_event=_stopped())

        assert result.room_url == "https://twitter.com/i/spaces/TopRoom"
        (selected,) = h.events.of_type(EventType.ROOM_SELECTED)
        assert selected.data["listeners"] == 900

    @pytest.mark.anyio
    async def test_room_url_follows_platform_rules(self, settings, tmp_path):
        settings.platform.primary_domain = "x.com"
        settings.platform.alternate_domains = ["twitter.com", "mobile.x.com"]
        h = Harness(settings, tmp_path)

        result = await h.orchestrator.run("https://twitter.com/i/spaces/1OwxWzqkXAbJQ/peek", stop_event=_stopped())

        assert h.driver.joined_url == "https://x.com/i/spaces/1OwxWzqkXAbJQ"
        assert result.room_url == "https://x.com/i/spaces/1OwxWzqkXAbJQ"

    @pytest.mark.anyio
    async def test_duration_ends_session(self, settings, tmp_path):
        h = Harness(settings, tmp_path)
        result = await h.orchestrator.run(ROOM, duration_seconds=0.05)
        assert result.success is True

    @pytest.mark.anyio
    async def test_status_line_reports_current_state(self, settings, tmp_path, monkeypatch, caplog):
        monkeypatch.setattr("spacerelay.runner.orchestrator._STATUS_INTERVAL_SECONDS", 0.01)
        caplog.set_level("INFO", logger="spacerelay.runner.orchestrator")
        h = Harness(settings, tmp_path)

        await h.orchestrator.run(ROOM, duration_seconds=0.2)

        assert "Status: state=relaying uptime=" in caplog.text

    @pytest.mark.anyio
    async def test_relay_failure_is_not_fatal(self, settings, tmp_path):
        h = Harness(settings, tmp_path, connect_error=ConnectError("ws://localhost:8080/audio", "refused"))

        result = await h.orchestrator.run(ROOM, stop_event=_stopped())

        assert result.success is True
        assert result.relay_state == "degraded"
        assert "relaying" not in h.states()
        (relay,) = h.events.of_type(EventType.RELAY_STATE)
        assert relay.data["state"] == "degraded"


class TestFailures:
    @pytest.mark.anyio
    async def test_auth_failure_still_tears_down(self, settings, tmp_path):
        h = Harness(settings, tmp_path, driver=FakeDriver(auth_error=AuthError("Login rejected", step="verify")))

        result = await h.orchestrator.run(ROOM, stop_event=_stopped())

        assert result.success is False
        assert result.error_type == "AuthError"
        assert "Login rejected" in result.error
        assert (SessionState.AUTHENTICATING, SessionState.FAILED) in h.orchestrator.session.history
        assert result.final_state == "closed"
        assert h.driver.calls[-1] == "close"
        assert len(h.provisioner.released) == 1
        assert h.channels == []
        assert len(h.events.of_type(EventType.ERROR)) == 1

    @pytest.mark.anyio
    async def test_invalid_room_url(self, settings, tmp_path):
        h = Harness(settings, tmp_path)

        result = await h.orchestrator.run("https://example.com/not-a-room", stop_event=_stopped())

        assert result.error_type == "JoinError"
        assert h.provisioner.acquired == []
        assert h.driver.calls == ["close"]

    @pytest.mark.anyio
    async def test_every_teardown_step_attempted(self, settings, tmp_path):
        h = Harness(
            settings,
            tmp_path,
            driver=FakeDriver(close_error=RuntimeError("browser gone")),
            source=FakeSource(tmp_path / "recordings", stop_error=RuntimeError("device busy")),
        )

        result = await h.orchestrator.run(ROOM, stop_event=_stopped())

        statuses = {step["step"]: step["status"] for step in result.teardown}
        assert statuses == {
            "stop_audio": "error",
            "close_transport": "ok",
            "close_browser": "error",
            "release_infra": "ok",
        }
        assert result.teardown[0]["error"] == "device busy"
        assert h.channels[0].closed
        assert len(h.provisioner.released) == 1
        assert result.final_state == "closed"

    @pytest.mark.anyio
    async def test_keep_infra_after_session(self, settings, tmp_path):
        settings.infra.keep_after_session = True
        h = Harness(settings, tmp_path)
        await h.orchestrator.run(ROOM, stop_event=_stopped())
        assert h.provisioner.released == []
