"""Event bus: decouples the capture pipeline from its consumers (CLI, logs, files).

* Type-safe event types via ``EventType`` enum.
* Multiple sink pattern: a single bus emits to all registered
  ``EventSink`` implementations (JSONL file, console, logger).
* Snapshot caching so a late consumer can read the latest state.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """All event types emitted during a capture session."""

    # Lifecycle
    SESSION_STARTED = "session_started"
    SESSION_COMPLETED = "session_completed"

    # State machine
    STATE_CHANGED = "state_changed"

    # Pipeline milestones
    ROOM_SELECTED = "room_selected"
    PLAYBACK_STRATEGY = "playback_strategy"
    CAPTURE_STARTED = "capture_started"
    RELAY_STATE = "relay_state"

    # Progress / info
    LOG = "log"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Event payload model
# ---------------------------------------------------------------------------


class Event(BaseModel):
    """Structured event emitted by the event bus."""

    event_type: EventType
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    session_id: str = ""
    data: dict[str, Any] = Field(default_factory=dict)

    def to_jsonl(self) -> str:
        """Serialize to a single JSON line (no trailing newline)."""
        return self.model_dump_json()


# ---------------------------------------------------------------------------
# Sink protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class EventSink(Protocol):
    """Protocol for event consumers."""

    async def handle_event(self, event: Event) -> None:
        """Process a single event."""
        ...


# ---------------------------------------------------------------------------
# Built-in sinks
# ---------------------------------------------------------------------------


class LoggingSink:
    """Emit events to the Python logger at DEBUG level."""

    def __init__(self, logger_name: str = "spacerelay.events") -> None:
        self._logger = logging.getLogger(logger_name)

    async def handle_event(self, event: Event) -> None:
        """Log the event."""
        self._logger.debug(
            "[%s] %s: %s",
            event.session_id or "?",
            event.event_type.value,
            json.dumps(event.data, default=str)[:200],
        )


class InMemorySink:
    """Collect events in a list, useful for testing."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    async def handle_event(self, event: Event) -> None:
        """Append the event to the in-memory list."""
        self.events.append(event)

    def clear(self) -> None:
        """Clear all collected events."""
        self.events.clear()

    @property
    def count(self) -> int:
        """Return the number of collected events."""
        return len(self.events)

    def of_type(self, event_type: EventType) -> list[Event]:
        return [e for e in self.events if e.event_type == event_type]


class JsonlSink:
    """Write events as JSONL lines to a file-like object.

    Works with ``sys.stdout``, ``sys.stderr``, or an open file handle.
    """

    def __init__(self, stream: Any) -> None:
        self._stream = stream

    async def handle_event(self, event: Event) -> None:
        """Write one JSON line to the stream."""
        self._stream.write(event.to_jsonl() + "\n")
        if hasattr(self._stream, "flush"):
            self._stream.flush()


class ConsoleSink:
    """Human-readable progress lines on a ``rich`` console."""

    _STYLES = {
        EventType.ERROR: "bold red",
        EventType.SESSION_COMPLETED: "bold green",
        EventType.STATE_CHANGED: "cyan",
        EventType.RELAY_STATE: "magenta",
    }

    def __init__(self, console: Any) -> None:
        self._console = console

    async def handle_event(self, event: Event) -> None:
        style = self._STYLES.get(event.event_type, "")
        summary = ", ".join(f"{k}={v}" for k, v in event.data.items() if v not in ("", None))
        line = f"{event.event_type.value} {summary}".rstrip()
        self._console.print(line, style=style or None, markup=False, highlight=False)


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


class EventBus:
    """Central event dispatcher for pipeline-to-consumer communication.

    Args:
        session_id: Optional default session ID attached to all events.
    """

    def __init__(self, session_id: str = "") -> None:
        self._session_id = session_id
        self._sinks: list[EventSink] = []

        # Snapshot for late consumers
        self._latest_state: str = ""
        self._latest_room: str = ""
        self._latest_relay: str = ""
        self._started_at: float = time.monotonic()

    @property
    def session_id(self) -> str:
        return self._session_id

    @session_id.setter
    def session_id(self, value: str) -> None:
        self._session_id = value

    # ------------------------------------------------------------------
    # Sink management
    # ------------------------------------------------------------------

    def add_sink(self, sink: EventSink) -> None:
        """Register an event sink."""
        self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        """Remove a previously registered sink."""
        self._sinks = [s for s in self._sinks if s is not sink]

    @property
    def sink_count(self) -> int:
        """Return the number of registered sinks."""
        return len(self._sinks)

    # ------------------------------------------------------------------
    # Emit
    # ------------------------------------------------------------------

    async def emit(self, event_type: EventType | str, data: dict[str, Any] | None = None) -> None:
        """Emit an event to all registered sinks.

        Args:
            event_type: The event type (``EventType`` enum or raw string).
            data: Optional payload data.
        """
        # Normalise string → enum
        if isinstance(event_type, str):
            try:
                event_type = EventType(event_type)
            except ValueError:
                event_type = EventType.LOG

        payload = data or {}
        self._update_snapshot(event_type, payload)

        event = Event(event_type=event_type, session_id=self._session_id, data=payload)

        for sink in self._sinks:
            try:
                await sink.handle_event(event)
            except Exception as exc:
                logger.warning("EventBus sink error (%s): %s", type(sink).__name__, exc)

    def _update_snapshot(self, event_type: EventType, data: dict[str, Any]) -> None:
        """Update internal snapshot cache."""
        if event_type == EventType.STATE_CHANGED:
            self._latest_state = data.get("new_state", "")
        elif event_type == EventType.ROOM_SELECTED:
            self._latest_room = data.get("url", "")
        elif event_type == EventType.RELAY_STATE:
            self._latest_relay = data.get("state", "")
        elif event_type == EventType.SESSION_STARTED:
            self._latest_state = "idle"
            self._started_at = time.monotonic()

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def get_snapshot(self) -> dict[str, Any]:
        """Return the latest known state."""
        return {
            "state": self._latest_state,
            "room": self._latest_room,
            "relay": self._latest_relay,
            "uptime_sec": round(time.monotonic() - self._started_at, 1),
        }
