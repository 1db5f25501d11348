"""Capture session aggregate and its lifecycle state machine."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, SecretStr

from spacerelay.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """States in the capture session workflow."""

    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    IDENTITY_VERIFICATION = "identity_verification"
    AUTHENTICATED = "authenticated"
    JOINING_ROOM = "joining_room"
    IN_ROOM = "in_room"
    CAPTURING = "capturing"
    RELAYING = "relaying"
    TEARDOWN = "teardown"
    CLOSED = "closed"
    FAILED = "failed"


# Terminal states accept no further transitions
TERMINAL_STATES = {SessionState.CLOSED}

# Normal transitions. FAILED is valid from every non-terminal state except
# TEARDOWN and FAILED itself; TEARDOWN is valid from every non-terminal state.
STATE_TRANSITIONS: dict[SessionState, list[SessionState]] = {
    SessionState.IDLE: [SessionState.AUTHENTICATING],
    SessionState.AUTHENTICATING: [SessionState.IDENTITY_VERIFICATION, SessionState.AUTHENTICATED],
    SessionState.IDENTITY_VERIFICATION: [SessionState.AUTHENTICATING],
    SessionState.AUTHENTICATED: [SessionState.JOINING_ROOM],
    SessionState.JOINING_ROOM: [SessionState.IN_ROOM],
    SessionState.IN_ROOM: [SessionState.CAPTURING],
    SessionState.CAPTURING: [SessionState.RELAYING],
    SessionState.RELAYING: [],
    SessionState.TEARDOWN: [SessionState.CLOSED],
    SessionState.FAILED: [],
    SessionState.CLOSED: [],
}


def can_transition(current: SessionState, requested: SessionState) -> bool:
    """Return True when ``requested`` is reachable from ``current``."""
    if current in TERMINAL_STATES:
        return False
    if requested == SessionState.TEARDOWN:
        return current != SessionState.TEARDOWN
    if requested == SessionState.FAILED:
        return current not in (SessionState.FAILED, SessionState.TEARDOWN)
    return requested in STATE_TRANSITIONS.get(current, [])


class Credentials(BaseModel):
    """Platform login credentials. The secret is never rendered in logs."""

    identifier: str
    secret: SecretStr
    secondary_identifier: str = ""

    @property
    def verification_value(self) -> str:
        """Value typed into the identity-verification prompt."""
        return self.secondary_identifier or self.identifier


@dataclass
class BrowserHandle:
    """Live Playwright objects owned by one session."""

    playwright: Any
    browser: Any
    context: Any
    page: Any


@dataclass
class AuthenticatedContext:
    """A browser handle whose page is logged in."""

    handle: BrowserHandle
    identifier: str
    authenticated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def page(self) -> Any:
        return self.handle.page


@dataclass
class ActiveSession:
    """A page that has joined a room.

    ``audio_detected`` is False when no playback signal was observed; the
    caller decides whether to continue.
    """

    context: AuthenticatedContext
    room_url: str
    audio_detected: bool
    strategy: str = ""
    already_joined: bool = False

    @property
    def page(self) -> Any:
        return self.context.page


@dataclass
class Session:
    """One capture run and every resource it owns.

    Runtime handles are explicit fields so that teardown can release
    exactly what was acquired.
    """

    room_url: str = ""
    endpoint: str = ""
    capture_mode: str = "auto"
    credential_ref: str = ""
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: SessionState = SessionState.IDLE
    history: list[tuple[SessionState, SessionState]] = field(default_factory=list)

    browser: BrowserHandle | None = None
    capture: Any = None
    transport: Any = None
    infra: Any = None

    backup_path: Path | None = None
    recording: bool = False
    last_error: str = ""
    artifacts: list[str] = field(default_factory=list)

    def transition(self, requested: SessionState) -> None:
        """Move to ``requested`` or raise ``InvalidTransitionError``."""
        if not can_transition(self.state, requested):
            raise InvalidTransitionError(self.state.value, requested.value)
        logger.debug("Session %s: %s -> %s", self.session_id, self.state.value, requested.value)
        self.history.append((self.state, requested))
        self.state = requested

    def fail(self, error: BaseException | str) -> None:
        """Record ``error`` and move to FAILED when that transition is allowed."""
        self.last_error = str(error)
        if can_transition(self.state, SessionState.FAILED):
            self.transition(SessionState.FAILED)

    @property
    def timestamp_slug(self) -> str:
        """UTC start time formatted for file names."""
        return self.started_at.strftime("%Y%m%dT%H%M%SZ")

    def to_dict(self) -> dict[str, Any]:
        """Serialize the persistent fields (handles are omitted)."""
        return {
            "session_id": self.session_id,
            "room_url": self.room_url,
            "endpoint": self.endpoint,
            "capture_mode": self.capture_mode,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "backup_path": str(self.backup_path) if self.backup_path else "",
            "recording": self.recording,
            "last_error": self.last_error,
            "artifacts": list(self.artifacts),
        }
