"""Space Relay exception hierarchy."""

from __future__ import annotations


class SpaceRelayError(Exception):
    """Base exception for all Space Relay errors."""


class ConfigError(SpaceRelayError):
    """Raised when a required external input (credentials, endpoint) is missing."""


class NavigationError(SpaceRelayError):
    """Raised when a page navigation fails for a non-retryable reason.

    Attributes:
        url: The URL that could not be loaded.
        reason: Short human-readable reason (e.g. ``name not resolved``).
    """

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Navigation to {url} failed: {reason}")


class InvalidTransitionError(SpaceRelayError):
    """Raised when a session is moved to a state that is not reachable."""

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid session transition {current} -> {requested}")


class AuthError(SpaceRelayError):
    """Raised when the login flow cannot be completed.

    Attributes:
        step: The login step that failed (``identifier``, ``password``, ...).
        selector: Last selector or strategy attempted, for diagnostics.
        snapshot_path: Path of the diagnostic page snapshot, if one was taken.
    """

    def __init__(
        self,
        message: str,
        *,
        step: str = "",
        selector: str = "",
        snapshot_path: str = "",
    ) -> None:
        self.step = step
        self.selector = selector
        self.snapshot_path = snapshot_path
        super().__init__(message)


class JoinError(SpaceRelayError):
    """Raised when a room is invalid, has ended, or cannot be reached."""

    def __init__(self, room_url: str, reason: str, *, snapshot_path: str = "") -> None:
        self.room_url = room_url
        self.reason = reason
        self.snapshot_path = snapshot_path
        super().__init__(f"Cannot join {room_url}: {reason}")


class CaptureError(SpaceRelayError):
    """Raised when no audio signal can be discovered after bounded retries."""


class ConnectError(SpaceRelayError):
    """Raised when the relay endpoint cannot be reached within the retry bound."""

    def __init__(self, endpoint: str, reason: str) -> None:
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Cannot connect to {endpoint}: {reason}")


class SendError(SpaceRelayError):
    """Raised internally when a frame cannot be written to an open connection."""


class DiscoveryError(SpaceRelayError):
    """Raised when the room listing is unreachable or cannot be parsed."""
