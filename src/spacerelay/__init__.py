"""Space Relay: live audio room capture and real-time audio relay."""

from __future__ import annotations

try:
    from importlib.metadata import version

    __version__ = version("spacerelay")
except Exception:
    __version__ = "0.0.0"
