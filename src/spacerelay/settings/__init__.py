"""Settings package: ``get_settings()`` returns the cached root ``Settings``."""

from spacerelay.settings.config import Settings, get_settings

__all__ = ["Settings", "get_settings"]
