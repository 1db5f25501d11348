"""Browser automation for the room session (Playwright, async API).

``driver`` runs the login and join flows on top of the ordered element
strategies in ``locators``; ``profile`` and ``launcher`` configure an
audio-friendly Chromium; ``navigation`` wraps page loads with fallbacks.
"""
