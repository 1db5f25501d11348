"""Page signal checks shared by the login and join flows.

Each helper absorbs Playwright errors and reports "no signal" instead,
so a detached or navigating page never aborts a fallback sequence.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from playwright.async_api import Error as PlaywrightError

from spacerelay.browser.scripts import MEDIA_STATE_JS

logger = logging.getLogger(__name__)


async def first_present(page: Any, selectors: Sequence[str]) -> str | None:
    """Return the first selector that matches at least one element."""
    for selector in selectors:
        try:
            if await page.locator(selector).first.count() > 0:
                return selector
        except PlaywrightError as exc:
            logger.debug("Selector %s check failed: %s", selector, exc)
    return None


async def page_text(page: Any) -> str:
    """Visible body text, or ``""`` when the page cannot be read."""
    try:
        return await page.inner_text("body")
    except PlaywrightError as exc:
        logger.debug("Could not read page text: %s", exc)
        return ""


def find_phrase(text: str, phrases: Sequence[str]) -> str | None:
    """Return the first phrase contained in ``text`` (case-insensitive)."""
    lower = (text or "").lower()
    for phrase in phrases:
        if phrase.lower() in lower:
            return phrase
    return None


async def media_state(page: Any) -> dict[str, int]:
    """Counts of media elements on the page: ``media``, ``playing``, ``paused``."""
    try:
        state = await page.evaluate(MEDIA_STATE_JS)
    except PlaywrightError as exc:
        logger.debug("Media state check failed: %s", exc)
        return {"media": 0, "playing": 0, "paused": 0}
    return state or {"media": 0, "playing": 0, "paused": 0}


async def playback_signal(page: Any, selectors: Any) -> str | None:
    """Strict "audio became available" check used while joining.

    Positive when a media element exists, a pause control is shown, or the
    leave/audio controls of a joined room are present. Returns the name of
    the signal that fired.
    """
    state = await media_state(page)
    if state.get("playing"):
        return "media_playing"
    if state.get("media"):
        return "media_present"
    if await first_present(page, selectors.pause_controls):
        return "pause_control"
    if await first_present(page, selectors.already_joined_markers):
        return "room_controls"
    return None


async def audio_playing_signal(page: Any, selectors: Any) -> str | None:
    """Permissive "is audio playing" check, in decreasing order of confidence.

    Signals: playing media element, pause control, visualizer,
    speaker/host info, room membership markers.
    """
    state = await media_state(page)
    if state.get("playing"):
        return "media_playing"
    checks = (
        ("pause_control", selectors.pause_controls),
        ("visualizer", selectors.visualizers),
        ("speaker_info", selectors.speaker_markers),
        ("room_markers", selectors.room_markers),
    )
    for name, candidates in checks:
        if await first_present(page, candidates):
            return name
    return None
