"""Audio-friendly Chromium launch profile and stealth patches.

Provides a ``BrowserProfile`` that configures Playwright's ``launch()``
and ``new_context()`` calls with:

- Autoplay without a user gesture and a fake media-permission UI
- Background timer/renderer throttling disabled, so audio keeps flowing
- Output muted in headless mode (the in-page graph still receives samples)
- Stealth patches (hide ``navigator.webdriver``, patch ``chrome.runtime``)

Usage::

    from spacerelay.browser.profile import build_browser_profile, apply_stealth_scripts

    profile = build_browser_profile(headless=True)
    browser = await pw.chromium.launch(**profile.launch_args)
    context = await browser.new_context(**profile.context_args)
    await apply_stealth_scripts(context)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

_AUDIO_ARGS: list[str] = [
    "--autoplay-policy=no-user-gesture-required",
    "--use-fake-ui-for-media-stream",
    "--enable-audio-service",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-features=IsolateOrigins,site-per-process,TranslateUI",
    "--disable-infobars",
    "--disable-breakpad",
    "--disable-extensions",
    "--disable-ipc-flooding-protection",
    "--password-store=basic",
    "--use-mock-keychain",
]

_NO_SANDBOX_ARGS: list[str] = ["--no-sandbox", "--disable-setuid-sandbox"]

# Stealth JavaScript, injected via context.add_init_script()
_STEALTH_SCRIPTS: str = """
// Remove navigator.webdriver flag
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });

// Mimic chrome.runtime (present in real Chrome)
if (!window.chrome) window.chrome = {};
if (!window.chrome.runtime) window.chrome.runtime = {};

// Patch navigator.plugins to look non-empty
Object.defineProperty(navigator, 'plugins', {
    get: () => [1, 2, 3, 4, 5],
});

// Patch navigator.languages
Object.defineProperty(navigator, 'languages', {
    get: () => ['en-US', 'en'],
});
"""


@dataclass
class BrowserProfile:
    """All Playwright launch + context arguments for a single session."""

    # Arguments for pw.chromium.launch()
    launch_args: dict[str, Any] = field(default_factory=dict)

    # Arguments for browser.new_context()
    context_args: dict[str, Any] = field(default_factory=dict)

    # Metadata for logging
    user_agent: str = ""
    viewport: dict[str, int] = field(default_factory=dict)
    proxy_url: str = ""
    muted: bool = False


def build_browser_profile(
    *,
    headless: bool = True,
    sandbox: bool = False,
    proxy: str = "",
    user_agent: str = "",
    viewport_width: int = 1280,
    viewport_height: int = 720,
    slow_mo_ms: int = 0,
) -> BrowserProfile:
    """Build a ``BrowserProfile`` for an audio capture session.

    Args:
        headless: Run Chromium headless (``--headless=new``, output muted).
        sandbox: Keep the Chromium sandbox enabled.
        proxy: Optional proxy server URL.
        user_agent: Force this user-agent (defaults to a desktop Chrome UA).
        viewport_width: Viewport width in CSS pixels.
        viewport_height: Viewport height in CSS pixels.
        slow_mo_ms: Playwright ``slow_mo`` delay between operations.

    Returns:
        A ``BrowserProfile`` ready for Playwright.
    """
    profile = BrowserProfile()

    args = list(_AUDIO_ARGS)
    args.append(f"--window-size={viewport_width},{viewport_height}")
    if not sandbox:
        args.extend(_NO_SANDBOX_ARGS)
    if headless:
        args.extend(["--mute-audio", "--headless=new"])
        profile.muted = True

    profile.launch_args = {"headless": headless, "args": args}
    if slow_mo_ms:
        profile.launch_args["slow_mo"] = slow_mo_ms
    if proxy.strip():
        profile.launch_args["proxy"] = {"server": proxy.strip()}
        profile.proxy_url = proxy.strip()
        logger.debug("Using proxy: %s", profile.proxy_url)

    profile.user_agent = user_agent or DEFAULT_USER_AGENT
    profile.viewport = {"width": viewport_width, "height": viewport_height}
    profile.context_args = {
        "user_agent": profile.user_agent,
        "viewport": profile.viewport,
        "locale": "en-US",
        "bypass_csp": True,
        "permissions": ["microphone"],
    }
    return profile


async def apply_stealth_scripts(target: Any) -> None:
    """Inject stealth JavaScript into a Playwright context or page.

    Call this **before** navigating so the scripts run in every frame
    from the start.
    """
    await target.add_init_script(_STEALTH_SCRIPTS)
    logger.debug("Stealth scripts injected")
