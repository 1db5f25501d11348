"""Start and stop the Playwright browser for a session."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from playwright.async_api import Error as PlaywrightError, async_playwright

from spacerelay.browser.profile import apply_stealth_scripts, build_browser_profile
from spacerelay.models.session import BrowserHandle

logger = logging.getLogger(__name__)


async def launch_browser(settings: Any) -> BrowserHandle:
    """Launch Chromium with the audio profile and open one page.

    Args:
        settings: Root ``Settings``; only the ``browser`` section is read.
    """
    cfg = settings.browser
    profile = build_browser_profile(
        headless=cfg.headless,
        sandbox=cfg.sandbox,
        proxy=cfg.proxy,
        user_agent=cfg.user_agent,
        viewport_width=cfg.viewport_width,
        viewport_height=cfg.viewport_height,
        slow_mo_ms=cfg.slow_mo_ms,
    )

    pw = await async_playwright().start()
    try:
        browser = await pw.chromium.launch(**profile.launch_args)
        context = await browser.new_context(**profile.context_args)
        if cfg.apply_stealth_scripts:
            await apply_stealth_scripts(context)
        context.set_default_timeout(cfg.timeout_ms)
        page = await context.new_page()
    except PlaywrightError:
        await pw.stop()
        raise

    logger.info("Browser launched (headless=%s, muted=%s)", cfg.headless, profile.muted)
    return BrowserHandle(playwright=pw, browser=browser, context=context, page=page)


async def close_browser(handle: BrowserHandle) -> None:
    """Close context, browser and Playwright, logging rather than raising."""
    for label, closer in (
        ("context", handle.context.close),
        ("browser", handle.browser.close),
        ("playwright", handle.playwright.stop),
    ):
        try:
            await closer()
        except PlaywrightError as exc:
            logger.warning("Error closing %s: %s", label, exc)
    logger.debug("Browser closed")


@asynccontextmanager
async def open_page(settings: Any) -> AsyncIterator[Any]:
    """Yield a fresh page in its own browser, closing everything on exit."""
    handle = await launch_browser(settings)
    try:
        yield handle.page
    finally:
        await close_browser(handle)
