"""Resilient page navigation with automatic wait-strategy fallback.

Room pages keep long-lived media and analytics connections open and often
never reach ``networkidle``. This module wraps Playwright's ``page.goto``
and ``page.reload`` with a fallback chain: ``networkidle`` first, then
``load``, then ``domcontentloaded``.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeout

from spacerelay.exceptions import NavigationError

logger = logging.getLogger(__name__)

# Playwright error substrings that indicate non-retryable navigation failures.
_NON_RETRYABLE_ERRORS: tuple[str, ...] = (
    "ERR_NAME_NOT_RESOLVED",
    "ERR_CONNECTION_REFUSED",
    "ERR_CONNECTION_RESET",
    "ERR_CONNECTION_CLOSED",
    "ERR_INTERNET_DISCONNECTED",
    "ERR_SSL_PROTOCOL_ERROR",
    "ERR_CERT_AUTHORITY_INVALID",
    "ERR_ADDRESS_UNREACHABLE",
)

WaitUntil = Literal["commit", "domcontentloaded", "load", "networkidle"]

_FALLBACK_STRATEGY: list[WaitUntil] = ["networkidle", "load", "domcontentloaded"]


async def resilient_goto(
    page: Any,
    url: str,
    *,
    timeout_ms: int = 30_000,
    wait_until: WaitUntil = "networkidle",
) -> Any:
    """Navigate to *url* with automatic wait-strategy fallback.

    Args:
        page: Playwright page instance.
        url: Target URL to navigate to.
        timeout_ms: Timeout per attempt in milliseconds.
        wait_until: Preferred initial wait strategy.

    Returns:
        The Playwright ``Response`` for the main frame navigation,
        or ``None`` if the page did not produce a response.

    Raises:
        NavigationError: On a non-retryable network error, or when every
            strategy in the chain timed out.
    """

    async def _goto(strategy: WaitUntil) -> Any:
        return await page.goto(url, wait_until=strategy, timeout=timeout_ms)

    return await _with_fallback(_goto, url, wait_until, timeout_ms, "goto")


async def resilient_reload(
    page: Any,
    *,
    timeout_ms: int = 15_000,
    wait_until: WaitUntil = "networkidle",
) -> Any:
    """Reload the current page with the same fallback logic as :func:`resilient_goto`."""

    async def _reload(strategy: WaitUntil) -> Any:
        return await page.reload(wait_until=strategy, timeout=timeout_ms)

    return await _with_fallback(_reload, page.url, wait_until, timeout_ms, "reload")


async def _with_fallback(action: Any, url: str, wait_until: WaitUntil, timeout_ms: int, verb: str) -> Any:
    last_error: PlaywrightTimeout | None = None
    for strategy in _build_fallback_chain(wait_until):
        try:
            logger.debug("%s %s (wait_until=%s, timeout=%dms)", verb, url, strategy, timeout_ms)
            return await action(strategy)
        except PlaywrightError as exc:
            error_msg = str(exc)
            for pattern in _NON_RETRYABLE_ERRORS:
                if pattern in error_msg:
                    reason = pattern.replace("ERR_", "").replace("_", " ").lower()
                    logger.warning("%s %s failed (non-retryable): %s", verb, url, pattern)
                    raise NavigationError(url, reason) from exc
            if isinstance(exc, PlaywrightTimeout):
                logger.warning("%s %s timed out with wait_until=%s, trying a weaker strategy", verb, url, strategy)
                last_error = exc
            else:
                raise

    raise NavigationError(url, "timed out") from last_error


def _build_fallback_chain(preferred: WaitUntil) -> list[WaitUntil]:
    """Return the fallback chain starting from *preferred*.

    If *preferred* is in the default chain, returns from that point onward.
    Otherwise returns ``[preferred]`` followed by the full default chain.
    """
    if preferred in _FALLBACK_STRATEGY:
        idx = _FALLBACK_STRATEGY.index(preferred)
        return _FALLBACK_STRATEGY[idx:]
    return [preferred, *_FALLBACK_STRATEGY]
