"""Unit tests for spacerelay.browser.navigation (resilient goto / reload)."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from spacerelay.browser.navigation import (
    _build_fallback_chain,
    resilient_goto,
    resilient_reload,
)
from spacerelay.exceptions import NavigationError


def _page() -> MagicMock:
    page = MagicMock()
    page.url = "https://twitter.com/i/spaces/1AbC"
    page.goto = AsyncMock()
    page.reload = AsyncMock()
    return page


# ---------------------------------------------------------------------------
# _build_fallback_chain
# ---------------------------------------------------------------------------

class TestBuildFallbackChain:
    """Tests for the internal fallback-chain builder."""

    def test_networkidle_produces_full_chain(self) -> None:
        assert _build_fallback_chain("networkidle") == [
            "networkidle",
            "load",
            "domcontentloaded",
        ]

    def test_load_skips_networkidle(self) -> None:
        assert _build_fallback_chain("load") == ["load", "domcontentloaded"]

    def test_domcontentloaded_is_terminal(self) -> None:
        assert _build_fallback_chain("domcontentloaded") == ["domcontentloaded"]

    def test_unknown_strategy_prepends_to_chain(self) -> None:
        chain = _build_fallback_chain("commit")
        assert chain[0] == "commit"
        assert "networkidle" in chain


# ---------------------------------------------------------------------------
# resilient_goto
# ---------------------------------------------------------------------------

class TestResilientGoto:
    """Tests for resilient_goto."""

    @pytest.mark.anyio
    async def test_success_on_first_try(self) -> None:
        """Returns immediately when networkidle succeeds."""
        page = _page()
        sentinel = MagicMock(name="response")
        page.goto.return_value = sentinel

        result = await resilient_goto(page, "https://example.com", timeout_ms=5000)

        assert result is sentinel
        page.goto.assert_awaited_once_with("https://example.com", wait_until="networkidle", timeout=5000)

    @pytest.mark.anyio
    async def test_fallback_to_load_on_timeout(self) -> None:
        """Falls back to 'load' when 'networkidle' times out."""
        page = _page()
        sentinel = MagicMock(name="response")
        page.goto.side_effect = [PlaywrightTimeout("timeout"), sentinel]

        result = await resilient_goto(page, "https://example.com", timeout_ms=5000)

        assert result is sentinel
        assert page.goto.await_count == 2
        page.goto.assert_any_await("https://example.com", wait_until="load", timeout=5000)

    @pytest.mark.anyio
    async def test_fallback_to_domcontentloaded(self) -> None:
        """Falls through networkidle → load → domcontentloaded."""
        page = _page()
        sentinel = MagicMock(name="response")
        page.goto.side_effect = [PlaywrightTimeout("timeout1"), PlaywrightTimeout("timeout2"), sentinel]

        result = await resilient_goto(page, "https://example.com")

        assert result is sentinel
        assert page.goto.await_count == 3

    @pytest.mark.anyio
    async def test_raises_when_all_strategies_fail(self) -> None:
        """Raises NavigationError if every strategy times out."""
        page = _page()
        page.goto.side_effect = PlaywrightTimeout("all failed")

        with pytest.raises(NavigationError, match="timed out"):
            await resilient_goto(page, "https://example.com")

        assert page.goto.await_count == 3

    @pytest.mark.anyio
    async def test_non_retryable_error_stops_immediately(self) -> None:
        page = _page()
        page.goto.side_effect = PlaywrightError("net::ERR_NAME_NOT_RESOLVED at https://nowhere.invalid")

        with pytest.raises(NavigationError) as exc_info:
            await resilient_goto(page, "https://nowhere.invalid")

        assert exc_info.value.reason == "name not resolved"
        assert page.goto.await_count == 1

    @pytest.mark.anyio
    async def test_other_errors_propagate(self) -> None:
        page = _page()
        page.goto.side_effect = PlaywrightError("Target page, context or browser has been closed")

        with pytest.raises(PlaywrightError):
            await resilient_goto(page, "https://example.com")
        assert page.goto.await_count == 1

    @pytest.mark.anyio
    async def test_custom_wait_until(self) -> None:
        """Respects a non-default wait_until preference."""
        page = _page()

        await resilient_goto(page, "https://example.com", wait_until="domcontentloaded")

        page.goto.assert_awaited_once_with("https://example.com", wait_until="domcontentloaded", timeout=30_000)


# ---------------------------------------------------------------------------
# resilient_reload
# ---------------------------------------------------------------------------

class TestResilientReload:
    """Tests for resilient_reload."""

    @pytest.mark.anyio
    async def test_success_on_first_try(self) -> None:
        page = _page()
        sentinel = MagicMock(name="response")
        page.reload.return_value = sentinel

        result = await resilient_reload(page, timeout_ms=10_000)

        assert result is sentinel
        page.reload.assert_awaited_once_with(wait_until="networkidle", timeout=10_000)

    @pytest.mark.anyio
    async def test_fallback_on_timeout(self) -> None:
        page = _page()
        sentinel = MagicMock(name="response")
        page.reload.side_effect = [PlaywrightTimeout("timeout"), sentinel]

        result = await resilient_reload(page, timeout_ms=10_000)

        assert result is sentinel
        assert page.reload.await_count == 2

    @pytest.mark.anyio
    async def test_raises_when_all_fail(self) -> None:
        page = _page()
        page.reload.side_effect = PlaywrightTimeout("all failed")

        with pytest.raises(NavigationError) as exc_info:
            await resilient_reload(page)

        assert exc_info.value.url == "https://twitter.com/i/spaces/1AbC"
        assert page.reload.await_count == 3
