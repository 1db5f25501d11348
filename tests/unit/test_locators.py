"""Unit tests for the ordered element-discovery strategies."""

from __future__ import annotations

import pytest
from playwright.async_api import Error as PlaywrightError

from spacerelay.browser.locators import (
    AttributeLocator,
    ClickMode,
    CoordinateLocator,
    LargestVisibleLocator,
    LocatorAttempt,
    LocatorChain,
    TextMatchLocator,
    accept_first_click,
    build_locator_chain,
)
from spacerelay.browser.scripts import LARGEST_INTERACTIVE_JS, TEXT_CANDIDATES_JS


async def _never() -> bool:
    return False


# ---------------------------------------------------------------------------
# AttributeLocator
# ---------------------------------------------------------------------------


class TestAttributeLocator:
    @pytest.mark.anyio
    async def test_first_present_selector_wins(self, fake_page):
        fake_page.present = {"#b", "#c"}
        result = await AttributeLocator(["#a", "#b", "#c"]).attempt(fake_page, accept_first_click)

        assert result.success
        assert result.strategy == "attribute"
        assert result.target == "#b"
        assert [a.target for a in result.attempts] == ["#a", "#b"]
        assert result.attempts[0].error == "not found"
        assert fake_page.clicks == [("#b", "plain")]

    @pytest.mark.anyio
    async def test_click_escalates_until_verified(self, fake_page):
        fake_page.present = {"#play"}

        def reject_plain(page, target, mode):
            if mode == "plain":
                raise PlaywrightError("element is not stable")

        fake_page.on_click["#play"] = reject_plain

        async def verify() -> bool:
            return fake_page.clicks[-1][1] == "script"

        result = await AttributeLocator(["#play"]).attempt(fake_page, verify)

        assert result.success
        assert [a.mode for a in result.attempts] == ["plain", "force", "script"]
        assert result.attempts[0].error
        assert result.attempts[1].clicked and not result.attempts[1].verified
        assert result.attempts[2].verified

    @pytest.mark.anyio
    async def test_hidden_element_skipped(self, fake_page):
        fake_page.present = {"#a"}
        fake_page.hidden = {"#a"}
        result = await AttributeLocator(["#a"]).attempt(fake_page, accept_first_click)

        assert not result.success
        assert result.attempts[0].error.startswith("not visible")
        assert fake_page.clicks == []

    @pytest.mark.anyio
    async def test_custom_click_modes(self, fake_page):
        fake_page.present = {"#a"}
        locator = AttributeLocator(["#a"], click_modes=[ClickMode.SCRIPT])
        result = await locator.attempt(fake_page, _never)

        assert not result.success
        assert fake_page.clicks == [("#a", "script")]

    @pytest.mark.anyio
    async def test_settle_wait_before_verify(self, fake_page):
        fake_page.present = {"#a"}
        await AttributeLocator(["#a"], settle_ms=250).attempt(fake_page, accept_first_click)
        assert fake_page.waits == [250]


# ---------------------------------------------------------------------------
# Text / largest / coordinate
# ---------------------------------------------------------------------------


class TestTextMatchLocator:
    @pytest.mark.anyio
    async def test_largest_candidate_first_and_stable_on_ties(self, fake_page):
        fake_page.scripts[TEXT_CANDIDATES_JS] = lambda phrases: [
            {"text": "small", "x": 1, "y": 1, "area": 10},
            {"text": "big", "x": 5, "y": 5, "area": 100},
            {"text": "big too", "x": 7, "y": 7, "area": 100},
        ]
        calls = []

        async def second_click_verifies() -> bool:
            calls.append(1)
            return len(calls) == 2

        result = await TextMatchLocator(["Listen"]).attempt(fake_page, second_click_verifies)

        assert result.success
        assert result.target == "'big too'"
        assert fake_page.mouse.clicks == [(5, 5), (7, 7)]

    @pytest.mark.anyio
    async def test_phrases_passed_to_page(self, fake_page):
        fake_page.scripts[TEXT_CANDIDATES_JS] = lambda phrases: []
        result = await TextMatchLocator(["Start listening", "Play"]).attempt(fake_page, accept_first_click)

        assert not result.success
        assert result.attempts[0].error == "no matching text"
        assert fake_page.evaluated[-1] == (TEXT_CANDIDATES_JS, ["Start listening", "Play"])

    @pytest.mark.anyio
    async def test_max_candidates(self, fake_page):
        fake_page.scripts[TEXT_CANDIDATES_JS] = lambda phrases: [
            {"text": str(i), "x": i, "y": i, "area": i} for i in range(20)
        ]
        result = await TextMatchLocator(["x"], max_candidates=3).attempt(fake_page, _never)
        assert len(result.attempts) == 3


class TestLargestVisibleLocator:
    @pytest.mark.anyio
    async def test_clicks_centre_of_largest(self, fake_page):
        fake_page.scripts[LARGEST_INTERACTIVE_JS] = {"text": "Play", "x": 10, "y": 20, "area": 500}
        result = await LargestVisibleLocator().attempt(fake_page, accept_first_click)

        assert result.success
        assert fake_page.mouse.clicks == [(10, 20)]

    @pytest.mark.anyio
    async def test_nothing_visible(self, fake_page):
        result = await LargestVisibleLocator().attempt(fake_page, accept_first_click)
        assert not result.success
        assert result.attempts[0].error == "no visible interactive element"


class TestCoordinateLocator:
    @pytest.mark.anyio
    async def test_proportional_positions(self, fake_page):
        locator = CoordinateLocator([(0.5, 0.5), (0.25, 0.75)])
        result = await locator.attempt(fake_page, _never)

        assert not result.success
        assert fake_page.mouse.clicks == [(500.0, 400.0), (250.0, 600.0)]

    @pytest.mark.anyio
    async def test_default_viewport(self, fake_page):
        fake_page.viewport_size = None
        await CoordinateLocator([(0.5, 0.5)]).attempt(fake_page, accept_first_click)
        assert fake_page.mouse.clicks == [(640.0, 360.0)]


# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------


class TestLocatorChain:
    @pytest.mark.anyio
    async def test_falls_through_to_later_strategy(self, fake_page):
        fake_page.scripts[LARGEST_INTERACTIVE_JS] = {"text": "Play", "x": 10, "y": 20, "area": 500}
        chain = LocatorChain(
            [AttributeLocator(["#missing"]), TextMatchLocator(["Listen"]), LargestVisibleLocator()],
            name="playback",
        )
        result = await chain.run(fake_page, accept_first_click)

        assert result.success
        assert result.strategy == "largest"
        assert [a.strategy for a in result.attempts] == ["attribute", "text", "largest"]

    @pytest.mark.anyio
    async def test_strategy_error_is_absorbed(self, fake_page):
        fake_page.scripts[TEXT_CANDIDATES_JS] = PlaywrightError("Execution context was destroyed")
        fake_page.present = {"#b"}
        chain = LocatorChain([TextMatchLocator(["Listen"]), AttributeLocator(["#b"])])
        result = await chain.run(fake_page, accept_first_click)

        assert result.success
        assert result.attempts[0].strategy == "text"
        assert "destroyed" in result.attempts[0].error

    @pytest.mark.anyio
    async def test_exhausted_chain_reports_every_attempt(self, fake_page):
        chain = LocatorChain([AttributeLocator(["#a", "#b"]), CoordinateLocator([(0.5, 0.5)])])
        result = await chain.run(fake_page, _never)

        assert not result.success
        assert len(result.attempts) == 3
        assert result.last_attempt.strategy == "coordinate"


class TestBuildLocatorChain:
    def test_order_follows_strategy_names(self):
        chain = build_locator_chain(
            ["coordinate", "attribute", "text", "largest"],
            selectors=["#a"],
            phrases=["Listen"],
            coordinates=[(0.5, 0.5)],
        )
        assert chain.strategies == ["coordinate", "attribute", "text", "largest"]

    def test_strategies_without_inputs_skipped(self):
        chain = build_locator_chain(["attribute", "text", "coordinate"], selectors=["#a"])
        assert chain.strategies == ["attribute"]

    def test_unknown_strategy(self):
        with pytest.raises(ValueError, match="Unknown locator strategy"):
            build_locator_chain(["telepathy"])


class TestLocatorAttempt:
    def test_describe(self):
        assert LocatorAttempt("attribute", "#a", "plain", clicked=True, verified=True).describe() == (
            "attribute:#a[plain] ok"
        )
        assert LocatorAttempt("text", "Listen", error="no matching text").describe() == (
            "text:Listen[-] no matching text"
        )
