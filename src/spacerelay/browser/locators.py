"""Ordered element-discovery strategies.

A ``Locator`` tries to find and click one target on the page, calling a
``verify`` coroutine after every click; the first click that verifies
ends the attempt. A ``LocatorChain`` runs locators in order and records
every ``LocatorAttempt`` so that an exhausted chain can report exactly
what was tried.

The same chain drives the room playback control (verify = "audio became
available") and the login buttons (verify = accept the first click).
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from playwright.async_api import Error as PlaywrightError

from spacerelay.browser.scripts import LARGEST_INTERACTIVE_JS, TEXT_CANDIDATES_JS

logger = logging.getLogger(__name__)

Verify = Callable[[], Awaitable[bool]]

_DEFAULT_VIEWPORT = {"width": 1280, "height": 720}


class ClickMode(str, Enum):
    """How a click is delivered to the target."""

    PLAIN = "plain"
    FORCE = "force"
    SCRIPT = "script"
    MOUSE = "mouse"


@dataclass
class LocatorAttempt:
    """One candidate tried by a locator."""

    strategy: str
    target: str
    mode: str = ""
    clicked: bool = False
    verified: bool = False
    error: str = ""

    def describe(self) -> str:
        status = "ok" if self.verified else (self.error or ("clicked" if self.clicked else "skipped"))
        return f"{self.strategy}:{self.target}[{self.mode or '-'}] {status}"


@dataclass
class LocatorResult:
    """Outcome of a locator or chain run."""

    success: bool
    strategy: str = ""
    target: str = ""
    attempts: list[LocatorAttempt] = field(default_factory=list)

    @property
    def last_attempt(self) -> LocatorAttempt | None:
        return self.attempts[-1] if self.attempts else None


async def accept_first_click() -> bool:
    """Verify callback that treats any delivered click as success."""
    return True


class Locator(abc.ABC):
    """One element-discovery strategy.

    Args:
        settle_ms: Wait after each click before calling ``verify``.
    """

    strategy: str = ""

    def __init__(self, *, settle_ms: int = 0) -> None:
        self.settle_ms = settle_ms

    @abc.abstractmethod
    async def attempt(self, page: Any, verify: Verify) -> LocatorResult:
        """Find and click candidates until one verifies."""

    async def _settle_and_verify(self, page: Any, verify: Verify) -> bool:
        if self.settle_ms:
            await page.wait_for_timeout(self.settle_ms)
        return await verify()

    async def _click_points(
        self,
        page: Any,
        verify: Verify,
        points: Sequence[tuple[str, float, float]],
    ) -> LocatorResult:
        """Mouse-click each ``(label, x, y)`` in order until one verifies."""
        attempts: list[LocatorAttempt] = []
        for label, x, y in points:
            record = LocatorAttempt(self.strategy, label, ClickMode.MOUSE.value)
            attempts.append(record)
            try:
                await page.mouse.click(x, y)
            except PlaywrightError as exc:
                record.error = str(exc)
                continue
            record.clicked = True
            record.verified = await self._settle_and_verify(page, verify)
            if record.verified:
                return LocatorResult(True, self.strategy, label, attempts)
        return LocatorResult(False, self.strategy, attempts=attempts)


class AttributeLocator(Locator):
    """Semantic selectors, each clicked plain, then forced, then by script.

    Args:
        selectors: Ordered CSS/Playwright selectors.
        timeout_ms: Per-candidate visibility and click timeout.
        click_modes: Escalation order for each matching element.
    """

    strategy = "attribute"

    def __init__(
        self,
        selectors: Sequence[str],
        *,
        timeout_ms: int = 5_000,
        click_modes: Sequence[ClickMode] = (ClickMode.PLAIN, ClickMode.FORCE, ClickMode.SCRIPT),
        settle_ms: int = 0,
    ) -> None:
        super().__init__(settle_ms=settle_ms)
        self.selectors = list(selectors)
        self.timeout_ms = timeout_ms
        self.click_modes = list(click_modes)

    async def attempt(self, page: Any, verify: Verify) -> LocatorResult:
        attempts: list[LocatorAttempt] = []
        for selector in self.selectors:
            element = page.locator(selector).first
            try:
                if await element.count() == 0:
                    attempts.append(LocatorAttempt(self.strategy, selector, error="not found"))
                    continue
                await element.wait_for(state="visible", timeout=self.timeout_ms)
            except PlaywrightError as exc:
                attempts.append(LocatorAttempt(self.strategy, selector, error=f"not visible: {exc}"))
                continue

            for mode in self.click_modes:
                record = LocatorAttempt(self.strategy, selector, mode.value)
                attempts.append(record)
                try:
                    await self._click(element, mode)
                except PlaywrightError as exc:
                    record.error = str(exc)
                    logger.debug("%s click on %s failed: %s", mode.value, selector, exc)
                    continue
                record.clicked = True
                record.verified = await self._settle_and_verify(page, verify)
                if record.verified:
                    return LocatorResult(True, self.strategy, selector, attempts)
        return LocatorResult(False, self.strategy, attempts=attempts)

    async def _click(self, element: Any, mode: ClickMode) -> None:
        if mode == ClickMode.PLAIN:
            await element.click(timeout=self.timeout_ms)
        elif mode == ClickMode.FORCE:
            await element.click(timeout=self.timeout_ms, force=True)
        else:
            await element.dispatch_event("click")


class TextMatchLocator(Locator):
    """Interactive elements whose text matches a phrase, largest first."""

    strategy = "text"

    def __init__(self, phrases: Sequence[str], *, max_candidates: int = 10, settle_ms: int = 0) -> None:
        super().__init__(settle_ms=settle_ms)
        self.phrases = list(phrases)
        self.max_candidates = max_candidates

    async def attempt(self, page: Any, verify: Verify) -> LocatorResult:
        candidates = await page.evaluate(TEXT_CANDIDATES_JS, self.phrases) or []
        # sorted() is stable: equal areas keep document order
        ranked = sorted(candidates, key=lambda c: c.get("area", 0), reverse=True)[: self.max_candidates]
        if not ranked:
            return LocatorResult(
                False,
                self.strategy,
                attempts=[LocatorAttempt(self.strategy, "|".join(self.phrases), error="no matching text")],
            )
        points = [(f"{c.get('text', '')!r}", c["x"], c["y"]) for c in ranked]
        return await self._click_points(page, verify, points)


class LargestVisibleLocator(Locator):
    """The single largest visible interactive element."""

    strategy = "largest"

    async def attempt(self, page: Any, verify: Verify) -> LocatorResult:
        best = await page.evaluate(LARGEST_INTERACTIVE_JS)
        if not best:
            return LocatorResult(
                False,
                self.strategy,
                attempts=[LocatorAttempt(self.strategy, "", error="no visible interactive element")],
            )
        return await self._click_points(page, verify, [(f"{best.get('text', '')!r}", best["x"], best["y"])])


class CoordinateLocator(Locator):
    """Fixed proportional viewport positions, e.g. ``(0.5, 0.5)`` for the centre."""

    strategy = "coordinate"

    def __init__(self, coordinates: Sequence[tuple[float, float]], *, settle_ms: int = 0) -> None:
        super().__init__(settle_ms=settle_ms)
        self.coordinates = [tuple(c) for c in coordinates]

    async def attempt(self, page: Any, verify: Verify) -> LocatorResult:
        viewport = page.viewport_size or _DEFAULT_VIEWPORT
        points = [
            (f"({fx:.2f},{fy:.2f})", fx * viewport["width"], fy * viewport["height"])
            for fx, fy in self.coordinates
        ]
        return await self._click_points(page, verify, points)


class LocatorChain:
    """Run locators in order until one verifies.

    Args:
        locators: Strategies, most specific first.
        name: Label used in logs (``playback``, ``next``, ``login``).
    """

    def __init__(self, locators: Sequence[Locator], name: str = "") -> None:
        self.locators = list(locators)
        self.name = name

    @property
    def strategies(self) -> list[str]:
        return [loc.strategy for loc in self.locators]

    async def run(self, page: Any, verify: Verify) -> LocatorResult:
        attempts: list[LocatorAttempt] = []
        for locator in self.locators:
            try:
                result = await locator.attempt(page, verify)
            except PlaywrightError as exc:
                logger.debug("[%s] %s strategy errored: %s", self.name, locator.strategy, exc)
                attempts.append(LocatorAttempt(locator.strategy, "", error=str(exc)))
                continue
            attempts.extend(result.attempts)
            if result.success:
                logger.info("[%s] succeeded with %s strategy (%s)", self.name, result.strategy, result.target)
                return LocatorResult(True, result.strategy, result.target, attempts)
            logger.debug("[%s] %s strategy exhausted", self.name, locator.strategy)
        logger.warning("[%s] all strategies exhausted after %d attempts", self.name, len(attempts))
        return LocatorResult(False, attempts=attempts)


def build_locator_chain(
    strategies: Sequence[str],
    *,
    selectors: Sequence[str] = (),
    phrases: Sequence[str] = (),
    coordinates: Sequence[tuple[float, float]] = (),
    timeout_ms: int = 5_000,
    settle_ms: int = 0,
    name: str = "",
) -> LocatorChain:
    """Build a chain from strategy names (``attribute``, ``text``, ``largest``, ``coordinate``).

    Strategies without inputs (e.g. ``text`` with no phrases) are skipped.

    Raises:
        ValueError: For an unknown strategy name.
    """
    locators: list[Locator] = []
    for strategy in strategies:
        if strategy == AttributeLocator.strategy:
            if selectors:
                locators.append(AttributeLocator(selectors, timeout_ms=timeout_ms, settle_ms=settle_ms))
        elif strategy == TextMatchLocator.strategy:
            if phrases:
                locators.append(TextMatchLocator(phrases, settle_ms=settle_ms))
        elif strategy == LargestVisibleLocator.strategy:
            locators.append(LargestVisibleLocator(settle_ms=settle_ms))
        elif strategy == CoordinateLocator.strategy:
            if coordinates:
                locators.append(CoordinateLocator(coordinates, settle_ms=settle_ms))
        else:
            raise ValueError(f"Unknown locator strategy {strategy!r}")
    return LocatorChain(locators, name=name)
