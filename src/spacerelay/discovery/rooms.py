"""Room discovery from a public listing surface.

Scrapes the listing page in a headless browser, turns its cards into
``Room`` objects with canonical URLs, and ranks them by listener count.
``RoomMonitor`` polls the listing and reports rooms it has not seen before.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from playwright.async_api import Error as PlaywrightError

from spacerelay.browser.launcher import open_page
from spacerelay.browser.navigation import resilient_goto
from spacerelay.browser.scripts import LISTING_ENTRIES_JS
from spacerelay.exceptions import DiscoveryError, NavigationError
from spacerelay.models.room import Room, RoomStatus, extract_room_id, normalize_room_url

logger = logging.getLogger(__name__)

PageSource = Callable[[], AbstractAsyncContextManager[Any]]
MonitorCallback = Callable[[list[Room], bool], Any]

_STATUS_WORDS: dict[str, RoomStatus] = {
    "live": RoomStatus.LIVE,
    "ended": RoomStatus.ENDED,
    "scheduled": RoomStatus.SCHEDULED,
    "upcoming": RoomStatus.SCHEDULED,
}


@dataclass
class DiscoveryFilters:
    """Listing query parameters."""

    mode: str = "top"
    language: str = "en"
    query: str = ""
    limit: int = 20

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "DiscoveryFilters":
        cfg = settings.discovery
        values = {"mode": cfg.mode, "language": cfg.language, "limit": cfg.limit}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def build_listing_url(base_url: str, filters: DiscoveryFilters) -> str:
    """Return ``<base>?lang=..&mode=..[&q=..]``."""
    params = {"lang": filters.language, "mode": filters.mode}
    if filters.query:
        params["q"] = filters.query
    return f"{base_url.rstrip('/')}/?{urlencode(params)}"


def parse_status(text: str) -> RoomStatus:
    lower = (text or "").lower()
    for word, status in _STATUS_WORDS.items():
        if word in lower:
            return status
    return RoomStatus.UNKNOWN


def parse_listing_entries(
    entries: Iterable[dict[str, Any]],
    limit: int = 0,
    url_rules: dict[str, Any] | None = None,
) -> list[Room]:
    """Convert raw listing entries into rooms.

    Entries without a room URL are dropped, URLs are canonicalized with
    ``url_rules`` and duplicate rooms keep their first occurrence.
    """
    rooms: list[Room] = []
    seen: set[str] = set()
    for entry in entries or []:
        url = normalize_room_url(str(entry.get("url") or ""), **(url_rules or {}))
        room_id = extract_room_id(url)
        if not room_id or room_id in seen:
            continue
        seen.add(room_id)
        rooms.append(
            Room.from_url(
                url,
                url_rules=url_rules,
                id=room_id,
                title=str(entry.get("title") or "Untitled Space"),
                host=str(entry.get("host") or "Unknown Host"),
                listeners=entry.get("listeners"),
                status=parse_status(str(entry.get("status") or "")),
            )
        )
        if limit and len(rooms) >= limit:
            break
    return rooms


def rank_by_listeners(rooms: Iterable[Room]) -> list[Room]:
    """Sort by listeners, highest first. Ties keep their input order."""
    return sorted(rooms, key=lambda room: room.listeners, reverse=True)


class RoomDiscovery:
    """Find live rooms on the listing surface.

    Args:
        settings: Root ``Settings``. Defaults to ``get_settings()``.
        page_source: Factory returning an async context manager that yields
            a page. Defaults to a fresh headless browser per call.
    """

    def __init__(self, settings: Any = None, *, page_source: PageSource | None = None) -> None:
        if settings is None:
            from spacerelay.settings import get_settings

            settings = get_settings()
        self.settings = settings
        self._page_source = page_source or (lambda: open_page(self.settings))

    def default_filters(self, **overrides: Any) -> DiscoveryFilters:
        return DiscoveryFilters.from_settings(self.settings, **overrides)

    async def discover(self, filters: DiscoveryFilters | None = None) -> list[Room]:
        """Scrape the listing and return its rooms in listing order.

        Raises:
            DiscoveryError: Listing unreachable, no known container, or no
                entry with a valid room URL.
        """
        filters = filters or self.default_filters()
        cfg = self.settings.discovery
        url = build_listing_url(cfg.listing_url, filters)
        logger.info("Discovering rooms (mode=%s, query=%r, lang=%s)", filters.mode, filters.query, filters.language)

        async with self._page_source() as page:
            try:
                await resilient_goto(page, url, timeout_ms=self.settings.browser.timeout_ms, wait_until="domcontentloaded")
            except (NavigationError, PlaywrightError) as exc:
                raise DiscoveryError(f"Listing {url} unreachable: {exc}") from exc

            container = await self._wait_for_container(page)
            if container is None:
                raise DiscoveryError(f"No room container found on {url}")
            logger.debug("Listing container matched %s", container)

            try:
                entries = await page.evaluate(LISTING_ENTRIES_JS, cfg.card_selectors)
            except PlaywrightError as exc:
                raise DiscoveryError(f"Cannot extract listing entries: {exc}") from exc

        rooms = parse_listing_entries(entries or [], limit=filters.limit, url_rules=self.settings.platform.url_rules)
        if not rooms:
            raise DiscoveryError(f"No valid rooms found on {url}")
        logger.info("Discovered %d room(s)", len(rooms))
        return rooms

    async def most_popular(self, filters: DiscoveryFilters | None = None) -> Room:
        """Return the room with the most listeners (first in listing order on ties)."""
        ranked = rank_by_listeners(await self.discover(filters))
        if not ranked:
            raise DiscoveryError("No rooms to rank")
        top = ranked[0]
        logger.info("Most popular room: %s (%d listeners)", top.url, top.listeners)
        return top

    async def find_by_query(self, query: str, filters: DiscoveryFilters | None = None) -> list[Room]:
        """Search the listing for ``query``."""
        base = filters or self.default_filters()
        return await self.discover(
            DiscoveryFilters(mode=base.mode, language=base.language, query=query, limit=base.limit)
        )

    def monitor(
        self,
        callback: MonitorCallback,
        filters: DiscoveryFilters | None = None,
        interval: float | None = None,
    ) -> "RoomMonitor":
        """Start polling in the background. Must be called from a running loop."""
        monitor = RoomMonitor(
            self,
            callback,
            filters=filters,
            interval=self.settings.discovery.interval_seconds if interval is None else interval,
        )
        monitor.start()
        return monitor

    async def _wait_for_container(self, page: Any) -> str | None:
        cfg = self.settings.discovery
        per_selector = max(1_000, cfg.container_timeout_ms // max(1, len(cfg.container_selectors)))
        for selector in cfg.container_selectors:
            try:
                await page.locator(selector).first.wait_for(state="attached", timeout=per_selector)
            except PlaywrightError:
                continue
            return selector
        return None


class RoomMonitor:
    """Polls ``discover`` and reports rooms as they appear.

    The first successful poll is the baseline: the callback receives all
    rooms with ``is_initial=True``. Later polls call back only with rooms
    whose id was not seen before. Poll failures are logged and polling
    continues.
    """

    def __init__(
        self,
        discovery: RoomDiscovery,
        callback: MonitorCallback,
        *,
        filters: DiscoveryFilters | None = None,
        interval: float = 300.0,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.discovery = discovery
        self.callback = callback
        self.filters = filters
        self.interval = interval
        self.polls = 0
        self.errors = 0
        self._sleep = sleep
        self._seen: set[str] = set()
        self._baseline_taken = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="room-monitor")

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info("Room monitor stopped after %d poll(s)", self.polls)

    async def wait(self) -> None:
        """Wait for the polling task to finish (after ``stop``)."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def poll_once(self) -> list[Room]:
        """Run one poll and dispatch the callback. Returns the rooms reported."""
        self.polls += 1
        try:
            rooms = await self.discovery.discover(self.filters)
        except (DiscoveryError, PlaywrightError) as exc:
            self.errors += 1
            logger.warning("Room poll %d failed: %s", self.polls, exc)
            return []

        if not self._baseline_taken:
            self._baseline_taken = True
            self._seen.update(room.id or room.url for room in rooms)
            await self._dispatch(rooms, True)
            return rooms

        new_rooms = [room for room in rooms if (room.id or room.url) not in self._seen]
        self._seen.update(room.id or room.url for room in new_rooms)
        if new_rooms:
            logger.info("%d new room(s) discovered", len(new_rooms))
            await self._dispatch(new_rooms, False)
        return new_rooms

    async def _dispatch(self, rooms: list[Room], is_initial: bool) -> None:
        try:
            result = self.callback(rooms, is_initial)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Room monitor callback failed")

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await self._sleep(self.interval)
