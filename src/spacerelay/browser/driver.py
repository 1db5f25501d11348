"""Session driver: log in, open a room and start its playback.

Every element the flow needs is found through ordered, configurable
selector/phrase lists. A missing candidate is absorbed and the next one
tried; only an exhausted step raises, and the error records the step and
the last selector or strategy attempted.

Usage::

    driver = SessionDriver(settings)
    await driver.launch(session)
    ctx = await driver.authenticate(session, credentials)
    active = await driver.join_room(ctx, "https://x.com/i/spaces/1AbC/peek")
    ...
    await driver.close()
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from playwright.async_api import Error as PlaywrightError

from spacerelay.browser.launcher import close_browser, launch_browser
from spacerelay.browser.locators import LocatorChain, accept_first_click, build_locator_chain
from spacerelay.browser.navigation import resilient_goto, resilient_reload
from spacerelay.browser.scripts import UNMUTE_AND_PLAY_JS
from spacerelay.browser.signals import (
    audio_playing_signal,
    find_phrase,
    first_present,
    page_text,
    playback_signal,
)
from spacerelay.exceptions import AuthError, JoinError, NavigationError
from spacerelay.models.room import extract_room_id, normalize_room_url
from spacerelay.models.session import (
    ActiveSession,
    AuthenticatedContext,
    BrowserHandle,
    Credentials,
    Session,
    SessionState,
)
from spacerelay.monitoring.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)


def _mask_value(value: str, secret: bool = False) -> str:
    """Mask values in log output."""
    if secret:
        return "***"
    if len(value) > 3:
        return value[:3] + "***"
    return "***"


class SessionDriver:
    """Drives one browser through the login and room-join flows.

    Args:
        settings: Root ``Settings``. Defaults to ``get_settings()``.
        event_bus: Optional bus for state and strategy events.
        artifact_dir: Where diagnostic snapshots are written.
    """

    def __init__(
        self,
        settings: Any = None,
        *,
        event_bus: EventBus | None = None,
        artifact_dir: str | Path | None = None,
    ) -> None:
        if settings is None:
            from spacerelay.settings import get_settings

            settings = get_settings()
        self.settings = settings
        self.selectors = settings.selectors
        self.event_bus = event_bus
        self.artifact_dir = Path(artifact_dir or settings.session.output_dir)
        self.handle: BrowserHandle | None = None
        self.session: Session | None = None

        timing = settings.session
        self._playback_chain = build_locator_chain(
            self.selectors.playback_strategies,
            selectors=self.selectors.playback_selectors,
            phrases=self.selectors.playback_phrases,
            coordinates=self.selectors.playback_coordinates,
            timeout_ms=timing.selector_timeout_ms,
            settle_ms=timing.post_click_wait_ms,
            name="playback",
        )
        self._next_chain = build_locator_chain(
            ["attribute", "text"],
            selectors=self.selectors.next_buttons,
            phrases=self.selectors.next_phrases,
            timeout_ms=timing.selector_timeout_ms,
            name="next",
        )
        self._login_chain = build_locator_chain(
            ["attribute", "text"],
            selectors=self.selectors.login_buttons,
            phrases=self.selectors.login_phrases,
            timeout_ms=timing.selector_timeout_ms,
            name="login",
        )

    @property
    def playback_chain(self) -> LocatorChain:
        return self._playback_chain

    # ------------------------------------------------------------------
    # Browser lifecycle
    # ------------------------------------------------------------------

    async def launch(self, session: Session) -> BrowserHandle:
        """Launch the browser for ``session`` and record the handle on it."""
        self.session = session
        self.handle = await launch_browser(self.settings)
        session.browser = self.handle
        return self.handle

    def attach(self, session: Session, handle: BrowserHandle) -> None:
        """Adopt an already-open browser handle (used by tests and embedding)."""
        self.session = session
        self.handle = handle
        session.browser = handle

    async def close(self) -> None:
        """Close context, browser and Playwright."""
        if self.handle is None:
            return
        handle, self.handle = self.handle, None
        await close_browser(handle)
        if self.session is not None:
            self.session.browser = None

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(self, session: Session, credentials: Credentials | None) -> AuthenticatedContext:
        """Log in with ``credentials``.

        Raises:
            AuthError: Missing credentials, an exhausted step, a known
                failure message, or no positive post-login signal.
        """
        self.session = session
        if credentials is None or not credentials.identifier or not credentials.secret.get_secret_value():
            raise AuthError("Platform credentials are missing", step="credentials")
        if self.handle is None:
            raise AuthError("Browser is not launched", step="launch")

        page = self.handle.page
        timing = self.settings.session
        await self._transition(SessionState.AUTHENTICATING)

        login_url = self.settings.platform.login_url
        try:
            await resilient_goto(page, login_url, timeout_ms=self.settings.browser.timeout_ms, wait_until="domcontentloaded")
        except (NavigationError, PlaywrightError) as exc:
            raise await self._auth_error(page, f"Cannot open login page: {exc}", "navigate", login_url) from exc
        await page.wait_for_timeout(timing.settle_ms)

        # Identifier
        await self._fill_step(page, "identifier", self.selectors.username_fields, credentials.identifier, last_resort="input")
        await self._click_step(page, "next", self._next_chain)
        await page.wait_for_timeout(timing.settle_ms)

        # Optional identity verification, completed at most once
        if await self._needs_verification(page):
            logger.info("Identity verification requested")
            await self._transition(SessionState.IDENTITY_VERIFICATION)
            await self._fill_step(page, "verification", self.selectors.verification_fields, credentials.verification_value)
            await self._click_step(page, "verification_next", self._next_chain)
            await page.wait_for_timeout(timing.settle_ms)
            await self._transition(SessionState.AUTHENTICATING)

        # Secret
        await self._fill_step(
            page, "password", self.selectors.password_fields, credentials.secret.get_secret_value(), secret=True
        )
        await self._click_step(page, "login", self._login_chain)
        await page.wait_for_timeout(timing.post_login_wait_ms)

        # Verify
        failure = find_phrase(await page_text(page), self.selectors.login_failure_phrases)
        if failure:
            raise await self._auth_error(page, f"Login rejected: {failure!r}", "verify", failure)

        marker = await first_present(page, self.selectors.login_success_markers)
        left_login = self.settings.platform.login_path_marker not in (page.url or "")
        if not marker and not left_login:
            raise await self._auth_error(page, "No post-login signal observed", "verify", page.url or "")

        logger.info("Logged in as %s (signal=%s)", _mask_value(credentials.identifier), marker or "url")
        await self._transition(SessionState.AUTHENTICATED)
        return AuthenticatedContext(handle=self.handle, identifier=credentials.identifier)

    async def _needs_verification(self, page: Any) -> bool:
        # Phrases only: the verification input shares selectors with the identifier field
        return find_phrase(await page_text(page), self.selectors.verification_phrases) is not None

    async def _find_field(self, page: Any, selectors: list[str], last_resort: str = "") -> tuple[Any, str] | None:
        timeout = self.settings.session.selector_timeout_ms
        for selector in selectors:
            field = page.locator(selector).first
            try:
                await field.wait_for(state="visible", timeout=timeout)
            except PlaywrightError:
                logger.debug("Field selector %s not visible", selector)
                continue
            return field, selector
        if last_resort:
            field = page.locator(last_resort).first
            try:
                if await field.count() > 0:
                    logger.info("Falling back to first %r element", last_resort)
                    return field, last_resort
            except PlaywrightError as exc:
                logger.debug("Last-resort lookup failed: %s", exc)
        return None

    async def _fill_step(
        self,
        page: Any,
        step: str,
        selectors: list[str],
        value: str,
        *,
        secret: bool = False,
        last_resort: str = "",
    ) -> None:
        found = await self._find_field(page, selectors, last_resort=last_resort)
        if found is None:
            raise await self._auth_error(page, f"No {step} field found", step, selectors[-1] if selectors else "")
        field, selector = found
        try:
            await field.click()
            await field.fill("")
            await field.press_sequentially(value, delay=self.settings.session.type_delay_ms)
        except PlaywrightError as exc:
            raise await self._auth_error(page, f"Cannot type into {step} field: {exc}", step, selector) from exc
        logger.info("Typed %r into %s field (%s)", _mask_value(value, secret), step, selector)

    async def _click_step(self, page: Any, step: str, chain: LocatorChain) -> None:
        result = await chain.run(page, accept_first_click)
        if not result.success:
            last = result.last_attempt
            raise await self._auth_error(
                page,
                f"No {step} button could be clicked",
                step,
                last.describe() if last else "",
            )

    async def _auth_error(self, page: Any, message: str, step: str, selector: str) -> AuthError:
        snapshot = await self.snapshot(page, f"auth-{step}")
        logger.error("Authentication failed at %s: %s", step, message)
        return AuthError(message, step=step, selector=selector, snapshot_path=str(snapshot or ""))

    # ------------------------------------------------------------------
    # Room join
    # ------------------------------------------------------------------

    async def join_room(self, context: AuthenticatedContext, room_url: str) -> ActiveSession:
        """Open ``room_url`` and start playback.

        Returns an ``ActiveSession`` even when no playback signal was seen
        (``audio_detected=False``); the caller decides whether to continue.

        Raises:
            JoinError: Invalid URL, navigation failure, or the room has ended
                or is unavailable.
        """
        platform = self.settings.platform
        url = normalize_room_url(room_url, **platform.url_rules)
        if not extract_room_id(url):
            raise JoinError(room_url, "not a room URL")

        page = context.page
        timing = self.settings.session
        await self._transition(SessionState.JOINING_ROOM)
        if self.session is not None:
            self.session.room_url = url

        logger.info("Opening room %s", url)
        try:
            await resilient_goto(page, url, timeout_ms=self.settings.browser.timeout_ms, wait_until="domcontentloaded")
        except (NavigationError, PlaywrightError) as exc:
            raise await self._join_error(page, url, f"navigation failed: {exc}") from exc
        await page.wait_for_timeout(timing.settle_ms)

        text = await page_text(page)
        if find_phrase(text, self.selectors.rate_limit_phrases):
            logger.warning("Rate limited; waiting %d ms before one reload", timing.rate_limit_wait_ms)
            await page.wait_for_timeout(timing.rate_limit_wait_ms)
            try:
                await resilient_reload(page, timeout_ms=self.settings.browser.timeout_ms, wait_until="domcontentloaded")
            except (NavigationError, PlaywrightError) as exc:
                raise await self._join_error(page, url, f"reload after rate limit failed: {exc}") from exc
            await page.wait_for_timeout(timing.settle_ms)
            text = await page_text(page)

        negative = find_phrase(text, self.selectors.room_negative_phrases)
        if negative:
            raise await self._join_error(page, url, f"room unavailable ({negative})")

        if await first_present(page, self.selectors.already_joined_markers):
            logger.info("Already joined; skipping playback trigger")
            signal = await playback_signal(page, self.selectors)
            active = ActiveSession(context, url, audio_detected=signal is not None, strategy="already_joined", already_joined=True)
        else:
            result = await self._playback_chain.run(page, lambda: self._has_playback(page))
            if result.success:
                active = ActiveSession(context, url, audio_detected=True, strategy=result.strategy)
            else:
                logger.warning(
                    "No playback signal after %d attempts across %s; continuing without confirmed audio",
                    len(result.attempts),
                    ", ".join(self._playback_chain.strategies),
                )
                snapshot = await self.snapshot(page, "join-no-signal")
                if snapshot and self.session is not None:
                    self.session.artifacts.append(str(snapshot))
                active = ActiveSession(context, url, audio_detected=False)

        await self._emit(
            EventType.PLAYBACK_STRATEGY,
            {"url": url, "strategy": active.strategy, "audio_detected": active.audio_detected},
        )
        await self._transition(SessionState.IN_ROOM)
        return active

    async def _has_playback(self, page: Any) -> bool:
        return await playback_signal(page, self.selectors) is not None

    async def _join_error(self, page: Any, url: str, reason: str) -> JoinError:
        snapshot = await self.snapshot(page, "join")
        logger.error("Cannot join %s: %s", url, reason)
        return JoinError(url, reason, snapshot_path=str(snapshot or ""))

    # ------------------------------------------------------------------
    # Playback helpers
    # ------------------------------------------------------------------

    async def check_audio_playing(self, context: AuthenticatedContext | ActiveSession | Any) -> bool:
        """Advisory check: True on the first positive audio signal."""
        page = getattr(context, "page", context)
        signal = await audio_playing_signal(page, self.selectors)
        if signal:
            logger.debug("Audio signal: %s", signal)
            return True
        logger.info("No audio signal detected (advisory)")
        return False

    async def nudge_playback(self, page: Any) -> bool:
        """Unmute, resume paused media and, if still silent, re-run the playback chain."""
        try:
            await page.evaluate(UNMUTE_AND_PLAY_JS, self.selectors.mute_controls)
        except PlaywrightError as exc:
            logger.debug("Unmute/play script failed: %s", exc)
        if await self._has_playback(page):
            return True
        result = await self._playback_chain.run(page, lambda: self._has_playback(page))
        return result.success

    async def snapshot(self, page: Any, label: str) -> Path | None:
        """Save a screenshot and DOM dump; returns the screenshot path or None."""
        if not self.settings.session.snapshot_on_error or page is None:
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        directory = self.artifact_dir / (self.session.session_id if self.session else "adhoc")
        base = directory / f"{label}-{stamp}"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(base.with_suffix(".png")), full_page=True)
            base.with_suffix(".html").write_text(await page.content(), encoding="utf-8")
        except (PlaywrightError, OSError) as exc:
            logger.warning("Diagnostic snapshot %s failed: %s", label, exc)
            return None
        logger.info("Diagnostic snapshot saved: %s", base.with_suffix(".png"))
        return base.with_suffix(".png")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def _transition(self, state: SessionState) -> None:
        if self.session is None:
            return
        previous = self.session.state
        self.session.transition(state)
        await self._emit(EventType.STATE_CHANGED, {"old_state": previous.value, "new_state": state.value})

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event_type, data)
