"""Space Relay test configuration: shared fixtures and in-memory fakes."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest
from playwright.async_api import Error as PlaywrightError


@pytest.fixture()
def anyio_backend():
    """Run ``@pytest.mark.anyio`` tests on asyncio, which the code is built on."""
    return "asyncio"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Clear the settings LRU cache between tests."""
    from spacerelay.settings.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def settings(tmp_path: Path):
    """Settings with zero waits and all output under ``tmp_path``."""
    from spacerelay.settings.config import Settings

    return Settings(
        session={
            "output_dir": str(tmp_path / "sessions"),
            "settle_ms": 0,
            "post_login_wait_ms": 0,
            "post_click_wait_ms": 0,
            "rate_limit_wait_ms": 0,
            "type_delay_ms": 0,
            "selector_timeout_ms": 10,
        },
        audio={"recordings_dir": str(tmp_path / "recordings"), "retry_wait_ms": 0},
        sink={"output_dir": str(tmp_path / "received")},
        transport={"endpoint": "ws://localhost:8080/audio"},
        credentials={"username": "listener", "password": "hunter2"},
    )


# ---------------------------------------------------------------------------
# Fake Playwright page
# ---------------------------------------------------------------------------


class FakeLocator:
    """Subset of Playwright's ``Locator`` used by the browser layer."""

    def __init__(self, page: "FakePage", selector: str) -> None:
        self.page = page
        self.selector = selector

    @property
    def first(self) -> "FakeLocator":
        return self

    async def count(self) -> int:
        return 1 if self.selector in self.page.present else 0

    async def wait_for(self, state: str = "visible", timeout: int = 0) -> None:
        if self.selector in self.page.appear_on_wait:
            self.page.present.add(self.selector)
        present = self.selector in self.page.present
        if state == "attached" and present:
            return
        if present and self.selector not in self.page.hidden:
            return
        raise PlaywrightError(f"Timeout {timeout}ms waiting for {self.selector}")

    async def click(self, timeout: int = 0, force: bool = False) -> None:
        self.page._click(self.selector, "force" if force else "plain")

    async def dispatch_event(self, event: str) -> None:
        self.page._click(self.selector, "script")

    async def fill(self, value: str) -> None:
        self.page.typed[self.selector] = value

    async def press_sequentially(self, value: str, delay: int = 0) -> None:
        self.page.typed[self.selector] = self.page.typed.get(self.selector, "") + value
        self.page.typed_order.append((self.selector, value))


class FakeMouse:
    def __init__(self, page: "FakePage") -> None:
        self.page = page
        self.clicks: list[tuple[float, float]] = []

    async def click(self, x: float, y: float) -> None:
        self.clicks.append((x, y))
        self.page._click(f"@{x:.0f},{y:.0f}", "mouse")


class FakePage:
    """In-memory stand-in for a Playwright ``Page``.

    ``present`` holds the selectors that match an element; ``hidden`` those
    that match but are not visible; ``appear_on_wait`` those that only render
    once something waits for them. ``scripts`` maps an evaluated script to a
    value or a callable receiving the script argument. ``on_click`` maps a
    selector (or ``"*"``) to a callback run after that element is clicked.
    """

    def __init__(self, url: str = "about:blank") -> None:
        self.url = url
        self.present: set[str] = set()
        self.hidden: set[str] = set()
        self.appear_on_wait: set[str] = set()
        self.body_text = ""
        self.html = "<html></html>"
        self.scripts: dict[str, Any] = {}
        self.on_click: dict[str, Callable[["FakePage", str, str], None]] = {}
        self.goto_error: BaseException | None = None
        self.viewport_size: dict[str, int] | None = {"width": 1000, "height": 800}

        self.visited: list[str] = []
        self.reloads = 0
        self.clicks: list[tuple[str, str]] = []
        self.typed: dict[str, str] = {}
        self.typed_order: list[tuple[str, str]] = []
        self.evaluated: list[tuple[str, Any]] = []
        self.waits: list[int] = []
        self.mouse = FakeMouse(self)

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def goto(self, url: str, wait_until: str = "load", timeout: int = 0) -> Any:
        self.visited.append(url)
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url
        return None

    async def reload(self, wait_until: str = "load", timeout: int = 0) -> Any:
        self.reloads += 1
        reload_hook = self.on_click.get("reload")
        if reload_hook is not None:
            reload_hook(self, "reload", "reload")
        return None

    async def wait_for_timeout(self, ms: int) -> None:
        self.waits.append(ms)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.evaluated.append((script, arg))
        value = self.scripts.get(script)
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            return value(arg)
        return value

    async def inner_text(self, selector: str) -> str:
        return self.body_text

    async def screenshot(self, path: str, full_page: bool = False) -> bytes:
        Path(path).write_bytes(b"\x89PNG fake")
        return b""

    async def content(self) -> str:
        return self.html

    def _click(self, target: str, mode: str) -> None:
        self.clicks.append((target, mode))
        hook = self.on_click.get(target) or self.on_click.get("*")
        if hook is not None:
            hook(self, target, mode)


@pytest.fixture()
def fake_page() -> FakePage:
    return FakePage()


@pytest.fixture()
def page_factory() -> Callable[..., FakePage]:
    return FakePage


@pytest.fixture()
def browser_handle(fake_page: FakePage):
    """A ``BrowserHandle`` wrapping ``fake_page``."""
    from spacerelay.models.session import BrowserHandle

    return BrowserHandle(playwright=None, browser=None, context=None, page=fake_page)


# ---------------------------------------------------------------------------
# Fake WebSocket connection
# ---------------------------------------------------------------------------


class FakeConnection:
    """Client connection double for ``TransportChannel``.

    ``drop=True`` makes the connection end abnormally (close code 1006) as
    soon as it is read; otherwise it stays open until ``close`` is called
    or ``remote_close`` simulates the peer closing.
    """

    def __init__(self, *, drop: bool = False, incoming: list[str] | None = None) -> None:
        self.drop = drop
        self.sent: list[Any] = []
        self.close_code: int | None = None
        self.close_reason = ""
        self._incoming = list(incoming or [])
        self._closed = asyncio.Event()

    async def send(self, message: Any) -> None:
        if self.close_code is not None:
            from websockets.exceptions import ConnectionClosedError

            raise ConnectionClosedError(None, None)
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_code = code
        self.close_reason = reason
        self._closed.set()

    def remote_close(self, code: int) -> None:
        self.close_code = code
        self._closed.set()

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> str:
        if self._incoming:
            return self._incoming.pop(0)
        if self.drop:
            self.close_code = 1006
            raise StopAsyncIteration
        await self._closed.wait()
        raise StopAsyncIteration


@pytest.fixture()
def connection_factory() -> Callable[..., FakeConnection]:
    return FakeConnection


async def instant_sleep(delay: float) -> None:
    """Backoff sleeper that only yields to the loop."""
    await asyncio.sleep(0)


@pytest.fixture()
def no_sleep() -> Callable[[float], Any]:
    return instant_sleep
