"""Capture several rooms at once, one child process per room.

Each room gets its own relay endpoint: an explicit endpoint when one was
given for its position, otherwise ``endpoint_base`` with the 1-based room
index appended, otherwise a local sink on ``base_port + index``. Local
endpoints can be served by a ``spacerelay sink serve`` child started
alongside the capture.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

Spawner = Callable[..., Awaitable[Any]]

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


@dataclass
class CaptureTarget:
    """One room in a multi-room run."""

    index: int
    room_url: str
    endpoint: str
    port: int

    @property
    def is_local(self) -> bool:
        return (urlsplit(self.endpoint).hostname or "") in _LOCAL_HOSTS


@dataclass
class ChildProcess:
    label: str
    command: list[str]
    process: Any = None
    returncode: int | None = None
    pid: int | None = field(default=None)


def plan_targets(
    room_urls: Sequence[str],
    *,
    endpoints: Sequence[str] = (),
    endpoint_base: str = "",
    base_port: int = 8080,
    path: str = "/audio",
) -> list[CaptureTarget]:
    """Assign an endpoint and port to every room, in order."""
    targets: list[CaptureTarget] = []
    for i, url in enumerate(room_urls):
        port = base_port + i
        if i < len(endpoints) and endpoints[i]:
            endpoint = endpoints[i]
        elif endpoint_base:
            endpoint = f"{endpoint_base}{i + 1}"
        else:
            endpoint = f"ws://localhost:{port}{path}"
        targets.append(CaptureTarget(index=i, room_url=url, endpoint=endpoint, port=port))
    return targets


def build_capture_command(
    target: CaptureTarget,
    *,
    headless: bool | None = None,
    mode: str | None = None,
    debug: bool = False,
    python: str = sys.executable,
) -> list[str]:
    """Command line of the child that captures ``target``."""
    cmd = [python, "-m", "spacerelay"]
    if debug:
        cmd.append("--debug")
    cmd += ["capture", "url", target.room_url, "--endpoint", target.endpoint]
    if mode:
        cmd += ["--mode", mode]
    if headless is not None:
        cmd.append("--headless" if headless else "--headed")
    return cmd


def build_sink_command(target: CaptureTarget, *, output_dir: str = "", python: str = sys.executable) -> list[str]:
    """Command line of a local sink serving ``target``'s port."""
    cmd = [python, "-m", "spacerelay", "sink", "serve", "--port", str(target.port)]
    if output_dir:
        cmd += ["--output-dir", output_dir]
    return cmd


class MultiCaptureRunner:
    """Spawn and supervise the capture (and optional sink) children.

    Args:
        targets: Rooms to capture, from ``plan_targets``.
        headless: Forwarded to each capture child.
        mode: Capture mode forwarded to each child.
        debug: Forward ``--debug``.
        start_local_sinks: Start a sink child for every local endpoint.
        sink_output_dir: Where local sinks write their WAV files.
        start_delay: Seconds between capture launches.
        spawn: ``asyncio.create_subprocess_exec`` compatible coroutine.
    """

    def __init__(
        self,
        targets: Sequence[CaptureTarget],
        *,
        headless: bool | None = None,
        mode: str | None = None,
        debug: bool = False,
        start_local_sinks: bool = False,
        sink_output_dir: str = "",
        start_delay: float = 5.0,
        terminate_timeout: float = 10.0,
        spawn: Spawner = asyncio.create_subprocess_exec,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.targets = list(targets)
        self.headless = headless
        self.mode = mode
        self.debug = debug
        self.start_local_sinks = start_local_sinks
        self.sink_output_dir = sink_output_dir
        self.start_delay = start_delay
        self.terminate_timeout = terminate_timeout
        self._spawn = spawn
        self._sleep = sleep
        self.captures: list[ChildProcess] = []
        self.sinks: list[ChildProcess] = []

    async def start(self) -> None:
        """Start every child. A child that cannot be spawned is logged and skipped."""
        for n, target in enumerate(self.targets):
            if self.start_local_sinks and target.is_local:
                sink = ChildProcess(f"sink-{target.port}", build_sink_command(target, output_dir=self.sink_output_dir))
                if await self._launch(sink):
                    self.sinks.append(sink)

            capture = ChildProcess(
                f"capture-{target.index + 1}",
                build_capture_command(target, headless=self.headless, mode=self.mode, debug=self.debug),
            )
            logger.info("Starting capture %d for %s -> %s", target.index + 1, target.room_url, target.endpoint)
            if await self._launch(capture):
                self.captures.append(capture)
            if n < len(self.targets) - 1 and self.start_delay:
                await self._sleep(self.start_delay)

    async def run(self, stop_event: asyncio.Event | None = None) -> dict[str, int | None]:
        """Start all children and wait until they exit or ``stop_event`` is set.

        Returns:
            Exit code per capture child label.
        """
        stop_event = stop_event or asyncio.Event()
        await self.start()
        if not self.captures:
            logger.error("No capture process could be started")
            await self.shutdown()
            return {}

        waiters = [asyncio.create_task(self._wait(child)) for child in self.captures]
        stopper = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait([stopper, asyncio.gather(*waiters)], return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            await self.shutdown()
            await asyncio.gather(*waiters, return_exceptions=True)
        return {child.label: child.returncode for child in self.captures}

    async def shutdown(self) -> None:
        """Terminate captures first, then sinks. Every child is attempted."""
        for child in [*self.captures, *self.sinks]:
            await self._terminate(child)

    async def _launch(self, child: ChildProcess) -> bool:
        try:
            child.process = await self._spawn(*child.command)
        except OSError as exc:
            logger.error("Cannot start %s: %s", child.label, exc)
            return False
        child.pid = getattr(child.process, "pid", None)
        logger.info("%s started (pid %s)", child.label, child.pid)
        return True

    async def _wait(self, child: ChildProcess) -> None:
        child.returncode = await child.process.wait()
        logger.info("%s exited with code %s", child.label, child.returncode)

    async def _terminate(self, child: ChildProcess) -> None:
        process = child.process
        if process is None or process.returncode is not None:
            return
        logger.info("Stopping %s (pid %s)", child.label, child.pid)
        try:
            process.terminate()
            child.returncode = await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
        except ProcessLookupError:
            return
        except TimeoutError:
            logger.warning("%s did not exit; killing", child.label)
            process.kill()
            child.returncode = await process.wait()
