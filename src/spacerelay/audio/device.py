"""Capture from the host's default audio device with an external recorder."""

from __future__ import annotations

import asyncio
import logging
import shutil
from typing import Any

from playwright.async_api import Error as PlaywrightError

from spacerelay.audio.base import BaseAudioSource, CaptureHandle
from spacerelay.browser.scripts import MEDIA_STATE_JS

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = [
    "sox", "-q", "-d", "-t", "raw", "-r", "{rate}", "-b", "{bits}",
    "-c", "{channels}", "-e", "signed-integer", "-L", "-",
]


class DeviceAudioSource(BaseAudioSource):
    """Reads raw S16LE from a recorder subprocess's stdout.

    Used when the browser plays through a real output device (headed
    session with a display). The recorder command is a list of arguments;
    ``{rate}``, ``{bits}`` and ``{channels}`` are filled from the format.

    Args:
        command: Recorder argv template.
        chunk_bytes: Size of each chunk read from the recorder.
        page: Optional room page, consulted to confirm media is present.
    """

    mode = "device"

    def __init__(
        self,
        *args: Any,
        command: list[str] | None = None,
        chunk_bytes: int = 4096,
        page: Any = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.command_template = list(command or DEFAULT_COMMAND)
        # Whole samples only
        self.chunk_bytes = max(2, chunk_bytes - chunk_bytes % 2)
        self.page = page

    @property
    def command(self) -> list[str]:
        fmt = self.audio_format
        return [
            part.format(rate=fmt.sample_rate, bits=fmt.bits_per_sample, channels=fmt.channels)
            for part in self.command_template
        ]

    async def _probe(self, handle: CaptureHandle) -> bool:
        if shutil.which(self.command[0]) is None:
            logger.warning("Recorder %r not found on PATH", self.command[0])
            return False
        if self.page is None:
            return True
        try:
            state = await self.page.evaluate(MEDIA_STATE_JS)
        except PlaywrightError as exc:
            logger.debug("Media probe failed: %s", exc)
            return False
        return bool(state and (state.get("playing") or state.get("media")))

    async def _begin(self, handle: CaptureHandle) -> None:
        logger.debug("Spawning recorder: %s", " ".join(self.command))
        handle.process = await asyncio.create_subprocess_exec(
            *self.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def _produce(self, handle: CaptureHandle) -> None:
        stdout = handle.process.stdout
        while True:
            try:
                data = await stdout.readexactly(self.chunk_bytes)
            except asyncio.IncompleteReadError as exc:
                data = exc.partial[: len(exc.partial) - len(exc.partial) % 2]
                self._emit(handle, data)
                break
            self._emit(handle, data)

        code = await handle.process.wait()
        if not handle.stopped:
            stderr = b""
            if handle.process.stderr is not None:
                stderr = await handle.process.stderr.read()
            logger.error("Recorder exited early (code=%s): %s", code, stderr.decode(errors="replace").strip())

    async def _halt(self, handle: CaptureHandle) -> None:
        proc = handle.process
        if proc is None or proc.returncode is not None:
            return
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=5)
        except TimeoutError:
            logger.warning("Recorder did not exit after SIGTERM; killing")
            proc.kill()
            await proc.wait()
