"""Audio source interface and the production loop shared by both sources.

A source is started for a ``Session``, produces fixed-format S16LE chunks
in order, writes each one to the session's WAV backup and hands it to the
registered callbacks. Callback failures are logged and never stop
production.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from spacerelay.audio.backup import WavBackupWriter, backup_path_for
from spacerelay.exceptions import CaptureError
from spacerelay.models.audio import CANONICAL_FORMAT, AudioChunk, AudioFormat
from spacerelay.models.session import Session

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[AudioChunk], Any]
InteractionHook = Callable[[], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[Any]]


@dataclass
class CaptureHandle:
    """Runtime state of one running capture."""

    session_id: str
    mode: str
    audio_format: AudioFormat
    backup: WavBackupWriter
    callbacks: list[ChunkCallback] = field(default_factory=list)
    task: asyncio.Task[None] | None = None
    process: Any = None
    sequence: int = 0
    dropped_buffers: int = 0
    callback_errors: int = 0
    verified: bool = False
    stopped: bool = False

    @property
    def backup_path(self) -> Path:
        return self.backup.path


class AudioSource(abc.ABC):
    """Capability interface implemented by every capture mechanism."""

    mode: str = ""

    @abc.abstractmethod
    async def start(self, session: Session) -> CaptureHandle:
        """Begin producing chunks for ``session``."""

    @abc.abstractmethod
    def on_chunk(self, handle: CaptureHandle, callback: ChunkCallback) -> None:
        """Register ``callback`` to receive every chunk, in production order."""

    @abc.abstractmethod
    async def stop(self, handle: CaptureHandle) -> Path:
        """Halt production, finalize the backup and return its path."""


class BaseAudioSource(AudioSource):
    """Shared start/verify/produce/stop logic.

    Subclasses implement ``_probe`` (is audio available yet?), ``_begin``
    (acquire the capture resource), ``_produce`` (the chunk loop, calling
    ``_emit``) and ``_halt`` (release the resource).

    Args:
        audio_format: Output format; the backup and every chunk use it.
        recordings_dir: Directory for ``space-<UTC timestamp>.wav`` backups.
        start_retries: Availability checks before giving up.
        retry_wait_ms: Pause between availability checks.
        skip_verification: Continue with a warning when no audio is detected.
        interaction_hook: Awaited between checks to nudge playback.
        sleep: Coroutine used for waits.
    """

    def __init__(
        self,
        audio_format: AudioFormat = CANONICAL_FORMAT,
        *,
        recordings_dir: str | Path = "recordings",
        start_retries: int = 3,
        retry_wait_ms: int = 3_000,
        skip_verification: bool = False,
        interaction_hook: InteractionHook | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.audio_format = audio_format
        self.recordings_dir = Path(recordings_dir)
        self.start_retries = max(1, start_retries)
        self.retry_wait_ms = retry_wait_ms
        self.skip_verification = skip_verification
        self.interaction_hook = interaction_hook
        self._sleep = sleep

    # ------------------------------------------------------------------
    # AudioSource
    # ------------------------------------------------------------------

    async def start(self, session: Session) -> CaptureHandle:
        """Verify availability, acquire the resource and start production.

        Raises:
            CaptureError: No audio was detected within the retry bound and
                verification is not skipped, or the resource failed to start.
        """
        handle = CaptureHandle(
            session_id=session.session_id,
            mode=self.mode,
            audio_format=self.audio_format,
            backup=WavBackupWriter(backup_path_for(self.recordings_dir, session.started_at), self.audio_format),
        )

        handle.verified = await self._verify_with_retries(handle)
        if not handle.verified:
            if not self.skip_verification:
                raise CaptureError(f"No audio detected after {self.start_retries} attempts ({self.mode} capture)")
            logger.warning("No audio detected; continuing because audio verification is skipped")

        try:
            await self._begin(handle)
        except (OSError, RuntimeError) as exc:
            raise CaptureError(f"Failed to start {self.mode} capture: {exc}") from exc

        handle.backup.open()
        handle.task = asyncio.create_task(self._run(handle), name=f"audio-{self.mode}")
        session.capture = handle
        session.backup_path = handle.backup_path
        session.recording = True
        logger.info("Audio capture started (%s) -> %s", self.mode, handle.backup_path)
        return handle

    def on_chunk(self, handle: CaptureHandle, callback: ChunkCallback) -> None:
        handle.callbacks.append(callback)

    async def stop(self, handle: CaptureHandle) -> Path:
        if handle.stopped:
            return handle.backup_path
        handle.stopped = True

        if handle.task is not None:
            handle.task.cancel()
            await asyncio.gather(handle.task, return_exceptions=True)
        try:
            await self._halt(handle)
        finally:
            path = handle.backup.close()
        logger.info(
            "Audio capture stopped: %d chunks, %d buffers dropped, %.1fs recorded",
            handle.sequence,
            handle.dropped_buffers,
            handle.backup.duration_seconds,
        )
        return path

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _verify_with_retries(self, handle: CaptureHandle) -> bool:
        for attempt in range(1, self.start_retries + 1):
            if await self._probe(handle):
                logger.debug("Audio available on attempt %d", attempt)
                return True
            logger.info("Audio not yet available (attempt %d/%d)", attempt, self.start_retries)
            if attempt == self.start_retries:
                break
            if self.interaction_hook is not None:
                try:
                    await self.interaction_hook()
                except Exception as exc:
                    logger.warning("Playback nudge failed: %s", exc)
            await self._sleep(self.retry_wait_ms / 1000)
        return False

    async def _run(self, handle: CaptureHandle) -> None:
        try:
            await self._produce(handle)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Audio production loop failed (%s)", self.mode)

    def _emit(self, handle: CaptureHandle, data: bytes) -> AudioChunk | None:
        """Write ``data`` to the backup and fan it out to callbacks."""
        if not data:
            return None
        chunk = AudioChunk(data=data, sequence=handle.sequence)
        handle.sequence += 1
        handle.backup.write(data)
        for callback in list(handle.callbacks):
            try:
                callback(chunk)
            except Exception as exc:
                handle.callback_errors += 1
                logger.warning("Audio chunk callback %r failed: %s", callback, exc)
        return chunk

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def _probe(self, handle: CaptureHandle) -> bool: ...

    @abc.abstractmethod
    async def _begin(self, handle: CaptureHandle) -> None: ...

    @abc.abstractmethod
    async def _produce(self, handle: CaptureHandle) -> None: ...

    @abc.abstractmethod
    async def _halt(self, handle: CaptureHandle) -> None: ...
