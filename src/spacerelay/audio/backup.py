"""Incremental WAV backup of captured audio."""

from __future__ import annotations

import logging
import wave
from datetime import datetime, timezone
from pathlib import Path

from spacerelay.models.audio import CANONICAL_FORMAT, AudioFormat

logger = logging.getLogger(__name__)


def backup_path_for(directory: str | Path, started_at: datetime | None = None, prefix: str = "space") -> Path:
    """Return ``<directory>/<prefix>-<UTC timestamp>.wav``."""
    started_at = started_at or datetime.now(timezone.utc)
    stamp = started_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return Path(directory) / f"{prefix}-{stamp}.wav"


class WavBackupWriter:
    """Append PCM frames to a WAV file as they arrive.

    The header is rewritten by ``wave`` on close, so a file that is closed
    normally always has correct lengths.
    """

    def __init__(self, path: str | Path, audio_format: AudioFormat = CANONICAL_FORMAT) -> None:
        self.path = Path(path)
        self.audio_format = audio_format
        self.bytes_written = 0
        self._wav: wave.Wave_write | None = None

    def open(self) -> "WavBackupWriter":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        wav = wave.open(str(self.path), "wb")
        wav.setnchannels(self.audio_format.channels)
        wav.setsampwidth(self.audio_format.sample_width)
        wav.setframerate(self.audio_format.sample_rate)
        self._wav = wav
        logger.debug("Opened WAV backup %s", self.path)
        return self

    @property
    def is_open(self) -> bool:
        return self._wav is not None

    def write(self, data: bytes) -> None:
        if self._wav is None:
            return
        self._wav.writeframes(data)
        self.bytes_written += len(data)

    def close(self) -> Path:
        if self._wav is not None:
            self._wav.close()
            self._wav = None
            logger.info("WAV backup closed: %s (%d bytes)", self.path, self.bytes_written)
        return self.path

    @property
    def duration_seconds(self) -> float:
        rate = self.audio_format.bytes_per_second
        return self.bytes_written / rate if rate else 0.0

    def __enter__(self) -> "WavBackupWriter":
        return self.open()

    def __exit__(self, *exc: object) -> None:
        self.close()
