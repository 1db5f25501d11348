"""Audio format descriptor and chunk model."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class AudioFormat:
    """Encoding descriptor, fixed for the lifetime of a session."""

    sample_rate: int = 16_000
    bits_per_sample: int = 16
    channels: int = 1
    encoding: str = "S16LE"

    @property
    def sample_width(self) -> int:
        """Bytes per sample."""
        return self.bits_per_sample // 8

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.channels * self.sample_width

    def to_metadata(self, source: str, timestamp: str) -> dict[str, Any]:
        """Return the metadata handshake message for this format."""
        return {
            "type": "metadata",
            "sampleRate": self.sample_rate,
            "channels": self.channels,
            "bitsPerSample": self.bits_per_sample,
            "encoding": self.encoding,
            "source": source,
            "timestamp": timestamp,
        }


CANONICAL_FORMAT = AudioFormat()


@dataclass
class AudioChunk:
    """A contiguous block of encoded audio in production order."""

    data: bytes
    sequence: int
    captured_at: float = field(default_factory=time.time)

    def __len__(self) -> int:
        return len(self.data)
