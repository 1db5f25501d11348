"""Float <-> S16LE sample conversion."""

from __future__ import annotations

from collections.abc import Iterable

import numpy as np

INT16_SCALE = 32767


def float_to_s16le(samples: Iterable[float] | np.ndarray) -> bytes:
    """Quantize float samples in [-1, 1] to little-endian int16 bytes.

    Values are clamped to [-1, 1] and mapped with ``floor(x * 32767)``.
    Non-finite values are treated as silence.
    """
    arr = np.asarray(samples, dtype=np.float64)
    arr = np.nan_to_num(arr, nan=0.0, posinf=1.0, neginf=-1.0)
    scaled = np.floor(np.clip(arr, -1.0, 1.0) * INT16_SCALE)
    return scaled.astype("<i2").tobytes()


def s16le_to_float(data: bytes) -> np.ndarray:
    """Inverse of ``float_to_s16le`` (within one quantization step)."""
    arr = np.frombuffer(data, dtype="<i2")
    return arr.astype(np.float64) / INT16_SCALE


def peak_level(data: bytes) -> float:
    """Peak absolute amplitude of an S16LE buffer, in [0, 1]."""
    if len(data) < 2:
        return 0.0
    samples = s16le_to_float(data[: len(data) - len(data) % 2])
    return min(1.0, float(np.abs(samples).max()))
