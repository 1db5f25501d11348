"""Unit tests for float/S16LE conversion and the WAV backup writer."""

from __future__ import annotations

import wave
from datetime import datetime, timezone

import numpy as np
import pytest

from spacerelay.audio.backup import WavBackupWriter, backup_path_for
from spacerelay.audio.quantize import float_to_s16le, peak_level, s16le_to_float
from spacerelay.models.audio import AudioFormat


class TestFloatToS16le:
    def test_known_values(self):
        data = float_to_s16le([0.0, 1.0, -1.0, 0.5])
        assert np.frombuffer(data, dtype="<i2").tolist() == [0, 32767, -32767, 16383]

    def test_little_endian_two_bytes_per_sample(self):
        data = float_to_s16le([1.0])
        assert data == b"\xff\x7f"

    def test_out_of_range_is_clamped(self):
        data = float_to_s16le([2.0, -3.5])
        assert np.frombuffer(data, dtype="<i2").tolist() == [32767, -32767]

    def test_non_finite_values(self):
        data = float_to_s16le([float("nan"), float("inf"), float("-inf")])
        assert np.frombuffer(data, dtype="<i2").tolist() == [0, 32767, -32767]

    def test_empty(self):
        assert float_to_s16le([]) == b""

    def test_inverse_within_one_step(self):
        rng = np.random.default_rng(7)
        samples = rng.uniform(-1.0, 1.0, size=2048)
        restored = s16le_to_float(float_to_s16le(samples))
        assert np.max(np.abs(restored - samples)) <= 1 / 32767 + 1e-12


class TestPeakLevel:
    def test_silence(self):
        assert peak_level(b"\x00\x00" * 10) == 0.0

    def test_full_scale(self):
        assert peak_level(float_to_s16le([0.1, -1.0])) == pytest.approx(1.0)

    def test_short_buffer(self):
        assert peak_level(b"\x01") == 0.0


class TestWavBackup:
    def test_path_naming(self, tmp_path):
        started = datetime(2024, 5, 1, 12, 30, 5, tzinfo=timezone.utc)
        assert backup_path_for(tmp_path, started) == tmp_path / "space-20240501T123005Z.wav"

    def test_writes_readable_wav(self, tmp_path):
        fmt = AudioFormat()
        path = tmp_path / "nested" / "out.wav"
        with WavBackupWriter(path, fmt) as writer:
            writer.write(float_to_s16le([0.25] * 1600))
            writer.write(float_to_s16le([-0.25] * 1600))
            assert writer.is_open

        assert not writer.is_open
        assert writer.bytes_written == 6400
        assert writer.duration_seconds == pytest.approx(0.2)
        with wave.open(str(path), "rb") as wav:
            assert wav.getnchannels() == 1
            assert wav.getsampwidth() == 2
            assert wav.getframerate() == 16000
            assert wav.getnframes() == 3200

    def test_write_before_open_is_ignored(self, tmp_path):
        writer = WavBackupWriter(tmp_path / "x.wav")
        writer.write(b"\x00\x00")
        assert writer.bytes_written == 0
        assert writer.close() == tmp_path / "x.wav"
