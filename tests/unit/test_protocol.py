"""Unit tests for relay control messages."""

from __future__ import annotations

import json

from spacerelay.models.audio import AudioFormat
from spacerelay.transport.protocol import (
    MessageType,
    audio_data_message,
    decode_audio_data,
    end_message,
    heartbeat_message,
    metadata_message,
    parse_message,
)


class TestMessages:
    def test_metadata_describes_format(self):
        msg = json.loads(metadata_message(AudioFormat(), "spacerelay"))
        assert msg["type"] == "metadata"
        assert msg["sampleRate"] == 16000
        assert msg["channels"] == 1
        assert msg["bitsPerSample"] == 16
        assert msg["encoding"] == "S16LE"
        assert msg["source"] == "spacerelay"
        assert "T" in msg["timestamp"]

    def test_heartbeat(self):
        msg = json.loads(heartbeat_message())
        assert msg["type"] == MessageType.HEARTBEAT.value
        assert isinstance(msg["timestamp"], int)

    def test_end(self):
        msg = json.loads(end_message("stopping"))
        assert msg == {"type": "end", "reason": "stopping", "timestamp": msg["timestamp"]}

    def test_audio_data_carries_base64_payload(self):
        raw = bytes(range(10))
        msg = json.loads(audio_data_message(raw, 7))
        assert msg["type"] == "audio_data"
        assert msg["sequence"] == 7
        assert msg["format"] == "S16LE"
        assert decode_audio_data(msg) == raw


class TestParseMessage:
    def test_valid(self):
        assert parse_message('{"type": "heartbeat_ack"}') == {"type": "heartbeat_ack"}

    def test_bytes_input(self):
        assert parse_message(b'{"type": "metadata_ack"}')["type"] == "metadata_ack"

    def test_not_json(self):
        assert parse_message("hello") is None

    def test_not_an_object(self):
        assert parse_message("[1, 2]") is None

    def test_missing_type(self):
        assert parse_message('{"data": 1}') is None
