"""JSON control messages exchanged between the relay and a sink.

Audio travels either as raw binary frames or, in ``base64`` payload mode,
as ``audio_data`` text messages. Every other message is a JSON object
with a ``type`` field.
"""

from __future__ import annotations

import base64
import json
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from spacerelay.models.audio import AudioFormat


class MessageType(str, Enum):
    """Control message types."""

    METADATA = "metadata"
    METADATA_ACK = "metadata_ack"
    HEARTBEAT = "heartbeat"
    HEARTBEAT_ACK = "heartbeat_ack"
    AUDIO_DATA = "audio_data"
    END = "end"


class PayloadMode(str, Enum):
    """How audio chunks are framed on the wire."""

    BINARY = "binary"
    BASE64 = "base64"


def _now_ms() -> int:
    return int(time.time() * 1000)


def metadata_message(audio_format: AudioFormat, source: str) -> str:
    """Handshake sent once per connection before any audio."""
    timestamp = datetime.now(timezone.utc).isoformat()
    return json.dumps(audio_format.to_metadata(source, timestamp))


def heartbeat_message() -> str:
    return json.dumps({"type": MessageType.HEARTBEAT.value, "timestamp": _now_ms()})


def end_message(reason: str = "capture ended") -> str:
    return json.dumps({"type": MessageType.END.value, "reason": reason, "timestamp": _now_ms()})


def audio_data_message(data: bytes, sequence: int, encoding: str = "S16LE") -> str:
    """Wrap an audio chunk as a base64 ``audio_data`` text message."""
    return json.dumps(
        {
            "type": MessageType.AUDIO_DATA.value,
            "sequence": sequence,
            "format": encoding,
            "timestamp": _now_ms(),
            "data": base64.b64encode(data).decode("ascii"),
        }
    )


def decode_audio_data(message: dict[str, Any]) -> bytes:
    """Return the raw bytes carried by an ``audio_data`` message."""
    payload = message.get("data") or ""
    return base64.b64decode(payload)


def parse_message(raw: str | bytes) -> dict[str, Any] | None:
    """Parse a text frame into a control message.

    Returns None for payloads that are not a JSON object with a ``type``.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or "type" not in data:
        return None
    return data
