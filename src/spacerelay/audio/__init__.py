"""Audio capture: device recorder or in-page WebAudio graph behind one interface."""

from spacerelay.audio.base import AudioSource, CaptureHandle
from spacerelay.audio.factory import select_audio_source

__all__ = ["AudioSource", "CaptureHandle", "select_audio_source"]
