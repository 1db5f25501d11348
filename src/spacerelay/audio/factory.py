"""Choose an audio source for the current environment."""

from __future__ import annotations

import logging
import os
import shutil
import sys
from collections.abc import Callable, Mapping
from typing import Any

from spacerelay.audio.base import AudioSource, InteractionHook
from spacerelay.audio.device import DeviceAudioSource
from spacerelay.audio.graph import GraphAudioSource
from spacerelay.models.audio import AudioFormat

logger = logging.getLogger(__name__)

MODES = ("auto", "device", "graph")


def probe_capture_mode(
    requested: str,
    *,
    headless: bool,
    recorder: str = "sox",
    environ: Mapping[str, str] | None = None,
    platform: str | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> str:
    """Resolve ``auto`` to ``device`` or ``graph``.

    The device recorder only hears audio that reaches a real output device,
    so it needs a headed browser, a display on Linux, and the recorder
    binary on ``PATH``. Anything else falls back to the in-page graph.
    """
    requested = (requested or "auto").lower()
    if requested not in MODES:
        raise ValueError(f"Unknown capture mode {requested!r}; expected one of {MODES}")
    if requested != "auto":
        return requested

    environ = os.environ if environ is None else environ
    platform = platform or sys.platform
    if headless:
        reason = "browser is headless"
    elif platform.startswith("linux") and not environ.get("DISPLAY"):
        reason = "no DISPLAY"
    elif which(recorder) is None:
        reason = f"{recorder!r} not on PATH"
    else:
        return "device"
    logger.info("Using in-page audio graph capture (%s)", reason)
    return "graph"


def select_audio_source(
    page: Any,
    *,
    settings: Any = None,
    mode: str | None = None,
    headless: bool | None = None,
    interaction_hook: InteractionHook | None = None,
    skip_verification: bool | None = None,
    **probe_kwargs: Any,
) -> AudioSource:
    """Build the ``AudioSource`` that fits the requested mode and environment."""
    if settings is None:
        from spacerelay.settings import get_settings

        settings = get_settings()
    cfg = settings.audio
    audio_format = AudioFormat(
        sample_rate=cfg.sample_rate,
        bits_per_sample=cfg.bits_per_sample,
        channels=cfg.channels,
        encoding=cfg.encoding,
    )
    headless = settings.browser.headless if headless is None else headless
    recorder = cfg.device_command[0] if cfg.device_command else "sox"
    resolved = probe_capture_mode(mode or cfg.mode, headless=headless, recorder=recorder, **probe_kwargs)

    common: dict[str, Any] = {
        "recordings_dir": cfg.recordings_dir,
        "start_retries": cfg.start_retries,
        "retry_wait_ms": cfg.retry_wait_ms,
        "skip_verification": cfg.skip_audio_verification if skip_verification is None else skip_verification,
        "interaction_hook": interaction_hook,
    }
    if resolved == "device":
        return DeviceAudioSource(
            audio_format,
            command=cfg.device_command,
            chunk_bytes=cfg.chunk_bytes,
            page=page,
            **common,
        )
    return GraphAudioSource(
        page,
        audio_format,
        buffer_size=cfg.graph_buffer_size,
        drain_interval_ms=cfg.drain_interval_ms,
        max_buffer_depth=cfg.max_buffer_depth,
        **common,
    )
