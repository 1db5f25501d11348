"""Capture from an in-page WebAudio graph.

Works headless: the page's media elements are tapped inside the browser,
merged to mono, and buffered in a page-side queue that this source drains
on a fixed interval.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from playwright.async_api import Error as PlaywrightError

from spacerelay.audio.base import BaseAudioSource, CaptureHandle
from spacerelay.audio.quantize import float_to_s16le
from spacerelay.browser.scripts import (
    AUDIO_CONTEXT_AVAILABLE_JS,
    GRAPH_DRAIN_JS,
    GRAPH_INSTALL_JS,
    GRAPH_STOP_JS,
    MEDIA_STATE_JS,
)

logger = logging.getLogger(__name__)


class GraphAudioSource(BaseAudioSource):
    """Drains float buffers from an in-page ``ScriptProcessorNode``.

    Args:
        page: The room page (Playwright ``Page``).
        buffer_size: ScriptProcessor buffer length in frames.
        drain_interval_ms: How often the page queue is drained.
        max_buffer_depth: Page-side queue cap; older buffers are dropped.
    """

    mode = "graph"

    def __init__(
        self,
        page: Any,
        *args: Any,
        buffer_size: int = 4096,
        drain_interval_ms: int = 250,
        max_buffer_depth: int = 100,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.page = page
        self.buffer_size = buffer_size
        self.drain_interval_ms = drain_interval_ms
        self.max_buffer_depth = max_buffer_depth

    async def _probe(self, handle: CaptureHandle) -> bool:
        try:
            if not await self.page.evaluate(AUDIO_CONTEXT_AVAILABLE_JS):
                logger.warning("AudioContext is not available in the page")
                return False
            state = await self.page.evaluate(MEDIA_STATE_JS)
        except PlaywrightError as exc:
            logger.debug("Graph probe failed: %s", exc)
            return False
        return bool(state and state.get("media"))

    async def _begin(self, handle: CaptureHandle) -> None:
        try:
            result = await self.page.evaluate(
                GRAPH_INSTALL_JS,
                {
                    "sampleRate": self.audio_format.sample_rate,
                    "bufferSize": self.buffer_size,
                    "maxDepth": self.max_buffer_depth,
                },
            )
        except PlaywrightError as exc:
            raise RuntimeError(f"audio graph injection failed: {exc}") from exc
        if not result or not result.get("installed"):
            raise RuntimeError(f"audio graph not installed: {(result or {}).get('reason', 'unknown')}")
        logger.info("Audio graph installed with %d media source(s)", result.get("sources", 0))

    async def drain(self, handle: CaptureHandle) -> int:
        """Pull queued buffers from the page and emit them. Returns buffers drained."""
        result = await self.page.evaluate(GRAPH_DRAIN_JS)
        if not result:
            return 0
        dropped = int(result.get("dropped") or 0)
        if dropped:
            handle.dropped_buffers += dropped
            logger.warning("Page audio queue overflowed; %d buffer(s) dropped", dropped)
        buffers = result.get("buffers") or []
        for samples in buffers:
            self._emit(handle, float_to_s16le(samples))
        return len(buffers)

    async def _produce(self, handle: CaptureHandle) -> None:
        interval = self.drain_interval_ms / 1000
        while not handle.stopped:
            await asyncio.sleep(interval)
            try:
                await self.drain(handle)
            except PlaywrightError as exc:
                logger.error("Audio drain failed, stopping graph capture: %s", exc)
                return

    async def _halt(self, handle: CaptureHandle) -> None:
        try:
            # Keep the tail that accumulated since the last drain
            await self.drain(handle)
        except PlaywrightError as exc:
            logger.debug("Final drain failed: %s", exc)
        try:
            await self.page.evaluate(GRAPH_STOP_JS)
        except PlaywrightError as exc:
            logger.debug("Graph teardown failed: %s", exc)
