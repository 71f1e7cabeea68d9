"""Debounced preview refresh.

The preview "frame" is whatever shows the sandbox URL to the user. On the
server it is represented by `PreviewFrame`: something that can tell whether
the preview is verifiably loaded, point it at a URL, and as a last resort
tear it down and recreate it.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from typing import Any, Protocol

import httpx

from appbuilder.config import REFRESH_DEBOUNCE_MS


logger = logging.getLogger("appbuilder.apply.preview")


class PreviewFrame(Protocol):
    async def is_loaded(self) -> bool: ...

    async def navigate(self, url: str) -> None: ...

    async def recreate(self, url: str) -> None: ...


async def probe_url(url: str, timeout: float = 8.0) -> int | None:
    """Return the HTTP status of `url` or None when unreachable.

    HEAD first to avoid downloading the body; some servers reject HEAD, so
    fall back to a streamed GET that only reads the status line.
    """
    try:
        async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as client:
            try:
                resp = await client.request("HEAD", url)
                if resp.status_code != 405:
                    return int(resp.status_code)
            except httpx.HTTPError:
                pass
            async with client.stream("GET", url) as resp2:
                return int(resp2.status_code)
    except httpx.HTTPError:
        return None


class EventPreviewFrame:
    """A frame driven by events sent to the client.

    `navigate`/`recreate` push `preview_reload`/`preview_recreate` events to
    `emit`. The frame counts as loaded once it has been pointed at a URL and
    that URL answers with a 2xx status.
    """

    def __init__(
        self,
        base_url: str,
        emit: Callable[[str, dict[str, Any]], None],
        probe: Callable[[str], Any] = probe_url,
    ):
        self.base_url = base_url
        self.current_url: str | None = None
        self._emit = emit
        self._probe = probe

    async def is_loaded(self) -> bool:
        if self.current_url is None:
            return False
        status = await self._probe(self.base_url)
        return status is not None and 200 <= status < 300

    async def navigate(self, url: str) -> None:
        self.current_url = url
        self._emit("preview_reload", {"url": url})

    async def recreate(self, url: str) -> None:
        self.current_url = url
        self._emit("preview_recreate", {"url": url})


class PreviewRefresher:
    """Runs at most one refresh per debounce window.

    A refresh is suppressed when the previous one happened less than
    REFRESH_DEBOUNCE_MS ago, and skipped when the frame is already loaded.
    Otherwise the frame is reloaded with a cache-busting token; if it is still
    unconfirmed after the grace period it is recreated.
    """

    def __init__(
        self,
        frame: PreviewFrame,
        base_url: str,
        grace_ms: int = 2000,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.frame = frame
        self.base_url = base_url
        self.grace_ms = grace_ms
        self.last_refresh_ms: float | None = None
        self.refresh_count = 0
        self._clock = clock
        self._sleep = sleep

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def cache_busted_url(self) -> str:
        sep = "&" if "?" in self.base_url else "?"
        return f"{self.base_url}{sep}t={int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"

    async def refresh(self) -> str:
        """Returns one of: "debounced", "skipped", "reloaded", "recreated"."""
        now = self._now_ms()
        if self.last_refresh_ms is not None and now - self.last_refresh_ms < REFRESH_DEBOUNCE_MS:
            logger.info(
                "skipping refresh due to debounce (last refresh %.0fms ago)",
                now - self.last_refresh_ms,
            )
            return "debounced"

        if await self.frame.is_loaded():
            logger.info("preview already loaded, skipping refresh")
            return "skipped"

        self.last_refresh_ms = now
        self.refresh_count += 1
        url = self.cache_busted_url()
        await self.frame.navigate(url)

        await self._sleep(self.grace_ms / 1000)
        if await self.frame.is_loaded():
            return "reloaded"

        logger.warning("preview still not loaded after %dms, recreating frame", self.grace_ms)
        await self.frame.recreate(self.cache_busted_url())
        return "recreated"
