"""
Background refresh scheduling.

Ties refresh cadence to activity signals, scroll position and tab-intent
hints. Cooldowns only bound call volume; correctness never depends on them.

Cadence:
- Active: every 5 minutes plus jitter
- Idle: at the next half-hour boundary plus jitter, at least a minute away
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from gateway_usage.storage.backend import FetchFailed

logger = logging.getLogger(__name__)

HALF_HOUR_MS = 30 * 60 * 1000
MIN_IDLE_LEAD_MS = 60 * 1000
ACTIVE_BASE_MS = 5 * 60 * 1000

PAGE_PREFETCH_COOLDOWN_MS = 4_000
INTENT_PREFETCH_COOLDOWN_MS = 60_000
ACTIVITY_MIN_GAP_MS = 1_000

SCROLL_TOP_THRESHOLD_PX = 8
LOAD_MORE_THRESHOLD_PX = 240


def compute_idle_refresh_delay_ms(now_ms: int, jitter_ms: int) -> int:
    """Delay until the next local half-hour boundary shifted by ``jitter_ms``.

    The target is pushed forward by half hours until it is more than a
    minute away.
    """
    now = datetime.fromtimestamp(now_ms / 1000)
    boundary = now.replace(second=0, microsecond=0)
    minutes_to_add = (30 if now.minute < 30 else 60) - boundary.minute
    next_ms = int(boundary.timestamp() * 1000) + minutes_to_add * 60 * 1000
    target = next_ms + jitter_ms
    min_target = now_ms + MIN_IDLE_LEAD_MS
    while target <= min_target:
        target += HALF_HOUR_MS
    return target - now_ms


def compute_active_refresh_delay_ms(jitter_ms: int) -> int:
    return ACTIVE_BASE_MS + jitter_ms


def should_merge_newest(scroll_top: float, threshold_px: float = SCROLL_TOP_THRESHOLD_PX) -> bool:
    """Only merge into a table scrolled to the top; prepending elsewhere would shift the view."""
    return scroll_top <= threshold_px


def should_load_more(
    scroll_top: float,
    scroll_height: float,
    client_height: float,
    threshold_px: float = LOAD_MORE_THRESHOLD_PX,
) -> bool:
    return scroll_height - (scroll_top + client_height) <= threshold_px


def _wall_ms() -> int:
    return int(time.time() * 1000)


class RefreshScheduler:
    """Cooldown bookkeeping for background refresh triggers."""

    def __init__(
        self,
        page_prefetch_cooldown_ms: int = PAGE_PREFETCH_COOLDOWN_MS,
        intent_prefetch_cooldown_ms: int = INTENT_PREFETCH_COOLDOWN_MS,
        activity_min_gap_ms: int = ACTIVITY_MIN_GAP_MS,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.page_prefetch_cooldown_ms = page_prefetch_cooldown_ms
        self.intent_prefetch_cooldown_ms = intent_prefetch_cooldown_ms
        self.activity_min_gap_ms = activity_min_gap_ms
        self._clock = clock or _wall_ms
        self._page_prefetch_at: Dict[str, int] = {}
        self._intent_prefetch_at: Dict[str, int] = {}
        self._activity_at: Optional[int] = None

    def _claim(self, stamps: Dict[str, int], key: str, cooldown_ms: int) -> bool:
        now = self._clock()
        last = stamps.get(key)
        if last is not None and now - last < cooldown_ms:
            return False
        stamps[key] = now
        return True

    def allow_page_prefetch(self, query_key: str) -> bool:
        return self._claim(self._page_prefetch_at, query_key, self.page_prefetch_cooldown_ms)

    def allow_intent_prefetch(self, tab: str) -> bool:
        """Hovering or focusing another tab warms its caches at most once a minute."""
        return self._claim(self._intent_prefetch_at, tab, self.intent_prefetch_cooldown_ms)

    def allow_activity_refresh(self) -> bool:
        now = self._clock()
        if self._activity_at is not None and now - self._activity_at < self.activity_min_gap_ms:
            return False
        self._activity_at = now
        return True

    def next_delay_ms(self, active: bool, jitter_ms: int = 0) -> int:
        if active:
            return compute_active_refresh_delay_ms(jitter_ms)
        return compute_idle_refresh_delay_ms(self._clock(), jitter_ms)

    async def run(
        self,
        refresh: Callable[[], Awaitable[object]],
        stop: asyncio.Event,
        is_active: Callable[[], bool],
        jitter: Callable[[], int] = lambda: 0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> int:
        """Call ``refresh`` on the active/idle cadence until ``stop`` is set.

        Returns:
            Number of refreshes performed
        """
        runs = 0
        while not stop.is_set():
            delay_ms = self.next_delay_ms(is_active(), jitter())
            logger.debug("next background refresh in %.1fs", delay_ms / 1000)
            await sleep(delay_ms / 1000)
            if stop.is_set():
                break
            try:
                await refresh()
            except FetchFailed as exc:
                logger.warning("scheduled refresh failed: %s", exc)
            runs += 1
        return runs
