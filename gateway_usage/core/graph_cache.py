"""
Per-provider rolling graph cache.

Keeps a bounded, independently refreshed newest-first history for each
provider shown on the requests chart.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from gateway_usage.storage.backend import FetchFailed, UsageQueryBackend
from gateway_usage.storage.models import GraphCacheEntry, UsageRequestEntry
from .query_key import UsageFilters, build_query_key, is_impossible
from .sequence import SequenceGuard

logger = logging.getLogger(__name__)

GRAPH_WINDOW = 120
MAX_DISPLAY_PROVIDERS = 3
GRAPH_REFRESH_COOLDOWN_MS = 15_000
OFFICIAL_PROVIDER = "official"


def _official_first(name: str) -> Tuple[int, str]:
    return (0 if name == OFFICIAL_PROVIDER else 1, name)


def select_display_providers(
    selected: Optional[Iterable[str]],
    base_rows: Sequence[UsageRequestEntry],
    daily_providers: Sequence[str],
    summary_providers: Sequence[str],
    limit: int = MAX_DISPLAY_PROVIDERS,
) -> List[str]:
    """Pick up to ``limit`` providers to chart.

    Candidate sources are evaluated in priority order until enough unique
    names are collected:
    1. Explicitly selected providers, official first then by name
    2. Providers seen in the base row sample
    3. Providers known from the daily roll-up
    4. Providers known from the long-window analytics summary
    """
    sources: List[Iterable[str]] = [
        sorted(selected or (), key=_official_first),
        (row.provider for row in base_rows),
        daily_providers,
        summary_providers,
    ]
    picked: List[str] = []
    for source in sources:
        for name in source:
            if not name or name in picked:
                continue
            picked.append(name)
            if len(picked) >= limit:
                return picked
    return picked


def build_chart_series(rows: Sequence[UsageRequestEntry], capacity: int = GRAPH_WINDOW) -> List[Optional[int]]:
    """Chart points for one provider, oldest to newest, left to right.

    Missing history is padded with None rather than zero so that it stays
    visually distinct from zero usage.
    """
    newest = list(rows[:capacity])
    points: List[Optional[int]] = [row.total_tokens for row in reversed(newest)]
    return [None] * (capacity - len(points)) + points


def _now_ms() -> int:
    return int(time.monotonic() * 1000)


class RollingGraphCache:
    """Graph histories per query scope, one rolling window per provider."""

    def __init__(
        self,
        backend: UsageQueryBackend,
        window: int = GRAPH_WINDOW,
        refresh_cooldown_ms: int = GRAPH_REFRESH_COOLDOWN_MS,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.backend = backend
        self.window = window
        self.refresh_cooldown_ms = refresh_cooldown_ms
        self._clock = clock or _now_ms
        self._entries: Dict[str, GraphCacheEntry] = {}
        self._sequences: Dict[Tuple[str, str], SequenceGuard] = {}
        self._last_refresh_ms: Optional[int] = None

    def get(self, filters: UsageFilters) -> Optional[GraphCacheEntry]:
        return self._entries.get(build_query_key(filters))

    def rows_for(self, filters: UsageFilters, provider: str) -> List[UsageRequestEntry]:
        entry = self.get(filters)
        if entry is None:
            return []
        return list(entry.rows_by_provider.get(provider, []))

    def series(self, filters: UsageFilters, providers: Sequence[str]) -> Dict[str, List[Optional[int]]]:
        return {p: build_chart_series(self.rows_for(filters, p), self.window) for p in providers}

    def seed(
        self,
        filters: UsageFilters,
        base_rows: Sequence[UsageRequestEntry],
        providers: Sequence[str],
    ) -> GraphCacheEntry:
        """Paint providers that have no history yet from rows already on hand."""
        key = build_query_key(filters)
        entry = self._entries.setdefault(key, GraphCacheEntry(query_key=key))
        entry.base_rows = tuple(base_rows)
        for provider in providers:
            if provider in entry.rows_by_provider:
                continue
            matching = [row for row in base_rows if row.provider == provider]
            matching.sort(key=lambda r: r.unix_ms, reverse=True)
            entry.rows_by_provider[provider] = matching[:self.window]
        return entry

    def should_refresh(self, force: bool = False) -> bool:
        if force or self._last_refresh_ms is None:
            return True
        return self._clock() - self._last_refresh_ms >= self.refresh_cooldown_ms

    async def refresh(
        self,
        filters: UsageFilters,
        providers: Sequence[str],
        force: bool = False,
    ) -> Optional[GraphCacheEntry]:
        """Replace each provider's seeded history with a dedicated query.

        Skipped when throttled. Each provider has its own sequence guard, so
        a slow provider's stale response cannot overwrite a newer one.

        Filters that match nothing, and providers outside the provider
        filter, get empty histories without a query.

        Returns:
            The refreshed entry, or None when throttled
        """
        key = build_query_key(filters)
        if is_impossible(filters):
            entry = self._entries.setdefault(key, GraphCacheEntry(query_key=key))
            entry.rows_by_provider = {p: [] for p in providers}
            return entry
        if not self.should_refresh(force):
            return None
        self._last_refresh_ms = self._clock()
        entry = self._entries.setdefault(key, GraphCacheEntry(query_key=key))
        await asyncio.gather(*(self._refresh_provider(filters, entry, p) for p in providers))
        return entry

    async def _refresh_provider(self, filters: UsageFilters, entry: GraphCacheEntry, provider: str) -> None:
        guard = self._sequences.setdefault((entry.query_key, provider), SequenceGuard())
        token = guard.begin()
        if filters.providers is not None and provider not in filters.providers:
            entry.rows_by_provider[provider] = []
            return
        try:
            page = await self.backend.get_usage_request_entries(
                filters.with_providers([provider]), self.window, 0
            )
        except FetchFailed as exc:
            logger.warning("graph refresh failed for provider=%s: %s", provider, exc)
            return
        if not guard.is_current(token):
            logger.debug("discarding stale graph response provider=%s", provider)
            return
        rows = sorted(page.rows, key=lambda r: r.unix_ms, reverse=True)
        entry.rows_by_provider[provider] = rows[:self.window]
