"""
Usage cache service.

Owns the page, graph and daily caches for one panel and coordinates every
fetch against the query backend.

Failure handling:
1. Transient fetch failure - keep the last good cache, optionally switch to
   synthetic fallback rows, record a visible notice
2. Impossible filter combination - answer with an empty page and a zero
   summary without calling the backend
3. Stale response - dropped silently via the stream's sequence guard
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from gateway_usage.config.loader import BackendKind, PanelConfig, default_panel_config
from gateway_usage.storage.backend import FetchFailed, HttpUsageBackend, UsageQueryBackend
from gateway_usage.storage.models import (
    BackendSummary,
    DailyTotals,
    PageCacheEntry,
    RequestSummary,
    UsageDistribution,
    UsageRequestEntry,
)
from gateway_usage.storage.repository import SqliteUsageBackend
from .daily import DailyAggregator
from .fallback import build_fallback_page, distribution_from_rows, generate_fallback_rows
from .graph_cache import RollingGraphCache, select_display_providers
from .identity import dedupe_rows
from .merge import IncrementalMerger, append_page_rows, merge_newest_rows
from .page_cache import PageCache
from .query_key import ANALYTICS_TAB, REQUESTS_TAB, UsageFilters, build_query_key, is_impossible
from .scheduler import RefreshScheduler, should_merge_newest
from .sequence import SequenceGuard
from .summary import resolve_request_table_summary, summarize_rows, zero_summary

logger = logging.getLogger(__name__)

FALLBACK_NOTICE = "Gateway unavailable: showing generated test data, not real usage."
LOAD_FAILED_NOTICE = "Failed to load usage requests; showing the last loaded data."


def _wall_ms() -> int:
    return int(time.time() * 1000)


def build_backend(config: PanelConfig) -> UsageQueryBackend:
    """Create the query backend described by ``config``."""
    if config.backend.kind == BackendKind.HTTP:
        return HttpUsageBackend(config.backend.base_url, timeout_s=config.backend.timeout_s)
    return SqliteUsageBackend(config.backend.db_path)


class UsageCacheService:
    """Client-side cache and aggregation engine for the usage panel.

    All state lives on the instance; every mutation happens on the single
    foreground task, so no locking is needed.
    """

    def __init__(
        self,
        backend: UsageQueryBackend,
        config: Optional[PanelConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.backend = backend
        self.config = config or default_panel_config()
        self._clock = clock or _wall_ms

        cache = self.config.cache
        refresh = self.config.refresh
        self.page_cache = PageCache()
        self.page_sequence = SequenceGuard()
        self.summary_sequence = SequenceGuard()
        self.merger = IncrementalMerger(backend, self.page_cache, self.page_sequence, cache.page_size)
        self.graph_cache = RollingGraphCache(
            backend,
            window=cache.graph_window,
            refresh_cooldown_ms=int(refresh.graph_refresh_cooldown_s * 1000),
            clock=self._clock,
        )
        self.daily = DailyAggregator(backend, window_days=cache.daily_window_days)
        self.scheduler = RefreshScheduler(
            page_prefetch_cooldown_ms=int(refresh.page_prefetch_cooldown_s * 1000),
            intent_prefetch_cooldown_ms=int(refresh.intent_prefetch_cooldown_s * 1000),
            activity_min_gap_ms=int(refresh.activity_min_gap_s * 1000),
            clock=self._clock,
        )
        self.analytics_distribution: Optional[UsageDistribution] = None
        self.notice: Optional[str] = None
        self._summaries: Dict[str, BackendSummary] = {}

    @classmethod
    def from_config(cls, config: PanelConfig) -> "UsageCacheService":
        return cls(build_backend(config), config)

    @property
    def fallback_enabled(self) -> bool:
        return self.config.fallback.enabled

    def set_analytics_distribution(self, distribution: Optional[UsageDistribution]) -> None:
        """Record the long-window analytics summary used for weighting and provider ranking."""
        self.analytics_distribution = distribution

    def _distribution(self) -> Optional[UsageDistribution]:
        if self.analytics_distribution is not None:
            return self.analytics_distribution
        last = self.page_cache.last_non_empty
        if last is not None and not last.using_fallback:
            return distribution_from_rows(last.rows)
        return None

    def _summary_providers(self) -> List[str]:
        if self.analytics_distribution is None:
            return []
        counts = self.analytics_distribution.provider_requests
        return [name for name, _ in sorted(counts.items(), key=lambda item: (-item[1], item[0]))]

    # -- pages ---------------------------------------------------------

    def cached_page(self, filters: UsageFilters, requests_tab: bool = False) -> Optional[PageCacheEntry]:
        return self.page_cache.lookup(filters, requests_tab=requests_tab)

    async def load_page(self, filters: UsageFilters, requests_tab: bool = False) -> Optional[PageCacheEntry]:
        """Fetch the first page for ``filters`` and store it.

        Returns:
            The entry to render, which may be a cached or fallback entry
            when the fetch failed, or None when nothing can be shown
        """
        key = build_query_key(filters)
        if is_impossible(filters):
            entry = PageCacheEntry(query_key=key, rows=(), has_more=False)
            self.page_cache.store(entry)
            return entry

        token = self.page_sequence.begin()
        try:
            page = await self.backend.get_usage_request_entries(filters, self.config.cache.page_size, 0)
        except FetchFailed as exc:
            if not self.page_sequence.is_current(token):
                return self.cached_page(filters, requests_tab)
            return self._page_failed(filters, requests_tab, exc)

        if not self.page_sequence.is_current(token):
            logger.debug("discarding stale page response key=%s", key)
            return self.cached_page(filters, requests_tab)

        entry = PageCacheEntry(
            query_key=key,
            rows=tuple(merge_newest_rows((), page.rows)),
            has_more=page.has_more,
            using_fallback=False,
        )
        self.page_cache.store(entry)
        self.notice = None
        logger.info("loaded %d usage rows (has_more=%s)", len(entry.rows), entry.has_more)
        return entry

    def _page_failed(self, filters: UsageFilters, requests_tab: bool, exc: FetchFailed) -> Optional[PageCacheEntry]:
        logger.warning("usage request page fetch failed: %s", exc)
        existing = self.page_cache.get(build_query_key(filters))
        if existing is not None and not existing.using_fallback:
            self.notice = LOAD_FAILED_NOTICE
            return existing
        if not self.fallback_enabled:
            self.notice = LOAD_FAILED_NOTICE
            return self.cached_page(filters, requests_tab)

        entry = build_fallback_page(
            filters,
            generated_at_ms=self._clock(),
            count=self.config.fallback.row_count,
            distribution=self._distribution(),
        )
        self.page_cache.store(entry)
        self.notice = FALLBACK_NOTICE
        return entry

    async def load_more(self, filters: UsageFilters) -> Optional[PageCacheEntry]:
        """Append the next older page to the cached entry for ``filters``."""
        key = build_query_key(filters)
        entry = self.page_cache.get(key)
        if entry is None or not entry.has_more or entry.using_fallback:
            return entry

        token = self.page_sequence.begin()
        try:
            page = await self.backend.get_usage_request_entries(
                filters, self.config.cache.page_size, len(entry.rows)
            )
        except FetchFailed as exc:
            logger.warning("loading more usage rows failed: %s", exc)
            self.notice = LOAD_FAILED_NOTICE
            return self.page_cache.get(key)

        current = self.page_cache.get(key)
        if not self.page_sequence.is_current(token) or current is None or current.using_fallback:
            logger.debug("discarding stale load-more response key=%s", key)
            return current

        updated = PageCacheEntry(
            query_key=key,
            rows=tuple(append_page_rows(current.rows, page.rows)),
            has_more=page.has_more,
            using_fallback=False,
        )
        self.page_cache.store(updated)
        return updated

    async def merge_newest(self, filters: UsageFilters, scroll_top: Optional[float] = None) -> Optional[PageCacheEntry]:
        """Merge newly arrived rows into the rendered page.

        Skipped when the table is scrolled away from the top.
        """
        if scroll_top is not None and not should_merge_newest(scroll_top):
            return None
        return await self.merger.merge_newest(filters)

    async def prefetch_page(self, filters: UsageFilters) -> Optional[PageCacheEntry]:
        key = build_query_key(filters)
        if not self.scheduler.allow_page_prefetch(key):
            return self.page_cache.get(key)
        entry = self.page_cache.get(key)
        if entry is not None and not entry.using_fallback:
            return await self.merger.merge_newest(filters) or self.page_cache.get(key)
        return await self.load_page(filters)

    # -- summary -------------------------------------------------------

    def request_table_summary(self, filters: UsageFilters) -> Optional[RequestSummary]:
        """Totals for the requests table, or None when they are not known exactly."""
        if is_impossible(filters):
            return zero_summary()
        key = build_query_key(filters)
        entry = self.page_cache.get(key)
        if entry is not None and entry.using_fallback:
            return summarize_rows(entry.rows)
        rows = entry.rows if entry is not None else ()
        has_more = entry.has_more if entry is not None else True
        return resolve_request_table_summary(self._summaries.get(key), rows, has_more)

    async def refresh_summary(self, filters: UsageFilters) -> Optional[RequestSummary]:
        if is_impossible(filters):
            return zero_summary()
        key = build_query_key(filters)
        token = self.summary_sequence.begin()
        try:
            summary = await self.backend.get_usage_request_summary(filters)
        except FetchFailed as exc:
            logger.warning("usage request summary fetch failed: %s", exc)
            return self.request_table_summary(filters)
        if self.summary_sequence.is_current(token):
            self._summaries[key] = summary
        else:
            logger.debug("discarding stale summary response key=%s", key)
        return self.request_table_summary(filters)

    # -- daily totals --------------------------------------------------

    def _rows_on_hand(self) -> List[UsageRequestEntry]:
        rows: List[UsageRequestEntry] = []
        for entry in self.page_cache.entries():
            if not entry.using_fallback:
                rows.extend(entry.rows)
        return dedupe_rows(rows)

    async def refresh_daily(self) -> Optional[DailyTotals]:
        """Refresh the daily roll-up, aggregating locally when the gateway fails."""
        rows = self._rows_on_hand()
        allow_fallback = bool(rows) or self.fallback_enabled
        synthetic = not rows and self.fallback_enabled
        if synthetic:
            rows = generate_fallback_rows(
                generated_at_ms=self._clock(),
                count=self.config.fallback.row_count,
                hours=24 * self.config.cache.daily_window_days,
                distribution=self._distribution(),
            )
        try:
            totals = await self.daily.refresh(rows, allow_fallback=allow_fallback, synthetic=synthetic)
        except FetchFailed as exc:
            logger.warning("daily totals unavailable: %s", exc)
            self.notice = LOAD_FAILED_NOTICE
            return self.daily.totals
        if totals is not None and totals.synthetic:
            self.notice = FALLBACK_NOTICE
        return totals

    # -- graph ---------------------------------------------------------

    async def refresh_graph(
        self,
        filters: UsageFilters,
        selected_providers: Optional[Sequence[str]] = None,
        force: bool = False,
    ) -> List[str]:
        """Seed and refresh the per-provider histories for ``filters``.

        Returns:
            The display providers, in chart order; empty when the filters
            match nothing
        """
        if is_impossible(filters):
            return []
        cached = self.cached_page(filters)
        base_rows = cached.rows if cached is not None and not cached.using_fallback else ()
        providers = select_display_providers(
            selected_providers,
            base_rows,
            self.daily.providers,
            self._summary_providers(),
            limit=self.config.cache.graph_providers,
        )
        no_snapshot = self.graph_cache.get(filters) is None
        self.graph_cache.seed(filters, base_rows, providers)
        await self.graph_cache.refresh(filters, providers, force=force or no_snapshot)
        return providers

    # -- triggers ------------------------------------------------------

    async def on_activity(self, filters: UsageFilters, scroll_top: float = 0) -> Optional[PageCacheEntry]:
        """Gateway activity signal: merge the newest rows, at most once per gap."""
        if not self.scheduler.allow_activity_refresh():
            return None
        return await self.merge_newest(filters, scroll_top=scroll_top)

    async def prefetch_for_tab(self, tab: str, filters: UsageFilters) -> bool:
        """Warm the caches a tab will need before the user switches to it."""
        if not self.scheduler.allow_intent_prefetch(tab):
            return False
        if tab == REQUESTS_TAB:
            await self.prefetch_page(filters)
            await self.refresh_summary(filters)
        elif tab == ANALYTICS_TAB:
            await self.refresh_daily()
        else:
            raise ValueError(f"Unknown tab: {tab}")
        return True

    async def refresh_all(self, filters: UsageFilters, requests_tab: bool = True) -> Optional[PageCacheEntry]:
        """One full background cycle: page, summary, daily totals, graph."""
        entry = self.page_cache.get(build_query_key(filters))
        if entry is not None and not entry.using_fallback:
            await self.merger.merge_newest(filters)
        else:
            await self.load_page(filters, requests_tab=requests_tab)
        await self.refresh_summary(filters)
        await self.refresh_daily()
        await self.refresh_graph(filters, selected_providers=filters.providers)
        return self.cached_page(filters, requests_tab=requests_tab)
