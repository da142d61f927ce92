"""
Query-scoped page cache.

Stores the rendered request pages per query key and decides which entry may
answer a lookup.

Lookup policy:
1. Strict queries (any explicit filter) only ever see their exact entry
2. Default queries prefer their exact entry, then the canonical unfiltered
   entry, then the most recent non-empty entry of any key
3. The requests table never substitutes another query's rows
"""

import logging
from typing import Dict, List, Optional

from gateway_usage.storage.models import PageCacheEntry
from .query_key import UsageFilters, build_query_key, canonical_filters, is_strict

logger = logging.getLogger(__name__)


def resolve_request_page_cached(
    is_requests_tab: bool,
    has_strict_request_query: bool,
    cached: Optional[PageCacheEntry],
    canonical_cached: Optional[PageCacheEntry],
    last_non_empty: Optional[PageCacheEntry],
) -> Optional[PageCacheEntry]:
    """Pick the cache entry allowed to answer a lookup.

    Narrowing filters must never show an unrelated broader result, while a
    default view may show the best data available instead of a blank screen.

    Args:
        is_requests_tab: Lookup comes from the requests table
        has_strict_request_query: Query carries explicit filters
        cached: Entry stored under the exact query key
        canonical_cached: Entry stored under the unfiltered key
        last_non_empty: Most recent non-empty entry of any key

    Returns:
        The entry to render, or None
    """
    if has_strict_request_query or is_requests_tab:
        return cached
    if cached is not None:
        return cached
    if canonical_cached is not None:
        return canonical_cached
    return last_non_empty


class PageCache:
    """Process-lifetime store of ``{query_key -> PageCacheEntry}``."""

    def __init__(self):
        self._entries: Dict[str, PageCacheEntry] = {}
        self._last_non_empty: Optional[PageCacheEntry] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, query_key: str) -> bool:
        return query_key in self._entries

    @property
    def last_non_empty(self) -> Optional[PageCacheEntry]:
        return self._last_non_empty

    def entries(self) -> List[PageCacheEntry]:
        return list(self._entries.values())

    def get(self, query_key: str) -> Optional[PageCacheEntry]:
        return self._entries.get(query_key)

    def store(self, entry: PageCacheEntry) -> None:
        """Overwrite the entry for its key and remember it if it has rows."""
        self._entries[entry.query_key] = entry
        if entry.rows:
            self._last_non_empty = entry
        logger.debug(
            "page cache store key=%s rows=%d has_more=%s fallback=%s",
            entry.query_key, len(entry.rows), entry.has_more, entry.using_fallback,
        )

    def lookup(self, filters: UsageFilters, requests_tab: bool = False) -> Optional[PageCacheEntry]:
        key = build_query_key(filters)
        return resolve_request_page_cached(
            is_requests_tab=requests_tab,
            has_strict_request_query=is_strict(filters),
            cached=self._entries.get(key),
            canonical_cached=self._entries.get(build_query_key(canonical_filters(filters))),
            last_non_empty=self._last_non_empty,
        )
