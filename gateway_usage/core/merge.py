"""
Incremental merge of newly arrived events into cached pages.

Keeps an already-rendered page fresh by fetching only the newest window and
prepending rows that are not already present.
"""

import logging
from typing import Iterable, List, Optional, Sequence

from gateway_usage.storage.backend import FetchFailed, UsageQueryBackend
from gateway_usage.storage.models import PageCacheEntry, UsageRequestEntry
from .identity import row_identity
from .page_cache import PageCache
from .query_key import UsageFilters, build_query_key, is_impossible
from .sequence import SequenceGuard

logger = logging.getLogger(__name__)


def _sort_newest_first(rows: Iterable[UsageRequestEntry]) -> List[UsageRequestEntry]:
    return sorted(rows, key=lambda r: r.unix_ms, reverse=True)


def merge_newest_rows(
    existing: Sequence[UsageRequestEntry],
    fetched: Sequence[UsageRequestEntry],
) -> List[UsageRequestEntry]:
    """Prepend fetched rows whose identity is not yet present.

    Merging the same fetched window again is a no-op.
    """
    seen = {row_identity(r) for r in existing}
    fresh = []
    for row in fetched:
        identity = row_identity(row)
        if identity in seen:
            continue
        seen.add(identity)
        fresh.append(row)
    if not fresh:
        return list(existing)
    # Stable sort: rows at equal timestamps keep fetched-before-existing order.
    return _sort_newest_first(fresh + list(existing))


def append_page_rows(
    existing: Sequence[UsageRequestEntry],
    page: Sequence[UsageRequestEntry],
) -> List[UsageRequestEntry]:
    """Append an older page below the loaded rows, skipping repeats."""
    seen = {row_identity(r) for r in existing}
    combined = list(existing)
    for row in page:
        identity = row_identity(row)
        if identity in seen:
            continue
        seen.add(identity)
        combined.append(row)
    return _sort_newest_first(combined)


class IncrementalMerger:
    """Background merge of the newest page into a cached entry."""

    def __init__(self, backend: UsageQueryBackend, page_cache: PageCache, sequence: SequenceGuard, page_size: int = 200):
        self.backend = backend
        self.page_cache = page_cache
        self.sequence = sequence
        self.page_size = page_size
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def merge_newest(self, filters: UsageFilters) -> Optional[PageCacheEntry]:
        """Fetch offset 0 for ``filters`` and merge it into the cached entry.

        Returns:
            The updated entry, the unchanged entry when nothing could be
            merged, or None when there is no entry or the response is stale
        """
        key = build_query_key(filters)
        if self._in_flight:
            logger.debug("merge already in flight, skipping key=%s", key)
            return None
        if self.page_cache.get(key) is None:
            return None
        if is_impossible(filters):
            return self.page_cache.get(key)

        token = self.sequence.current
        self._in_flight = True
        try:
            page = await self.backend.get_usage_request_entries(filters, self.page_size, 0)
        except FetchFailed as exc:
            logger.warning("newest-window merge failed: %s", exc)
            return self.page_cache.get(key)
        finally:
            self._in_flight = False

        if not self.sequence.is_current(token):
            logger.debug("discarding stale merge response key=%s", key)
            return None

        entry = self.page_cache.get(key)
        if entry is None:
            return None
        if entry.using_fallback:
            # Real rows never mix with synthetic ones: replace the whole entry.
            merged = PageCacheEntry(
                query_key=key,
                rows=tuple(merge_newest_rows((), page.rows)),
                has_more=page.has_more,
                using_fallback=False,
            )
        else:
            rows = merge_newest_rows(entry.rows, page.rows)
            if len(rows) == len(entry.rows):
                return entry
            merged = PageCacheEntry(query_key=key, rows=tuple(rows), has_more=entry.has_more, using_fallback=False)

        self.page_cache.store(merged)
        logger.debug("merged newest window into key=%s rows=%d", key, len(merged.rows))
        return merged
