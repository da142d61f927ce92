"""
Unit tests for the usage cache service.

Tests page loading, failure fallback, stale responses and the refresh
triggers against a mocked query backend.
"""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from gateway_usage.config.loader import FallbackConfig, PanelConfig, default_panel_config
from gateway_usage.core.query_key import UsageFilters, build_query_key
from gateway_usage.core.service import FALLBACK_NOTICE, LOAD_FAILED_NOTICE, UsageCacheService
from gateway_usage.core.summary import zero_summary
from gateway_usage.storage.backend import FetchFailed, UsageQueryBackend
from gateway_usage.storage.models import (
    BackendSummary,
    DailyTotals,
    EntriesPage,
    PageCacheEntry,
    ProviderTotal,
    RequestSummary,
    UsageRequestEntry,
)

NOW_MS = 1_767_225_600_000


def make_row(unix_ms, provider="official", session_id="s1", tokens=100):
    return UsageRequestEntry(
        provider=provider,
        api_key_ref="-",
        model="gpt-5.2-codex",
        origin="windows",
        session_id=session_id,
        unix_ms=unix_ms,
        input_tokens=tokens,
        output_tokens=0,
        total_tokens=tokens,
    )


def make_page(rows, has_more=False):
    return EntriesPage(ok=True, rows=tuple(rows), has_more=has_more, next_offset=len(rows))


def failure(command="get_usage_request_entries"):
    return FetchFailed(command, "connection refused")


def make_service(fallback=False, backend=None):
    backend = backend or MagicMock(spec=UsageQueryBackend)
    config = default_panel_config()
    if fallback:
        config = replace(config, fallback=FallbackConfig(enabled=True, row_count=30))
    return UsageCacheService(backend, config, clock=lambda: NOW_MS), backend


class TestLoadPage:
    """Test first-page loading."""

    def test_stores_and_returns_page(self):
        """Test a successful load is cached under the query key."""
        service, backend = make_service()
        filters = UsageFilters(hours=24)
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(2), make_row(1)], True))

        entry = asyncio.run(service.load_page(filters))

        assert entry.query_key == build_query_key(filters)
        assert entry.has_more is True
        assert service.page_cache.get(entry.query_key) is entry
        assert service.notice is None
        backend.get_usage_request_entries.assert_awaited_once_with(filters, 200, 0)

    def test_impossible_filters_skip_backend(self):
        """Test a match-nothing filter stores an empty page without fetching."""
        service, backend = make_service()
        backend.get_usage_request_entries = AsyncMock()
        filters = UsageFilters(hours=24, providers=[])

        entry = asyncio.run(service.load_page(filters))

        assert entry.rows == ()
        assert entry.has_more is False
        backend.get_usage_request_entries.assert_not_awaited()
        assert service.request_table_summary(filters) == zero_summary()

    def test_failure_keeps_last_good_entry(self):
        """Test a failed reload keeps the real rows and records a notice."""
        service, backend = make_service(fallback=True)
        filters = UsageFilters(hours=24)
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(5)]))
        first = asyncio.run(service.load_page(filters))

        backend.get_usage_request_entries = AsyncMock(side_effect=failure())
        again = asyncio.run(service.load_page(filters))

        assert again is first
        assert again.using_fallback is False
        assert service.notice == LOAD_FAILED_NOTICE

    def test_failure_with_fallback_generates_rows(self):
        """Test an empty cache switches to flagged test data."""
        service, backend = make_service(fallback=True)
        backend.get_usage_request_entries = AsyncMock(side_effect=failure())
        filters = UsageFilters(hours=24)

        entry = asyncio.run(service.load_page(filters, requests_tab=True))

        assert entry.using_fallback is True
        assert entry.has_more is False
        assert entry.rows
        assert service.notice == FALLBACK_NOTICE

    def test_fallback_is_deterministic_for_clock(self):
        """Test two services with the same clock generate identical rows."""
        filters = UsageFilters(hours=24)
        entries = []
        for _ in range(2):
            service, backend = make_service(fallback=True)
            backend.get_usage_request_entries = AsyncMock(side_effect=failure())
            entries.append(asyncio.run(service.load_page(filters)))
        assert entries[0].rows == entries[1].rows

    def test_failure_without_fallback_returns_nothing(self):
        """Test no data and no fallback yields None plus a notice."""
        service, backend = make_service(fallback=False)
        backend.get_usage_request_entries = AsyncMock(side_effect=failure())

        assert asyncio.run(service.load_page(UsageFilters(hours=24), requests_tab=True)) is None
        assert service.notice == LOAD_FAILED_NOTICE

    def test_stale_page_response_is_dropped(self):
        """Test a slow response for old filters never overwrites a newer load."""
        service, backend = make_service()
        f1 = UsageFilters(hours=24, providers=["provider_1"])
        f2 = UsageFilters(hours=24, providers=["official"])

        async def scenario():
            gate = asyncio.Event()

            async def fetch(filters, limit, offset):
                if filters == f1:
                    await gate.wait()
                    return make_page([make_row(1, "provider_1")])
                return make_page([make_row(2, "official")])

            backend.get_usage_request_entries = AsyncMock(side_effect=fetch)
            slow = asyncio.ensure_future(service.load_page(f1))
            await asyncio.sleep(0)
            fast = await service.load_page(f2)
            gate.set()
            return await slow, fast

        slow, fast = asyncio.run(scenario())

        assert slow is None
        assert service.page_cache.get(build_query_key(f1)) is None
        assert fast.rows[0].provider == "official"


class TestLoadMore:
    """Test older-page loading."""

    def test_appends_next_page(self):
        """Test load-more fetches at the current row offset."""
        service, backend = make_service()
        filters = UsageFilters(hours=24)
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(9), make_row(8)], True))
        asyncio.run(service.load_page(filters))

        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(7)], False))
        entry = asyncio.run(service.load_more(filters))

        assert [r.unix_ms for r in entry.rows] == [9, 8, 7]
        assert entry.has_more is False
        backend.get_usage_request_entries.assert_awaited_once_with(filters, 200, 2)

    def test_nothing_to_load(self):
        """Test a complete entry is returned without fetching."""
        service, backend = make_service()
        filters = UsageFilters(hours=24)
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(9)], False))
        first = asyncio.run(service.load_page(filters))

        assert asyncio.run(service.load_more(filters)) is first
        assert backend.get_usage_request_entries.await_count == 1


class TestMergeNewest:
    """Test scroll-gated merging."""

    def test_skipped_when_scrolled_down(self):
        """Test no merge happens away from the top of the table."""
        service, backend = make_service()
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(1)]))
        filters = UsageFilters(hours=24)
        asyncio.run(service.load_page(filters))

        assert asyncio.run(service.merge_newest(filters, scroll_top=300)) is None
        assert backend.get_usage_request_entries.await_count == 1

    def test_merges_at_top(self):
        """Test new rows are merged when the table is at the top."""
        service, backend = make_service()
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(1)]))
        filters = UsageFilters(hours=24)
        asyncio.run(service.load_page(filters))

        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(3), make_row(1)]))
        entry = asyncio.run(service.merge_newest(filters, scroll_top=0))

        assert [r.unix_ms for r in entry.rows] == [3, 1]


class TestSummary:
    """Test request table summary resolution through the service."""

    def test_backend_summary_used(self):
        """Test the authoritative summary is returned."""
        service, backend = make_service()
        backend.get_usage_request_summary = AsyncMock(return_value=BackendSummary(True, 7, 70, 7, 77, 1, 2))

        summary = asyncio.run(service.refresh_summary(UsageFilters(hours=24)))

        assert summary == RequestSummary(requests=7, input=70, output=7, total=77, cache_create=1, cache_read=2)

    def test_unknown_while_pages_remain(self):
        """Test a failed summary with more pages pending is unknown."""
        service, backend = make_service()
        filters = UsageFilters(hours=24)
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(1)], has_more=True))
        backend.get_usage_request_summary = AsyncMock(side_effect=failure("get_usage_request_summary"))
        asyncio.run(service.load_page(filters))

        assert asyncio.run(service.refresh_summary(filters)) is None

    def test_exact_sum_when_fully_loaded(self):
        """Test a failed summary with every row loaded sums locally."""
        service, backend = make_service()
        filters = UsageFilters(hours=24)
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(2), make_row(1)]))
        backend.get_usage_request_summary = AsyncMock(side_effect=failure("get_usage_request_summary"))
        asyncio.run(service.load_page(filters))

        summary = asyncio.run(service.refresh_summary(filters))

        assert summary.requests == 2
        assert summary.total == 200


class TestDailyAndGraph:
    """Test daily totals and graph refresh through the service."""

    def test_daily_falls_back_to_loaded_rows(self):
        """Test a failed roll-up aggregates the rows already loaded."""
        service, backend = make_service()
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(NOW_MS - 1000, tokens=40)]))
        backend.get_usage_request_daily_totals = AsyncMock(side_effect=failure("get_usage_request_daily_totals"))
        asyncio.run(service.load_page(UsageFilters(hours=24)))

        totals = asyncio.run(service.refresh_daily())

        assert totals.using_fallback is True
        assert sum(day.total_tokens for day in totals.days) == 40

    def test_daily_failure_without_rows_or_fallback(self):
        """Test nothing is derived when no real rows exist and fallback is off."""
        service, backend = make_service()
        backend.get_usage_request_daily_totals = AsyncMock(side_effect=failure("get_usage_request_daily_totals"))

        assert asyncio.run(service.refresh_daily()) is None
        assert service.notice == LOAD_FAILED_NOTICE

    def test_graph_providers_from_daily_totals(self):
        """Test chart providers come from the daily roll-up when no rows are loaded."""
        service, backend = make_service()
        backend.get_usage_request_daily_totals = AsyncMock(
            return_value=DailyTotals(
                days=(), providers=(ProviderTotal("provider_2", 50), ProviderTotal("official", 10))
            )
        )
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([]))
        asyncio.run(service.refresh_daily())

        providers = asyncio.run(service.refresh_graph(UsageFilters(hours=24)))

        assert providers == ["provider_2", "official"]
        assert backend.get_usage_request_entries.await_count == 2


class TestTriggers:
    """Test activity and tab-intent triggers."""

    def test_prefetch_for_unknown_tab(self):
        """Test an unknown tab is rejected."""
        service, _ = make_service()
        with pytest.raises(ValueError, match="Unknown tab"):
            asyncio.run(service.prefetch_for_tab("settings", UsageFilters(hours=24)))

    def test_intent_prefetch_throttled(self):
        """Test a second hover within the cooldown does nothing."""
        service, backend = make_service()
        backend.get_usage_request_daily_totals = AsyncMock(return_value=DailyTotals(days=(), providers=()))

        assert asyncio.run(service.prefetch_for_tab("analytics", UsageFilters(hours=24))) is True
        assert asyncio.run(service.prefetch_for_tab("analytics", UsageFilters(hours=24))) is False
        assert backend.get_usage_request_daily_totals.await_count == 1

    def test_activity_merges_once_per_gap(self):
        """Test activity signals inside the minimum gap are ignored."""
        service, backend = make_service()
        filters = UsageFilters(hours=24)
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(1)]))
        asyncio.run(service.load_page(filters))

        asyncio.run(service.on_activity(filters))
        assert asyncio.run(service.on_activity(filters)) is None
        assert backend.get_usage_request_entries.await_count == 2


class TestMatchNothingAndSyntheticData:
    """Test match-nothing graph queries and generated daily totals."""

    def test_graph_with_empty_provider_filter_skips_backend(self):
        """Test an empty provider selection charts nothing and never queries the backend."""
        service, backend = make_service()
        backend.get_usage_request_daily_totals = AsyncMock(
            return_value=DailyTotals(days=(), providers=(ProviderTotal("real_provider", 50),))
        )
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(1, "real_provider")]))
        asyncio.run(service.refresh_daily())
        filters = UsageFilters(hours=24, providers=[])

        providers = asyncio.run(service.refresh_graph(filters, selected_providers=filters.providers))

        assert providers == []
        backend.get_usage_request_entries.assert_not_awaited()
        assert service.graph_cache.rows_for(filters, "real_provider") == []

    def test_graph_with_empty_model_filter_skips_backend(self):
        """Test a match-nothing model filter never reaches the backend."""
        service, backend = make_service()
        backend.get_usage_request_entries = AsyncMock()

        assert asyncio.run(service.refresh_graph(UsageFilters(hours=24, models=[]), ["official"])) == []
        backend.get_usage_request_entries.assert_not_awaited()

    def test_generated_daily_totals_carry_notice(self):
        """Test a roll-up of generated rows is flagged and announced as test data."""
        service, backend = make_service(fallback=True)
        backend.get_usage_request_daily_totals = AsyncMock(side_effect=failure("get_usage_request_daily_totals"))

        totals = asyncio.run(service.refresh_daily())

        assert totals.synthetic is True
        assert totals.using_fallback is True
        assert service.notice == FALLBACK_NOTICE

    def test_local_roll_up_of_real_rows_is_not_synthetic(self):
        """Test aggregating loaded real rows is not reported as test data."""
        service, backend = make_service(fallback=True)
        backend.get_usage_request_entries = AsyncMock(return_value=make_page([make_row(NOW_MS - 1000)]))
        backend.get_usage_request_daily_totals = AsyncMock(side_effect=failure("get_usage_request_daily_totals"))
        asyncio.run(service.load_page(UsageFilters(hours=24)))

        totals = asyncio.run(service.refresh_daily())

        assert totals.using_fallback is True
        assert totals.synthetic is False
        assert service.notice is None
