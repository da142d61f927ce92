"""
Unit tests for the request table summary resolver.
"""

from gateway_usage.core.summary import resolve_request_table_summary, summarize_rows, zero_summary
from gateway_usage.storage.models import BackendSummary, RequestSummary, UsageRequestEntry


def make_row(session_id, unix_ms, input_tokens, output_tokens, cache_create=0, cache_read=0):
    return UsageRequestEntry(
        provider="official",
        api_key_ref="-",
        model="gpt-5.2-codex",
        origin="wsl2",
        session_id=session_id,
        unix_ms=unix_ms,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        cache_creation_input_tokens=cache_create,
        cache_read_input_tokens=cache_read,
    )


class TestResolveRequestTableSummary:
    """Test backend, local and unknown summary resolution."""

    def test_uses_backend_summary_when_available(self):
        """Test an ok backend summary is returned verbatim even with few rows loaded."""
        backend = BackendSummary(
            ok=True,
            requests=1003,
            input_tokens=10_000,
            output_tokens=2_000,
            total_tokens=12_000,
            cache_creation_input_tokens=500,
            cache_read_input_tokens=1_500,
        )
        summary = resolve_request_table_summary(backend, [], has_more=True)
        assert summary == RequestSummary(
            requests=1003, input=10_000, output=2_000, total=12_000, cache_create=500, cache_read=1_500
        )

    def test_no_partial_totals_when_more_pages_exist(self):
        """Test a partial sum is never reported."""
        rows = [make_row("s1", 1, 100, 20)]
        assert resolve_request_table_summary(None, rows, has_more=True) is None

    def test_backend_summary_not_ok_is_ignored(self):
        """Test a failed backend summary falls through to the unknown rule."""
        backend = BackendSummary(False, 5, 5, 5, 10, 0, 0)
        assert resolve_request_table_summary(backend, [make_row("s1", 1, 1, 1)], has_more=True) is None

    def test_falls_back_to_rows_when_all_pages_loaded(self):
        """Test the exact sum over every loaded row."""
        rows = [
            make_row("s1", 1, 100, 20, cache_create=3, cache_read=7),
            make_row("s2", 2, 10, 5, cache_create=2, cache_read=4),
        ]
        summary = resolve_request_table_summary(None, rows, has_more=False)
        assert summary == RequestSummary(requests=2, input=110, output=25, total=135, cache_create=5, cache_read=11)

    def test_backend_summary_ignored_when_not_preferred(self):
        """Test callers can opt out of the backend summary."""
        backend = BackendSummary(True, 99, 1, 1, 2, 0, 0)
        summary = resolve_request_table_summary(backend, [], has_more=False, prefer_backend_summary=False)
        assert summary == zero_summary()


class TestSummarizeRows:
    """Test local summation."""

    def test_empty_rows(self):
        """Test empty input sums to zero."""
        assert summarize_rows([]) == zero_summary()
