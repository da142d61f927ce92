"""
Request table summary resolution.

Never reports a partial total: when rows are still paged out and the
gateway gave no authoritative summary, the answer is unknown.
"""

from typing import Optional, Sequence

from gateway_usage.storage.models import BackendSummary, RequestSummary, UsageRequestEntry


def zero_summary() -> RequestSummary:
    return RequestSummary(requests=0, input=0, output=0, total=0, cache_create=0, cache_read=0)


def summarize_rows(rows: Sequence[UsageRequestEntry]) -> RequestSummary:
    """Exact totals over ``rows``."""
    return RequestSummary(
        requests=len(rows),
        input=sum(r.input_tokens for r in rows),
        output=sum(r.output_tokens for r in rows),
        total=sum(r.total_tokens for r in rows),
        cache_create=sum(r.cache_creation_input_tokens for r in rows),
        cache_read=sum(r.cache_read_input_tokens for r in rows),
    )


def resolve_request_table_summary(
    usage_request_summary: Optional[BackendSummary],
    displayed_rows: Sequence[UsageRequestEntry],
    has_more: bool,
    prefer_backend_summary: bool = True,
) -> Optional[RequestSummary]:
    """Decide which totals the requests table may show.

    Args:
        usage_request_summary: Summary returned by the gateway, if any
        displayed_rows: Rows currently loaded for the query
        has_more: More pages exist beyond ``displayed_rows``
        prefer_backend_summary: Use the gateway summary when it is ok

    Returns:
        Backend totals verbatim, the exact sum over fully loaded rows, or
        None when only a partial sum would be available
    """
    if prefer_backend_summary and usage_request_summary is not None and usage_request_summary.ok:
        return RequestSummary(
            requests=usage_request_summary.requests,
            input=usage_request_summary.input_tokens,
            output=usage_request_summary.output_tokens,
            total=usage_request_summary.total_tokens,
            cache_create=usage_request_summary.cache_creation_input_tokens,
            cache_read=usage_request_summary.cache_read_input_tokens,
        )
    if has_more:
        return None
    return summarize_rows(displayed_rows)
