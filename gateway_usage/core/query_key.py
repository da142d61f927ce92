"""
Query key codec.

Canonicalizes a filter set into a stable cache identifier.
"""

import json
from dataclasses import dataclass, replace
from typing import Iterable, Optional, Tuple

# Upper clamp the gateway applies to the hours window (20 years).
FULL_HISTORY_HOURS = 24 * 365 * 20

REQUESTS_TAB = "requests"
ANALYTICS_TAB = "analytics"


def _normalize_dimension(values: Optional[Iterable[str]]) -> Optional[Tuple[str, ...]]:
    if values is None:
        return None
    return tuple(sorted({str(v) for v in values}))


@dataclass(frozen=True)
class UsageFilters:
    """Filter state for a usage-request query.

    ``None`` in a list dimension means unrestricted; an empty tuple means
    nothing can match along that dimension.
    """
    hours: int
    from_unix_ms: Optional[int] = None
    to_unix_ms: Optional[int] = None
    providers: Optional[Tuple[str, ...]] = None
    models: Optional[Tuple[str, ...]] = None
    origins: Optional[Tuple[str, ...]] = None
    sessions: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        """Coerce list dimensions into sorted, de-duplicated tuples."""
        object.__setattr__(self, "hours", int(self.hours))
        if self.hours <= 0:
            raise ValueError("hours must be > 0")
        for name in ("from_unix_ms", "to_unix_ms"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, int(value))
        for name in ("providers", "models", "origins", "sessions"):
            object.__setattr__(self, name, _normalize_dimension(getattr(self, name)))

    def with_providers(self, providers: Optional[Iterable[str]]) -> "UsageFilters":
        return replace(self, providers=_normalize_dimension(providers))


def build_query_key(filters: UsageFilters) -> str:
    """Serialize filters into a byte-stable key.

    Field order is fixed and list dimensions are already canonical, so
    semantically equal filter sets always produce identical keys.
    """
    payload = [
        ["hours", filters.hours],
        ["fromUnixMs", filters.from_unix_ms],
        ["toUnixMs", filters.to_unix_ms],
        ["providers", list(filters.providers) if filters.providers is not None else None],
        ["models", list(filters.models) if filters.models is not None else None],
        ["origins", list(filters.origins) if filters.origins is not None else None],
        ["sessions", list(filters.sessions) if filters.sessions is not None else None],
    ]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True)


def is_strict(filters: UsageFilters) -> bool:
    """True when any dimension besides the hours window is restricted."""
    return any(
        value is not None
        for value in (
            filters.from_unix_ms,
            filters.to_unix_ms,
            filters.providers,
            filters.models,
            filters.origins,
            filters.sessions,
        )
    )


def is_impossible(filters: UsageFilters) -> bool:
    """True when some dimension was resolved to match nothing."""
    return any(
        value is not None and len(value) == 0
        for value in (filters.providers, filters.models, filters.origins, filters.sessions)
    )


def canonical_filters(filters: UsageFilters) -> UsageFilters:
    return UsageFilters(hours=filters.hours)


def resolve_request_fetch_hours(details_tab: str, show_filters: bool, usage_window_hours: int) -> int:
    """Pick the hours window for request-table queries.

    The requests tab without visible filters lists the whole history;
    every other combination keeps the analytics window.
    """
    if details_tab == REQUESTS_TAB and not show_filters:
        return FULL_HISTORY_HOURS
    return usage_window_hours
