"""
Data models for the usage-request data layer.

Defines the immutable usage events and the cache entries built from them.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class UsageRequestEntry:
    """Immutable record of one request routed through the gateway.

    Rows are never modified after they are fetched; two rows carrying
    identical values in every field are the same event.
    """
    provider: str
    api_key_ref: str
    model: str
    origin: str
    session_id: str
    unix_ms: int
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UsageRequestEntry":
        """Build an entry from a wire row, tolerating missing token counters."""
        return cls(
            provider=str(data.get("provider") or ""),
            api_key_ref=str(data.get("api_key_ref") or "-"),
            model=str(data.get("model") or ""),
            origin=str(data.get("origin") or "unknown"),
            session_id=str(data.get("session_id") or ""),
            unix_ms=int(data.get("unix_ms") or 0),
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
            total_tokens=int(data.get("total_tokens") or 0),
            cache_creation_input_tokens=int(data.get("cache_creation_input_tokens") or 0),
            cache_read_input_tokens=int(data.get("cache_read_input_tokens") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class EntriesPage:
    """One page returned by the entries query."""
    ok: bool
    rows: Tuple[UsageRequestEntry, ...]
    has_more: bool
    next_offset: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EntriesPage":
        rows = tuple(UsageRequestEntry.from_dict(r) for r in data.get("rows") or [])
        return cls(
            ok=bool(data.get("ok")),
            rows=rows,
            has_more=bool(data.get("has_more")),
            next_offset=int(data.get("next_offset") or len(rows)),
        )


@dataclass(frozen=True)
class BackendSummary:
    """Authoritative request totals computed by the gateway."""
    ok: bool
    requests: int
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cache_creation_input_tokens: int
    cache_read_input_tokens: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BackendSummary":
        return cls(
            ok=bool(data.get("ok")),
            requests=int(data.get("requests") or 0),
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
            total_tokens=int(data.get("total_tokens") or 0),
            cache_creation_input_tokens=int(data.get("cache_creation_input_tokens") or 0),
            cache_read_input_tokens=int(data.get("cache_read_input_tokens") or 0),
        )


@dataclass(frozen=True)
class RequestSummary:
    """Totals shown above the requests table."""
    requests: int
    input: int
    output: int
    total: int
    cache_create: int
    cache_read: int


@dataclass(frozen=True)
class PageCacheEntry:
    """Rows cached for a single query key.

    Rows are kept newest-first and never repeat an identity. An entry is
    either entirely real data or entirely synthetic fallback data.
    """
    query_key: str
    rows: Tuple[UsageRequestEntry, ...]
    has_more: bool
    using_fallback: bool = False

    def __post_init__(self):
        """Validate ordering and uniqueness of the cached rows."""
        if not isinstance(self.rows, tuple):
            object.__setattr__(self, "rows", tuple(self.rows))
        seen = set()
        previous: Optional[int] = None
        for row in self.rows:
            if previous is not None and row.unix_ms > previous:
                raise ValueError("rows must be sorted newest-first")
            previous = row.unix_ms
            if row in seen:
                raise ValueError("rows must not contain duplicate events")
            seen.add(row)


@dataclass
class GraphCacheEntry:
    """Per-provider rolling histories for one query scope."""
    query_key: str
    base_rows: Tuple[UsageRequestEntry, ...] = ()
    rows_by_provider: Dict[str, List[UsageRequestEntry]] = field(default_factory=dict)


@dataclass(frozen=True)
class DailyTotalsDay:
    """Token totals for one local calendar day."""
    day_start_unix_ms: int
    provider_totals: Dict[str, int]
    total_tokens: int
    total_requests: int = 0
    windows_request_count: int = 0
    wsl_request_count: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DailyTotalsDay":
        totals = {str(k): int(v or 0) for k, v in (data.get("provider_totals") or {}).items()}
        return cls(
            day_start_unix_ms=int(data.get("day_start_unix_ms") or 0),
            provider_totals=totals,
            total_tokens=int(data.get("total_tokens") or sum(totals.values())),
            total_requests=int(data.get("total_requests") or 0),
            windows_request_count=int(data.get("windows_request_count") or 0),
            wsl_request_count=int(data.get("wsl_request_count") or 0),
        )


@dataclass(frozen=True)
class ProviderTotal:
    provider: str
    total_tokens: int


@dataclass(frozen=True)
class DailyTotals:
    """Day x provider token roll-up over a trailing window."""
    days: Tuple[DailyTotalsDay, ...]
    providers: Tuple[ProviderTotal, ...]
    using_fallback: bool = False
    synthetic: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DailyTotals":
        days = tuple(
            sorted(
                (DailyTotalsDay.from_dict(d) for d in data.get("days") or []),
                key=lambda d: d.day_start_unix_ms,
            )
        )
        providers = tuple(
            ProviderTotal(provider=str(p.get("provider") or ""), total_tokens=int(p.get("total_tokens") or 0))
            for p in data.get("providers") or []
        )
        return cls(days=days, providers=providers)


@dataclass(frozen=True)
class UsageDistribution:
    """Request counts per provider and model from the long-window analytics summary."""
    provider_requests: Dict[str, int] = field(default_factory=dict)
    model_requests: Dict[str, int] = field(default_factory=dict)
