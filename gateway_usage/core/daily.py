"""
Daily token roll-up.

Rolls raw usage rows into day x provider token totals over a trailing
window. The window is anchored to the most recent day that has data, not to
today, so an idle day does not hide the history before it.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Set

from gateway_usage.storage.backend import FetchFailed, UsageQueryBackend
from gateway_usage.storage.models import DailyTotals, DailyTotalsDay, ProviderTotal, UsageRequestEntry
from .sequence import SequenceGuard

logger = logging.getLogger(__name__)

DAILY_WINDOW_DAYS = 45

ORIGIN_WINDOWS = "windows"
ORIGIN_WSL2 = "wsl2"


def _local_date(unix_ms: int) -> date:
    return datetime.fromtimestamp(unix_ms / 1000).date()


def _date_start_ms(day: date) -> int:
    return int(datetime.combine(day, time()).timestamp() * 1000)


def floor_to_local_midnight(unix_ms: int) -> int:
    """Start of the local calendar day containing ``unix_ms``, in unix ms."""
    return _date_start_ms(_local_date(unix_ms))


@dataclass
class _DayBucket:
    provider_totals: Dict[str, int] = field(default_factory=dict)
    total_tokens: int = 0
    total_requests: int = 0
    windows_request_count: int = 0
    wsl_request_count: int = 0


def aggregate_daily_totals(
    rows: Iterable[UsageRequestEntry],
    window_days: int = DAILY_WINDOW_DAYS,
    using_fallback: bool = False,
    synthetic: bool = False,
) -> DailyTotals:
    """Group rows by local day and sum tokens per provider.

    When the data spans at least ``window_days`` days the window ends at the
    most recent day with data and looks back ``window_days`` days from there;
    otherwise the full span is kept. Days without rows inside the window are
    emitted with zero totals so the x-axis stays continuous.

    Args:
        rows: Raw usage rows in any order
        window_days: Trailing window size in days
        using_fallback: Mark the result as derived client-side
        synthetic: Mark the result as built from generated rows

    Returns:
        DailyTotals with days oldest-first and providers by tokens descending
    """
    if window_days <= 0:
        raise ValueError("window_days must be > 0")

    buckets: Dict[date, _DayBucket] = {}
    for row in rows:
        bucket = buckets.setdefault(_local_date(row.unix_ms), _DayBucket())
        bucket.provider_totals[row.provider] = bucket.provider_totals.get(row.provider, 0) + row.total_tokens
        bucket.total_tokens += row.total_tokens
        bucket.total_requests += 1
        if row.origin == ORIGIN_WSL2:
            bucket.wsl_request_count += 1
        elif row.origin == ORIGIN_WINDOWS:
            bucket.windows_request_count += 1

    if not buckets:
        return DailyTotals(days=(), providers=(), using_fallback=using_fallback, synthetic=synthetic)

    anchor = max(buckets)
    first = min(buckets)
    span_days = (anchor - first).days + 1
    start = anchor - timedelta(days=window_days - 1) if span_days >= window_days else first

    days: List[DailyTotalsDay] = []
    provider_sums: Dict[str, int] = {}
    current = start
    while current <= anchor:
        bucket = buckets.get(current, _DayBucket())
        days.append(DailyTotalsDay(
            day_start_unix_ms=_date_start_ms(current),
            provider_totals=dict(bucket.provider_totals),
            total_tokens=bucket.total_tokens,
            total_requests=bucket.total_requests,
            windows_request_count=bucket.windows_request_count,
            wsl_request_count=bucket.wsl_request_count,
        ))
        for provider, tokens in bucket.provider_totals.items():
            provider_sums[provider] = provider_sums.get(provider, 0) + tokens
        current += timedelta(days=1)

    providers = tuple(
        ProviderTotal(provider=name, total_tokens=tokens)
        for name, tokens in sorted(provider_sums.items(), key=lambda item: (-item[1], item[0]))
    )
    return DailyTotals(days=tuple(days), providers=providers, using_fallback=using_fallback, synthetic=synthetic)


def clamp_daily_window(totals: DailyTotals, window_days: int = DAILY_WINDOW_DAYS) -> DailyTotals:
    """Keep the newest ``window_days`` entries of an already aggregated result."""
    days = sorted(totals.days, key=lambda d: d.day_start_unix_ms)
    if len(days) <= window_days:
        return replace(totals, days=tuple(days))
    return replace(totals, days=tuple(days[-window_days:]))


@dataclass(frozen=True)
class OriginFlags:
    win: bool
    wsl: bool


@dataclass
class CalendarIndex:
    """Days the date picker should highlight, with the origins seen on each."""
    days_with_records: Set[int] = field(default_factory=set)
    day_origin_flags: Dict[int, OriginFlags] = field(default_factory=dict)


def build_calendar_index(
    is_requests_tab: bool,
    rows: Sequence[UsageRequestEntry],
    daily_days: Sequence[DailyTotalsDay],
) -> CalendarIndex:
    """Index calendar days from the loaded rows and the daily totals.

    Daily totals cover history beyond the loaded page, so a day is marked
    even when no row for it is currently loaded. Requests with an unknown
    origin count as windows requests.
    """
    index = CalendarIndex()
    if not is_requests_tab:
        return index

    def _mark(day: int, win: bool, wsl: bool) -> None:
        index.days_with_records.add(day)
        previous = index.day_origin_flags.get(day)
        if previous is not None:
            win = win or previous.win
            wsl = wsl or previous.wsl
        index.day_origin_flags[day] = OriginFlags(win=win, wsl=wsl)

    for day in daily_days:
        if day.total_requests <= 0 and day.total_tokens <= 0:
            continue
        other = day.total_requests - day.windows_request_count - day.wsl_request_count
        _mark(
            day.day_start_unix_ms,
            win=day.windows_request_count > 0 or other > 0,
            wsl=day.wsl_request_count > 0,
        )

    for row in rows:
        is_wsl = row.origin == ORIGIN_WSL2
        _mark(floor_to_local_midnight(row.unix_ms), win=not is_wsl, wsl=is_wsl)

    return index


class DailyAggregator:
    """Holds the latest daily roll-up and refreshes it from the backend.

    The remote roll-up is authoritative; when it fails and fallback is
    permitted, the same shape is derived from whatever rows are on hand.
    """

    def __init__(self, backend: UsageQueryBackend, window_days: int = DAILY_WINDOW_DAYS):
        self.backend = backend
        self.window_days = window_days
        self.sequence = SequenceGuard()
        self.totals: Optional[DailyTotals] = None

    @property
    def providers(self) -> List[str]:
        if self.totals is None:
            return []
        return [p.provider for p in self.totals.providers]

    async def refresh(
        self,
        rows_on_hand: Sequence[UsageRequestEntry],
        allow_fallback: bool,
        synthetic: bool = False,
    ) -> Optional[DailyTotals]:
        """Refresh the roll-up.

        ``synthetic`` marks ``rows_on_hand`` as generated rows, so a local
        roll-up of them is flagged as test data.

        Returns:
            The current totals (unchanged when the response was superseded)

        Raises:
            FetchFailed: If the remote call fails and fallback is not permitted
        """
        token = self.sequence.begin()
        try:
            totals = await self.backend.get_usage_request_daily_totals(self.window_days)
        except FetchFailed as exc:
            if not self.sequence.is_current(token):
                return self.totals
            if not allow_fallback:
                raise
            logger.warning("daily totals fetch failed, aggregating %d local rows: %s", len(rows_on_hand), exc)
            self.totals = aggregate_daily_totals(
                rows_on_hand, self.window_days, using_fallback=True, synthetic=synthetic
            )
            return self.totals

        if not self.sequence.is_current(token):
            logger.debug("discarding stale daily totals response")
            return self.totals
        self.totals = clamp_daily_window(totals, self.window_days)
        return self.totals
