"""
Remote query interface consumed by the cache layer.

All backends expose the same three idempotent reads. Any failure is raised
as FetchFailed so callers can treat it uniformly.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from gateway_usage.core.query_key import UsageFilters
from .models import BackendSummary, DailyTotals, EntriesPage

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 200
MAX_PAGE_LIMIT = 1000


class FetchFailed(Exception):
    """Raised when a remote query rejects, times out or returns ok=false."""
    def __init__(self, command: str, message: str):
        super().__init__(f"{command}: {message}")
        self.command = command


def _list_or_none(values) -> Optional[list]:
    return list(values) if values is not None else None


def build_usage_request_summary_args(filters: UsageFilters) -> Dict[str, Any]:
    """Build arguments for the summary query.

    Range bounds use the camelCase names the gateway command expects.
    """
    return {
        "hours": filters.hours,
        "fromUnixMs": filters.from_unix_ms,
        "toUnixMs": filters.to_unix_ms,
        "providers": _list_or_none(filters.providers),
        "models": _list_or_none(filters.models),
        "origins": _list_or_none(filters.origins),
        "sessions": _list_or_none(filters.sessions),
    }


def build_usage_request_entries_args(filters: UsageFilters, limit: int, offset: int) -> Dict[str, Any]:
    """Build arguments for the entries query.

    Args:
        filters: Current filter state
        limit: Page size
        offset: Number of rows to skip

    Returns:
        Argument mapping with camelCase range keys and no legacy
        ``from_unix_ms`` / ``to_unix_ms`` duplicates
    """
    args = build_usage_request_summary_args(filters)
    args["limit"] = limit
    args["offset"] = offset
    return args


class UsageQueryBackend(ABC):
    """Read-only access to the gateway's usage-request ledger."""

    @abstractmethod
    async def get_usage_request_entries(self, filters: UsageFilters, limit: int, offset: int) -> EntriesPage:
        """Return one newest-first page of rows matching ``filters``."""

    @abstractmethod
    async def get_usage_request_summary(self, filters: UsageFilters) -> BackendSummary:
        """Return request and token totals over every row matching ``filters``."""

    @abstractmethod
    async def get_usage_request_daily_totals(self, days: int) -> DailyTotals:
        """Return per-day per-provider token totals for the trailing ``days``."""


class HttpUsageBackend(UsageQueryBackend):
    """Backend that posts command arguments to the gateway's HTTP bridge.

    Each command is served at ``{base_url}/{command}`` and answers with the
    same JSON payload the desktop shell receives.
    """

    def __init__(self, base_url: str, timeout_s: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required and cannot be empty")
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._client = client

    async def _invoke(self, command: str, args: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{command}"
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=args, timeout=self.timeout_s)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    resp = await client.post(url, json=args)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("%s failed: %s", command, exc)
            raise FetchFailed(command, str(exc)) from exc

        if not isinstance(payload, dict) or not payload.get("ok"):
            raise FetchFailed(command, "gateway returned ok=false")
        return payload

    async def get_usage_request_entries(self, filters: UsageFilters, limit: int, offset: int) -> EntriesPage:
        payload = await self._invoke(
            "get_usage_request_entries",
            build_usage_request_entries_args(filters, limit, offset),
        )
        return EntriesPage.from_dict(payload)

    async def get_usage_request_summary(self, filters: UsageFilters) -> BackendSummary:
        payload = await self._invoke("get_usage_request_summary", build_usage_request_summary_args(filters))
        return BackendSummary.from_dict(payload)

    async def get_usage_request_daily_totals(self, days: int) -> DailyTotals:
        payload = await self._invoke("get_usage_request_daily_totals", {"days": days})
        return DailyTotals.from_dict(payload)
