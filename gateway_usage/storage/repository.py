"""
SQLite-backed usage ledger.

Serves the three read queries of the remote interface from a local copy of
the gateway's usage-request table.
"""

import sqlite3
import time
from typing import Callable, List, Optional, Tuple

from gateway_usage.core.daily import aggregate_daily_totals
from gateway_usage.core.query_key import UsageFilters, is_impossible
from .backend import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, FetchFailed, UsageQueryBackend
from .db import DEFAULT_DB_PATH, get_connection
from .models import BackendSummary, DailyTotals, EntriesPage, UsageRequestEntry

_COLUMNS = (
    "provider, api_key_ref, model, origin, session_id, unix_ms, input_tokens, "
    "output_tokens, total_tokens, cache_creation_input_tokens, cache_read_input_tokens"
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _row_to_entry(row: tuple) -> UsageRequestEntry:
    return UsageRequestEntry(
        provider=row[0],
        api_key_ref=row[1],
        model=row[2],
        origin=row[3],
        session_id=row[4],
        unix_ms=row[5],
        input_tokens=row[6],
        output_tokens=row[7],
        total_tokens=row[8],
        cache_creation_input_tokens=row[9],
        cache_read_input_tokens=row[10],
    )


class SqliteUsageBackend(UsageQueryBackend):
    """Read-only query backend over a local usage ledger.

    Filter semantics follow the gateway: ``None`` leaves a dimension
    unrestricted and an empty list matches nothing.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Optional[Callable[[], int]] = None):
        """Initialize the backend with a database path.

        Args:
            db_path: Path to SQLite database file
            clock: Returns the current time in unix milliseconds
        """
        self.db_path = db_path
        self._clock = clock or _now_ms

    def _where(self, filters: UsageFilters) -> Tuple[str, list]:
        since = self._clock() - filters.hours * 60 * 60 * 1000
        conditions = ["unix_ms >= ?"]
        params: list = [since]

        if filters.from_unix_ms is not None:
            conditions.append("unix_ms >= ?")
            params.append(filters.from_unix_ms)
        if filters.to_unix_ms is not None:
            conditions.append("unix_ms <= ?")
            params.append(filters.to_unix_ms)

        for column, values in (
            ("provider", filters.providers),
            ("model", filters.models),
            ("origin", filters.origins),
            ("session_id", filters.sessions),
        ):
            if values is None:
                continue
            placeholders = ", ".join("?" for _ in values)
            conditions.append(f"{column} IN ({placeholders})")
            params.extend(values)

        return " WHERE " + " AND ".join(conditions), params

    def list_entries(self, filters: UsageFilters, limit: int, offset: int) -> Tuple[List[UsageRequestEntry], bool]:
        """Fetch one page of rows ordered newest-first.

        Returns:
            Tuple of (rows, has_more)
        """
        if is_impossible(filters):
            return [], False

        page_limit = max(1, min(int(limit or DEFAULT_PAGE_LIMIT), MAX_PAGE_LIMIT))
        where, params = self._where(filters)
        query = f"SELECT {_COLUMNS} FROM usage_request{where} ORDER BY unix_ms DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([page_limit + 1, max(0, int(offset))])

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            rows = [_row_to_entry(r) for r in cursor.fetchall()]
        finally:
            conn.close()

        return rows[:page_limit], len(rows) > page_limit

    def summarize(self, filters: UsageFilters) -> BackendSummary:
        if is_impossible(filters):
            return BackendSummary(True, 0, 0, 0, 0, 0, 0)

        where, params = self._where(filters)
        query = f"""
            SELECT
                COUNT(*),
                SUM(input_tokens),
                SUM(output_tokens),
                SUM(total_tokens),
                SUM(cache_creation_input_tokens),
                SUM(cache_read_input_tokens)
            FROM usage_request{where}
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(query, params).fetchone()
        finally:
            conn.close()

        return BackendSummary(
            ok=True,
            requests=row[0] or 0,
            input_tokens=row[1] or 0,
            output_tokens=row[2] or 0,
            total_tokens=row[3] or 0,
            cache_creation_input_tokens=row[4] or 0,
            cache_read_input_tokens=row[5] or 0,
        )

    def all_rows(self) -> List[UsageRequestEntry]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"SELECT {_COLUMNS} FROM usage_request ORDER BY unix_ms DESC, id DESC")
            return [_row_to_entry(r) for r in cursor.fetchall()]
        finally:
            conn.close()

    async def get_usage_request_entries(self, filters: UsageFilters, limit: int, offset: int) -> EntriesPage:
        try:
            rows, has_more = self.list_entries(filters, limit, offset)
        except sqlite3.Error as exc:
            raise FetchFailed("get_usage_request_entries", str(exc)) from exc
        return EntriesPage(ok=True, rows=tuple(rows), has_more=has_more, next_offset=offset + len(rows))

    async def get_usage_request_summary(self, filters: UsageFilters) -> BackendSummary:
        try:
            return self.summarize(filters)
        except sqlite3.Error as exc:
            raise FetchFailed("get_usage_request_summary", str(exc)) from exc

    async def get_usage_request_daily_totals(self, days: int) -> DailyTotals:
        try:
            rows = self.all_rows()
        except sqlite3.Error as exc:
            raise FetchFailed("get_usage_request_daily_totals", str(exc)) from exc
        return aggregate_daily_totals(rows, window_days=days)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_request table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_request (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                provider TEXT NOT NULL,
                api_key_ref TEXT NOT NULL DEFAULT '-',
                model TEXT NOT NULL,
                origin TEXT NOT NULL,
                session_id TEXT NOT NULL,
                unix_ms INTEGER NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                cache_creation_input_tokens INTEGER NOT NULL DEFAULT 0,
                cache_read_input_tokens INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_usage_request_unix_ms ON usage_request (unix_ms)")
        conn.commit()
    finally:
        conn.close()


def insert_usage_requests(rows: List[UsageRequestEntry], db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert usage rows atomically.

    Args:
        rows: Rows to record
        db_path: Path to SQLite database file
    """
    if not rows:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        for row in rows:
            conn.execute(f"""
                INSERT INTO usage_request ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                row.provider,
                row.api_key_ref,
                row.model,
                row.origin,
                row.session_id,
                row.unix_ms,
                row.input_tokens,
                row.output_tokens,
                row.total_tokens,
                row.cache_creation_input_tokens,
                row.cache_read_input_tokens,
            ))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
