"""
Database connection management.

Provides SQLite connections to a local gateway usage ledger. The gateway may
be appending rows while the panel reads, so connections wait on a locked
database instead of failing immediately.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "gateway_usage.db"
DEFAULT_BUSY_TIMEOUT_S = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH, busy_timeout_s: float = DEFAULT_BUSY_TIMEOUT_S) -> sqlite3.Connection:
    """Open a connection to the usage ledger.

    Args:
        db_path: Path to SQLite database file
        busy_timeout_s: Seconds to wait for a writer's lock before raising

    Returns:
        SQLite connection
    """
    return sqlite3.connect(str(Path(db_path)), timeout=busy_timeout_s)
