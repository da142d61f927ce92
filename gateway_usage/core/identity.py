"""
Row identity for deduplication.
"""

from dataclasses import astuple
from typing import Iterable, List, Tuple

from gateway_usage.storage.models import UsageRequestEntry


def row_identity(row: UsageRequestEntry) -> Tuple:
    """Composite identity of a usage row: every field, in declaration order."""
    return astuple(row)


def dedupe_rows(rows: Iterable[UsageRequestEntry]) -> List[UsageRequestEntry]:
    """Drop repeated events, keeping the first occurrence and the input order."""
    seen = set()
    unique = []
    for row in rows:
        identity = row_identity(row)
        if identity in seen:
            continue
        seen.add(identity)
        unique.append(row)
    return unique
