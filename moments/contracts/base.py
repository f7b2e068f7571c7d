"""
Base Contracts and Shared Helpers

Foundational types and helpers used by every layer.
Pure data, no side effects.

BOUNDARY ENFORCEMENT:
=====================
- Layers import from here, never the reverse
- Timestamps are always timezone-aware UTC
"""

from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Tuple


class SourceType(Enum):
    """Catalog a piece of content belongs to."""
    COMPANY = "company"
    TECHNOLOGY = "technology"


class AnalysisScope(Enum):
    """Which catalogs an analysis run covers."""
    COMPANIES = "companies"
    TECHNOLOGIES = "technologies"
    ALL = "all"

    def includes(self, source_type: SourceType) -> bool:
        if self is AnalysisScope.ALL:
            return True
        if self is AnalysisScope.COMPANIES:
            return source_type is SourceType.COMPANY
        return source_type is SourceType.TECHNOLOGY


# =============================================================================
# TIME HELPERS
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string (or datetime) into an aware UTC datetime.

    Accepts the trailing 'Z' form written by JavaScript clients.
    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def as_str_tuple(values: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    """Coerce a loosely typed list into a tuple of non-empty strings."""
    if not values or isinstance(values, (str, bytes)):
        return ()
    return tuple(str(v) for v in values if v is not None and str(v) != "")
