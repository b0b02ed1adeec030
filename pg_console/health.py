"""Bloat estimation and maintenance status classification.

The bloat figure is an approximation built from planner statistics, the
same way the usual catalog bloat queries do it. It is noisy for small or
narrow tables and must not be read as an exact measurement.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable

from . import settings

DATA_HEADER_SIZE = 24
ITEM_POINTER_SIZE = 4
MAX_ALIGN = 8


def _align(size: float, boundary: int = MAX_ALIGN) -> int:
    return int(math.ceil(size / boundary) * boundary)


def row_header_size(column_count: int, has_nulls: bool) -> int:
    """Tuple header plus null bitmap, rounded up to the alignment boundary."""
    null_bitmap = (column_count + 7) // 8 if has_nulls else 0
    return _align(DATA_HEADER_SIZE + null_bitmap)


def estimate_bloat_ratio(
    data_length: float | None,
    reltuples: float | None,
    column_count: int,
    has_nulls: bool,
    avg_row_width: float = 0,
) -> float | None:
    """
    Estimates the percentage of a table's heap that holds no live data.

    Args:
        data_length: Heap size in bytes (relpages * block_size).
        reltuples: Planner row estimate; negative means never analysed.
        column_count: Number of live columns.
        has_nulls: Whether any column was observed holding nulls.
        avg_row_width: Sum of the columns' average stored widths.

    Returns:
        Ratio in [0, 100] rounded to two decimals, or None when the heap is
        empty or the table has no statistics yet.
    """
    if not data_length or data_length <= 0 or reltuples is None or reltuples < 0:
        return None

    row_size = row_header_size(column_count, has_nulls) + _align(avg_row_width or 0) + ITEM_POINTER_SIZE
    ratio = (float(data_length) - float(reltuples) * row_size) / float(data_length) * 100
    return round(min(100.0, max(0.0, ratio)), 2)


def is_bloated(ratio: float | None, threshold: float | None = None) -> bool:
    threshold = settings.BLOAT_THRESHOLD if threshold is None else threshold
    return ratio is not None and ratio > threshold


def average_bloat(ratios: Iterable[float | None]) -> float | None:
    """Average of the computable, positive per-table ratios."""
    values = [r for r in ratios if r is not None and r > 0]
    if not values:
        return None
    return round(sum(values) / len(values), 2)


@dataclass(frozen=True)
class MaintenanceStatus:
    label: str
    color: str
    days_since: int | None

    def to_payload(self) -> dict[str, Any]:
        return {"label": self.label, "color": self.color, "daysSince": self.days_since}


_MISSING = object()
_INVALID = object()


def _parse_timestamp(value: Any) -> Any:
    if value is None:
        return _MISSING
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text or text.lower() == "never":
            return _MISSING
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return _INVALID
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return _INVALID


def classify_maintenance(
    last_vacuum: Any,
    last_analyze: Any,
    now: datetime | None = None,
    fresh_days: int | None = None,
) -> MaintenanceStatus:
    """
    Classifies a database's maintenance state from its last vacuum and analyze times.

    A missing timestamp wins over an unparseable one, so a database that was
    never vacuumed reads "Never Run" regardless of the other value.
    """
    fresh_days = settings.MAINTENANCE_FRESH_DAYS if fresh_days is None else fresh_days
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    vacuum = _parse_timestamp(last_vacuum)
    analyze = _parse_timestamp(last_analyze)

    if vacuum is _MISSING or analyze is _MISSING:
        return MaintenanceStatus("Never Run", "red", None)
    if vacuum is _INVALID or analyze is _INVALID:
        return MaintenanceStatus("Unknown", "orange", None)

    most_recent = max(vacuum, analyze)
    days_since = max(0, math.floor((now - most_recent) / timedelta(days=1)))

    window = timedelta(days=fresh_days)
    fresh = sum(1 for ts in (vacuum, analyze) if now - ts <= window)
    if fresh == 2:
        return MaintenanceStatus("Good", "green", days_since)
    if fresh == 1:
        return MaintenanceStatus("Warning", "orange", days_since)
    return MaintenanceStatus("Needs Maintenance", "red", days_since)


def format_uptime(uptime: timedelta | None) -> str:
    if uptime is None:
        return "Unknown"

    total = int(uptime.total_seconds())
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)

    if days > 0:
        return f"{days} days, {hours} hours"
    if hours > 0:
        return f"{hours} hours, {minutes} minutes"
    return f"{minutes} minutes, {seconds} seconds"


def format_percent(value: Any, missing: str = "N/A") -> str:
    if value is None:
        return missing
    return f"{float(value):g}%"
