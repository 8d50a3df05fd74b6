"""Boundary normalization shared by the provider fetchers and the ICS importer."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from planner_sync.models import DAY_END_MINUTE, DEFAULT_EXTERNAL_DURATION_MINUTES

_FRACTION_PATTERN = re.compile(r"\.(\d+)")


@dataclass(frozen=True)
class ParsedBoundary:
    """A start or end boundary reduced to a local day and minute.

    ``minute`` is ``None`` for date-only (all-day) values.
    """

    day: date
    minute: int | None = None

    @property
    def all_day(self) -> bool:
        return self.minute is None


@dataclass(frozen=True)
class NormalizedWindow:
    day: date
    start: int
    end: int
    all_day: bool


def coerce_zoneinfo(timezone: str | None) -> ZoneInfo | tzinfo:
    if not timezone:
        return UTC
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def parse_iso_datetime(value: str) -> datetime:
    """Parse an RFC 3339 / ISO 8601 date-time.

    Accepts a trailing ``Z`` and fractional seconds of any precision (Graph
    sends seven digits).  The result is naive when *value* has no offset.
    """
    normalized = value.strip()
    if normalized.endswith(("Z", "z")):
        normalized = f"{normalized[:-1]}+00:00"
    normalized = _FRACTION_PATTERN.sub(
        lambda m: "." + m.group(1)[:6].ljust(6, "0"), normalized, count=1
    )
    try:
        return datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"invalid date-time value: {value!r}") from exc


def to_local_boundary(value: datetime, tz: tzinfo) -> ParsedBoundary:
    """Convert *value* to *tz*; naive datetimes are taken as already local."""
    local = value.astimezone(tz) if value.tzinfo is not None else value
    return ParsedBoundary(day=local.date(), minute=local.hour * 60 + local.minute)


def normalize_time_window(
    start: ParsedBoundary | None,
    end: ParsedBoundary | None,
) -> NormalizedWindow | None:
    """Reduce a start/end pair to one day-local window.

    All-day starts span 00:00-23:59.  A missing, all-day, earlier-day or
    non-positive end falls back to start + 60 minutes capped at 23:59; an end
    on a later day is capped at 23:59.
    """
    if start is None:
        return None
    if start.minute is None:
        return NormalizedWindow(day=start.day, start=0, end=DAY_END_MINUTE, all_day=True)

    fallback_end = min(start.minute + DEFAULT_EXTERNAL_DURATION_MINUTES, DAY_END_MINUTE)
    if end is None or end.minute is None or end.day < start.day:
        end_minute = fallback_end
    elif end.day > start.day:
        end_minute = DAY_END_MINUTE
    else:
        end_minute = end.minute
    if end_minute <= start.minute:
        end_minute = fallback_end
    return NormalizedWindow(day=start.day, start=start.minute, end=end_minute, all_day=False)


def fallback_external_id(*parts: str) -> str:
    """Stable stand-in id for items that arrive without one."""
    digest = hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()
    return digest[:16]


def make_event_id(prefix: str, external_id: str, day: date, start: int) -> str:
    """Deterministic id so that a re-sync replaces rather than duplicates."""
    hours, minutes = divmod(start, 60)
    return f"{prefix}-{external_id}-{day.isoformat()}-{hours:02d}:{minutes:02d}"
