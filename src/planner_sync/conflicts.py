"""Blocked-range computation and greedy slot fitting for one calendar day.

Conflict resolution is strictly day-local: an event that cannot be placed
before midnight is rejected with :class:`NoAvailableSlot`, never moved to
another day.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date

from planner_sync.errors import NoAvailableSlot
from planner_sync.models import MIN_EVENT_MINUTES, MINUTES_PER_DAY, FitResult, TimeRange
from planner_sync.store import EventStore, SettingsStore

logger = logging.getLogger(__name__)

MAX_FIT_ITERATIONS = 48


def merge_ranges(ranges: Iterable[TimeRange]) -> list[TimeRange]:
    """Return the minimal sorted, disjoint cover of *ranges*.

    Ranges that touch (``next.start == current.end``) are merged as well.
    """
    ordered = sorted(ranges, key=lambda r: (r.start, r.end))
    if not ordered:
        return []

    merged: list[TimeRange] = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if current.start <= last.end:
            merged[-1] = TimeRange(start=last.start, end=max(last.end, current.end))
        else:
            merged.append(current)
    return merged


def fit_into_free_time(
    blocked: list[TimeRange],
    desired_start: int,
    desired_end: int,
) -> FitResult:
    """Greedily move ``[desired_start, desired_end)`` forward past *blocked*.

    *blocked* must be the output of :func:`merge_ranges`.  The requested
    duration (at least 15 minutes) is preserved.
    """
    if not 0 <= desired_start < MINUTES_PER_DAY:
        raise NoAvailableSlot("Start time is outside the day.")

    duration = max(desired_end - desired_start, MIN_EVENT_MINUTES)
    start = desired_start
    end = start + duration
    shifted = False

    for _ in range(MAX_FIT_ITERATIONS):
        conflict = next((r for r in blocked if start < r.end and end > r.start), None)
        if conflict is None:
            if end > MINUTES_PER_DAY:
                break
            return FitResult(start=start, end=end, shifted=shifted)
        start = conflict.end
        end = start + duration
        shifted = True
        if end > MINUTES_PER_DAY:
            break

    raise NoAvailableSlot("No free slot available. Change the time or the day.")


class ConflictResolver:
    """Reads the event store to place owned events into free time."""

    def __init__(self, store: EventStore, settings: SettingsStore) -> None:
        self._store = store
        self._settings = settings

    def compute_blocked_ranges(
        self,
        day: date,
        exclude_event_id: str | None = None,
    ) -> list[TimeRange]:
        buffer_minutes = self._settings.current.buffer_minutes
        ranges: list[TimeRange] = []
        for event in self._store.events(on=day):
            if event.id == exclude_event_id:
                continue
            if event.all_day:
                ranges.append(TimeRange(start=0, end=MINUTES_PER_DAY))
                continue
            start = event.start
            end = max(event.end, start + MIN_EVENT_MINUTES)
            if not event.is_owned and buffer_minutes > 0:
                start = max(0, start - buffer_minutes)
                end = min(MINUTES_PER_DAY, end + buffer_minutes)
            ranges.append(TimeRange(start=start, end=min(end, MINUTES_PER_DAY)))
        return merge_ranges(ranges)

    def fit_event(
        self,
        day: date,
        desired_start: int,
        desired_end: int,
        exclude_event_id: str | None = None,
    ) -> FitResult:
        blocked = self.compute_blocked_ranges(day, exclude_event_id)
        try:
            result = fit_into_free_time(blocked, desired_start, desired_end)
        except NoAvailableSlot:
            logger.info(
                "No slot on %s for %d-%d (%d blocked ranges)",
                day.isoformat(),
                desired_start,
                desired_end,
                len(blocked),
            )
            raise
        if result.shifted:
            logger.info(
                "Shifted event on %s from %d to %d around blocked ranges",
                day.isoformat(),
                desired_start,
                result.start,
            )
        return result
