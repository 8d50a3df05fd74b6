"""iCalendar feed parsing and the manual feed importer.

Feeds are read with ``icalendar``.  Only ``VEVENT`` components are used, and
only the properties the planner displays: ``DTSTART``, ``DTEND`` (or
``DURATION``), ``SUMMARY``, ``DESCRIPTION``, ``LOCATION`` and ``UID``.
Alarms and other nested components are ignored.  When a property repeats
inside one event the first occurrence wins.

Feed import is always an explicit user action; nothing here runs on a timer.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any

import httpx
from icalendar import Calendar, Component

from planner_sync.errors import FeedParseError
from planner_sync.models import (
    EXTERNAL_EVENT_COLOR,
    CalendarEvent,
    EventKind,
    EventSource,
    NoticeLevel,
    Notifier,
    discard_notice,
)
from planner_sync.normalize import (
    ParsedBoundary,
    coerce_zoneinfo,
    fallback_external_id,
    make_event_id,
    normalize_time_window,
    to_local_boundary,
)
from planner_sync.store import EventStore, SettingsStore
from planner_sync.tokens import Clock, utc_now

logger = logging.getLogger(__name__)

FEED_ID_PREFIX = "feed"
FEED_TAG = "Feed"
UNTITLED_EVENT = "(No title)"
NOT_A_FEED = "The file is not an iCalendar (.ics) feed."

_VCALENDAR_BEGIN = re.compile(r"(?im)^BEGIN:VCALENDAR\s*$")
_VEVENT_BEGIN = re.compile(r"(?im)^BEGIN:VEVENT\s*$")


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------


def first_value(component: Component, name: str) -> Any:
    """Return the first occurrence of property *name*, or ``None``."""
    value = component.get(name)
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _decoded(prop: Any) -> Any:
    """Return ``prop.dt``, or ``None`` when the value could not be parsed."""
    if prop is None:
        return None
    try:
        return prop.dt
    except (AttributeError, ValueError):
        # icalendar keeps malformed values as ``vBroken`` and raises on access.
        return None


def parse_boundary(prop: Any, tz: tzinfo) -> ParsedBoundary | None:
    """Interpret a decoded DTSTART/DTEND property in the planner's zone *tz*.

    A date value is all-day.  UTC and ``TZID`` values are converted to *tz*;
    floating values are taken as already local.  Malformed values give ``None``.
    """
    value = _decoded(prop)
    if isinstance(value, datetime):
        return to_local_boundary(value, tz)
    if isinstance(value, date):
        return ParsedBoundary(day=value)
    return None


def _end_boundary(component: Component, start_prop: Any, tz: tzinfo) -> ParsedBoundary | None:
    end_prop = first_value(component, "DTEND")
    if end_prop is not None:
        return parse_boundary(end_prop, tz)
    duration = _decoded(first_value(component, "DURATION"))
    start_value = _decoded(start_prop)
    if isinstance(duration, timedelta) and isinstance(start_value, datetime):
        return to_local_boundary(start_value + duration, tz)
    return None


def _text_value(component: Component, name: str) -> str:
    value = first_value(component, name)
    if value is None:
        return ""
    return str(value).strip()


def _raw_value(prop: Any) -> str:
    raw = prop.to_ical()
    return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)


def _component_to_event(component: Component, tz: tzinfo) -> CalendarEvent | None:
    start_prop = first_value(component, "DTSTART")
    start = parse_boundary(start_prop, tz)
    if start is None:
        return None
    end = _end_boundary(component, start_prop, tz)
    if end is not None and end.all_day:
        # A date-valued DTEND makes the whole event all-day.
        start = ParsedBoundary(day=start.day)
    window = normalize_time_window(start, end)
    if window is None:
        return None

    title = _text_value(component, "SUMMARY")
    uid = _text_value(component, "UID") or fallback_external_id(title, _raw_value(start_prop))
    return CalendarEvent(
        id=make_event_id(FEED_ID_PREFIX, uid, window.day, window.start),
        source=EventSource.feed,
        kind=EventKind.external,
        title=title or UNTITLED_EVENT,
        detail=_text_value(component, "DESCRIPTION"),
        date=window.day,
        start=window.start,
        end=window.end,
        all_day=window.all_day,
        tags={FEED_TAG},
        location=_text_value(component, "LOCATION"),
        color=EXTERNAL_EVENT_COLOR,
        read_only=True,
        updated_at=datetime.combine(window.day, time.min, tzinfo=UTC),
    )


def parse_ics(text: str, tz: tzinfo) -> list[CalendarEvent]:
    """Parse feed *text* into read-only feed events.

    Several concatenated ``VCALENDAR`` blocks are read in order, and bare
    ``VEVENT`` blocks without a calendar around them are accepted too.

    Raises
    ------
    FeedParseError
        If *text* is not an iCalendar document.
    """
    if _VEVENT_BEGIN.search(text) and not _VCALENDAR_BEGIN.search(text):
        text = f"BEGIN:VCALENDAR\r\n{text.strip()}\r\nEND:VCALENDAR\r\n"
    try:
        roots = Calendar.from_ical(text, multiple=True)
    except ValueError as exc:
        raise FeedParseError(NOT_A_FEED) from exc
    calendars = [root for root in roots if root.name == "VCALENDAR"]
    if not calendars:
        raise FeedParseError(NOT_A_FEED)

    events: list[CalendarEvent] = []
    skipped = 0
    components = [vevent for calendar in calendars for vevent in calendar.walk("VEVENT")]
    for component in components:
        event = _component_to_event(component, tz)
        if event is None:
            skipped += 1
            continue
        events.append(event)
    if skipped:
        logger.info("Skipped %d feed events without a readable DTSTART", skipped)
    return events


# ---------------------------------------------------------------------------
# Importer
# ---------------------------------------------------------------------------


class IcsImporter:
    """Replaces the feed partition from pasted text or a fetched URL."""

    def __init__(
        self,
        *,
        events: EventStore,
        settings: SettingsStore,
        http_client: httpx.AsyncClient,
        timezone: str,
        notify: Notifier = discard_notice,
        clock: Clock = utc_now,
    ) -> None:
        self._events = events
        self._settings = settings
        self._http_client = http_client
        self._tz = coerce_zoneinfo(timezone)
        self._notify = notify
        self._clock = clock

    def parse(self, text: str) -> list[CalendarEvent]:
        return parse_ics(text, self._tz)

    async def import_text(self, text: str) -> list[CalendarEvent]:
        return await self._import(text, feed_url=None)

    async def import_url(self, url: str | None = None) -> list[CalendarEvent]:
        """Fetch a feed once and import it; the URL is remembered on success."""
        target = (url or self._settings.current.feed_url).strip()
        if not target:
            raise self._fail("No feed URL is configured.")
        if target.lower().startswith("webcal://"):
            target = f"https://{target[len('webcal://'):]}"

        try:
            response = await self._http_client.get(target, headers={"Accept": "text/calendar"})
        except httpx.HTTPError as exc:
            raise self._fail(f"The feed could not be downloaded ({type(exc).__name__}).") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise self._fail(f"The feed server returned HTTP {response.status_code}.")

        return await self._import(response.text, feed_url=target)

    async def _import(self, text: str, *, feed_url: str | None) -> list[CalendarEvent]:
        try:
            parsed = self.parse(text)
        except FeedParseError as exc:
            self._notify(NoticeLevel.warn, exc.message)
            raise
        if not parsed:
            raise self._fail("The feed contains no events.")

        await self._events.replace_partition(EventSource.feed, parsed)
        changes: dict[str, object] = {"feed_connected": True, "last_synced_at": self._clock()}
        if feed_url is not None:
            changes["feed_url"] = feed_url
        await self._settings.update(**changes)

        stored = self._events.partition(EventSource.feed)
        logger.info("Imported %d feed events", len(stored))
        self._notify(NoticeLevel.ok, f"Imported {len(stored)} events from the calendar feed.")
        return stored

    def _fail(self, message: str) -> FeedParseError:
        self._notify(NoticeLevel.warn, message)
        return FeedParseError(message)
