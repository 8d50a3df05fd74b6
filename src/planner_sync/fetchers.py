"""Read-only calendar fetchers for Google Calendar and Microsoft Graph.

Both fetchers list a fixed time window page by page and reduce every item to
a read-only :class:`~planner_sync.models.CalendarEvent`.  Pagination follows
each provider's own cursor convention (opaque ``pageToken`` for Google,
absolute ``@odata.nextLink`` URLs for Graph) and stops after ``MAX_PAGES``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any, ClassVar

import httpx

from planner_sync.config import PlannerConfig, ProviderConfig
from planner_sync.errors import ProviderFetchError, extract_error_message
from planner_sync.models import (
    EXTERNAL_EVENT_COLOR,
    CalendarEvent,
    EventKind,
    EventSource,
    OAuthProvider,
    TimeWindow,
)
from planner_sync.normalize import (
    NormalizedWindow,
    ParsedBoundary,
    coerce_zoneinfo,
    fallback_external_id,
    make_event_id,
    normalize_time_window,
    parse_iso_datetime,
    to_local_boundary,
)

logger = logging.getLogger(__name__)

MAX_PAGES = 8
SYNC_DAYS_BEFORE = 30
SYNC_DAYS_AFTER = 180
UNTITLED_EVENT = "(No title)"

GOOGLE_PAGE_SIZE = 2500
OUTLOOK_PAGE_SIZE = 1000
OUTLOOK_SELECT_FIELDS = "id,subject,bodyPreview,location,start,end,isAllDay,isCancelled"


def build_sync_window(reference_date: date, tz: tzinfo) -> TimeWindow:
    """Window from 30 days before *reference_date* to the end of 180 days after."""
    first_day = reference_date - timedelta(days=SYNC_DAYS_BEFORE)
    last_day = reference_date + timedelta(days=SYNC_DAYS_AFTER)
    return TimeWindow(
        start=datetime.combine(first_day, time.min, tzinfo=tz),
        end=datetime.combine(last_day, time.max, tzinfo=tz),
    )


def _rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


def _stable_updated_at(day: date, updated: Any) -> datetime:
    """Provider modification time, else a fixed per-day value.

    Never the wall clock, so identical provider responses produce identical
    partitions.
    """
    if isinstance(updated, str) and updated.strip():
        try:
            parsed = parse_iso_datetime(updated)
        except ValueError:
            pass
        else:
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return datetime.combine(day, time.min, tzinfo=UTC)


class CalendarFetcher(ABC):
    """Paginated listing of one provider's primary calendar."""

    provider: ClassVar[OAuthProvider]
    source: ClassVar[EventSource]
    id_prefix: ClassVar[str]
    tag: ClassVar[str]

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        provider_config: ProviderConfig,
        *,
        timezone: str,
    ) -> None:
        self._http_client = http_client
        self._base_url = provider_config.api_base_url.rstrip("/")
        self._timezone = timezone
        self._tz = coerce_zoneinfo(timezone)

    async def fetch(self, access_token: str, window: TimeWindow) -> list[CalendarEvent]:
        url, params = self._first_page_request(window)
        events: list[CalendarEvent] = []
        for page in range(1, MAX_PAGES + 1):
            payload = await self._get_page(url, params, access_token)
            for item in self._page_items(payload):
                if not isinstance(item, dict):
                    continue
                event = self.map_item(item)
                if event is not None:
                    events.append(event)

            following = self._next_page_request(payload, params)
            if following is None:
                break
            if page == MAX_PAGES:
                logger.warning(
                    "%s listing truncated after %d pages (%d events kept)",
                    self.provider.label,
                    MAX_PAGES,
                    len(events),
                )
                break
            url, params = following

        logger.debug("Fetched %d %s events", len(events), self.provider.value)
        return events

    async def _get_page(
        self,
        url: str,
        params: dict[str, Any] | None,
        access_token: str,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        headers.update(self._extra_headers())
        label = self.provider.label
        try:
            response = await self._http_client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderFetchError(f"{label} request failed ({type(exc).__name__}).") from exc

        if response.status_code < 200 or response.status_code >= 300:
            fallback = f"{label} returned HTTP {response.status_code}."
            raise ProviderFetchError(extract_error_message(response, fallback))

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderFetchError(f"{label} returned invalid JSON.") from exc
        if not isinstance(payload, dict):
            raise ProviderFetchError(f"{label} returned an unexpected payload.")
        return payload

    def _extra_headers(self) -> dict[str, str]:
        return {}

    def _build_event(
        self,
        *,
        external_id: str,
        window: NormalizedWindow,
        title: str,
        detail: str,
        location: str,
        updated: Any = None,
    ) -> CalendarEvent:
        return CalendarEvent(
            id=make_event_id(self.id_prefix, external_id, window.day, window.start),
            source=self.source,
            kind=EventKind.external,
            title=title or UNTITLED_EVENT,
            detail=detail,
            date=window.day,
            start=window.start,
            end=window.end,
            all_day=window.all_day,
            tags={self.tag},
            location=location,
            color=EXTERNAL_EVENT_COLOR,
            read_only=True,
            updated_at=_stable_updated_at(window.day, updated),
        )

    @abstractmethod
    def _first_page_request(self, window: TimeWindow) -> tuple[str, dict[str, Any] | None]: ...

    @abstractmethod
    def _page_items(self, payload: dict[str, Any]) -> list[Any]: ...

    @abstractmethod
    def _next_page_request(
        self,
        payload: dict[str, Any],
        params: dict[str, Any] | None,
    ) -> tuple[str, dict[str, Any] | None] | None: ...

    @abstractmethod
    def map_item(self, item: dict[str, Any]) -> CalendarEvent | None:
        """Reduce one provider item, or return ``None`` to drop it."""


# ---------------------------------------------------------------------------
# Google Calendar
# ---------------------------------------------------------------------------


def _parse_google_boundary(payload: Any, tz: tzinfo) -> ParsedBoundary | None:
    if not isinstance(payload, dict):
        return None

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        try:
            parsed = parse_iso_datetime(date_time)
        except ValueError:
            return None
        return to_local_boundary(parsed, tz)

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            return ParsedBoundary(day=date.fromisoformat(date_value.strip()))
        except ValueError:
            return None
    return None


class GoogleCalendarFetcher(CalendarFetcher):
    provider = OAuthProvider.google
    source = EventSource.google
    id_prefix = "google"
    tag = "Google"

    def _first_page_request(self, window: TimeWindow) -> tuple[str, dict[str, Any] | None]:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": _rfc3339(window.start),
            "timeMax": _rfc3339(window.end),
            "maxResults": GOOGLE_PAGE_SIZE,
        }
        return f"{self._base_url}/calendars/primary/events", params

    def _page_items(self, payload: dict[str, Any]) -> list[Any]:
        items = payload.get("items")
        return items if isinstance(items, list) else []

    def _next_page_request(
        self,
        payload: dict[str, Any],
        params: dict[str, Any] | None,
    ) -> tuple[str, dict[str, Any] | None] | None:
        next_page_token = payload.get("nextPageToken")
        if not isinstance(next_page_token, str) or not next_page_token.strip():
            return None
        return (
            f"{self._base_url}/calendars/primary/events",
            {**(params or {}), "pageToken": next_page_token},
        )

    def map_item(self, item: dict[str, Any]) -> CalendarEvent | None:
        status = item.get("status")
        if isinstance(status, str) and status.lower() == "cancelled":
            return None

        window = normalize_time_window(
            _parse_google_boundary(item.get("start"), self._tz),
            _parse_google_boundary(item.get("end"), self._tz),
        )
        if window is None:
            return None

        title = _text(item.get("summary"))
        external_id = _text(item.get("id")) or fallback_external_id(
            title, window.day.isoformat(), str(window.start)
        )
        return self._build_event(
            external_id=external_id,
            window=window,
            title=title,
            detail=_text(item.get("description")),
            location=_text(item.get("location")),
            updated=item.get("updated"),
        )


# ---------------------------------------------------------------------------
# Microsoft Graph (Outlook)
# ---------------------------------------------------------------------------


def _parse_graph_boundary(payload: Any, tz: tzinfo, *, all_day: bool) -> ParsedBoundary | None:
    if not isinstance(payload, dict):
        return None
    date_time = payload.get("dateTime")
    if not isinstance(date_time, str) or not date_time.strip():
        return None
    try:
        parsed = parse_iso_datetime(date_time)
    except ValueError:
        return None

    if all_day:
        return ParsedBoundary(day=parsed.date())
    if parsed.tzinfo is None:
        zone_name = payload.get("timeZone")
        if isinstance(zone_name, str) and zone_name.strip():
            parsed = parsed.replace(tzinfo=coerce_zoneinfo(zone_name.strip()))
    return to_local_boundary(parsed, tz)


class OutlookCalendarFetcher(CalendarFetcher):
    provider = OAuthProvider.outlook
    source = EventSource.outlook
    id_prefix = "outlook"
    tag = "Outlook"

    def _extra_headers(self) -> dict[str, str]:
        return {"Prefer": f'outlook.timezone="{self._timezone}"'}

    def _first_page_request(self, window: TimeWindow) -> tuple[str, dict[str, Any] | None]:
        params: dict[str, Any] = {
            "startDateTime": _rfc3339(window.start),
            "endDateTime": _rfc3339(window.end),
            "$top": OUTLOOK_PAGE_SIZE,
            "$select": OUTLOOK_SELECT_FIELDS,
        }
        return f"{self._base_url}/me/calendarview", params

    def _page_items(self, payload: dict[str, Any]) -> list[Any]:
        items = payload.get("value")
        return items if isinstance(items, list) else []

    def _next_page_request(
        self,
        payload: dict[str, Any],
        params: dict[str, Any] | None,
    ) -> tuple[str, dict[str, Any] | None] | None:
        next_link = payload.get("@odata.nextLink")
        if not isinstance(next_link, str) or not next_link.strip():
            return None
        # The next link already carries every query parameter.
        return next_link.strip(), None

    def map_item(self, item: dict[str, Any]) -> CalendarEvent | None:
        if item.get("isCancelled") is True:
            return None

        all_day = item.get("isAllDay") is True
        window = normalize_time_window(
            _parse_graph_boundary(item.get("start"), self._tz, all_day=all_day),
            _parse_graph_boundary(item.get("end"), self._tz, all_day=all_day),
        )
        if window is None:
            return None

        location = item.get("location")
        location_name = _text(location.get("displayName")) if isinstance(location, dict) else ""
        title = _text(item.get("subject"))
        external_id = _text(item.get("id")) or fallback_external_id(
            title, window.day.isoformat(), str(window.start)
        )
        return self._build_event(
            external_id=external_id,
            window=window,
            title=title,
            detail=_text(item.get("bodyPreview")),
            location=location_name,
            updated=item.get("lastModifiedDateTime"),
        )


def build_fetchers(
    http_client: httpx.AsyncClient,
    config: PlannerConfig,
) -> dict[OAuthProvider, CalendarFetcher]:
    return {
        OAuthProvider.google: GoogleCalendarFetcher(
            http_client, config.provider(OAuthProvider.google), timezone=config.timezone
        ),
        OAuthProvider.outlook: OutlookCalendarFetcher(
            http_client, config.provider(OAuthProvider.outlook), timezone=config.timezone
        ),
    }
