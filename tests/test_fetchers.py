"""Tests for the Google Calendar and Microsoft Graph fetchers.

Every provider response is served by an ``httpx.MockTransport`` handler.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import httpx
import pytest

from planner_sync.config import google_provider_config, outlook_provider_config
from planner_sync.errors import ProviderFetchError
from planner_sync.fetchers import (
    MAX_PAGES,
    GoogleCalendarFetcher,
    OutlookCalendarFetcher,
    build_sync_window,
)
from planner_sync.models import EventSource
from tests.conftest import (
    GOOGLE_CLIENT_ID,
    OUTLOOK_CLIENT_ID,
    REFERENCE_DAY,
    TEST_TIMEZONE,
    mock_client,
)

pytestmark = pytest.mark.unit

BERLIN = ZoneInfo(TEST_TIMEZONE)
WINDOW = build_sync_window(REFERENCE_DAY, BERLIN)
GRAPH_NEXT_LINK = "https://graph.microsoft.com/v1.0/me/calendarview?$skiptoken=page-2"


def _google(handler) -> GoogleCalendarFetcher:
    return GoogleCalendarFetcher(
        mock_client(handler), google_provider_config(GOOGLE_CLIENT_ID), timezone=TEST_TIMEZONE
    )


def _outlook(handler) -> OutlookCalendarFetcher:
    return OutlookCalendarFetcher(
        mock_client(handler), outlook_provider_config(OUTLOOK_CLIENT_ID), timezone=TEST_TIMEZONE
    )


def _google_item(item_id: str, start: str, end: str, **extra) -> dict:
    return {
        "id": item_id,
        "summary": f"Event {item_id}",
        "start": {"dateTime": start},
        "end": {"dateTime": end},
        **extra,
    }


class TestSyncWindow:
    def test_window_spans_thirty_days_back_and_180_forward(self):
        assert WINDOW.start == datetime(2023, 12, 16, tzinfo=BERLIN)
        assert WINDOW.end.date() == date(2024, 7, 13)
        assert (WINDOW.end.hour, WINDOW.end.minute) == (23, 59)


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


class TestGoogleFetcher:
    async def test_request_shape(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"items": []})

        assert await _google(handler).fetch("access-1", WINDOW) == []

        request = seen[0]
        assert request.url.path == "/calendar/v3/calendars/primary/events"
        assert request.headers["Authorization"] == "Bearer access-1"
        assert request.url.params["singleEvents"] == "true"
        assert request.url.params["orderBy"] == "startTime"
        assert request.url.params["maxResults"] == "2500"
        assert request.url.params["timeMin"] == "2023-12-15T23:00:00Z"
        assert request.url.params["timeMax"].startswith("2024-07-13T21:59:59")

    async def test_maps_timed_and_all_day_items(self):
        payload = {
            "items": [
                _google_item(
                    "abc",
                    "2024-01-15T10:00:00+01:00",
                    "2024-01-15T11:30:00+01:00",
                    location=" HQ ",
                    description="Agenda",
                    updated="2024-01-10T12:00:00.000Z",
                ),
                {
                    "id": "day",
                    "summary": "Offsite",
                    "start": {"date": "2024-01-16"},
                    "end": {"date": "2024-01-17"},
                },
            ]
        }
        events = await _google(lambda request: httpx.Response(200, json=payload)).fetch(
            "access-1", WINDOW
        )

        timed, all_day = events
        assert timed.id == "google-abc-2024-01-15-10:00"
        assert timed.source is EventSource.google
        assert (timed.date, timed.start, timed.end) == (date(2024, 1, 15), 600, 690)
        assert timed.location == "HQ"
        assert timed.detail == "Agenda"
        assert timed.tags == {"Google"}
        assert timed.read_only is True
        assert timed.updated_at == datetime(2024, 1, 10, 12, 0, tzinfo=UTC)

        assert all_day.all_day is True
        assert (all_day.date, all_day.start, all_day.end) == (date(2024, 1, 16), 0, 1439)

    async def test_utc_times_converted_to_local_zone(self):
        payload = {"items": [_google_item("utc", "2024-01-15T09:00:00Z", "2024-01-15T09:45:00Z")]}
        (event,) = await _google(lambda request: httpx.Response(200, json=payload)).fetch(
            "access-1", WINDOW
        )
        assert (event.start, event.end) == (600, 645)

    async def test_cancelled_and_unparseable_items_dropped(self):
        payload = {
            "items": [
                _google_item(
                    "x", "2024-01-15T10:00:00Z", "2024-01-15T11:00:00Z", status="cancelled"
                ),
                {"id": "nostart", "summary": "?"},
                "not-an-object",
                _google_item("keep", "2024-01-15T12:00:00Z", "2024-01-15T13:00:00Z"),
            ]
        }
        events = await _google(lambda request: httpx.Response(200, json=payload)).fetch(
            "access-1", WINDOW
        )
        assert [e.id.split("-")[1] for e in events] == ["keep"]

    async def test_identical_responses_map_identically(self):
        payload = {"items": [_google_item("a", "2024-01-15T10:00:00Z", "2024-01-15T11:00:00Z")]}
        fetcher = _google(lambda request: httpx.Response(200, json=payload))
        first = await fetcher.fetch("access-1", WINDOW)
        second = await fetcher.fetch("access-1", WINDOW)
        assert [e.model_dump() for e in first] == [e.model_dump() for e in second]

    async def test_follows_page_tokens(self):
        seen_tokens: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            token = request.url.params.get("pageToken")
            seen_tokens.append(token)
            if token is None:
                return httpx.Response(
                    200,
                    json={
                        "items": [
                            _google_item("p1", "2024-01-15T08:00:00Z", "2024-01-15T09:00:00Z")
                        ],
                        "nextPageToken": "page-2",
                    },
                )
            return httpx.Response(
                200,
                json={
                    "items": [
                        _google_item("p2", "2024-01-16T08:00:00Z", "2024-01-16T09:00:00Z")
                    ]
                },
            )

        events = await _google(handler).fetch("access-1", WINDOW)

        assert seen_tokens == [None, "page-2"]
        assert len(events) == 2

    async def test_stops_after_max_pages(self, caplog):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            start = f"2024-01-{calls:02d}T08:00:00Z"
            end = f"2024-01-{calls:02d}T09:00:00Z"
            return httpx.Response(
                200,
                json={"items": [_google_item(f"e{calls}", start, end)], "nextPageToken": "more"},
            )

        with caplog.at_level(logging.WARNING, logger="planner_sync.fetchers"):
            events = await _google(handler).fetch("access-1", WINDOW)

        assert calls == MAX_PAGES
        assert len(events) == MAX_PAGES
        assert any("truncated" in record.getMessage() for record in caplog.records)

    async def test_error_envelope_message_surfaces(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                403, json={"error": {"code": 403, "message": "Insufficient Permission"}}
            )

        with pytest.raises(ProviderFetchError, match="Insufficient Permission"):
            await _google(handler).fetch("access-1", WINDOW)

    async def test_unparseable_error_falls_back_to_status(self):
        with pytest.raises(ProviderFetchError, match="Google Calendar returned HTTP 502"):
            await _google(lambda request: httpx.Response(502, text="<html>")).fetch(
                "access-1", WINDOW
            )

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ProviderFetchError, match="ReadTimeout"):
            await _google(handler).fetch("access-1", WINDOW)

    async def test_invalid_json(self):
        with pytest.raises(ProviderFetchError, match="invalid JSON"):
            await _google(lambda request: httpx.Response(200, text="{oops")).fetch(
                "access-1", WINDOW
            )


# ---------------------------------------------------------------------------
# Outlook
# ---------------------------------------------------------------------------


class TestOutlookFetcher:
    async def test_request_shape(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"value": []})

        await _outlook(handler).fetch("access-2", WINDOW)

        request = seen[0]
        assert request.url.path == "/v1.0/me/calendarview"
        assert request.headers["Authorization"] == "Bearer access-2"
        assert request.headers["Prefer"] == 'outlook.timezone="Europe/Berlin"'
        assert request.url.params["$top"] == "1000"
        assert "isAllDay" in request.url.params["$select"]
        assert request.url.params["startDateTime"] == "2023-12-15T23:00:00Z"

    async def test_maps_graph_items(self):
        payload = {
            "value": [
                {
                    "id": "AAMk1",
                    "subject": "Design review",
                    "bodyPreview": "Slides attached",
                    "location": {"displayName": "Room 2"},
                    "start": {"dateTime": "2024-01-15T09:30:00.0000000", "timeZone": TEST_TIMEZONE},
                    "end": {"dateTime": "2024-01-15T10:15:00.0000000", "timeZone": TEST_TIMEZONE},
                    "isAllDay": False,
                    "isCancelled": False,
                },
                {
                    "id": "AAMk2",
                    "subject": "Vacation",
                    "start": {"dateTime": "2024-01-16T00:00:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2024-01-17T00:00:00.0000000", "timeZone": "UTC"},
                    "isAllDay": True,
                },
                {
                    "id": "AAMk3",
                    "subject": "Cancelled",
                    "start": {"dateTime": "2024-01-15T12:00:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2024-01-15T13:00:00.0000000", "timeZone": "UTC"},
                    "isCancelled": True,
                },
            ]
        }
        events = await _outlook(lambda request: httpx.Response(200, json=payload)).fetch(
            "access-2", WINDOW
        )

        review, vacation = events
        assert review.id == "outlook-AAMk1-2024-01-15-09:30"
        assert review.source is EventSource.outlook
        assert (review.start, review.end) == (570, 615)
        assert review.location == "Room 2"
        assert review.detail == "Slides attached"
        assert review.tags == {"Outlook"}

        assert vacation.all_day is True
        assert vacation.date == date(2024, 1, 16)

    async def test_naive_time_uses_item_time_zone(self):
        payload = {
            "value": [
                {
                    "id": "utc",
                    "subject": "UTC meeting",
                    "start": {"dateTime": "2024-01-15T09:00:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2024-01-15T10:00:00.0000000", "timeZone": "UTC"},
                }
            ]
        }
        (event,) = await _outlook(lambda request: httpx.Response(200, json=payload)).fetch(
            "access-2", WINDOW
        )
        assert (event.start, event.end) == (600, 660)

    async def test_follows_next_link_without_extra_params(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            if "skiptoken" not in str(request.url):
                return httpx.Response(200, json={"value": [], "@odata.nextLink": GRAPH_NEXT_LINK})
            return httpx.Response(200, json={"value": []})

        await _outlook(handler).fetch("access-2", WINDOW)

        assert len(seen) == 2
        assert "skiptoken=page-2" in seen[1]
        assert "startDateTime" not in seen[1]

    async def test_graph_error_message_surfaces(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                401,
                json={"error": {"code": "InvalidAuthenticationToken", "message": "Token expired"}},
            )

        with pytest.raises(ProviderFetchError, match="Token expired"):
            await _outlook(handler).fetch("access-2", WINDOW)
