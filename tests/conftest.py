"""Shared fixtures for the planner-sync test suite.

Provider traffic never leaves the process: every HTTP client in these tests
is an ``httpx.AsyncClient`` on an ``httpx.MockTransport`` whose handler the
test supplies.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from planner_sync.config import PlannerConfig, google_provider_config, outlook_provider_config
from planner_sync.core.state import MemoryStateStore
from planner_sync.models import (
    EXTERNAL_EVENT_COLOR,
    CalendarEvent,
    EventKind,
    EventSource,
    OAuthProvider,
)
from planner_sync.scheduler import TickSource
from planner_sync.service import PlannerService

GOOGLE_CLIENT_ID = "test-client-id.apps.googleusercontent.com"
OUTLOOK_CLIENT_ID = "00000000-aaaa-bbbb-cccc-000000000000"
TEST_TIMEZONE = "Europe/Berlin"
REFERENCE_DAY = date(2024, 1, 15)


class FixedClock:
    """Callable clock that tests advance explicitly."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class SyntheticTicks(TickSource):
    """Tick source driven by the test instead of wall-clock time.

    ``idle`` is set whenever the scheduler loop is blocked waiting for the
    next tick, which is how tests know a cycle has finished.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self.idle = asyncio.Event()

    async def wait(self) -> str:
        if self._queue.empty():
            self.idle.set()
        origin = await self._queue.get()
        self.idle.clear()
        return origin

    def wake(self) -> None:
        self.idle.clear()
        self._queue.put_nowait("request")

    def tick(self) -> None:
        self.idle.clear()
        self._queue.put_nowait("timer")


class NoticeRecorder:
    def __init__(self) -> None:
        self.notices: list[tuple[str, str]] = []

    def __call__(self, level, text: str) -> None:
        self.notices.append((str(level), text))

    @property
    def texts(self) -> list[str]:
        return [text for _, text in self.notices]


def form_body(request: httpx.Request) -> dict[str, str]:
    """Decode an ``application/x-www-form-urlencoded`` request body."""
    parsed = parse_qs(request.content.decode(), keep_blank_values=True)
    return {key: values[0] for key, values in parsed.items()}


def token_payload(
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_in: int = 3600,
) -> dict:
    payload: dict = {"access_token": access_token, "expires_in": expires_in, "token_type": "Bearer"}
    if refresh_token is not None:
        payload["refresh_token"] = refresh_token
    return payload


def make_config(
    *,
    google_client_id: str = GOOGLE_CLIENT_ID,
    outlook_client_id: str = OUTLOOK_CLIENT_ID,
    dashboard_url: str | None = None,
    buffer_minutes: int = 10,
) -> PlannerConfig:
    config = PlannerConfig(timezone=TEST_TIMEZONE, dashboard_url=dashboard_url)
    config.providers = {
        OAuthProvider.google: google_provider_config(google_client_id),
        OAuthProvider.outlook: outlook_provider_config(outlook_client_id),
    }
    config.sync.buffer_minutes = buffer_minutes
    return config


def external_event(
    source: EventSource,
    event_id: str,
    *,
    day: date = REFERENCE_DAY,
    start: int = 540,
    end: int = 600,
    all_day: bool = False,
    title: str = "Synced",
) -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        source=source,
        kind=EventKind.external,
        title=title,
        date=day,
        start=start,
        end=end,
        all_day=all_day,
        color=EXTERNAL_EVENT_COLOR,
        updated_at=datetime(2024, 1, 1, tzinfo=UTC),
    )


def owned_event(
    event_id: str,
    *,
    day: date = REFERENCE_DAY,
    start: int = 540,
    end: int = 600,
    title: str = "Writing session",
) -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        source=EventSource.owned,
        kind=EventKind.session,
        title=title,
        date=day,
        start=start,
        end=end,
        updated_at=datetime(2024, 1, 1, tzinfo=UTC),
    )


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def unexpected_request(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected HTTP request: {request.method} {request.url}")


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 1, 15, 8, 0, tzinfo=UTC))


@pytest.fixture
def state() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def config() -> PlannerConfig:
    return make_config()


@pytest.fixture
def notices() -> NoticeRecorder:
    return NoticeRecorder()


@pytest.fixture
def build_service(state, clock, notices):
    """Factory for a PlannerService on a mock transport."""

    def _build(
        handler: Callable[[httpx.Request], httpx.Response] = unexpected_request,
        *,
        config: PlannerConfig | None = None,
        tick_source: TickSource | None = None,
    ) -> PlannerService:
        client = mock_client(handler)
        return PlannerService(
            config or make_config(),
            state,
            client,
            tick_source=tick_source or SyntheticTicks(),
            reference_date=lambda: REFERENCE_DAY,
            notify=notices,
            clock=clock,
        )

    return _build
