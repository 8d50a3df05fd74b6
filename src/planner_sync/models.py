"""Canonical planner data model.

All three external formats (Google events, Microsoft Graph calendar views and
ICS feeds) and the user's own planner entries are reduced to
:class:`CalendarEvent`.  Times are stored as a calendar ``date`` plus
minute-of-day offsets so conflict resolution can work on plain integers.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator

MINUTES_PER_DAY = 24 * 60
DAY_END_MINUTE = MINUTES_PER_DAY - 1
MIN_EVENT_MINUTES = 15
DEFAULT_EXTERNAL_DURATION_MINUTES = 60

DEFAULT_OWNED_COLOR = "#18b6a4"
EXTERNAL_EVENT_COLOR = "#c7ced6"

_HHMM_PATTERN = re.compile(r"^(\d{2}):(\d{2})$")


class OAuthProvider(StrEnum):
    """Calendar providers connected through OAuth2 + PKCE."""

    google = "google"
    outlook = "outlook"

    @property
    def label(self) -> str:
        if self is OAuthProvider.google:
            return "Google Calendar"
        return "Outlook Calendar"


class EventSource(StrEnum):
    """Partition an event belongs to."""

    owned = "owned"
    google = "external-google"
    outlook = "external-outlook"
    feed = "external-feed"

    @classmethod
    def for_provider(cls, provider: OAuthProvider) -> EventSource:
        if provider is OAuthProvider.google:
            return cls.google
        return cls.outlook


class EventKind(StrEnum):
    session = "session"
    task = "task"
    external = "external"


class Repeat(StrEnum):
    never = "never"
    daily = "daily"
    weekly = "weekly"


class Reminder(StrEnum):
    none = "none"
    ten_minutes = "10m"
    thirty_minutes = "30m"
    sixty_minutes = "60m"


class NoticeLevel(StrEnum):
    ok = "ok"
    warn = "warn"


Notifier = Callable[[NoticeLevel, str], None]


def discard_notice(level: NoticeLevel, text: str) -> None:
    """Default notifier for callers that do not surface notices."""


# ---------------------------------------------------------------------------
# Minute-of-day helpers
# ---------------------------------------------------------------------------


def format_minutes(minutes: int) -> str:
    """Render a minute-of-day offset as ``HH:MM``."""
    hours, mins = divmod(minutes, 60)
    return f"{hours:02d}:{mins:02d}"


def parse_hhmm(value: str) -> int:
    """Parse ``HH:MM`` into a minute-of-day offset."""
    match = _HHMM_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"expected HH:MM, got {value!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"time out of range: {value!r}")
    return hours * 60 + minutes


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class CalendarEvent(BaseModel):
    """One planner entry in canonical form."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    source: EventSource
    kind: EventKind
    title: str
    detail: str = ""
    date: date
    start: int = Field(ge=0, le=MINUTES_PER_DAY)
    end: int = Field(ge=0, le=MINUTES_PER_DAY)
    all_day: bool = False
    repeat: Repeat = Repeat.never
    tags: set[str] = Field(default_factory=set)
    participants: list[str] = Field(default_factory=list)
    location: str = ""
    color: str = DEFAULT_OWNED_COLOR
    reminder: Reminder = Reminder.none
    read_only: bool = False
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _synced_events_are_read_only(self) -> CalendarEvent:
        if self.source is not EventSource.owned:
            self.read_only = True
        return self

    @field_serializer("tags")
    def _serialize_tags(self, tags: set[str]) -> list[str]:
        return sorted(tags)

    @property
    def is_owned(self) -> bool:
        return self.source is EventSource.owned


def event_sort_key(event: CalendarEvent) -> tuple[date, int, int, str]:
    """Display order: date, all-day before timed, start, title."""
    return (event.date, 0 if event.all_day else 1, event.start, event.title)


def sort_events(events: list[CalendarEvent]) -> list[CalendarEvent]:
    return sorted(events, key=event_sort_key)


# ---------------------------------------------------------------------------
# OAuth records
# ---------------------------------------------------------------------------


class TokenSession(BaseModel):
    """Access/refresh token pair for one connected provider."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_at: datetime

    def __repr__(self) -> str:
        return (
            "TokenSession(access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"expires_at={self.expires_at.isoformat()!r})"
        )

    __str__ = __repr__


class OAuthPendingRequest(BaseModel):
    """The single in-flight authorization request awaiting its redirect."""

    model_config = ConfigDict(extra="ignore")

    provider: OAuthProvider
    state: str = Field(min_length=1)
    code_verifier: str = Field(min_length=43, max_length=128)
    redirect_uri: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def __repr__(self) -> str:
        return (
            f"OAuthPendingRequest(provider={self.provider.value!r}, "
            f"state={self.state[:8]!r}..., code_verifier=<REDACTED>)"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Settings and results
# ---------------------------------------------------------------------------


class SyncSettings(BaseModel):
    """Connection flags and sync tuning shared by the scheduler and resolver."""

    model_config = ConfigDict(extra="ignore")

    google_connected: bool = False
    outlook_connected: bool = False
    feed_connected: bool = False
    feed_url: str = ""
    auto_sync_minutes: Literal[15, 30] = 15
    buffer_minutes: Literal[0, 10, 15] = 10
    last_synced_at: datetime | None = None

    def is_connected(self, provider: OAuthProvider) -> bool:
        if provider is OAuthProvider.google:
            return self.google_connected
        return self.outlook_connected

    def connected_providers(self) -> list[OAuthProvider]:
        return [provider for provider in OAuthProvider if self.is_connected(provider)]

    def with_connected(self, provider: OAuthProvider, connected: bool) -> SyncSettings:
        return self.model_copy(update={f"{provider.value}_connected": connected})


class TimeRange(BaseModel):
    """Half-open ``[start, end)`` interval in minutes of one day."""

    model_config = ConfigDict(frozen=True)

    start: int
    end: int


class FitResult(BaseModel):
    start: int
    end: int
    shifted: bool = False


class TimeWindow(BaseModel):
    start: datetime
    end: datetime


class Notice(BaseModel):
    level: NoticeLevel
    text: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
