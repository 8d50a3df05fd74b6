"""Pydantic models for the planner events, sync and feed endpoints."""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, model_validator

from planner_sync.models import CalendarEvent, OAuthProvider


class SaveEventResponse(BaseModel):
    event: CalendarEvent
    shifted: bool


class FitRequest(BaseModel):
    date: dt.date
    start: str
    end: str
    exclude_event_id: str | None = None


class FitResponse(BaseModel):
    start: str
    end: str
    shifted: bool


class SyncResponse(BaseModel):
    origin: str
    skipped: bool
    succeeded: list[OAuthProvider]
    failures: dict[OAuthProvider, str]
    event_counts: dict[OAuthProvider, int]
    last_synced_at: dt.datetime | None = None


class FeedImportRequest(BaseModel):
    """Either pasted ``.ics`` text or a feed URL (``url`` may be omitted to
    reuse the configured one when ``text`` is also absent)."""

    text: str | None = None
    url: str | None = None

    @model_validator(mode="after")
    def _text_or_url(self) -> FeedImportRequest:
        if self.text is not None and self.url is not None:
            raise ValueError("provide either text or url, not both")
        return self


class FeedImportResponse(BaseModel):
    imported: int
    feed_url: str | None = None
