"""Composition root wiring the planner sync components together.

:class:`PlannerService` owns one state store, one HTTP client and the
components built on them.  It is what the HTTP API and the CLI talk to; the
components themselves never reach for global state.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from collections.abc import Callable
from datetime import date, datetime

import httpx
from pydantic import BaseModel, ConfigDict, Field

from planner_sync.config import PlannerConfig
from planner_sync.conflicts import ConflictResolver
from planner_sync.core.state import MemoryStateStore, PostgresStateStore, StateStore
from planner_sync.errors import (
    EventValidationError,
    NoAvailableSlot,
    PlannerSyncError,
    ReadOnlyEventError,
)
from planner_sync.fetchers import build_fetchers
from planner_sync.ics import IcsImporter
from planner_sync.models import (
    DAY_END_MINUTE,
    DEFAULT_OWNED_COLOR,
    CalendarEvent,
    EventKind,
    EventSource,
    FitResult,
    Notice,
    NoticeLevel,
    Notifier,
    OAuthProvider,
    Reminder,
    Repeat,
    SyncSettings,
    format_minutes,
    parse_hhmm,
)
from planner_sync.normalize import coerce_zoneinfo
from planner_sync.oauth import OAuthFlowController
from planner_sync.scheduler import IntervalTickSource, SyncScheduler, TickSource
from planner_sync.store import EventStore, SettingsStore
from planner_sync.tokens import Clock, TokenVault, utc_now

logger = logging.getLogger(__name__)

MAX_NOTICES = 50


class OwnedEventDraft(BaseModel):
    """User input for creating or editing an owned event.

    Times are ``HH:MM`` strings; ``id`` is set when editing.
    """

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    title: str
    detail: str = ""
    date: date
    start: str = "09:00"
    end: str = "10:00"
    all_day: bool = False
    kind: EventKind = EventKind.session
    repeat: Repeat = Repeat.never
    tags: set[str] = Field(default_factory=set)
    participants: list[str] = Field(default_factory=list)
    location: str = ""
    color: str = DEFAULT_OWNED_COLOR
    reminder: Reminder = Reminder.none


class PlannerService:
    def __init__(
        self,
        config: PlannerConfig,
        state: StateStore,
        http_client: httpx.AsyncClient,
        *,
        tick_source: TickSource | None = None,
        reference_date: Callable[[], date] | None = None,
        notify: Notifier | None = None,
        clock: Clock = utc_now,
        owns_resources: bool = False,
    ) -> None:
        self.config = config
        self.state = state
        self.http_client = http_client
        self._clock = clock
        self._external_notify = notify
        self._owns_resources = owns_resources
        self._tz = coerce_zoneinfo(config.timezone)
        self.notices: deque[Notice] = deque(maxlen=MAX_NOTICES)

        self.events = EventStore(state)
        self.settings = SettingsStore(
            state,
            SyncSettings(
                auto_sync_minutes=config.sync.auto_sync_minutes,
                buffer_minutes=config.sync.buffer_minutes,
                feed_url=config.sync.feed_url,
            ),
        )
        self.vault = TokenVault(
            config=config,
            state=state,
            http_client=http_client,
            events=self.events,
            settings=self.settings,
            clock=clock,
        )
        self.resolver = ConflictResolver(self.events, self.settings)
        self.scheduler = SyncScheduler(
            vault=self.vault,
            fetchers=build_fetchers(http_client, config),
            events=self.events,
            settings=self.settings,
            tick_source=tick_source
            or IntervalTickSource(lambda: self.settings.current.auto_sync_minutes * 60),
            reference_date=reference_date or self._today,
            timezone=config.timezone,
            notify=self.notify,
            clock=clock,
        )
        self.oauth = OAuthFlowController(
            config=config,
            state=state,
            http_client=http_client,
            vault=self.vault,
            settings=self.settings,
            notify=self.notify,
            on_connected=self.scheduler.request_sync,
            clock=clock,
        )
        self.ics = IcsImporter(
            events=self.events,
            settings=self.settings,
            http_client=http_client,
            timezone=config.timezone,
            notify=self.notify,
            clock=clock,
        )

    @classmethod
    async def create(cls, config: PlannerConfig, **kwargs) -> PlannerService:
        """Build the configured state backend and HTTP client, then load state."""
        if config.storage.backend == "postgres":
            state: StateStore = await PostgresStateStore.connect(config.storage.dsn)
        else:
            state = MemoryStateStore()
        http_client = httpx.AsyncClient(timeout=config.sync.http_timeout_s)
        service = cls(config, state, http_client, owns_resources=True, **kwargs)
        await service.load()
        return service

    async def load(self) -> None:
        await self.events.load()
        await self.settings.load()
        await self.vault.load()
        await self.oauth.load()
        logger.info(
            "Planner state loaded (connected=%s, feed=%s)",
            ",".join(p.value for p in self.settings.current.connected_providers()) or "-",
            self.settings.current.feed_connected,
        )

    async def close(self) -> None:
        await self.scheduler.stop()
        if self._owns_resources:
            await self.http_client.aclose()
            await self.state.close()

    def _today(self) -> date:
        return datetime.now(self._tz).date()

    # ------------------------------------------------------------------
    # Notices
    # ------------------------------------------------------------------

    def notify(self, level: NoticeLevel, text: str) -> None:
        self.notices.append(Notice(level=level, text=text, created_at=self._clock()))
        if level is NoticeLevel.warn:
            logger.warning("Notice: %s", text)
        else:
            logger.info("Notice: %s", text)
        if self._external_notify is not None:
            self._external_notify(level, text)

    def recent_notices(self, limit: int = 20) -> list[Notice]:
        return list(self.notices)[-limit:]

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    async def disconnect(self, provider: OAuthProvider) -> int:
        removed = await self.vault.disconnect(provider)
        self.notify(NoticeLevel.ok, f"{provider.label} disconnected.")
        return removed

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def list_events(
        self,
        *,
        on: date | None = None,
        source: EventSource | None = None,
    ) -> list[CalendarEvent]:
        return self.events.events(on=on, source=source)

    def _draft_minutes(self, draft: OwnedEventDraft) -> tuple[int, int]:
        if draft.all_day:
            return 0, DAY_END_MINUTE
        try:
            start = parse_hhmm(draft.start)
            end = parse_hhmm(draft.end)
        except ValueError as exc:
            raise EventValidationError(f"Invalid time: {exc}") from exc
        if end <= start:
            raise EventValidationError("The end time must be after the start time.")
        return start, end

    async def save_owned_event(self, draft: OwnedEventDraft) -> tuple[CalendarEvent, FitResult]:
        """Create or edit an owned event, moving it into free time if needed.

        Nothing is stored when no slot is found.
        """
        title = draft.title.strip()
        if not title:
            raise EventValidationError("A title is required.")
        if draft.id is not None:
            existing = self.events.get(draft.id)
            if existing is not None and not existing.is_owned:
                raise ReadOnlyEventError(
                    f"Event {draft.id} is synced from {existing.source.value} and is read-only."
                )

        start, end = self._draft_minutes(draft)
        if draft.all_day:
            fit = FitResult(start=start, end=end, shifted=False)
        else:
            try:
                fit = self.resolver.fit_event(draft.date, start, end, exclude_event_id=draft.id)
            except NoAvailableSlot as exc:
                self.notify(NoticeLevel.warn, exc.message)
                raise

        event = CalendarEvent(
            id=draft.id or uuid.uuid4().hex,
            source=EventSource.owned,
            kind=draft.kind,
            title=title,
            detail=draft.detail.strip(),
            date=draft.date,
            start=fit.start,
            end=fit.end,
            all_day=draft.all_day,
            repeat=draft.repeat,
            tags=draft.tags,
            participants=draft.participants,
            location=draft.location.strip(),
            color=draft.color,
            reminder=draft.reminder,
            read_only=False,
            updated_at=self._clock(),
        )
        await self.events.upsert_owned(event)

        if fit.shifted:
            self.notify(
                NoticeLevel.ok,
                f"Moved to {format_minutes(fit.start)}-{format_minutes(fit.end)} "
                "to avoid a conflict.",
            )
        else:
            self.notify(NoticeLevel.ok, "Event saved.")
        return event, fit

    async def delete_owned_event(self, event_id: str) -> bool:
        try:
            deleted = await self.events.delete_owned(event_id)
        except PlannerSyncError as exc:
            self.notify(NoticeLevel.warn, exc.message)
            raise
        if deleted:
            self.notify(NoticeLevel.ok, "Event deleted.")
        return deleted
