"""Periodic and manual sync cycles across the connected OAuth providers.

Timing is delegated to a :class:`TickSource` so the loop can be driven by
synthetic ticks in tests.  Each cycle fetches every connected provider
concurrently; one provider's failure never aborts the others and never
removes its last-known-good partition.

Cycles are not serialized: when a timer tick and a manual sync overlap, the
fetch that completes last wins for each provider partition.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import date

from opentelemetry import trace

from planner_sync.core.logging import sync_origin_scope
from planner_sync.errors import PlannerSyncError, TokenRefreshFailed
from planner_sync.fetchers import CalendarFetcher, build_sync_window
from planner_sync.models import (
    EventSource,
    NoticeLevel,
    Notifier,
    OAuthProvider,
    TimeWindow,
    discard_notice,
)
from planner_sync.normalize import coerce_zoneinfo
from planner_sync.store import EventStore, SettingsStore
from planner_sync.tokens import Clock, TokenVault, utc_now

logger = logging.getLogger(__name__)

ORIGIN_TIMER = "timer"
ORIGIN_REQUEST = "request"
ORIGIN_MANUAL = "manual"


class TickSource(ABC):
    """Decides when the background loop runs its next cycle."""

    @abstractmethod
    async def wait(self) -> str:
        """Block until the next tick and return its origin."""

    @abstractmethod
    def wake(self) -> None:
        """Make the pending :meth:`wait` return as soon as possible."""


class IntervalTickSource(TickSource):
    """Ticks every ``interval_seconds()`` or immediately after :meth:`wake`."""

    def __init__(self, interval_seconds: Callable[[], float]) -> None:
        self._interval_seconds = interval_seconds
        self._wake_event = asyncio.Event()

    async def wait(self) -> str:
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=self._interval_seconds())
        except TimeoutError:
            return ORIGIN_TIMER
        self._wake_event.clear()
        return ORIGIN_REQUEST

    def wake(self) -> None:
        self._wake_event.set()


@dataclass
class SyncReport:
    origin: str
    succeeded: list[OAuthProvider] = field(default_factory=list)
    failures: dict[OAuthProvider, str] = field(default_factory=dict)
    event_counts: dict[OAuthProvider, int] = field(default_factory=dict)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.skipped and not self.failures


class SyncScheduler:
    def __init__(
        self,
        *,
        vault: TokenVault,
        fetchers: Mapping[OAuthProvider, CalendarFetcher],
        events: EventStore,
        settings: SettingsStore,
        tick_source: TickSource,
        reference_date: Callable[[], date],
        timezone: str,
        notify: Notifier = discard_notice,
        clock: Clock = utc_now,
    ) -> None:
        self._vault = vault
        self._fetchers = fetchers
        self._events = events
        self._settings = settings
        self._tick_source = tick_source
        self._reference_date = reference_date
        self._tz = coerce_zoneinfo(timezone)
        self._notify = notify
        self._clock = clock
        self._task: asyncio.Task | None = None
        self.last_report: SyncReport | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def run_cycle(self, origin: str = ORIGIN_TIMER) -> SyncReport:
        connected = self._settings.current.connected_providers()
        report = SyncReport(origin=origin)
        if not connected:
            report.skipped = True
            self.last_report = report
            return report

        tracer = trace.get_tracer("planner_sync")
        with (
            sync_origin_scope(origin),
            tracer.start_as_current_span("planner.sync_cycle") as span,
        ):
            span.set_attribute("origin", origin)
            span.set_attribute("providers", [provider.value for provider in connected])

            window = build_sync_window(self._reference_date(), self._tz)
            results = await asyncio.gather(
                *(self._sync_provider(provider, window) for provider in connected),
                return_exceptions=True,
            )
            for provider, result in zip(connected, results, strict=True):
                if isinstance(result, BaseException):
                    self._record_failure(report, provider, result)
                else:
                    report.succeeded.append(provider)
                    report.event_counts[provider] = result

            await self._settings.update(last_synced_at=self._clock())
            span.set_attribute("providers_failed", len(report.failures))

        logger.info(
            "Sync cycle finished (origin=%s, succeeded=%s, failed=%s)",
            origin,
            ",".join(p.value for p in report.succeeded) or "-",
            ",".join(p.value for p in report.failures) or "-",
        )
        self.last_report = report
        return report

    async def _sync_provider(self, provider: OAuthProvider, window: TimeWindow) -> int:
        access_token = await self._vault.get_valid_access_token(provider)
        fetched = await self._fetchers[provider].fetch(access_token, window)
        if not self._settings.current.is_connected(provider):
            # Disconnected while the fetch was in flight.
            logger.info("Discarding %s results fetched after disconnect", provider.value)
            return 0
        await self._events.replace_partition(EventSource.for_provider(provider), fetched)
        return len(fetched)

    def _record_failure(
        self,
        report: SyncReport,
        provider: OAuthProvider,
        exc: BaseException,
    ) -> None:
        if not isinstance(exc, Exception):
            raise exc
        if isinstance(exc, PlannerSyncError):
            message = exc.message
            logger.warning("%s sync failed (%s): %s", provider.value, exc.error_code, message)
        else:
            message = "Unexpected error while syncing."
            logger.error("%s sync failed unexpectedly", provider.value, exc_info=exc)
        if isinstance(exc, TokenRefreshFailed):
            message = f"{message} Please reconnect {provider.label}."
        report.failures[provider] = message
        self._notify(NoticeLevel.warn, f"{provider.label}: {message}")

    async def sync_now(self) -> SyncReport:
        """Manual sync with an aggregate notice."""
        report = await self.run_cycle(ORIGIN_MANUAL)
        if report.skipped:
            self._notify(NoticeLevel.warn, "No calendar is connected.")
        elif report.failures:
            self._notify(NoticeLevel.warn, "Some calendars could not be synced.")
        else:
            self._notify(NoticeLevel.ok, "Calendars synced.")
        return report

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def request_sync(self, provider: OAuthProvider | None = None) -> None:
        if provider is not None:
            logger.debug("Immediate sync requested after connecting %s", provider.value)
        self._tick_source.wake()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run_loop(), name="planner-sync-scheduler")
        logger.info(
            "Sync scheduler started (interval=%dm)", self._settings.current.auto_sync_minutes
        )

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run_loop(self) -> None:
        logger.debug("Sync scheduler loop started")
        while True:
            origin = await self._tick_source.wait()
            if not self._settings.current.connected_providers():
                logger.debug("Sync tick skipped: no provider connected")
                continue
            try:
                await self.run_cycle(origin)
            except Exception as exc:
                logger.error("Sync scheduler error: %s", exc, exc_info=True)
