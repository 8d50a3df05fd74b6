"""Partitioned canonical event store and the sync settings record.

Each :class:`~planner_sync.models.EventSource` is its own partition, persisted
under its own state key so that replacing one provider's events never rewrites
another's.  In-memory mutations that must be observed together (see
:meth:`planner_sync.tokens.TokenVault.disconnect`) use the synchronous
``drop_partition`` / ``SettingsStore.apply`` helpers followed by explicit
persistence.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from pydantic import ValidationError

from planner_sync.core.state import StateStore
from planner_sync.errors import ReadOnlyEventError
from planner_sync.models import CalendarEvent, EventSource, SyncSettings, sort_events

logger = logging.getLogger(__name__)

EVENTS_KEY_PREFIX = "planner::events::"
SETTINGS_KEY = "planner::sync::settings"


def _partition_key(source: EventSource) -> str:
    return f"{EVENTS_KEY_PREFIX}{source.value}"


class EventStore:
    """Owned partition plus one replaceable partition per external source."""

    def __init__(self, state: StateStore) -> None:
        self._state = state
        self._partitions: dict[EventSource, list[CalendarEvent]] = {
            source: [] for source in EventSource
        }

    async def load(self) -> None:
        """Hydrate every partition from the state store."""
        for source in EventSource:
            raw = await self._state.get(_partition_key(source))
            self._partitions[source] = self._decode_partition(source, raw)
        logger.debug(
            "Event store loaded (%s)",
            ", ".join(f"{s.value}={len(rows)}" for s, rows in self._partitions.items()),
        )

    @staticmethod
    def _decode_partition(source: EventSource, raw: Any) -> list[CalendarEvent]:
        if not isinstance(raw, list):
            return []
        events: list[CalendarEvent] = []
        for index, item in enumerate(raw):
            try:
                event = CalendarEvent.model_validate(item)
            except ValidationError as exc:
                logger.warning(
                    "Skipping unreadable stored event (partition=%s, index=%d): %s",
                    source.value,
                    index,
                    exc.errors()[0]["msg"] if exc.errors() else exc,
                )
                continue
            if event.source is not source:
                logger.warning(
                    "Skipping stored event %s filed under the wrong partition (%s != %s)",
                    event.id,
                    event.source.value,
                    source.value,
                )
                continue
            events.append(event)
        return sort_events(events)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def partition(self, source: EventSource) -> list[CalendarEvent]:
        return list(self._partitions[source])

    def get(self, event_id: str) -> CalendarEvent | None:
        for rows in self._partitions.values():
            for event in rows:
                if event.id == event_id:
                    return event
        return None

    def events(
        self,
        *,
        on: date | None = None,
        source: EventSource | None = None,
    ) -> list[CalendarEvent]:
        """Combined view sorted by (date, all-day first, start, title)."""
        sources = [source] if source is not None else list(EventSource)
        rows = [
            event
            for src in sources
            for event in self._partitions[src]
            if on is None or event.date == on
        ]
        return sort_events(rows)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def persist(self, source: EventSource) -> None:
        await self._state.set(
            _partition_key(source),
            [event.model_dump(mode="json") for event in self._partitions[source]],
        )

    async def replace_partition(self, source: EventSource, events: list[CalendarEvent]) -> None:
        """Wholesale-replace one partition; entries absent from *events* vanish."""
        by_id: dict[str, CalendarEvent] = {}
        for event in events:
            if event.source is not source:
                raise ValueError(
                    f"event {event.id} has source {event.source.value}, expected {source.value}"
                )
            by_id[event.id] = event
        self._partitions[source] = sort_events(list(by_id.values()))
        await self.persist(source)

    def drop_partition(self, source: EventSource) -> int:
        """Clear a partition in memory only; callers persist afterwards."""
        dropped = len(self._partitions[source])
        self._partitions[source] = []
        return dropped

    async def upsert_owned(self, event: CalendarEvent) -> None:
        if not event.is_owned:
            raise ReadOnlyEventError(f"Event {event.id} is synced from {event.source.value}")
        rows = [row for row in self._partitions[EventSource.owned] if row.id != event.id]
        rows.append(event)
        self._partitions[EventSource.owned] = sort_events(rows)
        await self.persist(EventSource.owned)

    async def delete_owned(self, event_id: str) -> bool:
        existing = self.get(event_id)
        if existing is None:
            return False
        if not existing.is_owned:
            raise ReadOnlyEventError(
                f"Event {event_id} is synced from {existing.source.value} and cannot be deleted"
            )
        self._partitions[EventSource.owned] = [
            row for row in self._partitions[EventSource.owned] if row.id != event_id
        ]
        await self.persist(EventSource.owned)
        return True


class SettingsStore:
    """Holds the single :class:`SyncSettings` record."""

    def __init__(self, state: StateStore, defaults: SyncSettings | None = None) -> None:
        self._state = state
        self._current = defaults or SyncSettings()

    @property
    def current(self) -> SyncSettings:
        return self._current

    async def load(self) -> SyncSettings:
        raw = await self._state.get(SETTINGS_KEY)
        if isinstance(raw, dict):
            try:
                stored = SyncSettings.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Stored sync settings are unreadable; keeping defaults: %s", exc)
            else:
                # Tuning comes from configuration; connection state from storage.
                self._current = self._current.model_copy(
                    update={
                        "google_connected": stored.google_connected,
                        "outlook_connected": stored.outlook_connected,
                        "feed_connected": stored.feed_connected,
                        "feed_url": stored.feed_url or self._current.feed_url,
                        "last_synced_at": stored.last_synced_at,
                    }
                )
        return self._current

    def apply(self, **changes: Any) -> SyncSettings:
        """Update in memory only; callers persist afterwards."""
        self._current = self._current.model_copy(update=changes)
        return self._current

    async def persist(self) -> None:
        await self._state.set(SETTINGS_KEY, self._current.model_dump(mode="json"))

    async def update(self, **changes: Any) -> SyncSettings:
        settings = self.apply(**changes)
        await self.persist()
        return settings
