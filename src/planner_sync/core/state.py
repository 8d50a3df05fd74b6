"""Key-value state store for planner records.

Every persisted planner record (token sessions, the pending OAuth request,
sync settings and each event partition) is a JSON-serialisable value stored
under a string key.  Two backends are provided:

- :class:`MemoryStateStore` keeps JSON text in a dict (tests, ephemeral runs).
- :class:`PostgresStateStore` upserts into a ``planner_state`` JSONB table via
  an asyncpg pool.
"""

from __future__ import annotations

import abc
import json
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "planner_state"

_STATE_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    key        TEXT PRIMARY KEY,
    value      JSONB NOT NULL DEFAULT '{{}}',
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered.  Normally one ``json.loads`` pass suffices; a value that was
    accidentally double-encoded needs a second pass.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected; applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


class StateStore(abc.ABC):
    """Async key/value persistence for JSON-serialisable records."""

    @abc.abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value for *key*, or ``None`` when absent."""

    @abc.abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Upsert *key* with *value*."""

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove *key*; return whether it existed."""

    async def close(self) -> None:
        return None


class MemoryStateStore(StateStore):
    """Dict-backed store that still round-trips values through JSON."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self) -> list[str]:
        return sorted(self._data)


class PostgresStateStore(StateStore):
    """JSONB-backed store on an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool, *, owns_pool: bool = False) -> None:
        self._pool = pool
        self._owns_pool = owns_pool

    @classmethod
    async def connect(cls, dsn: str) -> PostgresStateStore:
        import asyncpg

        pool = await asyncpg.create_pool(dsn, min_size=1, max_size=4)
        store = cls(pool, owns_pool=True)
        await store.ensure_table()
        return store

    async def ensure_table(self) -> None:
        await self._pool.execute(_STATE_TABLE_DDL)

    async def get(self, key: str) -> Any | None:
        row = await self._pool.fetchval(
            f"SELECT value FROM {_TABLE} WHERE key = $1",
            key,
        )
        if row is None:
            return None
        return decode_jsonb(row)

    async def set(self, key: str, value: Any) -> None:
        await self._pool.execute(
            f"""
            INSERT INTO {_TABLE} (key, value, updated_at)
            VALUES ($1, $2::jsonb, now())
            ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    updated_at = now()
            """,
            key,
            json.dumps(value),
        )

    async def delete(self, key: str) -> bool:
        result = await self._pool.execute(f"DELETE FROM {_TABLE} WHERE key = $1", key)
        return result.endswith(" 1")

    async def close(self) -> None:
        if self._owns_pool:
            await self._pool.close()
