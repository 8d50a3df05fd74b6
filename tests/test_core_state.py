"""Tests for planner_sync.core.state key-value stores."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from planner_sync.core.state import MemoryStateStore, PostgresStateStore, decode_jsonb

pytestmark = pytest.mark.unit


class TestDecodeJsonb:
    def test_passes_through_decoded_values(self):
        assert decode_jsonb({"a": 1}) == {"a": 1}

    def test_decodes_string(self):
        assert decode_jsonb('{"a": 1}') == {"a": 1}

    def test_double_encoded_value(self):
        assert decode_jsonb(json.dumps(json.dumps({"a": 1}))) == {"a": 1}

    def test_json_string_value_survives(self):
        assert decode_jsonb(json.dumps("plain")) == "plain"


class TestMemoryStateStore:
    async def test_get_missing_returns_none(self):
        assert await MemoryStateStore().get("absent") is None

    async def test_set_get_round_trip(self):
        store = MemoryStateStore()
        await store.set("k", {"nested": [1, 2, {"x": None}]})
        assert await store.get("k") == {"nested": [1, 2, {"x": None}]}

    async def test_values_are_copies(self):
        store = MemoryStateStore()
        value = {"items": [1]}
        await store.set("k", value)
        value["items"].append(2)
        assert await store.get("k") == {"items": [1]}

    async def test_delete(self):
        store = MemoryStateStore()
        await store.set("k", 1)
        assert await store.delete("k") is True
        assert await store.delete("k") is False
        assert store.keys() == []

    async def test_rejects_non_json_values(self):
        with pytest.raises(TypeError):
            await MemoryStateStore().set("k", object())


class TestPostgresStateStore:
    async def test_get_decodes_jsonb(self):
        pool = AsyncMock()
        pool.fetchval.return_value = '{"google_connected": true}'
        store = PostgresStateStore(pool)

        assert await store.get("planner::sync::settings") == {"google_connected": True}
        pool.fetchval.assert_awaited_once()
        assert pool.fetchval.await_args.args[1] == "planner::sync::settings"

    async def test_get_missing(self):
        pool = AsyncMock()
        pool.fetchval.return_value = None
        assert await PostgresStateStore(pool).get("absent") is None

    async def test_set_upserts_json_text(self):
        pool = AsyncMock()
        await PostgresStateStore(pool).set("k", {"a": [1]})

        sql, key, payload = pool.execute.await_args.args
        assert "ON CONFLICT (key) DO UPDATE" in sql
        assert key == "k"
        assert json.loads(payload) == {"a": [1]}

    async def test_delete_reports_row_count(self):
        pool = AsyncMock()
        pool.execute.return_value = "DELETE 1"
        assert await PostgresStateStore(pool).delete("k") is True
        pool.execute.return_value = "DELETE 0"
        assert await PostgresStateStore(pool).delete("k") is False

    async def test_close_only_owned_pool(self):
        pool = AsyncMock()
        await PostgresStateStore(pool).close()
        pool.close.assert_not_awaited()
        await PostgresStateStore(pool, owns_pool=True).close()
        pool.close.assert_awaited_once()
