from __future__ import annotations

import asyncio

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from soloq.errors import StoreUnavailable
from soloq.store import MemoryStore, RedisStore, create_store, dump, load


def test_memory_compare_and_set_semantics():
    async def scenario():
        store = MemoryStore()
        created = await store.compare_and_set("k", None, "v1")
        duplicate = await store.compare_and_set("k", None, "v2")
        stale = await store.compare_and_set("k", "v0", "v2")
        swapped = await store.compare_and_set("k", "v1", "v2")
        deleted = await store.compare_and_set("k", "v2", None)
        return created, duplicate, stale, swapped, deleted, await store.get("k")

    created, duplicate, stale, swapped, deleted, value = asyncio.run(scenario())
    assert (created, duplicate, stale, swapped, deleted) == (True, False, False, True, True)
    assert value is None


def test_memory_scan_filters_by_prefix():
    async def scenario():
        store = MemoryStore()
        for key in ("queue:b", "queue:a", "player:a"):
            await store.set(key, "{}")
        return await store.scan("queue:")

    assert asyncio.run(scenario()) == ["queue:a", "queue:b"]


def test_documents_round_trip_through_json():
    document = {"player_id": "p1", "skill": 1200.0, "attempts": 2}
    assert load(dump(document)) == document
    assert load(None) is None


def test_redis_store_operations():
    async def scenario():
        client = fakeredis.FakeAsyncRedis(decode_responses=True)
        store = RedisStore(client, namespace="test:")
        await store.set("player:p1", "one")
        created = await store.compare_and_set("queue:p1", None, "entry")
        duplicate = await store.compare_and_set("queue:p1", None, "other")
        keys = await store.scan("queue:")
        raw = await client.get("test:queue:p1")
        removed = await store.compare_and_set("queue:p1", "entry", None)
        deleted = await store.delete("player:p1")
        missing = await store.delete("player:p1")
        remaining = await store.scan("")
        await store.close()
        return created, duplicate, keys, raw, removed, deleted, missing, remaining

    created, duplicate, keys, raw, removed, deleted, missing, remaining = asyncio.run(scenario())
    assert created and not duplicate
    assert keys == ["queue:p1"]
    assert raw == "entry"
    assert removed
    assert deleted and not missing
    assert remaining == []


def test_namespaces_keep_instances_apart():
    async def scenario():
        server = fakeredis.FakeServer()
        blue = RedisStore(fakeredis.FakeAsyncRedis(server=server, decode_responses=True), namespace="blue:")
        green = RedisStore(fakeredis.FakeAsyncRedis(server=server, decode_responses=True), namespace="green:")
        await blue.set("queue:p1", "x")
        shared = RedisStore(fakeredis.FakeAsyncRedis(server=server, decode_responses=True), namespace="blue:")
        return await green.get("queue:p1"), await shared.get("queue:p1")

    assert asyncio.run(scenario()) == (None, "x")


class _DownClient:
    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value):
        raise RedisConnectionError("connection refused")

    async def delete(self, key):
        raise RedisConnectionError("connection refused")

    async def scan_iter(self, match=None):
        raise RedisConnectionError("connection refused")
        yield  # pragma: no cover


def test_redis_errors_surface_as_store_unavailable():
    async def scenario():
        store = RedisStore(_DownClient())
        for call in (store.get("k"), store.set("k", "v"), store.delete("k"), store.scan("queue:")):
            with pytest.raises(StoreUnavailable):
                await call

    asyncio.run(scenario())


def test_create_store_picks_backend_from_url():
    assert isinstance(create_store("memory://"), MemoryStore)
    assert isinstance(create_store("redis://localhost:6379/0"), RedisStore)
