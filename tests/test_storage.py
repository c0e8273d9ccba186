"""Tests for the in-memory key-value store and the bounded() helper."""

from __future__ import annotations

import asyncio

import pytest

from smcp_gateway.errors import StorageTimeoutError
from smcp_gateway.storage.kv import MemoryKeyValueStore, bounded


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
class TestMemoryKeyValueStore:
    async def test_put_get_delete(self) -> None:
        store = MemoryKeyValueStore()
        await store.put("a", "1")
        assert await store.get("a") == "1"
        await store.delete("a")
        assert await store.get("a") is None
        await store.delete("a")  # absent key is fine

    async def test_ttl_expiry(self) -> None:
        clock = _Clock()
        store = MemoryKeyValueStore(clock=clock)
        await store.put("k", "v", ttl=10)
        clock.now += 9.9
        assert await store.get("k") == "v"
        clock.now += 0.1
        assert await store.get("k") is None
        assert len(store) == 0

    async def test_put_if_absent(self) -> None:
        store = MemoryKeyValueStore()
        assert await store.put_if_absent("k", "first")
        assert not await store.put_if_absent("k", "second")
        assert await store.get("k") == "first"

    async def test_put_if_absent_after_expiry(self) -> None:
        clock = _Clock()
        store = MemoryKeyValueStore(clock=clock)
        await store.put("k", "old", ttl=1)
        clock.now += 2
        assert await store.put_if_absent("k", "new")

    async def test_list_keys_by_prefix(self) -> None:
        store = MemoryKeyValueStore()
        for key in ("audit:b:2", "audit:a:1", "audit:a:3", "tenant:a"):
            await store.put(key, "x")
        assert await store.list_keys("audit:a:") == ["audit:a:1", "audit:a:3"]
        assert await store.list_keys("audit:", limit=2) == ["audit:a:1", "audit:a:3"]

    async def test_list_keys_keeps_empty_values(self) -> None:
        store = MemoryKeyValueStore()
        await store.put("flag:a", "")
        assert await store.list_keys("flag:") == ["flag:a"]
        assert len(store) == 1


@pytest.mark.asyncio
class TestBounded:
    async def test_returns_result(self) -> None:
        async def quick() -> int:
            return 7

        assert await bounded(quick(), 1.0) == 7

    async def test_timeout_is_retryable_storage_error(self) -> None:
        with pytest.raises(StorageTimeoutError) as info:
            await bounded(asyncio.sleep(1.0), 0.01, "tenant lookup")
        assert info.value.status_code == 503
        assert info.value.retryable
        assert "tenant lookup" in info.value.detail
