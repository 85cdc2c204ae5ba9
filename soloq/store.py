"""Durable key-value storage used to share queue state between instances.

Records are plain JSON documents.  Every backend offers single-key atomic
compare-and-set, which is what keeps a player in at most one queue entry
even when several coordinator instances share the same store.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)


def dump(document: dict) -> str:
    return json.dumps(document, sort_keys=True, separators=(",", ":"))


def load(raw: Optional[str]) -> Optional[dict]:
    if raw is None:
        return None
    return json.loads(raw)


class DurableStore(ABC):
    """Capability contract for the backing store.

    ``compare_and_set`` writes ``new`` only if the current value equals
    ``expected``; ``None`` on either side means "key absent", so it also
    covers create-if-absent and delete-if-unchanged.  Backend failures are
    raised as :class:`StoreUnavailable`.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def compare_and_set(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        ...

    @abstractmethod
    async def scan(self, prefix: str) -> List[str]:
        """Return every key starting with ``prefix``."""

    async def close(self) -> None:
        return None


class MemoryStore(DurableStore):
    """In-process store for a single coordinator and for tests.

    No method awaits while touching the dictionary, so each call is atomic
    with respect to other tasks on the event loop.
    """

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def compare_and_set(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        if self._data.get(key) != expected:
            return False
        if new is None:
            self._data.pop(key, None)
        else:
            self._data[key] = new
        return True

    async def scan(self, prefix: str) -> List[str]:
        return sorted(key for key in self._data if key.startswith(prefix))

    def __len__(self) -> int:  # pragma: no cover - trivial
        return len(self._data)


class RedisStore(DurableStore):
    """Redis backed store.

    Compare-and-set uses an optimistic WATCH/MULTI/EXEC transaction, so a
    concurrent writer on the same key makes the transaction fail instead
    of being overwritten.
    """

    def __init__(self, client: aioredis.Redis, namespace: str = "soloq:"):
        self._client = client
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, timeout: float = 5.0, namespace: str = "soloq:") -> "RedisStore":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client, namespace=namespace)

    def _key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(self._key(key))
        except RedisError as exc:
            raise StoreUnavailable(f"get {key} failed: {exc}") from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await self._client.set(self._key(key), value)
        except RedisError as exc:
            raise StoreUnavailable(f"set {key} failed: {exc}") from exc

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(self._key(key)))
        except RedisError as exc:
            raise StoreUnavailable(f"delete {key} failed: {exc}") from exc

    async def compare_and_set(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        full_key = self._key(key)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(full_key)
                current = await pipe.get(full_key)
                if current != expected:
                    return False
                pipe.multi()
                if new is None:
                    pipe.delete(full_key)
                else:
                    pipe.set(full_key, new)
                await pipe.execute()
                return True
        except WatchError:
            logger.debug("Concurrent write on %s, compare-and-set lost", key)
            return False
        except RedisError as exc:
            raise StoreUnavailable(f"compare-and-set {key} failed: {exc}") from exc

    async def scan(self, prefix: str) -> List[str]:
        pattern = f"{self._namespace}{prefix}*"
        try:
            keys = [key async for key in self._client.scan_iter(match=pattern)]
        except RedisError as exc:
            raise StoreUnavailable(f"scan {prefix} failed: {exc}") from exc
        return sorted(key[len(self._namespace):] for key in keys)

    async def close(self) -> None:
        await self._client.aclose()


def create_store(url: str, timeout: float = 5.0, namespace: str = "soloq:") -> DurableStore:
    """Build a store from a URL: ``memory://`` or any Redis URL."""
    if url.startswith("memory://"):
        return MemoryStore()
    return RedisStore.from_url(url, timeout=timeout, namespace=namespace)
