"""Waiting pool of players eligible for grouping."""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List

from .entities import QueueEntry, QueuePosition
from .errors import AlreadyQueued, NotQueued
from .locks import KeyedLocks
from .store import DurableStore, dump, load

logger = logging.getLogger(__name__)

KEY_PREFIX = "queue:"


def _key(player_id: str) -> str:
    return f"{KEY_PREFIX}{player_id}"


class WaitingPool:
    """Arena of :class:`QueueEntry` keyed by player id.

    Mutations are serialized per player, never behind a pool-wide lock.
    Each entry is mirrored to the store with a create-if-absent
    compare-and-set, which is what rejects a second entry for the same
    player even when it comes from another coordinator instance.
    """

    def __init__(self, store: DurableStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock
        self._entries: Dict[str, QueueEntry] = {}
        self._locks = KeyedLocks()

    async def enqueue(self, player_id: str, skill: float) -> QueueEntry:
        entry = QueueEntry(player_id=player_id, skill=float(skill), enqueued_at=self._clock())
        return await self._insert(entry)

    async def requeue(self, entry: QueueEntry) -> QueueEntry:
        """Return a player from a disbanded group, one attempt older.

        The original enqueue timestamp and cached skill are kept so the
        player does not lose seniority.
        """
        return await self._insert(entry.retried())

    async def reinstate(self, entry: QueueEntry) -> QueueEntry:
        """Put back an entry taken for a group that was never proposed."""
        return await self._insert(entry)

    async def _insert(self, entry: QueueEntry) -> QueueEntry:
        async with self._locks.hold(entry.player_id):
            if entry.player_id in self._entries:
                raise AlreadyQueued(f"player {entry.player_id} is already queued")
            created = await self._store.compare_and_set(_key(entry.player_id), None, dump(entry.to_document()))
            if not created:
                raise AlreadyQueued(f"player {entry.player_id} is queued on another coordinator")
            self._entries[entry.player_id] = entry
        logger.info("Queued %s (skill %s, attempts %d, pool size %d)", entry.player_id, entry.skill, entry.attempts, len(self._entries))
        return entry

    async def dequeue(self, player_id: str) -> QueueEntry:
        async with self._locks.hold(player_id):
            entry = self._entries.get(player_id)
            if entry is None:
                entry = await self._dequeue_remote(player_id)
            else:
                await self._store.delete(_key(player_id))
                del self._entries[player_id]
        logger.info("Removed %s from the pool (pool size %d)", player_id, len(self._entries))
        return entry

    async def _dequeue_remote(self, player_id: str) -> QueueEntry:
        raw = await self._store.get(_key(player_id))
        if raw is None or not await self._store.compare_and_set(_key(player_id), raw, None):
            raise NotQueued(f"player {player_id} is not queued")
        return QueueEntry.from_document(load(raw))

    def snapshot(self) -> List[QueueEntry]:
        """Point-in-time copy of the pool, oldest entry first.

        Entries are immutable, so later mutations of the pool never show
        through a snapshot.
        """
        return sorted(self._entries.values(), key=lambda entry: (entry.enqueued_at, entry.player_id))

    def position(self, player_id: str) -> QueuePosition:
        entry = self._entries.get(player_id)
        if entry is None:
            raise NotQueued(f"player {player_id} is not queued")
        ordered = sorted(self._entries.values(), key=lambda item: (item.priority_key(), item.player_id))
        return QueuePosition(
            position=ordered.index(entry) + 1,
            queue_size=len(ordered),
            attempts=entry.attempts,
        )

    async def restore(self) -> int:
        """Reload entries persisted by a previous run."""
        restored = 0
        for key in await self._store.scan(KEY_PREFIX):
            document = load(await self._store.get(key))
            if document is None:
                continue
            entry = QueueEntry.from_document(document)
            self._entries[entry.player_id] = entry
            restored += 1
        if restored:
            logger.info("Restored %d queue entries from the store", restored)
        return restored

    def __contains__(self, player_id: str) -> bool:
        return player_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
