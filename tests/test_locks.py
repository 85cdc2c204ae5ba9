from __future__ import annotations

import asyncio

from conftest import FakeClock
from soloq.entities import PlayerState
from soloq.locks import KeyedLocks
from soloq.pool import WaitingPool
from soloq.registry import PlayerRegistry
from soloq.store import MemoryStore


def test_holders_of_one_key_run_one_at_a_time():
    async def scenario():
        locks = KeyedLocks()
        active = []
        peak = []

        async def worker():
            async with locks.hold("p1"):
                active.append(1)
                peak.append(len(active))
                await asyncio.sleep(0)
                active.pop()

        await asyncio.gather(*(worker() for _ in range(5)))
        return locks, peak

    locks, peak = asyncio.run(scenario())
    assert max(peak) == 1
    assert len(locks) == 0


def test_lock_survives_while_someone_waits():
    async def scenario():
        locks = KeyedLocks()
        held = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with locks.hold("p1"):
                held.set()
                await release.wait()

        first = asyncio.ensure_future(holder())
        await held.wait()
        second = asyncio.ensure_future(holder())
        await asyncio.sleep(0)
        release.set()
        kept = "p1" in locks
        await asyncio.gather(first, second)
        return kept, "p1" in locks

    kept, after = asyncio.run(scenario())
    assert kept
    assert not after


def test_pool_and_registry_release_player_locks():
    async def scenario():
        store = MemoryStore()
        registry = PlayerRegistry(store)
        pool = WaitingPool(store, clock=FakeClock())
        for idx in range(50):
            player_id = f"p{idx}"
            await registry.register(player_id, 1000)
            await registry.transition(player_id, PlayerState.IDLE, PlayerState.WAITING)
            await pool.enqueue(player_id, 1000)
            await pool.dequeue(player_id)
        return len(registry._locks), len(pool._locks)

    assert asyncio.run(scenario()) == (0, 0)
