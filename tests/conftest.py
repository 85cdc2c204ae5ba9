from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

from soloq.config import QueueConfig
from soloq.errors import StoreUnavailable
from soloq.gateway import NotificationGateway
from soloq.service import MatchmakingService
from soloq.store import MemoryStore


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingGateway(NotificationGateway):
    def __init__(self) -> None:
        self.prompts: List[Tuple] = []
        self.confirmed: List[Tuple] = []
        self.disbanded: List[Tuple] = []
        self.queue_status: List[Tuple] = []

    async def prompt_ready_check(self, session_id, member_ids, deadline) -> None:
        self.prompts.append((session_id, tuple(member_ids), deadline))

    async def notify_group_confirmed(self, group_id, member_ids) -> None:
        self.confirmed.append((group_id, tuple(member_ids)))

    async def notify_group_disbanded(self, group_id, reason, affected_member_ids) -> None:
        self.disbanded.append((group_id, reason, tuple(affected_member_ids)))

    async def notify_queue_status(self, player_id, position) -> None:
        self.queue_status.append((player_id, position))


class FlakyStore(MemoryStore):
    """Memory store failing every call on keys under ``failing_prefix``."""

    def __init__(self) -> None:
        super().__init__()
        self.failing_prefix: Optional[str] = None

    def _check(self, key: str) -> None:
        if self.failing_prefix is not None and key.startswith(self.failing_prefix):
            raise StoreUnavailable(f"store down for {key}")

    async def get(self, key):
        self._check(key)
        return await super().get(key)

    async def set(self, key, value):
        self._check(key)
        await super().set(key, value)

    async def delete(self, key):
        self._check(key)
        return await super().delete(key)

    async def compare_and_set(self, key, expected, new):
        self._check(key)
        return await super().compare_and_set(key, expected, new)


class YieldingStore(MemoryStore):
    """Memory store that yields to the event loop on every read and write, like a network store."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def compare_and_set(self, key, expected, new):
        await asyncio.sleep(0)
        return await super().compare_and_set(key, expected, new)


def build_service(group_size: int = 4, clock: Optional[FakeClock] = None, store=None, gateway=None, **overrides):
    config = QueueConfig(group_size=group_size, **overrides)
    return MatchmakingService(
        config,
        store=store if store is not None else MemoryStore(),
        gateway=gateway or RecordingGateway(),
        clock=clock or FakeClock(),
    )


SCENARIO = [("A", 10), ("B", 12), ("C", 50), ("D", 11), ("E", 13)]


async def queue_scenario(service: MatchmakingService, clock: FakeClock) -> None:
    """Queue A..E one second apart, A first."""
    for player_id, skill in SCENARIO:
        await service.register(player_id, skill)
        await service.join(player_id)
        clock.advance(1)
