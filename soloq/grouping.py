"""Grouping engine forming balanced candidate groups from the waiting pool."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Collection, FrozenSet, List, Optional, Sequence

from .config import QueueConfig
from .entities import CandidateGroup, QueueEntry, ReadyCheckSession
from .errors import StoreUnavailable
from .pool import WaitingPool
from .readycheck import ReadyCheckCoordinator

logger = logging.getLogger(__name__)


def priority_order(entries: Sequence[QueueEntry]) -> List[QueueEntry]:
    """Most failed ready-checks first, then longest waiting."""
    return sorted(entries, key=lambda entry: (entry.priority_key(), entry.player_id))


def form_groups(
    entries: Sequence[QueueEntry],
    group_size: int,
    avoid: Collection[FrozenSet[str]] = (),
) -> List[List[QueueEntry]]:
    """Greedily split a pool snapshot into groups of exactly ``group_size``.

    Each group is seeded with the highest-priority entry still eligible.
    Every further slot takes the eligible entry that keeps the group's
    skill spread smallest, ties going to the earliest enqueue time.
    Entries that end up in a group whose member set is listed in
    ``avoid`` are not proposed, and leftovers below ``group_size`` are
    left alone.  The result depends only on the arguments.
    """
    ranked = priority_order(entries)
    rank = {entry.player_id: index for index, entry in enumerate(ranked)}
    eligible = list(ranked)
    groups: List[List[QueueEntry]] = []
    while len(eligible) >= group_size:
        members = [eligible[0]]
        low = high = eligible[0].skill
        candidates = eligible[1:]
        while len(members) < group_size:
            best = min(
                candidates,
                key=lambda entry: (
                    max(high, entry.skill) - min(low, entry.skill),
                    entry.enqueued_at,
                    rank[entry.player_id],
                ),
            )
            candidates.remove(best)
            members.append(best)
            low, high = min(low, best.skill), max(high, best.skill)
        chosen = frozenset(entry.player_id for entry in members)
        eligible = [entry for entry in eligible if entry.player_id not in chosen]
        if chosen in avoid:
            logger.debug("Skipping recently disbanded group %s", sorted(chosen))
            continue
        groups.append(members)
    return groups


class GroupingEngine:
    """Runs the grouping tick on a fixed cadence.

    A tick never holds a lock over the pool: it works on a snapshot and
    the hand-off to the ready-check coordinator re-validates every member
    through the registry.
    """

    def __init__(
        self,
        config: QueueConfig,
        pool: WaitingPool,
        coordinator: ReadyCheckCoordinator,
        clock: Callable[[], float] = time.time,
    ):
        config.validate()
        self._config = config
        self._pool = pool
        self._coordinator = coordinator
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()
        self.ticks_completed = 0

    async def tick(self) -> List[ReadyCheckSession]:
        """Run one tick; a tick started while another runs waits for it."""
        async with self._tick_lock:
            return await self._tick()

    async def _tick(self) -> List[ReadyCheckSession]:
        await self._coordinator.expire_overdue()
        snapshot = self._pool.snapshot()
        if len(snapshot) < self._config.group_size:
            return []
        proposals = form_groups(snapshot, self._config.group_size, self._coordinator.recent_member_sets())
        sessions = []
        for members in proposals:
            group = CandidateGroup.build(members, created_at=self._clock())
            session = await self._coordinator.propose(group)
            if session is not None:
                sessions.append(session)
        self.ticks_completed += 1
        if sessions:
            logger.info("Tick proposed %d group(s), %d player(s) still waiting", len(sessions), len(self._pool))
        return sessions

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except StoreUnavailable as exc:
                logger.warning("Grouping tick aborted, store unavailable: %s", exc)
            except Exception:
                logger.exception("Grouping tick failed")
            await asyncio.sleep(self._config.tick_interval)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
