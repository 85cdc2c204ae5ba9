"""Ready-check protocol confirming a candidate group before it is final."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from typing import Callable, Deque, Dict, FrozenSet, List, Optional, Set, Tuple

from .config import QueueConfig
from .entities import (
    CandidateGroup,
    DisbandReason,
    PlayerState,
    QueueEntry,
    ReadyCheckSession,
    ResponseState,
    SessionPhase,
)
from .errors import (
    AlreadyQueued,
    MatchmakingError,
    SessionAlreadyResolved,
    SessionNotFound,
    StateConflict,
    StoreUnavailable,
)
from .gateway import NotificationGateway, deliver
from .pool import WaitingPool
from .registry import PlayerRegistry
from .store import DurableStore, dump, load

logger = logging.getLogger(__name__)

KEY_PREFIX = "session:"
_RESOLVED_MEMORY = 1024


def _key(session_id: str) -> str:
    return f"{KEY_PREFIX}{session_id}"


class ReadyCheckCoordinator:
    """Drives every candidate group to Confirmed or Disbanded.

    Each session has its own lock.  Responses, the deadline timer, the
    tick sweep and withdrawals all check the session phase under that
    lock, so whichever event arrives first resolves the session and the
    others see it already resolved.
    """

    def __init__(
        self,
        config: QueueConfig,
        registry: PlayerRegistry,
        pool: WaitingPool,
        store: DurableStore,
        gateway: NotificationGateway,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._registry = registry
        self._pool = pool
        self._store = store
        self._gateway = gateway
        self._clock = clock
        self._sessions: Dict[str, ReadyCheckSession] = {}
        self._by_player: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._recent: Deque[Tuple[float, FrozenSet[str]]] = deque()
        self._resolved: "OrderedDict[str, SessionPhase]" = OrderedDict()
        self._unsettled: Set[str] = set()

    # ------------------------------------------------------------------
    # queries

    def session(self, session_id: str) -> ReadyCheckSession:
        session = self._sessions.get(session_id)
        if session is None:
            phase = self._resolved.get(session_id)
            if phase is not None:
                raise SessionAlreadyResolved(f"ready-check {session_id} is already {phase.value}")
            raise SessionNotFound(f"ready-check {session_id} does not exist")
        return session

    def session_for(self, player_id: str) -> Optional[ReadyCheckSession]:
        session_id = self._by_player.get(player_id)
        return self._sessions.get(session_id) if session_id else None

    @property
    def open_sessions(self) -> List[ReadyCheckSession]:
        return list(self._sessions.values())

    def recent_member_sets(self) -> Set[FrozenSet[str]]:
        """Member sets of groups disbanded within the re-pairing cooldown."""
        cutoff = self._clock() - self._config.repair_cooldown
        while self._recent and self._recent[0][0] <= cutoff:
            self._recent.popleft()
        return {members for _, members in self._recent}

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # hand-off from the grouping engine

    async def propose(self, group: CandidateGroup) -> Optional[ReadyCheckSession]:
        """Open a ready-check for ``group``.

        Every member moves Waiting -> ReadyChecking and leaves the pool.
        If any member changed state since the snapshot (a leave won the
        race) the hand-off is rolled back and ``None`` is returned.
        :class:`StoreUnavailable` is re-raised after the rollback so the
        caller can abort its tick.
        """
        claimed = [player_id for player_id in group.member_ids if player_id in self._by_player]
        if claimed:
            logger.info("Group %s dropped, %s already in a ready-check", group.group_id, ", ".join(claimed))
            return None
        session = ReadyCheckSession.open(group, deadline=self._clock() + self._config.ready_check_timeout)
        # Registered before any transition so that a leave observing
        # ReadyChecking always finds the session to withdraw from.
        self._sessions[session.session_id] = session
        for player_id in group.member_ids:
            self._by_player[player_id] = session.session_id
        lock = self._locks[session.session_id] = asyncio.Lock()
        async with lock:
            moved: List[str] = []
            taken: List[QueueEntry] = []
            try:
                for player_id in group.member_ids:
                    await self._registry.transition(player_id, PlayerState.WAITING, PlayerState.READY_CHECKING)
                    moved.append(player_id)
                for entry in group.members:
                    await self._pool.dequeue(entry.player_id)
                    taken.append(entry)
                await self._store.set(_key(session.session_id), dump(session.to_document()))
            except MatchmakingError as exc:
                if await self._roll_back(moved, taken):
                    self._forget(session)
                else:
                    session.phase = SessionPhase.DISBANDED
                    self._unsettled.add(session.session_id)
                    logger.warning("Hand-off of group %s is half undone, retrying on the next sweep", group.group_id)
                if isinstance(exc, StoreUnavailable):
                    raise
                logger.info("Group %s dropped before ready-check: %s", group.group_id, exc)
                return None
            self._timers[session.session_id] = asyncio.create_task(self._expire_at_deadline(session))
        logger.info(
            "Ready-check %s opened for %s (spread %s)",
            session.session_id,
            ", ".join(group.member_ids),
            group.spread,
        )
        await deliver(
            self._gateway.prompt_ready_check(session.session_id, group.member_ids, session.deadline),
            self._config.gateway_timeout,
            f"prompt for {session.session_id}",
        )
        return session

    async def _roll_back(self, moved: List[str], taken: List[QueueEntry]) -> bool:
        """Undo a partial hand-off; ``False`` when the store refused part of it."""
        complete = True
        for entry in taken:
            try:
                await self._pool.reinstate(entry)
            except StoreUnavailable:
                complete = False
            except MatchmakingError:
                logger.exception("Could not return %s to the pool", entry.player_id)
        for player_id in moved:
            try:
                await self._registry.transition(player_id, PlayerState.READY_CHECKING, PlayerState.WAITING)
            except StoreUnavailable:
                complete = False
            except MatchmakingError:
                logger.exception("Could not restore %s to waiting", player_id)
        return complete

    # ------------------------------------------------------------------
    # member events

    async def respond(self, session_id: str, player_id: str, accept: bool) -> ReadyCheckSession:
        session = self.session(session_id)
        async with self._locks[session_id]:
            self._ensure_open(session)
            if player_id not in session.responses:
                raise SessionNotFound(f"player {player_id} is not part of ready-check {session_id}")
            if session.is_overdue(self._clock()):
                await self._time_out(session)
                raise SessionAlreadyResolved(f"ready-check {session_id} expired before the response")
            if session.responses[player_id] is not ResponseState.PENDING:
                raise StateConflict(
                    f"player {player_id} already answered ready-check {session_id}", player_id=player_id
                )
            previous = dict(session.responses)
            if not accept:
                session.responses[player_id] = ResponseState.DECLINED
                logger.info("Player %s declined ready-check %s", player_id, session_id)
                await self._resolve(session, SessionPhase.DISBANDED, DisbandReason.DECLINED, previous)
                return session
            session.responses[player_id] = ResponseState.ACCEPTED
            if session.all_accepted():
                await self._resolve(session, SessionPhase.CONFIRMED, None, previous)
                return session
            try:
                await self._store.set(_key(session_id), dump(session.to_document()))
            except StoreUnavailable:
                session.responses[player_id] = ResponseState.PENDING
                raise
            logger.info(
                "Player %s accepted ready-check %s (%d/%d)",
                player_id,
                session_id,
                len(session.members_in(ResponseState.ACCEPTED)),
                len(session.member_ids),
            )
            return session

    async def withdraw(self, player_id: str) -> ReadyCheckSession:
        """Treat a leave during a ready-check as an implicit decline."""
        session_id = self._by_player.get(player_id)
        if session_id is None:
            raise SessionNotFound(f"player {player_id} has no ready-check")
        session = self.session(session_id)
        async with self._locks[session_id]:
            if session_id in self._unsettled:
                await self._finish(session)
            self._ensure_open(session)
            previous = dict(session.responses)
            session.responses[player_id] = ResponseState.DECLINED
            logger.info("Player %s left during ready-check %s", player_id, session_id)
            await self._resolve(session, SessionPhase.DISBANDED, DisbandReason.LEFT, previous)
            return session

    def _ensure_open(self, session: ReadyCheckSession) -> None:
        if session.is_resolved or self._sessions.get(session.session_id) is not session:
            raise SessionAlreadyResolved(f"ready-check {session.session_id} is already {session.phase.value}")

    # ------------------------------------------------------------------
    # deadlines

    async def _expire_at_deadline(self, session: ReadyCheckSession) -> None:
        try:
            remaining = session.deadline - self._clock()
            while remaining > 0:
                await asyncio.sleep(remaining)
                remaining = session.deadline - self._clock()
            await self.expire(session.session_id)
        except asyncio.CancelledError:
            raise
        except StoreUnavailable as exc:
            logger.warning("Ready-check %s left for the tick sweep: %s", session.session_id, exc)
        except Exception:
            logger.exception("Deadline handling failed for ready-check %s", session.session_id)

    async def expire(self, session_id: str) -> bool:
        """Resolve a session whose deadline passed; safe to call repeatedly."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        async with self._locks[session_id]:
            if session.is_resolved or self._sessions.get(session_id) is not session:
                return False
            if not session.is_overdue(self._clock()):
                return False
            await self._time_out(session)
            return True

    async def expire_overdue(self) -> int:
        """Wake-and-check sweep.

        Finishes sessions left half settled by a store outage, then
        resolves every session past its deadline.
        """
        for session_id in list(self._unsettled):
            session = self._sessions[session_id]
            async with self._locks[session_id]:
                if session_id in self._unsettled:
                    await self._finish(session)
        now = self._clock()
        expired = 0
        for session in list(self._sessions.values()):
            if session.is_overdue(now) and await self.expire(session.session_id):
                expired += 1
        return expired

    async def _time_out(self, session: ReadyCheckSession) -> None:
        previous = dict(session.responses)
        for player_id in session.members_in(ResponseState.PENDING):
            session.responses[player_id] = ResponseState.TIMED_OUT
        logger.info("Ready-check %s timed out", session.session_id)
        await self._resolve(session, SessionPhase.DISBANDED, DisbandReason.TIMED_OUT, previous)

    # ------------------------------------------------------------------
    # resolution

    async def _resolve(
        self,
        session: ReadyCheckSession,
        phase: SessionPhase,
        reason: Optional[DisbandReason],
        previous: Dict[str, ResponseState],
    ) -> None:
        """Move every member to the outcome's state, then retire the session.

        If the store fails before any member moved, the session is put back
        as it was and stays open.  Once a member has moved the outcome
        stands and the session waits in ``_unsettled`` for the next sweep.
        Either way the error reaches the caller.
        """
        session.phase = phase
        session.reason = reason
        settled: List[str] = []
        try:
            await self._settle(session, settled)
        except MatchmakingError:
            if settled:
                self._unsettled.add(session.session_id)
                logger.warning(
                    "Ready-check %s is %s but only %s settled", session.session_id, phase.value, ", ".join(settled)
                )
            else:
                session.phase = SessionPhase.OPEN
                session.reason = None
                session.responses.update(previous)
            raise
        await self._retire(session)

    async def _finish(self, session: ReadyCheckSession) -> None:
        await self._settle(session, [])
        self._unsettled.discard(session.session_id)
        logger.info("Ready-check %s settled after a store outage", session.session_id)
        await self._retire(session)

    async def _settle(self, session: ReadyCheckSession, settled: List[str]) -> None:
        # Every step tolerates members already moved by an earlier attempt.
        if session.phase is SessionPhase.CONFIRMED:
            for player_id in session.member_ids:
                await self._move(player_id, PlayerState.IN_GROUP, settled)
            return
        for player_id in session.members_in(ResponseState.DECLINED, ResponseState.TIMED_OUT):
            await self._move(player_id, PlayerState.IDLE, settled)
        for player_id in session.members_in(ResponseState.ACCEPTED, ResponseState.PENDING):
            await self._return_to_pool(session, session.group.entry_for(player_id), settled)

    async def _move(self, player_id: str, target: PlayerState, settled: List[str]) -> bool:
        try:
            await self._registry.transition(player_id, PlayerState.READY_CHECKING, target)
        except StateConflict as exc:
            if exc.actual is None:
                raise
            if exc.actual is not target:
                logger.warning("Player %s is %s, expected ready-checking", player_id, exc.actual.value)
            return False
        settled.append(player_id)
        return True

    async def _return_to_pool(self, session: ReadyCheckSession, entry: QueueEntry, settled: List[str]) -> None:
        player_id = entry.player_id
        moved = await self._move(player_id, PlayerState.WAITING, settled)
        if not moved and await self._registry.get_state(player_id) is not PlayerState.WAITING:
            return
        if player_id in self._pool:
            return
        try:
            if session.reason is None:
                await self._pool.reinstate(entry)
            else:
                await self._pool.requeue(entry)
        except AlreadyQueued:
            logger.warning("Player %s already has a queue entry", player_id)
            return
        settled.append(player_id)

    async def _retire(self, session: ReadyCheckSession) -> None:
        await self._discard(session)
        group_id = session.group.group_id
        if session.phase is SessionPhase.CONFIRMED:
            logger.info("Group %s confirmed: %s", group_id, ", ".join(session.member_ids))
            await deliver(
                self._gateway.notify_group_confirmed(group_id, session.member_ids),
                self._config.gateway_timeout,
                f"confirmation of {group_id}",
            )
            return
        if session.reason is None:
            # A hand-off that never reached the members.
            logger.info("Group %s returned to the pool", group_id)
            return
        self._recent.append((self._clock(), frozenset(session.member_ids)))
        requeued = [
            player_id
            for player_id in session.members_in(ResponseState.ACCEPTED, ResponseState.PENDING)
            if player_id in self._pool
        ]
        logger.info(
            "Group %s disbanded (%s); requeued %s",
            group_id,
            session.reason.value,
            ", ".join(requeued) or "nobody",
        )
        await deliver(
            self._gateway.notify_group_disbanded(group_id, session.reason, session.member_ids),
            self._config.gateway_timeout,
            f"disband of {group_id}",
        )
        for player_id in requeued:
            await deliver(
                self._gateway.notify_queue_status(player_id, self._pool.position(player_id)),
                self._config.gateway_timeout,
                f"queue status for {player_id}",
            )

    async def _discard(self, session: ReadyCheckSession) -> None:
        try:
            await self._store.delete(_key(session.session_id))
        except StoreUnavailable:
            logger.exception("Resolved ready-check %s is still in the store", session.session_id)
        self._resolved[session.session_id] = session.phase
        while len(self._resolved) > _RESOLVED_MEMORY:
            self._resolved.popitem(last=False)
        self._unsettled.discard(session.session_id)
        self._forget(session)

    def _forget(self, session: ReadyCheckSession) -> None:
        self._sessions.pop(session.session_id, None)
        self._locks.pop(session.session_id, None)
        for player_id in session.member_ids:
            if self._by_player.get(player_id) == session.session_id:
                del self._by_player[player_id]
        timer = self._timers.pop(session.session_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    # ------------------------------------------------------------------
    # lifecycle

    async def restore(self) -> int:
        """Reload open sessions persisted by a previous run and re-arm them."""
        restored = 0
        for key in await self._store.scan(KEY_PREFIX):
            document = load(await self._store.get(key))
            if document is None:
                continue
            session = ReadyCheckSession.from_document(document)
            if session.is_resolved or session.session_id in self._sessions:
                continue
            self._sessions[session.session_id] = session
            self._locks[session.session_id] = asyncio.Lock()
            for player_id in session.member_ids:
                self._by_player[player_id] = session.session_id
            self._timers[session.session_id] = asyncio.create_task(self._expire_at_deadline(session))
            restored += 1
        if restored:
            logger.info("Restored %d open ready-checks from the store", restored)
        return restored

    async def stop(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
