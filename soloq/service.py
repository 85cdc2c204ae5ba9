"""Facade wiring the matchmaking components behind the command surface."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .config import QueueConfig
from .entities import Player, PlayerState, QueuePosition
from .errors import (
    AlreadyQueued,
    CommandResult,
    MatchmakingError,
    NotQueued,
    SessionAlreadyResolved,
    SessionNotFound,
    StateConflict,
)
from .gateway import LoggingGateway, NotificationGateway, deliver
from .grouping import GroupingEngine
from .pool import WaitingPool
from .readycheck import ReadyCheckCoordinator
from .registry import PlayerRegistry
from .store import DurableStore, MemoryStore

logger = logging.getLogger(__name__)

_LEAVE_ATTEMPTS = 3


@dataclass
class PlayerStatus:
    """Everything a client needs to render a player's queue status."""

    player_id: str
    skill: float
    state: PlayerState
    position: Optional[QueuePosition] = None
    session_id: Optional[str] = None
    deadline: Optional[float] = None


class MatchmakingService:
    """High level facade representing one coordinator instance.

    Commands report a :class:`CommandResult` instead of raising, so the
    chat-platform adapter can map outcomes to replies directly.
    """

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        store: Optional[DurableStore] = None,
        gateway: Optional[NotificationGateway] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or QueueConfig()
        self.config.validate()
        self.store = store if store is not None else MemoryStore()
        self.gateway = gateway or LoggingGateway()
        self.registry = PlayerRegistry(self.store)
        self.pool = WaitingPool(self.store, clock=clock)
        self.ready_checks = ReadyCheckCoordinator(
            self.config, self.registry, self.pool, self.store, self.gateway, clock=clock
        )
        self.grouping = GroupingEngine(self.config, self.pool, self.ready_checks, clock=clock)

    # ------------------------------------------------------------------
    # lifecycle

    async def start(self) -> None:
        await self.pool.restore()
        await self.ready_checks.restore()
        self.grouping.start()

    async def stop(self) -> None:
        await self.grouping.stop()
        await self.ready_checks.stop()
        await self.store.close()

    # ------------------------------------------------------------------
    # commands

    async def register(self, player_id: str, skill: float) -> CommandResult:
        return await self._run("register", player_id, self.registry.register(player_id, skill))

    async def update_skill(self, player_id: str, skill: float) -> CommandResult:
        return await self._run("update_skill", player_id, self.registry.update_skill(player_id, skill))

    async def join(self, player_id: str) -> CommandResult:
        return await self._run("join", player_id, self._join(player_id))

    async def leave(self, player_id: str) -> CommandResult:
        return await self._run("leave", player_id, self._leave(player_id))

    async def respond(self, session_id: str, player_id: str, accept: bool) -> CommandResult:
        return await self._run("respond", player_id, self.ready_checks.respond(session_id, player_id, accept))

    async def _run(self, command: str, player_id: str, operation) -> CommandResult:
        try:
            await operation
        except MatchmakingError as exc:
            logger.info("%s for %s rejected (%s): %s", command, player_id, exc.result.value, exc)
            return exc.result
        return CommandResult.OK

    async def _join(self, player_id: str) -> None:
        player = await self.registry.get(player_id)
        if player.state in (PlayerState.WAITING, PlayerState.READY_CHECKING):
            raise AlreadyQueued(f"player {player_id} is already {player.state.value}")
        try:
            await self.registry.transition(player_id, player.state, PlayerState.WAITING)
        except StateConflict as exc:
            if exc.actual in (PlayerState.WAITING, PlayerState.READY_CHECKING):
                raise AlreadyQueued(f"player {player_id} is already {exc.actual.value}") from exc
            raise
        try:
            await self.pool.enqueue(player_id, player.skill)
        except MatchmakingError:
            await self.registry.transition(player_id, PlayerState.WAITING, player.state)
            raise
        await deliver(
            self.gateway.notify_queue_status(player_id, self.pool.position(player_id)),
            self.config.gateway_timeout,
            f"queue status for {player_id}",
        )

    async def _leave(self, player_id: str) -> None:
        for _ in range(_LEAVE_ATTEMPTS):
            try:
                await self.registry.transition(player_id, PlayerState.WAITING, PlayerState.IDLE)
            except StateConflict as exc:
                if exc.actual is PlayerState.READY_CHECKING:
                    try:
                        await self.ready_checks.withdraw(player_id)
                        return
                    except (SessionNotFound, SessionAlreadyResolved):
                        # The hand-off was rolled back or the session just
                        # resolved; look at the player's state again.
                        continue
                if exc.actual in (PlayerState.IDLE, PlayerState.IN_GROUP):
                    raise NotQueued(f"player {player_id} is not queued") from exc
                continue
            try:
                await self.pool.dequeue(player_id)
            except NotQueued:
                logger.warning("Player %s was waiting without a queue entry", player_id)
            except MatchmakingError:
                await self.registry.transition(player_id, PlayerState.IDLE, PlayerState.WAITING)
                raise
            return
        raise StateConflict(f"player {player_id} kept changing state while leaving", player_id=player_id)

    # ------------------------------------------------------------------
    # queries

    async def status(self, player_id: str) -> PlayerStatus:
        player = await self.registry.get(player_id)
        status = PlayerStatus(player_id=player.player_id, skill=player.skill, state=player.state)
        if player_id in self.pool:
            status.position = self.pool.position(player_id)
        session = self.ready_checks.session_for(player_id)
        if session is not None:
            status.session_id = session.session_id
            status.deadline = session.deadline
        return status

    async def leaderboard(self, limit: Optional[int] = None) -> List[Player]:
        return await self.registry.leaderboard(limit or self.config.leaderboard_size)

    async def tick(self):
        """Run one grouping tick immediately."""
        return await self.grouping.tick()
