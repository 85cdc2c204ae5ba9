"""Player registry: identity, skill and top-level state of every player."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .entities import Player, PlayerState
from .errors import StateConflict, UnknownPlayer
from .locks import KeyedLocks
from .store import DurableStore, dump, load

logger = logging.getLogger(__name__)

KEY_PREFIX = "player:"
_CAS_ATTEMPTS = 8


def _key(player_id: str) -> str:
    return f"{KEY_PREFIX}{player_id}"


class PlayerRegistry:
    """Owns :class:`Player` records.

    ``transition`` is the only way any component changes a player's state.
    A per-player lock serializes callers inside this process and the
    store's compare-and-set serializes writers across instances, so a
    leave racing a grouping tick can never both win.
    """

    def __init__(self, store: DurableStore):
        self._store = store
        self._locks = KeyedLocks()

    async def _load(self, player_id: str) -> Tuple[Optional[str], Optional[Player]]:
        raw = await self._store.get(_key(player_id))
        document = load(raw)
        return raw, Player.from_document(document) if document else None

    async def register(self, player_id: str, skill: float) -> Player:
        """Create a player, or refresh the skill of a known one."""
        async with self._locks.hold(player_id):
            for _ in range(_CAS_ATTEMPTS):
                raw, player = await self._load(player_id)
                if player is None:
                    player = Player(player_id=player_id, skill=float(skill))
                else:
                    player.skill = float(skill)
                if await self._store.compare_and_set(_key(player_id), raw, dump(player.to_document())):
                    logger.info("Registered player %s with skill %s", player_id, player.skill)
                    return player
        raise StateConflict(f"player {player_id} kept changing during registration", player_id=player_id)

    async def update_skill(self, player_id: str, skill: float) -> Player:
        """Change the stored skill.

        A queue entry keeps the skill it cached at enqueue time; the new
        value applies from the player's next join.
        """
        async with self._locks.hold(player_id):
            for _ in range(_CAS_ATTEMPTS):
                raw, player = await self._load(player_id)
                if player is None:
                    raise UnknownPlayer(f"player {player_id} is not registered")
                player.skill = float(skill)
                if await self._store.compare_and_set(_key(player_id), raw, dump(player.to_document())):
                    logger.info("Updated skill of %s to %s", player_id, player.skill)
                    return player
        raise StateConflict(f"player {player_id} kept changing during skill update", player_id=player_id)

    async def get(self, player_id: str) -> Player:
        _, player = await self._load(player_id)
        if player is None:
            raise UnknownPlayer(f"player {player_id} is not registered")
        return player

    async def get_state(self, player_id: str) -> PlayerState:
        return (await self.get(player_id)).state

    async def transition(self, player_id: str, from_state: PlayerState, to_state: PlayerState) -> Player:
        """Move a player from ``from_state`` to ``to_state``.

        Raises :class:`StateConflict` when the current state is not
        ``from_state``; the exception carries the state actually found.
        """
        async with self._locks.hold(player_id):
            for _ in range(_CAS_ATTEMPTS):
                raw, player = await self._load(player_id)
                if player is None:
                    raise UnknownPlayer(f"player {player_id} is not registered")
                if player.state is not from_state:
                    raise StateConflict(
                        f"player {player_id} is {player.state.value}, expected {from_state.value}",
                        player_id=player_id,
                        actual=player.state,
                    )
                player.state = to_state
                if await self._store.compare_and_set(_key(player_id), raw, dump(player.to_document())):
                    logger.debug("Player %s: %s -> %s", player_id, from_state.value, to_state.value)
                    return player
        raise StateConflict(f"player {player_id} kept changing during transition", player_id=player_id)

    async def leaderboard(self, limit: int = 10) -> List[Player]:
        """Registered players ordered by skill, highest first."""
        players = []
        for key in await self._store.scan(KEY_PREFIX):
            document = load(await self._store.get(key))
            if document is not None:
                players.append(Player.from_document(document))
        players.sort(key=lambda player: (-player.skill, player.player_id))
        return players[:limit]
