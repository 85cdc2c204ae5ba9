"""Text based driver showcasing the solo queue flow."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import List

from soloq import CommandResult, MatchmakingService, QueueConfig


def _generate_players(count: int) -> List[str]:
    return [f"Summoner-{idx + 1}" for idx in range(count)]


async def run_demo(player_count: int = 23, decline_rate: float = 0.1) -> None:
    config = QueueConfig(group_size=5, tick_interval=0.5, ready_check_timeout=2.0, repair_cooldown=5.0)
    service = MatchmakingService(config)
    players = _generate_players(player_count)
    print("[Lobby] Registering and queueing players...")
    for player_id in players:
        await service.register(player_id, random.randint(800, 2400))
        await service.join(player_id)
    print(f"[Matchmaking] {len(service.pool)} players queued. Running grouping ticks...")
    for tick in range(6):
        sessions = await service.tick()
        for session in sessions:
            print(f"[Ready-check] {', '.join(session.member_ids)} (spread {session.group.spread:.0f})")
            for player_id in session.member_ids:
                accept = random.random() > decline_rate
                result = await service.respond(session.session_id, player_id, accept)
                if result is not CommandResult.OK:
                    break
    print("[Result] Final player states:")
    for player_id in players:
        status = await service.status(player_id)
        print(f"- {player_id}: skill={status.skill:.0f} state={status.state.value}")
    await service.stop()


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    asyncio.run(run_demo())
