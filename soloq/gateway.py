"""Notification gateway consumed by the engine.

The engine never assumes delivery: a gateway call that fails or takes too
long is logged and the state machine carries on.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Sequence

from .entities import DisbandReason, QueuePosition

logger = logging.getLogger(__name__)


async def deliver(notification: Awaitable[None], timeout: float, description: str) -> bool:
    """Await a gateway call with a caller-side timeout.

    Returns whether the call completed; failures are logged, not raised.
    """
    try:
        await asyncio.wait_for(notification, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Notification %s timed out after %.1fs", description, timeout)
        return False
    except Exception:
        logger.warning("Notification %s failed", description, exc_info=True)
        return False
    return True


class NotificationGateway(ABC):
    """Delivers prompts and results to players on the chat platform."""

    @abstractmethod
    async def prompt_ready_check(self, session_id: str, member_ids: Sequence[str], deadline: float) -> None:
        ...

    @abstractmethod
    async def notify_group_confirmed(self, group_id: str, member_ids: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def notify_group_disbanded(
        self, group_id: str, reason: DisbandReason, affected_member_ids: Sequence[str]
    ) -> None:
        ...

    @abstractmethod
    async def notify_queue_status(self, player_id: str, position: QueuePosition) -> None:
        ...


class LoggingGateway(NotificationGateway):
    """Gateway that only writes notifications to the log."""

    async def prompt_ready_check(self, session_id, member_ids, deadline) -> None:
        logger.info("Ready-check %s for %s (deadline %.0f)", session_id, ", ".join(member_ids), deadline)

    async def notify_group_confirmed(self, group_id, member_ids) -> None:
        logger.info("Group %s confirmed: %s", group_id, ", ".join(member_ids))

    async def notify_group_disbanded(self, group_id, reason, affected_member_ids) -> None:
        logger.info("Group %s disbanded (%s): %s", group_id, reason.value, ", ".join(affected_member_ids))

    async def notify_queue_status(self, player_id, position) -> None:
        logger.info("Player %s is %d/%d in queue", player_id, position.position, position.queue_size)
