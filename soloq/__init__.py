"""Solo queue matchmaking coordinator.

Players join a single waiting pool; a periodic grouping tick forms
skill-balanced groups of a fixed size and every group must pass a
ready-check before it is final.  The focus is a concurrent-safe engine
that can be unit tested without any chat platform attached.
"""

__version__ = "0.1.0"

from .config import QueueConfig
from .entities import PlayerState, QueueEntry
from .errors import CommandResult, MatchmakingError
from .gateway import LoggingGateway, NotificationGateway
from .service import MatchmakingService
from .store import DurableStore, MemoryStore, RedisStore

__all__ = [
    "CommandResult",
    "DurableStore",
    "LoggingGateway",
    "MatchmakingError",
    "MatchmakingService",
    "MemoryStore",
    "NotificationGateway",
    "PlayerState",
    "QueueConfig",
    "QueueEntry",
    "RedisStore",
]
