"""Configuration objects for the matchmaking engine."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class QueueConfig:
    """Static configuration describing how groups are formed and confirmed.

    Attributes
    ----------
    group_size:
        Exact number of players in a group.  The grouping engine never
        proposes a partial group; leftover players wait for the next tick.
    tick_interval:
        Seconds between two grouping ticks.  Joins never trigger a tick
        directly so that arrivals are batched.
    ready_check_timeout:
        Seconds every member of a candidate group has to accept before
        the ready-check is disbanded as timed out.
    repair_cooldown:
        Seconds during which the member set of a disbanded group is not
        proposed again.  Zero disables the check.
    gateway_timeout:
        Upper bound, in seconds, for a single notification gateway call.
        Slow or failing notifications never stall state transitions.
    leaderboard_size:
        Default number of rows returned by the leaderboard.
    """

    group_size: int = 5
    tick_interval: float = 5.0
    ready_check_timeout: float = 30.0
    repair_cooldown: float = 60.0
    gateway_timeout: float = 5.0
    leaderboard_size: int = 10

    def validate(self) -> None:
        if self.group_size < 2:
            raise ValueError("Group size must be at least 2")
        if self.tick_interval <= 0:
            raise ValueError("Tick interval must be positive")
        if self.ready_check_timeout <= 0:
            raise ValueError("Ready-check timeout must be positive")
        if self.repair_cooldown < 0:
            raise ValueError("Re-pairing cooldown cannot be negative")
        if self.gateway_timeout <= 0:
            raise ValueError("Gateway timeout must be positive")
        if self.leaderboard_size <= 0:
            raise ValueError("Leaderboard size must be positive")
