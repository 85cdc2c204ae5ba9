"""Domain entities shared by the matchmaking components."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple


class PlayerState(Enum):
    """Top-level activity of a player."""

    IDLE = "idle"
    WAITING = "waiting"
    READY_CHECKING = "ready_checking"
    IN_GROUP = "in_group"


class ResponseState(Enum):
    """Answer of one member to a ready-check prompt."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"


class SessionPhase(Enum):
    OPEN = "open"
    CONFIRMED = "confirmed"
    DISBANDED = "disbanded"


class DisbandReason(Enum):
    DECLINED = "declined"
    TIMED_OUT = "timed_out"
    LEFT = "left"


def skill_spread(skills: Iterable[float]) -> float:
    """Max skill minus min skill, the balance metric of a group."""
    values = list(skills)
    if not values:
        return 0.0
    return max(values) - min(values)


@dataclass
class Player:
    """Registry record of a known player."""

    player_id: str
    skill: float
    state: PlayerState = PlayerState.IDLE

    def to_document(self) -> dict:
        return {"player_id": self.player_id, "skill": self.skill, "state": self.state.value}

    @classmethod
    def from_document(cls, document: dict) -> "Player":
        return cls(
            player_id=document["player_id"],
            skill=document["skill"],
            state=PlayerState(document["state"]),
        )


@dataclass(frozen=True)
class QueueEntry:
    """A waiting player as seen by the grouping engine.

    ``skill`` is a copy taken at enqueue time and does not follow later
    skill updates for the duration of this pool membership.
    """

    player_id: str
    skill: float
    enqueued_at: float
    attempts: int = 0

    def priority_key(self) -> Tuple[int, float]:
        return (-self.attempts, self.enqueued_at)

    def retried(self) -> "QueueEntry":
        return replace(self, attempts=self.attempts + 1)

    def to_document(self) -> dict:
        return {
            "player_id": self.player_id,
            "skill": self.skill,
            "enqueued_at": self.enqueued_at,
            "attempts": self.attempts,
        }

    @classmethod
    def from_document(cls, document: dict) -> "QueueEntry":
        return cls(
            player_id=document["player_id"],
            skill=document["skill"],
            enqueued_at=document["enqueued_at"],
            attempts=document.get("attempts", 0),
        )


@dataclass(frozen=True)
class QueuePosition:
    """Where a player stands in the waiting pool."""

    position: int
    queue_size: int
    attempts: int = 0


@dataclass(frozen=True)
class CandidateGroup:
    group_id: str
    members: Tuple[QueueEntry, ...]
    spread: float
    created_at: float

    @classmethod
    def build(cls, members: Iterable[QueueEntry], created_at: float) -> "CandidateGroup":
        members = tuple(members)
        return cls(
            group_id=uuid.uuid4().hex,
            members=members,
            spread=skill_spread(entry.skill for entry in members),
            created_at=created_at,
        )

    @property
    def member_ids(self) -> Tuple[str, ...]:
        return tuple(entry.player_id for entry in self.members)

    def entry_for(self, player_id: str) -> QueueEntry:
        for entry in self.members:
            if entry.player_id == player_id:
                return entry
        raise KeyError(player_id)

    def to_document(self) -> dict:
        return {
            "group_id": self.group_id,
            "members": [entry.to_document() for entry in self.members],
            "spread": self.spread,
            "created_at": self.created_at,
        }

    @classmethod
    def from_document(cls, document: dict) -> "CandidateGroup":
        return cls(
            group_id=document["group_id"],
            members=tuple(QueueEntry.from_document(item) for item in document["members"]),
            spread=document["spread"],
            created_at=document["created_at"],
        )


@dataclass
class ReadyCheckSession:
    """Confirmation state of one candidate group.

    The member set is fixed at creation and always equals the group's
    member set.
    """

    session_id: str
    group: CandidateGroup
    deadline: float
    responses: Dict[str, ResponseState] = field(default_factory=dict)
    phase: SessionPhase = SessionPhase.OPEN
    reason: Optional[DisbandReason] = None

    @classmethod
    def open(cls, group: CandidateGroup, deadline: float) -> "ReadyCheckSession":
        return cls(
            session_id=uuid.uuid4().hex,
            group=group,
            deadline=deadline,
            responses={player_id: ResponseState.PENDING for player_id in group.member_ids},
        )

    @property
    def is_resolved(self) -> bool:
        return self.phase is not SessionPhase.OPEN

    @property
    def member_ids(self) -> Tuple[str, ...]:
        return self.group.member_ids

    def is_overdue(self, now: float) -> bool:
        return now >= self.deadline

    def members_in(self, *states: ResponseState) -> List[str]:
        return [player_id for player_id in self.member_ids if self.responses[player_id] in states]

    def all_accepted(self) -> bool:
        return all(state is ResponseState.ACCEPTED for state in self.responses.values())

    def to_document(self) -> dict:
        return {
            "session_id": self.session_id,
            "group": self.group.to_document(),
            "deadline": self.deadline,
            "responses": {player_id: state.value for player_id, state in self.responses.items()},
            "phase": self.phase.value,
            "reason": self.reason.value if self.reason else None,
        }

    @classmethod
    def from_document(cls, document: dict) -> "ReadyCheckSession":
        reason = document.get("reason")
        return cls(
            session_id=document["session_id"],
            group=CandidateGroup.from_document(document["group"]),
            deadline=document["deadline"],
            responses={
                player_id: ResponseState(value) for player_id, value in document["responses"].items()
            },
            phase=SessionPhase(document["phase"]),
            reason=DisbandReason(reason) if reason else None,
        )
