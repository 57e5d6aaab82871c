"""Conversation status transitions.

Every entry point (customer messages, administrative actions, housekeeping)
goes through :func:`transition`; nothing else decides the next status.

    active -> ai_handling <-> needs_attention -> human_handling <-> ai_handling

``resolved`` is reachable from every non-terminal status and has no exits.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Union

from .models import Status


class Event(str, Enum):
    AI_REPLIED = "ai_replied"
    ESCALATE = "escalate"
    TAKE_OVER = "take_over"
    AGENT_MESSAGE = "agent_message"
    HAND_BACK = "hand_back"
    RESOLVE = "resolve"
    EXPIRE = "expire"


@dataclass(frozen=True)
class Rejected:
    """A transition that is not allowed from the current status."""

    current: Status
    event: Event
    reason: str


OPEN_STATUSES: FrozenSet[Status] = frozenset(s for s in Status if s != Status.RESOLVED)
AI_STATUSES: FrozenSet[Status] = frozenset({Status.ACTIVE, Status.AI_HANDLING})

_TABLE: Dict[Event, Dict[Status, Status]] = {
    Event.AI_REPLIED: {
        Status.ACTIVE: Status.AI_HANDLING,
        Status.AI_HANDLING: Status.AI_HANDLING,
        Status.NEEDS_ATTENTION: Status.NEEDS_ATTENTION,
    },
    Event.ESCALATE: {
        Status.ACTIVE: Status.NEEDS_ATTENTION,
        Status.AI_HANDLING: Status.NEEDS_ATTENTION,
        Status.NEEDS_ATTENTION: Status.NEEDS_ATTENTION,
    },
    Event.TAKE_OVER: {s: Status.HUMAN_HANDLING for s in OPEN_STATUSES},
    Event.AGENT_MESSAGE: {s: Status.HUMAN_HANDLING for s in OPEN_STATUSES},
    Event.HAND_BACK: {
        Status.HUMAN_HANDLING: Status.AI_HANDLING,
        Status.NEEDS_ATTENTION: Status.AI_HANDLING,
    },
    Event.RESOLVE: {s: Status.RESOLVED for s in OPEN_STATUSES},
    Event.EXPIRE: {s: Status.RESOLVED for s in AI_STATUSES},
}


def transition(current: Status, event: Event) -> Union[Status, Rejected]:
    """Return the status reached from ``current`` on ``event``, or :class:`Rejected`."""
    if current == Status.RESOLVED:
        return Rejected(current, event, "conversation is resolved")
    target = _TABLE[event].get(current)
    if target is None:
        return Rejected(current, event, f"{event.value} is not allowed while {current.value}")
    return target


def allowed_from(event: Event) -> FrozenSet[Status]:
    """Statuses from which ``event`` is accepted."""
    return frozenset(_TABLE[event])
