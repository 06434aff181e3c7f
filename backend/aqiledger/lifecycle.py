"""Reading status state machine.

Every stage owns exactly one inbound status. The transitions below are the
only ones a stage may perform; anything else raises
:class:`IllegalTransitionError`.
"""

from __future__ import annotations

from enum import Enum

from .errors import IllegalTransitionError


class ReadingStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    VERIFIED = "VERIFIED"
    PROCESSING_AI = "PROCESSING_AI"
    DERIVED_INDIVIDUAL = "DERIVED_INDIVIDUAL"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class DerivativeType(str, Enum):
    DAILY = "DAILY"
    MONTHLY = "MONTHLY"


TRANSITIONS: dict[ReadingStatus, frozenset[ReadingStatus]] = {
    ReadingStatus.PENDING: frozenset({ReadingStatus.PROCESSING}),
    ReadingStatus.PROCESSING: frozenset(
        {ReadingStatus.PROCESSING, ReadingStatus.VERIFIED, ReadingStatus.FAILED}
    ),
    ReadingStatus.VERIFIED: frozenset({ReadingStatus.PROCESSING_AI}),
    # PROCESSING_AI -> VERIFIED releases a lock after a failed generation.
    ReadingStatus.PROCESSING_AI: frozenset(
        {ReadingStatus.DERIVED_INDIVIDUAL, ReadingStatus.VERIFIED}
    ),
    ReadingStatus.DERIVED_INDIVIDUAL: frozenset({ReadingStatus.COMPLETE}),
    ReadingStatus.COMPLETE: frozenset(),
    ReadingStatus.FAILED: frozenset(),
}

TERMINAL = frozenset({ReadingStatus.COMPLETE, ReadingStatus.FAILED})

# Statuses at or beyond verification; the batch carries a Merkle root.
ANCHORED = frozenset(
    {
        ReadingStatus.VERIFIED,
        ReadingStatus.PROCESSING_AI,
        ReadingStatus.DERIVED_INDIVIDUAL,
        ReadingStatus.COMPLETE,
    }
)


def is_terminal(status: str | ReadingStatus) -> bool:
    return ReadingStatus(status) in TERMINAL


def can_transition(current: str | ReadingStatus, target: str | ReadingStatus) -> bool:
    return ReadingStatus(target) in TRANSITIONS[ReadingStatus(current)]


def ensure_transition(entity_id: str, current: str | ReadingStatus, target: str | ReadingStatus) -> ReadingStatus:
    if not can_transition(current, target):
        raise IllegalTransitionError(entity_id, ReadingStatus(current).value, ReadingStatus(target).value)
    return ReadingStatus(target)

