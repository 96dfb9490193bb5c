"""Extraction session state machine."""

from __future__ import annotations

from typing import Dict, FrozenSet

from conceptkb.errors import InvalidTransitionError
from conceptkb.storage.schemas import SessionStatus

S = SessionStatus

ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    S.ANALYZING: frozenset({S.EXTRACTING, S.SIMILARITY_CHECKING, S.ERROR}),
    S.EXTRACTING: frozenset({S.EXTRACTING, S.SIMILARITY_CHECKING, S.ERROR}),
    S.SIMILARITY_CHECKING: frozenset({S.SIMILARITY_CHECKING, S.EXTRACTED, S.ERROR}),
    S.EXTRACTED: frozenset({S.EXTRACTED, S.IN_REVIEW, S.REVIEWED, S.ARCHIVED, S.ERROR}),
    S.IN_REVIEW: frozenset({S.IN_REVIEW, S.REVIEWED, S.ARCHIVED, S.ERROR}),
    # Retention moves old reviewed sessions to archived.
    S.REVIEWED: frozenset({S.ARCHIVED}),
    S.ERROR: frozenset(),
    S.ARCHIVED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[SessionStatus] = frozenset({S.REVIEWED, S.ERROR, S.ARCHIVED})

IN_FLIGHT_STATUSES: FrozenSet[SessionStatus] = frozenset(
    {S.ANALYZING, S.EXTRACTING, S.SIMILARITY_CHECKING}
)


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: SessionStatus, target: SessionStatus, *, session_id: str = "") -> None:
    """Raise :class:`InvalidTransitionError` unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move session from {current.value} to {target.value}",
            session_id=session_id,
            status=current.value,
            target=target.value,
        )
