"""Tests for the session status transition table."""

import pytest

from conceptkb.errors import ErrorKind, InvalidTransitionError
from conceptkb.pipeline.session_state import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    can_transition,
    ensure_transition,
)
from conceptkb.storage.schemas import SessionStatus as S


@pytest.mark.parametrize(
    "current,target",
    [
        (S.ANALYZING, S.EXTRACTING),
        (S.EXTRACTING, S.SIMILARITY_CHECKING),
        (S.SIMILARITY_CHECKING, S.EXTRACTED),
        (S.EXTRACTED, S.IN_REVIEW),
        (S.IN_REVIEW, S.REVIEWED),
        (S.REVIEWED, S.ARCHIVED),
        (S.EXTRACTING, S.ERROR),
    ],
)
def test_forward_transitions_allowed(current: S, target: S) -> None:
    assert can_transition(current, target) is True


@pytest.mark.parametrize(
    "current,target",
    [
        (S.EXTRACTED, S.EXTRACTING),
        (S.REVIEWED, S.IN_REVIEW),
        (S.REVIEWED, S.ERROR),
        (S.ERROR, S.EXTRACTING),
        (S.ARCHIVED, S.REVIEWED),
        (S.ANALYZING, S.EXTRACTED),
    ],
)
def test_backward_and_skipping_transitions_refused(current: S, target: S) -> None:
    assert can_transition(current, target) is False


def test_every_status_has_an_entry() -> None:
    assert set(ALLOWED_TRANSITIONS) == set(S)


def test_error_and_archived_are_dead_ends() -> None:
    for status in (S.ERROR, S.ARCHIVED):
        assert status in TERMINAL_STATUSES
        assert ALLOWED_TRANSITIONS[status] == frozenset()


def test_ensure_transition_raises_validation_kind() -> None:
    with pytest.raises(InvalidTransitionError) as excinfo:
        ensure_transition(S.REVIEWED, S.EXTRACTING, session_id="s-1")

    assert excinfo.value.kind == ErrorKind.VALIDATION
    assert excinfo.value.details == {"session_id": "s-1", "status": "reviewed", "target": "extracting"}
