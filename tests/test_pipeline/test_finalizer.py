"""Tests for session finalization."""

from __future__ import annotations

import pytest
from fakes import FakeClock, make_extracted

from conceptkb.errors import ErrorKind
from conceptkb.pipeline.finalizer import Finalizer
from conceptkb.storage.repositories import LessonRepository, SessionRepository
from conceptkb.storage.schemas import (
    ConceptCategory,
    DocumentExtractionStatus,
    ExtractionProgress,
    ExtractionSession,
    LessonDocument,
    SessionStatus,
    SimilarityCandidate,
    SimilarityMatch,
)


@pytest.fixture
def finalizer(sessions: SessionRepository, lessons: LessonRepository, clock: FakeClock) -> Finalizer:
    return Finalizer(sessions, lessons, clock=clock)


def _session(
    clock: FakeClock, concepts: list, checked: int, status=SessionStatus.SIMILARITY_CHECKING
) -> ExtractionSession:
    return ExtractionSession(
        document_id="lesson-1",
        status=status,
        extracted_concepts=concepts,
        progress=ExtractionProgress(similarity_checked_count=checked),
        extraction_started_at=clock(),
    )


def test_finalize_builds_statistics_and_updates_lesson(
    finalizer: Finalizer,
    sessions: SessionRepository,
    lessons: LessonRepository,
    lesson: LessonDocument,
    clock: FakeClock,
) -> None:
    concepts = [
        make_extracted("Ser", confidence=0.9),
        make_extracted("Estar", confidence=0.6),
        make_extracted("La comida", ConceptCategory.VOCABULARY, confidence=0.85),
    ]
    session = _session(clock, concepts, checked=3)
    session.similarity_matches = [
        SimilarityMatch(
            extracted_concept_name="Ser",
            matches=[SimilarityCandidate(concept_id="c-1", name="Ser y estar", score=0.7)],
        ),
        SimilarityMatch(extracted_concept_name="Estar"),
        SimilarityMatch(extracted_concept_name="La comida"),
    ]
    sessions.create(session)
    clock.advance(seconds=42)

    payload = finalizer.finalize(session.id).unwrap()

    stats = payload.statistics
    assert stats.total_concepts == 3
    assert stats.average_confidence == 0.78
    assert stats.high_confidence_count == 2
    assert stats.concept_categories == 2
    assert stats.concepts_with_matches == 1
    assert stats.processing_time_seconds == 42.0
    assert payload.matches_by_concept["Ser"][0].concept_id == "c-1"
    assert payload.status == SessionStatus.EXTRACTED

    stored = sessions.require(session.id)
    assert stored.status == SessionStatus.EXTRACTED
    assert stored.review_progress.total_concepts == 3
    assert stored.metadata.total_processing_time == 42.0
    updated = lessons.get(lesson.document_id)
    assert updated.extraction_status == DocumentExtractionStatus.EXTRACTED
    assert updated.extracted_concept_names == ["Ser", "Estar", "La comida"]


def test_incomplete_similarity_is_inconsistency(
    finalizer: Finalizer, sessions: SessionRepository, clock: FakeClock
) -> None:
    session = sessions.create(
        _session(clock, [make_extracted("Ser"), make_extracted("Estar")], checked=1)
    )

    result = finalizer.finalize(session.id)

    assert result.error.kind == ErrorKind.INCONSISTENCY
    assert result.error.details["similarity_checked_count"] == 1
    assert result.error.details["total_concepts"] == 2
    assert sessions.require(session.id).status == SessionStatus.SIMILARITY_CHECKING


def test_zero_concepts_finalize_with_zero_confidence(
    finalizer: Finalizer, sessions: SessionRepository, clock: FakeClock
) -> None:
    session = sessions.create(_session(clock, [], checked=0))

    payload = finalizer.finalize(session.id).unwrap()

    assert payload.statistics.total_concepts == 0
    assert payload.statistics.average_confidence == 0.0
    assert payload.concepts == []


def test_finalize_missing_lesson_still_succeeds(
    finalizer: Finalizer, sessions: SessionRepository, clock: FakeClock
) -> None:
    session = _session(clock, [make_extracted("Ser")], checked=1, status=SessionStatus.EXTRACTED)
    session.document_id = "no-such-lesson"
    sessions.create(session)

    assert finalizer.finalize(session.id).success is True


@pytest.mark.parametrize("status", [SessionStatus.EXTRACTING, SessionStatus.REVIEWED])
def test_finalize_rejects_other_statuses(
    finalizer: Finalizer, sessions: SessionRepository, clock: FakeClock, status: SessionStatus
) -> None:
    session = sessions.create(_session(clock, [], checked=0, status=status))

    result = finalizer.finalize(session.id)

    assert result.error.kind == ErrorKind.VALIDATION


def test_finalize_unknown_session_is_not_found(finalizer: Finalizer) -> None:
    assert finalizer.finalize("missing").error.kind == ErrorKind.NOT_FOUND
