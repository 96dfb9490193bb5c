"""Tests for batched similarity checking."""

from __future__ import annotations

from typing import List

import pytest
from fakes import FakeJudge, make_concept, make_extracted

from conceptkb.errors import ErrorKind
from conceptkb.extraction.concept_index import ConceptIndexProvider
from conceptkb.pipeline.session_service import ExtractionSessionService
from conceptkb.pipeline.similarity_processor import SimilarityBatchProcessor
from conceptkb.storage.repositories import ConceptRepository, SessionRepository
from conceptkb.storage.schemas import (
    ExtractionPhase,
    ExtractionSession,
    SessionStatus,
    SimilarityCandidate,
)
from conceptkb.storage.updates import ProgressPatch, SessionPatch
from conceptkb.utils.config import SimilarityConfig

NAMES = ["Ser", "Estar", "Gustar", "Doler", "Parecer"]


def _checking_session(
    sessions: SessionRepository, names: List[str] = NAMES, confidence: float = 0.6
) -> ExtractionSession:
    session = ExtractionSession(
        document_id="lesson-1",
        status=SessionStatus.SIMILARITY_CHECKING,
        extracted_concepts=[make_extracted(name, confidence=confidence) for name in names],
    )
    return sessions.create(session)


@pytest.fixture
def populated(concepts: ConceptRepository) -> ConceptRepository:
    concepts.create(make_concept("c-1", "Ser y estar"))
    return concepts


def _processor(
    sessions: SessionRepository,
    judge: FakeJudge,
    index_provider: ConceptIndexProvider,
    sleep_fn,
    **config: object,
) -> SimilarityBatchProcessor:
    return SimilarityBatchProcessor(
        sessions,
        judge,
        index_provider,
        SimilarityConfig(pacing_delay_seconds=1.0, **config),
        sleep_fn=sleep_fn,
    )


def test_five_concepts_in_batches_of_three(
    sessions: SessionRepository,
    populated: ConceptRepository,
    index_provider: ConceptIndexProvider,
    sleep_fn,
    sleeps: List[float],
) -> None:
    session = _checking_session(sessions)
    judge = FakeJudge()
    processor = _processor(sessions, judge, index_provider, sleep_fn)

    first = processor.process_batch(session.id, 3).unwrap()

    assert first.processed == 3
    assert first.checked_count == 3
    assert first.status == SessionStatus.SIMILARITY_CHECKING
    assert first.completed is False
    assert judge.calls == NAMES[:3]
    # Pacing between calls only, never after the last one.
    assert sleeps == [1.0, 1.0]

    second = processor.process_batch(session.id, 3).unwrap()

    assert second.processed == 2
    assert second.checked_count == 5
    assert second.status == SessionStatus.EXTRACTED
    assert second.completed is True
    assert second.progress_percent == 100.0
    stored = sessions.require(session.id)
    assert [m.extracted_concept_name for m in stored.similarity_matches] == NAMES
    assert stored.progress.phase == ExtractionPhase.COMPLETED
    assert stored.review_progress.total_concepts == 5
    assert stored.metadata.extraction_confidence == pytest.approx(0.6)


def test_call_after_completion_is_noop(
    sessions: SessionRepository,
    populated: ConceptRepository,
    index_provider: ConceptIndexProvider,
    sleep_fn,
) -> None:
    session = _checking_session(sessions, NAMES[:2])
    judge = FakeJudge()
    processor = _processor(sessions, judge, index_provider, sleep_fn)
    processor.process_batch(session.id, 5)
    calls_before = list(judge.calls)

    again = processor.process_batch(session.id, 5).unwrap()

    assert again.completed is True
    assert again.processed == 0
    assert again.progress_percent == 100.0
    assert judge.calls == calls_before


def test_already_checked_names_are_not_recounted(
    sessions: SessionRepository,
    populated: ConceptRepository,
    index_provider: ConceptIndexProvider,
    sleep_fn,
) -> None:
    session = _checking_session(sessions, NAMES[:3])
    judge = FakeJudge()
    processor = _processor(sessions, judge, index_provider, sleep_fn)
    processor.process_batch(session.id, 1)
    # A stale counter (e.g. a lost response) must not cause double counting.
    sessions.update(session.id, SessionPatch(progress=ProgressPatch(similarity_checked_count=0)))

    result = processor.process_batch(session.id, 2).unwrap()

    assert judge.calls == ["Ser", "Estar", "Gustar"]
    assert result.checked_count == 3
    assert result.completed is True


def test_failed_judgment_is_isolated_and_recorded_empty(
    sessions: SessionRepository,
    populated: ConceptRepository,
    index_provider: ConceptIndexProvider,
    sleep_fn,
) -> None:
    session = _checking_session(sessions, NAMES[:3])
    judge = FakeJudge(failures={"Estar": 5})
    processor = _processor(sessions, judge, index_provider, sleep_fn, retry_attempts=2)

    result = processor.process_batch(session.id, 3).unwrap()

    assert judge.calls == ["Ser", "Estar", "Estar", "Gustar"]
    assert result.checked_count == 3
    assert result.completed is True
    failed = result.report.failed
    assert [item.key for item in failed] == ["Estar"]
    assert failed[0].error.kind == ErrorKind.UPSTREAM_FAILURE
    stored = sessions.require(session.id)
    estar = next(m for m in stored.similarity_matches if m.extracted_concept_name == "Estar")
    assert estar.matches == []
    assert "2 attempts" in estar.error


def test_retry_recovers_from_transient_failure(
    sessions: SessionRepository,
    populated: ConceptRepository,
    index_provider: ConceptIndexProvider,
    sleep_fn,
) -> None:
    candidate = SimilarityCandidate(concept_id="c-1", name="Ser y estar", score=0.8)
    session = _checking_session(sessions, ["Ser"])
    judge = FakeJudge({"Ser": [candidate]}, failures={"Ser": 1})
    processor = _processor(sessions, judge, index_provider, sleep_fn, retry_attempts=2)

    result = processor.process_batch(session.id).unwrap()

    assert result.report.all_succeeded is True
    stored = sessions.require(session.id)
    assert stored.similarity_matches[0].matches[0].concept_id == "c-1"


def test_empty_index_skips_judge_and_pacing(
    sessions: SessionRepository,
    index_provider: ConceptIndexProvider,
    sleep_fn,
    sleeps: List[float],
) -> None:
    session = _checking_session(sessions, NAMES[:3])
    judge = FakeJudge()
    processor = _processor(sessions, judge, index_provider, sleep_fn)

    result = processor.process_batch(session.id, 3).unwrap()

    assert judge.calls == []
    assert sleeps == []
    assert result.completed is True


def test_zero_concepts_completes_with_zero_confidence(
    sessions: SessionRepository, index_provider: ConceptIndexProvider, sleep_fn
) -> None:
    session = _checking_session(sessions, [])
    processor = _processor(sessions, FakeJudge(), index_provider, sleep_fn)

    result = processor.process_batch(session.id).unwrap()

    assert result.completed is True
    assert sessions.require(session.id).metadata.extraction_confidence == 0.0


@pytest.mark.parametrize("batch_size", [0, 11])
def test_batch_size_bounds(
    sessions: SessionRepository, index_provider: ConceptIndexProvider, sleep_fn, batch_size: int
) -> None:
    session = _checking_session(sessions)
    processor = _processor(sessions, FakeJudge(), index_provider, sleep_fn)

    result = processor.process_batch(session.id, batch_size)

    assert result.error.kind == ErrorKind.VALIDATION


def test_wrong_status_is_validation_error(
    sessions: SessionRepository,
    session_service: ExtractionSessionService,
    index_provider: ConceptIndexProvider,
    lesson,
    sleep_fn,
) -> None:
    started = session_service.start_analysis(lesson.document_id).unwrap()
    processor = _processor(sessions, FakeJudge(), index_provider, sleep_fn)

    result = processor.process_batch(started.session_id)

    assert result.error.kind == ErrorKind.VALIDATION
    assert result.error.details["phase"] == ExtractionPhase.SIMILARITY.value


class _ProcessKilled(BaseException):
    pass


class _DyingJudge(FakeJudge):
    """Judge whose process dies while checking one chosen concept."""

    def __init__(self, dies_on: str) -> None:
        super().__init__()
        self.dies_on = dies_on

    def judge_similarity(self, concept, index):
        if concept.name == self.dies_on:
            raise _ProcessKilled()
        return super().judge_similarity(concept, index)


def test_progress_is_saved_after_each_concept(
    sessions: SessionRepository,
    populated: ConceptRepository,
    index_provider: ConceptIndexProvider,
    sleep_fn,
) -> None:
    session = _checking_session(sessions, NAMES[:3])
    processor = _processor(sessions, _DyingJudge("Estar"), index_provider, sleep_fn)

    with pytest.raises(_ProcessKilled):
        processor.process_batch(session.id, 3)

    stored = sessions.require(session.id)
    assert stored.progress.similarity_checked_count == 1
    assert [m.extracted_concept_name for m in stored.similarity_matches] == ["Ser"]
    assert stored.status == SessionStatus.SIMILARITY_CHECKING

    resumed = _processor(sessions, FakeJudge(), index_provider, sleep_fn)
    result = resumed.process_batch(session.id, 3).unwrap()

    assert result.processed == 2
    assert result.completed is True
