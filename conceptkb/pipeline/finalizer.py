"""Close out an extraction session and build the payload handed to reviewers."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from conceptkb.errors import InconsistencyError, OperationResult, ValidationFailure, run_operation
from conceptkb.pipeline.session_service import summarize_concepts
from conceptkb.pipeline.session_state import ensure_transition
from conceptkb.storage.repositories import LessonRepository, SessionRepository
from conceptkb.storage.schemas import (
    DocumentExtractionStatus,
    DuplicateDetection,
    ExtractedConcept,
    ExtractionPhase,
    SessionStatus,
    SimilarityCandidate,
    utc_now,
)
from conceptkb.storage.updates import ProgressPatch, ReviewProgressPatch, SessionPatch

_FINALIZABLE = (SessionStatus.EXTRACTED, SessionStatus.SIMILARITY_CHECKING)


class ReviewStatistics(BaseModel):
    total_concepts: int = 0
    average_confidence: float = 0.0
    high_confidence_count: int = 0
    concept_categories: int = 0
    concepts_with_matches: int = 0
    processing_time_seconds: float = 0.0


class ReviewPayload(BaseModel):
    """Everything a reviewer needs: concepts and their similarity matches by name."""

    session_id: str
    document_id: str
    status: SessionStatus
    concepts: List[ExtractedConcept] = Field(default_factory=list)
    matches_by_concept: Dict[str, List[SimilarityCandidate]] = Field(default_factory=dict)
    duplicate_detection: Optional[DuplicateDetection] = None
    statistics: ReviewStatistics = Field(default_factory=ReviewStatistics)


class Finalizer:
    """Validate that similarity checking finished and mark the session extracted."""

    def __init__(
        self,
        sessions: SessionRepository,
        lessons: LessonRepository,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sessions = sessions
        self.lessons = lessons
        self._clock = clock or utc_now

    def finalize(self, session_id: str) -> OperationResult[ReviewPayload]:
        return run_operation(
            "finalize",
            lambda: self._finalize(session_id),
            session_id=session_id,
            phase=ExtractionPhase.COMPLETED.value,
        )

    def _finalize(self, session_id: str) -> ReviewPayload:
        session = self.sessions.require(session_id)
        if session.status not in _FINALIZABLE:
            raise ValidationFailure(
                f"Session {session_id} is {session.status.value}; "
                "finalize needs extracted or similarity_checking",
                session_id=session_id,
                status=session.status.value,
            )

        total = len(session.extracted_concepts)
        checked = session.progress.similarity_checked_count
        if checked != total:
            raise InconsistencyError(
                f"Similarity checking incomplete for session {session_id}: {checked}/{total} checked",
                session_id=session_id,
                similarity_checked_count=checked,
                total_concepts=total,
            )

        summary = summarize_concepts(session.extracted_concepts)
        processing_time = max(
            (self._clock() - session.extraction_started_at).total_seconds(), 0.0
        )
        summary.total_processing_time = processing_time

        ensure_transition(session.status, SessionStatus.EXTRACTED, session_id=session_id)
        session = self.sessions.update(
            session_id,
            SessionPatch(
                status=SessionStatus.EXTRACTED,
                progress=ProgressPatch(
                    phase=ExtractionPhase.COMPLETED,
                    current_operation="Ready for review",
                    estimated_time_remaining=0.0,
                ),
                review_progress=ReviewProgressPatch(total_concepts=total),
                metadata=summary,
            ),
        )

        names = [concept.name for concept in session.extracted_concepts]
        try:
            if not self.lessons.set_extraction_status(
                session.document_id, DocumentExtractionStatus.EXTRACTED, concept_names=names
            ):
                logger.warning(f"Lesson {session.document_id} not found; status not updated")
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Failed to update lesson {session.document_id} status: {exc}")

        matches_by_concept = {
            match.extracted_concept_name: list(match.matches)
            for match in session.similarity_matches
        }
        statistics = ReviewStatistics(
            total_concepts=total,
            average_confidence=round(summary.extraction_confidence or 0.0, 2),
            high_confidence_count=summary.high_confidence_count or 0,
            concept_categories=summary.concept_categories or 0,
            concepts_with_matches=sum(1 for matches in matches_by_concept.values() if matches),
            processing_time_seconds=round(processing_time, 2),
        )
        logger.success(
            f"Finalized session {session_id}: {total} concepts, "
            f"avg confidence {statistics.average_confidence}"
        )
        return ReviewPayload(
            session_id=session_id,
            document_id=session.document_id,
            status=session.status,
            concepts=list(session.extracted_concepts),
            matches_by_concept=matches_by_concept,
            duplicate_detection=session.duplicate_detection,
            statistics=statistics,
        )
