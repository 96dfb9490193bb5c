"""Batched similarity checking of extracted concepts against the concept index."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field

from conceptkb.errors import (
    BatchReport,
    ErrorKind,
    ItemResult,
    OperationResult,
    ValidationFailure,
    run_operation,
)
from conceptkb.extraction.base import SimilarityJudge
from conceptkb.extraction.concept_index import ConceptIndex, ConceptIndexProvider
from conceptkb.pipeline.session_service import summarize_concepts
from conceptkb.pipeline.session_state import ensure_transition
from conceptkb.storage.repositories import SessionRepository
from conceptkb.storage.schemas import (
    ExtractedConcept,
    ExtractionPhase,
    ExtractionSession,
    SessionStatus,
    SimilarityCandidate,
    SimilarityMatch,
    utc_now,
)
from conceptkb.storage.updates import ProgressPatch, ReviewProgressPatch, SessionPatch
from conceptkb.utils.config import SimilarityConfig

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 10

# Statuses reached only after similarity checking finished.
_COMPLETED_STATUSES = frozenset(
    {
        SessionStatus.EXTRACTED,
        SessionStatus.IN_REVIEW,
        SessionStatus.REVIEWED,
        SessionStatus.ARCHIVED,
    }
)


class SimilarityBatchResult(BaseModel):
    """Progress after one :meth:`SimilarityBatchProcessor.process_batch` call."""

    session_id: str
    processed: int = 0
    checked_count: int = 0
    total: int = 0
    status: SessionStatus
    completed: bool = False
    report: BatchReport = Field(default_factory=BatchReport)

    @property
    def remaining(self) -> int:
        return max(self.total - self.checked_count, 0)

    @property
    def progress_percent(self) -> float:
        if self.total == 0:
            return 100.0
        return round(self.checked_count / self.total * 100, 1)


class SimilarityBatchProcessor:
    """Check up to ``batch_size`` unchecked concepts of a session per call.

    The extracted concept name is the idempotency key: a name that already has
    a similarity match is never judged or counted twice, so a retried call
    after a lost response is harmless. Progress is persisted after every
    concept.
    """

    def __init__(
        self,
        sessions: SessionRepository,
        judge: SimilarityJudge,
        index_provider: ConceptIndexProvider,
        config: SimilarityConfig | None = None,
        *,
        sleep_fn: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sessions = sessions
        self.judge = judge
        self.index_provider = index_provider
        self.config = config or SimilarityConfig()
        self._sleep = sleep_fn or time.sleep
        self._clock = clock or utc_now

    # Public API -----------------------------------------------------
    def process_batch(
        self, session_id: str, batch_size: int | None = None
    ) -> OperationResult[SimilarityBatchResult]:
        size = self.config.batch_size if batch_size is None else batch_size
        return run_operation(
            "process_similarity_batch",
            lambda: self._process_batch(session_id, size),
            session_id=session_id,
            phase=ExtractionPhase.SIMILARITY.value,
        )

    # Steps ----------------------------------------------------------
    def _process_batch(self, session_id: str, batch_size: int) -> SimilarityBatchResult:
        if not MIN_BATCH_SIZE <= batch_size <= MAX_BATCH_SIZE:
            raise ValidationFailure(
                f"batch_size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}",
                session_id=session_id,
                batch_size=batch_size,
            )

        session = self.sessions.require(session_id)
        if session.status in _COMPLETED_STATUSES:
            logger.debug(f"Session {session_id} already finished similarity checking")
            return self._result(session, processed=0, report=BatchReport())
        if session.status != SessionStatus.SIMILARITY_CHECKING:
            raise ValidationFailure(
                f"Session {session_id} is {session.status.value}; "
                "similarity checking needs similarity_checking",
                session_id=session_id,
                status=session.status.value,
            )

        pending = session.unchecked_concepts()[:batch_size]
        report = BatchReport()
        index = self.index_provider.snapshot() if pending else ConceptIndex([])
        processed = 0
        called = False

        for concept in pending:
            current = self.sessions.require(session_id)
            if concept.name.lower() in current.checked_names:
                report.add(ItemResult.succeeded(concept.name, action="already_checked"))
                continue

            if index.is_empty:
                matches: List[SimilarityCandidate] = []
                error: Optional[str] = None
            else:
                if called:
                    self._sleep(self.config.pacing_delay_seconds)
                matches, error = self._judge(concept, index)
                called = True

            self._record_match(current, concept, matches, error)
            processed += 1
            if error is None:
                report.add(ItemResult.succeeded(concept.name, action="similarity_checked"))
            else:
                report.add(
                    ItemResult.failed(
                        concept.name,
                        ErrorKind.UPSTREAM_FAILURE,
                        error,
                        action="similarity_checked",
                    )
                )

        session = self.sessions.require(session_id)
        if session.similarity_complete:
            session = self._complete(session)

        logger.info(
            f"Session {session_id}: similarity {session.progress.similarity_checked_count}/"
            f"{len(session.extracted_concepts)} ({processed} this batch, "
            f"{len(report.failed)} failed)"
        )
        return self._result(session, processed=processed, report=report)

    # Helpers --------------------------------------------------------
    def _judge(
        self, concept: ExtractedConcept, index: ConceptIndex
    ) -> Tuple[List[SimilarityCandidate], Optional[str]]:
        """Judge one concept, retrying; a final failure yields no matches plus the error."""
        attempts = self.config.retry_attempts
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                return list(self.judge.judge_similarity(concept, index)), None
            except Exception as exc:  # noqa: BLE001
                last_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    f"Similarity check for '{concept.name}' failed "
                    f"(attempt {attempt}/{attempts}): {last_error}"
                )
                if attempt < attempts:
                    self._sleep(self.config.pacing_delay_seconds)
        return [], f"Similarity check failed after {attempts} attempts: {last_error}"

    def _record_match(
        self,
        session: ExtractionSession,
        concept: ExtractedConcept,
        matches: List[SimilarityCandidate],
        error: Optional[str],
    ) -> None:
        match = SimilarityMatch(
            extracted_concept_name=concept.name,
            matches=matches,
            checked_at=self._clock(),
            error=error,
        )
        all_matches = list(session.similarity_matches) + [match]
        self.sessions.update(
            session.id,
            SessionPatch(
                similarity_matches=all_matches,
                progress=ProgressPatch(
                    similarity_checked_count=len(all_matches),
                    current_operation=f"Checked similarity for '{concept.name}'",
                ),
            ),
        )

    def _complete(self, session: ExtractionSession) -> ExtractionSession:
        ensure_transition(session.status, SessionStatus.EXTRACTED, session_id=session.id)
        total = len(session.extracted_concepts)
        updated = self.sessions.update(
            session.id,
            SessionPatch(
                status=SessionStatus.EXTRACTED,
                progress=ProgressPatch(
                    phase=ExtractionPhase.COMPLETED,
                    similarity_checked_count=total,
                    current_operation="Similarity checking complete",
                    estimated_time_remaining=0.0,
                ),
                review_progress=ReviewProgressPatch(total_concepts=total),
                metadata=summarize_concepts(session.extracted_concepts),
            ),
        )
        logger.success(f"Session {session.id} extracted: {total} concepts ready for review")
        return updated

    @staticmethod
    def _result(
        session: ExtractionSession, *, processed: int, report: BatchReport
    ) -> SimilarityBatchResult:
        total = len(session.extracted_concepts)
        completed = session.status in _COMPLETED_STATUSES
        return SimilarityBatchResult(
            session_id=session.id,
            processed=processed,
            checked_count=total if completed else session.progress.similarity_checked_count,
            total=total,
            status=session.status,
            completed=completed,
            report=report,
        )
