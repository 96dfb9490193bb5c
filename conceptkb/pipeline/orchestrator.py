"""End-to-end concept extraction for one lesson document.

This module drives the complete workflow with a single call:
1. Content analysis and session creation
2. Concept extraction, one chunk at a time
3. Similarity batches until every concept is checked
4. Finalization into a review payload

Each step goes through the same operations a caller could invoke by hand, so
a failed run can be picked up again with :meth:`ExtractionOrchestrator.resume`.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from loguru import logger
from pydantic import BaseModel

from conceptkb.errors import ErrorKind, OperationError
from conceptkb.pipeline.finalizer import Finalizer, ReviewStatistics
from conceptkb.pipeline.session_service import ExtractionSessionService
from conceptkb.pipeline.session_state import IN_FLIGHT_STATUSES, TERMINAL_STATUSES
from conceptkb.pipeline.similarity_processor import SimilarityBatchProcessor
from conceptkb.storage.schemas import ExtractionPhase, SessionStatus
from conceptkb.utils.config import OrchestratorConfig

ProgressCallback = Callable[[ExtractionPhase, int, int], None]


class OrchestrationResult(BaseModel):
    """Outcome of an orchestrated run.

    On failure ``phase`` names the step that failed and ``session_id`` points at
    the preserved session for manual resumption.
    """

    success: bool
    document_id: str
    session_id: Optional[str] = None
    phase: ExtractionPhase
    error: Optional[OperationError] = None
    statistics: Optional[ReviewStatistics] = None
    can_proceed_to_review: bool = False
    processing_time: float = 0.0


class ExtractionOrchestrator:
    """Run analysis, extraction, similarity checking and finalization in order."""

    def __init__(
        self,
        session_service: ExtractionSessionService,
        similarity_processor: SimilarityBatchProcessor,
        finalizer: Finalizer,
        config: OrchestratorConfig | None = None,
        *,
        sleep_fn: Callable[[float], None] | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        self.session_service = session_service
        self.similarity_processor = similarity_processor
        self.finalizer = finalizer
        self.config = config or OrchestratorConfig()
        self._sleep = sleep_fn or time.sleep
        self.progress_callback = progress_callback

    # Public API -----------------------------------------------------
    def run(self, document_id: str) -> OrchestrationResult:
        """Extract concepts from ``document_id`` end to end."""
        started = time.perf_counter()
        logger.info(f"Starting concept extraction for {document_id}")

        analysis = self.session_service.start_analysis(document_id)
        if not analysis.success:
            assert analysis.error is not None
            # A conflict points at someone else's session; leave it alone.
            return OrchestrationResult(
                success=False,
                document_id=document_id,
                session_id=analysis.error.details.get("session_id"),
                phase=ExtractionPhase.ANALYSIS,
                error=analysis.error,
                processing_time=time.perf_counter() - started,
            )

        assert analysis.data is not None
        self._emit(ExtractionPhase.ANALYSIS, 1, 1)
        return self._drive(analysis.data.session_id, document_id, started)

    def resume(self, session_id: str) -> OrchestrationResult:
        """Continue a session from whatever step it stopped at."""
        started = time.perf_counter()
        found = self.session_service.get(session_id)
        if not found.success:
            assert found.error is not None
            return OrchestrationResult(
                success=False,
                document_id="",
                session_id=session_id,
                phase=ExtractionPhase.ANALYSIS,
                error=found.error,
            )

        session = found.data
        assert session is not None
        # Sessions under review belong to the reviewer; only extraction can be resumed.
        if session.status in TERMINAL_STATUSES or session.status == SessionStatus.IN_REVIEW:
            return OrchestrationResult(
                success=False,
                document_id=session.document_id,
                session_id=session_id,
                phase=ExtractionPhase.FAILED,
                error=OperationError(
                    kind=ErrorKind.VALIDATION,
                    message=f"Session {session_id} is {session.status.value} and cannot be resumed",
                    details={"session_id": session_id, "status": session.status.value},
                ),
            )
        logger.info(f"Resuming session {session_id} ({session.status.value})")
        return self._drive(session_id, session.document_id, started)

    # Phases ---------------------------------------------------------
    def _drive(self, session_id: str, document_id: str, started: float) -> OrchestrationResult:
        def elapsed() -> float:
            return time.perf_counter() - started

        error = self._extract_chunks(session_id)
        if error is not None:
            return self._failed(session_id, document_id, ExtractionPhase.EXTRACTION, error, elapsed())

        error = self._check_similarity(session_id)
        if error is not None:
            return self._failed(session_id, document_id, ExtractionPhase.SIMILARITY, error, elapsed())

        finalized = self.finalizer.finalize(session_id)
        if not finalized.success:
            assert finalized.error is not None
            return self._failed(
                session_id, document_id, ExtractionPhase.COMPLETED, finalized.error, elapsed()
            )

        assert finalized.data is not None
        self._emit(ExtractionPhase.COMPLETED, 1, 1)
        statistics = finalized.data.statistics
        logger.success(
            f"Extraction for {document_id} complete: {statistics.total_concepts} concepts "
            f"in {elapsed():.1f}s (session {session_id})"
        )
        return OrchestrationResult(
            success=True,
            document_id=document_id,
            session_id=session_id,
            phase=ExtractionPhase.COMPLETED,
            statistics=statistics,
            can_proceed_to_review=True,
            processing_time=elapsed(),
        )

    def _extract_chunks(self, session_id: str) -> Optional[OperationError]:
        found = self.session_service.get(session_id)
        if not found.success:
            return found.error
        session = found.data
        assert session is not None
        if session.status not in (SessionStatus.ANALYZING, SessionStatus.EXTRACTING):
            return None

        pending = self.session_service.pending_chunks(session)
        total = len(session.progress.chunks)
        done = total - len(pending)
        for position, chunk in enumerate(pending):
            if position > 0:
                self._sleep(self.config.chunk_delay_seconds)
            result = self.session_service.process_chunk(session_id, chunk.chunk_id)
            if not result.success:
                return result.error
            done += 1
            self._emit(ExtractionPhase.EXTRACTION, done, total)
        return None

    def _check_similarity(self, session_id: str) -> Optional[OperationError]:
        for _ in range(self.config.max_similarity_rounds):
            result = self.similarity_processor.process_batch(
                session_id, self.config.similarity_batch_size
            )
            if not result.success:
                return result.error
            batch = result.data
            assert batch is not None
            self._emit(ExtractionPhase.SIMILARITY, batch.checked_count, batch.total)
            if batch.completed:
                return None
        return OperationError(
            kind=ErrorKind.FATAL,
            message=(
                f"Similarity checking did not finish within "
                f"{self.config.max_similarity_rounds} batches"
            ),
            details={"session_id": session_id},
        )

    # Helpers --------------------------------------------------------
    def _failed(
        self,
        session_id: str,
        document_id: str,
        phase: ExtractionPhase,
        error: OperationError,
        processing_time: float,
    ) -> OrchestrationResult:
        details = dict(error.details)
        details.setdefault("session_id", session_id)
        details.setdefault("phase", phase.value)
        error = error.model_copy(update={"details": details})

        found = self.session_service.get(session_id)
        status = found.data.status if found.success and found.data is not None else None
        if status in IN_FLIGHT_STATUSES:
            marked = self.session_service.mark_error(
                session_id, f"{phase.value} failed: {error.message}"
            )
            if not marked.success and marked.error is not None:
                logger.warning(
                    f"Could not mark session {session_id} as error: {marked.error.message}"
                )
        elif status is not None:
            logger.warning(f"Leaving session {session_id} as {status.value} after failed run")

        logger.error(f"Extraction for {document_id} failed during {phase.value}: {error.message}")
        return OrchestrationResult(
            success=False,
            document_id=document_id,
            session_id=session_id,
            phase=phase,
            error=error,
            processing_time=processing_time,
        )

    def _emit(self, phase: ExtractionPhase, done: int, total: int) -> None:
        if self.progress_callback:
            self.progress_callback(phase, done, total)
        else:
            logger.debug(f"{phase.value}: {done}/{total}")
