"""Extraction session lifecycle: start, per-chunk extraction, decisions and errors.

Every public method is a stateless, independently retryable step over the
session repository. Results come back as :class:`OperationResult` envelopes;
nothing here holds state between calls except the injected collaborators.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, Field

from conceptkb.errors import (
    ConceptPipelineError,
    ConflictError,
    NotFoundError,
    OperationResult,
    UpstreamError,
    ValidationFailure,
    run_operation,
)
from conceptkb.extraction.base import ConceptExtractor, ExtractionContext
from conceptkb.extraction.concept_index import ConceptIndexProvider
from conceptkb.extraction.duplication_detector import DuplicationDetector
from conceptkb.ingestion.chunker import ContentChunker
from conceptkb.pipeline.session_state import ensure_transition
from conceptkb.storage.repositories import LessonRepository, Page, SessionFilter, SessionRepository
from conceptkb.storage.schemas import (
    ContentChunk,
    DocumentExtractionStatus,
    DuplicateDetection,
    ExtractedConcept,
    ExtractionMetadata,
    ExtractionPhase,
    ExtractionProgress,
    ExtractionSession,
    ReviewAction,
    ReviewDecision,
    SessionStatus,
    SimilarityMatch,
    utc_now,
)
from conceptkb.storage.updates import (
    MetadataPatch,
    ProgressPatch,
    ReviewProgressPatch,
    SessionPatch,
)

Clock = Callable[[], datetime]

HIGH_CONFIDENCE_THRESHOLD = 0.8


class AnalysisStarted(BaseModel):
    """Returned by :meth:`ExtractionSessionService.start_analysis`."""

    session_id: str
    document_id: str
    total_chunks: int
    total_estimated_concepts: int
    estimated_processing_time: float
    chunks: List[ContentChunk] = Field(default_factory=list)


class ChunkProcessed(BaseModel):
    """Returned by :meth:`ExtractionSessionService.process_chunk`."""

    session_id: str
    chunk_id: str
    extracted_count: int
    total_extracted: int
    processed_chunks: int
    total_chunks: int
    status: SessionStatus


def merge_extracted_concepts(
    existing: Sequence[ExtractedConcept], incoming: Sequence[ExtractedConcept]
) -> List[ExtractedConcept]:
    """Append ``incoming`` to ``existing``, folding repeats of a name into the first copy.

    Names compare case-insensitively. A repeat contributes its new examples and
    raises the kept copy's confidence; order of first appearance is preserved.
    """
    merged: List[ExtractedConcept] = [c.model_copy(deep=True) for c in existing]
    position: Dict[str, int] = {c.name.strip().lower(): i for i, c in enumerate(merged)}

    for concept in incoming:
        key = concept.name.strip().lower()
        if key not in position:
            position[key] = len(merged)
            merged.append(concept.model_copy(deep=True))
            continue

        kept = merged[position[key]]
        seen = {example.lower() for example in kept.examples}
        examples = list(kept.examples)
        for example in concept.examples:
            if example.lower() not in seen:
                seen.add(example.lower())
                examples.append(example)
        merged[position[key]] = kept.model_copy(
            update={"examples": examples, "confidence": max(kept.confidence, concept.confidence)}
        )
    return merged


def summarize_concepts(concepts: Sequence[ExtractedConcept]) -> MetadataPatch:
    """Confidence and category statistics for a set of extracted concepts."""
    if not concepts:
        return MetadataPatch(extraction_confidence=0.0, high_confidence_count=0, concept_categories=0)
    return MetadataPatch(
        extraction_confidence=sum(c.confidence for c in concepts) / len(concepts),
        high_confidence_count=sum(1 for c in concepts if c.confidence > HIGH_CONFIDENCE_THRESHOLD),
        concept_categories=len({c.category for c in concepts}),
    )


class ExtractionSessionService:
    """Create and advance extraction sessions.

    Args:
        sessions: Session repository (also enforces the one-active-session guard)
        lessons: Lesson document repository
        chunker: Content chunker used by :meth:`start_analysis`
        extractor: Concept extractor used by :meth:`process_chunk`
        detector: Duplication detector; when given together with ``index_provider``
            sessions are annotated with duplicate verdicts once extraction completes
        index_provider: Source of concept index snapshots
        clock: Time source (UTC)
    """

    def __init__(
        self,
        sessions: SessionRepository,
        lessons: LessonRepository,
        chunker: ContentChunker | None = None,
        extractor: ConceptExtractor | None = None,
        *,
        detector: DuplicationDetector | None = None,
        index_provider: ConceptIndexProvider | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.sessions = sessions
        self.lessons = lessons
        self.chunker = chunker or ContentChunker()
        self.extractor = extractor
        self.detector = detector
        self.index_provider = index_provider
        self._clock = clock or utc_now

    # Public API -----------------------------------------------------
    def start_analysis(self, document_id: str) -> OperationResult[AnalysisStarted]:
        """Chunk a lesson document and open a session for it."""
        return run_operation(
            "start_analysis", lambda: self._start_analysis(document_id), document_id=document_id
        )

    def process_chunk(self, session_id: str, chunk_id: str) -> OperationResult[ChunkProcessed]:
        """Extract concepts from one pending chunk of a session."""
        return run_operation(
            "process_chunk",
            lambda: self._process_chunk(session_id, chunk_id),
            session_id=session_id,
            chunk_id=chunk_id,
        )

    def create_reviewed_draft(
        self,
        document_id: str,
        concepts: Sequence[ExtractedConcept],
        *,
        similarity_matches: Sequence[SimilarityMatch] | None = None,
    ) -> OperationResult[ExtractionSession]:
        """Open a session directly in ``extracted`` from concepts produced elsewhere."""
        return run_operation(
            "create_reviewed_draft",
            lambda: self._create_reviewed_draft(document_id, concepts, similarity_matches),
            document_id=document_id,
        )

    def record_decisions(
        self, session_id: str, decisions: Sequence[ReviewDecision]
    ) -> OperationResult[ExtractionSession]:
        """Append review decisions and advance the session's review status."""
        return run_operation(
            "record_decisions",
            lambda: self._record_decisions(session_id, decisions),
            session_id=session_id,
        )

    def correct_decision(
        self, session_id: str, index: int, decision: ReviewDecision
    ) -> OperationResult[ExtractionSession]:
        """Replace the decision at ``index``.

        Only the recorded verdict changes; store mutations made when the original
        decision was applied are not undone.
        """
        return run_operation(
            "correct_decision",
            lambda: self._correct_decision(session_id, index, decision),
            session_id=session_id,
            index=index,
        )

    def mark_error(self, session_id: str, message: str) -> OperationResult[ExtractionSession]:
        """Move a session to ``error`` keeping everything it has produced so far."""
        return run_operation(
            "mark_error", lambda: self._mark_error(session_id, message), session_id=session_id
        )

    def get(self, session_id: str) -> OperationResult[ExtractionSession]:
        return run_operation(
            "get_session", lambda: self.sessions.require(session_id), session_id=session_id
        )

    def list_sessions(
        self, filter: SessionFilter | None = None, page: int = 1, limit: int = 20
    ) -> OperationResult[Page[ExtractionSession]]:
        def _list() -> Page[ExtractionSession]:
            try:
                return self.sessions.list_page(filter, page, limit)
            except ValueError as exc:
                raise ValidationFailure(str(exc), page=page, limit=limit) from exc

        return run_operation("list_sessions", _list)

    @staticmethod
    def pending_chunks(session: ExtractionSession) -> List[ContentChunk]:
        return [chunk for chunk in session.progress.chunks if not chunk.processed]

    # Steps ----------------------------------------------------------
    def _start_analysis(self, document_id: str) -> AnalysisStarted:
        lesson = self.lessons.get(document_id)
        if lesson is None:
            raise NotFoundError(f"Lesson document not found: {document_id}", document_id=document_id)
        if not lesson.has_content:
            raise ValidationFailure(
                f"Document {document_id} has no notes, practice or keywords to extract from",
                document_id=document_id,
            )

        analysis = self.chunker.analyze(lesson)
        if not analysis.chunks:
            raise ValidationFailure(
                f"Document {document_id} produced no content chunks", document_id=document_id
            )

        now = self._clock()
        session = ExtractionSession(
            document_id=document_id,
            name=f"{lesson.title or document_id} - concept extraction",
            status=SessionStatus.ANALYZING,
            progress=ExtractionProgress(
                phase=ExtractionPhase.ANALYSIS,
                total_chunks=len(analysis.chunks),
                total_concepts=analysis.total_estimated_concepts,
                current_operation="Content analysis complete",
                estimated_time_remaining=analysis.estimated_processing_time,
                last_updated=now,
                chunks=analysis.chunks,
            ),
            metadata=ExtractionMetadata(
                llm_model=self.extractor.model_name if self.extractor else "",
                source_content_length=analysis.total_content_length,
            ),
            created_at=now,
            updated_at=now,
            extraction_started_at=now,
        )
        self.sessions.create_guarded(session)

        ensure_transition(session.status, SessionStatus.EXTRACTING, session_id=session.id)
        self.sessions.update(
            session.id,
            SessionPatch(
                status=SessionStatus.EXTRACTING,
                progress=ProgressPatch(
                    phase=ExtractionPhase.EXTRACTION,
                    current_operation=f"Waiting to process {len(analysis.chunks)} chunks",
                ),
            ),
        )
        self._set_document_status(document_id, DocumentExtractionStatus.EXTRACTING)

        logger.success(
            f"Started extraction session {session.id} for {document_id}: "
            f"{len(analysis.chunks)} chunks, ~{analysis.total_estimated_concepts} concepts"
        )
        return AnalysisStarted(
            session_id=session.id,
            document_id=document_id,
            total_chunks=len(analysis.chunks),
            total_estimated_concepts=analysis.total_estimated_concepts,
            estimated_processing_time=analysis.estimated_processing_time,
            chunks=analysis.chunks,
        )

    def _process_chunk(self, session_id: str, chunk_id: str) -> ChunkProcessed:
        session = self.sessions.require(session_id)
        ensure_transition(session.status, SessionStatus.EXTRACTING, session_id=session_id)

        chunk = next((c for c in session.progress.chunks if c.chunk_id == chunk_id), None)
        if chunk is None:
            raise NotFoundError(
                f"Chunk {chunk_id} is not part of session {session_id}",
                session_id=session_id,
                chunk_id=chunk_id,
            )
        if chunk.processed:
            raise ConflictError(
                f"Chunk {chunk_id} was already processed", session_id=session_id, chunk_id=chunk_id
            )
        if self.extractor is None:
            raise ValidationFailure("No concept extractor configured", session_id=session_id)

        lesson = self.lessons.get(session.document_id)
        context = ExtractionContext(
            document_id=session.document_id,
            title=lesson.title if lesson else "",
            keywords=list(lesson.keywords) if lesson else [],
        )

        started = self._clock()
        try:
            extracted = self.extractor.extract_concepts(chunk, context)
        except Exception as exc:  # noqa: BLE001
            message = f"Concept extraction failed for chunk {chunk_id}: {exc}"
            self._mark_error(session_id, message)
            raise UpstreamError(
                message,
                session_id=session_id,
                chunk_id=chunk_id,
                phase=ExtractionPhase.EXTRACTION.value,
                processed_chunks=session.progress.processed_chunks,
                total_chunks=session.progress.total_chunks,
            ) from exc

        finished = self._clock()

        # Re-read so work recorded by a concurrent chunk call is kept.
        current = self.sessions.require(session_id)
        chunks = [
            c.model_copy(
                update={
                    "processed": True,
                    "processed_at": finished,
                    "processing_time": (finished - started).total_seconds(),
                    "extracted_count": len(extracted),
                }
            )
            if c.chunk_id == chunk_id
            else c
            for c in current.progress.chunks
        ]
        concepts = merge_extracted_concepts(current.extracted_concepts, extracted)
        processed = sum(1 for c in chunks if c.processed)
        remaining = sum(c.estimated_processing_time for c in chunks if not c.processed)
        done = processed == len(chunks)

        status = SessionStatus.SIMILARITY_CHECKING if done else SessionStatus.EXTRACTING
        ensure_transition(current.status, status, session_id=session_id)
        patch = SessionPatch(
            status=status,
            extracted_concepts=concepts,
            progress=ProgressPatch(
                phase=ExtractionPhase.SIMILARITY if done else ExtractionPhase.EXTRACTION,
                processed_chunks=processed,
                extracted_concepts_count=len(concepts),
                total_concepts=len(concepts) if done else max(
                    current.progress.total_concepts, len(concepts)
                ),
                current_operation=(
                    "Checking similarity against existing concepts"
                    if done
                    else f"Processed chunk {processed}/{len(chunks)}"
                ),
                estimated_time_remaining=remaining,
                chunks=chunks,
            ),
        )
        if done:
            patch.duplicate_detection = self._detect_duplicates(concepts)
        self.sessions.update(session_id, patch)

        logger.info(
            f"Session {session_id}: chunk {processed}/{len(chunks)} ({chunk.type}) "
            f"yielded {len(extracted)} concepts, {len(concepts)} total"
        )
        return ChunkProcessed(
            session_id=session_id,
            chunk_id=chunk_id,
            extracted_count=len(extracted),
            total_extracted=len(concepts),
            processed_chunks=processed,
            total_chunks=len(chunks),
            status=status,
        )

    def _create_reviewed_draft(
        self,
        document_id: str,
        concepts: Sequence[ExtractedConcept],
        similarity_matches: Sequence[SimilarityMatch] | None,
    ) -> ExtractionSession:
        lesson = self.lessons.get(document_id)
        if lesson is None:
            raise NotFoundError(f"Lesson document not found: {document_id}", document_id=document_id)

        unique = merge_extracted_concepts([], concepts)
        now = self._clock()
        matches = self._matches_for(unique, similarity_matches or [], now)
        metadata = summarize_concepts(unique)

        session = ExtractionSession(
            document_id=document_id,
            name=f"{lesson.title or document_id} - reviewed draft",
            status=SessionStatus.EXTRACTED,
            extracted_concepts=unique,
            similarity_matches=matches,
            progress=ExtractionProgress(
                phase=ExtractionPhase.COMPLETED,
                total_concepts=len(unique),
                extracted_concepts_count=len(unique),
                similarity_checked_count=len(matches),
                current_operation="Ready for review",
                last_updated=now,
            ),
            duplicate_detection=self._detect_duplicates(unique),
            metadata=ExtractionMetadata(
                llm_model=self.extractor.model_name if self.extractor else "",
                **metadata.to_partial(),
            ),
            created_at=now,
            updated_at=now,
            extraction_started_at=now,
        )
        session.review_progress.total_concepts = len(unique)
        self.sessions.create_guarded(session)
        self._set_document_status(
            document_id,
            DocumentExtractionStatus.EXTRACTED,
            concept_names=[c.name for c in unique],
        )
        logger.success(
            f"Created reviewed draft {session.id} for {document_id} with {len(unique)} concepts"
        )
        return session

    def _record_decisions(
        self, session_id: str, decisions: Sequence[ReviewDecision]
    ) -> ExtractionSession:
        session = self.sessions.require(session_id)
        if session.status not in (SessionStatus.EXTRACTED, SessionStatus.IN_REVIEW):
            raise ValidationFailure(
                f"Session {session_id} is {session.status.value}; decisions need extracted or in_review",
                session_id=session_id,
                status=session.status.value,
            )

        known = {c.name.lower() for c in session.extracted_concepts}
        decided = {d.extracted_concept.name.lower() for d in session.review_progress.decisions}
        for decision in decisions:
            self._check_decision(session_id, decision)
            key = decision.extracted_concept.name.lower()
            if key not in known:
                raise ValidationFailure(
                    f"'{decision.extracted_concept.name}' is not a concept of session {session_id}",
                    session_id=session_id,
                )
            if key in decided:
                raise ConflictError(
                    f"'{decision.extracted_concept.name}' was already reviewed",
                    session_id=session_id,
                )
            decided.add(key)

        all_decisions = list(session.review_progress.decisions) + list(decisions)
        total = session.review_progress.total_concepts or len(session.extracted_concepts)
        reviewed = min(len(decided), total)
        status = SessionStatus.REVIEWED if reviewed >= total else SessionStatus.IN_REVIEW
        ensure_transition(session.status, status, session_id=session_id)

        updated = self.sessions.update(
            session_id,
            SessionPatch(
                status=status,
                review_progress=ReviewProgressPatch(
                    total_concepts=total,
                    reviewed_count=reviewed,
                    decisions=all_decisions,
                    last_reviewed_at=self._clock(),
                    is_draft=status != SessionStatus.REVIEWED,
                ),
            ),
        )
        logger.info(f"Session {session_id}: {reviewed}/{total} concepts reviewed ({status.value})")
        return updated

    def _correct_decision(
        self, session_id: str, index: int, decision: ReviewDecision
    ) -> ExtractionSession:
        session = self.sessions.require(session_id)
        decisions = list(session.review_progress.decisions)
        if not 0 <= index < len(decisions):
            raise ValidationFailure(
                f"No decision at index {index} (session has {len(decisions)})",
                session_id=session_id,
                index=index,
            )
        self._check_decision(session_id, decision)
        original = decisions[index].extracted_concept.name
        if decision.extracted_concept.name.lower() != original.lower():
            raise ValidationFailure(
                f"Decision {index} is about '{original}', not '{decision.extracted_concept.name}'",
                session_id=session_id,
                index=index,
            )

        decisions[index] = decision
        return self.sessions.update(
            session_id,
            SessionPatch(
                review_progress=ReviewProgressPatch(
                    decisions=decisions, last_reviewed_at=self._clock()
                )
            ),
        )

    def _mark_error(self, session_id: str, message: str) -> ExtractionSession:
        session = self.sessions.require(session_id)
        if session.status == SessionStatus.ERROR:
            return session
        ensure_transition(session.status, SessionStatus.ERROR, session_id=session_id)

        updated = self.sessions.update(
            session_id,
            SessionPatch(
                status=SessionStatus.ERROR,
                progress=ProgressPatch(
                    phase=ExtractionPhase.FAILED,
                    error_message=message,
                    current_operation="Failed",
                ),
            ),
        )
        self._set_document_status(session.document_id, DocumentExtractionStatus.ERROR)
        logger.error(f"Session {session_id} marked as error: {message}")
        return updated

    # Helpers --------------------------------------------------------
    @staticmethod
    def _check_decision(session_id: str, decision: ReviewDecision) -> None:
        if decision.action == ReviewAction.LINK and not decision.target_concept_id:
            raise ValidationFailure(
                f"Link decision for '{decision.extracted_concept.name}' needs target_concept_id",
                session_id=session_id,
            )

    def _detect_duplicates(
        self, concepts: Sequence[ExtractedConcept]
    ) -> Optional[DuplicateDetection]:
        if self.detector is None or self.index_provider is None:
            return None
        try:
            return self.detector.detect(concepts, self.index_provider.snapshot())
        except ConceptPipelineError as exc:
            # Advisory only; a failed check leaves the session unannotated.
            logger.warning(f"Duplicate detection skipped: {exc.message}")
            return None

    @staticmethod
    def _matches_for(
        concepts: Sequence[ExtractedConcept],
        provided: Sequence[SimilarityMatch],
        checked_at: datetime,
    ) -> List[SimilarityMatch]:
        by_name = {m.extracted_concept_name.lower(): m for m in provided}
        matches: List[SimilarityMatch] = []
        for concept in concepts:
            match = by_name.get(concept.name.lower())
            if match is None:
                match = SimilarityMatch(extracted_concept_name=concept.name, checked_at=checked_at)
            matches.append(match)
        return matches

    def _set_document_status(
        self,
        document_id: str,
        status: DocumentExtractionStatus,
        *,
        concept_names: Sequence[str] | None = None,
    ) -> None:
        try:
            if not self.lessons.set_extraction_status(
                document_id, status, concept_names=concept_names
            ):
                logger.warning(f"Lesson {document_id} not found while setting status {status.value}")
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Failed to set lesson {document_id} status to {status.value}: {exc}")
