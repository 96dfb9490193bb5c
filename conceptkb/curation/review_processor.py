"""Apply human review decisions to the concept store.

Each decision is applied on its own and reported as an :class:`ItemResult`;
one failing decision never stops the rest of the batch. Concept ids are
derived from (session, category, name) so applying the same decisions in a
different order leaves the store with the same contents.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel, Field

from conceptkb.curation.audit import CurationAuditTrail
from conceptkb.curation.concept_merger import ConceptMerger
from conceptkb.errors import (
    BatchReport,
    ConceptPipelineError,
    ConflictError,
    ErrorKind,
    ItemResult,
    OperationResult,
    ValidationFailure,
    run_operation,
)
from conceptkb.extraction.concept_index import ConceptIndexProvider
from conceptkb.pipeline.session_service import ExtractionSessionService
from conceptkb.storage.repositories import ConceptRepository, LessonRepository, SessionRepository
from conceptkb.storage.schemas import (
    Concept,
    DocumentExtractionStatus,
    ExtractedConcept,
    ExtractionSession,
    ReviewAction,
    ReviewDecision,
    SessionStatus,
    utc_now,
)

EDITABLE_FIELDS = ("name", "description", "examples", "difficulty")

_ACTION_ORDER = {
    ReviewAction.APPROVE: 0,
    ReviewAction.EDIT: 1,
    ReviewAction.LINK: 2,
    ReviewAction.REJECT: 3,
}


class ReviewOutcome(BaseModel):
    session_id: str
    status: SessionStatus
    reviewed_count: int = 0
    total_concepts: int = 0
    created_concept_ids: List[str] = Field(default_factory=list)
    document_reviewed: bool = False
    report: BatchReport = Field(default_factory=BatchReport)


class ReviewDecisionProcessor:
    """Turn review decisions into concepts, links and session progress."""

    def __init__(
        self,
        sessions: SessionRepository,
        session_service: ExtractionSessionService,
        concepts: ConceptRepository,
        lessons: LessonRepository,
        merger: ConceptMerger,
        *,
        index_provider: ConceptIndexProvider | None = None,
        audit: CurationAuditTrail | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sessions = sessions
        self.session_service = session_service
        self.concepts = concepts
        self.lessons = lessons
        self.merger = merger
        self.index_provider = index_provider
        self.audit = audit
        self._clock = clock or utc_now

    # Public API -----------------------------------------------------
    def apply(
        self, session_id: str, decisions: Sequence[ReviewDecision]
    ) -> OperationResult[ReviewOutcome]:
        """Apply a batch of decisions to a session in extracted or in_review."""
        return run_operation(
            "apply_review_decisions",
            lambda: self._apply(session_id, decisions),
            session_id=session_id,
        )

    @staticmethod
    def concept_id_for(session_id: str, concept: ExtractedConcept) -> str:
        key = f"concept:{session_id}:{concept.category.value}:{concept.name.strip().lower()}"
        return str(uuid.uuid5(uuid.NAMESPACE_URL, key))

    # Steps ----------------------------------------------------------
    def _apply(self, session_id: str, decisions: Sequence[ReviewDecision]) -> ReviewOutcome:
        session = self.sessions.require(session_id)
        if session.status not in (SessionStatus.EXTRACTED, SessionStatus.IN_REVIEW):
            raise ValidationFailure(
                f"Session {session_id} is {session.status.value}; review needs extracted or in_review",
                session_id=session_id,
                status=session.status.value,
            )

        known = {c.name.lower() for c in session.extracted_concepts}
        decided = {d.extracted_concept.name.lower() for d in session.review_progress.decisions}

        results: Dict[int, ItemResult] = {}
        accepted: List[Tuple[int, ReviewDecision]] = []
        created: List[str] = []

        for position, decision in self._canonical_order(decisions):
            name = decision.extracted_concept.name
            action = decision.action.value
            if name.lower() not in known:
                results[position] = ItemResult.failed(
                    name, ErrorKind.VALIDATION, f"'{name}' is not part of this session", action
                )
                continue
            if name.lower() in decided:
                results[position] = ItemResult.failed(
                    name, ErrorKind.CONFLICT, f"'{name}' was already reviewed", action
                )
                continue

            try:
                concept_id, was_created = self._apply_one(session, decision)
            except ConceptPipelineError as exc:
                logger.warning(f"Review decision {action} for '{name}' failed: {exc.message}")
                results[position] = ItemResult.failed(name, exc.kind, exc.message, action)
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception(f"Unexpected error applying {action} for '{name}'")
                results[position] = ItemResult.failed(name, ErrorKind.FATAL, str(exc), action)
                continue

            decided.add(name.lower())
            accepted.append((position, decision))
            if was_created and concept_id:
                created.append(concept_id)
            results[position] = ItemResult.succeeded(name, action, concept_id)
            self._record(session, decision, concept_id)

        report = BatchReport(items=[results[i] for i in sorted(results)])

        if accepted:
            ordered = [decision for _, decision in sorted(accepted, key=lambda item: item[0])]
            session = self.session_service.record_decisions(session_id, ordered).unwrap()
        if created and self.index_provider is not None:
            self.index_provider.invalidate()

        document_reviewed = self._advance_document(session) if accepted else False
        logger.info(
            f"Applied {len(report.succeeded)}/{len(report.items)} review decisions "
            f"for session {session_id} ({session.status.value})"
        )
        return ReviewOutcome(
            session_id=session_id,
            status=session.status,
            reviewed_count=session.review_progress.reviewed_count,
            total_concepts=session.review_progress.total_concepts,
            created_concept_ids=created,
            document_reviewed=document_reviewed,
            report=report,
        )

    def _apply_one(
        self, session: ExtractionSession, decision: ReviewDecision
    ) -> Tuple[Optional[str], bool]:
        """Apply one decision and return ``(concept_id, created)``."""
        if decision.action == ReviewAction.REJECT:
            return None, False

        if decision.action == ReviewAction.LINK:
            if not decision.target_concept_id:
                raise ValidationFailure("Link decision needs target_concept_id")
            self.merger.absorb_extracted(
                decision.target_concept_id,
                decision.extracted_concept,
                session.document_id,
                fold_content=False,
            )
            return decision.target_concept_id, False

        concept_id = self.concept_id_for(session.id, decision.extracted_concept)
        snapshot = decision.extracted_concept
        if decision.action == ReviewAction.EDIT:
            snapshot = self._apply_edits(snapshot, decision.edited_fields)

        created = False
        if self.concepts.get(concept_id) is None:
            existing = self.concepts.find_active_by_name(snapshot.name, snapshot.category)
            if existing is not None:
                raise ConflictError(
                    f"Active concept '{existing.name}' already exists ({existing.id}); "
                    "link to it instead",
                    concept_id=existing.id,
                )
            self.concepts.create(self._concept_from(concept_id, snapshot, session.document_id))
            created = True

        self.concepts.link_document(
            session.document_id,
            concept_id,
            confidence=snapshot.confidence,
            source_content=snapshot.source_content,
        )
        return concept_id, created

    # Helpers --------------------------------------------------------
    @staticmethod
    def _canonical_order(
        decisions: Sequence[ReviewDecision],
    ) -> List[Tuple[int, ReviewDecision]]:
        """Order decisions by concept name then action, independent of submission order."""
        return sorted(
            enumerate(decisions),
            key=lambda item: (
                item[1].extracted_concept.name.strip().lower(),
                _ACTION_ORDER[item[1].action],
                item[1].target_concept_id or "",
            ),
        )

    @staticmethod
    def _apply_edits(concept: ExtractedConcept, edited: Dict[str, object]) -> ExtractedConcept:
        unknown = sorted(set(edited) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationFailure(f"Fields cannot be edited: {', '.join(unknown)}")
        data = concept.model_dump()
        if "difficulty" in edited:
            data["suggested_difficulty"] = edited["difficulty"]
        for field in ("name", "description", "examples"):
            if field in edited:
                data[field] = edited[field]
        try:
            return ExtractedConcept.model_validate(data)
        except ValueError as exc:
            raise ValidationFailure(f"Invalid edited fields: {exc}") from exc

    def _concept_from(self, concept_id: str, snapshot: ExtractedConcept, document_id: str) -> Concept:
        now = self._clock()
        return Concept(
            id=concept_id,
            name=snapshot.name,
            category=snapshot.category,
            description=snapshot.description,
            examples=list(snapshot.examples),
            difficulty=snapshot.suggested_difficulty,
            confidence=snapshot.confidence,
            tags=list(snapshot.suggested_tags),
            created_from=[document_id],
            created_at=now,
            updated_at=now,
        )

    def _advance_document(self, session: ExtractionSession) -> bool:
        """Move the lesson to reviewed once every approved or edited concept exists."""
        wanted = [
            self.concept_id_for(session.id, d.extracted_concept)
            for d in session.review_progress.decisions
            if d.action in (ReviewAction.APPROVE, ReviewAction.EDIT)
        ]
        stored = self.concepts.get_many(wanted)
        reviewed = all(concept_id in stored for concept_id in wanted)
        status = (
            DocumentExtractionStatus.REVIEWED if reviewed else DocumentExtractionStatus.IN_REVIEW
        )

        try:
            self.lessons.set_extraction_status(session.document_id, status)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Failed to set lesson {session.document_id} status: {exc}")
        return reviewed

    def _record(
        self, session: ExtractionSession, decision: ReviewDecision, concept_id: Optional[str]
    ) -> None:
        if self.audit is None:
            return
        self.audit.record(
            "review_decision",
            {
                "session_id": session.id,
                "document_id": session.document_id,
                "action": decision.action.value,
                "concept_name": decision.extracted_concept.name,
                "concept_id": concept_id,
                "target_concept_id": decision.target_concept_id,
            },
        )
