"""Merge concepts into one, or fold an extracted concept into an existing one."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, Field

from conceptkb.curation.audit import CurationAuditTrail
from conceptkb.curation.merge_validator import MergeValidator
from conceptkb.errors import NotFoundError, OperationResult, ValidationFailure, run_operation
from conceptkb.extraction.concept_index import ConceptIndexProvider
from conceptkb.storage.repositories import ConceptRepository
from conceptkb.storage.schemas import (
    Concept,
    DifficultyLevel,
    ExtractedConcept,
    MergeLineage,
    utc_now,
)
from conceptkb.storage.updates import ConceptPatch


class MergeFields(BaseModel):
    """Final field values for the merged concept. Unset fields use the computed union."""

    name: Optional[str] = None
    description: Optional[str] = None
    examples: Optional[List[str]] = None
    difficulty: Optional[DifficultyLevel] = None
    tags: Optional[List[str]] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class MergeOutcome(BaseModel):
    target_id: str
    merged_ids: List[str] = Field(default_factory=list)
    links_moved: int = 0
    concept: Concept


def _union(*groups: Iterable[str]) -> List[str]:
    """Order-preserving, case-insensitive union of string lists."""
    seen: set[str] = set()
    result: List[str] = []
    for group in groups:
        for value in group:
            key = value.strip().lower()
            if key and key not in seen:
                seen.add(key)
                result.append(value.strip())
    return result


class ConceptMerger:
    """Apply merges to the concept store.

    ``merge_existing`` resolves and validates every id before touching the
    store, then applies all writes inside one store transaction so either every
    change lands or none does.
    """

    def __init__(
        self,
        concepts: ConceptRepository,
        validator: MergeValidator | None = None,
        *,
        index_provider: ConceptIndexProvider | None = None,
        audit: CurationAuditTrail | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.concepts = concepts
        self.validator = validator or MergeValidator()
        self.index_provider = index_provider
        self.audit = audit
        self._clock = clock or utc_now

    # Public API -----------------------------------------------------
    def merge_existing(
        self,
        target_id: str,
        source_ids: Sequence[str],
        final_fields: MergeFields | None = None,
        *,
        reason: str = "merge",
    ) -> OperationResult[MergeOutcome]:
        """Merge ``source_ids`` into ``target_id``."""
        return run_operation(
            "merge_concepts",
            lambda: self._merge_existing(target_id, source_ids, final_fields, reason),
            target_id=target_id,
            source_ids=list(source_ids),
        )

    def merge_extracted(
        self, target_id: str, extracted: ExtractedConcept, document_id: str
    ) -> OperationResult[Concept]:
        """Fold an extracted concept into an existing one and link the document."""
        return run_operation(
            "merge_extracted",
            lambda: self.absorb_extracted(target_id, extracted, document_id),
            target_id=target_id,
            document_id=document_id,
        )

    def absorb_extracted(
        self,
        target_id: str,
        extracted: ExtractedConcept,
        document_id: str,
        *,
        fold_content: bool = True,
    ) -> Concept:
        """Link ``document_id`` to an active concept, optionally folding in content.

        The document is always added to the target's provenance. With
        ``fold_content`` the target also gains the extracted examples and tags
        and the higher of the two confidences.

        Raises:
            NotFoundError: If the target does not exist or is inactive.
        """
        target = self.concepts.get(target_id)
        if target is None or not target.is_active:
            raise NotFoundError(
                f"Target concept not found or inactive: {target_id}", concept_id=target_id
            )

        with self.concepts.transaction():
            if fold_content:
                target = self.concepts.update(
                    target_id,
                    ConceptPatch(
                        examples=_union(target.examples, extracted.examples),
                        tags=_union(target.tags, extracted.suggested_tags),
                        confidence=max(target.confidence, extracted.confidence),
                        created_from=_union(target.created_from, [document_id]),
                    ),
                )
            elif document_id not in target.created_from:
                target = self.concepts.update(
                    target_id,
                    ConceptPatch(created_from=_union(target.created_from, [document_id])),
                )
            self.concepts.link_document(
                document_id,
                target_id,
                confidence=extracted.confidence,
                source_content=extracted.source_content,
            )

        if fold_content and self.index_provider is not None:
            self.index_provider.invalidate()
        self._record(
            "merge_extracted" if fold_content else "link",
            {
                "target_id": target_id,
                "document_id": document_id,
                "extracted_name": extracted.name,
            },
        )
        logger.info(f"Linked '{extracted.name}' from {document_id} to concept {target_id}")
        return target

    # Steps ----------------------------------------------------------
    def _merge_existing(
        self,
        target_id: str,
        source_ids: Sequence[str],
        final_fields: MergeFields | None,
        reason: str,
    ) -> MergeOutcome:
        sources = [sid for sid in dict.fromkeys(source_ids) if sid != target_id]
        if not sources:
            raise ValidationFailure(
                "At least one source concept different from the target is required",
                target_id=target_id,
            )

        wanted = [target_id, *sources]
        found: Dict[str, Concept] = self.concepts.get_many(wanted)
        missing = [cid for cid in wanted if cid not in found]
        if missing:
            raise NotFoundError(f"Concepts not found: {', '.join(missing)}", missing_ids=missing)

        target = found[target_id]
        source_concepts = [found[sid] for sid in sources]
        validation = self.validator.validate([target, *source_concepts])
        if not validation.valid:
            raise ValidationFailure(
                validation.message,
                error_type=validation.error_type,
                target_id=target_id,
            )

        patch = self._merged_patch(target, source_concepts, final_fields)
        moved = 0
        now = self._clock()
        with self.concepts.transaction():
            merged = self.concepts.update(target_id, patch)
            for source in source_concepts:
                moved += self.concepts.move_links(source.id, target_id)
                self.concepts.update(source.id, ConceptPatch(is_active=False, merged_into=target_id))
                self.concepts.record_lineage(
                    MergeLineage(
                        source_concept_id=source.id,
                        target_concept_id=target_id,
                        source_name=source.name,
                        reason=reason,
                        merged_at=now,
                    )
                )

        if self.index_provider is not None:
            self.index_provider.invalidate()
        self._record(
            "merge",
            {"target_id": target_id, "source_ids": sources, "links_moved": moved, "reason": reason},
        )
        logger.success(f"Merged {len(sources)} concepts into {target_id} ('{merged.name}')")
        return MergeOutcome(target_id=target_id, merged_ids=sources, links_moved=moved, concept=merged)

    # Helpers --------------------------------------------------------
    @staticmethod
    def _merged_patch(
        target: Concept, sources: Sequence[Concept], final_fields: MergeFields | None
    ) -> ConceptPatch:
        everyone = [target, *sources]
        description = target.description
        if sources:
            merged_from = "\n".join(f"• {s.name}" for s in sources)
            description = f"{target.description}\n\nMerged from:\n{merged_from}".strip()

        patch = ConceptPatch(
            description=description,
            examples=_union(*(c.examples for c in everyone)),
            tags=_union(*(c.tags for c in everyone)),
            confidence=max(c.confidence for c in everyone),
            created_from=_union(*(c.created_from for c in everyone)),
        )
        if final_fields is not None:
            for field, value in final_fields.model_dump(exclude_unset=True).items():
                if value is not None:
                    setattr(patch, field, value)
        return patch

    def _record(self, event: str, payload: Dict[str, object]) -> None:
        if self.audit is not None:
            self.audit.record(event, payload)
