"""Partial-update value objects.

A patch only carries the fields a caller actually set. ``to_partial()`` turns
it into a nested mapping that the document store merges field by field onto
the stored record, so two writers touching different fields do not undo each
other's work.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from conceptkb.storage.schemas import (
    ConceptCategory,
    ContentChunk,
    DifficultyLevel,
    DuplicateDetection,
    ExtractedConcept,
    ExtractionPhase,
    ReviewDecision,
    SessionStatus,
    SimilarityMatch,
)


class _Patch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    def to_partial(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)

    @property
    def is_empty(self) -> bool:
        return not self.model_fields_set


class ProgressPatch(_Patch):
    phase: Optional[ExtractionPhase] = None
    total_chunks: Optional[int] = None
    processed_chunks: Optional[int] = None
    total_concepts: Optional[int] = None
    extracted_concepts_count: Optional[int] = None
    similarity_checked_count: Optional[int] = None
    current_operation: Optional[str] = None
    estimated_time_remaining: Optional[float] = None
    last_updated: Optional[datetime] = None
    error_message: Optional[str] = None
    chunks: Optional[List[ContentChunk]] = None


class ReviewProgressPatch(_Patch):
    total_concepts: Optional[int] = None
    reviewed_count: Optional[int] = None
    decisions: Optional[List[ReviewDecision]] = None
    last_reviewed_at: Optional[datetime] = None
    is_draft: Optional[bool] = None


class MetadataPatch(_Patch):
    llm_model: Optional[str] = None
    total_processing_time: Optional[float] = None
    extraction_confidence: Optional[float] = None
    source_content_length: Optional[int] = None
    high_confidence_count: Optional[int] = None
    concept_categories: Optional[int] = None


class SessionPatch(_Patch):
    """Fields of an :class:`ExtractionSession` to overwrite."""

    status: Optional[SessionStatus] = None
    name: Optional[str] = None
    extracted_concepts: Optional[List[ExtractedConcept]] = None
    similarity_matches: Optional[List[SimilarityMatch]] = None
    progress: Optional[ProgressPatch] = None
    review_progress: Optional[ReviewProgressPatch] = None
    metadata: Optional[MetadataPatch] = None
    duplicate_detection: Optional[DuplicateDetection] = None
    extraction_started_at: Optional[datetime] = None


class ConceptPatch(_Patch):
    """Fields of a :class:`Concept` to overwrite."""

    name: Optional[str] = None
    category: Optional[ConceptCategory] = None
    description: Optional[str] = None
    examples: Optional[List[str]] = None
    difficulty: Optional[DifficultyLevel] = None
    confidence: Optional[float] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None
    created_from: Optional[List[str]] = None
    merged_into: Optional[str] = None
