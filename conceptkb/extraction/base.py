"""Collaborator interfaces for the extraction and similarity calls."""

from __future__ import annotations

from typing import List, Protocol

from pydantic import BaseModel, Field

from conceptkb.extraction.concept_index import ConceptIndex
from conceptkb.storage.schemas import ContentChunk, ExtractedConcept, SimilarityCandidate


class ExtractionContext(BaseModel):
    """Document-level context passed alongside each chunk."""

    document_id: str
    title: str = ""
    keywords: List[str] = Field(default_factory=list)


class ConceptExtractor(Protocol):
    """Given a chunk, return candidate concepts."""

    @property
    def model_name(self) -> str: ...

    def extract_concepts(
        self, chunk: ContentChunk, context: ExtractionContext
    ) -> List[ExtractedConcept]: ...


class SimilarityJudge(Protocol):
    """Given a concept and the index, return ranked candidate matches."""

    def judge_similarity(
        self, concept: ExtractedConcept, index: ConceptIndex
    ) -> List[SimilarityCandidate]: ...
