"""Fake collaborators and record builders shared by the tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Dict, List, Sequence

from conceptkb.extraction.base import ExtractionContext
from conceptkb.extraction.concept_index import ConceptIndex
from conceptkb.storage.schemas import (
    Concept,
    ConceptCategory,
    ContentChunk,
    ExtractedConcept,
    SimilarityCandidate,
)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeExtractor:
    """Returns canned concepts per chunk type, or raises for chosen chunk types."""

    def __init__(
        self,
        by_type: Dict[str, List[ExtractedConcept]] | None = None,
        *,
        fail_types: Sequence[str] = (),
    ) -> None:
        self.by_type = by_type or {}
        self.fail_types = set(fail_types)
        self.calls: List[ContentChunk] = []

    @property
    def model_name(self) -> str:
        return "fake-model"

    def extract_concepts(
        self, chunk: ContentChunk, context: ExtractionContext
    ) -> List[ExtractedConcept]:
        self.calls.append(chunk)
        if chunk.type in self.fail_types:
            raise RuntimeError("model unavailable")
        return [c.model_copy(deep=True) for c in self.by_type.get(chunk.type, [])]


class FakeJudge:
    """Similarity judge that records calls and can fail for given names."""

    def __init__(
        self,
        matches: Dict[str, List[SimilarityCandidate]] | None = None,
        *,
        failures: Dict[str, int] | None = None,
    ) -> None:
        self.matches = matches or {}
        self.failures = dict(failures or {})
        self.calls: List[str] = []

    def judge_similarity(
        self, concept: ExtractedConcept, index: ConceptIndex
    ) -> List[SimilarityCandidate]:
        self.calls.append(concept.name)
        remaining = self.failures.get(concept.name, 0)
        if remaining:
            self.failures[concept.name] = remaining - 1
            raise TimeoutError(f"judge timed out for {concept.name}")
        return list(self.matches.get(concept.name, []))


def make_extracted(
    name: str,
    category: ConceptCategory = ConceptCategory.GRAMMAR,
    confidence: float = 0.7,
    **extra: object,
) -> ExtractedConcept:
    return ExtractedConcept(
        name=name,
        category=category,
        description=str(extra.pop("description", f"How to use {name}")),
        examples=list(extra.pop("examples", [f"{name} example"])),  # type: ignore[arg-type]
        source_content=str(extra.pop("source_content", f"... {name} ...")),
        confidence=confidence,
        **extra,  # type: ignore[arg-type]
    )


def make_concept(
    concept_id: str,
    name: str,
    category: ConceptCategory = ConceptCategory.GRAMMAR,
    **extra: object,
) -> Concept:
    return Concept(id=concept_id, name=name, category=category, **extra)  # type: ignore[arg-type]


