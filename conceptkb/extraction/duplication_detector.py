"""Advisory duplicate detection for freshly extracted concepts.

Each extracted concept is compared with active concepts of the same category:

- ``exact``: identical name
- ``case_insensitive``: same name ignoring case
- ``semantic_similar``: fuzzy name score or description score above threshold

The verdicts annotate a session; they never block its creation.
"""

from __future__ import annotations

from collections import Counter
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, Field
from rapidfuzz import fuzz

from conceptkb.extraction.concept_index import ConceptIndex
from conceptkb.normalization.fuzzy_matcher import FuzzyMatcher
from conceptkb.storage.schemas import (
    ConceptCategory,
    ConceptIndexEntry,
    DuplicateDetection,
    DuplicateInfo,
    DuplicateType,
    ExtractedConcept,
    utc_now,
)
from conceptkb.utils.config import DuplicationConfig


class DuplicateVerdict(BaseModel):
    """Duplicate / no-duplicate verdict for one extracted concept."""

    concept: ExtractedConcept
    is_duplicate: bool = False
    match: Optional[DuplicateInfo] = None


class DuplicationReport(BaseModel):
    total: int = 0
    duplicate_count: int = 0
    creatable_count: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    duplicate_names: List[str] = Field(default_factory=list)


class DuplicationDetector:
    """Compare extracted concepts with a :class:`ConceptIndex` snapshot."""

    def __init__(
        self,
        config: DuplicationConfig | None = None,
        *,
        name_matcher: FuzzyMatcher | None = None,
        description_matcher: FuzzyMatcher | None = None,
        clock: Callable | None = None,
    ) -> None:
        self.config = config or DuplicationConfig()
        self.name_matcher = name_matcher or FuzzyMatcher(threshold=self.config.name_threshold)
        self.description_matcher = description_matcher or FuzzyMatcher(
            threshold=self.config.description_threshold, scorer=fuzz.token_set_ratio
        )
        self._clock = clock or utc_now

    # Public API -----------------------------------------------------
    def check(
        self, concepts: Sequence[ExtractedConcept], index: ConceptIndex
    ) -> List[DuplicateVerdict]:
        """Return one verdict per extracted concept, in input order."""
        verdicts: List[DuplicateVerdict] = []
        for concept in concepts:
            match = self._find_match(concept, index.by_category(concept.category))
            verdicts.append(
                DuplicateVerdict(concept=concept, is_duplicate=match is not None, match=match)
            )
        return verdicts

    def detect(
        self, concepts: Sequence[ExtractedConcept], index: ConceptIndex
    ) -> DuplicateDetection:
        """Summarize :meth:`check` into the record stored on a session."""
        duplicates = [v.match for v in self.check(concepts, index) if v.match is not None]
        if duplicates:
            logger.info(
                f"Found {len(duplicates)} potential duplicates among {len(concepts)} concepts"
            )
        return DuplicateDetection(
            has_duplicates=bool(duplicates), duplicates=duplicates, checked_at=self._clock()
        )

    def is_duplicate(self, name: str, category: ConceptCategory, index: ConceptIndex) -> bool:
        """Exact (case-insensitive) name collision within a category."""
        key = name.strip().lower()
        return any(entry.name.strip().lower() == key for entry in index.by_category(category))

    @staticmethod
    def report(verdicts: Sequence[DuplicateVerdict]) -> DuplicationReport:
        counts = Counter(v.match.duplicate_type.value for v in verdicts if v.match is not None)
        duplicate_names = [v.concept.name for v in verdicts if v.is_duplicate]
        return DuplicationReport(
            total=len(verdicts),
            duplicate_count=len(duplicate_names),
            creatable_count=len(verdicts) - len(duplicate_names),
            by_type=dict(counts),
            duplicate_names=duplicate_names,
        )

    @staticmethod
    def duplicates(verdicts: Sequence[DuplicateVerdict]) -> List[DuplicateVerdict]:
        return [v for v in verdicts if v.is_duplicate]

    @staticmethod
    def creatable(verdicts: Sequence[DuplicateVerdict]) -> List[ExtractedConcept]:
        return [v.concept for v in verdicts if not v.is_duplicate]

    # Helpers --------------------------------------------------------
    def _find_match(
        self, concept: ExtractedConcept, pool: Sequence[ConceptIndexEntry]
    ) -> Optional[DuplicateInfo]:
        if not pool:
            return None

        name = concept.name.strip()
        for entry in pool:
            if entry.name.strip() == name:
                return self._info(concept, entry, DuplicateType.EXACT, 1.0)
        for entry in pool:
            if entry.name.strip().lower() == name.lower():
                return self._info(concept, entry, DuplicateType.CASE_INSENSITIVE, 1.0)

        best = self.name_matcher.best_match(name, [entry.name for entry in pool])
        if best is not None and best.passed and best.target_index is not None:
            return self._info(
                concept, pool[best.target_index], DuplicateType.SEMANTIC_SIMILAR, best.score
            )

        if len(concept.description) >= self.config.min_description_length:
            described = [
                (i, e)
                for i, e in enumerate(pool)
                if len(e.description) >= self.config.min_description_length
            ]
            if described:
                best = self.description_matcher.best_match(
                    concept.description, [e.description for _, e in described]
                )
                if best is not None and best.passed and best.target_index is not None:
                    entry = described[best.target_index][1]
                    return self._info(concept, entry, DuplicateType.SEMANTIC_SIMILAR, best.score)
        return None

    @staticmethod
    def _info(
        concept: ExtractedConcept,
        entry: ConceptIndexEntry,
        duplicate_type: DuplicateType,
        score: float,
    ) -> DuplicateInfo:
        return DuplicateInfo(
            extracted_concept_name=concept.name,
            existing_concept_id=entry.concept_id,
            existing_concept_name=entry.name,
            category=entry.category,
            duplicate_type=duplicate_type,
            score=round(score, 4),
        )
