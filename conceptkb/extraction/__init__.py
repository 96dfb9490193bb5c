"""Extraction package: concept index, LLM judge and duplicate detection."""

from conceptkb.extraction.base import ConceptExtractor, ExtractionContext, SimilarityJudge
from conceptkb.extraction.concept_index import ConceptIndex, ConceptIndexProvider
from conceptkb.extraction.concept_llm import ConceptLLM
from conceptkb.extraction.duplication_detector import (
    DuplicateVerdict,
    DuplicationDetector,
    DuplicationReport,
)

__all__ = [
    "ConceptExtractor",
    "ConceptIndex",
    "ConceptIndexProvider",
    "ConceptLLM",
    "DuplicateVerdict",
    "DuplicationDetector",
    "DuplicationReport",
    "ExtractionContext",
    "SimilarityJudge",
]
