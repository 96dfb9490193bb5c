"""Pipeline steps and the orchestrator that chains them."""

from conceptkb.pipeline.finalizer import Finalizer, ReviewPayload, ReviewStatistics
from conceptkb.pipeline.orchestrator import ExtractionOrchestrator, OrchestrationResult
from conceptkb.pipeline.session_service import (
    AnalysisStarted,
    ChunkProcessed,
    ExtractionSessionService,
)
from conceptkb.pipeline.session_state import ALLOWED_TRANSITIONS, can_transition, ensure_transition
from conceptkb.pipeline.similarity_processor import SimilarityBatchProcessor, SimilarityBatchResult

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AnalysisStarted",
    "ChunkProcessed",
    "ExtractionOrchestrator",
    "ExtractionSessionService",
    "Finalizer",
    "OrchestrationResult",
    "ReviewPayload",
    "ReviewStatistics",
    "SimilarityBatchProcessor",
    "SimilarityBatchResult",
    "can_transition",
    "ensure_transition",
]
