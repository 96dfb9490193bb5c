"""Wire the pipeline components together from a :class:`Config`.

Nothing here is global: every call builds a fresh set of collaborators, and
tests or callers may pass their own store, extractor or judge.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from conceptkb.curation.audit import CurationAuditTrail
from conceptkb.curation.cleanup import SessionCleanupService
from conceptkb.curation.concept_merger import ConceptMerger
from conceptkb.curation.merge_validator import MergeValidator
from conceptkb.curation.review_processor import ReviewDecisionProcessor
from conceptkb.extraction.base import ConceptExtractor, SimilarityJudge
from conceptkb.extraction.concept_index import ConceptIndexProvider
from conceptkb.extraction.concept_llm import ConceptLLM
from conceptkb.extraction.duplication_detector import DuplicationDetector
from conceptkb.ingestion.chunker import ContentChunker
from conceptkb.pipeline.finalizer import Finalizer
from conceptkb.pipeline.orchestrator import ExtractionOrchestrator, ProgressCallback
from conceptkb.pipeline.session_service import ExtractionSessionService
from conceptkb.pipeline.similarity_processor import SimilarityBatchProcessor
from conceptkb.storage.document_store import DocumentStore, create_document_store
from conceptkb.storage.repositories import ConceptRepository, LessonRepository, SessionRepository
from conceptkb.utils.config import Config


@dataclass
class ConceptServices:
    """Every component of one wired pipeline."""

    store: DocumentStore
    sessions: SessionRepository
    concepts: ConceptRepository
    lessons: LessonRepository
    index_provider: ConceptIndexProvider
    session_service: ExtractionSessionService
    similarity_processor: SimilarityBatchProcessor
    finalizer: Finalizer
    orchestrator: ExtractionOrchestrator
    merger: ConceptMerger
    review_processor: ReviewDecisionProcessor
    cleanup: SessionCleanupService


def build_services(
    config: Config,
    *,
    store: DocumentStore | None = None,
    extractor: ConceptExtractor | None = None,
    judge: SimilarityJudge | None = None,
    sleep_fn: Callable[[float], None] | None = None,
    progress_callback: ProgressCallback | None = None,
) -> ConceptServices:
    """Build the pipeline; a :class:`ConceptLLM` fills in a missing extractor or judge."""
    store = store or create_document_store(config.storage)
    sessions = SessionRepository(store)
    concepts = ConceptRepository(store)
    lessons = LessonRepository(store)
    index_provider = ConceptIndexProvider(concepts, config.index)

    if extractor is None or judge is None:
        api_key = (
            config.anthropic_api_key if config.llm.provider == "anthropic" else config.openai_api_key
        )
        llm = ConceptLLM(
            config.llm,
            config.similarity,
            config.prompts_path,
            api_key=api_key or None,
            sleep_fn=sleep_fn,
        )
        extractor = extractor or llm
        judge = judge or llm

    audit = CurationAuditTrail.from_config(config.curation)
    session_service = ExtractionSessionService(
        sessions,
        lessons,
        ContentChunker(config.chunking),
        extractor,
        detector=DuplicationDetector(config.duplication),
        index_provider=index_provider,
    )
    similarity_processor = SimilarityBatchProcessor(
        sessions, judge, index_provider, config.similarity, sleep_fn=sleep_fn
    )
    finalizer = Finalizer(sessions, lessons)
    merger = ConceptMerger(
        concepts, MergeValidator(config.merge), index_provider=index_provider, audit=audit
    )
    return ConceptServices(
        store=store,
        sessions=sessions,
        concepts=concepts,
        lessons=lessons,
        index_provider=index_provider,
        session_service=session_service,
        similarity_processor=similarity_processor,
        finalizer=finalizer,
        orchestrator=ExtractionOrchestrator(
            session_service,
            similarity_processor,
            finalizer,
            config.orchestrator,
            sleep_fn=sleep_fn,
            progress_callback=progress_callback,
        ),
        merger=merger,
        review_processor=ReviewDecisionProcessor(
            sessions,
            session_service,
            concepts,
            lessons,
            merger,
            index_provider=index_provider,
            audit=audit,
        ),
        cleanup=SessionCleanupService(sessions, config.cleanup),
    )
