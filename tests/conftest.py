"""Shared fixtures: in-memory store, fixed clock and fake LLM collaborators."""

from __future__ import annotations

from typing import Callable, List

import pytest
from fakes import FakeClock, FakeExtractor, make_extracted

from conceptkb.extraction.concept_index import ConceptIndexProvider
from conceptkb.extraction.duplication_detector import DuplicationDetector
from conceptkb.ingestion.chunker import ContentChunker
from conceptkb.pipeline.session_service import ExtractionSessionService
from conceptkb.storage.document_store import InMemoryDocumentStore
from conceptkb.storage.repositories import ConceptRepository, LessonRepository, SessionRepository
from conceptkb.storage.schemas import LessonDocument
from conceptkb.utils.config import ChunkingConfig, IndexConfig


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def sleep_fn(sleeps: List[float]) -> Callable[[float], None]:
    return sleeps.append


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def sessions(store: InMemoryDocumentStore, clock: FakeClock) -> SessionRepository:
    return SessionRepository(store, clock=clock)


@pytest.fixture
def concepts(store: InMemoryDocumentStore, clock: FakeClock) -> ConceptRepository:
    return ConceptRepository(store, clock=clock)


@pytest.fixture
def lessons(store: InMemoryDocumentStore, clock: FakeClock) -> LessonRepository:
    return LessonRepository(store, clock=clock)


@pytest.fixture
def index_provider(concepts: ConceptRepository) -> ConceptIndexProvider:
    # Zero TTL: every snapshot sees the latest writes.
    return ConceptIndexProvider(concepts, IndexConfig(cache_ttl_seconds=0))


@pytest.fixture
def lesson(lessons: LessonRepository) -> LessonDocument:
    document = LessonDocument(
        document_id="lesson-1",
        title="Past tenses",
        keywords=["pretérito", "imperfecto"],
        notes="The preterite describes finished actions. The imperfect describes habits.",
        practice="Fill in the blanks with the right tense.",
    )
    return lessons.save(document)


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor(
        {
            "keywords": [make_extracted("Preterite", confidence=0.9)],
            "notes": [
                make_extracted("Imperfect", confidence=0.6),
                make_extracted("preterite", confidence=0.95, examples=["Comí ayer"]),
            ],
            "practice": [make_extracted("Tense choice", confidence=0.75)],
        }
    )


@pytest.fixture
def session_service(
    sessions: SessionRepository,
    lessons: LessonRepository,
    extractor: FakeExtractor,
    index_provider: ConceptIndexProvider,
    clock: FakeClock,
) -> ExtractionSessionService:
    return ExtractionSessionService(
        sessions,
        lessons,
        ContentChunker(ChunkingConfig()),
        extractor,
        detector=DuplicationDetector(),
        index_provider=index_provider,
        clock=clock,
    )
