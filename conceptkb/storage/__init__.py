"""Storage package: schemas, partial updates, document store and repositories."""

from conceptkb.storage.document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    JsonFileDocumentStore,
    create_document_store,
)
from conceptkb.storage.repositories import (
    ConceptFilter,
    ConceptRepository,
    LessonRepository,
    Page,
    SessionFilter,
    SessionRepository,
)

__all__ = [
    "ConceptFilter",
    "ConceptRepository",
    "DocumentStore",
    "InMemoryDocumentStore",
    "JsonFileDocumentStore",
    "LessonRepository",
    "Page",
    "SessionFilter",
    "SessionRepository",
    "create_document_store",
]
