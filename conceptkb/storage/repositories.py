"""Typed repositories over a :class:`DocumentStore`."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Callable, Dict, Generic, Iterable, List, Optional, Sequence, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from conceptkb.errors import ConflictError, NotFoundError
from conceptkb.storage.document_store import Document, DocumentStore
from conceptkb.storage.schemas import (
    Concept,
    ConceptCategory,
    CourseConceptLink,
    DocumentExtractionStatus,
    ExtractionSession,
    LessonDocument,
    MergeLineage,
    SessionStatus,
    utc_now,
)
from conceptkb.storage.updates import ConceptPatch, SessionPatch

T = TypeVar("T")

Clock = Callable[[], datetime]

# Sessions in these states block a new session for the same document.
ACTIVE_SESSION_STATUSES = frozenset(
    {
        SessionStatus.ANALYZING,
        SessionStatus.EXTRACTING,
        SessionStatus.SIMILARITY_CHECKING,
        SessionStatus.EXTRACTED,
        SessionStatus.IN_REVIEW,
    }
)


def _parse_dt(value: object) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class Page(BaseModel, Generic[T]):
    """One page of results (pages are 1-based)."""

    items: List[T] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _validate_paging(page: int, limit: int) -> None:
    if page < 1:
        raise ValueError("page must be >= 1")
    if limit < 1:
        raise ValueError("limit must be >= 1")


# ---------------------------------------------------------------------------
# Extraction sessions
# ---------------------------------------------------------------------------
class SessionFilter(BaseModel):
    """Typed filter for session queries. Unset fields match everything."""

    document_id: Optional[str] = None
    statuses: Optional[List[SessionStatus]] = None
    updated_before: Optional[datetime] = None
    started_before: Optional[datetime] = None
    reviewed_count: Optional[int] = None

    def matches(self, session: ExtractionSession) -> bool:
        if self.document_id is not None and session.document_id != self.document_id:
            return False
        if self.statuses is not None and session.status not in self.statuses:
            return False
        if self.updated_before is not None and not session.updated_at < self.updated_before:
            return False
        if self.started_before is not None and not (
            session.extraction_started_at < self.started_before
        ):
            return False
        if (
            self.reviewed_count is not None
            and session.review_progress.reviewed_count != self.reviewed_count
        ):
            return False
        return True


class SessionRepository:
    """Persistence for :class:`ExtractionSession` records."""

    collection = "extraction_sessions"

    def __init__(self, store: DocumentStore, clock: Clock | None = None) -> None:
        self.store = store
        self._clock = clock or utc_now

    # Public API -----------------------------------------------------
    def create(self, session: ExtractionSession) -> ExtractionSession:
        self.store.create(self.collection, session.model_dump(mode="json"))
        return session

    def create_guarded(self, session: ExtractionSession) -> ExtractionSession:
        """Insert ``session`` unless its document already has an active session."""
        active = {status.value for status in ACTIVE_SESSION_STATUSES}

        def conflict(doc: Document) -> bool:
            return doc.get("document_id") == session.document_id and doc.get("status") in active

        created = self.store.create_unless(
            self.collection, session.model_dump(mode="json"), conflict
        )
        if not created:
            existing = self.store.find_one(self.collection, conflict)
            existing_id = existing.get("id") if existing else None
            existing_status = existing.get("status") if existing else None
            raise ConflictError(
                f"Document {session.document_id} already has an active extraction session "
                f"({existing_id}, status={existing_status})",
                document_id=session.document_id,
                session_id=existing_id,
                status=existing_status,
            )
        return session

    def get(self, session_id: str) -> Optional[ExtractionSession]:
        doc = self.store.find_one(self.collection, self._by_id(session_id))
        return ExtractionSession.model_validate(doc) if doc else None

    def require(self, session_id: str) -> ExtractionSession:
        session = self.get(session_id)
        if session is None:
            raise NotFoundError(f"Extraction session not found: {session_id}", session_id=session_id)
        return session

    def update(self, session_id: str, patch: SessionPatch) -> ExtractionSession:
        """Merge ``patch`` onto the stored session (last write wins per field)."""
        now = self._clock()
        partial = patch.to_partial()
        partial["updated_at"] = now.isoformat()
        if "progress" in partial:
            partial["progress"]["last_updated"] = now.isoformat()

        if not self.store.update_one(self.collection, self._by_id(session_id), partial):
            raise NotFoundError(f"Extraction session not found: {session_id}", session_id=session_id)
        return self.require(session_id)

    def find(
        self,
        filter: SessionFilter | None = None,
        *,
        limit: int | None = None,
        skip: int = 0,
    ) -> List[ExtractionSession]:
        docs = self.store.find_many(
            self.collection,
            self._predicate(filter),
            order_by=lambda doc: _parse_dt(doc["extraction_started_at"]),
            descending=True,
            limit=limit,
            skip=skip,
        )
        return [ExtractionSession.model_validate(doc) for doc in docs]

    def count(self, filter: SessionFilter | None = None) -> int:
        return self.store.count(self.collection, self._predicate(filter))

    def delete(self, filter: SessionFilter) -> int:
        return self.store.delete_many(self.collection, self._predicate(filter))

    def list_page(
        self, filter: SessionFilter | None = None, page: int = 1, limit: int = 20
    ) -> Page[ExtractionSession]:
        """Newest-first page of sessions."""
        _validate_paging(page, limit)
        total = self.count(filter)
        items = self.find(filter, limit=limit, skip=(page - 1) * limit)
        return Page[ExtractionSession](items=items, total=total, page=page, limit=limit)

    # Helpers --------------------------------------------------------
    @staticmethod
    def _by_id(session_id: str) -> Callable[[Document], bool]:
        return lambda doc: doc.get("id") == session_id

    @staticmethod
    def _predicate(filter: SessionFilter | None) -> Callable[[Document], bool] | None:
        if filter is None:
            return None
        return lambda doc: filter.matches(ExtractionSession.model_validate(doc))


# ---------------------------------------------------------------------------
# Concepts, course links and merge lineage
# ---------------------------------------------------------------------------
class ConceptFilter(BaseModel):
    category: Optional[ConceptCategory] = None
    active_only: bool = True
    name_contains: Optional[str] = None

    def matches(self, concept: Concept) -> bool:
        if self.active_only and not concept.is_active:
            return False
        if self.category is not None and concept.category != self.category:
            return False
        if self.name_contains and self.name_contains.lower() not in concept.name.lower():
            return False
        return True


class ConceptRepository:
    """Persistence for concepts and their document links."""

    collection = "concepts"
    links_collection = "course_concepts"
    lineage_collection = "concept_lineage"

    def __init__(self, store: DocumentStore, clock: Clock | None = None) -> None:
        self.store = store
        self._clock = clock or utc_now

    def transaction(self):
        return self.store.transaction()

    # Concepts -------------------------------------------------------
    def get(self, concept_id: str) -> Optional[Concept]:
        doc = self.store.find_one(self.collection, lambda d: d.get("id") == concept_id)
        return Concept.model_validate(doc) if doc else None

    def get_many(self, concept_ids: Iterable[str]) -> Dict[str, Concept]:
        wanted = set(concept_ids)
        docs = self.store.find_many(self.collection, lambda d: d.get("id") in wanted)
        return {doc["id"]: Concept.model_validate(doc) for doc in docs}

    def find_active_by_name(self, name: str, category: ConceptCategory) -> Optional[Concept]:
        """Case-insensitive lookup among active concepts of one category."""
        key = name.strip().lower()
        doc = self.store.find_one(
            self.collection,
            lambda d: d.get("is_active", True)
            and d.get("category") == category.value
            and str(d.get("name", "")).strip().lower() == key,
        )
        return Concept.model_validate(doc) if doc else None

    def list_active(self) -> List[Concept]:
        docs = self.store.find_many(
            self.collection,
            lambda d: d.get("is_active", True),
            order_by=lambda d: str(d.get("name", "")).lower(),
        )
        return [Concept.model_validate(doc) for doc in docs]

    def create(self, concept: Concept) -> Concept:
        """Insert a concept; an active same-name concept in the category is a conflict."""
        key = concept.name.lower()

        def conflict(doc: Document) -> bool:
            if doc.get("id") == concept.id:
                return True
            return (
                bool(doc.get("is_active", True))
                and doc.get("category") == concept.category.value
                and str(doc.get("name", "")).strip().lower() == key
            )

        if not self.store.create_unless(self.collection, concept.model_dump(mode="json"), conflict):
            raise ConflictError(
                f"Concept '{concept.name}' ({concept.category.value}) already exists",
                concept_id=concept.id,
                name=concept.name,
            )
        logger.debug(f"Created concept {concept.id}: {concept.name}")
        return concept

    def update(self, concept_id: str, patch: ConceptPatch) -> Concept:
        partial = patch.to_partial()
        partial["updated_at"] = self._clock().isoformat()
        if not self.store.update_one(self.collection, lambda d: d.get("id") == concept_id, partial):
            raise NotFoundError(f"Concept not found: {concept_id}", concept_id=concept_id)
        concept = self.get(concept_id)
        assert concept is not None
        return concept

    def list_page(
        self, filter: ConceptFilter | None = None, page: int = 1, limit: int = 20
    ) -> Page[Concept]:
        _validate_paging(page, limit)
        filter = filter or ConceptFilter()

        def where(doc: Document) -> bool:
            return filter.matches(Concept.model_validate(doc))

        total = self.store.count(self.collection, where)
        docs = self.store.find_many(
            self.collection,
            where,
            order_by=lambda d: str(d.get("name", "")).lower(),
            limit=limit,
            skip=(page - 1) * limit,
        )
        items = [Concept.model_validate(doc) for doc in docs]
        return Page[Concept](items=items, total=total, page=page, limit=limit)

    # Course links ---------------------------------------------------
    def link_document(
        self,
        document_id: str,
        concept_id: str,
        *,
        confidence: float = 0.5,
        source_content: str = "",
    ) -> CourseConceptLink:
        """Upsert the (document, concept) link."""
        link = CourseConceptLink(
            document_id=document_id,
            concept_id=concept_id,
            confidence=max(0.0, min(confidence, 1.0)),
            source_content=source_content,
            linked_at=self._clock(),
        )
        payload = link.model_dump(mode="json")
        with self.store.transaction():
            if not self.store.update_one(
                self.links_collection, self._link_key(document_id, concept_id), payload
            ):
                self.store.create(self.links_collection, payload)
        return link

    def links_for_concept(self, concept_id: str) -> List[CourseConceptLink]:
        docs = self.store.find_many(
            self.links_collection, lambda d: d.get("concept_id") == concept_id
        )
        return [CourseConceptLink.model_validate(doc) for doc in docs]

    def links_for_document(self, document_id: str) -> List[CourseConceptLink]:
        docs = self.store.find_many(
            self.links_collection, lambda d: d.get("document_id") == document_id
        )
        return [CourseConceptLink.model_validate(doc) for doc in docs]

    def move_links(self, source_id: str, target_id: str) -> int:
        """Re-point links from ``source_id`` to ``target_id``, keeping the higher confidence."""
        moved = 0
        with self.store.transaction():
            for link in self.links_for_concept(source_id):
                existing = self.store.find_one(
                    self.links_collection, self._link_key(link.document_id, target_id)
                )
                confidence = link.confidence
                if existing:
                    confidence = max(confidence, float(existing.get("confidence", 0.0)))
                self.link_document(
                    link.document_id,
                    target_id,
                    confidence=confidence,
                    source_content=link.source_content,
                )
                self.store.delete_many(
                    self.links_collection, self._link_key(link.document_id, source_id)
                )
                moved += 1
        return moved

    # Lineage --------------------------------------------------------
    def record_lineage(self, lineage: MergeLineage) -> None:
        self.store.create(self.lineage_collection, lineage.model_dump(mode="json"))

    def lineage_for(self, target_id: str) -> List[MergeLineage]:
        docs = self.store.find_many(
            self.lineage_collection, lambda d: d.get("target_concept_id") == target_id
        )
        return [MergeLineage.model_validate(doc) for doc in docs]

    @staticmethod
    def _link_key(document_id: str, concept_id: str) -> Callable[[Document], bool]:
        return lambda d: d.get("document_id") == document_id and d.get("concept_id") == concept_id


# ---------------------------------------------------------------------------
# Lesson documents
# ---------------------------------------------------------------------------
class LessonRepository:
    """Persistence for the source documents concepts are extracted from."""

    collection = "lesson_documents"

    def __init__(self, store: DocumentStore, clock: Clock | None = None) -> None:
        self.store = store
        self._clock = clock or utc_now

    def get(self, document_id: str) -> Optional[LessonDocument]:
        doc = self.store.find_one(self.collection, self._by_id(document_id))
        return LessonDocument.model_validate(doc) if doc else None

    def save(self, document: LessonDocument) -> LessonDocument:
        payload = document.model_dump(mode="json")
        with self.store.transaction():
            if not self.store.update_one(self.collection, self._by_id(document.document_id), payload):
                self.store.create(self.collection, payload)
        return document

    def set_extraction_status(
        self,
        document_id: str,
        status: DocumentExtractionStatus,
        *,
        concept_names: Sequence[str] | None = None,
    ) -> bool:
        partial: Dict[str, object] = {
            "extraction_status": status.value,
            "updated_at": self._clock().isoformat(),
        }
        if concept_names is not None:
            partial["extracted_concept_names"] = list(concept_names)
        return self.store.update_one(self.collection, self._by_id(document_id), partial)

    @staticmethod
    def _by_id(document_id: str) -> Callable[[Document], bool]:
        return lambda d: d.get("document_id") == document_id
