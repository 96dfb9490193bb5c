"""Pydantic models for concepts, lesson documents and extraction sessions."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


class ConceptCategory(str, Enum):
    """Concept categories."""

    GRAMMAR = "grammar"
    VOCABULARY = "vocabulary"


class DifficultyLevel(str, Enum):
    """CEFR difficulty levels, ordered from easiest to hardest."""

    A1 = "A1"
    A2 = "A2"
    B1 = "B1"
    B2 = "B2"
    C1 = "C1"
    C2 = "C2"

    @property
    def rank(self) -> int:
        return list(DifficultyLevel).index(self)


class SessionStatus(str, Enum):
    """Extraction session lifecycle states."""

    ANALYZING = "analyzing"
    EXTRACTING = "extracting"
    SIMILARITY_CHECKING = "similarity_checking"
    EXTRACTED = "extracted"
    IN_REVIEW = "in_review"
    REVIEWED = "reviewed"
    ERROR = "error"
    ARCHIVED = "archived"


class ExtractionPhase(str, Enum):
    """Progress phase reported to callers."""

    ANALYSIS = "analysis"
    EXTRACTION = "extraction"
    SIMILARITY = "similarity"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentExtractionStatus(str, Enum):
    """Extraction status stored on the lesson document."""

    NOT_EXTRACTED = "not_extracted"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    IN_REVIEW = "in_review"
    REVIEWED = "reviewed"
    ERROR = "error"


class ReviewAction(str, Enum):
    """Human review verdicts."""

    APPROVE = "approve"
    LINK = "link"
    EDIT = "edit"
    REJECT = "reject"


class DuplicateType(str, Enum):
    """How an extracted concept matched an existing one."""

    EXACT = "exact"
    CASE_INSENSITIVE = "case_insensitive"
    SEMANTIC_SIMILAR = "semantic_similar"


ChunkType = Literal["keywords", "notes", "practice", "homework"]


# ---------------------------------------------------------------------------
# Durable concept store
# ---------------------------------------------------------------------------
class Concept(BaseModel):
    """Durable knowledge unit (deactivated rather than deleted)."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Concept identifier")
    name: str = Field(..., min_length=1, description="Display name")
    category: ConceptCategory = Field(..., description="grammar or vocabulary")
    description: str = Field(default="", description="What the concept teaches")
    examples: List[str] = Field(default_factory=list, description="Usage examples")
    difficulty: DifficultyLevel = Field(default=DifficultyLevel.B1, description="CEFR level")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0, description="Extraction confidence")
    tags: List[str] = Field(default_factory=list, description="Free-form tags")
    is_active: bool = Field(default=True, description="False once merged or retired")
    created_from: List[str] = Field(
        default_factory=list, description="Source document ids (provenance)"
    )
    merged_into: Optional[str] = Field(default=None, description="Target id after a merge")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Concept name must not be blank")
        return stripped


class ConceptIndexEntry(BaseModel):
    """Lightweight view of an active concept used for comparisons."""

    concept_id: str
    name: str
    category: ConceptCategory
    description: str = ""
    examples: List[str] = Field(default_factory=list)
    difficulty: DifficultyLevel = DifficultyLevel.B1

    @classmethod
    def from_concept(cls, concept: Concept) -> "ConceptIndexEntry":
        return cls(
            concept_id=concept.id,
            name=concept.name,
            category=concept.category,
            description=concept.description,
            examples=list(concept.examples),
            difficulty=concept.difficulty,
        )


class CourseConceptLink(BaseModel):
    """Link between a lesson document and a concept it teaches."""

    document_id: str
    concept_id: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source_content: str = ""
    is_active: bool = True
    linked_at: datetime = Field(default_factory=utc_now)


class MergeLineage(BaseModel):
    """Record of a source concept folded into a target."""

    source_concept_id: str
    target_concept_id: str
    source_name: str = ""
    reason: str = "merge"
    merged_at: datetime = Field(default_factory=utc_now)


class LessonDocument(BaseModel):
    """Source document (course) that concepts are extracted from."""

    document_id: str
    title: str = ""
    keywords: List[str] = Field(default_factory=list)
    notes: str = ""
    practice: str = ""
    homework: str = ""
    extraction_status: DocumentExtractionStatus = DocumentExtractionStatus.NOT_EXTRACTED
    extracted_concept_names: List[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def has_content(self) -> bool:
        return bool(self.notes.strip() or self.practice.strip() or self.keywords)


# ---------------------------------------------------------------------------
# Extraction session record
# ---------------------------------------------------------------------------
class ExtractedConcept(BaseModel):
    """Concept candidate produced by the extraction call."""

    name: str = Field(..., min_length=1)
    category: ConceptCategory
    description: str = ""
    examples: List[str] = Field(default_factory=list)
    source_content: str = Field(default="", description="Excerpt the concept came from")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    suggested_difficulty: DifficultyLevel = DifficultyLevel.B1
    suggested_tags: List[str] = Field(default_factory=list)


class SimilarityCandidate(BaseModel):
    """One existing concept judged similar to an extracted concept."""

    concept_id: str
    name: str
    score: float = Field(..., ge=0.0, le=1.0)
    justification: str = ""
    category: Optional[ConceptCategory] = None
    description: str = ""
    examples: List[str] = Field(default_factory=list)
    merge_suggestion: Optional[str] = None


class SimilarityMatch(BaseModel):
    """All candidates for one extracted concept name (unique per session)."""

    extracted_concept_name: str
    matches: List[SimilarityCandidate] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utc_now)
    error: Optional[str] = None


class ContentChunk(BaseModel):
    """Chunk descriptor tracked on the session."""

    chunk_id: str
    type: ChunkType
    content: str = Field(..., min_length=1)
    estimated_concepts: int = Field(default=1, ge=1)
    estimated_processing_time: float = 0.0
    processed: bool = False
    processed_at: Optional[datetime] = None
    processing_time: Optional[float] = None
    extracted_count: int = 0


class ExtractionProgress(BaseModel):
    phase: ExtractionPhase = ExtractionPhase.ANALYSIS
    total_chunks: int = 0
    processed_chunks: int = 0
    total_concepts: int = 0
    extracted_concepts_count: int = 0
    similarity_checked_count: int = 0
    current_operation: str = ""
    estimated_time_remaining: float = 0.0
    last_updated: datetime = Field(default_factory=utc_now)
    error_message: Optional[str] = None
    chunks: List[ContentChunk] = Field(default_factory=list)


class ReviewDecision(BaseModel):
    """Human verdict on one extracted concept."""

    action: ReviewAction
    extracted_concept: ExtractedConcept
    target_concept_id: Optional[str] = None
    edited_fields: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ReviewProgress(BaseModel):
    total_concepts: int = 0
    reviewed_count: int = 0
    decisions: List[ReviewDecision] = Field(default_factory=list)
    last_reviewed_at: Optional[datetime] = None
    is_draft: bool = True


class DuplicateInfo(BaseModel):
    extracted_concept_name: str
    existing_concept_id: str
    existing_concept_name: str
    category: ConceptCategory
    duplicate_type: DuplicateType
    score: float = 1.0


class DuplicateDetection(BaseModel):
    has_duplicates: bool = False
    duplicates: List[DuplicateInfo] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utc_now)


class ExtractionMetadata(BaseModel):
    llm_model: str = "gpt-4.1-nano"
    total_processing_time: float = 0.0
    extraction_confidence: float = 0.0
    source_content_length: int = 0
    high_confidence_count: int = 0
    concept_categories: int = 0


class ExtractionSession(BaseModel):
    """One extraction job for one source document."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    document_id: str
    name: str = ""
    status: SessionStatus = SessionStatus.ANALYZING
    extracted_concepts: List[ExtractedConcept] = Field(default_factory=list)
    similarity_matches: List[SimilarityMatch] = Field(default_factory=list)
    progress: ExtractionProgress = Field(default_factory=ExtractionProgress)
    review_progress: ReviewProgress = Field(default_factory=ReviewProgress)
    duplicate_detection: Optional[DuplicateDetection] = None
    metadata: ExtractionMetadata = Field(default_factory=ExtractionMetadata)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    extraction_started_at: datetime = Field(default_factory=utc_now)

    @property
    def checked_names(self) -> set[str]:
        return {match.extracted_concept_name.lower() for match in self.similarity_matches}

    @property
    def similarity_complete(self) -> bool:
        return self.progress.similarity_checked_count >= len(self.extracted_concepts)

    def unchecked_concepts(self) -> List[ExtractedConcept]:
        checked = self.checked_names
        return [c for c in self.extracted_concepts if c.name.lower() not in checked]

    def mean_confidence(self) -> float:
        if not self.extracted_concepts:
            return 0.0
        return sum(c.confidence for c in self.extracted_concepts) / len(self.extracted_concepts)
