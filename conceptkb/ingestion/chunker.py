"""Lesson content chunking.

Splits a lesson document into chunks sized for a single extraction call:

- keyword lists are sorted and grouped (``keywords_per_chunk`` per chunk)
- notes, practice and homework text are packed paragraph by paragraph up to
  ``max_chunk_size`` characters, falling back to sentence and then word
  boundaries for oversized paragraphs
- consecutive text chunks carry a short overlap from the previous segment

Output is deterministic: the same document always yields the same chunks and
chunk ids, so a crashed run can be resumed against a fresh analysis.
"""

import math
import re
import uuid
from typing import List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, Field

from conceptkb.storage.schemas import ChunkType, ContentChunk, LessonDocument
from conceptkb.utils.config import ChunkingConfig

# Rough per-item costs in seconds, used for progress estimates only.
SECONDS_PER_CHUNK = 15
SECONDS_PER_CONCEPT_EXTRACTION = 3
SECONDS_PER_CONCEPT_SIMILARITY = 5
ANALYSIS_OVERHEAD_SECONDS = 10


class AnalysisMetadata(BaseModel):
    """Complexity indicators for the analyzed document."""

    keywords_weight: float = 0.0
    notes_complexity: float = 0.0
    practice_complexity: float = 0.0
    homework_complexity: Optional[float] = None
    estimated_concept_density: float = Field(
        default=0.0, description="Estimated concepts per 1000 characters"
    )


class ContentAnalysis(BaseModel):
    """Chunking plan for one document."""

    document_id: str
    chunks: List[ContentChunk] = Field(default_factory=list)
    total_content_length: int = 0
    total_estimated_concepts: int = 0
    estimated_processing_time: float = 0.0
    metadata: AnalysisMetadata = Field(default_factory=AnalysisMetadata)


class ContentChunker:
    """Split lesson documents into extraction-sized chunks.

    Example:
        >>> chunker = ContentChunker(ChunkingConfig(max_chunk_size=2000))
        >>> analysis = chunker.analyze(document)
        >>> print(f"{len(analysis.chunks)} chunks, ~{analysis.estimated_processing_time}s")
    """

    def __init__(self, config: Optional[ChunkingConfig] = None) -> None:
        """Initialize the chunker.

        Args:
            config: Chunking configuration. If None, uses default settings.
        """
        self.config = config or ChunkingConfig()

        logger.info(
            f"Initialized ContentChunker: max={self.config.max_chunk_size}, "
            f"min={self.config.min_chunk_size}, overlap={self.config.overlap_size}"
        )

    def analyze(self, document: LessonDocument) -> ContentAnalysis:
        """Chunk a lesson document and estimate concept yield and processing time.

        Args:
            document: Lesson document with keywords, notes, practice and homework

        Returns:
            ContentAnalysis with ordered chunks and aggregate totals
        """
        logger.info(
            f"Analyzing document {document.document_id}: keywords={len(document.keywords)}, "
            f"notes={len(document.notes)}, practice={len(document.practice)}"
        )

        chunks: List[ContentChunk] = []
        total_length = 0

        if document.keywords:
            keyword_chunks = self._chunk_keywords(document.document_id, document.keywords)
            chunks.extend(keyword_chunks)
            total_length += sum(len(chunk.content) for chunk in keyword_chunks)

        for chunk_type, text in (
            ("notes", document.notes),
            ("practice", document.practice),
            ("homework", document.homework),
        ):
            if text and text.strip():
                chunks.extend(self._chunk_text(document.document_id, text, chunk_type))
                total_length += len(text)

        total_concepts = sum(chunk.estimated_concepts for chunk in chunks)
        processing_time = float(
            sum(chunk.estimated_processing_time for chunk in chunks) + ANALYSIS_OVERHEAD_SECONDS
        )

        metadata = AnalysisMetadata(
            keywords_weight=self._keyword_weight(document.keywords),
            notes_complexity=self._text_complexity(document.notes),
            practice_complexity=self._text_complexity(document.practice),
            homework_complexity=(
                self._text_complexity(document.homework) if document.homework else None
            ),
            estimated_concept_density=(
                total_concepts / total_length * 1000 if total_length else 0.0
            ),
        )

        analysis = ContentAnalysis(
            document_id=document.document_id,
            chunks=chunks,
            total_content_length=total_length,
            total_estimated_concepts=total_concepts,
            estimated_processing_time=processing_time,
            metadata=metadata,
        )
        logger.success(
            f"Content analysis completed for {document.document_id}: {len(chunks)} chunks, "
            f"~{total_concepts} concepts, ~{processing_time:.0f}s"
        )
        return analysis

    def validate_config(self) -> List[str]:
        """Return configuration problems (empty when the config is usable)."""
        errors: List[str] = []
        if self.config.max_chunk_size <= self.config.min_chunk_size:
            errors.append("max_chunk_size must be greater than min_chunk_size")
        if self.config.overlap_size >= self.config.min_chunk_size / 2:
            errors.append("overlap_size should be less than half of min_chunk_size")
        if self.config.target_concepts_per_chunk <= 0:
            errors.append("target_concepts_per_chunk must be positive")
        if self.config.keywords_per_chunk <= 0:
            errors.append("keywords_per_chunk must be positive")
        return errors

    # Chunk builders --------------------------------------------------
    def _chunk_keywords(self, document_id: str, keywords: Sequence[str]) -> List[ContentChunk]:
        seen: set[str] = set()
        unique: List[str] = []
        for keyword in sorted(k.strip() for k in keywords if k and k.strip()):
            if keyword.lower() not in seen:
                seen.add(keyword.lower())
                unique.append(keyword)

        size = max(1, self.config.keywords_per_chunk)
        chunks: List[ContentChunk] = []
        for start in range(0, len(unique), size):
            group = unique[start : start + size]
            # Roughly 80% of listed keywords turn into concepts.
            estimated = max(1, math.floor(len(group) * 0.8))
            chunks.append(
                self._make_chunk(document_id, "keywords", len(chunks), ", ".join(group), estimated)
            )
        return chunks

    def _chunk_text(self, document_id: str, text: str, chunk_type: ChunkType) -> List[ContentChunk]:
        stripped = text.strip()
        if len(stripped) <= self.config.max_chunk_size:
            return [
                self._make_chunk(
                    document_id, chunk_type, 0, stripped, self.estimate_concepts(stripped)
                )
            ]

        segments = self._smart_split(stripped)
        chunks: List[ContentChunk] = []
        for index, segment in enumerate(segments):
            content = segment
            if index > 0 and self.config.overlap_size > 0:
                overlap = self._overlap_tail(segments[index - 1])
                if overlap:
                    content = f"{overlap}\n---\n{segment}"
            chunks.append(
                self._make_chunk(
                    document_id, chunk_type, index, content, self.estimate_concepts(segment)
                )
            )
        return chunks

    def _make_chunk(
        self, document_id: str, chunk_type: ChunkType, index: int, content: str, estimated: int
    ) -> ContentChunk:
        key = f"chunk:{document_id}:{chunk_type}:{index}:{content}"
        chunk_id = str(uuid.uuid5(uuid.NAMESPACE_URL, key))
        return ContentChunk(
            chunk_id=chunk_id,
            type=chunk_type,
            content=content,
            estimated_concepts=estimated,
            estimated_processing_time=float(
                SECONDS_PER_CHUNK
                + estimated * (SECONDS_PER_CONCEPT_EXTRACTION + SECONDS_PER_CONCEPT_SIMILARITY)
            ),
        )

    # Splitting -------------------------------------------------------
    def _smart_split(self, text: str) -> List[str]:
        """Pack paragraphs into segments no longer than ``max_chunk_size``."""
        if not self.config.preserve_structure:
            return self._split_words(text)

        max_size = self.config.max_chunk_size
        segments: List[str] = []
        current = ""

        for paragraph in (p.strip() for p in re.split(r"\n\s*\n", text)):
            if not paragraph:
                continue
            candidate = f"{current}\n\n{paragraph}" if current else paragraph
            if len(candidate) <= max_size:
                current = candidate
                continue

            if current and len(current) >= self.config.min_chunk_size:
                segments.append(current)
                if len(paragraph) <= max_size:
                    current = paragraph
                else:
                    segments.extend(self._force_split(paragraph))
                    current = ""
            else:
                # Too little accumulated to stand alone: re-pack it with the paragraph by sentence.
                segments.extend(self._force_split(candidate))
                current = ""

        if current:
            segments.append(current)
        return [segment for segment in segments if segment.strip()]

    def _force_split(self, text: str) -> List[str]:
        """Pack sentences up to ``max_chunk_size``; oversized sentences split on words."""
        max_size = self.config.max_chunk_size
        segments: List[str] = []
        current = ""

        for sentence in self._split_sentences(text):
            candidate = f"{current} {sentence}" if current else sentence
            if len(candidate) <= max_size:
                current = candidate
                continue
            if current:
                segments.append(current)
            if len(sentence) > max_size:
                segments.extend(self._split_words(sentence))
                current = ""
            else:
                current = sentence

        if current:
            segments.append(current)
        return segments

    def _split_words(self, text: str) -> List[str]:
        """Pack whole words; a single word longer than the limit stays intact."""
        max_size = self.config.max_chunk_size
        segments: List[str] = []
        current = ""
        for word in text.split():
            candidate = f"{current} {word}" if current else word
            if len(candidate) <= max_size or not current:
                current = candidate
            else:
                segments.append(current)
                current = word
        if current:
            segments.append(current)
        return segments

    def _split_sentences(self, text: str) -> List[str]:
        """Split text into sentences.

        Args:
            text: Text to split

        Returns:
            List of sentences
        """
        sentences = re.split(r"(?<=[.!?])\s+", text)
        return [s.strip() for s in sentences if s.strip()]

    def _overlap_tail(self, previous: str) -> str:
        size = self.config.overlap_size
        if len(previous) <= size:
            return previous.strip()
        tail = previous[-size:]
        if not previous[-size - 1].isspace():
            # Cut landed inside a word; drop the partial word.
            parts = tail.split(maxsplit=1)
            tail = parts[1] if len(parts) > 1 else ""
        return tail.strip()

    # Estimates -------------------------------------------------------
    def estimate_concepts(self, text: str) -> int:
        """Heuristic concept count: ~1 per 75 words, scaled up by vocabulary diversity."""
        words = text.split()
        if not words:
            return 1
        diversity = len({w.lower() for w in words}) / len(words)
        base = math.ceil(len(words) / 75)
        return max(1, math.floor(base * (1 + diversity * 2)))

    def _keyword_weight(self, keywords: Sequence[str]) -> float:
        if not keywords:
            return 0.0
        avg_length = sum(len(k) for k in keywords) / len(keywords)
        return min(1.0, len(keywords) * avg_length / 100)

    def _text_complexity(self, text: str) -> float:
        words = text.split() if text else []
        if not words:
            return 0.0
        diversity = len({w.lower() for w in words}) / len(words)
        avg_word_length = sum(len(w) for w in words) / len(words)
        return min(1.0, avg_word_length * diversity / 10)
