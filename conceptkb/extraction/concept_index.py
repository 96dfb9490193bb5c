"""Read-only snapshot of active concepts used as the comparison set."""

from __future__ import annotations

import time
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from loguru import logger

from conceptkb.normalization.fuzzy_matcher import FuzzyMatcher
from conceptkb.storage.repositories import ConceptRepository
from conceptkb.storage.schemas import ConceptCategory, ConceptIndexEntry, ExtractedConcept
from conceptkb.utils.config import IndexConfig


class ConceptIndex:
    """Immutable view of the active concepts at one point in time."""

    def __init__(self, entries: Iterable[ConceptIndexEntry]) -> None:
        self._entries: Tuple[ConceptIndexEntry, ...] = tuple(entries)
        self._by_id: Dict[str, ConceptIndexEntry] = {e.concept_id: e for e in self._entries}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ConceptIndexEntry]:
        return iter(self._entries)

    @property
    def is_empty(self) -> bool:
        return not self._entries

    def get(self, concept_id: str) -> Optional[ConceptIndexEntry]:
        return self._by_id.get(concept_id)

    def by_category(self, category: ConceptCategory) -> List[ConceptIndexEntry]:
        return [entry for entry in self._entries if entry.category == category]

    def candidates_for(
        self,
        concept: ExtractedConcept,
        limit: int,
        matcher: FuzzyMatcher | None = None,
    ) -> List[ConceptIndexEntry]:
        """Entries worth showing the judge: same category first, closest names first."""
        if limit <= 0 or self.is_empty:
            return []
        matcher = matcher or FuzzyMatcher()
        same = self.by_category(concept.category)
        other = [entry for entry in self._entries if entry.category != concept.category]

        ranked: List[ConceptIndexEntry] = []
        for pool in (same, other):
            if len(ranked) >= limit or not pool:
                continue
            matches = matcher.match_batch(
                [concept.name], [entry.name for entry in pool], limit=len(pool)
            )
            for match in matches:
                if match.target_index is not None:
                    ranked.append(pool[match.target_index])
        return ranked[:limit]


class ConceptIndexProvider:
    """Builds :class:`ConceptIndex` snapshots with a short TTL cache.

    Writers call :meth:`invalidate` after creating or merging concepts so the
    next snapshot reflects them.
    """

    def __init__(
        self,
        concepts: ConceptRepository,
        config: IndexConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.concepts = concepts
        self.config = config or IndexConfig()
        self._clock = clock or time.monotonic
        self._cached: ConceptIndex | None = None
        self._built_at = 0.0

    def snapshot(self) -> ConceptIndex:
        now = self._clock()
        if self._cached is not None and now - self._built_at < self.config.cache_ttl_seconds:
            return self._cached

        entries = [ConceptIndexEntry.from_concept(c) for c in self.concepts.list_active()]
        self._cached = ConceptIndex(entries)
        self._built_at = now
        logger.debug(f"Rebuilt concept index with {len(entries)} active concepts")
        return self._cached

    def invalidate(self) -> None:
        self._cached = None
