"""Fuzzy string matching for concept names and descriptions."""

from __future__ import annotations

import re
import unicodedata
from typing import Callable, List, Mapping, MutableMapping, Sequence

import numpy as np
from loguru import logger
from pydantic import BaseModel, ConfigDict
from rapidfuzz import fuzz, process

_PUNCTUATION = re.compile(r"[^\w\s]", flags=re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: str) -> str:
    """Lowercase, NFKC-normalize, drop punctuation and collapse whitespace."""
    text = unicodedata.normalize("NFKC", value or "").lower()
    text = _PUNCTUATION.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


class FuzzyMatchCandidate(BaseModel):
    """Represents a fuzzy match suggestion."""

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    source_normalized: str
    target_normalized: str
    score: float  # 0-1
    confidence: float  # 0-1
    threshold: float  # 0-1
    passed: bool
    target_index: int | None = None
    category: str | None = None


class FuzzyMatcher:
    """RapidFuzz-based matcher for spotting concept variants and typos."""

    def __init__(
        self,
        threshold: float = 0.92,
        threshold_overrides: Mapping[str, float] | None = None,
        scorer: Callable[..., float] | None = None,
    ) -> None:
        self.threshold = threshold
        self.scorer: Callable[..., float] = scorer or fuzz.WRatio
        self.threshold_overrides: MutableMapping[str, float] = {}
        for key, value in (threshold_overrides or {}).items():
            self.threshold_overrides[key.lower()] = value

        logger.debug("Initialized FuzzyMatcher with base threshold {:.2f}", self.threshold)

    def match_pair(
        self, source: str, target: str, category: str | None = None
    ) -> FuzzyMatchCandidate:
        """Score a single pair of strings."""
        source_norm = normalize_text(source)
        target_norm = normalize_text(target)
        threshold = self._threshold_for(category, source_norm, target_norm)

        score = self._score(source_norm, target_norm)
        confidence = self._confidence(score, threshold, source_norm, target_norm)

        return FuzzyMatchCandidate(
            source=source,
            target=target,
            source_normalized=source_norm,
            target_normalized=target_norm,
            score=score,
            confidence=confidence,
            threshold=threshold,
            passed=score >= threshold,
            category=category.lower() if category else None,
        )

    def match_batch(
        self,
        sources: Sequence[str],
        choices: Sequence[str],
        category: str | None = None,
        limit: int = 3,
    ) -> List[FuzzyMatchCandidate]:
        """Top ``limit`` choices per source, best first."""
        if not sources or not choices:
            return []

        normalized_sources = [normalize_text(value) for value in sources]
        normalized_choices = [normalize_text(value) for value in choices]
        effective_limit = max(1, min(limit, len(choices)))

        score_matrix = process.cdist(
            normalized_sources,
            normalized_choices,
            scorer=self.scorer,
            processor=None,
        )

        results: List[FuzzyMatchCandidate] = []
        for source_index, (source_raw, source_norm) in enumerate(
            zip(sources, normalized_sources, strict=False)
        ):
            row = np.asarray(score_matrix[source_index])
            top_indices = np.argpartition(-row, kth=effective_limit - 1)[:effective_limit]
            # Stable ordering: score desc, then original position.
            ordered = sorted(top_indices.tolist(), key=lambda idx: (-float(row[idx]), int(idx)))

            for target_index in ordered:
                target_norm = normalized_choices[target_index]
                score = float(row[target_index]) / 100.0
                threshold = self._threshold_for(category, source_norm, target_norm)
                results.append(
                    FuzzyMatchCandidate(
                        source=source_raw,
                        target=choices[target_index],
                        source_normalized=source_norm,
                        target_normalized=target_norm,
                        score=score,
                        confidence=self._confidence(score, threshold, source_norm, target_norm),
                        threshold=threshold,
                        passed=score >= threshold,
                        target_index=int(target_index),
                        category=category.lower() if category else None,
                    )
                )

        return results

    def best_match(
        self, source: str, choices: Sequence[str], category: str | None = None
    ) -> FuzzyMatchCandidate | None:
        matches = self.match_batch([source], choices, category=category, limit=1)
        return matches[0] if matches else None

    def _threshold_for(self, category: str | None, source: str, target: str) -> float:
        threshold = self.threshold
        if category:
            threshold = self.threshold_overrides.get(category.lower(), threshold)

        shortest = min(len(source), len(target))
        if shortest == 0:
            return 1.0
        if shortest < 4:
            threshold = max(threshold, 0.96)
        elif shortest < 8:
            threshold = max(threshold, threshold + 0.02)

        return min(threshold, 0.99)

    def _score(self, source_norm: str, target_norm: str) -> float:
        return self.scorer(source_norm, target_norm) / 100.0

    def _confidence(self, score: float, threshold: float, source: str, target: str) -> float:
        normalized_score = max(0.0, min(1.0, score))
        if not source or not target:
            return 0.0

        length_penalty = min(abs(len(source) - len(target)) / max(len(source), len(target)), 0.4)
        length_penalty *= 0.25

        margin_bonus = max(0.0, normalized_score - threshold)
        confidence = normalized_score - length_penalty + margin_bonus
        return max(0.0, min(1.0, confidence))
