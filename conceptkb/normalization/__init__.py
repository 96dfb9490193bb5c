"""Normalization package."""

from conceptkb.normalization.fuzzy_matcher import FuzzyMatchCandidate, FuzzyMatcher, normalize_text

__all__ = ["FuzzyMatchCandidate", "FuzzyMatcher", "normalize_text"]
