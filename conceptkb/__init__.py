"""Concept extraction pipeline for lesson content."""

__version__ = "0.1.0"
