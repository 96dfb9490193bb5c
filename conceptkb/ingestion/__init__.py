"""Ingestion package: lesson content analysis and chunking."""

from conceptkb.ingestion.chunker import AnalysisMetadata, ContentAnalysis, ContentChunker

__all__ = ["AnalysisMetadata", "ContentAnalysis", "ContentChunker"]
