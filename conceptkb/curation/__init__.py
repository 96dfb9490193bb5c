"""Curation services: review decisions, merges, audit trail and retention."""

from conceptkb.curation.audit import CurationAuditTrail
from conceptkb.curation.cleanup import CleanupResult, CleanupStats, SessionCleanupService
from conceptkb.curation.concept_merger import ConceptMerger, MergeFields, MergeOutcome
from conceptkb.curation.merge_validator import MergeValidationResult, MergeValidator
from conceptkb.curation.review_processor import ReviewDecisionProcessor, ReviewOutcome

__all__ = [
    "CleanupResult",
    "CleanupStats",
    "ConceptMerger",
    "CurationAuditTrail",
    "MergeFields",
    "MergeOutcome",
    "MergeValidationResult",
    "MergeValidator",
    "ReviewDecisionProcessor",
    "ReviewOutcome",
    "SessionCleanupService",
]
