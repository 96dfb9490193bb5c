"""Pure compatibility check run before concepts are merged."""

from __future__ import annotations

from typing import Literal, Optional, Sequence

from pydantic import BaseModel

from conceptkb.storage.schemas import Concept, ConceptCategory
from conceptkb.utils.config import MergeConfig

MergeErrorType = Literal[
    "insufficient_concepts",
    "inactive_concepts",
    "category_incompatible",
    "difficulty_incompatible",
]


class MergeValidationResult(BaseModel):
    valid: bool
    error_type: Optional[MergeErrorType] = None
    message: str = ""
    category: Optional[ConceptCategory] = None


class MergeValidator:
    """Decide whether a set of concepts may be merged into one."""

    def __init__(self, config: MergeConfig | None = None) -> None:
        self.config = config or MergeConfig()

    def validate(self, concepts: Sequence[Concept]) -> MergeValidationResult:
        if len(concepts) < 2:
            return MergeValidationResult(
                valid=False,
                error_type="insufficient_concepts",
                message="At least two concepts are required for a merge",
            )

        inactive = [c.name for c in concepts if not c.is_active]
        if inactive:
            return MergeValidationResult(
                valid=False,
                error_type="inactive_concepts",
                message=f"Inactive concepts cannot be merged: {', '.join(inactive)}",
            )

        categories = {c.category for c in concepts}
        if len(categories) > 1:
            names = ", ".join(sorted(category.value for category in categories))
            return MergeValidationResult(
                valid=False,
                error_type="category_incompatible",
                message=f"Concepts span several categories: {names}",
            )

        ranks = [c.difficulty.rank for c in concepts]
        spread = max(ranks) - min(ranks)
        if spread > self.config.max_difficulty_spread:
            return MergeValidationResult(
                valid=False,
                error_type="difficulty_incompatible",
                message=(
                    f"Difficulty levels are {spread} steps apart "
                    f"(at most {self.config.max_difficulty_spread} allowed)"
                ),
            )

        return MergeValidationResult(valid=True, category=concepts[0].category)
