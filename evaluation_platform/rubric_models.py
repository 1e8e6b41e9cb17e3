"""Rubric models for role-specific interview scoring."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from live_interview.models import CategoryScore, SuggestedQuestion


class RoleSpec(BaseModel):
    """Evaluation role offered to the interviewer."""

    id: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)

    model_config = {"extra": "forbid"}


class RubricCategory(BaseModel):
    """One weighted scoring dimension."""

    name: str = Field(..., min_length=1)
    weight: float = Field(..., ge=0.0, le=1.0)
    criteria: list[str] = Field(default_factory=list)
    sample_questions: tuple[str, ...] = Field(default_factory=tuple)
    scoring_guide: dict[str, str] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}

    @property
    def weight_pct(self) -> int:
        return int(round(self.weight * 100))


class Rubric(BaseModel):
    """Weighted rubric for one role."""

    role: str = Field(..., min_length=1, description="Role label, e.g. 'VP of Sales'")
    max_score: float = Field(default=5, gt=0)
    categories: tuple[RubricCategory, ...] = Field(..., min_length=1)

    model_config = {"extra": "ignore"}

    @model_validator(mode="after")
    def validate_categories(self) -> "Rubric":
        names = [category.name for category in self.categories]
        if len(names) != len(set(names)):
            raise ValueError("categories must have unique names")

        total = sum(category.weight for category in self.categories)
        if abs(total - 1.0) > 0.01:
            raise ValueError(f"category weights must sum to 1.0 (got {total:.3f})")
        return self

    def categories_by_weight(self) -> list[RubricCategory]:
        """Categories sorted by weight, highest first (stable)."""
        return sorted(self.categories, key=lambda category: category.weight, reverse=True)

    def category(self, name: str | None) -> RubricCategory | None:
        if not name:
            return None
        return next((c for c in self.categories if c.name == name), None)

    def weight_pct_for(self, name: str | None) -> int | None:
        category = self.category(name)
        return category.weight_pct if category else None

    def sample_questions(self) -> list[SuggestedQuestion]:
        """All sample questions, categories in weight-descending order."""
        return [
            SuggestedQuestion(
                question=question,
                already_asked=False,
                category=category.name,
                weight_pct=category.weight_pct,
            )
            for category in self.categories_by_weight()
            for question in category.sample_questions
        ]

    def compute_weighted_score(self, scores: list[CategoryScore]) -> float:
        """
        Weighted overall score on a 0-100 scale, one decimal.

        ``sum(score * weight) / max_score * 100``; scores for categories that are
        not in the rubric are ignored.
        """
        weighted_sum = 0.0
        for row in scores:
            category = self.category(row.category)
            if category is not None:
                weighted_sum += float(row.score) * category.weight
        return round(weighted_sum / self.max_score * 100, 1)
