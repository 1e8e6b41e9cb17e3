"""Tests for role rubrics and the rubric registry."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from evaluation_platform import ROLES, RoleSpec, Rubric, RubricRegistry
from live_interview.models import CategoryScore


def _rubric_dict(weights: tuple[float, ...] = (0.6, 0.4)) -> dict:
    return {
        "role": "Test Role",
        "max_score": 5,
        "categories": [
            {"name": f"Category {index}", "weight": weight, "sample_questions": [f"Question {index}?"]}
            for index, weight in enumerate(weights)
        ],
    }


class TestRubric:
    """Rubric validation and scoring."""

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValidationError, match="sum to 1.0"):
            Rubric.model_validate(_rubric_dict((0.5, 0.2)))

    def test_duplicate_category_names_rejected(self):
        raw = _rubric_dict()
        raw["categories"][1]["name"] = raw["categories"][0]["name"]

        with pytest.raises(ValidationError, match="unique"):
            Rubric.model_validate(raw)

    def test_weighted_score(self):
        """sum(score * weight) / max_score * 100, one decimal."""
        rubric = Rubric.model_validate(_rubric_dict())
        scores = [
            CategoryScore(category="Category 0", score=4),
            CategoryScore(category="Category 1", score=3),
        ]

        assert rubric.compute_weighted_score(scores) == 72.0

    def test_weighted_score_rounds(self):
        rubric = Rubric.model_validate(_rubric_dict((0.33, 0.67)))

        score = rubric.compute_weighted_score([CategoryScore(category="Category 0", score=1)])

        assert score == 6.6

    def test_sample_questions_by_weight(self):
        rubric = Rubric.model_validate(_rubric_dict((0.4, 0.6)))

        questions = rubric.sample_questions()

        assert [q.question for q in questions] == ["Question 1?", "Question 0?"]
        assert [q.weight_pct for q in questions] == [60, 40]

    def test_weight_pct_for_unknown_category(self):
        rubric = Rubric.model_validate(_rubric_dict())

        assert rubric.weight_pct_for("Category 0") == 60
        assert rubric.weight_pct_for("Nope") is None
        assert rubric.weight_pct_for(None) is None


class TestRubricRegistry:
    """Role lookup and bundled rubrics."""

    def test_bundled_rubrics_valid(self):
        """Every offered role ships a valid rubric."""
        registry = RubricRegistry()

        registry.validate_all()

        assert [role.id for role in registry.roles()] == [role.id for role in ROLES]

    def test_unknown_role_falls_back(self):
        registry = RubricRegistry()

        assert registry.resolve_role("chief-astronaut") == "vp-sales"
        assert registry.resolve_role(None) == "vp-sales"
        assert registry.get("").role == "VP of Sales"
        assert registry.label("vp-ta") == "VP of TA"

    def test_custom_directory(self, tmp_path: Path):
        (tmp_path / "designer.json").write_text(json.dumps(_rubric_dict()), encoding="utf-8")
        registry = RubricRegistry(
            tmp_path,
            roles=(RoleSpec(id="designer", label="Designer"),),
            default_role="designer",
        )

        assert registry.get("designer").role == "Test Role"

    def test_invalid_rubric_file(self, tmp_path: Path):
        (tmp_path / "designer.json").write_text(json.dumps(_rubric_dict((0.1, 0.1))), encoding="utf-8")
        registry = RubricRegistry(
            tmp_path,
            roles=(RoleSpec(id="designer", label="Designer"),),
            default_role="designer",
        )

        with pytest.raises(RuntimeError, match="validation failed"):
            registry.validate_all()

    def test_missing_rubric_file(self, tmp_path: Path):
        registry = RubricRegistry(tmp_path)

        with pytest.raises(RuntimeError, match="not found"):
            registry.get("vp-sales")

    def test_unknown_default_role(self):
        with pytest.raises(RuntimeError, match="not a known role"):
            RubricRegistry(default_role="chief-astronaut")

    def test_rubrics_dir_from_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("RUBRICS_DIR", str(tmp_path))

        assert RubricRegistry().rubrics_dir == tmp_path
