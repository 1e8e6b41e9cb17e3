"""
Pydantic models for the live interview pipeline.

Defines transcript turns, partial and final rubric evaluations, suggested
questions, and the recovery snapshot persisted at end of interview.

The scoring backend speaks snake_case JSON with its own key names
(``partial_scores``, ``name``, ``current_impression``). Models accept both the
wire alias and the field name; dump with ``by_alias=True`` for the wire shape.

Last Grunted: 10/14/2026
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class SourceMode(str, Enum):
    """Audio source selection for capture."""
    MIC = "mic"
    TAB = "tab"
    BOTH = "both"


class ConnectionState(str, Enum):
    """Streaming transcription connection state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SessionPhase(str, Enum):
    """
    Lifecycle phase of an interview session.

    Idle -> Live -> Ending -> (Succeeded | Failed); Failed -> Ending on retry.
    """
    IDLE = "idle"
    LIVE = "live"
    ENDING = "ending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class HireRecommendation(str, Enum):
    """Final hire recommendation."""
    STRONG_HIRE = "Strong Hire"
    HIRE_WITH_CAVEATS = "Hire with caveats"
    NO_HIRE = "No Hire"

    @classmethod
    def parse(cls, raw: str) -> "HireRecommendation":
        """
        Parse a model-produced recommendation leniently.

        Accepts any casing and separators ("strong-hire", "NO HIRE",
        "Hire with caveats", plain "Hire").

        Raises:
            ValueError: If the text matches no recommendation.
        """
        normalized = " ".join(str(raw).replace("-", " ").replace("_", " ").lower().split())
        if normalized.startswith("strong hire"):
            return cls.STRONG_HIRE
        if normalized.startswith("no hire") or normalized == "no":
            return cls.NO_HIRE
        if normalized.startswith("hire"):
            return cls.HIRE_WITH_CAVEATS
        raise ValueError(f"Unrecognized hire recommendation: {raw!r}")


_WIRE_MODEL_CONFIG = {"populate_by_name": True, "extra": "ignore"}


# =============================================================================
# Transcript
# =============================================================================

class Turn(BaseModel):
    """
    One transcription turn from the streaming backend.

    A turn may be resent with revised text; the later text for the same
    ``order`` replaces the earlier one.
    """
    order: int = Field(..., description="Turn position index assigned by the backend")
    text: str = Field(default="", description="Latest transcribed text for this turn")


# =============================================================================
# Partial Evaluation
# =============================================================================

class CategoryScore(BaseModel):
    """Score for one rubric category."""
    category: str = Field(..., alias="name", description="Exact rubric category name")
    score: float = Field(..., ge=0, description="Score on the rubric's 0..max_score scale")
    justification: str = Field(default="", description="Short reason for the score")

    model_config = _WIRE_MODEL_CONFIG


class SuggestedQuestion(BaseModel):
    """A question suggested to the interviewer."""
    question: str = Field(..., min_length=1)
    already_asked: bool = Field(default=False)
    category: Optional[str] = Field(default=None, description="Rubric category name")
    weight_pct: Optional[int] = Field(
        default=None,
        ge=0,
        le=100,
        description="Category weight as an integer percentage",
    )

    model_config = _WIRE_MODEL_CONFIG


class PartialEvaluation(BaseModel):
    """
    In-progress scoring pass over the transcript so far.

    Each new partial evaluation supersedes the previous one wholesale.
    """
    scores: list[CategoryScore] = Field(default_factory=list, alias="partial_scores")
    suggested_questions: list[SuggestedQuestion] = Field(default_factory=list)
    red_flags: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)
    impression: str = Field(default="", alias="current_impression")

    model_config = _WIRE_MODEL_CONFIG


# =============================================================================
# Final Evaluation
# =============================================================================

class AskedTopic(BaseModel):
    """A rubric topic covered during the interview."""
    category: str
    question_or_topic: str = ""


class MissedTopic(BaseModel):
    """Rubric sample questions that were never asked."""
    category: str
    sample_questions_not_asked: list[str] = Field(default_factory=list)


class QuestionsCoverage(BaseModel):
    """Rubric coverage summary."""
    asked: list[AskedTopic] = Field(default_factory=list)
    missed: list[MissedTopic] = Field(default_factory=list)


class FinalEvaluation(BaseModel):
    """
    Terminal, authoritative scoring pass over the full interview.

    Example:
        >>> FinalEvaluation.model_validate({
        ...     "category_scores": [{"name": "Leadership", "score": 4}],
        ...     "weighted_overall_score": 80.0,
        ...     "hire_recommendation": "strong hire",
        ... }).hire_recommendation
        <HireRecommendation.STRONG_HIRE: 'Strong Hire'>
    """
    category_scores: list[CategoryScore] = Field(default_factory=list)
    weighted_overall_score: float = Field(default=0.0, ge=0, le=100)
    hire_recommendation: HireRecommendation
    summary: str = ""
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    red_flags: list[str] = Field(default_factory=list)
    questions_coverage: QuestionsCoverage = Field(default_factory=QuestionsCoverage)

    model_config = _WIRE_MODEL_CONFIG

    @field_validator("hire_recommendation", mode="before")
    @classmethod
    def parse_recommendation(cls, value: object) -> object:
        if isinstance(value, HireRecommendation):
            return value
        if isinstance(value, str):
            return HireRecommendation.parse(value)
        return value


# =============================================================================
# Recovery Snapshot
# =============================================================================

def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionSnapshot(BaseModel):
    """
    Durable record of an ended interview awaiting its final evaluation.

    Created at end of interview before the final request is issued and
    removed once the final evaluation succeeds.
    """
    transcript: str = Field(..., description="Full transcript at end of interview")
    turns: list[str] = Field(default_factory=list, description="Ordered turn texts")
    recipient_email: Optional[str] = Field(default=None, description="Report recipient")
    role: str = Field(..., min_length=1, description="Rubric role id")
    created_at: datetime = Field(default_factory=_utc_now)

    def age_hours(self, now: Optional[datetime] = None) -> float:
        """Age of the snapshot in hours relative to ``now`` (UTC)."""
        current = now or _utc_now()
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (current - created).total_seconds() / 3600.0
