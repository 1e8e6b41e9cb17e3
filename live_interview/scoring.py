"""
Rubric scoring backend using the OpenAI Agents SDK.

Produces partial evaluations during the interview and the final evaluation
after it, by prompting a chat model with the role's rubric and parsing the
JSON it returns.

Supports any OpenAI-compatible endpoint:
  - x.ai Grok (default): Set XAI_API_KEY
  - OpenAI: Set OPENAI_API_KEY
  - Azure OpenAI: Set AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_KEY, AZURE_OPENAI_DEPLOYMENT

Last Grunted: 10/16/2026
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol

from agents import (
    Agent,
    ModelSettings,
    OpenAIChatCompletionsModel,
    Runner,
    set_tracing_disabled,
)
from dotenv import load_dotenv
from openai import AsyncAzureOpenAI, AsyncOpenAI
from pydantic import ValidationError

from evaluation_platform.rubric_loader import RubricRegistry
from evaluation_platform.rubric_models import Rubric

from .models import FinalEvaluation, PartialEvaluation, SuggestedQuestion


__all__ = [
    "AgentsCompletionBackend",
    "CompletionBackend",
    "LLMSettings",
    "RubricEvaluator",
    "ScoringBackendError",
    "ScoringError",
    "ScoringParseError",
    "ScoringRateLimitError",
    "UnconfiguredCompletionBackend",
    "build_completion_backend",
    "extract_json",
    "load_llm_settings",
]


_env_path = Path(__file__).parent.parent / ".env"
load_dotenv(_env_path)

logger = logging.getLogger(__name__)


PARTIAL_TEMPERATURE = 0.3
FINAL_TEMPERATURE = 0.2

XAI_BASE_URL = "https://api.x.ai/v1"
XAI_DEFAULT_MODEL = "grok-4-latest"


# =============================================================================
# Errors
# =============================================================================

class ScoringError(Exception):
    """Base class for scoring failures."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ScoringBackendError(ScoringError):
    """The model endpoint failed or returned nothing."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ScoringRateLimitError(ScoringBackendError):
    """The model endpoint rejected the request with HTTP 429."""

    def __init__(
        self,
        message: str = "Scoring backend rate limit exceeded. Check your model provider plan.",
    ) -> None:
        super().__init__(message, status_code=429)


class ScoringParseError(ScoringError):
    """The model answered, but not with the expected JSON."""


# =============================================================================
# Completion backend
# =============================================================================

class CompletionBackend(Protocol):
    """Chat completion returning raw text."""

    async def complete(self, instructions: str, prompt: str, temperature: float) -> str:
        ...


@dataclass(frozen=True)
class LLMSettings:
    """Resolved model endpoint settings."""

    provider: str
    model: str
    api_key: str
    base_url: Optional[str] = None
    azure_endpoint: Optional[str] = None
    azure_api_version: Optional[str] = None


def load_llm_settings() -> LLMSettings:
    """
    Determine the model endpoint from environment variables.

    Precedence: Azure OpenAI (all three AZURE_* set), then x.ai (XAI_API_KEY),
    then OpenAI (OPENAI_API_KEY).

    Raises:
        RuntimeError: If no credentials are configured or Azure is partially configured.
    """
    azure_endpoint = os.environ.get("AZURE_OPENAI_ENDPOINT")
    azure_key = os.environ.get("AZURE_OPENAI_KEY")
    azure_deployment = os.environ.get("AZURE_OPENAI_DEPLOYMENT")
    if azure_endpoint or azure_key or azure_deployment:
        if not all([azure_endpoint, azure_key, azure_deployment]):
            raise RuntimeError(
                "Azure OpenAI requires AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_KEY, "
                "and AZURE_OPENAI_DEPLOYMENT environment variables"
            )
        return LLMSettings(
            provider="azure",
            model=azure_deployment,
            api_key=azure_key,
            azure_endpoint=azure_endpoint,
            azure_api_version=os.environ.get("AZURE_OPENAI_API_VERSION", "2024-08-01-preview"),
        )

    xai_key = (os.environ.get("XAI_API_KEY") or "").strip()
    if xai_key:
        return LLMSettings(
            provider="xai",
            model=os.environ.get("LLM_MODEL", XAI_DEFAULT_MODEL),
            api_key=xai_key,
            base_url=os.environ.get("LLM_BASE_URL", XAI_BASE_URL),
        )

    openai_key = (os.environ.get("OPENAI_API_KEY") or "").strip()
    if openai_key:
        return LLMSettings(
            provider="openai",
            model=os.environ.get("LLM_MODEL", os.environ.get("OPENAI_MODEL", "gpt-4o")),
            api_key=openai_key,
            base_url=os.environ.get("LLM_BASE_URL") or None,
        )

    raise RuntimeError(
        "No model credentials configured. Set XAI_API_KEY, OPENAI_API_KEY, or "
        "AZURE_OPENAI_ENDPOINT/AZURE_OPENAI_KEY/AZURE_OPENAI_DEPLOYMENT."
    )


def _is_rate_limited(exc: Exception) -> bool:
    status_code = getattr(exc, "status_code", None)
    return status_code == 429 or "429" in str(exc)


class AgentsCompletionBackend:
    """
    Runs one single-turn Agent per completion.

    Example:
        >>> backend = build_completion_backend(load_llm_settings())
        >>> text = await backend.complete("You are terse.", "Say hi", 0.3)
    """

    def __init__(self, client: AsyncOpenAI, model: str, disable_tracing: bool = True) -> None:
        self._model = OpenAIChatCompletionsModel(model=model, openai_client=client)
        self.model_name = model
        if disable_tracing:
            # Traces upload to the OpenAI platform; other providers reject the key.
            set_tracing_disabled(True)

    async def complete(self, instructions: str, prompt: str, temperature: float) -> str:
        agent = Agent(
            name="Interview Evaluator",
            instructions=instructions,
            model=self._model,
            model_settings=ModelSettings(temperature=temperature),
        )
        try:
            result = await Runner.run(agent, prompt)
        except Exception as exc:
            if _is_rate_limited(exc):
                raise ScoringRateLimitError() from exc
            raise ScoringBackendError(
                str(exc) or "Scoring request failed",
                status_code=getattr(exc, "status_code", None),
            ) from exc

        output = result.final_output
        return output if isinstance(output, str) else str(output or "")


def build_completion_backend(settings: LLMSettings) -> CompletionBackend:
    """Create the agents-backed completion backend for ``settings``."""
    if settings.provider == "azure":
        client: AsyncOpenAI = AsyncAzureOpenAI(
            azure_endpoint=settings.azure_endpoint,
            api_key=settings.api_key,
            api_version=settings.azure_api_version,
        )
    else:
        client = AsyncOpenAI(api_key=settings.api_key, base_url=settings.base_url)

    logger.info("Scoring backend: provider=%s model=%s", settings.provider, settings.model)
    return AgentsCompletionBackend(
        client,
        settings.model,
        disable_tracing=settings.provider != "openai",
    )


class UnconfiguredCompletionBackend:
    """Stands in when no model credentials are set; every request fails with ``reason``."""

    def __init__(self, reason: str) -> None:
        self.reason = reason

    async def complete(self, instructions: str, prompt: str, temperature: float) -> str:
        raise ScoringBackendError(self.reason)


# =============================================================================
# Parsing
# =============================================================================

_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def extract_json(text: str) -> dict[str, Any]:
    """
    Parse a JSON object from model output, unwrapping a fenced code block.

    Raises:
        ScoringParseError: If no JSON object can be parsed.
    """
    trimmed = (text or "").strip()
    fenced = _CODE_FENCE.search(trimmed)
    raw = fenced.group(1).strip() if fenced else trimmed
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ScoringParseError(f"Invalid evaluation format from model: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ScoringParseError("Invalid evaluation format from model: expected a JSON object")
    return parsed


def _coerce_weight_pct(value: Any) -> Optional[int]:
    try:
        pct = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return max(0, min(100, pct))


def normalize_suggested_questions(raw_items: Any, rubric: Rubric) -> list[dict[str, Any]]:
    """
    Coerce model suggestions to question objects ordered by category weight.

    Plain strings become questions; a missing or zero ``weight_pct`` is filled
    from the rubric category. The sort is stable, so ties keep model order.
    """
    if not isinstance(raw_items, list):
        return []

    questions: list[dict[str, Any]] = []
    for item in raw_items:
        if isinstance(item, str):
            entry: dict[str, Any] = {"question": item, "already_asked": False}
        elif isinstance(item, dict):
            entry = {
                "question": str(item.get("question") or "").strip(),
                "already_asked": bool(item.get("already_asked")),
                "category": item.get("category"),
                "weight_pct": _coerce_weight_pct(item.get("weight_pct")),
            }
        else:
            continue
        if not entry["question"]:
            continue
        if not entry.get("weight_pct") and entry.get("category"):
            entry["weight_pct"] = rubric.weight_pct_for(entry["category"])
        questions.append(entry)

    questions.sort(key=lambda q: q.get("weight_pct") or 0, reverse=True)
    return questions


# =============================================================================
# Prompts
# =============================================================================

def build_partial_instructions(rubric: Rubric) -> str:
    """System instructions for a live (partial) evaluation."""
    max_score = rubric.max_score
    category_list = ", ".join(
        f'"{c.name}" (weight {c.weight_pct}%)' for c in rubric.categories_by_weight()
    )
    rubric_json = json.dumps(rubric.model_dump(mode="json"), indent=2)
    return f"""You assess a live job interview for the role: {rubric.role}.
Every suggested question must come from this role's rubric.

RUBRIC FOR {rubric.role.upper()}:
{rubric_json}

Categories allowed in suggested_questions (exact names): {category_list}.

Reply with one raw JSON object and nothing else, in this shape:
{{
  "partial_scores": [{{"name": "<category>", "score": <0-{max_score:g} integer>, "justification": "<1-2 sentences>"}}],
  "suggested_questions": [{{"question": "<text>", "already_asked": <true|false>, "category": "<category>", "weight_pct": <1-100>}}],
  "red_flags": ["<flag>"],
  "strengths": ["<strength>"],
  "current_impression": "<2-4 sentences on how the candidate is doing>"
}}

Rules:
- partial_scores: one entry per rubric category, scored against its scoring_guide.
- suggested_questions: draw on each category's criteria and sample_questions. Follow up
  where an answer was vague or evasive; move on to categories not yet covered; order by
  category weight, highest first. Prefer behavioral questions. Return up to 10.
- already_asked is true only when the transcript clearly shows the question or topic was asked.
- For an empty or very short transcript return neutral scores and the rubric's sample
  questions ordered by weight."""


def build_final_instructions(rubric: Rubric) -> str:
    """System instructions for the final evaluation."""
    max_score = rubric.max_score
    rubric_json = json.dumps(rubric.model_dump(mode="json"), indent=2)
    return f"""You produce the FINAL evaluation of a completed interview for a {rubric.role} role.

RUBRIC (use exact category names and weights):
{rubric_json}

Reply with one raw JSON object and nothing else, in this shape:
{{
  "category_scores": [{{"name": "<category>", "score": <0-{max_score:g}>, "justification": "<2-5 sentences>"}}],
  "weighted_overall_score": <0-100, one decimal>,
  "hire_recommendation": "Strong Hire" | "Hire with caveats" | "No Hire",
  "summary": "<3-5 sentence summary and recommendation>",
  "strengths": ["<strength>"],
  "weaknesses": ["<weakness>"],
  "red_flags": ["<red flag>"],
  "questions_coverage": {{
    "asked": [{{"category": "<category>", "question_or_topic": "<brief>"}}],
    "missed": [{{"category": "<category>", "sample_questions_not_asked": ["<rubric question>"]}}]
  }}
}}

weighted_overall_score = sum(score * weight) / {max_score:g} * 100, rounded to one decimal."""


# =============================================================================
# Evaluator
# =============================================================================

class RubricEvaluator:
    """
    Scores transcripts against role rubrics.

    Example:
        >>> evaluator = RubricEvaluator(backend, RubricRegistry())
        >>> partial = await evaluator.evaluate(transcript, "vp-sales")
        >>> final = await evaluator.evaluate_final(transcript, turns, "vp-sales")
    """

    def __init__(self, backend: CompletionBackend, registry: RubricRegistry) -> None:
        self.backend = backend
        self.registry = registry

    async def _complete(self, instructions: str, prompt: str, temperature: float) -> dict[str, Any]:
        raw = await self.backend.complete(instructions, prompt, temperature)
        if not raw or not raw.strip():
            raise ScoringBackendError("Empty response from scoring model")
        return extract_json(raw)

    async def evaluate(self, transcript: str, role: Optional[str]) -> PartialEvaluation:
        """
        Partial evaluation of the transcript so far.

        Raises:
            ScoringRateLimitError: On HTTP 429 from the model endpoint.
            ScoringBackendError: On any other endpoint failure or empty output.
            ScoringParseError: If the output is not the expected JSON.
        """
        rubric = self.registry.get(role)
        prompt = (
            f"Role being evaluated: {rubric.role}.\n\n"
            f"Conversation so far:\n\n{transcript or '(No speech transcribed yet.)'}"
        )
        parsed = await self._complete(build_partial_instructions(rubric), prompt, PARTIAL_TEMPERATURE)
        parsed["suggested_questions"] = normalize_suggested_questions(
            parsed.get("suggested_questions"), rubric
        )
        try:
            partial = PartialEvaluation.model_validate(parsed)
        except ValidationError as exc:
            raise ScoringParseError(f"Partial evaluation did not match schema: {exc}") from exc

        logger.info(
            "Partial evaluation: %d scores, %d questions",
            len(partial.scores),
            len(partial.suggested_questions),
        )
        return partial

    async def evaluate_final(
        self,
        transcript: str,
        turns: Optional[list[str]],
        role: Optional[str],
    ) -> FinalEvaluation:
        """
        Final evaluation of the (already size-bounded) transcript.

        ``weighted_overall_score`` is recomputed from the category scores and
        rubric weights; the model's own figure is discarded.

        Raises:
            ScoringRateLimitError, ScoringBackendError, ScoringParseError
        """
        rubric = self.registry.get(role)
        parsed = await self._complete(
            build_final_instructions(rubric),
            f"Full interview transcript:\n\n{transcript}",
            FINAL_TEMPERATURE,
        )
        parsed["weighted_overall_score"] = 0.0
        try:
            final = FinalEvaluation.model_validate(parsed)
        except ValidationError as exc:
            raise ScoringParseError(f"Final evaluation did not match schema: {exc}") from exc

        final.weighted_overall_score = max(
            0.0, min(100.0, rubric.compute_weighted_score(final.category_scores))
        )
        logger.info(
            "Final evaluation: %s (%.1f) over %d turns",
            final.hire_recommendation.value,
            final.weighted_overall_score,
            len(turns or []),
        )
        return final

    def sample_questions(self, role: Optional[str]) -> list[SuggestedQuestion]:
        """Rubric sample questions for ``role``, weight-descending."""
        return self.registry.get(role).sample_questions()
