"""
Pipeline configuration.

Every tuning constant of the live pipeline lives here: the partial-evaluation
threshold and interval, the question cap, the final transcript bound, recovery
retention, audio framing, and the question reconciliation heuristic.

Values come from environment variables (a project-root .env is loaded first)
with strict validation. Invalid values raise RuntimeError naming the variable.

Last Grunted: 10/14/2026
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


__all__ = [
    "DEFAULT_STOP_WORDS",
    "PipelineConfig",
    "ReconciliationConfig",
    "load_pipeline_config",
    "load_reconciliation_config",
]


_env_path = Path(__file__).parent.parent / ".env"
load_dotenv(_env_path)

logger = logging.getLogger(__name__)


DEFAULT_STOP_WORDS: frozenset[str] = frozenset(
    """
    the a an and or but in on at to for of with by from as is was are were been be
    have has had do does did will would could should may might must can you your me
    my we our they their it its this that what which who how when where why
    """.split()
)


@dataclass(frozen=True)
class PipelineConfig:
    """Tuning constants for capture, scheduling and final evaluation."""

    min_transcript_chars: int = 60
    partial_interval_seconds: float = 25.0
    max_presented_questions: int = 10
    max_final_transcript_chars: int = 36000
    recovery_retention_hours: float = 24.0
    sample_rate: int = 16000
    frame_ms: int = 100
    mix_gain: float = 0.8
    default_role: str = "vp-sales"

    @property
    def frame_samples(self) -> int:
        """Samples per emitted frame (1600 at 16 kHz / 100 ms)."""
        return self.sample_rate * self.frame_ms // 1000


@dataclass(frozen=True)
class ReconciliationConfig:
    """Thresholds for deciding from transcript text that a question was asked."""

    min_transcript_chars: int = 30
    short_question_chars: int = 15
    min_significant_words: int = 2
    prefix_chars: int = 40
    min_word_chars: int = 3
    required_matches: int = 3
    match_ratio: float = 0.35
    stop_words: frozenset[str] = field(default_factory=lambda: DEFAULT_STOP_WORDS)


def _read_int(name: str, default: int, minimum: int = 1) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer. Got: {raw}") from exc
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}. Got: {value}.")
    return value


def _read_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number. Got: {raw}") from exc
    if value <= minimum:
        raise RuntimeError(f"{name} must be > {minimum}. Got: {value}.")
    return value


def load_pipeline_config() -> PipelineConfig:
    """Load pipeline tuning from environment with strict validation."""
    mix_gain = _read_float("MIX_GAIN", 0.8)
    if mix_gain > 1.0:
        raise RuntimeError(f"MIX_GAIN must be in range (0, 1]. Got: {mix_gain}.")

    default_role = (os.environ.get("DEFAULT_ROLE", "vp-sales") or "").strip()
    if not default_role:
        raise RuntimeError("DEFAULT_ROLE resolved to empty value.")

    config = PipelineConfig(
        min_transcript_chars=_read_int("MIN_TRANSCRIPT_FOR_QUESTIONS", 60),
        partial_interval_seconds=_read_float("PARTIAL_INTERVAL_SECONDS", 25.0),
        max_presented_questions=_read_int("MAX_PRESENTED_QUESTIONS", 10),
        max_final_transcript_chars=_read_int("MAX_TRANSCRIPT_CHARS", 36000),
        recovery_retention_hours=_read_float("RECOVERY_RETENTION_HOURS", 24.0),
        sample_rate=_read_int("SAMPLE_RATE", 16000),
        frame_ms=_read_int("FRAME_MS", 100),
        mix_gain=mix_gain,
        default_role=default_role,
    )
    logger.debug("Loaded pipeline config: %s", config)
    return config


def load_reconciliation_config() -> ReconciliationConfig:
    """Load reconciliation thresholds from environment with strict validation."""
    match_ratio = _read_float("RECONCILE_MATCH_RATIO", 0.35)
    if match_ratio > 1.0:
        raise RuntimeError(
            f"RECONCILE_MATCH_RATIO must be in range (0, 1]. Got: {match_ratio}."
        )

    stop_words = DEFAULT_STOP_WORDS
    extra = (os.environ.get("RECONCILE_EXTRA_STOP_WORDS") or "").strip()
    if extra:
        stop_words = stop_words | frozenset(
            word.strip().lower() for word in extra.split(",") if word.strip()
        )

    return ReconciliationConfig(
        min_transcript_chars=_read_int("RECONCILE_MIN_TRANSCRIPT_CHARS", 30),
        short_question_chars=_read_int("RECONCILE_SHORT_QUESTION_CHARS", 15),
        min_significant_words=_read_int("RECONCILE_MIN_SIGNIFICANT_WORDS", 2),
        prefix_chars=_read_int("RECONCILE_PREFIX_CHARS", 40),
        min_word_chars=_read_int("RECONCILE_MIN_WORD_CHARS", 3),
        required_matches=_read_int("RECONCILE_REQUIRED_MATCHES", 3),
        match_ratio=match_ratio,
        stop_words=stop_words,
    )
