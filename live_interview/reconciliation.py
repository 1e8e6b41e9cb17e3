"""
Question Reconciliation Engine.

Decides, from transcript text alone, whether a suggested question has
effectively been asked, and produces the ordered list of questions presented
to the interviewer.

Two sources feed the list:
    - Rubric defaults (weight-descending) until a partial evaluation arrives
    - The latest partial evaluation's suggestions (backend order) afterwards

A question once presented as asked stays asked for the rest of the session,
even when a later suggestion list re-emits it with ``already_asked = false``.

Last Grunted: 10/15/2026
"""

import logging
import re
from typing import Iterable, Optional

from .config import ReconciliationConfig
from .models import SuggestedQuestion


__all__ = ["QuestionReconciler", "normalize_question", "question_asked_in_transcript"]


logger = logging.getLogger(__name__)


_PUNCTUATION = re.compile(r"[?!.]")


def normalize_question(question: str) -> str:
    """Lowercase, drop ``? ! .`` and collapse whitespace."""
    return " ".join(_PUNCTUATION.sub("", question.lower()).split())


def question_asked_in_transcript(
    question: str,
    transcript: str,
    config: Optional[ReconciliationConfig] = None,
) -> bool:
    """
    Heuristically decide whether ``question`` appears in ``transcript``.

    Short questions need a verbatim match. Longer ones are reduced to their
    significant words (stop words and short words dropped) and count as asked
    when enough of those words occur anywhere in the transcript.

    Example:
        >>> question_asked_in_transcript(
        ...     "How do you build a sales pipeline?",
        ...     "so tell me how you would build out a sales pipeline from scratch",
        ... )
        True
    """
    config = config or ReconciliationConfig()
    if not question or not transcript or len(transcript) < config.min_transcript_chars:
        return False

    q = _PUNCTUATION.sub("", question.lower()).strip()
    t = transcript.lower()

    if len(q) < config.short_question_chars:
        return q in t

    words = [
        word for word in q.split()
        if len(word) >= config.min_word_chars and word not in config.stop_words
    ]
    if len(words) < config.min_significant_words:
        return q[: config.prefix_chars] in t

    matches = sum(1 for word in words if word in t)
    return (
        matches >= min(config.required_matches, len(words))
        and matches >= len(words) * config.match_ratio
    )


class QuestionReconciler:
    """
    Produces the presented question list for one session.

    Example:
        >>> reconciler = QuestionReconciler(max_questions=10)
        >>> reconciler.set_defaults(rubric_questions)
        >>> presented = reconciler.reconcile(transcript)
        >>> reconciler.set_suggestions(partial.suggested_questions)
        >>> presented = reconciler.reconcile(transcript)
    """

    def __init__(
        self,
        config: Optional[ReconciliationConfig] = None,
        max_questions: int = 10,
    ) -> None:
        self.config = config or ReconciliationConfig()
        self.max_questions = max_questions
        self._defaults: list[SuggestedQuestion] = []
        self._suggestions: list[SuggestedQuestion] = []
        self._asked_keys: set[str] = set()
        self._presented: list[SuggestedQuestion] = []

    @property
    def presented(self) -> list[SuggestedQuestion]:
        """Last reconciled list (copy)."""
        return list(self._presented)

    @property
    def asked_keys(self) -> frozenset[str]:
        return frozenset(self._asked_keys)

    def set_defaults(self, questions: Iterable[SuggestedQuestion]) -> None:
        """
        Install rubric sample questions as the pre-partial list.

        Defaults are re-sorted by weight descending; the sort is stable so
        questions of one category keep their rubric order.
        """
        self._defaults = sorted(
            (q.model_copy() for q in questions),
            key=lambda q: q.weight_pct or 0,
            reverse=True,
        )

    def set_suggestions(self, questions: Iterable[SuggestedQuestion]) -> None:
        """Replace the partial-evaluation suggestions wholesale (backend order kept)."""
        self._suggestions = [q.model_copy() for q in questions]

    def reconcile(self, transcript: str) -> list[SuggestedQuestion]:
        """
        Compute the presented list for the current transcript.

        Returns:
            At most ``max_questions`` entries. ``already_asked`` is the OR of the
            backend flag, the transcript heuristic and every earlier promotion.
        """
        source = self._suggestions if self._suggestions else self._defaults
        presented: list[SuggestedQuestion] = []
        promoted = 0

        for item in source[: self.max_questions]:
            key = normalize_question(item.question)
            asked = (
                item.already_asked
                or key in self._asked_keys
                or question_asked_in_transcript(item.question, transcript, self.config)
            )
            if asked and key not in self._asked_keys:
                self._asked_keys.add(key)
                promoted += 1
            presented.append(item.model_copy(update={"already_asked": asked}))

        if promoted:
            logger.info("Marked %d question(s) as asked", promoted)
        self._presented = presented
        return list(presented)

    def reset(self) -> None:
        self._defaults = []
        self._suggestions = []
        self._asked_keys.clear()
        self._presented = []
