"""
Transcript Turn Aggregator.

Merges transcription turns into one transcript. The streaming backend may
resend a turn with revised text, deliver turns out of order, or skip
indices; the transcript is always the latest text of every known turn,
ordered by turn index and joined with a single space.

Pure state: no networking, no clocks.
"""

import logging

from .models import Turn


__all__ = ["TurnAggregator"]


logger = logging.getLogger(__name__)


class TurnAggregator:
    """
    Holds the latest text per turn order.

    Example:
        >>> aggregator = TurnAggregator()
        >>> aggregator.apply_turn(1, "world")
        True
        >>> aggregator.apply_turn(0, "hello")
        True
        >>> aggregator.current_transcript()
        'hello world'
    """

    def __init__(self) -> None:
        self._turns: dict[int, str] = {}

    def apply_turn(self, order: int, text: str) -> bool:
        """
        Record the text for a turn, replacing any earlier text for that order.

        Returns:
            True if the stored text changed.
        """
        order = int(order)
        text = text or ""
        if self._turns.get(order) == text:
            return False
        self._turns[order] = text
        logger.debug("Applied turn %d (len=%d, total turns=%d)", order, len(text), len(self._turns))
        return True

    def apply(self, turn: Turn) -> bool:
        return self.apply_turn(turn.order, turn.text)

    def turns(self) -> list[str]:
        """Turn texts in ascending order."""
        return [self._turns[order] for order in sorted(self._turns)]

    def ordered_turns(self) -> list[Turn]:
        return [Turn(order=order, text=self._turns[order]) for order in sorted(self._turns)]

    def current_transcript(self) -> str:
        """Transcript derived from all turns; empty string when there are none."""
        return " ".join(self.turns())

    def reset(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)
