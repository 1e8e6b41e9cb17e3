"""
Tests for the transcript turn aggregator.

Last Grunted: 10/16/2026
"""

from __future__ import annotations

import itertools

from live_interview.aggregator import TurnAggregator
from live_interview.models import Turn
from tests.mock_data import generate_interview_turns


class TestTurnAggregator:
    """Merging revisable, out-of-order turns."""

    def test_empty_transcript(self):
        """No turns gives an empty transcript."""
        aggregator = TurnAggregator()

        assert aggregator.current_transcript() == ""
        assert aggregator.turns() == []
        assert len(aggregator) == 0

    def test_turns_joined_in_order(self):
        """Turns are joined by one space in ascending order."""
        aggregator = TurnAggregator()
        aggregator.apply_turn(1, "I grew the team to forty reps.")
        aggregator.apply_turn(0, "Tell me about your last role.")

        assert aggregator.current_transcript() == (
            "Tell me about your last role. I grew the team to forty reps."
        )

    def test_later_text_replaces_earlier(self):
        """A resent turn overwrites the previous text for that order."""
        aggregator = TurnAggregator()
        aggregator.apply_turn(0, "how do you build")
        aggregator.apply_turn(1, "We started with outbound.")
        aggregator.apply_turn(0, "How do you build a pipeline?")

        assert aggregator.turns() == ["How do you build a pipeline?", "We started with outbound."]

    def test_apply_reports_change(self):
        """apply_turn returns False when the text is unchanged."""
        aggregator = TurnAggregator()

        assert aggregator.apply_turn(0, "Hello") is True
        assert aggregator.apply_turn(0, "Hello") is False
        assert aggregator.apply_turn(0, "Hello there") is True

    def test_gaps_in_order_are_allowed(self):
        """Skipped indices do not leave extra whitespace."""
        aggregator = TurnAggregator()
        aggregator.apply_turn(5, "world")
        aggregator.apply_turn(2, "hello")

        assert aggregator.current_transcript() == "hello world"
        assert [turn.order for turn in aggregator.ordered_turns()] == [2, 5]

    def test_delivery_order_does_not_matter(self):
        """Every permutation of the same turns yields the same transcript."""
        turns = generate_interview_turns(2, seed=3)
        expected = " ".join(turn.text for turn in turns)

        for permutation in itertools.permutations(turns):
            aggregator = TurnAggregator()
            for turn in permutation:
                aggregator.apply(turn)
            assert aggregator.current_transcript() == expected

    def test_revisions_interleaved_with_new_turns(self):
        """Only the last text per order survives when drafts and new turns interleave."""
        events = [
            Turn(order=2, text="Thanks."),
            Turn(order=0, text="walk me"),
            Turn(order=1, text="we commit"),
            Turn(order=0, text="Walk me through your forecast."),
            Turn(order=1, text="We commit on Mondays."),
        ]

        aggregator = TurnAggregator()
        for event in events:
            aggregator.apply(event)

        assert aggregator.current_transcript() == (
            "Walk me through your forecast. We commit on Mondays. Thanks."
        )

    def test_reset_clears_turns(self):
        aggregator = TurnAggregator()
        aggregator.apply_turn(0, "Hello")
        aggregator.reset()

        assert aggregator.current_transcript() == ""
