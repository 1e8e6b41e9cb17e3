"""
Tests for the partial evaluation scheduler.

Last Grunted: 10/16/2026
"""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from live_interview.models import PartialEvaluation
from live_interview.scheduler import EvaluationScheduler
from tests.mock_data import CANDIDATE_RESPONSES, wait_for


LONG_TRANSCRIPT = CANDIDATE_RESPONSES[0]


class Harness:
    """Scheduler wired to an in-memory transcript and scripted evaluate."""

    def __init__(
        self,
        gate: Optional[asyncio.Event] = None,
        error: Optional[Exception] = None,
        interval_seconds: float = 60.0,
    ) -> None:
        self.transcript = ""
        self.gate = gate
        self.error = error
        self.requested: list[str] = []
        self.results: list[PartialEvaluation] = []
        self.errors: list[Exception] = []
        self.scheduler = EvaluationScheduler(
            evaluate=self.evaluate,
            get_transcript=lambda: self.transcript,
            on_result=self.on_result,
            on_error=self.on_error,
            min_transcript_chars=60,
            interval_seconds=interval_seconds,
        )

    async def evaluate(self, transcript: str) -> PartialEvaluation:
        self.requested.append(transcript)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return PartialEvaluation.model_validate(
            {"current_impression": f"after {len(self.requested)} requests"}
        )

    async def on_result(self, result: PartialEvaluation) -> None:
        self.results.append(result)

    async def on_error(self, exc: Exception) -> None:
        self.errors.append(exc)


class TestEvaluationScheduler:
    """When partial evaluations are requested."""

    @pytest.mark.asyncio
    async def test_first_request_waits_for_threshold(self):
        """Nothing is requested until the stripped transcript reaches the threshold."""
        harness = Harness()
        scheduler = harness.scheduler
        scheduler.start()
        scheduler.set_connected(True)

        harness.transcript = "   short opening   "
        scheduler.notify_transcript()
        assert scheduler.requests_started == 0

        harness.transcript = LONG_TRANSCRIPT
        scheduler.notify_transcript()
        await wait_for(lambda: len(harness.results) == 1)

        assert harness.requested == [LONG_TRANSCRIPT]
        assert scheduler.is_running is True
        await scheduler.aclose()

    @pytest.mark.asyncio
    async def test_whitespace_does_not_count(self):
        harness = Harness()
        harness.transcript = " " * 100 + "x"
        harness.scheduler.start()
        harness.scheduler.set_connected(True)

        assert harness.scheduler.requests_started == 0
        await harness.scheduler.aclose()

    @pytest.mark.asyncio
    async def test_no_request_while_disconnected(self):
        harness = Harness()
        harness.transcript = LONG_TRANSCRIPT
        harness.scheduler.start()
        harness.scheduler.notify_transcript()

        assert harness.scheduler.requests_started == 0

        harness.scheduler.set_connected(True)
        assert harness.scheduler.requests_started == 1
        await harness.scheduler.aclose()

    @pytest.mark.asyncio
    async def test_tick_skipped_while_in_flight(self):
        """A second tick during an outstanding request is skipped, not queued."""
        gate = asyncio.Event()
        harness = Harness(gate=gate)
        harness.transcript = LONG_TRANSCRIPT
        scheduler = harness.scheduler
        scheduler.start()
        scheduler.set_connected(True)

        assert scheduler.in_flight is True
        assert scheduler.tick() is False
        assert scheduler.ticks_skipped == 1

        gate.set()
        await wait_for(lambda: not scheduler.in_flight)

        assert len(harness.requested) == 1
        assert len(harness.results) == 1
        await scheduler.aclose()

    @pytest.mark.asyncio
    async def test_interval_requests_repeat(self):
        harness = Harness(interval_seconds=0.01)
        harness.transcript = LONG_TRANSCRIPT
        harness.scheduler.start()
        harness.scheduler.set_connected(True)

        await wait_for(lambda: len(harness.results) >= 3)
        await harness.scheduler.aclose()

    @pytest.mark.asyncio
    async def test_disconnect_pauses_interval(self):
        harness = Harness()
        harness.transcript = LONG_TRANSCRIPT
        harness.scheduler.start()
        harness.scheduler.set_connected(True)

        harness.scheduler.set_connected(False)

        assert harness.scheduler.is_running is False
        await harness.scheduler.aclose()

    @pytest.mark.asyncio
    async def test_result_after_stop_discarded(self):
        """A response that lands after stop() never reaches the result callback."""
        gate = asyncio.Event()
        harness = Harness(gate=gate)
        harness.transcript = LONG_TRANSCRIPT
        scheduler = harness.scheduler
        scheduler.start()
        scheduler.set_connected(True)

        scheduler.stop()
        gate.set()
        await wait_for(lambda: not scheduler.in_flight)

        assert harness.results == []
        assert scheduler.tick() is False
        assert scheduler.is_live is False

    @pytest.mark.asyncio
    async def test_error_reported(self):
        harness = Harness(error=RuntimeError("backend down"))
        harness.transcript = LONG_TRANSCRIPT
        harness.scheduler.start()
        harness.scheduler.set_connected(True)

        await wait_for(lambda: bool(harness.errors))

        assert str(harness.errors[0]) == "backend down"
        assert harness.results == []
        await harness.scheduler.aclose()

    @pytest.mark.asyncio
    async def test_error_after_stop_discarded(self):
        gate = asyncio.Event()
        harness = Harness(gate=gate, error=RuntimeError("late failure"))
        harness.transcript = LONG_TRANSCRIPT
        harness.scheduler.start()
        harness.scheduler.set_connected(True)

        harness.scheduler.stop()
        gate.set()
        await wait_for(lambda: not harness.scheduler.in_flight)

        assert harness.errors == []

    @pytest.mark.asyncio
    async def test_failing_result_handler_logged(self, caplog):
        """A handler that raises is logged with its traceback and later ticks still run."""
        harness = Harness(interval_seconds=0.02)

        async def broken(result: PartialEvaluation) -> None:
            harness.results.append(result)
            raise ValueError("render failed")

        harness.scheduler._on_result = broken
        harness.transcript = LONG_TRANSCRIPT
        with caplog.at_level("ERROR", logger="live_interview.scheduler"):
            harness.scheduler.start()
            harness.scheduler.set_connected(True)
            await wait_for(lambda: len(harness.results) >= 2)

        assert harness.scheduler.callback_failures >= 1
        record = next(r for r in caplog.records if "handler failed" in r.getMessage())
        assert record.exc_info[0] is ValueError
        await harness.scheduler.aclose()
