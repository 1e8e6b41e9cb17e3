"""
Evaluation Scheduler.

Decides when to request a partial evaluation while the interview is live:

    - The first request fires as soon as the stripped transcript reaches the
      length threshold while connected.
    - After that a request fires on a fixed interval while connected.
    - At most one request is outstanding; a tick that finds one in flight is
      skipped, not queued.
    - After ``stop()`` no request starts, and a response that was already in
      flight is discarded.

Last Grunted: 10/16/2026
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .models import PartialEvaluation


__all__ = ["EvaluationScheduler"]


logger = logging.getLogger(__name__)


EvaluateFn = Callable[[str], Awaitable[PartialEvaluation]]
ResultFn = Callable[[PartialEvaluation], Awaitable[None]]
ErrorFn = Callable[[Exception], Awaitable[None]]


class EvaluationScheduler:
    """
    Drives periodic partial evaluations for one live session.

    Example:
        >>> scheduler = EvaluationScheduler(
        ...     evaluate=lambda t: evaluator.evaluate(t, "vp-sales"),
        ...     get_transcript=aggregator.current_transcript,
        ...     on_result=handle_partial,
        ...     on_error=handle_error,
        ... )
        >>> scheduler.start()
        >>> scheduler.set_connected(True)
        >>> scheduler.notify_transcript()  # after every transcript change
        >>> scheduler.stop()
    """

    def __init__(
        self,
        evaluate: EvaluateFn,
        get_transcript: Callable[[], str],
        on_result: ResultFn,
        on_error: ErrorFn,
        min_transcript_chars: int = 60,
        interval_seconds: float = 25.0,
    ) -> None:
        self._evaluate = evaluate
        self._get_transcript = get_transcript
        self._on_result = on_result
        self._on_error = on_error
        self.min_transcript_chars = min_transcript_chars
        self.interval_seconds = interval_seconds

        self._live = False
        self._connected = False
        self._generation = 0
        self._in_flight: Optional[asyncio.Task[None]] = None
        self._interval_task: Optional[asyncio.Task[None]] = None

        self.requests_started = 0
        self.ticks_skipped = 0
        self.callback_failures = 0

    @property
    def is_live(self) -> bool:
        return self._live

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    @property
    def is_running(self) -> bool:
        """True while the interval loop is active."""
        return self._interval_task is not None and not self._interval_task.done()

    def _threshold_met(self) -> bool:
        return len(self._get_transcript().strip()) >= self.min_transcript_chars

    def start(self) -> None:
        """Mark the session live. Requests begin once connected and over threshold."""
        self._live = True
        logger.info(
            "Scheduler live (threshold=%d chars, interval=%.1fs)",
            self.min_transcript_chars,
            self.interval_seconds,
        )
        self._maybe_begin()

    def set_connected(self, connected: bool) -> None:
        """Track connection state; the interval runs only while connected."""
        self._connected = connected
        if connected:
            self._maybe_begin()
        else:
            self._cancel_interval()

    def notify_transcript(self) -> None:
        """Call after every transcript change to detect the first-request threshold."""
        self._maybe_begin()

    def _maybe_begin(self) -> None:
        if not (self._live and self._connected) or self.is_running:
            return
        if not self._threshold_met():
            return
        logger.info("Transcript threshold reached; starting partial evaluations")
        self.tick()
        self._interval_task = asyncio.create_task(self._interval_loop())

    async def _interval_loop(self) -> None:
        while self._live and self._connected:
            await asyncio.sleep(self.interval_seconds)
            self.tick()

    def tick(self) -> bool:
        """
        Start one partial evaluation if allowed.

        Returns:
            True if a request was started; False if skipped (not live, in
            flight, or transcript below threshold).
        """
        if not self._live:
            return False
        if self.in_flight:
            self.ticks_skipped += 1
            logger.debug("Partial evaluation still in flight; tick skipped")
            return False

        transcript = self._get_transcript()
        if len(transcript.strip()) < self.min_transcript_chars:
            return False

        self.requests_started += 1
        self._in_flight = asyncio.create_task(self._run(transcript, self._generation))
        return True

    async def _run(self, transcript: str, generation: int) -> None:
        try:
            result = await self._evaluate(transcript)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._live and generation == self._generation:
                logger.warning("Partial evaluation failed: %s", exc)
                await self._deliver(self._on_error, exc)
            else:
                logger.debug("Discarding partial evaluation error after stop: %s", exc)
            return

        if not self._live or generation != self._generation:
            logger.info("Discarding partial evaluation that arrived after stop")
            return
        await self._deliver(self._on_result, result)

    async def _deliver(self, callback: Callable[[Any], Awaitable[None]], value: Any) -> None:
        # Runs inside a fire-and-forget task; nobody awaits its exception.
        try:
            await callback(value)
        except Exception:
            self.callback_failures += 1
            logger.error("Partial evaluation handler failed", exc_info=True)

    def _cancel_interval(self) -> None:
        if self._interval_task is not None:
            self._interval_task.cancel()
            self._interval_task = None

    def stop(self) -> None:
        """Stop immediately: no further requests, and any in-flight result is discarded."""
        if self._live:
            logger.info(
                "Scheduler stopped (requests=%d, skipped ticks=%d)",
                self.requests_started,
                self.ticks_skipped,
            )
        self._live = False
        self._generation += 1
        self._cancel_interval()

    async def aclose(self) -> None:
        """Stop and cancel any in-flight request (process shutdown)."""
        self.stop()
        if self._in_flight is not None and not self._in_flight.done():
            self._in_flight.cancel()
            try:
                await self._in_flight
            except asyncio.CancelledError:
                pass
        self._in_flight = None
