"""
Final Evaluation & Recovery Manager.

Owns the end of an interview:

    Idle -> Live -> Ending -> (Succeeded | Failed)
    Failed -> Ending            (retry, same snapshot)
    Idle -> Ending              (resume from a recovery snapshot)

Entering Ending persists the snapshot before the single final request is
issued. Success clears the snapshot and delivers the report; failure keeps
the snapshot so the evaluation can be retried now or resumed after a restart.

Last Grunted: 10/16/2026
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from evaluation_platform.routes.base import DeliveryResult, ReportPayload

from .models import FinalEvaluation, SessionPhase, SessionSnapshot
from .recovery import SessionStore, SnapshotWriteError
from .scoring import ScoringParseError, ScoringRateLimitError


__all__ = [
    "FinalEvaluationInFlightError",
    "FinalEvaluationManager",
    "FinalOutcome",
    "InvalidPhaseError",
    "TRUNCATION_MARKER",
    "prepare_final_transcript",
]


logger = logging.getLogger(__name__)


TRUNCATION_MARKER = (
    "\n\n[Note: Earlier part of transcript omitted for length. "
    "Above is the final portion of the interview.]"
)


def prepare_final_transcript(transcript: str, max_chars: int = 36000) -> str:
    """
    Bound the transcript sent for final evaluation.

    Transcripts longer than ``max_chars`` keep only their last ``max_chars``
    characters, followed by an explicit omission marker.
    """
    if len(transcript) <= max_chars:
        return transcript
    return transcript[-max_chars:] + TRUNCATION_MARKER


class FinalEvaluationInFlightError(Exception):
    """A final evaluation is already running for this session."""

    def __init__(self) -> None:
        super().__init__("A final evaluation is already in progress.")


class InvalidPhaseError(Exception):
    """The requested transition is not allowed from the current phase."""

    def __init__(self, action: str, phase: SessionPhase) -> None:
        self.action = action
        self.phase = phase
        super().__init__(f"Cannot {action} while session is {phase.value}.")


@dataclass(frozen=True)
class FinalOutcome:
    """Result of one pass through the Ending phase."""

    phase: SessionPhase
    evaluation: Optional[FinalEvaluation] = None
    error: Optional[str] = None
    delivery: Optional[DeliveryResult] = None
    warning: Optional[str] = None
    transcript_safe: bool = False


class FinalEvaluator(Protocol):
    async def evaluate_final(
        self, transcript: str, turns: Optional[list[str]], role: Optional[str]
    ) -> FinalEvaluation: ...


class ReportDelivery(Protocol):
    async def deliver(self, payload: ReportPayload) -> DeliveryResult: ...


PhaseCallback = Callable[[SessionPhase], Awaitable[None]]


def _failure_message(exc: Exception, transcript_safe: bool) -> str:
    if isinstance(exc, ScoringRateLimitError):
        what = "Final evaluation was rate limited by the scoring service."
    elif isinstance(exc, ScoringParseError):
        what = "The scoring service returned an evaluation that could not be read."
    else:
        detail = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        what = f"Final evaluation failed: {detail}."
    if transcript_safe:
        return f"{what} Your transcript is saved; retry the evaluation."
    return f"{what} Your transcript is held in memory only; retry before closing the session."


class FinalEvaluationManager:
    """
    State machine for one interview's final evaluation.

    Example:
        >>> manager = FinalEvaluationManager(evaluator, store, delivery)
        >>> manager.mark_live()
        >>> outcome = await manager.end(transcript, turns, "lead@example.com", "vp-sales")
        >>> if outcome.phase is SessionPhase.FAILED:
        ...     outcome = await manager.retry()
    """

    def __init__(
        self,
        evaluator: FinalEvaluator,
        store: SessionStore,
        delivery: Optional[ReportDelivery] = None,
        role_label: Callable[[str], str] = lambda role: role,
        max_transcript_chars: int = 36000,
        on_phase: Optional[PhaseCallback] = None,
    ) -> None:
        self.evaluator = evaluator
        self.store = store
        self.delivery = delivery
        self.role_label = role_label
        self.max_transcript_chars = max_transcript_chars
        self.on_phase = on_phase

        self._phase = SessionPhase.IDLE
        self._snapshot: Optional[SessionSnapshot] = None
        self._snapshot_persisted = False
        self.outcome: Optional[FinalOutcome] = None

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def snapshot(self) -> Optional[SessionSnapshot]:
        return self._snapshot

    @property
    def in_flight(self) -> bool:
        return self._phase is SessionPhase.ENDING

    async def _set_phase(self, phase: SessionPhase) -> None:
        if phase is self._phase:
            return
        logger.info("Session phase: %s -> %s", self._phase.value, phase.value)
        self._phase = phase
        if self.on_phase is not None:
            await self.on_phase(phase)

    async def mark_live(self) -> None:
        """Idle -> Live."""
        if self._phase is not SessionPhase.IDLE:
            raise InvalidPhaseError("start the interview", self._phase)
        await self._set_phase(SessionPhase.LIVE)

    async def end(
        self,
        transcript: str,
        turns: list[str],
        recipient_email: Optional[str],
        role: str,
    ) -> FinalOutcome:
        """
        Live -> Ending: persist the snapshot and run the final evaluation.

        An empty transcript goes straight to Failed and persists nothing.

        Raises:
            FinalEvaluationInFlightError: If already Ending.
            InvalidPhaseError: If the session is not live.
        """
        if self._phase is SessionPhase.ENDING:
            raise FinalEvaluationInFlightError()
        if self._phase not in (SessionPhase.LIVE, SessionPhase.IDLE):
            raise InvalidPhaseError("end the interview", self._phase)

        if not transcript.strip():
            await self._set_phase(SessionPhase.FAILED)
            self.outcome = FinalOutcome(
                phase=SessionPhase.FAILED,
                error="No transcript to evaluate. Start recording and speak before ending the interview.",
                transcript_safe=False,
            )
            return self.outcome

        self._snapshot = SessionSnapshot(
            transcript=transcript,
            turns=list(turns),
            recipient_email=recipient_email,
            role=role,
        )
        self._snapshot_persisted = False
        return await self._run(persist=True)

    async def retry(self) -> FinalOutcome:
        """
        Failed -> Ending with the same snapshot.

        Raises:
            FinalEvaluationInFlightError: If a final request is running.
            InvalidPhaseError: If there is no failed evaluation to retry.
        """
        if self._phase is SessionPhase.ENDING:
            raise FinalEvaluationInFlightError()
        if self._phase is not SessionPhase.FAILED or self._snapshot is None:
            raise InvalidPhaseError("retry the final evaluation", self._phase)
        return await self._run(persist=not self._snapshot_persisted)

    async def resume(self, snapshot: SessionSnapshot) -> FinalOutcome:
        """Idle -> Ending with a snapshot loaded from the recovery store."""
        if self._phase is SessionPhase.ENDING:
            raise FinalEvaluationInFlightError()
        if self._phase is not SessionPhase.IDLE:
            raise InvalidPhaseError("resume a saved interview", self._phase)
        self._snapshot = snapshot
        self._snapshot_persisted = True
        logger.info("Resuming saved interview (role=%s, %d chars)", snapshot.role, len(snapshot.transcript))
        return await self._run(persist=False)

    async def _send_report(self, route: ReportDelivery, payload: ReportPayload) -> DeliveryResult:
        try:
            return await route.deliver(payload)
        except Exception as exc:  # noqa: BLE001 - the evaluation stands whatever delivery does
            logger.error("Report delivery raised", exc_info=True)
            detail = str(exc) or exc.__class__.__name__
            return DeliveryResult(route_id="all", route_type="report", ok=False, detail=detail)

    async def _run(self, persist: bool) -> FinalOutcome:
        snapshot = self._snapshot
        if snapshot is None:
            raise InvalidPhaseError("run the final evaluation without a transcript", self._phase)
        await self._set_phase(SessionPhase.ENDING)

        if persist:
            try:
                self.store.save(snapshot)
                self._snapshot_persisted = True
            except SnapshotWriteError as exc:
                logger.error("Could not persist recovery snapshot: %s", exc)

        transcript = prepare_final_transcript(snapshot.transcript, self.max_transcript_chars)
        if len(transcript) != len(snapshot.transcript):
            logger.warning(
                "Transcript truncated for final evaluation (%d -> %d chars)",
                len(snapshot.transcript),
                self.max_transcript_chars,
            )

        try:
            evaluation = await self.evaluator.evaluate_final(transcript, snapshot.turns, snapshot.role)
        except Exception as exc:
            logger.error("Final evaluation failed: %s", exc)
            self.outcome = FinalOutcome(
                phase=SessionPhase.FAILED,
                error=_failure_message(exc, self._snapshot_persisted),
                transcript_safe=self._snapshot_persisted,
            )
            await self._set_phase(SessionPhase.FAILED)
            return self.outcome

        try:
            self.store.clear()
        except SnapshotWriteError as exc:
            logger.warning("Final evaluation succeeded but snapshot could not be cleared: %s", exc)
        self._snapshot_persisted = False

        delivery: Optional[DeliveryResult] = None
        warning: Optional[str] = None
        if snapshot.recipient_email and self.delivery is not None:
            delivery = await self._send_report(
                self.delivery,
                ReportPayload(
                    evaluation=evaluation,
                    transcript=snapshot.transcript,
                    role_label=self.role_label(snapshot.role),
                    recipient_email=snapshot.recipient_email,
                    turns=tuple(snapshot.turns),
                )
            )
            if not delivery.ok:
                warning = (
                    f"The evaluation is ready, but the report could not be sent to "
                    f"{snapshot.recipient_email} ({delivery.detail}). "
                    f"Download it with GET /session/report instead."
                )
                logger.warning("Report delivery failed: %s", delivery.detail)

        self.outcome = FinalOutcome(
            phase=SessionPhase.SUCCEEDED,
            evaluation=evaluation,
            delivery=delivery,
            warning=warning,
            transcript_safe=True,
        )
        await self._set_phase(SessionPhase.SUCCEEDED)
        return self.outcome
