"""
Interview Session.

Owns one interview end to end: audio capture, streaming transcription, turn
aggregation, scheduled partial evaluations, question reconciliation and the
final evaluation / recovery state machine. Every observable change is pushed
through a ``SessionEventPublisher``.

Thread Safety:
    This class is NOT thread-safe. All methods must run on one event loop.
    ``InterviewSessionManager`` keeps at most one live session per process.

Last Grunted: 10/16/2026
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import websockets

from evaluation_platform.routes.base import ReportPayload

from .aggregator import TurnAggregator
from .capture import AudioCapture, AudioFrame, CaptureError, TrackProvider
from .config import PipelineConfig, ReconciliationConfig
from .final_evaluation import (
    FinalEvaluationInFlightError,
    FinalEvaluationManager,
    FinalOutcome,
    InvalidPhaseError,
    ReportDelivery,
)
from .models import (
    ConnectionState,
    FinalEvaluation,
    PartialEvaluation,
    SessionPhase,
    SessionSnapshot,
    SourceMode,
    SuggestedQuestion,
    Turn,
)
from .pubsub import SessionEventPublisher, UpdateType
from .reconciliation import QuestionReconciler
from .recovery import SessionStore
from .scheduler import EvaluationScheduler
from .scoring import RubricEvaluator, ScoringRateLimitError
from .transcription import ConnectFn, StreamingTranscriber, TranscriptionError


__all__ = [
    "InterviewSession",
    "InterviewSessionManager",
    "NoPendingRecoveryError",
]


logger = logging.getLogger(__name__)


class NoPendingRecoveryError(Exception):
    """There is no saved interview to resume."""

    def __init__(self) -> None:
        super().__init__("No saved interview is waiting for evaluation.")


def _format_utc_timestamp(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def _new_session_id() -> str:
    timestamp = datetime.now(timezone.utc)
    return f"int_{timestamp.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"


def _questions_payload(questions: list[SuggestedQuestion]) -> dict[str, Any]:
    return {"questions": [q.model_dump(mode="json") for q in questions]}


class InterviewSession:
    """
    One interview, from first audio frame to delivered report.

    Observable state: ``transcript``, ``turns``, ``connection_state``,
    ``current_partial_evaluation``, ``presented_questions``,
    ``final_evaluation``, ``phase``, ``error`` and ``warning``.

    Example:
        >>> session = InterviewSession(evaluator, store, publisher, provider, token_provider)
        >>> await session.initialize()
        >>> await session.start_capture(SourceMode.BOTH)
        >>> ...
        >>> outcome = await session.end_interview()
    """

    def __init__(
        self,
        evaluator: RubricEvaluator,
        store: SessionStore,
        publisher: SessionEventPublisher,
        track_provider: TrackProvider,
        token_provider: Callable[[], Awaitable[str]],
        role: Optional[str] = None,
        recipient_email: Optional[str] = None,
        delivery: Optional[ReportDelivery] = None,
        pipeline_config: Optional[PipelineConfig] = None,
        reconciliation_config: Optional[ReconciliationConfig] = None,
        connect: ConnectFn = websockets.connect,
        session_id: Optional[str] = None,
    ) -> None:
        self.config = pipeline_config or PipelineConfig()
        self.evaluator = evaluator
        self.registry = evaluator.registry
        self.store = store
        self.publisher = publisher
        self.session_id = session_id or _new_session_id()
        self.role = self.registry.resolve_role(role or self.config.default_role)
        self.recipient_email = recipient_email or None
        self.created_at = _format_utc_timestamp(datetime.now(timezone.utc))

        self.aggregator = TurnAggregator()
        self.reconciler = QuestionReconciler(
            reconciliation_config, max_questions=self.config.max_presented_questions
        )
        self.scheduler = EvaluationScheduler(
            evaluate=self._evaluate_partial,
            get_transcript=self.aggregator.current_transcript,
            on_result=self._handle_partial,
            on_error=self._handle_partial_error,
            min_transcript_chars=self.config.min_transcript_chars,
            interval_seconds=self.config.partial_interval_seconds,
        )
        self.capture = AudioCapture(track_provider, self.config, on_error=self._handle_capture_error)
        self.transcriber = StreamingTranscriber(
            token_provider=token_provider,
            on_turn=self._handle_turn,
            on_state=self._handle_connection_state,
            on_error=self._handle_transport_error,
            sample_rate=self.config.sample_rate,
            connect=connect,
        )
        self.final_manager = FinalEvaluationManager(
            evaluator=evaluator,
            store=store,
            delivery=delivery,
            role_label=self.registry.label,
            max_transcript_chars=self.config.max_final_transcript_chars,
            on_phase=self._handle_phase,
        )

        self.connection_state = ConnectionState.DISCONNECTED
        self.current_partial_evaluation: Optional[PartialEvaluation] = None
        self.presented_questions: list[SuggestedQuestion] = []
        self.source_mode: Optional[SourceMode] = None
        self.error: Optional[str] = None
        self.warning: Optional[str] = None
        self.partial_evaluations = 0
        self._stopping = False

    # =========================================================================
    # Observables
    # =========================================================================

    @property
    def transcript(self) -> str:
        return self.aggregator.current_transcript()

    @property
    def turns(self) -> list[str]:
        return self.aggregator.turns()

    @property
    def phase(self) -> SessionPhase:
        return self.final_manager.phase

    @property
    def final_evaluation(self) -> Optional[FinalEvaluation]:
        outcome = self.final_manager.outcome
        return outcome.evaluation if outcome is not None else None

    @property
    def outcome(self) -> Optional[FinalOutcome]:
        return self.final_manager.outcome

    @property
    def is_recording(self) -> bool:
        return self.capture.is_running

    def status(self) -> dict[str, Any]:
        """Point-in-time view of the session for status endpoints."""
        return {
            "session_id": self.session_id,
            "role": self.role,
            "role_label": self.registry.label(self.role),
            "recipient_email": self.recipient_email,
            "created_at": self.created_at,
            "phase": self.phase.value,
            "connection_state": self.connection_state.value,
            "recording": self.is_recording,
            "source_mode": self.source_mode.value if self.source_mode else None,
            "transcript": self.transcript,
            "turns": self.turns,
            "current_partial_evaluation": (
                self.current_partial_evaluation.model_dump(mode="json")
                if self.current_partial_evaluation is not None
                else None
            ),
            "presented_questions": [q.model_dump(mode="json") for q in self.presented_questions],
            "final_evaluation": (
                self.final_evaluation.model_dump(mode="json")
                if self.final_evaluation is not None
                else None
            ),
            "partial_evaluations": self.partial_evaluations,
            "error": self.error,
            "warning": self.warning,
        }

    # =========================================================================
    # Publishing helpers
    # =========================================================================

    async def _publish_transcript(self) -> None:
        await self.publisher.publish_update(
            UpdateType.TRANSCRIPT,
            {"transcript": self.transcript, "turns": self.turns},
        )

    async def _publish_questions(self) -> None:
        await self.publisher.publish_update(
            UpdateType.QUESTIONS, _questions_payload(self.presented_questions)
        )

    async def _set_error(self, message: str, transcript_safe: bool) -> None:
        self.error = message
        await self.publisher.publish_error(message, transcript_safe=transcript_safe)

    async def _set_warning(self, message: str) -> None:
        self.warning = message
        await self.publisher.publish_warning(message)

    async def _reconcile_questions(self) -> None:
        presented = self.reconciler.reconcile(self.transcript)
        if presented != self.presented_questions:
            self.presented_questions = presented
            await self._publish_questions()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Load the role's rubric sample questions and publish the initial state."""
        self.reconciler.set_defaults(self.evaluator.sample_questions(self.role))
        self.presented_questions = self.reconciler.reconcile(self.transcript)
        await self.publisher.publish_update(
            UpdateType.PHASE, {"phase": self.phase.value, "session_id": self.session_id}
        )
        await self._publish_questions()
        logger.info(
            "Session %s ready (role=%s, %d default questions)",
            self.session_id,
            self.role,
            len(self.presented_questions),
        )

    async def start_capture(self, source_mode: SourceMode) -> None:
        """
        Acquire audio, connect transcription and go live.

        Capture can be restarted while live after a capture or transport
        failure; the transcript collected so far is kept.

        Raises:
            CaptureError: If the audio source cannot be acquired.
            TranscriptionError: If the transcription connection cannot be opened.
            RuntimeError: If the session is ending, not idle or live, or already recording.
        """
        if self._stopping:
            raise RuntimeError("Cannot start recording while the interview is ending.")
        if self.phase not in (SessionPhase.IDLE, SessionPhase.LIVE):
            raise RuntimeError(f"Cannot start recording while session is {self.phase.value}.")
        if self.capture.is_running:
            raise RuntimeError("Recording is already running.")

        mode = SourceMode(source_mode)
        self.error = None
        frames: asyncio.Queue[Optional[AudioFrame]] = asyncio.Queue()

        try:
            await self.capture.start(mode, frames)
        except CaptureError as exc:
            logger.warning("Capture could not start: %s", exc.user_message)
            await self._set_error(exc.user_message, transcript_safe=True)
            raise

        try:
            await self.transcriber.start(frames)
        except TranscriptionError as exc:
            logger.warning("Transcription could not start: %s", exc.user_message)
            await self.capture.stop()
            await self._set_error(exc.user_message, transcript_safe=True)
            raise

        self.source_mode = mode
        if self.phase is SessionPhase.IDLE:
            await self.final_manager.mark_live()
        self.scheduler.start()
        self.scheduler.set_connected(self.connection_state is ConnectionState.CONNECTED)
        logger.info("Session %s recording (%s)", self.session_id, mode.value)

    async def _stop_pipeline(self) -> None:
        self.scheduler.stop()
        await self.capture.stop()
        await self.transcriber.stop()

    async def end_interview(self) -> FinalOutcome:
        """
        Stop recording, persist the snapshot and run the final evaluation.

        Raises:
            FinalEvaluationInFlightError: If the final evaluation is already running.
            InvalidPhaseError: If the session is not live.
        """
        if self._stopping:
            raise FinalEvaluationInFlightError()
        # Turns still arrive while the transcriber drains, so the phase stays
        # live; the flag keeps recording from being restarted meanwhile.
        self._stopping = True
        try:
            if self.phase is SessionPhase.LIVE:
                await self._stop_pipeline()
            outcome = await self.final_manager.end(
                transcript=self.transcript,
                turns=self.turns,
                recipient_email=self.recipient_email,
                role=self.role,
            )
        finally:
            self._stopping = False
        await self._apply_outcome(outcome)
        return outcome

    async def retry_final_evaluation(self) -> FinalOutcome:
        """
        Re-run the final evaluation from the same snapshot.

        Raises:
            FinalEvaluationInFlightError, InvalidPhaseError
        """
        self.error = None
        outcome = await self.final_manager.retry()
        await self._apply_outcome(outcome)
        return outcome

    def pending_recovery(self) -> Optional[SessionSnapshot]:
        return self.store.load()

    async def resume_from_recovery(self) -> FinalOutcome:
        """
        Load the saved snapshot and go straight to the final evaluation.

        Raises:
            NoPendingRecoveryError: If no fresh snapshot exists.
            InvalidPhaseError: If this session has already started.
        """
        snapshot = self.store.load()
        if snapshot is None:
            raise NoPendingRecoveryError()

        self.role = self.registry.resolve_role(snapshot.role)
        self.recipient_email = snapshot.recipient_email
        self.aggregator.reset()
        for order, text in enumerate(snapshot.turns):
            self.aggregator.apply_turn(order, text)
        await self._publish_transcript()

        outcome = await self.final_manager.resume(snapshot)
        await self._apply_outcome(outcome)
        return outcome

    def discard_recovery(self) -> bool:
        """Delete the saved snapshot. Returns True if one existed."""
        removed = self.store.clear()
        if removed:
            logger.info("Recovery snapshot discarded by user")
        return removed

    def report_payload(self) -> ReportPayload:
        """
        The finished report, for download when email delivery is unavailable.

        Raises:
            InvalidPhaseError: If the final evaluation has not succeeded.
        """
        evaluation = self.final_evaluation
        if self.phase is not SessionPhase.SUCCEEDED or evaluation is None:
            raise InvalidPhaseError("download the report", self.phase)
        snapshot = self.final_manager.snapshot
        return ReportPayload(
            evaluation=evaluation,
            transcript=snapshot.transcript if snapshot else self.transcript,
            role_label=self.registry.label(self.role),
            recipient_email=self.recipient_email,
            turns=tuple(snapshot.turns if snapshot else self.turns),
        )

    async def _apply_outcome(self, outcome: FinalOutcome) -> None:
        if outcome.phase is SessionPhase.SUCCEEDED and outcome.evaluation is not None:
            self.error = None
            await self.publisher.publish_update(
                UpdateType.FINAL_EVALUATION,
                {
                    "evaluation": outcome.evaluation.model_dump(mode="json"),
                    "delivery": (
                        {
                            "ok": outcome.delivery.ok,
                            "route_id": outcome.delivery.route_id,
                            "detail": outcome.delivery.detail,
                        }
                        if outcome.delivery is not None
                        else None
                    ),
                },
            )
            if outcome.warning:
                await self._set_warning(outcome.warning)
        elif outcome.error:
            await self._set_error(outcome.error, transcript_safe=outcome.transcript_safe)

    async def aclose(self) -> None:
        """Release devices and sockets (process shutdown or session replacement)."""
        await self.scheduler.aclose()
        if self.capture.is_running:
            await self.capture.stop()
        await self.transcriber.stop()

    # =========================================================================
    # Pipeline callbacks
    # =========================================================================

    async def _handle_turn(self, turn: Turn) -> None:
        if self.phase is not SessionPhase.LIVE:
            logger.debug("Ignoring turn %d outside live phase", turn.order)
            return
        if not self.aggregator.apply(turn):
            return
        logger.debug("Turn %d: %d chars", turn.order, len(turn.text))
        await self._publish_transcript()
        await self._reconcile_questions()
        self.scheduler.notify_transcript()

    async def _handle_connection_state(self, state: ConnectionState) -> None:
        self.connection_state = state
        self.scheduler.set_connected(state is ConnectionState.CONNECTED)
        await self.publisher.publish_update(UpdateType.CONNECTION, {"state": state.value})

    async def _handle_transport_error(self, exc: TranscriptionError) -> None:
        self.scheduler.set_connected(False)
        if self.capture.is_running:
            await self.capture.stop()
        await self._set_error(exc.user_message, transcript_safe=True)

    async def _handle_capture_error(self, exc: CaptureError) -> None:
        # The capture pump has already queued its end-of-stream sentinel.
        await self.transcriber.stop()
        await self._set_error(exc.user_message, transcript_safe=True)

    async def _handle_phase(self, phase: SessionPhase) -> None:
        await self.publisher.publish_update(
            UpdateType.PHASE, {"phase": phase.value, "session_id": self.session_id}
        )

    async def _evaluate_partial(self, transcript: str) -> PartialEvaluation:
        return await self.evaluator.evaluate(transcript, self.role)

    async def _handle_partial(self, partial: PartialEvaluation) -> None:
        self.partial_evaluations += 1
        self.current_partial_evaluation = partial
        self.warning = None
        await self.publisher.publish_update(
            UpdateType.PARTIAL_EVALUATION, partial.model_dump(mode="json")
        )
        self.reconciler.set_suggestions(partial.suggested_questions)
        await self._reconcile_questions()

    async def _handle_partial_error(self, exc: Exception) -> None:
        if isinstance(exc, ScoringRateLimitError):
            message = (
                "Live scoring is rate limited; it will try again at the next update. "
                "Recording continues and the transcript is safe."
            )
        else:
            detail = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
            message = (
                f"Live scoring update failed ({detail}); it will try again at the next update. "
                "Recording continues and the transcript is safe."
            )
        await self._set_warning(message)


class InterviewSessionManager:
    """
    Holds the process's single interview session.

    Example:
        >>> manager = InterviewSessionManager(evaluator, store, publisher, provider, token_provider)
        >>> session = await manager.start_session(role="vp-sales", recipient_email=None)
        >>> await session.start_capture(SourceMode.MIC)
    """

    def __init__(
        self,
        evaluator: RubricEvaluator,
        store: SessionStore,
        publisher: SessionEventPublisher,
        track_provider: TrackProvider,
        token_provider: Callable[[], Awaitable[str]],
        delivery: Optional[ReportDelivery] = None,
        pipeline_config: Optional[PipelineConfig] = None,
        reconciliation_config: Optional[ReconciliationConfig] = None,
        connect: ConnectFn = websockets.connect,
    ) -> None:
        self.evaluator = evaluator
        self.store = store
        self.publisher = publisher
        self.track_provider = track_provider
        self.token_provider = token_provider
        self.delivery = delivery
        self.pipeline_config = pipeline_config or PipelineConfig()
        self.reconciliation_config = reconciliation_config
        self.connect = connect
        self._session: Optional[InterviewSession] = None
        logger.debug("InterviewSessionManager initialized")

    @property
    def session(self) -> Optional[InterviewSession]:
        return self._session

    @property
    def is_active(self) -> bool:
        """True while the current session is live or ending."""
        return self._session is not None and self._session.phase in (
            SessionPhase.LIVE,
            SessionPhase.ENDING,
        )

    async def start_session(
        self,
        role: Optional[str] = None,
        recipient_email: Optional[str] = None,
    ) -> InterviewSession:
        """
        Replace any finished session with a new idle one.

        Raises:
            ValueError: If a session is still live or ending.
        """
        if self.is_active:
            raise ValueError("Session already active. End current session first.")

        if self._session is not None:
            logger.info("Replacing finished session %s", self._session.session_id)
            await self._session.aclose()
        await self.publisher.clear_history()

        self._session = InterviewSession(
            evaluator=self.evaluator,
            store=self.store,
            publisher=self.publisher,
            track_provider=self.track_provider,
            token_provider=self.token_provider,
            role=role,
            recipient_email=recipient_email,
            delivery=self.delivery,
            pipeline_config=self.pipeline_config,
            reconciliation_config=self.reconciliation_config,
            connect=self.connect,
        )
        await self._session.initialize()
        logger.info("Started session %s", self._session.session_id)
        return self._session

    def pending_recovery(self) -> Optional[SessionSnapshot]:
        return self.store.load()

    def discard_recovery(self) -> bool:
        if self._session is not None:
            return self._session.discard_recovery()
        return self.store.clear()

    async def shutdown(self) -> None:
        if self._session is not None:
            await self._session.aclose()
