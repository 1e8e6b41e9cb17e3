"""
Live Interview Evaluation Service

Runs the live interview pipeline for one interviewer: captures audio,
streams it to speech-to-text, scores the transcript against the role rubric
while the interview runs, and produces the final evaluation and report.

Endpoints:
    GET  /health                        - Health check
    GET  /api/token                     - Short-lived speech-to-text token
    GET  /api/roles                     - Roles with rubrics
    GET  /api/rubric-sample-questions   - Rubric sample questions for a role
    POST /api/evaluate                  - Partial evaluation of a transcript
    POST /api/evaluate-final            - Final evaluation of a transcript
    POST /session/start                 - Start a session and begin recording
    POST /session/capture               - Restart recording in the live session
    POST /session/end                   - End the interview, run final evaluation
    POST /session/retry                 - Retry a failed final evaluation
    GET  /session/status                - Current session state
    GET  /session/report                - Download the finished report (html or json)
    GET  /session/recovery              - Saved interview awaiting evaluation
    POST /session/recovery/resume       - Evaluate the saved interview
    POST /session/recovery/discard      - Delete the saved interview
    GET  /session/events                - Server-sent session updates

Internal binding: configured by SERVER_HOST/SERVER_PORT (default 0.0.0.0:8000)
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, AsyncIterator, Awaitable, Callable, Optional, TypedDict

import uvicorn
import websockets
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from evaluation_platform import PLATFORM_NAME, RubricRegistry
from evaluation_platform.routes import ReportPayload, ReportRouter, build_report_router
from evaluation_platform.routes.email_report import build_report_html
from live_interview.capture import CaptureError, PyAudioTrackProvider, TrackProvider
from live_interview.config import (
    PipelineConfig,
    ReconciliationConfig,
    load_pipeline_config,
    load_reconciliation_config,
)
from live_interview.final_evaluation import (
    FinalEvaluationInFlightError,
    FinalOutcome,
    InvalidPhaseError,
    prepare_final_transcript,
)
from live_interview.models import SessionPhase, SourceMode
from live_interview.pubsub import SessionEventPublisher
from live_interview.recovery import SessionStore
from live_interview.scoring import (
    CompletionBackend,
    RubricEvaluator,
    ScoringError,
    ScoringParseError,
    ScoringRateLimitError,
    UnconfiguredCompletionBackend,
    build_completion_backend,
    load_llm_settings,
)
from live_interview.session import (
    InterviewSession,
    InterviewSessionManager,
    NoPendingRecoveryError,
)
from live_interview.transcription import TranscriptionError, fetch_streaming_token

# =============================================================================
# Logging Configuration
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


SERVICE_NAME = "Live Interview Evaluation Service"
SERVICE_VERSION = "0.3.0"


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class RuntimeConfig:
    """Runtime config for the evaluation service."""

    server_host: str
    server_port: int
    state_dir: Path
    rubrics_dir: Optional[str]
    assemblyai_api_key: Optional[str]
    sendgrid_api_key: Optional[str]
    sendgrid_from_email: str
    sendgrid_from_name: str
    report_webhook_url: Optional[str]
    cors_origins: tuple[str, ...]
    microphone_name: Optional[str]
    loopback_names: tuple[str, ...]


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _optional(name: str) -> Optional[str]:
    value = (os.environ.get(name) or "").strip()
    return value or None


def load_runtime_config() -> RuntimeConfig:
    """Load runtime config from environment with strict validation."""
    server_host = (os.environ.get("SERVER_HOST", "0.0.0.0") or "").strip()
    if not server_host:
        raise RuntimeError("SERVER_HOST resolved to empty value.")

    server_port_raw = (os.environ.get("SERVER_PORT", "8000") or "").strip()
    if not server_port_raw:
        raise RuntimeError("SERVER_PORT resolved to empty value.")

    try:
        server_port = int(server_port_raw)
    except ValueError as exc:
        raise RuntimeError(f"SERVER_PORT must be an integer. Got: {server_port_raw}") from exc

    if server_port < 1 or server_port > 65535:
        raise RuntimeError(f"SERVER_PORT must be in range 1-65535. Got: {server_port}.")

    state_override = _optional("STATE_DIR")
    if state_override:
        state_dir = Path(state_override).expanduser()
    else:
        state_dir = Path(__file__).parent / "state"

    cors_origins = _split_csv(
        os.environ.get(
            "CORS_ORIGINS",
            "http://localhost:3000,http://localhost:5173,http://localhost:8000",
        )
    )
    if not cors_origins:
        raise RuntimeError("CORS_ORIGINS resolved to empty value.")

    return RuntimeConfig(
        server_host=server_host,
        server_port=server_port,
        state_dir=state_dir,
        rubrics_dir=_optional("RUBRICS_DIR"),
        assemblyai_api_key=_optional("ASSEMBLYAI_API_KEY"),
        sendgrid_api_key=_optional("SENDGRID_API_KEY"),
        sendgrid_from_email=_optional("SENDGRID_FROM_EMAIL") or "noreply@example.com",
        sendgrid_from_name=_optional("SENDGRID_FROM_NAME") or "Sales Interview Tool",
        report_webhook_url=_optional("REPORT_WEBHOOK_URL"),
        cors_origins=cors_origins,
        microphone_name=_optional("MIC_DEVICE_NAME"),
        loopback_names=_split_csv(
            os.environ.get("LOOPBACK_DEVICE_NAMES", "monitor,loopback,stereo mix,blackhole")
        ),
    )


RUNTIME_CONFIG = load_runtime_config()
PIPELINE_CONFIG = load_pipeline_config()
RECONCILIATION_CONFIG = load_reconciliation_config()


# =============================================================================
# Collaborator Factories
# =============================================================================

def create_completion_backend() -> CompletionBackend:
    """Model backend for scoring; requests fail with a clear message when unconfigured."""
    try:
        return build_completion_backend(load_llm_settings())
    except RuntimeError as exc:
        logger.warning("Scoring disabled: %s", exc)
        return UnconfiguredCompletionBackend(str(exc))


def create_track_provider() -> TrackProvider:
    return PyAudioTrackProvider(
        microphone_name=RUNTIME_CONFIG.microphone_name,
        loopback_names=RUNTIME_CONFIG.loopback_names,
        block_ms=PIPELINE_CONFIG.frame_ms,
    )


def create_token_provider() -> Callable[[], Awaitable[str]]:
    async def _token() -> str:
        return await fetch_streaming_token(RUNTIME_CONFIG.assemblyai_api_key)

    return _token


def create_report_router() -> ReportRouter:
    return build_report_router(
        sendgrid_api_key=RUNTIME_CONFIG.sendgrid_api_key,
        from_email=RUNTIME_CONFIG.sendgrid_from_email,
        from_name=RUNTIME_CONFIG.sendgrid_from_name,
        webhook_url=RUNTIME_CONFIG.report_webhook_url,
    )


WEBSOCKET_CONNECT = websockets.connect


# =============================================================================
# Request Models
# =============================================================================


class EvaluateRequest(BaseModel):
    """Request for a partial evaluation."""

    transcript: str = Field(default="", description="Transcript so far")
    role: str | None = Field(default=None, description="Role id; unknown ids use the default role")


class EvaluateFinalRequest(BaseModel):
    """Request for a final evaluation."""

    transcript: str = Field(..., description="Full interview transcript")
    turns: list[str] = Field(default_factory=list, description="Ordered turn texts")
    role: str | None = Field(default=None, description="Role id")
    recipient_email: str | None = Field(default=None, description="Report recipient")


class SessionStartRequest(BaseModel):
    """Role, report recipient and audio sources for a new interview."""

    role: str | None = Field(default=None, description="Role id; unknown ids use the default role")
    recipient_email: str | None = Field(default=None, description="Report recipient")
    source_mode: SourceMode = Field(default=SourceMode.BOTH, description="mic, tab or both")


class CaptureRequest(BaseModel):
    """Request to restart recording in the live session."""

    source_mode: SourceMode = Field(default=SourceMode.BOTH, description="mic, tab or both")


# =============================================================================
# Response Models
# =============================================================================


class BaseResponse(BaseModel):
    """Fields shared by every session response."""

    ok: bool = Field(..., description="Whether the operation succeeded")
    message: str | None = Field(default=None, description="Optional status message")


class ErrorResponse(BaseModel):
    """Body returned for any failed request."""

    ok: bool = Field(default=False)
    error: str = Field(..., description="Error description")
    error_code: str | None = Field(default=None, description="Machine-readable error code")


class HealthResponse(BaseModel):
    """Service liveness plus session, transcription and recovery readiness."""

    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: str = Field(..., description="Current server timestamp")
    session_active: bool = Field(..., description="Whether a session is live or ending")
    phase: str | None = Field(default=None, description="Current session phase")
    transcription_configured: bool = Field(..., description="Whether ASSEMBLYAI_API_KEY is set")
    delivery_routes: int = Field(..., description="Configured report routes")
    recovery_pending: bool = Field(..., description="Whether a saved interview awaits evaluation")


class TokenResponse(BaseModel):
    token: str


class RoleItem(BaseModel):
    id: str
    label: str


class RolesResponse(BaseModel):
    platform: str
    default_role: str
    roles: list[RoleItem]


class SampleQuestionsResponse(BaseModel):
    role: str
    questions: list[dict[str, Any]]


class DeliveryInfo(BaseModel):
    ok: bool
    route_id: str
    detail: str | None = None


class FinalEvaluationResponse(BaseResponse):
    """Response for a stand-alone final evaluation."""

    evaluation: dict[str, Any]
    delivery: DeliveryInfo | None = None
    truncated: bool = Field(default=False, description="Whether the transcript was cut to its tail")


class SessionStartResponse(BaseResponse):
    """New session id, resolved role and the initial question list."""

    session_id: str = Field(..., description="Unique session identifier")
    role: str = Field(..., description="Resolved role id")
    phase: str = Field(..., description="Session phase")
    presented_questions: list[dict[str, Any]] = Field(default_factory=list)


class OutcomeResponse(BaseResponse):
    """Result of ending, retrying or resuming an interview."""

    phase: str
    evaluation: dict[str, Any] | None = None
    error: str | None = None
    warning: str | None = None
    transcript_safe: bool = False
    delivery: DeliveryInfo | None = None


class SessionStatusResponse(BaseModel):
    """Current session snapshot, if any session exists."""

    active: bool = Field(..., description="Whether a session is live or ending")
    session: dict[str, Any] | None = Field(default=None, description="Current session state")
    recovery_pending: bool = Field(..., description="Whether a saved interview awaits evaluation")


class RecoveryResponse(BaseModel):
    """Saved interview awaiting its final evaluation."""

    available: bool
    role: str | None = None
    role_label: str | None = None
    recipient_email: str | None = None
    created_at: str | None = None
    age_hours: float | None = None
    transcript_chars: int = 0
    turn_count: int = 0


class DiscardResponse(BaseResponse):
    discarded: bool


# =============================================================================
# Application State (Type-safe Lifespan State)
# =============================================================================


class AppState(TypedDict):
    """Collaborators built once at startup and shared by every request."""

    registry: RubricRegistry
    evaluator: RubricEvaluator
    store: SessionStore
    publisher: SessionEventPublisher
    report_router: ReportRouter
    session_manager: InterviewSessionManager
    token_provider: Callable[[], Awaitable[str]]
    pipeline_config: PipelineConfig
    reconciliation_config: ReconciliationConfig


# =============================================================================
# Custom Exceptions
# =============================================================================


class InterviewServiceError(Exception):
    """Base exception for interview service errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


class SessionNotActiveError(InterviewServiceError):
    """Raised when operation requires a session."""

    def __init__(self, message: str = "No active session. Start a session first.") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="SESSION_NOT_ACTIVE",
        )


class SessionAlreadyActiveError(InterviewServiceError):
    """Only one interview may be live or ending at a time."""

    def __init__(
        self, message: str = "Session already active. End current session first."
    ) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="SESSION_ALREADY_ACTIVE",
        )


def _scoring_service_error(exc: ScoringError) -> InterviewServiceError:
    if isinstance(exc, ScoringRateLimitError):
        return InterviewServiceError(
            message=exc.message,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            error_code="RATE_LIMITED",
        )
    if isinstance(exc, ScoringParseError):
        return InterviewServiceError(message=exc.message, error_code="SCORING_PARSE_ERROR")
    return InterviewServiceError(message=exc.message, error_code="SCORING_FAILED")


def _phase_service_error(exc: Exception) -> InterviewServiceError:
    if isinstance(exc, FinalEvaluationInFlightError):
        return InterviewServiceError(
            message=str(exc),
            status_code=status.HTTP_409_CONFLICT,
            error_code="FINAL_EVALUATION_IN_FLIGHT",
        )
    return InterviewServiceError(
        message=str(exc),
        status_code=status.HTTP_409_CONFLICT,
        error_code="INVALID_PHASE",
    )


# =============================================================================
# Dependencies
# =============================================================================


def get_app_state(request: Request) -> AppState:
    """
    Collaborators for this request, read from lifespan state.

    Raises:
        RuntimeError: If the lifespan has not run.
    """
    state = getattr(request, "state", None)
    if state is None:
        raise RuntimeError("Application state not initialized")
    return AppState(
        registry=state.registry,
        evaluator=state.evaluator,
        store=state.store,
        publisher=state.publisher,
        report_router=state.report_router,
        session_manager=state.session_manager,
        token_provider=state.token_provider,
        pipeline_config=state.pipeline_config,
        reconciliation_config=state.reconciliation_config,
    )


# Injected into endpoints
AppStateDep = Annotated[AppState, Depends(get_app_state)]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _outcome_response(outcome: FinalOutcome) -> OutcomeResponse:
    succeeded = outcome.phase is SessionPhase.SUCCEEDED
    return OutcomeResponse(
        ok=succeeded,
        message="Final evaluation complete" if succeeded else "Final evaluation failed",
        phase=outcome.phase.value,
        evaluation=(
            outcome.evaluation.model_dump(mode="json") if outcome.evaluation is not None else None
        ),
        error=outcome.error,
        warning=outcome.warning,
        transcript_safe=outcome.transcript_safe,
        delivery=(
            DeliveryInfo(
                ok=outcome.delivery.ok,
                route_id=outcome.delivery.route_id,
                detail=outcome.delivery.detail,
            )
            if outcome.delivery is not None
            else None
        ),
    )


# =============================================================================
# Exception Handlers
# =============================================================================


async def interview_service_error_handler(
    request: Request, exc: InterviewServiceError
) -> JSONResponse:
    """Handle InterviewServiceError exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            ok=False,
            error=exc.message,
            error_code=exc.error_code,
        ).model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            ok=False,
            error="Internal server error",
            error_code="INTERNAL_ERROR",
        ).model_dump(),
    )


# =============================================================================
# FastAPI App Lifespan
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[dict[str, Any]]:
    """
    Build rubrics, scorer, store, publisher and session manager.

    On shutdown the live session, if any, is stopped and its capture released.
    """
    logger.info("Starting %s v%s", SERVICE_NAME, SERVICE_VERSION)
    logger.info(
        "Runtime: platform=%s host=%s port=%d state_dir=%s",
        PLATFORM_NAME,
        RUNTIME_CONFIG.server_host,
        RUNTIME_CONFIG.server_port,
        RUNTIME_CONFIG.state_dir,
    )

    registry = RubricRegistry(
        RUNTIME_CONFIG.rubrics_dir,
        default_role=PIPELINE_CONFIG.default_role,
    )
    registry.validate_all()
    logger.info("Rubrics loaded from %s", registry.rubrics_dir)

    evaluator = RubricEvaluator(create_completion_backend(), registry)
    store = SessionStore(
        RUNTIME_CONFIG.state_dir / "session_store.json",
        retention_hours=PIPELINE_CONFIG.recovery_retention_hours,
    )
    publisher = SessionEventPublisher()
    report_router = create_report_router()
    token_provider = create_token_provider()
    logger.info("Enabled report routes: %d", report_router.route_count)

    if not RUNTIME_CONFIG.assemblyai_api_key:
        logger.warning("ASSEMBLYAI_API_KEY not set; recording will fail until it is configured")

    session_manager = InterviewSessionManager(
        evaluator=evaluator,
        store=store,
        publisher=publisher,
        track_provider=create_track_provider(),
        token_provider=token_provider,
        delivery=report_router,
        pipeline_config=PIPELINE_CONFIG,
        reconciliation_config=RECONCILIATION_CONFIG,
        connect=WEBSOCKET_CONNECT,
    )

    pending = store.load()
    if pending is not None:
        logger.info(
            "Saved interview awaiting evaluation (role=%s, age %.1fh)",
            pending.role,
            pending.age_hours(),
        )

    state = {
        "registry": registry,
        "evaluator": evaluator,
        "store": store,
        "publisher": publisher,
        "report_router": report_router,
        "session_manager": session_manager,
        "token_provider": token_provider,
        "pipeline_config": PIPELINE_CONFIG,
        "reconciliation_config": RECONCILIATION_CONFIG,
    }

    yield state

    # Shutdown
    logger.info("Stopping session manager")
    await session_manager.shutdown()


# =============================================================================
# FastAPI Application
# =============================================================================


app = FastAPI(
    title=SERVICE_NAME,
    version=SERVICE_VERSION,
    description="Live rubric evaluation of sales leadership interviews",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(RUNTIME_CONFIG.cors_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
    max_age=3600,
)

# Error bodies: {ok, error, error_code}
app.add_exception_handler(InterviewServiceError, interview_service_error_handler)
app.add_exception_handler(Exception, generic_exception_handler)


# =============================================================================
# Endpoints: stateless API
# =============================================================================


@app.get("/health", response_model=HealthResponse)
async def health(state: AppStateDep) -> HealthResponse:
    """Health check endpoint."""
    session_manager = state["session_manager"]
    session = session_manager.session

    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        timestamp=_utc_now_iso(),
        session_active=session_manager.is_active,
        phase=session.phase.value if session is not None else None,
        transcription_configured=bool(RUNTIME_CONFIG.assemblyai_api_key),
        delivery_routes=state["report_router"].route_count,
        recovery_pending=state["store"].load() is not None,
    )


@app.get("/api/token", response_model=TokenResponse)
async def get_token(state: AppStateDep) -> TokenResponse:
    """
    Issue a short-lived speech-to-text token for a browser client.

    Raises:
        InterviewServiceError: 500 if the token cannot be obtained.
    """
    try:
        token = await state["token_provider"]()
    except TranscriptionError as exc:
        logger.error("Token fetch failed: %s", exc.user_message)
        raise InterviewServiceError(
            message=exc.user_message,
            error_code="TOKEN_FETCH_FAILED",
        ) from exc
    return TokenResponse(token=token)


@app.get("/api/roles", response_model=RolesResponse)
async def get_roles(state: AppStateDep) -> RolesResponse:
    registry = state["registry"]
    return RolesResponse(
        platform=PLATFORM_NAME,
        default_role=registry.default_role,
        roles=[RoleItem(id=role.id, label=role.label) for role in registry.roles()],
    )


@app.get("/api/rubric-sample-questions", response_model=SampleQuestionsResponse)
async def get_rubric_sample_questions(
    state: AppStateDep,
    role: str | None = Query(default=None),
) -> SampleQuestionsResponse:
    """Rubric sample questions for ``role``, highest category weight first."""
    evaluator = state["evaluator"]
    resolved = state["registry"].resolve_role(role)
    return SampleQuestionsResponse(
        role=resolved,
        questions=[q.model_dump(mode="json") for q in evaluator.sample_questions(resolved)],
    )


@app.post("/api/evaluate")
async def evaluate(request: EvaluateRequest, state: AppStateDep) -> dict[str, Any]:
    """
    Partial evaluation of a transcript.

    Returns the scoring backend's wire shape (``partial_scores``,
    ``suggested_questions``, ``red_flags``, ``strengths``, ``current_impression``).
    """
    try:
        partial = await state["evaluator"].evaluate(request.transcript, request.role)
    except ScoringError as exc:
        logger.error("Partial evaluation failed: %s", exc.message)
        raise _scoring_service_error(exc) from exc
    return partial.model_dump(mode="json", by_alias=True)


@app.post("/api/evaluate-final", response_model=FinalEvaluationResponse)
async def evaluate_final(
    request: EvaluateFinalRequest,
    state: AppStateDep,
) -> FinalEvaluationResponse:
    """
    Final evaluation of a transcript, with optional report delivery.

    The weighted overall score is computed server-side from the rubric.
    """
    if not request.transcript.strip():
        raise InterviewServiceError(
            message="No transcript to evaluate.",
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="EMPTY_TRANSCRIPT",
        )

    registry = state["registry"]
    max_chars = state["pipeline_config"].max_final_transcript_chars
    transcript = prepare_final_transcript(request.transcript, max_chars)
    try:
        evaluation = await state["evaluator"].evaluate_final(
            transcript, request.turns, request.role
        )
    except ScoringError as exc:
        logger.error("Final evaluation failed: %s", exc.message)
        raise _scoring_service_error(exc) from exc

    delivery: DeliveryInfo | None = None
    if request.recipient_email:
        result = await state["report_router"].deliver(
            ReportPayload(
                evaluation=evaluation,
                transcript=request.transcript,
                role_label=registry.label(request.role),
                recipient_email=request.recipient_email,
                turns=tuple(request.turns),
            )
        )
        delivery = DeliveryInfo(ok=result.ok, route_id=result.route_id, detail=result.detail)

    return FinalEvaluationResponse(
        ok=True,
        evaluation=evaluation.model_dump(mode="json"),
        delivery=delivery,
        truncated=len(request.transcript) > max_chars,
    )


# =============================================================================
# Endpoints: live session
# =============================================================================


@app.post("/session/start", response_model=SessionStartResponse)
async def start_session(
    request: SessionStartRequest,
    state: AppStateDep,
) -> SessionStartResponse:
    """
    Start a new interview session and begin recording.

    Raises:
        SessionAlreadyActiveError: If a session is live or ending.
        InterviewServiceError: If audio or transcription cannot start.
    """
    session_manager = state["session_manager"]

    if session_manager.is_active:
        raise SessionAlreadyActiveError()

    session = await session_manager.start_session(
        role=request.role,
        recipient_email=request.recipient_email,
    )
    await _start_capture(session, request.source_mode)

    logger.info("Interview session started: %s (%s)", session.session_id, session.role)
    return SessionStartResponse(
        ok=True,
        message=f"Recording started for {state['registry'].label(session.role)}",
        session_id=session.session_id,
        role=session.role,
        phase=session.phase.value,
        presented_questions=[q.model_dump(mode="json") for q in session.presented_questions],
    )


async def _start_capture(session: InterviewSession, source_mode: SourceMode) -> None:
    try:
        await session.start_capture(source_mode)
    except CaptureError as exc:
        raise InterviewServiceError(
            message=exc.user_message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="CAPTURE_FAILED",
        ) from exc
    except TranscriptionError as exc:
        raise InterviewServiceError(
            message=exc.user_message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="TRANSCRIPTION_UNAVAILABLE",
        ) from exc
    except RuntimeError as exc:
        raise InterviewServiceError(
            message=str(exc),
            status_code=status.HTTP_409_CONFLICT,
            error_code="INVALID_PHASE",
        ) from exc


@app.post("/session/capture", response_model=BaseResponse)
async def restart_capture(request: CaptureRequest, state: AppStateDep) -> BaseResponse:
    """Restart recording after a capture or connection failure; the transcript is kept."""
    session = state["session_manager"].session
    if session is None:
        raise SessionNotActiveError()
    await _start_capture(session, request.source_mode)
    return BaseResponse(ok=True, message="Recording restarted")


@app.post("/session/end", response_model=OutcomeResponse)
async def end_session(state: AppStateDep) -> OutcomeResponse:
    """
    End the interview: stop recording, save the transcript, run the final evaluation.

    Raises:
        SessionNotActiveError: If there is no session to end.
    """
    session = state["session_manager"].session
    if session is None or session.phase is SessionPhase.SUCCEEDED:
        raise SessionNotActiveError("No active session to end.")

    try:
        outcome = await session.end_interview()
    except (FinalEvaluationInFlightError, InvalidPhaseError) as exc:
        raise _phase_service_error(exc) from exc

    logger.info("Session %s ended: %s", session.session_id, outcome.phase.value)
    return _outcome_response(outcome)


@app.post("/session/retry", response_model=OutcomeResponse)
async def retry_final_evaluation(state: AppStateDep) -> OutcomeResponse:
    """Retry a failed final evaluation with the saved transcript."""
    session = state["session_manager"].session
    if session is None:
        raise SessionNotActiveError("No session to retry.")

    try:
        outcome = await session.retry_final_evaluation()
    except (FinalEvaluationInFlightError, InvalidPhaseError) as exc:
        raise _phase_service_error(exc) from exc
    return _outcome_response(outcome)


@app.get("/session/status", response_model=SessionStatusResponse)
async def get_session_status(state: AppStateDep) -> SessionStatusResponse:
    session_manager = state["session_manager"]
    session = session_manager.session
    return SessionStatusResponse(
        active=session_manager.is_active,
        session=session.status() if session is not None else None,
        recovery_pending=session_manager.pending_recovery() is not None,
    )


@app.get("/session/report", response_model=None)
async def download_report(
    state: AppStateDep,
    report_format: str = Query(default="html", alias="format", pattern="^(html|json)$"),
) -> HTMLResponse | JSONResponse:
    """
    Download the finished report as an HTML document or JSON.

    Raises:
        SessionNotActiveError: If there is no session.
        InterviewServiceError: 409 INVALID_PHASE until the final evaluation succeeds.
    """
    session = state["session_manager"].session
    if session is None:
        raise SessionNotActiveError("No session report to download.")
    try:
        payload = session.report_payload()
    except InvalidPhaseError as exc:
        raise _phase_service_error(exc) from exc

    filename = f"interview-report-{session.session_id}.{report_format}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    if report_format == "json":
        return JSONResponse(content=payload.to_dict(), headers=headers)
    html = build_report_html(
        payload.evaluation, payload.transcript, payload.role_label, payload.generated_at
    )
    return HTMLResponse(content=html, headers=headers)


@app.get("/session/recovery", response_model=RecoveryResponse)
async def get_recovery(state: AppStateDep) -> RecoveryResponse:
    """Describe the saved interview, if one younger than the retention window exists."""
    snapshot = state["session_manager"].pending_recovery()
    if snapshot is None:
        return RecoveryResponse(available=False)
    registry = state["registry"]
    return RecoveryResponse(
        available=True,
        role=snapshot.role,
        role_label=registry.label(snapshot.role),
        recipient_email=snapshot.recipient_email,
        created_at=snapshot.created_at.isoformat().replace("+00:00", "Z"),
        age_hours=round(snapshot.age_hours(), 2),
        transcript_chars=len(snapshot.transcript),
        turn_count=len(snapshot.turns),
    )


@app.post("/session/recovery/resume", response_model=OutcomeResponse)
async def resume_recovery(state: AppStateDep) -> OutcomeResponse:
    """Run the final evaluation for the saved interview."""
    session_manager = state["session_manager"]
    if session_manager.is_active:
        raise SessionAlreadyActiveError()
    if session_manager.pending_recovery() is None:
        raise InterviewServiceError(
            message="No saved interview is waiting for evaluation.",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NO_PENDING_RECOVERY",
        )

    session = await session_manager.start_session()
    try:
        outcome = await session.resume_from_recovery()
    except NoPendingRecoveryError as exc:
        raise InterviewServiceError(
            message=str(exc),
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NO_PENDING_RECOVERY",
        ) from exc
    except (FinalEvaluationInFlightError, InvalidPhaseError) as exc:
        raise _phase_service_error(exc) from exc
    return _outcome_response(outcome)


@app.post("/session/recovery/discard", response_model=DiscardResponse)
async def discard_recovery(state: AppStateDep) -> DiscardResponse:
    session_manager = state["session_manager"]
    if session_manager.is_active:
        raise SessionAlreadyActiveError("Cannot discard the saved interview while a session is running.")
    discarded = session_manager.discard_recovery()
    return DiscardResponse(
        ok=True,
        discarded=discarded,
        message="Saved interview discarded" if discarded else "No saved interview",
    )


@app.get("/session/events")
async def session_events(
    request: Request,
    state: AppStateDep,
    limit: int | None = Query(default=None, ge=1, description="Close after this many events"),
    keepalive_seconds: float = Query(default=15.0, gt=0),
) -> StreamingResponse:
    """Server-sent events: retained history first, then live session updates."""
    publisher = state["publisher"]

    async def event_stream() -> AsyncIterator[str]:
        queue = await publisher.subscribe()
        sent = 0
        try:
            while limit is None or sent < limit:
                try:
                    update = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {update.update_type.value}\ndata: {update.to_json()}\n\n"
                sent += 1
        finally:
            await publisher.unsubscribe(queue)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    logger.info("=" * 60)
    logger.info("%s v%s", SERVICE_NAME, SERVICE_VERSION)
    logger.info("=" * 60)
    logger.info(
        "Binding to: http://%s:%d",
        RUNTIME_CONFIG.server_host,
        RUNTIME_CONFIG.server_port,
    )
    logger.info("State directory: %s", RUNTIME_CONFIG.state_dir)
    logger.info("=" * 60)

    uvicorn.run(
        app,
        host=RUNTIME_CONFIG.server_host,
        port=RUNTIME_CONFIG.server_port,
        log_level="info",
    )
