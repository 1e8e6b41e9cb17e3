"""
Live Interview Evaluation Package.

Real-time pipeline that turns interview audio into rubric evaluations.

Components:
    - AudioCapture: Mixes microphone and meeting audio into 16 kHz PCM frames
    - TurnAggregator: Merges revisable transcription turns into one transcript
    - QuestionReconciler: Presents suggested questions and tracks which were asked
    - SessionStore: Persists the ended interview for retry and recovery
    - SessionEventPublisher: Real-time pub/sub of session state for the UI
    - Models: Pydantic models for turns, evaluations and snapshots

Scoring, scheduling, transcription and the session itself live in their own
submodules (``live_interview.scoring``, ``live_interview.scheduler``,
``live_interview.transcription``, ``live_interview.session``) and are
imported from there.

Example:
    >>> from live_interview import TurnAggregator
    >>>
    >>> aggregator = TurnAggregator()
    >>> aggregator.apply_turn(1, "I grew the team to forty reps.")
    >>> aggregator.apply_turn(0, "Tell me about your last role.")
    >>> aggregator.current_transcript()
    'Tell me about your last role. I grew the team to forty reps.'

Last Grunted: 10/16/2026
"""

from .models import (
    CategoryScore,
    ConnectionState,
    FinalEvaluation,
    HireRecommendation,
    PartialEvaluation,
    QuestionsCoverage,
    SessionPhase,
    SessionSnapshot,
    SourceMode,
    SuggestedQuestion,
    Turn,
)

from .config import (
    PipelineConfig,
    ReconciliationConfig,
    load_pipeline_config,
    load_reconciliation_config,
)

from .aggregator import TurnAggregator

from .reconciliation import (
    QuestionReconciler,
    normalize_question,
    question_asked_in_transcript,
)

from .capture import (
    AudioCapture,
    AudioFrame,
    CaptureError,
    PyAudioTrackProvider,
)

from .recovery import (
    PENDING_REPORT_KEY,
    SessionStore,
    SnapshotReadError,
    SnapshotWriteError,
)

from .pubsub import (
    SessionEventPublisher,
    SessionUpdate,
    UpdateType,
)


__all__ = [
    # Models
    "CategoryScore",
    "ConnectionState",
    "FinalEvaluation",
    "HireRecommendation",
    "PartialEvaluation",
    "QuestionsCoverage",
    "SessionPhase",
    "SessionSnapshot",
    "SourceMode",
    "SuggestedQuestion",
    "Turn",
    # Config
    "PipelineConfig",
    "ReconciliationConfig",
    "load_pipeline_config",
    "load_reconciliation_config",
    # Aggregation
    "TurnAggregator",
    # Reconciliation
    "QuestionReconciler",
    "normalize_question",
    "question_asked_in_transcript",
    # Capture
    "AudioCapture",
    "AudioFrame",
    "CaptureError",
    "PyAudioTrackProvider",
    # Recovery
    "PENDING_REPORT_KEY",
    "SessionStore",
    "SnapshotReadError",
    "SnapshotWriteError",
    # Pub/Sub
    "SessionEventPublisher",
    "SessionUpdate",
    "UpdateType",
]

__version__ = "0.3.0"
