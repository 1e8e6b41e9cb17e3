"""Report delivery interfaces and shared types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from live_interview.models import FinalEvaluation


@dataclass(frozen=True)
class DeliveryResult:
    """Result of attempting one report delivery."""

    route_id: str
    route_type: str
    ok: bool
    detail: str | None = None


@dataclass(frozen=True)
class ReportPayload:
    """Everything a route needs to render and send one report."""

    evaluation: FinalEvaluation
    transcript: str
    role_label: str
    recipient_email: str | None = None
    turns: tuple[str, ...] = ()
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, object]:
        return {
            "event_type": "final_evaluation",
            "role": self.role_label,
            "recipient_email": self.recipient_email,
            "generated_at": self.generated_at.isoformat().replace("+00:00", "Z"),
            "evaluation": self.evaluation.model_dump(mode="json", by_alias=True),
            "transcript": self.transcript,
            "turns": list(self.turns),
        }


class ReportRoute(Protocol):
    """Interface for report delivery routes."""

    route_id: str
    route_type: str

    async def deliver(self, payload: ReportPayload) -> DeliveryResult:
        """Deliver one report. Must not raise."""
