"""Tests for report rendering and delivery routes."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from evaluation_platform.routes.base import DeliveryResult, ReportPayload
from evaluation_platform.routes.email_report import (
    SendGridEmailRoute,
    build_report_html,
    build_report_subject,
)
from evaluation_platform.routes.router import ReportRouter, build_report_router
from evaluation_platform.routes.webhook import WebhookRoute
from live_interview.models import FinalEvaluation
from tests.mock_data import generate_final_payload


WHEN = datetime(2026, 10, 14, 15, 30, tzinfo=timezone.utc)


def _payload(recipient: str | None = "hiring.lead@example.com", transcript: str = "Q and A") -> ReportPayload:
    evaluation = FinalEvaluation.model_validate(generate_final_payload(weighted_overall_score=80.0))
    return ReportPayload(
        evaluation=evaluation,
        transcript=transcript,
        role_label="VP of Sales",
        recipient_email=recipient,
        turns=("Q", "A"),
        generated_at=WHEN,
    )


class Recorder:
    """httpx MockTransport handler that records requests."""

    def __init__(self, status_code: int = 202, text: str = "") -> None:
        self.status_code = status_code
        self.text = text
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text=self.text)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class StaticRoute:
    def __init__(self, route_id: str, ok: bool, detail: str | None = None) -> None:
        self.route_id = route_id
        self.route_type = "static"
        self.ok = ok
        self.detail = detail

    async def deliver(self, payload: ReportPayload) -> DeliveryResult:
        return DeliveryResult(self.route_id, self.route_type, self.ok, self.detail)


class TestReportRendering:
    """HTML report and subject."""

    def test_subject(self):
        assert build_report_subject("VP of Sales", WHEN) == (
            "Interview Evaluation Report - VP of Sales - Oct 14, 2026"
        )

    def test_html_contains_evaluation(self):
        payload = _payload()

        html = build_report_html(payload.evaluation, payload.transcript, payload.role_label, WHEN)

        assert "Strong Hire" in html
        assert "80.0 / 100" in html
        assert "Revenue Leadership &amp; Track Record" in html
        assert "Limited international experience" in html

    def test_html_escapes_untrusted_text(self):
        """Transcript and model text cannot inject markup."""
        payload = _payload(transcript="<script>alert('x')</script>")

        html = build_report_html(payload.evaluation, payload.transcript, payload.role_label, WHEN)

        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    def test_payload_dict(self):
        data = _payload().to_dict()

        assert data["event_type"] == "final_evaluation"
        assert data["generated_at"] == "2026-10-14T15:30:00Z"
        assert data["evaluation"]["category_scores"][0]["name"] == "Revenue Leadership & Track Record"
        assert data["turns"] == ["Q", "A"]


class TestSendGridEmailRoute:
    """Email delivery."""

    @pytest.mark.asyncio
    async def test_sends_message(self):
        recorder = Recorder()
        route = SendGridEmailRoute(
            "email", "SG.test", "noreply@example.com", transport=recorder.transport
        )

        result = await route.deliver(_payload())

        assert result.ok is True
        request = recorder.requests[0]
        assert request.headers["Authorization"] == "Bearer SG.test"
        body = json.loads(request.content)
        assert body["personalizations"][0]["to"][0]["email"] == "hiring.lead@example.com"
        assert body["subject"].startswith("Interview Evaluation Report - VP of Sales")
        assert body["content"][0]["type"] == "text/html"

    @pytest.mark.asyncio
    async def test_rejected_by_provider(self):
        recorder = Recorder(status_code=403, text="forbidden sender")
        route = SendGridEmailRoute(
            "email", "SG.test", "noreply@example.com", transport=recorder.transport
        )

        result = await route.deliver(_payload())

        assert result.ok is False
        assert result.detail == "HTTP 403: forbidden sender"

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        recorder = Recorder()
        route = SendGridEmailRoute("email", None, "noreply@example.com", transport=recorder.transport)

        result = await route.deliver(_payload())

        assert result.ok is False
        assert "SENDGRID_API_KEY" in result.detail
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_invalid_recipient(self):
        route = SendGridEmailRoute("email", "SG.test", "noreply@example.com")

        result = await route.deliver(_payload(recipient="not-an-address"))

        assert result.ok is False
        assert "recipient" in result.detail

    @pytest.mark.asyncio
    async def test_transport_error_never_raises(self):
        def explode(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        route = SendGridEmailRoute(
            "email", "SG.test", "noreply@example.com", transport=httpx.MockTransport(explode)
        )

        result = await route.deliver(_payload())

        assert result.ok is False
        assert "connection refused" in result.detail


class TestWebhookRoute:
    """Webhook delivery."""

    @pytest.mark.asyncio
    async def test_posts_payload(self):
        recorder = Recorder(status_code=200)
        route = WebhookRoute(
            "webhook",
            "https://hooks.example.com/report",
            headers={"X-Token": "abc"},
            transport=recorder.transport,
        )

        result = await route.deliver(_payload())

        assert result.ok is True
        request = recorder.requests[0]
        assert request.headers["X-Token"] == "abc"
        assert request.headers["X-Report-Event"] == "final_evaluation"
        assert json.loads(request.content)["role"] == "VP of Sales"

    @pytest.mark.asyncio
    async def test_server_error(self):
        recorder = Recorder(status_code=500, text="oops")
        route = WebhookRoute("webhook", "https://hooks.example.com/report", transport=recorder.transport)

        result = await route.deliver(_payload())

        assert result.ok is False
        assert result.detail.startswith("HTTP 500")

    @pytest.mark.asyncio
    async def test_unparseable_url_never_raises(self):
        """A bad port is rejected by httpx before any request is sent."""
        recorder = Recorder()
        route = WebhookRoute(
            "webhook", "http://hooks.example.com:abc/report", transport=recorder.transport
        )

        result = await route.deliver(_payload())

        assert result.ok is False
        assert result.detail.startswith("Webhook unreachable")
        assert recorder.requests == []


class TestReportRouter:
    """Fan-out and folding of route results."""

    @pytest.mark.asyncio
    async def test_all_ok(self):
        router = ReportRouter((StaticRoute("a", True), StaticRoute("b", True)))

        result = await router.deliver(_payload())

        assert result.ok is True
        assert result.route_id == "all"

    @pytest.mark.asyncio
    async def test_failures_folded(self):
        router = ReportRouter((
            StaticRoute("email", False, "no key"),
            StaticRoute("webhook", True),
            StaticRoute("archive", False, "disk full"),
        ))

        result = await router.deliver(_payload())

        assert result.ok is False
        assert result.detail == "email: no key; archive: disk full"

    def test_webhook_route_optional(self):
        assert build_report_router(None, "noreply@example.com").route_count == 1
        assert build_report_router(
            None, "noreply@example.com", webhook_url="https://hooks.example.com"
        ).route_count == 2
