"""Email report route (SendGrid v3 HTTP API)."""

from __future__ import annotations

import logging
from datetime import datetime
from html import escape

import httpx

from evaluation_platform.routes.base import DeliveryResult, ReportPayload
from live_interview.models import FinalEvaluation


logger = logging.getLogger(__name__)


SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"
DEFAULT_FROM_NAME = "Sales Interview Tool"


def build_report_subject(role_label: str, when: datetime) -> str:
    return f"Interview Evaluation Report - {role_label} - {when.strftime('%b %d, %Y')}"


def _list_items(values: list[str], empty: str = "None noted") -> str:
    if not values:
        return f"<li>{escape(empty)}</li>"
    return "".join(f"<li>{escape(value)}</li>" for value in values)


def build_report_html(
    evaluation: FinalEvaluation,
    transcript: str,
    role_label: str,
    when: datetime,
) -> str:
    """
    Render the final evaluation as a standalone HTML document.

    Every model- or user-supplied string is HTML-escaped.
    """
    rows = "".join(
        "<tr>"
        f'<td style="padding:12px;border:1px solid #d0d7de;">{escape(row.category)}</td>'
        f'<td style="padding:12px;border:1px solid #d0d7de;text-align:center;">{row.score:g}</td>'
        f'<td style="padding:12px;border:1px solid #d0d7de;">{escape(row.justification)}</td>'
        "</tr>"
        for row in evaluation.category_scores
    )

    coverage = evaluation.questions_coverage
    asked = "".join(
        f"<li><strong>{escape(item.category)}:</strong> {escape(item.question_or_topic)}</li>"
        for item in coverage.asked
    ) or "<li>None recorded</li>"
    missed = "".join(
        f"<li><strong>{escape(item.category)}:</strong><ul>"
        + "".join(f"<li>{escape(q)}</li>" for q in item.sample_questions_not_asked)
        + "</ul></li>"
        for item in coverage.missed
    ) or "<li>None recorded</li>"

    title = escape(f"{role_label} - Interview Evaluation Report")
    return f"""<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>{title}</title></head>
<body style="margin:0;font-family:Arial,sans-serif;line-height:1.6;color:#1a1a1a;background:#f6f8fa;">
<div style="max-width:720px;margin:0 auto;padding:32px 24px;background:#ffffff;">
<h1 style="color:#0969da;font-size:24px;">{title}</h1>
<p style="color:#57606a;font-size:14px;">{escape(when.strftime('%A, %B %d, %Y'))}</p>
<h2 style="font-size:16px;">Hire recommendation</h2>
<p style="font-size:18px;font-weight:700;">{escape(evaluation.hire_recommendation.value)}</p>
<h2 style="font-size:16px;">Weighted overall score</h2>
<p style="font-size:24px;font-weight:700;color:#0969da;">{evaluation.weighted_overall_score:.1f} / 100</p>
<h2 style="font-size:16px;">Category scores</h2>
<table style="width:100%;border-collapse:collapse;font-size:14px;">
<thead><tr><th style="text-align:left;">Category</th><th>Score</th><th style="text-align:left;">Justification</th></tr></thead>
<tbody>{rows}</tbody>
</table>
<h2 style="font-size:16px;">Strengths</h2>
<ul>{_list_items(evaluation.strengths)}</ul>
<h2 style="font-size:16px;">Weaknesses</h2>
<ul>{_list_items(evaluation.weaknesses)}</ul>
<h2 style="font-size:16px;">Red flags</h2>
<ul>{_list_items(evaluation.red_flags)}</ul>
<h2 style="font-size:16px;">Questions coverage</h2>
<h3 style="font-size:14px;color:#57606a;">Asked</h3>
<ul>{asked}</ul>
<h3 style="font-size:14px;color:#57606a;">Missed (recommended from rubric)</h3>
<ul>{missed}</ul>
<h2 style="font-size:16px;">Overall summary</h2>
<p>{escape(evaluation.summary)}</p>
<h2 style="font-size:16px;">Full transcript</h2>
<div style="background:#f6f8fa;padding:16px;font-size:13px;white-space:pre-wrap;">{escape(transcript or "-")}</div>
</div>
</body>
</html>"""


class SendGridEmailRoute:
    """Email the rendered report to the session's recipient."""

    route_type = "email"

    def __init__(
        self,
        route_id: str,
        api_key: str | None,
        from_email: str,
        from_name: str = DEFAULT_FROM_NAME,
        timeout_seconds: float = 10.0,
        send_url: str = SENDGRID_SEND_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.route_id = route_id
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds
        self.send_url = send_url
        self.transport = transport

    def _result(self, ok: bool, detail: str | None = None) -> DeliveryResult:
        return DeliveryResult(
            route_id=self.route_id,
            route_type=self.route_type,
            ok=ok,
            detail=detail,
        )

    def build_message(self, payload: ReportPayload) -> dict[str, object]:
        return {
            "personalizations": [{"to": [{"email": payload.recipient_email}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": build_report_subject(payload.role_label, payload.generated_at),
            "content": [
                {
                    "type": "text/html",
                    "value": build_report_html(
                        payload.evaluation,
                        payload.transcript,
                        payload.role_label,
                        payload.generated_at,
                    ),
                }
            ],
        }

    async def deliver(self, payload: ReportPayload) -> DeliveryResult:
        recipient = (payload.recipient_email or "").strip()
        if not recipient or "@" not in recipient:
            return self._result(False, "No valid recipient email; report not sent.")
        if not self.api_key:
            logger.warning("SENDGRID_API_KEY not set, skipping report email")
            return self._result(False, "Email delivery is not configured (SENDGRID_API_KEY).")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.post(
                    self.send_url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=self.build_message(payload),
                )
            if response.status_code >= 400:
                logger.error(
                    "SendGrid rejected report email: HTTP %d %s",
                    response.status_code,
                    response.text[:160],
                )
                return self._result(False, f"HTTP {response.status_code}: {response.text[:160]}")
            logger.info("Report emailed to %s", recipient)
            return self._result(True)
        except Exception as exc:  # noqa: BLE001 - delivery must never throw
            logger.error("Report email failed: %s", exc)
            return self._result(False, str(exc))
