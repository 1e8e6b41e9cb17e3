"""Webhook report route: POSTs the report JSON to an external endpoint."""

from __future__ import annotations

import logging

import httpx

from evaluation_platform.routes.base import DeliveryResult, ReportPayload


logger = logging.getLogger(__name__)


class WebhookRoute:
    """
    Deliver the final evaluation, transcript and recipient as JSON.

    Receivers can tell report posts apart by the ``X-Report-Event`` header.
    Any HTTP status of 400 or above is a failed delivery.
    """

    route_type = "webhook"

    def __init__(
        self,
        route_id: str,
        url: str,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.route_id = route_id
        self.url = url
        self.headers = {"X-Report-Event": "final_evaluation", **(headers or {})}
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _result(self, ok: bool, detail: str | None = None) -> DeliveryResult:
        return DeliveryResult(
            route_id=self.route_id, route_type=self.route_type, ok=ok, detail=detail
        )

    async def deliver(self, payload: ReportPayload) -> DeliveryResult:
        body = payload.to_dict()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.post(self.url, headers=self.headers, json=body)
        except Exception as exc:  # noqa: BLE001 - delivery must never throw
            logger.warning("Report webhook unreachable (%s): %s", self.route_id, exc)
            return self._result(False, f"Webhook unreachable: {exc}")

        if response.status_code >= 400:
            logger.warning(
                "Report webhook rejected report (%s): HTTP %d",
                self.route_id,
                response.status_code,
            )
            return self._result(False, f"HTTP {response.status_code}: {response.text[:160]}")

        logger.info(
            "Report posted to webhook %s (%s, %d turns)",
            self.route_id,
            payload.role_label,
            len(payload.turns),
        )
        return self._result(True)
