"""Route orchestrator for report delivery."""

from __future__ import annotations

from evaluation_platform.routes.base import DeliveryResult, ReportPayload, ReportRoute
from evaluation_platform.routes.email_report import DEFAULT_FROM_NAME, SendGridEmailRoute
from evaluation_platform.routes.webhook import WebhookRoute


class ReportRouter:
    """Delivers a report to every configured route."""

    def __init__(self, routes: tuple[ReportRoute, ...]) -> None:
        self._routes = routes

    @property
    def route_count(self) -> int:
        return len(self._routes)

    async def dispatch_all(self, payload: ReportPayload) -> list[DeliveryResult]:
        results: list[DeliveryResult] = []
        for route in self._routes:
            results.append(await route.deliver(payload))
        return results

    async def deliver(self, payload: ReportPayload) -> DeliveryResult:
        """Deliver to all routes and fold the outcomes into one result."""
        results = await self.dispatch_all(payload)
        failures = [r for r in results if not r.ok]
        if not failures:
            return DeliveryResult(route_id="all", route_type="report", ok=True)
        return DeliveryResult(
            route_id="all",
            route_type="report",
            ok=False,
            detail="; ".join(f"{r.route_id}: {r.detail}" for r in failures),
        )


def build_report_router(
    sendgrid_api_key: str | None,
    from_email: str,
    from_name: str = DEFAULT_FROM_NAME,
    webhook_url: str | None = None,
    webhook_headers: dict[str, str] | None = None,
) -> ReportRouter:
    """Create the email route, plus a webhook route when a URL is configured."""
    routes: list[ReportRoute] = [
        SendGridEmailRoute(
            route_id="email",
            api_key=sendgrid_api_key,
            from_email=from_email,
            from_name=from_name,
        )
    ]
    if webhook_url:
        routes.append(
            WebhookRoute(
                route_id="webhook",
                url=webhook_url,
                headers=webhook_headers,
            )
        )
    return ReportRouter(tuple(routes))
