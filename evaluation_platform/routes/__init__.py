"""Report delivery routing package."""

from evaluation_platform.routes.base import DeliveryResult, ReportPayload
from evaluation_platform.routes.router import ReportRouter, build_report_router

__all__ = [
    "DeliveryResult",
    "ReportPayload",
    "ReportRouter",
    "build_report_router",
]
