from __future__ import annotations

from fastapi import Request

from todo_service.observability.instruments import ServiceMetrics


def get_service_metrics(request: Request) -> ServiceMetrics:
    return request.app.state.metrics
