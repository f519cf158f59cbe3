from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool

from todo_service.api.dependencies import get_service_metrics
from todo_service.models.schemas import MetricsStats, MonitoringStatsResponse, ProcessStats
from todo_service.observability.errors import ExpositionFailure
from todo_service.observability.instruments import ServiceMetrics
from todo_service.observability.logging import log_handler_failure
from todo_service.observability.metrics import CONTENT_TYPE_LATEST


router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(service_metrics: ServiceMetrics = Depends(get_service_metrics)) -> Response:
    try:
        # psutil sampling is blocking; keep it off the event loop.
        await run_in_threadpool(service_metrics.refresh_process_gauges)
        body = service_metrics.registry.render()
    except ExpositionFailure as exc:
        log_handler_failure("metrics_render_failed", exc)
        return PlainTextResponse(str(exc), status_code=500)
    except Exception as exc:  # noqa: BLE001
        log_handler_failure("metrics_refresh_failed", exc)
        return PlainTextResponse(str(exc), status_code=500)
    return Response(content=body, media_type=CONTENT_TYPE_LATEST)


@router.get("/monitoring/stats", response_model=MonitoringStatsResponse)
async def monitoring_stats(
    service_metrics: ServiceMetrics = Depends(get_service_metrics),
) -> MonitoringStatsResponse:
    return MonitoringStatsResponse(
        timestamp=datetime.now(timezone.utc),
        process=ProcessStats(
            uptime=service_metrics.uptime_seconds(),
            memory=service_metrics.memory_info(),
            cpu=service_metrics.cpu_times(),
        ),
        metrics=MetricsStats(
            active_requests=service_metrics.active_request_count(),
            todo_operations=service_metrics.operation_counts(),
        ),
    )
