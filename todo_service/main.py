from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from todo_service.api.dependencies import get_service_metrics
from todo_service.api.metrics import router as metrics_router
from todo_service.api.todos import router as todos_router
from todo_service.config import Settings, get_settings
from todo_service.db.session import init_db
from todo_service.models.schemas import HealthResponse
from todo_service.observability.instruments import ServiceMetrics
from todo_service.observability.logging import configure_logging
from todo_service.observability.metrics import MetricRegistry
from todo_service.observability.middleware import RequestInstrumentationMiddleware


logger = structlog.get_logger("startup")


def create_app(settings: Settings | None = None, registry: MetricRegistry | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.logging_level)

    # Every metric is registered here, before the app can serve a request.
    service_metrics = ServiceMetrics(registry if registry is not None else MetricRegistry())

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        init_db()
        base = f"http://localhost:{settings.port}"
        logger.info(
            "server_ready",
            environment=settings.environment,
            metrics_url=f"{base}/metrics",
            health_url=f"{base}/health",
            stats_url=f"{base}/monitoring/stats",
        )
        yield

    app = FastAPI(title="Todo API", version="0.1.0", lifespan=lifespan)
    app.state.metrics = service_metrics

    app.include_router(metrics_router)
    app.include_router(todos_router)

    @app.get("/health", response_model=HealthResponse)
    async def health(metrics: ServiceMetrics = Depends(get_service_metrics)) -> HealthResponse:
        return HealthResponse(
            status="UP",
            timestamp=datetime.now(timezone.utc),
            uptime=metrics.uptime_seconds(),
            active_requests=metrics.active_request_count(),
            memory=metrics.memory_info(),
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.cors_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added last so it is outermost and sees every response, CORS preflights included.
    app.add_middleware(RequestInstrumentationMiddleware, metrics=service_metrics)

    return app


app = create_app()
