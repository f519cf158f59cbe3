from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


_CONFIGURED = False

_access_logger = structlog.get_logger("access")
_app_logger = structlog.get_logger("handlers")


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog + stdlib logging for JSON output.

    Safe to call multiple times (no-op after first call).
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            # Let ProcessorFormatter render JSON for stdlib log records too.
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=pre_chain,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # Keep uvicorn's own loggers consistent with our handler. Its access log
    # duplicates request_completed, so only let warnings through there.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(name)
        logger.handlers = [handler]
        logger.propagate = False
        logger.setLevel(max(level, logging.WARNING) if name == "uvicorn.access" else level)

    _CONFIGURED = True


def _emit(logger: Any, level: str, event: str, **fields: Any) -> None:
    try:
        getattr(logger, level)(event, **fields)
    except Exception:  # noqa: BLE001
        # Logging is fire-and-forget; it must never touch metrics or the response.
        pass


def log_request_started(*, method: str, url: str) -> None:
    _emit(_access_logger, "info", "request_started", method=method, url=url)


def log_request_completed(
    *,
    method: str,
    url: str,
    status_code: int,
    response_size: int,
    elapsed_ms: float,
    outcome: str,
) -> None:
    _emit(
        _access_logger,
        "info",
        "request_completed",
        method=method,
        url=url,
        status_code=status_code,
        response_size=response_size,
        elapsed_ms=round(elapsed_ms, 2),
        outcome=outcome,
    )


def log_instrumentation_failure(stage: str, failure: BaseException) -> None:
    _emit(
        _access_logger,
        "error",
        "instrumentation_failed",
        stage=stage,
        error_kind=type(failure).__name__,
        error=str(failure),
        exc_info=failure,
    )


def log_not_found(*, operation: str, todo_id: str) -> None:
    _emit(_app_logger, "warning", "todo_not_found", operation=operation, todo_id=todo_id)


def log_rejected(*, operation: str, reason: str) -> None:
    _emit(_app_logger, "warning", "todo_rejected", operation=operation, reason=reason)


def log_handler_failure(event: str, failure: BaseException, **fields: Any) -> None:
    _emit(
        _app_logger,
        "error",
        event,
        error_kind=type(failure).__name__,
        error=str(failure),
        exc_info=failure,
        **fields,
    )
