from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from time import perf_counter
from typing import Any, Callable

import structlog
from starlette.datastructures import MutableHeaders

from todo_service.observability.errors import InstrumentationFailure
from todo_service.observability.instruments import ServiceMetrics
from todo_service.observability.logging import (
    log_instrumentation_failure,
    log_request_completed,
    log_request_started,
)


UNMATCHED_ROUTE = "<unmatched>"
CLIENT_CLOSED_REQUEST = 499


class RequestState(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class RequestContext:
    """Per-request accounting state; lives from entry until finalization."""

    method: str
    route: str = UNMATCHED_ROUTE
    start: float = field(default_factory=perf_counter)
    tracks_active: bool = True
    state: RequestState = RequestState.STARTED
    _lock: Lock = field(default_factory=Lock, repr=False)

    def finish(self, state: RequestState) -> bool:
        """Move to a terminal state. Only the first caller gets True."""

        with self._lock:
            if self.state is not RequestState.STARTED:
                return False
            self.state = state
            return True


def resolve_route(scope: dict[str, Any]) -> str:
    """Return the template of the route the router matched, never the raw path.

    The router records the matched route in the scope, including a path-only
    match that failed on method (405). Anything else gets the sentinel.
    """

    route = scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    return template if isinstance(template, str) and template else UNMATCHED_ROUTE


def _request_url(scope: dict[str, Any]) -> str:
    path = scope.get("path", "")
    query = scope.get("query_string", b"")
    if query:
        return f"{path}?{query.decode('latin-1')}"
    return path


@contextmanager
def _instrumentation_guard(stage: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:  # noqa: BLE001
        failure = InstrumentationFailure(f"{stage}: {exc}")
        failure.__cause__ = exc
        log_instrumentation_failure(stage, failure)


class RequestInstrumentationMiddleware:
    """Times every request, tracks in-flight requests, and emits access logs.

    Finalization runs exactly once per request whether the app returns, raises,
    or is cancelled because the client went away. Nothing raised by the
    instrumentation itself reaches the wrapped app's caller.
    """

    def __init__(
        self,
        app: Callable[..., Any],
        metrics: ServiceMetrics,
        untracked_paths: Iterable[str] = ("/metrics",),
    ) -> None:
        self.app = app
        self.metrics = metrics
        self._active = metrics.active_requests.labels()
        # A scrape should not count itself as an active request.
        self._untracked_paths = set(untracked_paths)

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = str(uuid.uuid4())
        path = scope.get("path", "")
        method = scope.get("method", "")
        url = _request_url(scope)

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=path,
            method=method,
        )

        start = perf_counter()
        context = self.on_request_start(scope, start)
        log_request_started(method=method, url=url)

        status_code: int = 500
        response_started = False
        response_complete = False
        response_size = 0
        disconnected = False

        async def receive_wrapper() -> dict[str, Any]:
            nonlocal disconnected

            message = await receive()
            if message.get("type") == "http.disconnect":
                disconnected = True
            return message

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code, response_started, response_complete, response_size

            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
                response_started = True
                headers = MutableHeaders(scope=message)
                headers["X-Request-ID"] = request_id
            elif message.get("type") == "http.response.body":
                response_size += len(message.get("body", b""))
                if not message.get("more_body", False):
                    response_complete = True

            await send(message)

        outcome = RequestState.COMPLETED
        try:
            await self.app(scope, receive_wrapper, send_wrapper)
        except asyncio.CancelledError:
            outcome = RequestState.ABORTED
            raise
        finally:
            if disconnected and not response_complete:
                outcome = RequestState.ABORTED
            if outcome is RequestState.ABORTED and not response_started:
                status_code = CLIENT_CLOSED_REQUEST

            elapsed = perf_counter() - start

            # Metrics first so they update even if logging misbehaves.
            self.on_request_end(context, scope, outcome, status_code, elapsed)

            log_request_completed(
                method=method,
                url=url,
                status_code=status_code,
                response_size=response_size,
                elapsed_ms=elapsed * 1000.0,
                outcome=outcome.value,
            )

            structlog.contextvars.clear_contextvars()

    def on_request_start(self, scope: dict[str, Any], start: float) -> RequestContext | None:
        context: RequestContext | None = None
        with _instrumentation_guard("request_start"):
            candidate = RequestContext(
                method=scope.get("method", ""),
                start=start,
                tracks_active=scope.get("path", "") not in self._untracked_paths,
            )
            if candidate.tracks_active:
                self._active.inc()
            context = candidate
        return context

    def on_request_end(
        self,
        context: RequestContext | None,
        scope: dict[str, Any],
        outcome: RequestState,
        status_code: int,
        elapsed: float,
    ) -> None:
        if context is None or not context.finish(outcome):
            return

        with _instrumentation_guard("request_end"):
            if context.tracks_active:
                self._active.dec()

        with _instrumentation_guard("request_end"):
            # Routing has run by now, so the matched template is in the scope.
            context.route = resolve_route(scope)
            self.metrics.http_request_duration.labels(
                method=context.method,
                route=context.route,
                status_code=str(status_code),
            ).observe(elapsed)
            self.metrics.response_time.set(value=elapsed * 1000.0)
