from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from todo_service.observability.instruments import ServiceMetrics
from todo_service.observability.metrics import MetricRegistry
from todo_service.observability.middleware import (
    UNMATCHED_ROUTE,
    RequestContext,
    RequestInstrumentationMiddleware,
    RequestState,
    resolve_route,
)


def _scope(path: str = "/todos", method: str = "GET") -> dict[str, Any]:
    return {
        "type": "http",
        "method": method,
        "path": path,
        "root_path": "",
        "query_string": b"",
        "headers": [],
    }


async def _receive() -> dict[str, Any]:
    return {"type": "http.request", "body": b"", "more_body": False}


async def _disconnect() -> dict[str, Any]:
    return {"type": "http.disconnect"}


class _Sink:
    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    async def __call__(self, message: dict[str, Any]) -> None:
        self.messages.append(message)


async def _ok_app(scope, receive, send) -> None:
    await send({"type": "http.response.start", "status": 200, "headers": []})
    await send({"type": "http.response.body", "body": b"ok"})


def _observed(metrics: ServiceMetrics, status_code: str) -> int:
    for sample in metrics.http_request_duration.collect():
        if dict(sample.labels)["status_code"] == status_code:
            return sample.count
    return 0


@pytest.fixture
def metrics() -> ServiceMetrics:
    return ServiceMetrics(MetricRegistry())


async def test_completed_request_is_timed_and_released(metrics) -> None:
    seen_in_flight = []

    async def app(scope, receive, send) -> None:
        seen_in_flight.append(metrics.active_request_count())
        await _ok_app(scope, receive, send)

    sink = _Sink()
    await RequestInstrumentationMiddleware(app, metrics=metrics)(_scope(), _receive, sink)

    assert seen_in_flight == [1]
    assert metrics.active_request_count() == 0
    (sample,) = metrics.http_request_duration.collect()
    # No router in scope, so the sentinel is used rather than "/todos".
    assert dict(sample.labels) == {"method": "GET", "route": UNMATCHED_ROUTE, "status_code": "200"}
    assert sample.count == 1
    headers = dict(sink.messages[0]["headers"])
    assert headers[b"x-request-id"]


async def test_failing_app_is_finalized_with_500_and_error_propagates(metrics) -> None:
    async def app(scope, receive, send) -> None:
        raise RuntimeError("handler blew up")

    with pytest.raises(RuntimeError, match="handler blew up"):
        await RequestInstrumentationMiddleware(app, metrics=metrics)(_scope(), _receive, _Sink())

    assert metrics.active_request_count() == 0
    assert _observed(metrics, "500") == 1


async def test_cancelled_request_is_released_once(metrics) -> None:
    async def app(scope, receive, send) -> None:
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await RequestInstrumentationMiddleware(app, metrics=metrics)(_scope(), _receive, _Sink())

    assert metrics.active_request_count() == 0
    assert _observed(metrics, "499") == 1


async def test_client_disconnect_before_response_counts_as_abort(metrics) -> None:
    async def app(scope, receive, send) -> None:
        message = await receive()
        assert message["type"] == "http.disconnect"

    await RequestInstrumentationMiddleware(app, metrics=metrics)(_scope(method="POST"), _disconnect, _Sink())

    assert metrics.active_request_count() == 0
    assert _observed(metrics, "499") == 1


async def test_many_interleaved_requests_return_gauge_to_baseline(metrics) -> None:
    metrics.active_requests.set(value=3)
    release = asyncio.Event()
    peak = []

    async def app(scope, receive, send) -> None:
        peak.append(metrics.active_request_count())
        await release.wait()
        if scope["method"] == "DELETE":
            raise RuntimeError("persistence down")
        await _ok_app(scope, receive, send)

    middleware = RequestInstrumentationMiddleware(app, metrics=metrics)
    methods = ["GET", "POST", "DELETE", "PUT", "GET", "DELETE"]
    tasks = [asyncio.create_task(middleware(_scope(method=m), _receive, _Sink())) for m in methods]
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert metrics.active_request_count() == 3 + len(methods)

    release.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert sum(isinstance(r, RuntimeError) for r in results) == 2
    assert max(peak) <= 3 + len(methods)
    assert metrics.active_request_count() == 3


async def test_instrumentation_failure_does_not_reach_the_response(metrics, monkeypatch) -> None:
    def broken_labels(**labels):
        raise ValueError("bad labels")

    monkeypatch.setattr(metrics.http_request_duration, "labels", broken_labels)
    sink = _Sink()

    await RequestInstrumentationMiddleware(_ok_app, metrics=metrics)(_scope(), _receive, sink)

    assert [m["type"] for m in sink.messages] == ["http.response.start", "http.response.body"]
    assert sink.messages[0]["status"] == 200
    assert metrics.active_request_count() == 0


async def test_untracked_paths_are_timed_but_not_counted_in_flight(metrics) -> None:
    seen_in_flight = []

    async def app(scope, receive, send) -> None:
        seen_in_flight.append(metrics.active_request_count())
        await _ok_app(scope, receive, send)

    await RequestInstrumentationMiddleware(app, metrics=metrics)(_scope("/metrics"), _receive, _Sink())

    assert seen_in_flight == [0]
    assert metrics.active_request_count() == 0
    assert _observed(metrics, "200") == 1


def test_request_context_finishes_only_once() -> None:
    context = RequestContext(method="GET", route="/todos")

    assert context.finish(RequestState.ABORTED) is True
    assert context.finish(RequestState.COMPLETED) is False
    assert context.state is RequestState.ABORTED


async def test_end_hook_is_idempotent(metrics) -> None:
    middleware = RequestInstrumentationMiddleware(_ok_app, metrics=metrics)
    scope = _scope()
    context = middleware.on_request_start(scope, start=0.0)
    assert metrics.active_request_count() == 1

    middleware.on_request_end(context, scope, RequestState.ABORTED, 499, 0.01)
    middleware.on_request_end(context, scope, RequestState.COMPLETED, 200, 0.02)

    assert metrics.active_request_count() == 0
    assert _observed(metrics, "499") == 1
    assert _observed(metrics, "200") == 0


async def test_route_label_comes_from_the_route_matched_during_routing(metrics) -> None:
    async def routed_app(scope, receive, send) -> None:
        # What the router leaves behind in the scope once it has matched.
        scope["route"] = SimpleNamespace(path="/todos/{todo_id:str}", path_format="/todos/{todo_id}")
        await _ok_app(scope, receive, send)

    scope = _scope("/todos/6f1c2a3e", method="PUT")
    await RequestInstrumentationMiddleware(routed_app, metrics=metrics)(scope, _receive, _Sink())

    (sample,) = metrics.http_request_duration.collect()
    assert dict(sample.labels)["route"] == "/todos/{todo_id}"


def test_resolve_route_falls_back_to_sentinel() -> None:
    assert resolve_route(_scope("/todos/6f1c2a3e")) == UNMATCHED_ROUTE
    assert resolve_route({**_scope(), "route": SimpleNamespace(path="/health")}) == "/health"
    assert resolve_route({**_scope(), "route": object()}) == UNMATCHED_ROUTE
