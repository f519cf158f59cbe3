"""The service's own metric set, built once per application."""

from __future__ import annotations

import os
import time
from typing import Any

import psutil

from todo_service.observability.metrics import Counter, Gauge, Histogram, MetricRegistry


REQUEST_DURATION_BUCKETS = (0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 2, 5)
PROCESS_PREFIX = "todo_app_"


class ServiceMetrics:
    """Registers and holds references to every metric the service updates.

    All metrics are registered in ``__init__`` so they exist (and render) before
    the server accepts its first connection.
    """

    def __init__(self, registry: MetricRegistry | None = None) -> None:
        self.registry = registry if registry is not None else MetricRegistry()
        self._process = psutil.Process(os.getpid())

        self.http_request_duration = self._register(
            Histogram(
                "http_request_duration_seconds",
                "HTTP request duration in seconds",
                labelnames=["method", "route", "status_code"],
                buckets=REQUEST_DURATION_BUCKETS,
            )
        )
        self.active_requests = self._register(Gauge("active_requests", "Number of requests currently in flight"))
        self.todo_operations = self._register(
            Counter(
                "todo_operations_total",
                "Total number of todo operations",
                labelnames=["operation"],
            )
        )
        self.memory_usage = self._register(
            Gauge("memory_usage_bytes", "Process memory usage in bytes", labelnames=["type"])
        )
        self.response_time = self._register(
            Gauge("response_time_ms", "Duration of the most recently finished request in milliseconds")
        )

        self.process_cpu = self._register(
            Gauge(f"{PROCESS_PREFIX}process_cpu_seconds", "Process CPU time in seconds", labelnames=["mode"])
        )
        self.process_start_time = self._register(
            Gauge(f"{PROCESS_PREFIX}process_start_time_seconds", "Process start time since the epoch in seconds")
        )
        self.process_threads = self._register(
            Gauge(f"{PROCESS_PREFIX}process_threads", "Number of OS threads in the process")
        )
        self.process_start_time.set(value=self._process.create_time())

    def _register(self, metric: Any) -> Any:
        return self.registry.register(metric)

    def uptime_seconds(self) -> float:
        return max(0.0, time.time() - self._process.create_time())

    def memory_info(self) -> dict[str, int]:
        mem = self._process.memory_info()
        return {"rss": mem.rss, "vms": mem.vms}

    def cpu_times(self) -> dict[str, float]:
        cpu = self._process.cpu_times()
        return {"user": cpu.user, "system": cpu.system}

    def refresh_process_gauges(self) -> None:
        """Sample the host process into the point-in-time gauges."""

        for kind, value in self.memory_info().items():
            self.memory_usage.set({"type": kind}, value)
        for mode, value in self.cpu_times().items():
            self.process_cpu.set({"mode": mode}, value)
        self.process_threads.set(value=self._process.num_threads())

    def operation_counts(self) -> dict[str, int]:
        return {
            dict(sample.labels)["operation"]: int(sample.value)
            for sample in self.todo_operations.collect()
        }

    def active_request_count(self) -> int:
        return int(self.active_requests.value())
