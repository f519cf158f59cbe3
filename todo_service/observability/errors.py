from __future__ import annotations


class MetricsError(Exception):
    """Base class for metric registry and instrumentation errors."""


class DuplicateMetricName(MetricsError):
    """A metric with the same name is already registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Metric already registered: {name}")
        self.name = name


class InvalidDelta(MetricsError, ValueError):
    """Counters only move forward."""

    def __init__(self, delta: float) -> None:
        super().__init__(f"Counter delta must be >= 0, got {delta!r}")
        self.delta = delta


class InstrumentationFailure(MetricsError):
    """Raised inside request instrumentation; always caught and logged."""


class ExpositionFailure(MetricsError):
    """The registry could not be rendered."""
