from __future__ import annotations

import math
import re
from bisect import bisect_left
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from threading import Lock
from typing import Any

from todo_service.observability.errors import DuplicateMetricName, ExpositionFailure, InvalidDelta


CONTENT_TYPE_LATEST = "text/plain; version=0.0.4; charset=utf-8"

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

INF = float("inf")

LabelValues = tuple[str, ...]


@dataclass(frozen=True)
class Sample:
    labels: tuple[tuple[str, str], ...]
    value: float


@dataclass(frozen=True)
class HistogramSample:
    labels: tuple[tuple[str, str], ...]
    # (upper bound, cumulative count), ascending, ending with +Inf
    buckets: tuple[tuple[float, int], ...]
    sum: float
    count: int


class _ValueChild:
    """One label tuple of a counter or gauge."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._value = 0.0

    def _add(self, delta: float) -> None:
        with self._lock:
            self._value += delta

    def _set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def get(self) -> float:
        with self._lock:
            return self._value


class CounterChild(_ValueChild):
    def inc(self, delta: float = 1.0) -> None:
        delta = float(delta)
        if not delta >= 0:
            raise InvalidDelta(delta)
        self._add(delta)


class GaugeChild(_ValueChild):
    def inc(self, delta: float = 1.0) -> None:
        self._add(float(delta))

    def dec(self, delta: float = 1.0) -> None:
        self._add(-float(delta))

    def set(self, value: float) -> None:
        self._set(float(value))


class HistogramChild:
    """Cumulative buckets, sum and count for one label tuple."""

    def __init__(self, upper_bounds: tuple[float, ...]) -> None:
        self._lock = Lock()
        self._upper_bounds = upper_bounds
        self._bucket_counts = [0] * len(upper_bounds)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        value = float(value)
        if math.isnan(value):
            raise ValueError("Cannot observe NaN")
        # Every bucket whose upper bound is >= value, the +Inf bucket included.
        first = bisect_left(self._upper_bounds, value)
        with self._lock:
            for i in range(first, len(self._bucket_counts)):
                self._bucket_counts[i] += 1
            self._sum += value
            self._count += 1

    def snapshot(self) -> tuple[tuple[tuple[float, int], ...], float, int]:
        with self._lock:
            return tuple(zip(self._upper_bounds, self._bucket_counts)), self._sum, self._count


class Metric:
    """A named, typed family of label-keyed samples."""

    kind: str = "untyped"

    def __init__(self, name: str, documentation: str, labelnames: Sequence[str] = ()) -> None:
        if not _METRIC_NAME_RE.match(name):
            raise ValueError(f"Invalid metric name: {name!r}")
        labelnames = tuple(labelnames)
        for label in labelnames:
            if not _LABEL_NAME_RE.match(label) or label.startswith("__"):
                raise ValueError(f"Invalid label name: {label!r}")
        if len(set(labelnames)) != len(labelnames):
            raise ValueError(f"Duplicate label names for {name}: {labelnames!r}")

        self.name = name
        self.documentation = documentation
        self.labelnames = labelnames

        # Guards creation of new label tuples only; updates lock per child.
        self._lock = Lock()
        self._children: dict[LabelValues, Any] = {}
        if not labelnames:
            self._children[()] = self._new_child()

    def _new_child(self) -> Any:
        raise NotImplementedError

    def _label_values(self, labels: Mapping[str, Any] | None) -> LabelValues:
        labels = labels or {}
        if set(labels) != set(self.labelnames):
            raise ValueError(
                f"{self.name} expects labels {list(self.labelnames)}, got {sorted(labels)}"
            )
        return tuple(str(labels[label]) for label in self.labelnames)

    def _child(self, labels: Mapping[str, Any] | None) -> Any:
        key = self._label_values(labels)
        child = self._children.get(key)
        if child is None:
            with self._lock:
                child = self._children.get(key)
                if child is None:
                    # Fully built before it becomes visible to collect().
                    child = self._new_child()
                    self._children[key] = child
        return child

    def labels(self, **labels: Any) -> Any:
        return self._child(labels)

    def _peek(self, labels: Mapping[str, Any] | None) -> float:
        # Reads never create a series.
        child = self._children.get(self._label_values(labels))
        return child.get() if child is not None else 0.0

    def _items(self) -> list[tuple[LabelValues, Any]]:
        with self._lock:
            return list(self._children.items())

    def _label_pairs(self, values: LabelValues) -> tuple[tuple[str, str], ...]:
        return tuple(zip(self.labelnames, values))

    def collect(self) -> list[Sample] | list[HistogramSample]:
        return [Sample(self._label_pairs(key), child.get()) for key, child in self._items()]


class Counter(Metric):
    kind = "counter"

    def _new_child(self) -> CounterChild:
        return CounterChild()

    def inc(self, labels: Mapping[str, Any] | None = None, delta: float = 1.0) -> None:
        # Reject before touching the label tuple so a bad call leaves no trace.
        if not float(delta) >= 0:
            raise InvalidDelta(delta)
        self._child(labels).inc(delta)

    def value(self, labels: Mapping[str, Any] | None = None) -> float:
        return self._peek(labels)


class Gauge(Metric):
    kind = "gauge"

    def _new_child(self) -> GaugeChild:
        return GaugeChild()

    def set(self, labels: Mapping[str, Any] | None = None, value: float = 0.0) -> None:
        self._child(labels).set(value)

    def inc(self, labels: Mapping[str, Any] | None = None, delta: float = 1.0) -> None:
        self._child(labels).inc(delta)

    def dec(self, labels: Mapping[str, Any] | None = None, delta: float = 1.0) -> None:
        self._child(labels).dec(delta)

    def value(self, labels: Mapping[str, Any] | None = None) -> float:
        return self._peek(labels)


class Histogram(Metric):
    kind = "histogram"

    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

    def __init__(
        self,
        name: str,
        documentation: str,
        labelnames: Sequence[str] = (),
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> None:
        if "le" in labelnames:
            raise ValueError("'le' is reserved for histogram buckets")
        bounds = [float(b) for b in buckets]
        if not bounds:
            raise ValueError("Histogram needs at least one bucket")
        if any(math.isnan(b) for b in bounds):
            raise ValueError(f"Histogram buckets must not be NaN: {bounds!r}")
        if any(b >= nxt for b, nxt in zip(bounds, bounds[1:])):
            raise ValueError(f"Histogram buckets must be strictly ascending: {bounds!r}")
        if bounds[-1] != INF:
            bounds.append(INF)
        self.upper_bounds = tuple(bounds)
        super().__init__(name, documentation, labelnames)

    def _new_child(self) -> HistogramChild:
        return HistogramChild(self.upper_bounds)

    def observe(self, labels: Mapping[str, Any] | None = None, value: float = 0.0) -> None:
        self._child(labels).observe(value)

    def collect(self) -> list[HistogramSample]:
        samples = []
        for key, child in self._items():
            buckets, total, count = child.snapshot()
            samples.append(HistogramSample(self._label_pairs(key), buckets, total, count))
        return samples


class MetricRegistry:
    """Process-wide set of metrics. Append-only: nothing is ever unregistered."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._metrics: dict[str, Metric] = {}

    def register(self, metric: Metric) -> Metric:
        with self._lock:
            if metric.name in self._metrics:
                raise DuplicateMetricName(metric.name)
            self._metrics[metric.name] = metric
        return metric

    def get(self, name: str) -> Metric | None:
        with self._lock:
            return self._metrics.get(name)

    def collect(self) -> Iterator[tuple[Metric, list[Sample] | list[HistogramSample]]]:
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            yield metric, metric.collect()

    def render(self) -> str:
        try:
            return generate_latest(self.collect())
        except Exception as exc:  # noqa: BLE001
            raise ExpositionFailure(f"Failed to render metrics: {exc}") from exc


def format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _escape_label_value(value: str) -> str:
    return value.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


def _escape_help(text: str) -> str:
    return text.replace("\\", r"\\").replace("\n", r"\n")


def _format_labels(pairs: Sequence[tuple[str, str]]) -> str:
    if not pairs:
        return ""
    inner = ",".join(f'{name}="{_escape_label_value(value)}"' for name, value in pairs)
    return "{" + inner + "}"


def generate_latest(collected: Iterator[tuple[Metric, Sequence[Any]]]) -> str:
    """Serialize collected metrics into the text exposition format."""

    lines: list[str] = []
    for metric, samples in collected:
        lines.append(f"# HELP {metric.name} {_escape_help(metric.documentation)}")
        lines.append(f"# TYPE {metric.name} {metric.kind}")
        for sample in samples:
            if isinstance(sample, HistogramSample):
                for bound, count in sample.buckets:
                    pairs = (("le", format_value(bound)), *sample.labels)
                    lines.append(f"{metric.name}_bucket{_format_labels(pairs)} {count}")
                labels = _format_labels(sample.labels)
                lines.append(f"{metric.name}_sum{labels} {format_value(sample.sum)}")
                lines.append(f"{metric.name}_count{labels} {sample.count}")
            else:
                lines.append(f"{metric.name}{_format_labels(sample.labels)} {format_value(sample.value)}")
    return "\n".join(lines) + "\n" if lines else ""
