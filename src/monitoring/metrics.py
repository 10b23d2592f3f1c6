"""
In-process metrics for operation-log validation.

Counters:
    plc_operations_validated_total    operations accepted into a chain
    plc_recoveries_total              forks that nullified part of a history
    plc_logs_validated_total          logs validated end to end
    plc_logs_rejected_total{kind}     logs rejected, by error kind

Histograms:
    plc_log_validation_ms             wall time of one validate_log() call

All series live in one MetricsCollector and can be exported in Prometheus
text format. Names passed to the collector omit the "plc_" prefix.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

METRIC_PREFIX = "plc"

LATENCY_BUCKETS_MS = (1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000)

HELP = {
    "operations_validated_total": "Operations accepted into a canonical chain",
    "recoveries_total": "Forks that nullified part of an operation history",
    "logs_validated_total": "Operation logs validated end to end",
    "logs_rejected_total": "Operation logs rejected, by error kind",
    "log_validation_ms": "Time spent validating one operation log",
}

# Sorted (label, value) pairs identifying one series of a metric
LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    return tuple(sorted(labels.items())) if labels else ()


def _render_labels(key: LabelKey, *extra: tuple[str, str]) -> str:
    pairs = [*key, *extra]
    if not pairs:
        return ""
    return "{" + ",".join(f'{name}="{value}"' for name, value in pairs) + "}"


def _render_bound(bound: float) -> str:
    return "+Inf" if bound == float("inf") else f"{bound:g}"


@dataclass
class Histogram:
    """Cumulative latency histogram; the last bucket is +Inf."""

    bounds: tuple[float, ...] = LATENCY_BUCKETS_MS
    counts: list[int] = field(init=False)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        self.counts = [0] * (len(self.bounds) + 1)

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for idx, bound in enumerate(self.bounds):
            if value <= bound:
                self.counts[idx] += 1
        self.counts[-1] += 1

    @property
    def buckets(self) -> list[tuple[float, int]]:
        """(upper bound, cumulative count) pairs, ending with +Inf."""
        return list(zip((*self.bounds, float("inf")), self.counts))


class MetricsCollector:
    """
    Thread-safe counters and histograms.

    Logs of different DIDs may be validated on separate threads against one
    collector.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, dict[LabelKey, int]] = {}
        self._histograms: dict[str, dict[LabelKey, Histogram]] = {}
        self._started = time.time()

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            series = self._counters.setdefault(name, {})
            key = _label_key(labels)
            series[key] = series.get(key, 0) + value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0)

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        """Record one duration in milliseconds."""
        with self._lock:
            series = self._histograms.setdefault(name, {})
            series.setdefault(_label_key(labels), Histogram()).observe(value_ms)

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Time a block, whether or not it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    def get_histogram(self, name: str, labels: dict[str, str] | None = None) -> Histogram | None:
        with self._lock:
            return self._histograms.get(name, {}).get(_label_key(labels))

    def get_all(self) -> dict[str, Any]:
        """
        Snapshot of every series.

        Unlabelled counters map to their value; labelled ones map to a dict
        keyed by the rendered label set, e.g. 'kind="invalid_hash"'.
        """
        with self._lock:
            counters: dict[str, Any] = {}
            for name, series in self._counters.items():
                if list(series) == [()]:
                    counters[name] = series[()]
                else:
                    counters[name] = {_render_labels(key)[1:-1]: value for key, value in series.items()}

            histograms = {
                name: {
                    _render_labels(key)[1:-1] or "_total": {
                        "count": hist.count,
                        "sum": hist.sum,
                        "avg": hist.sum / hist.count if hist.count else 0,
                    }
                    for key, hist in series.items()
                }
                for name, series in self._histograms.items()
            }

            return {
                "uptime_seconds": time.time() - self._started,
                "counters": counters,
                "histograms": histograms,
            }

    def to_prometheus(self) -> str:
        """Render all series in Prometheus text exposition format."""
        lines = []

        with self._lock:
            for name, series in self._counters.items():
                metric = f"{METRIC_PREFIX}_{name}"
                if name in HELP:
                    lines.append(f"# HELP {metric} {HELP[name]}")
                lines.append(f"# TYPE {metric} counter")
                for key, value in series.items():
                    lines.append(f"{metric}{_render_labels(key)} {value}")
                lines.append("")

            for name, series in self._histograms.items():
                metric = f"{METRIC_PREFIX}_{name}"
                if name in HELP:
                    lines.append(f"# HELP {metric} {HELP[name]}")
                lines.append(f"# TYPE {metric} histogram")
                for key, hist in series.items():
                    for bound, count in hist.buckets:
                        le = _render_labels(key, ("le", _render_bound(bound)))
                        lines.append(f"{metric}_bucket{le} {count}")
                    lines.append(f"{metric}_sum{_render_labels(key)} {hist.sum:.3f}")
                    lines.append(f"{metric}_count{_render_labels(key)} {hist.count}")
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._started = time.time()


metrics = MetricsCollector()
