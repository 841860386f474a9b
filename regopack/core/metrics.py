"""
regopack Metrics Module.

In-memory, Prometheus-compatible metrics for compilations and the HTTP API.

Usage:
    from regopack.core.metrics import track_compilation, export_metrics_json

    with track_compilation("cli"):
        run_compilation()

    export_metrics_json()
"""

import time
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


# =============================================================================
# Metrics Storage
# =============================================================================

@dataclass
class Counter:
    """Thread-safe counter metric."""
    name: str
    description: str
    labels: Dict[tuple, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def inc(self, value: int = 1, **label_values):
        """Increment counter."""
        key = tuple(sorted(label_values.items()))
        with self._lock:
            self.labels[key] = self.labels.get(key, 0) + value

    def get(self, **label_values) -> int:
        """Get counter value."""
        key = tuple(sorted(label_values.items()))
        with self._lock:
            return self.labels.get(key, 0)


@dataclass
class Histogram:
    """Thread-safe histogram metric."""
    name: str
    description: str
    buckets: tuple = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
    observations: Dict[tuple, list] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def observe(self, value: float, **label_values):
        """Record an observation."""
        key = tuple(sorted(label_values.items()))
        with self._lock:
            self.observations.setdefault(key, []).append(value)

    def get_stats(self, **label_values) -> Dict[str, float]:
        """Get statistics for the histogram."""
        key = tuple(sorted(label_values.items()))
        with self._lock:
            values = list(self.observations.get(key, []))

        if not values:
            return {"count": 0, "sum": 0, "avg": 0, "p50": 0, "p95": 0}

        sorted_values = sorted(values)
        count = len(values)
        return {
            "count": count,
            "sum": sum(values),
            "avg": sum(values) / count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "p50": sorted_values[int(count * 0.50)],
            "p95": sorted_values[int(count * 0.95)] if count >= 20 else sorted_values[-1],
        }


@dataclass
class Gauge:
    """Thread-safe gauge metric."""
    name: str
    description: str
    values: Dict[tuple, float] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def inc(self, value: float = 1.0, **label_values):
        """Increment gauge."""
        key = tuple(sorted(label_values.items()))
        with self._lock:
            self.values[key] = self.values.get(key, 0) + value

    def dec(self, value: float = 1.0, **label_values):
        """Decrement gauge."""
        self.inc(-value, **label_values)

    def get(self, **label_values) -> float:
        """Get gauge value."""
        key = tuple(sorted(label_values.items()))
        with self._lock:
            return self.values.get(key, 0)


# =============================================================================
# Registry
# =============================================================================

class MetricsRegistry:
    """Metrics registry."""

    def __init__(self):
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._init_default_metrics()

    def _init_default_metrics(self):
        self.register(Counter(
            name="regopack_compilations_total",
            description="Total number of compilations by backend and status",
        ))
        self.register(Histogram(
            name="regopack_compilation_duration_seconds",
            description="Compilation duration in seconds",
        ))
        self.register(Gauge(
            name="regopack_compilations_in_progress",
            description="Number of compilations currently running",
        ))
        self.register(Counter(
            name="regopack_cleanup_failures_total",
            description="Temp artifacts that could not be removed",
        ))
        self.register(Counter(
            name="regopack_requests_total",
            description="Total number of API requests",
        ))
        self.register(Histogram(
            name="regopack_request_duration_seconds",
            description="Request duration in seconds",
        ))

    def register(self, metric: Any):
        """Register a metric."""
        with self._lock:
            self._metrics[metric.name] = metric

    def get(self, name: str) -> Optional[Any]:
        """Get a metric by name."""
        with self._lock:
            return self._metrics.get(name)

    def all_metrics(self) -> Dict[str, Any]:
        """Get all metrics."""
        with self._lock:
            return dict(self._metrics)


_registry = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    """Get the process metrics registry."""
    return _registry


# =============================================================================
# Tracking
# =============================================================================

@contextmanager
def track_compilation(backend: str):
    """Context manager recording duration and outcome of one compilation."""
    start_time = time.perf_counter()
    _registry.get("regopack_compilations_in_progress").inc(backend=backend)
    status = "success"

    try:
        yield
    except BaseException:
        status = "failure"
        raise
    finally:
        duration = time.perf_counter() - start_time
        _registry.get("regopack_compilations_in_progress").dec(backend=backend)
        _registry.get("regopack_compilations_total").inc(backend=backend, status=status)
        _registry.get("regopack_compilation_duration_seconds").observe(duration, backend=backend)


def track_cleanup_failure():
    """Count a temp artifact that could not be removed."""
    _registry.get("regopack_cleanup_failures_total").inc()


def track_request(endpoint: str, method: str, duration: float, status: int):
    """Record one API request."""
    _registry.get("regopack_requests_total").inc(
        endpoint=endpoint, method=method, status=str(status)
    )
    _registry.get("regopack_request_duration_seconds").observe(
        duration, endpoint=endpoint, method=method
    )


# =============================================================================
# Export
# =============================================================================

def export_metrics_json() -> Dict[str, Any]:
    """Export all metrics as JSON."""
    result = {}

    for name, metric in _registry.all_metrics().items():
        if isinstance(metric, Counter):
            result[name] = {
                "type": "counter",
                "description": metric.description,
                "values": {str(k): v for k, v in metric.labels.items()},
            }
        elif isinstance(metric, Histogram):
            result[name] = {
                "type": "histogram",
                "description": metric.description,
                "values": {
                    str(k): metric.get_stats(**dict(k))
                    for k in list(metric.observations.keys())
                },
            }
        elif isinstance(metric, Gauge):
            result[name] = {
                "type": "gauge",
                "description": metric.description,
                "values": {str(k): v for k, v in metric.values.items()},
            }

    return result


def _label_str(labels: tuple, extra: str = "") -> str:
    parts = [f'{k}="{v}"' for k, v in labels]
    if extra:
        parts.append(extra)
    return "{" + ",".join(parts) + "}" if parts else ""


def export_metrics_prometheus() -> str:
    """Export metrics in Prometheus text format."""
    lines = []

    for name, metric in _registry.all_metrics().items():
        lines.append(f"# HELP {name} {metric.description}")

        if isinstance(metric, Counter):
            lines.append(f"# TYPE {name} counter")
            for labels, value in metric.labels.items():
                lines.append(f"{name}{_label_str(labels)} {value}")

        elif isinstance(metric, Gauge):
            lines.append(f"# TYPE {name} gauge")
            for labels, value in metric.values.items():
                lines.append(f"{name}{_label_str(labels)} {value}")

        elif isinstance(metric, Histogram):
            lines.append(f"# TYPE {name} histogram")
            for labels, observations in list(metric.observations.items()):
                count = len(observations)
                for bucket in metric.buckets:
                    bucket_count = sum(1 for o in observations if o <= bucket)
                    le = 'le="%s"' % bucket
                    lines.append(f"{name}_bucket{_label_str(labels, le)} {bucket_count}")
                inf = 'le="+Inf"'
                lines.append(f"{name}_bucket{_label_str(labels, inf)} {count}")
                lines.append(f"{name}_sum{_label_str(labels)} {sum(observations)}")
                lines.append(f"{name}_count{_label_str(labels)} {count}")

        lines.append("")

    return "\n".join(lines)
