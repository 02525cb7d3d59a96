"""
Monitoring utilities

In-process metrics for the reservation subsystem:
- Request metrics (latency, error rates)
- Reservation metrics (orders created/paid/cancelled/expired, conflicts)
- Sweeper metrics (runs, errors, reservations outstanding)

Exposed in Prometheus text format on /metrics and as JSON on /metrics/json.
"""
import re
import time
from collections import deque
from datetime import datetime, timezone, timedelta
from threading import Lock
from typing import Dict, Optional

_NUMERIC_ID = re.compile(r"/\d+")


class MetricsCollector:
    """
    In-memory metrics collector.

    Collects:
    - Counters (monotonically increasing values)
    - Gauges (point-in-time values)
    - Histograms (rolling window of observations)
    """

    def __init__(self, max_observations: int = 10000):
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, deque] = {}
        self._max_observations = max_observations
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)

    def increment(self, name: str, value: int = 1, labels: Dict[str, str] = None) -> None:
        """Increment a counter metric."""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def gauge(self, name: str, value: float, labels: Dict[str, str] = None) -> None:
        """Set a gauge metric (point-in-time value)."""
        key = self._make_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def observe(self, name: str, value: float, labels: Dict[str, str] = None) -> None:
        """Record a histogram observation (e.g., latency)."""
        key = self._make_key(name, labels)
        now = datetime.now(timezone.utc)
        with self._lock:
            if key not in self._histograms:
                self._histograms[key] = deque(maxlen=self._max_observations)
            self._histograms[key].append((now, value))

    def _make_key(self, name: str, labels: Optional[Dict[str, str]]) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_counter(self, name: str, labels: Dict[str, str] = None) -> int:
        key = self._make_key(name, labels)
        return self._counters.get(key, 0)

    def get_gauge(self, name: str, labels: Dict[str, str] = None) -> Optional[float]:
        key = self._make_key(name, labels)
        return self._gauges.get(key)

    def get_histogram_stats(self, name: str, labels: Dict[str, str] = None,
                            window_seconds: int = 300) -> Dict:
        """Get histogram statistics for time window."""
        key = self._make_key(name, labels)
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=window_seconds)

        with self._lock:
            if key not in self._histograms:
                return {"count": 0, "avg": 0, "min": 0, "max": 0, "p95": 0}
            values = [v for ts, v in self._histograms[key] if ts > cutoff]

        if not values:
            return {"count": 0, "avg": 0, "min": 0, "max": 0, "p95": 0}

        values.sort()
        p95_idx = int(len(values) * 0.95)

        return {
            "count": len(values),
            "avg": sum(values) / len(values),
            "min": values[0],
            "max": values[-1],
            "p95": values[p95_idx] if p95_idx < len(values) else values[-1],
        }

    def get_all_metrics(self) -> Dict:
        """Get all metrics for export/display."""
        now = datetime.now(timezone.utc)
        uptime = (now - self._start_time).total_seconds()

        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)

        return {
            "uptime_seconds": uptime,
            "counters": counters,
            "gauges": gauges,
            "request_latency": self.get_histogram_stats("http_request_duration_seconds"),
            "checkout_latency": self.get_histogram_stats("checkout_duration_seconds"),
            "collected_at": now.isoformat(),
        }

    def reset(self) -> None:
        """Drop every recorded value. Used between tests."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


# Global metrics collector
metrics = MetricsCollector()


# ============== Request Metrics Middleware ==============

class RequestMetricsMiddleware:
    """
    Pure ASGI middleware that records latency and status for every request.

    Usage in main.py:
        app.add_middleware(RequestMetricsMiddleware)
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.perf_counter() - start_time
            labels = {
                "method": scope.get("method", "UNKNOWN"),
                "path": self._normalize_path(scope.get("path", "/")),
                "status": str(status_code),
            }
            metrics.observe("http_request_duration_seconds", duration, labels)
            metrics.increment("http_requests_total", labels=labels)
            if status_code >= 400:
                metrics.increment("http_errors_total", labels={"status": str(status_code)})

    @staticmethod
    def _normalize_path(path: str) -> str:
        """Collapse numeric ids so /api/orders/12 and /api/orders/13 aggregate."""
        return _NUMERIC_ID.sub("/:id", path)


# ============== Prometheus Export ==============

def _safe_key(key: str) -> str:
    return key.replace("{", "_").replace("}", "_").replace(",", "_").replace("=", "_")


def get_prometheus_metrics() -> str:
    """Export metrics in Prometheus text format."""
    lines = []
    all_metrics = metrics.get_all_metrics()

    lines.append("# HELP app_uptime_seconds Application uptime in seconds")
    lines.append("# TYPE app_uptime_seconds gauge")
    lines.append(f"app_uptime_seconds {all_metrics['uptime_seconds']:.2f}")

    for key, value in sorted(all_metrics["counters"].items()):
        lines.append(f"{_safe_key(key)} {value}")

    for key, value in sorted(all_metrics["gauges"].items()):
        lines.append(f"{_safe_key(key)} {value:.4f}")

    for name, stats in (
        ("http_request_duration_seconds", all_metrics["request_latency"]),
        ("checkout_duration_seconds", all_metrics["checkout_latency"]),
    ):
        if stats["count"] > 0:
            lines.append(f"{name}_count {stats['count']}")
            lines.append(f"{name}_avg {stats['avg']:.4f}")
            lines.append(f"{name}_p95 {stats['p95']:.4f}")

    return "\n".join(lines)
