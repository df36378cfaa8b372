# listing_bot/infra/metrics.py
"""
In-process metrics: labelled counters and latency histograms, served as JSON
at ``GET /metrics``. Each replica keeps its own numbers; aggregate across
replicas in whatever scrapes the endpoint.
"""
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock

from listing_bot.infra.logging_config import get_logger

logger = get_logger(__name__)

# Samples kept per histogram for percentiles; count and sum cover every observation.
HISTOGRAM_WINDOW = 1024


@dataclass
class Histogram:
    count: int = 0
    total: float = 0.0
    recent: deque = field(default_factory=lambda: deque(maxlen=HISTOGRAM_WINDOW))

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.recent.append(value)

    def get_stats(self) -> dict:
        if not self.count:
            return {"count": 0, "sum": 0.0, "avg": 0.0, "min": 0.0, "max": 0.0, "p50": 0.0, "p95": 0.0}

        window = sorted(self.recent)
        last = len(window) - 1
        return {
            "count": self.count,
            "sum": round(self.total, 6),
            "avg": self.total / self.count,
            "min": window[0],
            "max": window[-1],
            "p50": window[last // 2],
            "p95": window[min(int(len(window) * 0.95), last)],
        }


class MetricsCollector:
    """Thread-safe registry keyed by ``name{label=value,...}``."""

    def __init__(self):
        self._counters: dict[str, int] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = Lock()
        self._started_at = time.time()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms.setdefault(key, Histogram()).observe(value)

    def get_metrics(self) -> dict:
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "counters": dict(sorted(self._counters.items())),
                "histograms": {key: h.get_stats() for key, h in sorted(self._histograms.items())},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._started_at = time.time()

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Observes the wall time of a ``with`` block, including blocks that raise."""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self._started: float | None = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._started is not None:
            observe_histogram(self.metric_name, time.perf_counter() - self._started, **self.labels)


class AppMetrics:
    """Named metrics for the intake pipeline, so call sites never spell metric keys."""

    @staticmethod
    def session_opened() -> None:
        inc_counter("sessions_opened_total")

    @staticmethod
    def event_accepted(kind: str) -> None:
        inc_counter("inbound_events_accepted_total", kind=kind)

    @staticmethod
    def event_dropped(kind: str, reason: str) -> None:
        inc_counter("inbound_events_dropped_total", kind=kind, reason=reason)

    @staticmethod
    def idempotency_hit(provider: str) -> None:
        inc_counter("idempotency_hits_total", provider=provider)

    @staticmethod
    def pipeline_outcome(stage: str, outcome: str) -> None:
        inc_counter("pipeline_outcomes_total", stage=stage, outcome=outcome)

    @staticmethod
    def scanner_run(triggered: int) -> None:
        inc_counter("scanner_runs_total")
        if triggered:
            inc_counter("scanner_triggers_total", triggered)

    @staticmethod
    def cleanup_failed(operation: str) -> None:
        inc_counter("media_cleanup_failures_total", operation=operation)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def webhook_validation_failed(provider: str) -> None:
        inc_counter("webhook_validation_failures_total", provider=provider)

    @staticmethod
    def track_extraction_time() -> Timer:
        return Timer("extraction_seconds")

    @staticmethod
    def listing_finalized() -> None:
        inc_counter("listings_finalized_total")

    @staticmethod
    def outbound_failed(kind: str) -> None:
        inc_counter("outbound_failures_total", kind=kind)

    @staticmethod
    def http_request(route: str, status_code: int, duration: float) -> None:
        inc_counter("http_requests_total", route=route, status=str(status_code))
        observe_histogram("http_request_seconds", duration, route=route)
