from __future__ import annotations

from dataclasses import dataclass

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST

from app.stocklink.core.config import settings


@dataclass
class MetricsSnapshot:
    content: bytes
    content_type: str


class Metrics:
    def __init__(self) -> None:
        self.enabled = bool(settings.METRICS_ENABLED)
        self._registry = None
        self._http_requests_total = None
        self._http_request_duration_ms = None
        self._transfer_transitions_total = None
        self._transfer_conflicts_total = None
        self._stock_rejections_total = None
        self._transfers_expired_total = None
        self._lock_wait_timeout_total = None
        self._invariants_violation_total = None
        if self.enabled:
            self._initialize_registry()

    def _initialize_registry(self) -> None:
        self._registry = CollectorRegistry()
        self._http_requests_total = Counter(
            "http_requests_total",
            "HTTP requests by route/method/status.",
            ["route", "method", "status"],
            registry=self._registry,
        )
        self._http_request_duration_ms = Histogram(
            "http_request_duration_ms",
            "HTTP request latency in milliseconds.",
            ["route", "method", "status"],
            buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
            registry=self._registry,
        )
        self._transfer_transitions_total = Counter(
            "transfer_transitions_total",
            "Transfer workflow actions by action/result.",
            ["action", "result"],
            registry=self._registry,
        )
        self._transfer_conflicts_total = Counter(
            "transfer_conflicts_total",
            "Optimistic version conflicts on transfers.",
            registry=self._registry,
        )
        self._stock_rejections_total = Counter(
            "stock_rejections_total",
            "Stock mutations refused because quantity would go negative.",
            registry=self._registry,
        )
        self._transfers_expired_total = Counter(
            "transfers_expired_total",
            "Transfers expired by the sweep.",
            registry=self._registry,
        )
        self._lock_wait_timeout_total = Counter(
            "lock_wait_timeout_total",
            "Lock wait timeout occurrences.",
            registry=self._registry,
        )
        self._invariants_violation_total = Counter(
            "invariants_violation_total",
            "Integrity invariant violations.",
            ["check_id"],
            registry=self._registry,
        )

    def reset(self) -> None:
        if not self.enabled:
            return
        self._initialize_registry()

    def record_http_request(self, *, route: str, method: str, status_code: int, latency_ms: float) -> None:
        if not self.enabled:
            return
        labels = {"route": route, "method": method, "status": str(status_code)}
        self._http_requests_total.labels(**labels).inc()
        self._http_request_duration_ms.labels(**labels).observe(latency_ms)

    def record_transition(self, *, action: str, result: str) -> None:
        if not self.enabled:
            return
        self._transfer_transitions_total.labels(action=action, result=result).inc()

    def increment_conflict(self) -> None:
        if not self.enabled:
            return
        self._transfer_conflicts_total.inc()

    def increment_stock_rejection(self) -> None:
        if not self.enabled:
            return
        self._stock_rejections_total.inc()

    def increment_expired(self, count: int = 1) -> None:
        if not self.enabled or count <= 0:
            return
        self._transfers_expired_total.inc(count)

    def increment_lock_wait_timeout(self) -> None:
        if not self.enabled:
            return
        self._lock_wait_timeout_total.inc()

    def increment_invariant_violation(self, check_id: str, count: int = 1) -> None:
        if not self.enabled:
            return
        self._invariants_violation_total.labels(check_id=check_id).inc(count)

    def render(self) -> MetricsSnapshot:
        if not self.enabled:
            return MetricsSnapshot(content=b"metrics_disabled\n", content_type="text/plain")
        return MetricsSnapshot(content=generate_latest(self._registry), content_type=CONTENT_TYPE_LATEST)


metrics = Metrics()
