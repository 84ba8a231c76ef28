import logging

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.bookings = None
            self.holds = None
            self.assignments = None
            self.webhook_events = None
            self.sweep_items = None
            self.http_5xx = None
            return

        self.bookings = Counter(
            "bookings_total",
            "Booking lifecycle events.",
            ["action"],
            registry=self.registry,
        )
        self.holds = Counter(
            "slot_holds_total",
            "Slot hold attempts by result.",
            ["result"],
            registry=self.registry,
        )
        self.assignments = Counter(
            "worker_assignments_total",
            "Worker assignment lifecycle events.",
            ["action"],
            registry=self.registry,
        )
        self.webhook_events = Counter(
            "webhook_events_total",
            "Webhook events processed by result.",
            ["result"],
            registry=self.registry,
        )
        self.sweep_items = Counter(
            "sweep_items_total",
            "Items handled by background sweeps.",
            ["job", "result"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )

    def record_booking(self, action: str, count: int = 1) -> None:
        if not self.enabled or self.bookings is None:
            return
        if count <= 0:
            return
        self.bookings.labels(action=action).inc(count)

    def record_hold(self, result: str) -> None:
        if not self.enabled or self.holds is None:
            return
        self.holds.labels(result=result).inc()

    def record_assignment(self, action: str) -> None:
        if not self.enabled or self.assignments is None:
            return
        self.assignments.labels(action=action).inc()

    def record_webhook(self, result: str) -> None:
        if not self.enabled or self.webhook_events is None:
            return
        self.webhook_events.labels(result=result).inc()

    def record_sweep(self, job: str, result: str, count: int = 1) -> None:
        if not self.enabled or self.sweep_items is None:
            return
        if count <= 0:
            return
        self.sweep_items.labels(job=job, result=result).inc(count)

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
