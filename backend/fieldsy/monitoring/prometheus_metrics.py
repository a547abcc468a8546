"""
Prometheus metrics for the Fieldsy booking engine.

Service timings are fed by ``BaseService.measure_operation``; payout, slot
lock and payout-mutex counters are recorded by the services that own those
concerns. A private registry keeps these apart from any default collectors.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "fieldsy_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "fieldsy_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "fieldsy_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

payout_outcomes_total = Counter(
    "fieldsy_payout_outcomes_total",
    "Booking payout attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

slot_lock_events_total = Counter(
    "fieldsy_slot_lock_events_total",
    "Slot lock acquisitions, conflicts and releases",
    ["event"],
    registry=REGISTRY,
)

payout_mutex_total = Counter(
    "fieldsy_payout_mutex_total",
    "Cross-process payout mutex operations",
    ["action", "result"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Thin recording facade so callers don't touch metric objects directly."""

    def record_service_operation(
        self,
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: str | None = None,
    ) -> None:
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    def record_payout_outcome(self, outcome: str) -> None:
        payout_outcomes_total.labels(outcome=outcome).inc()

    def record_slot_lock(self, event: str) -> None:
        slot_lock_events_total.labels(event=event).inc()

    def record_payout_mutex(self, action: str, result: str) -> None:
        payout_mutex_total.labels(action=action, result=result).inc()

    def get_metrics(self) -> bytes:
        return generate_latest(REGISTRY)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST


prometheus_metrics = PrometheusMetrics()
