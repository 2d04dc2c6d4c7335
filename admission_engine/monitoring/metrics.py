"""
Prometheus metrics for the reconciliation engine.

Tracks:
- Slot reservations and releases
- Application transitions
- Payment initializations and finalizations per confirmation channel
- Webhook deliveries
- Provider call latency
- Pending payment sweeps
"""
from prometheus_client import Counter, Histogram

slot_operations_total = Counter(
    "slot_operations_total",
    "Slot allocator operations",
    ["operation", "outcome"],  # reserve/release, ok/unavailable/noop
)

application_transitions_total = Counter(
    "application_transitions_total",
    "Application status transitions",
    ["from_status", "to_status"],
)

payment_initializations_total = Counter(
    "payment_initializations_total",
    "Payment initializations",
    ["outcome"],  # opened, provider_unavailable, provider_rejected
)

payment_finalizations_total = Counter(
    "payment_finalizations_total",
    "Payment finalization calls",
    ["source", "outcome"],  # outcome: completed, failed, unchanged, pending
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Provider webhook deliveries",
    ["event_type", "status"],  # processed, ignored, invalid_signature
)

provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Payment provider call duration in seconds",
    ["operation", "status"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

pending_payment_sweeps_total = Counter(
    "pending_payment_sweeps_total",
    "Pending payments handled by the sweeper",
    ["action"],  # reverified, deleted_orphan, skipped
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_slot_operation(operation: str, outcome: str) -> None:
        slot_operations_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        application_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_initialization(outcome: str) -> None:
        payment_initializations_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_finalization(source: str, outcome: str) -> None:
        payment_finalizations_total.labels(source=source, outcome=outcome).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str) -> None:
        webhook_events_total.labels(event_type=event_type, status=status).inc()

    @staticmethod
    def record_provider_call(operation: str, status: str, duration_seconds: float) -> None:
        provider_request_duration_seconds.labels(operation=operation, status=status).observe(
            duration_seconds
        )

    @staticmethod
    def record_sweep(action: str, count: int = 1) -> None:
        if count > 0:
            pending_payment_sweeps_total.labels(action=action).inc(count)


# Export singleton instance
metrics = MetricsCollector()
