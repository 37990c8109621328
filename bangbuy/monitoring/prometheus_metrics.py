"""
Prometheus metrics module for the BangBuy messaging core.

Service timings are fed by the @measure_operation decorator; realtime and
notification counters are fed directly by the broadcaster and the email
pipelines.
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "bangbuy_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "bangbuy_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "bangbuy_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

realtime_events_published_total = Counter(
    "bangbuy_realtime_events_published_total",
    "Realtime events accepted by subscriber queues",
    ["event_type"],
    registry=REGISTRY,
)

realtime_events_dropped_total = Counter(
    "bangbuy_realtime_events_dropped_total",
    "Realtime events dropped because a subscriber queue was full",
    ["event_type"],
    registry=REGISTRY,
)

notifications_total = Counter(
    "bangbuy_notifications_total",
    "Notification outcomes by category",
    ["category", "outcome"],  # sent | skipped | failed | error
    registry=REGISTRY,
)

notifications_dispatch_seconds = Histogram(
    "bangbuy_notifications_dispatch_seconds",
    "Latency of external email dispatch",
    ["category"],
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'MessageService')
            operation: Operation/method name (e.g., 'send_message')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_realtime_event(event_type: str, delivered: int, dropped: int) -> None:
        if delivered:
            realtime_events_published_total.labels(event_type=event_type).inc(delivered)
        if dropped:
            realtime_events_dropped_total.labels(event_type=event_type).inc(dropped)

    @staticmethod
    def record_notification_outcome(category: str, outcome: str) -> None:
        notifications_total.labels(category=category, outcome=outcome).inc()

    @staticmethod
    def observe_notification_dispatch(category: str, duration: float) -> None:
        notifications_dispatch_seconds.labels(category=category).observe(max(duration, 0.0))

    @staticmethod
    def get_metrics() -> bytes:
        """Render all metrics in the Prometheus text exposition format."""
        return generate_latest(REGISTRY)

    @staticmethod
    def get_content_type() -> str:
        return CONTENT_TYPE_LATEST


prometheus_metrics = PrometheusMetrics()
