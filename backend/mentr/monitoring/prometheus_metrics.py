"""
Prometheus metrics for the settlement engine.

Service timings come from @measure_operation; payout, refund, scheduler and
notification counters are recorded by the services that own those flows.
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Custom registry so tests and multiple apps don't collide on the default one
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "mentr_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "mentr_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "mentr_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

payouts_total = Counter(
    "mentr_payouts_total",
    "Settlement attempts by outcome",
    ["source", "outcome"],
    registry=REGISTRY,
)

transfer_failures_total = Counter(
    "mentr_transfer_failures_total",
    "Transfer gateway failures by kind",
    ["kind", "failure_code"],
    registry=REGISTRY,
)

refunds_total = Counter(
    "mentr_refunds_total",
    "Refund executions by route and resulting status",
    ["route", "status"],
    registry=REGISTRY,
)

scheduler_job_runs_total = Counter(
    "mentr_scheduler_job_runs_total",
    "Scheduler job runs by result",
    ["job", "result"],
    registry=REGISTRY,
)

scheduler_lock_total = Counter(
    "mentr_scheduler_lock_total",
    "Single-flight lock operations",
    ["action", "result"],
    registry=REGISTRY,
)

notifications_total = Counter(
    "mentr_notifications_total",
    "Notification outbox deliveries by status",
    ["category", "status"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Static recorders for the counters above."""

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
            service: Service name (e.g., 'SettlementService')
            operation: Operation name (e.g., 'settle_booking')
            duration: Operation duration in seconds
            status: 'success' or 'error'
            error_type: Exception class name when status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_payout(outcome: str, source: str = "booking") -> None:
        payouts_total.labels(source=source, outcome=outcome).inc()

    @staticmethod
    def record_transfer_failure(kind: str, failure_code: str) -> None:
        transfer_failures_total.labels(kind=kind, failure_code=failure_code).inc()

    @staticmethod
    def record_refund(route: str, status: str) -> None:
        refunds_total.labels(route=route, status=status).inc()

    @staticmethod
    def record_job_run(job: str, result: str) -> None:
        scheduler_job_runs_total.labels(job=job, result=result).inc()

    @staticmethod
    def record_scheduler_lock(action: str, result: str) -> None:
        scheduler_lock_total.labels(action=action, result=result).inc()

    @staticmethod
    def record_notification(category: str, status: str) -> None:
        notifications_total.labels(category=category, status=status).inc()

    @staticmethod
    def get_metrics() -> bytes:
        return generate_latest(REGISTRY)

    @staticmethod
    def get_content_type() -> str:
        return CONTENT_TYPE_LATEST


prometheus_metrics = PrometheusMetrics()

__all__ = ["REGISTRY", "PrometheusMetrics", "prometheus_metrics"]
