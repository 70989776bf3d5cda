"""Prometheus metrics for monitoring billing runs, reconciliation and notifier performance"""

from prometheus_client import Counter, Histogram

# Rent generation metrics
rent_generation_counter = Counter(
    "hostel_rent_generation_total",
    "Per-resident outcomes of monthly rent generation",
    ["outcome"],  # created | skipped | errored
)

# Reconciliation metrics
reconciliation_counter = Counter(
    "hostel_reconciliation_total",
    "Per-request outcomes of payment reconciliation",
    ["outcome", "reason"],
)

payment_request_transition_counter = Counter(
    "hostel_payment_request_transitions_total",
    "Payment request status transitions",
    ["status"],  # pending | approved | rejected | cancelled
)

settlement_amount_counter = Counter(
    "hostel_settled_amount_total",
    "Currency units applied to rent records",
    ["source"],  # manual_approval | auto_reconciliation | full_pay | admin_payment
)

# Notifier metrics
notifier_latency_histogram = Histogram(
    "notifier_latency_seconds",
    "Notifier service response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

notifier_failure_counter = Counter(
    "notifier_failures_total",
    "Failed notifier deliveries",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_settlement(source: str, amount) -> None:
    """Record money applied by one settlement"""
    if amount > 0:
        settlement_amount_counter.labels(source=source).inc(float(amount))
