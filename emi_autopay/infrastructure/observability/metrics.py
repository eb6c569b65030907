"""Prometheus metrics for installment collection, commissions, batches and notifications"""

from prometheus_client import Counter, Histogram

# Payment metrics
installment_payment_counter = Counter(
    "emi_installment_payments_total",
    "Installment payment attempts",
    ["channel", "outcome"],  # channel: manual | autopay | first
)

installment_amount_counter = Counter(
    "emi_installment_collected_cents_total",
    "Installment amount collected in cents",
    ["channel"],
)

# Commission metrics
commission_credit_counter = Counter(
    "emi_commission_credits_total",
    "Referral commissions credited",
)

commission_amount_counter = Counter(
    "emi_commission_credited_cents_total",
    "Referral commission credited in cents",
    ["pool"],  # AVAILABLE | LOCKED
)

commission_failure_counter = Counter(
    "emi_commission_failures_total",
    "Commission credits that failed after a committed payment",
)

# Batch metrics
batch_run_counter = Counter(
    "emi_autopay_batch_runs_total",
    "Scheduler job runs",
    ["slot_id"],
)

batch_duration_histogram = Histogram(
    "emi_autopay_batch_duration_seconds",
    "Scheduler job duration",
    ["slot_id"],
    buckets=[0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
)

batch_user_failure_counter = Counter(
    "emi_autopay_user_failures_total",
    "Users whose batch processing raised",
)

# Notification webhook metrics
notification_latency_histogram = Histogram(
    "notification_webhook_latency_seconds",
    "Notification webhook response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

notification_failure_counter = Counter(
    "notification_failures_total",
    "Failed notification deliveries",
    ["event_type"],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_payment(channel: str, outcome: str, amount_cents: int = 0) -> None:
    """Record one installment attempt and, on success, the amount collected"""
    installment_payment_counter.labels(channel=channel, outcome=outcome).inc()
    if outcome == "SUCCESS" and amount_cents > 0:
        installment_amount_counter.labels(channel=channel).inc(amount_cents)


def record_commission(available_cents: int, locked_cents: int) -> None:
    commission_credit_counter.inc()
    commission_amount_counter.labels(pool="AVAILABLE").inc(available_cents)
    commission_amount_counter.labels(pool="LOCKED").inc(locked_cents)
