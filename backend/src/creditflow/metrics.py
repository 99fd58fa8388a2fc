"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter, Gauge

# Task metrics
tasks_created_total = Counter(
    "tasks_created_total",
    "Total generation tasks created",
    labelnames=["style"],
)

tasks_resolved_total = Counter(
    "tasks_resolved_total",
    "Total generation tasks reaching a terminal status",
    labelnames=["status"],  # completed, failed, cancelled
)

generation_attempts_total = Counter(
    "generation_attempts_total",
    "External generation call attempts",
    labelnames=["outcome"],  # success, transport_error, rejected
)

stuck_tasks_swept_total = Counter(
    "stuck_tasks_swept_total",
    "Tasks resolved as failed by the stuck-task sweeper",
)

# Ledger metrics
ledger_operations_total = Counter(
    "ledger_operations_total",
    "Credit ledger mutations",
    labelnames=["operation"],  # deduct, refund, recharge, grant
)

ledger_credits_total = Counter(
    "ledger_credits_total",
    "Credits moved by ledger mutations",
    labelnames=["operation"],
)

insufficient_credit_rejections_total = Counter(
    "insufficient_credit_rejections_total",
    "Deductions or task creations rejected for lack of credits",
)

# Payment metrics
reconcile_outcomes_total = Counter(
    "reconcile_outcomes_total",
    "Payment reconcile outcomes",
    labelnames=["outcome"],  # already_settled, settled_now, pending_upstream, error
)

payment_notifications_total = Counter(
    "payment_notifications_total",
    "Gateway notifications received",
    labelnames=["result"],  # success, fail
)

# Lock metrics
locks_held_gauge = Gauge(
    "locks_held",
    "Lock leases currently held by this process",
)
