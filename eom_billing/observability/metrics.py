"""
Prometheus metrics for the billing engine.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Statements & Attachment ─────────────────────────────────
statements_created_total = Counter(
    "statements_created_total",
    "Statements created for a new billing window",
    ["currency"],
)

charges_attached_total = Counter(
    "charges_attached_total",
    "Order charges accumulated onto an open statement",
    ["currency"],
)

duplicate_key_races_total = Counter(
    "statement_duplicate_key_races_total",
    "Concurrent statement creations resolved by re-fetching the winning row",
)

early_finalization_conflicts_total = Counter(
    "early_finalization_conflicts_total",
    "Orders that arrived for a window whose statement was no longer open",
    ["reason"],
)

# ── Billing Cycle ────────────────────────────────────────────
statements_claimed_total = Counter(
    "statements_claimed_total",
    "Statements claimed by a billing cycle run",
)

statements_finalized_total = Counter(
    "statements_finalized_total",
    "Statements finalized into an external invoice",
    ["currency"],
)

invoice_failures_total = Counter(
    "external_invoice_failures_total",
    "Invoice creation calls that failed",
    ["error_code"],
)

stale_claims_released_total = Counter(
    "stale_claims_released_total",
    "Claims returned to open by the timeout sweep",
)

billing_run_duration_seconds = Histogram(
    "billing_run_duration_seconds",
    "Time for a scheduled billing run",
    ["job"],
    buckets=[0.5, 1, 5, 10, 30, 60, 300, 900],
)

# ── Payments ─────────────────────────────────────────────────
payment_events_total = Counter(
    "payment_events_total",
    "Payment confirmation webhooks processed",
    ["outcome"],
)

payment_retries_total = Counter(
    "payment_retries_total",
    "Payment collection retries triggered",
)

retry_exhausted_total = Counter(
    "payment_retry_exhausted_total",
    "Statements moved to PAYMENT_FAILED after the retry window",
)

# ── Order Events ─────────────────────────────────────────────
order_event_failures_total = Counter(
    "order_event_publish_failures_total",
    "Outcome events that could not be handed to the order queue",
    ["event_type"],
)

order_events_redelivered_total = Counter(
    "order_events_redelivered_total",
    "Outcome events delivered by the outbox sweep after an earlier failure",
)

# ── Conflict Queue ───────────────────────────────────────────
review_queue_depth = Gauge(
    "conflict_review_queue_depth",
    "Current number of items in the operator conflict queue",
    ["status"],
)
