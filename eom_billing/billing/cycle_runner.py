"""
Billing cycle runner: turns closed windows into external invoices.

run(today):  SWEEP -> OPEN BATCH -> CLAIM -> INVOICE -> FINALIZE -> CLOSE BATCH

Only statements whose window ended on or before the supplied business
date are ever claimed. A failed invoice call leaves the statement claimed;
the stale-claim sweep at the start of a later run returns it to OPEN.
Payment outcomes arrive later through handle_invoice_event.
"""

import time
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import structlog

from eom_billing.billing.errors import (
    ExternalInvoiceFailure,
    InvalidStateTransition,
    RetryExhausted,
    StatementImmutable,
)
from eom_billing.billing.events import OrderEventSink, StatementEvent
from eom_billing.billing.store import StatementStore
from eom_billing.config import settings
from eom_billing.invoicing.base import InvoicingClient
from eom_billing.models.enums import PaymentOutcome, StatementEventType, StatementStatus
from eom_billing.models.tables import Statement, StatementLine
from eom_billing.observability import metrics
from eom_billing.observability.logging import billing_run_context
from eom_billing.schemas.billing import (
    CycleRunSummary,
    InvoiceLineItem,
    InvoiceWebhookEvent,
    StatementAmounts,
)

logger = structlog.get_logger(__name__)


def build_line_items(lines: list[StatementLine]) -> list[InvoiceLineItem]:
    return [
        InvoiceLineItem(
            order_ref=line.order_ref,
            description=line.description or f"Order {line.order_ref}",
            amount=line.amount,
            ordered_at=line.ordered_at,
        )
        for line in lines
    ]


def invoice_metadata(statement: Statement, batch_id: Optional[uuid.UUID]) -> dict[str, str]:
    return {
        "idempotency_key": f"statement-{statement.statement_id}",
        "statement_id": str(statement.statement_id),
        "currency": statement.currency,
        "window_start": statement.window_start.isoformat(),
        "window_end": statement.window_end.isoformat(),
        "batch_id": str(batch_id) if batch_id else "",
    }


_OUTCOME_EVENTS = {
    StatementStatus.PAID.value: (StatementEventType.STATEMENT_PAID, ""),
    StatementStatus.PAYMENT_FAILED.value: (
        StatementEventType.STATEMENT_PAYMENT_FAILED,
        RetryExhausted.error_code,
    ),
}


async def outcome_event(store: StatementStore, statement: Statement) -> StatementEvent:
    """Build the order-facing event for a PAID or PAYMENT_FAILED statement."""
    event_type, reason = _OUTCOME_EVENTS[statement.status]
    lines = await store.get_lines(statement.statement_id)
    return StatementEvent(
        # Stable per statement and outcome so redelivery is recognisable downstream
        event_id=f"{statement.statement_id}:{event_type.value}",
        event_type=event_type,
        statement_id=str(statement.statement_id),
        account_id=statement.account_id,
        currency=statement.currency,
        window_start=statement.window_start,
        window_end=statement.window_end,
        external_invoice_ref=statement.external_invoice_ref or "",
        amount_total=statement.amount_total,
        order_refs=[line.order_ref for line in lines],
        reason=reason,
    )


async def publish_outcome(
    store: StatementStore, events: OrderEventSink, statement: Statement
) -> bool:
    """
    Deliver a terminal outcome event and mark it sent.
    A failed delivery leaves the statement in the outbox for redeliver_outcomes.
    """
    event = await outcome_event(store, statement)
    try:
        await events.publish(event)
    except Exception as e:
        metrics.order_event_failures_total.labels(event_type=event.event_type.value).inc()
        logger.error(
            "order_event_publish_failed",
            statement_id=event.statement_id,
            event_type=event.event_type.value,
            error=str(e)[:200],
        )
        return False
    await store.mark_outcome_published(statement.statement_id)
    return True


async def redeliver_outcomes(store: StatementStore, events: OrderEventSink) -> int:
    """Publish every outcome event that has not reached the order queue yet."""
    delivered = 0
    for statement in await store.list_unpublished_outcomes():
        if await publish_outcome(store, events, statement):
            delivered += 1
    if delivered:
        metrics.order_events_redelivered_total.inc(delivered)
        logger.warning("order_events_redelivered", count=delivered)
    return delivered


class BillingCycleRunner:
    """Daily job that finalizes every statement whose window has closed."""

    def __init__(
        self,
        store: StatementStore,
        invoicing: InvoicingClient,
        events: OrderEventSink,
        batch_size: Optional[int] = None,
        claim_timeout: Optional[timedelta] = None,
    ):
        self.store = store
        self.invoicing = invoicing
        self.events = events
        self.batch_size = batch_size or settings.CLAIM_BATCH_SIZE
        self.claim_timeout = claim_timeout or timedelta(seconds=settings.CLAIM_TIMEOUT_SECONDS)

    async def run(self, today: date, now: Optional[datetime] = None) -> CycleRunSummary:
        """
        Finalize statements due as of the business date `today`.
        Safe to re-run: finalized statements are never claimed again.
        """
        started = time.time()
        now = now or datetime.now(timezone.utc)

        released = await self.store.release_stale_claims(older_than=now - self.claim_timeout)
        batch = await self.store.open_batch(run_date=today)
        summary = CycleRunSummary(batch_id=str(batch.batch_id), run_date=today, released=released)
        claimed_ids: list[uuid.UUID] = []

        with billing_run_context(business_date=today.isoformat(), batch_id=str(batch.batch_id)):
            logger.info("billing_cycle_started", released=released)

            while True:
                claimed = await self.store.claim_due_statements(
                    today, self.batch_size, batch_id=batch.batch_id, now=now
                )
                if not claimed:
                    break
                for statement in claimed:
                    claimed_ids.append(statement.statement_id)
                    outcome = await self._finalize(statement, batch.batch_id)
                    if outcome == "finalized":
                        summary.finalized += 1
                    elif outcome == "failed":
                        summary.failed += 1
                    else:
                        summary.skipped += 1

            summary.claimed = len(claimed_ids)
            await self.store.complete_batch(
                batch.batch_id,
                claimed_ids,
                finalized=summary.finalized,
                failed=summary.failed,
                released=released,
            )
            metrics.billing_run_duration_seconds.labels(job="cycle").observe(time.time() - started)
            logger.info(
                "billing_cycle_completed",
                claimed=summary.claimed,
                finalized=summary.finalized,
                failed=summary.failed,
                skipped=summary.skipped,
            )
        return summary

    async def _finalize(self, statement: Statement, batch_id: uuid.UUID) -> str:
        """Invoice one claimed statement. Returns finalized, failed or skipped."""
        lines = await self.store.get_lines(statement.statement_id)
        try:
            invoice_ref = await self.invoicing.create_invoice(
                statement.account_id,
                build_line_items(lines),
                invoice_metadata(statement, batch_id),
            )
        except ExternalInvoiceFailure as e:
            metrics.invoice_failures_total.labels(error_code=e.error_code).inc()
            logger.error(
                "invoice_creation_failed",
                statement_id=str(statement.statement_id),
                account_id=statement.account_id,
                error_code=e.error_code,
                error=e.message,
            )
            return "failed"

        try:
            await self.store.mark_finalized(
                statement.statement_id, invoice_ref, claim_token=statement.claim_token
            )
        except InvalidStateTransition as e:
            # Claim was swept and taken by another run; that run owns it now
            logger.warning(
                "finalize_skipped",
                statement_id=str(statement.statement_id),
                current=e.current,
                invoice_ref=invoice_ref,
            )
            return "skipped"

        metrics.statements_finalized_total.labels(currency=statement.currency).inc()
        logger.info(
            "statement_finalized",
            statement_id=str(statement.statement_id),
            account_id=statement.account_id,
            invoice_ref=invoice_ref,
            lines=len(lines),
            total=str(statement.amount_total),
        )
        return "finalized"

    # ─── Webhook Handling ─────────────────────────────────────

    async def handle_invoice_event(self, event: InvoiceWebhookEvent) -> str:
        """
        Apply a payment confirmation from the invoicing collaborator.
        Returns paid, duplicate or payment_failed_recorded.
        """
        statement = await self.store.get_by_invoice_ref(event.external_invoice_ref)

        if event.status == PaymentOutcome.SUCCEEDED:
            if statement.status == StatementStatus.PAID.value:
                metrics.payment_events_total.labels(outcome="duplicate").inc()
                logger.info(
                    "payment_event_duplicate",
                    statement_id=str(statement.statement_id),
                    invoice_ref=event.external_invoice_ref,
                )
                if statement.outcome_event_published_at is None:
                    await publish_outcome(self.store, self.events, statement)
                return "duplicate"

            amounts = event.amounts or StatementAmounts(
                subtotal=statement.amount_subtotal,
                discount=statement.amount_discount,
                tax=statement.amount_tax,
                total=statement.amount_total,
            )
            paid = await self.store.mark_paid(statement.statement_id, amounts, event.paid_at)
            metrics.payment_events_total.labels(outcome="paid").inc()
            logger.info(
                "statement_paid",
                statement_id=str(paid.statement_id),
                invoice_ref=event.external_invoice_ref,
                total=str(paid.amount_total),
            )
            await publish_outcome(self.store, self.events, paid)
            return "paid"

        try:
            await self.store.record_payment_failure(
                statement.statement_id,
                event.failure_reason,
                failed_at=datetime.now(timezone.utc),
            )
        except StatementImmutable:
            metrics.payment_events_total.labels(outcome="rejected").inc()
            logger.error(
                "payment_failure_for_paid_statement",
                statement_id=str(statement.statement_id),
                invoice_ref=event.external_invoice_ref,
            )
            raise
        metrics.payment_events_total.labels(outcome="failed").inc()
        logger.warning(
            "payment_failed",
            statement_id=str(statement.statement_id),
            invoice_ref=event.external_invoice_ref,
            reason=event.failure_reason,
            retries_so_far=statement.payment_retry_count,
        )
        return "payment_failed_recorded"
