"""
Payment retry coordinator.

Only touches FINALIZED statements with a recorded payment failure. It never
claims or finalizes anything, so a window that has not closed can never be
pulled in by a retry day. After PAYMENT_RETRY_DAYS retry days without
success the statement moves to PAYMENT_FAILED and its orders go to dunning.

Payment webhooks keep arriving while a retry day runs. A statement settled
after it was listed is skipped; the rest of the day carries on.
"""

import time
from datetime import date
from typing import Optional

import structlog

from eom_billing.billing.cycle_runner import publish_outcome, redeliver_outcomes
from eom_billing.billing.errors import (
    ExternalInvoiceFailure,
    InvalidStateTransition,
    RetryExhausted,
    StatementImmutable,
)
from eom_billing.billing.events import OrderEventSink
from eom_billing.billing.store import StatementStore
from eom_billing.config import settings
from eom_billing.invoicing.base import InvoicingClient
from eom_billing.models.tables import Statement
from eom_billing.observability import metrics
from eom_billing.observability.logging import billing_run_context
from eom_billing.schemas.billing import RetrySummary

logger = structlog.get_logger(__name__)


class RetryCoordinator:

    def __init__(
        self,
        store: StatementStore,
        invoicing: InvoicingClient,
        events: OrderEventSink,
        max_retry_days: Optional[int] = None,
    ):
        self.store = store
        self.invoicing = invoicing
        self.events = events
        self.max_retry_days = (
            settings.PAYMENT_RETRY_DAYS if max_retry_days is None else max_retry_days
        )

    def _ensure_budget(self, statement: Statement) -> None:
        if statement.payment_retry_count >= self.max_retry_days:
            raise RetryExhausted(str(statement.statement_id), statement.payment_retry_count)

    async def run_retry_day(self, today: date) -> RetrySummary:
        started = time.time()
        summary = RetrySummary(run_date=today)

        with billing_run_context(business_date=today.isoformat(), job="payment_retry"):
            summary.redelivered = await redeliver_outcomes(self.store, self.events)

            candidates = await self.store.list_retry_candidates(today)
            logger.info("retry_day_started", candidates=len(candidates))

            for statement in candidates:
                try:
                    outcome = await self._process(statement, today)
                except (InvalidStateTransition, StatementImmutable) as e:
                    logger.info(
                        "retry_skipped",
                        statement_id=str(statement.statement_id),
                        error_code=e.error_code,
                    )
                    summary.skipped += 1
                    continue

                if outcome == "retried":
                    summary.retried += 1
                elif outcome == "retry_failed":
                    summary.retry_failures += 1
                elif outcome == "exhausted":
                    summary.exhausted += 1
                else:
                    summary.skipped += 1

            metrics.billing_run_duration_seconds.labels(job="retry").observe(time.time() - started)
            logger.info(
                "retry_day_completed",
                retried=summary.retried,
                retry_failures=summary.retry_failures,
                exhausted=summary.exhausted,
                skipped=summary.skipped,
                redelivered=summary.redelivered,
            )
        return summary

    async def _process(self, statement: Statement, today: date) -> str:
        """Returns retried, retry_failed, exhausted or already_recorded."""
        try:
            self._ensure_budget(statement)
            return await self._retry(statement, today)
        except RetryExhausted as exhausted:
            await self._exhaust(statement, exhausted)
            return "exhausted"

    async def _retry(self, statement: Statement, today: date) -> str:
        still_failed = False
        try:
            await self.invoicing.retry_payment(statement.external_invoice_ref)
        except ExternalInvoiceFailure as e:
            logger.error(
                "payment_retry_call_failed",
                statement_id=str(statement.statement_id),
                invoice_ref=statement.external_invoice_ref,
                error_code=e.error_code,
                error=e.message,
                retryable=e.retryable,
            )
            if not e.retryable:
                # Collection can never be reattempted for this invoice
                raise RetryExhausted(
                    str(statement.statement_id), statement.payment_retry_count
                ) from e
            still_failed = True

        recorded = await self.store.record_retry_attempt(
            statement.statement_id, today, still_failed=still_failed
        )
        if recorded is None:
            logger.info("retry_already_recorded", statement_id=str(statement.statement_id))
            return "already_recorded"

        metrics.payment_retries_total.inc()
        logger.info(
            "payment_retry_triggered",
            statement_id=str(statement.statement_id),
            invoice_ref=statement.external_invoice_ref,
            retry_count=recorded.payment_retry_count,
        )
        return "retry_failed" if still_failed else "retried"

    async def _exhaust(self, statement: Statement, exhausted: RetryExhausted) -> None:
        failed = await self.store.mark_payment_failed(statement.statement_id)
        metrics.retry_exhausted_total.inc()
        logger.error(
            "retry_exhausted",
            statement_id=str(statement.statement_id),
            account_id=statement.account_id,
            invoice_ref=statement.external_invoice_ref,
            attempts=exhausted.attempts,
        )
        await publish_outcome(self.store, self.events, failed)
