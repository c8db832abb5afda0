"""
Tests for the billing cycle runner and payment webhook handling.
"""

import asyncio
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from eom_billing.billing.cycle_runner import BillingCycleRunner
from eom_billing.billing.errors import StatementImmutable, StatementNotFound
from eom_billing.invoicing.stub_client import StubInvoicingClient
from eom_billing.models.enums import StatementEventType
from eom_billing.models.tables import ReconciliationBatch
from eom_billing.schemas.billing import InvoiceWebhookEvent, StatementAmounts

RUN_AT = datetime(2026, 1, 26, 0, 5, tzinfo=timezone.utc)
PAID_AT = datetime(2026, 1, 27, 9, 0, tzinfo=timezone.utc)


def _succeeded(ref, amounts=None):
    return InvoiceWebhookEvent(
        external_invoice_ref=ref, status="succeeded", paid_at=PAID_AT, amounts=amounts
    )


def _failed(ref, reason="card_declined"):
    return InvoiceWebhookEvent(external_invoice_ref=ref, status="failed", failure_reason=reason)


class TestCycleRun:

    async def test_finalizes_closed_windows_only(self, attachment, runner, store, invoicing, make_order):
        jan = await attachment.attach(make_order(date(2026, 1, 10), "50.00"))
        feb = await attachment.attach(make_order(date(2026, 1, 27), "20.00"))

        summary = await runner.run(date(2026, 1, 25), now=RUN_AT)

        assert summary.claimed == 1
        assert summary.finalized == 1
        assert (await store.get_statement(jan.statement_id)).status == "FINALIZED"
        assert (await store.get_statement(feb.statement_id)).status == "OPEN"
        assert [c["account_id"] for c in invoicing.create_calls] == ["acct-A"]

    async def test_nothing_due_before_window_end(self, attachment, runner, invoicing, make_order):
        await attachment.attach(make_order(date(2026, 1, 10)))
        summary = await runner.run(date(2026, 1, 24), now=RUN_AT)
        assert summary.claimed == 0
        assert invoicing.create_calls == []

    async def test_invoice_carries_lines_and_idempotency_key(
        self, attachment, runner, store, invoicing, make_order
    ):
        stmt = await attachment.attach(make_order(date(2026, 1, 10), "50.00", order_ref="ord-a"))
        await attachment.attach(make_order(date(2026, 1, 20), "30.00", order_ref="ord-b"))
        await runner.run(date(2026, 1, 25), now=RUN_AT)

        [call] = invoicing.create_calls
        assert [item.order_ref for item in call["line_items"]] == ["ord-a", "ord-b"]
        assert call["metadata"]["idempotency_key"] == f"statement-{stmt.statement_id}"
        assert call["metadata"]["window_end"] == "2026-01-25"

        finalized = await store.get_statement(stmt.statement_id)
        assert finalized.external_invoice_ref in invoicing.invoices
        assert invoicing.invoices[finalized.external_invoice_ref]["total"] == Decimal("80.00")
        assert not finalized.is_claimed

    async def test_processes_more_than_one_claim_batch(self, attachment, runner, make_order):
        for i in range(5):
            await attachment.attach(make_order(date(2026, 1, 10), account_id=f"acct-{i}"))
        summary = await runner.run(date(2026, 1, 25), now=RUN_AT)
        assert summary.claimed == 5
        assert summary.finalized == 5

    async def test_rerun_is_idempotent(self, attachment, runner, invoicing, make_order):
        await attachment.attach(make_order(date(2026, 1, 10)))
        first = await runner.run(date(2026, 1, 25), now=RUN_AT)
        second = await runner.run(date(2026, 1, 25), now=RUN_AT)

        assert first.finalized == 1
        assert second.claimed == 0
        assert len(invoicing.create_calls) == 1

    async def test_concurrent_runs_invoice_each_statement_once(
        self, attachment, runner, invoicing, make_order
    ):
        for i in range(6):
            await attachment.attach(make_order(date(2026, 1, 10), account_id=f"acct-{i}"))

        summaries = await asyncio.gather(
            runner.run(date(2026, 1, 25), now=RUN_AT),
            runner.run(date(2026, 1, 25), now=RUN_AT),
        )
        assert sum(s.finalized for s in summaries) == 6
        assert len(invoicing.create_calls) == 6

    async def test_batch_is_recorded(self, attachment, runner, session_factory, make_order):
        stmt = await attachment.attach(make_order(date(2026, 1, 10)))
        summary = await runner.run(date(2026, 1, 25), now=RUN_AT)

        async with session_factory() as session:
            batch = await session.get(ReconciliationBatch, uuid.UUID(summary.batch_id))
        assert batch.run_date == date(2026, 1, 25)
        assert batch.claimed_statement_ids == [str(stmt.statement_id)]
        assert batch.finalized_count == 1
        assert batch.failed_count == 0
        assert batch.completed_at is not None


class TestInvoiceFailure:

    async def test_failure_leaves_statement_claimed(self, attachment, store, events, make_order):
        invoicing = StubInvoicingClient(fail_accounts={"acct-bad"})
        runner = BillingCycleRunner(store, invoicing, events, batch_size=2)
        bad = await attachment.attach(make_order(date(2026, 1, 10), account_id="acct-bad"))
        good = await attachment.attach(make_order(date(2026, 1, 10), account_id="acct-good"))

        summary = await runner.run(date(2026, 1, 25), now=RUN_AT)

        assert summary.finalized == 1
        assert summary.failed == 1
        stuck = await store.get_statement(bad.statement_id)
        assert stuck.status == "OPEN"
        assert stuck.is_claimed
        assert (await store.get_statement(good.statement_id)).status == "FINALIZED"

    async def test_stale_claim_swept_and_retried_next_run(self, attachment, store, events, make_order):
        invoicing = StubInvoicingClient(fail_accounts={"acct-bad"})
        runner = BillingCycleRunner(
            store, invoicing, events, batch_size=2, claim_timeout=timedelta(hours=1)
        )
        stmt = await attachment.attach(make_order(date(2026, 1, 10), account_id="acct-bad"))
        await runner.run(date(2026, 1, 25), now=RUN_AT)

        # Within the timeout the claim is left alone
        early = await runner.run(date(2026, 1, 25), now=RUN_AT + timedelta(minutes=10))
        assert early.released == 0
        assert early.claimed == 0

        invoicing.fail_accounts.clear()
        later = await runner.run(date(2026, 1, 26), now=RUN_AT + timedelta(days=1))
        assert later.released == 1
        assert later.finalized == 1
        assert (await store.get_statement(stmt.statement_id)).status == "FINALIZED"


class TestInvoiceWebhook:

    async def _finalized(self, attachment, runner, store, make_order):
        stmt = await attachment.attach(make_order(date(2026, 1, 10), "80.00"))
        await runner.run(date(2026, 1, 25), now=RUN_AT)
        return await store.get_statement(stmt.statement_id)

    async def test_succeeded_marks_paid_and_publishes(
        self, attachment, runner, store, events, make_order
    ):
        stmt = await self._finalized(attachment, runner, store, make_order)
        amounts = StatementAmounts(subtotal=Decimal("80.00"), tax=Decimal("6.40"), total=Decimal("86.40"))

        outcome = await runner.handle_invoice_event(_succeeded(stmt.external_invoice_ref, amounts))

        assert outcome == "paid"
        paid = await store.get_statement(stmt.statement_id)
        assert paid.status == "PAID"
        assert paid.amount_tax == Decimal("6.40")
        assert paid.amount_total == Decimal("86.40")

        [event] = events.of_type(StatementEventType.STATEMENT_PAID)
        assert event.statement_id == str(stmt.statement_id)
        assert len(event.order_refs) == 1

    async def test_succeeded_without_amounts_keeps_accumulated(
        self, attachment, runner, store, make_order
    ):
        stmt = await self._finalized(attachment, runner, store, make_order)
        await runner.handle_invoice_event(_succeeded(stmt.external_invoice_ref))
        assert (await store.get_statement(stmt.statement_id)).amount_total == Decimal("80.00")

    async def test_duplicate_success_is_ignored(self, attachment, runner, store, events, make_order):
        stmt = await self._finalized(attachment, runner, store, make_order)
        await runner.handle_invoice_event(_succeeded(stmt.external_invoice_ref))
        outcome = await runner.handle_invoice_event(_succeeded(stmt.external_invoice_ref))
        assert outcome == "duplicate"
        assert len(events.events) == 1

    async def test_duplicate_success_republishes_lost_event(
        self, attachment, store, invoicing, flaky_events, make_order
    ):
        runner = BillingCycleRunner(store, invoicing, flaky_events, batch_size=2)
        stmt = await self._finalized(attachment, runner, store, make_order)

        # Order queue is down when the first confirmation lands
        assert await runner.handle_invoice_event(_succeeded(stmt.external_invoice_ref)) == "paid"
        paid = await store.get_statement(stmt.statement_id)
        assert paid.status == "PAID"
        assert paid.outcome_event_published_at is None
        assert flaky_events.events == []

        assert await runner.handle_invoice_event(_succeeded(stmt.external_invoice_ref)) == "duplicate"
        [event] = flaky_events.of_type(StatementEventType.STATEMENT_PAID)
        assert event.event_id == f"{stmt.statement_id}:{StatementEventType.STATEMENT_PAID.value}"
        assert (await store.get_statement(stmt.statement_id)).outcome_event_published_at

        await runner.handle_invoice_event(_succeeded(stmt.external_invoice_ref))
        assert len(flaky_events.events) == 1

    async def test_failed_records_and_stays_finalized(self, attachment, runner, store, make_order):
        stmt = await self._finalized(attachment, runner, store, make_order)
        outcome = await runner.handle_invoice_event(_failed(stmt.external_invoice_ref))

        assert outcome == "payment_failed_recorded"
        current = await store.get_statement(stmt.statement_id)
        assert current.status == "FINALIZED"
        assert current.last_payment_error == "card_declined"
        assert current.last_payment_failed_at is not None

    async def test_failed_after_paid_is_rejected(self, attachment, runner, store, make_order):
        stmt = await self._finalized(attachment, runner, store, make_order)
        await runner.handle_invoice_event(_succeeded(stmt.external_invoice_ref))
        with pytest.raises(StatementImmutable):
            await runner.handle_invoice_event(_failed(stmt.external_invoice_ref))
        assert (await store.get_statement(stmt.statement_id)).status == "PAID"

    async def test_unknown_invoice(self, runner):
        with pytest.raises(StatementNotFound):
            await runner.handle_invoice_event(_succeeded("inv_unknown"))

    async def test_succeeded_requires_paid_at(self):
        with pytest.raises(ValueError):
            InvoiceWebhookEvent(external_invoice_ref="inv_1", status="succeeded")
