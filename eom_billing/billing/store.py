"""
Statement store: the only writer of statement state.

Every operation runs in its own transaction. State transitions are
conditional UPDATEs keyed on the expected predecessor status, so two
writers can never both move the same statement. Transient database
failures are retried with exponential backoff; business-rule errors are
raised to the caller untouched.
"""

import asyncio
import uuid
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eom_billing.billing.errors import (
    DuplicateKeyRace,
    EarlyFinalizationConflict,
    InvalidStateTransition,
    StatementImmutable,
    StatementNotFound,
)
from eom_billing.billing.windows import BillingWindow
from eom_billing.config import settings
from eom_billing.models.enums import (
    ALLOWED_TRANSITIONS,
    ConflictReason,
    StatementStatus,
)
from eom_billing.models.tables import ReconciliationBatch, Statement, StatementLine
from eom_billing.observability import metrics
from eom_billing.schemas.billing import OrderCharge, StatementAmounts

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# PostgreSQL serialization_failure / deadlock_detected
_TRANSIENT_SQLSTATES = {"40001", "40P01"}

_OUTCOME_STATUSES = [StatementStatus.PAID.value, StatementStatus.PAYMENT_FAILED.value]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_transient(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, OperationalError) or exc.connection_invalidated:
        return True
    code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    return code in _TRANSIENT_SQLSTATES


class StatementStore:
    """Persistence and state machine for statements."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.max_retries = settings.STORE_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = (
            settings.STORE_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )

    # ─── Transaction Runner ───────────────────────────────────

    async def _run(self, name: str, op: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run op in a fresh transaction, retrying transient failures."""
        attempt = 0
        while True:
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        return await op(session)
            except DBAPIError as e:
                if not _is_transient(e) or attempt >= self.max_retries:
                    raise
                attempt += 1
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "statement_store_retry",
                    operation=name,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(e.orig)[:200],
                )
                await asyncio.sleep(delay)

    # ─── Reads ────────────────────────────────────────────────

    async def _load(self, session: AsyncSession, statement_id: uuid.UUID) -> Optional[Statement]:
        result = await session.execute(
            select(Statement)
            .where(Statement.statement_id == statement_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require(self, session: AsyncSession, statement_id: uuid.UUID) -> Statement:
        stmt = await self._load(session, statement_id)
        if stmt is None:
            raise StatementNotFound(str(statement_id))
        return stmt

    async def _find_by_key(
        self, session: AsyncSession, account_id: str, currency: str, window_start: date
    ) -> Optional[Statement]:
        result = await session.execute(
            select(Statement)
            .where(
                Statement.account_id == account_id,
                Statement.currency == currency,
                Statement.window_start == window_start,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_statement(self, statement_id: uuid.UUID) -> Statement:
        return await self._run("get_statement", lambda s: self._require(s, statement_id))

    async def get_by_invoice_ref(self, external_invoice_ref: str) -> Statement:
        async def op(session: AsyncSession) -> Statement:
            result = await session.execute(
                select(Statement).where(Statement.external_invoice_ref == external_invoice_ref)
            )
            stmt = result.scalar_one_or_none()
            if stmt is None:
                raise StatementNotFound(external_invoice_ref)
            return stmt

        return await self._run("get_by_invoice_ref", op)

    async def get_lines(self, statement_id: uuid.UUID) -> list[StatementLine]:
        async def op(session: AsyncSession) -> list[StatementLine]:
            result = await session.execute(
                select(StatementLine)
                .where(StatementLine.statement_id == statement_id)
                .order_by(StatementLine.ordered_at, StatementLine.order_ref)
            )
            return list(result.scalars().all())

        return await self._run("get_lines", op)

    async def get_statement_for_order(self, order_ref: str) -> Optional[Statement]:
        async def op(session: AsyncSession) -> Optional[Statement]:
            result = await session.execute(
                select(Statement)
                .join(StatementLine, StatementLine.statement_id == Statement.statement_id)
                .where(StatementLine.order_ref == order_ref)
            )
            return result.scalar_one_or_none()

        return await self._run("get_statement_for_order", op)

    async def count_for_key(self, account_id: str, currency: str, window_start: date) -> int:
        async def op(session: AsyncSession) -> int:
            result = await session.execute(
                select(Statement.statement_id).where(
                    Statement.account_id == account_id,
                    Statement.currency == currency,
                    Statement.window_start == window_start,
                )
            )
            return len(result.all())

        return await self._run("count_for_key", op)

    # ─── Statement Upsert ─────────────────────────────────────

    async def _insert_statement(
        self, session: AsyncSession, account_id: str, currency: str, window: BillingWindow
    ) -> Statement:
        """Insert inside a SAVEPOINT so a lost race leaves the outer transaction usable."""
        stmt = Statement(
            account_id=account_id,
            currency=currency,
            window_start=window.start,
            window_end=window.end,
            status=StatementStatus.OPEN.value,
        )
        try:
            async with session.begin_nested():
                session.add(stmt)
                await session.flush()
        except IntegrityError as e:
            raise DuplicateKeyRace(
                f"statement for {account_id}/{currency}/{window.start} already exists"
            ) from e
        return stmt

    async def get_or_create_open_statement(
        self, account_id: str, currency: str, window: BillingWindow
    ) -> Statement:
        """
        Return the statement for (account, currency, window start), creating
        it OPEN if none exists. An existing row is returned whatever its
        status; callers decide what a non-open statement means for them.
        """
        currency = currency.upper()

        async def op(session: AsyncSession) -> Statement:
            existing = await self._find_by_key(session, account_id, currency, window.start)
            if existing is not None:
                return existing
            try:
                created = await self._insert_statement(session, account_id, currency, window)
            except DuplicateKeyRace:
                metrics.duplicate_key_races_total.inc()
                logger.info(
                    "statement_create_race_lost",
                    account_id=account_id,
                    currency=currency,
                    window_start=str(window.start),
                )
                winner = await self._find_by_key(session, account_id, currency, window.start)
                if winner is None:
                    raise
                return winner
            metrics.statements_created_total.labels(currency=currency).inc()
            logger.info(
                "statement_created",
                statement_id=str(created.statement_id),
                account_id=account_id,
                currency=currency,
                window_start=str(window.start),
                window_end=str(window.end),
            )
            return created

        return await self._run("get_or_create_open_statement", op)

    # ─── Charge Attachment ────────────────────────────────────

    async def attach_charge(self, statement_id: uuid.UUID, order: OrderCharge) -> Statement:
        """
        Link an order to an open statement and add its charge to the totals.
        The line insert and the totals update commit together. Re-attaching
        an order that is already linked returns its statement unchanged.
        """

        async def op(session: AsyncSession) -> Statement:
            line = StatementLine(
                statement_id=statement_id,
                order_ref=order.order_ref,
                amount=order.charge_amount,
                description=order.description,
                ordered_at=order.created_at,
            )
            try:
                async with session.begin_nested():
                    session.add(line)
                    await session.flush()
            except IntegrityError:
                result = await session.execute(
                    select(StatementLine).where(StatementLine.order_ref == order.order_ref)
                )
                existing_line = result.scalar_one()
                logger.info(
                    "order_already_attached",
                    order_ref=order.order_ref,
                    statement_id=str(existing_line.statement_id),
                )
                return await self._require(session, existing_line.statement_id)

            result = await session.execute(
                update(Statement)
                .where(
                    Statement.statement_id == statement_id,
                    Statement.status == StatementStatus.OPEN.value,
                    Statement.claim_token.is_(None),
                )
                .values(
                    amount_subtotal=Statement.amount_subtotal + order.charge_amount,
                    amount_total=Statement.amount_total + order.charge_amount,
                    updated_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await self._require(session, statement_id)
                reason = (
                    ConflictReason.STATEMENT_CLAIMED
                    if current.status == StatementStatus.OPEN.value
                    else ConflictReason.for_status(current.status)
                )
                # Raising rolls back the line insert with the rest of the transaction
                raise EarlyFinalizationConflict(str(statement_id), order.order_ref, reason.value)

            metrics.charges_attached_total.labels(currency=order.currency).inc()
            return await self._require(session, statement_id)

        return await self._run("attach_charge", op)

    # ─── Claims ───────────────────────────────────────────────

    async def claim_due_statements(
        self,
        as_of_date: date,
        limit: int,
        batch_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> list[Statement]:
        """
        Atomically claim up to `limit` OPEN statements whose window has
        closed on or before `as_of_date`. Windows ending after `as_of_date`
        are never eligible.
        """
        token = uuid.uuid4()
        claimed_at = now or _utcnow()

        async def op(session: AsyncSession) -> list[Statement]:
            due = (
                select(Statement.statement_id)
                .where(
                    Statement.status == StatementStatus.OPEN.value,
                    Statement.claim_token.is_(None),
                    Statement.window_end <= as_of_date,
                )
                .order_by(Statement.window_end, Statement.created_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            await session.execute(
                update(Statement)
                .where(
                    Statement.statement_id.in_(due),
                    Statement.status == StatementStatus.OPEN.value,
                    Statement.claim_token.is_(None),
                )
                .values(
                    claim_token=token,
                    claimed_at=claimed_at,
                    claimed_by_batch=batch_id,
                    updated_at=claimed_at,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(
                select(Statement)
                .where(Statement.claim_token == token)
                .order_by(Statement.window_end, Statement.created_at)
                .execution_options(populate_existing=True)
            )
            return list(result.scalars().all())

        claimed = await self._run("claim_due_statements", op)
        if claimed:
            metrics.statements_claimed_total.inc(len(claimed))
            logger.info(
                "statements_claimed",
                as_of_date=str(as_of_date),
                count=len(claimed),
                claim_token=str(token),
            )
        return claimed

    async def release_stale_claims(self, older_than: datetime) -> int:
        """Return statements stuck in the claimed marker since before `older_than` to OPEN."""

        async def op(session: AsyncSession) -> int:
            result = await session.execute(
                update(Statement)
                .where(
                    Statement.status == StatementStatus.OPEN.value,
                    Statement.claim_token.is_not(None),
                    Statement.claimed_at < older_than,
                )
                .values(
                    claim_token=None,
                    claimed_at=None,
                    claimed_by_batch=None,
                    updated_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        released = await self._run("release_stale_claims", op)
        if released:
            metrics.stale_claims_released_total.inc(released)
            logger.warning("stale_claims_released", count=released, older_than=older_than.isoformat())
        return released

    # ─── State Transitions ────────────────────────────────────

    async def _transition_error(
        self, session: AsyncSession, statement_id: uuid.UUID, target: StatementStatus
    ) -> Exception:
        current = await self._require(session, statement_id)
        if current.status == StatementStatus.PAID.value:
            error: Exception = StatementImmutable(str(statement_id))
        else:
            error = InvalidStateTransition(str(statement_id), current.status, target.value)
        logger.warning(
            "statement_transition_rejected",
            statement_id=str(statement_id),
            current=current.status,
            target=target.value,
            claimed=current.is_claimed,
        )
        return error

    async def _transition(
        self,
        name: str,
        statement_id: uuid.UUID,
        target: StatementStatus,
        values: dict,
        extra_conditions: tuple = (),
    ) -> Statement:
        predecessors = [s.value for s in ALLOWED_TRANSITIONS[target]]

        async def op(session: AsyncSession) -> Statement:
            result = await session.execute(
                update(Statement)
                .where(
                    Statement.statement_id == statement_id,
                    Statement.status.in_(predecessors),
                    *extra_conditions,
                )
                .values(status=target.value, updated_at=_utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise await self._transition_error(session, statement_id, target)
            return await self._require(session, statement_id)

        stmt = await self._run(name, op)
        logger.info(
            "statement_transitioned",
            statement_id=str(statement_id),
            status=target.value,
        )
        return stmt

    async def mark_finalized(
        self,
        statement_id: uuid.UUID,
        external_invoice_ref: str,
        claim_token: Optional[uuid.UUID] = None,
    ) -> Statement:
        """OPEN -> FINALIZED. With a claim token, only the claim holder may finalize."""
        conditions: tuple = ()
        if claim_token is not None:
            conditions = (Statement.claim_token == claim_token,)
        return await self._transition(
            "mark_finalized",
            statement_id,
            StatementStatus.FINALIZED,
            {
                "external_invoice_ref": external_invoice_ref,
                "finalized_at": _utcnow(),
                "claim_token": None,
                "claimed_at": None,
            },
            conditions,
        )

    async def mark_paid(
        self, statement_id: uuid.UUID, amounts: StatementAmounts, paid_at: datetime
    ) -> Statement:
        """FINALIZED -> PAID. Confirmed amounts replace the accumulated ones."""
        return await self._transition(
            "mark_paid",
            statement_id,
            StatementStatus.PAID,
            {
                "amount_subtotal": amounts.subtotal,
                "amount_discount": amounts.discount,
                "amount_tax": amounts.tax,
                "amount_total": amounts.total,
                "paid_at": paid_at,
                "last_payment_failed_at": None,
                "last_payment_error": None,
            },
        )

    async def mark_payment_failed(self, statement_id: uuid.UUID) -> Statement:
        """FINALIZED -> PAYMENT_FAILED (terminal)."""
        return await self._transition(
            "mark_payment_failed",
            statement_id,
            StatementStatus.PAYMENT_FAILED,
            {"payment_failed_at": _utcnow()},
        )

    # ─── Payment Retry Bookkeeping ────────────────────────────

    async def _update_finalized(
        self, name: str, statement_id: uuid.UUID, values: dict, extra_conditions: tuple = ()
    ) -> Optional[Statement]:
        """Update a FINALIZED row in place; None when the extra conditions no longer hold."""

        async def op(session: AsyncSession) -> Optional[Statement]:
            result = await session.execute(
                update(Statement)
                .where(
                    Statement.statement_id == statement_id,
                    Statement.status == StatementStatus.FINALIZED.value,
                    *extra_conditions,
                )
                .values(updated_at=_utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await self._require(session, statement_id)
                if current.status != StatementStatus.FINALIZED.value:
                    raise await self._transition_error(
                        session, statement_id, StatementStatus.FINALIZED
                    )
                return None
            return await self._require(session, statement_id)

        return await self._run(name, op)

    async def record_payment_failure(
        self, statement_id: uuid.UUID, error: Optional[str], failed_at: datetime
    ) -> Statement:
        """Note a failed collection attempt; the statement stays FINALIZED."""
        return await self._update_finalized(
            "record_payment_failure",
            statement_id,
            {
                "last_payment_failed_at": failed_at,
                "last_payment_error": (error or "payment failed")[:500],
            },
        )

    async def record_retry_attempt(
        self, statement_id: uuid.UUID, retry_date: date, still_failed: bool
    ) -> Optional[Statement]:
        """
        Count one retry day. Guarded on last_retry_on so a second coordinator
        run on the same day cannot count it twice; returns None in that case.
        """
        values: dict = {
            "payment_retry_count": Statement.payment_retry_count + 1,
            "last_retry_on": retry_date,
        }
        if not still_failed:
            values["last_payment_failed_at"] = None
        return await self._update_finalized(
            "record_retry_attempt",
            statement_id,
            values,
            (or_(Statement.last_retry_on.is_(None), Statement.last_retry_on < retry_date),),
        )

    async def list_retry_candidates(self, today: date, limit: int = 500) -> list[Statement]:
        """FINALIZED statements with an outstanding payment failure not yet handled today."""

        async def op(session: AsyncSession) -> list[Statement]:
            result = await session.execute(
                select(Statement)
                .where(
                    Statement.status == StatementStatus.FINALIZED.value,
                    Statement.last_payment_failed_at.is_not(None),
                    Statement.window_end < today,
                    or_(Statement.last_retry_on.is_(None), Statement.last_retry_on < today),
                )
                .order_by(Statement.last_payment_failed_at)
                .limit(limit)
            )
            return list(result.scalars().all())

        return await self._run("list_retry_candidates", op)

    # ─── Outcome Event Outbox ─────────────────────────────────

    async def mark_outcome_published(self, statement_id: uuid.UUID) -> bool:
        """Record that the statement's terminal outcome event was delivered."""

        async def op(session: AsyncSession) -> bool:
            result = await session.execute(
                update(Statement)
                .where(
                    Statement.statement_id == statement_id,
                    Statement.status.in_(_OUTCOME_STATUSES),
                    Statement.outcome_event_published_at.is_(None),
                )
                .values(outcome_event_published_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

        return await self._run("mark_outcome_published", op)

    async def list_unpublished_outcomes(self, limit: int = 500) -> list[Statement]:
        """PAID / PAYMENT_FAILED statements whose outcome event never reached the queue."""

        async def op(session: AsyncSession) -> list[Statement]:
            result = await session.execute(
                select(Statement)
                .where(
                    Statement.status.in_(_OUTCOME_STATUSES),
                    Statement.outcome_event_published_at.is_(None),
                )
                .order_by(Statement.updated_at)
                .limit(limit)
            )
            return list(result.scalars().all())

        return await self._run("list_unpublished_outcomes", op)

    # ─── Reconciliation Batches ───────────────────────────────

    async def open_batch(self, run_date: date) -> ReconciliationBatch:
        async def op(session: AsyncSession) -> ReconciliationBatch:
            batch = ReconciliationBatch(run_date=run_date, claimed_statement_ids=[])
            session.add(batch)
            await session.flush()
            return batch

        return await self._run("open_batch", op)

    async def complete_batch(
        self,
        batch_id: uuid.UUID,
        claimed_ids: list[uuid.UUID],
        finalized: int,
        failed: int,
        released: int,
    ) -> ReconciliationBatch:
        async def op(session: AsyncSession) -> ReconciliationBatch:
            batch = await session.get(ReconciliationBatch, batch_id)
            if batch is None:
                raise StatementNotFound(f"batch {batch_id}")
            batch.claimed_statement_ids = [str(i) for i in claimed_ids]
            batch.finalized_count = finalized
            batch.failed_count = failed
            batch.released_count = released
            batch.completed_at = _utcnow()
            return batch

        return await self._run("complete_batch", op)
