"""
SQLAlchemy ORM models for statements, their order lines, run batches
and the operator conflict queue.
Column types are portable so the same models run on PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from eom_billing.models.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


MONEY = Numeric(15, 2)


# ────────────────────────────────────────────────────────────
# STATEMENTS
# ────────────────────────────────────────────────────────────
class Statement(Base):
    __tablename__ = "statements"

    statement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    window_start: Mapped[date] = mapped_column(Date, nullable=False)
    window_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        Enum('OPEN', 'FINALIZED', 'PAID', 'PAYMENT_FAILED', name='statement_status_enum'),
        nullable=False, default="OPEN", server_default="OPEN"
    )
    external_invoice_ref: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    amount_subtotal: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0.00"), server_default="0"
    )
    amount_discount: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0.00"), server_default="0"
    )
    amount_tax: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0.00"), server_default="0"
    )
    amount_total: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0.00"), server_default="0"
    )

    # Claim marker: set while a billing run owns the statement
    claim_token: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_by_batch: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Payment retry bookkeeping
    last_payment_failed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_payment_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    last_retry_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Set once the PAID / PAYMENT_FAILED outcome event has reached the order queue
    outcome_event_published_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        # Global, not filtered to OPEN rows: a finalized window must never get a twin
        UniqueConstraint("account_id", "currency", "window_start",
                         name="uq_statement_account_currency_window"),
        UniqueConstraint("external_invoice_ref", name="uq_statement_invoice_ref"),
        Index("idx_statements_status_window_end", "status", "window_end"),
        Index("idx_statements_claim_token", "claim_token"),
        Index("idx_statements_status_event", "status", "outcome_event_published_at"),
    )

    @property
    def is_claimed(self) -> bool:
        return self.claim_token is not None


# ────────────────────────────────────────────────────────────
# STATEMENT LINES (order -> statement link)
# ────────────────────────────────────────────────────────────
class StatementLine(Base):
    __tablename__ = "statement_lines"

    line_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    statement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("statements.statement_id", ondelete="CASCADE"), nullable=False
    )
    order_ref: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ordered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("order_ref", name="uq_statement_line_order_ref"),
        Index("idx_statement_lines_statement", "statement_id"),
    )


# ────────────────────────────────────────────────────────────
# RECONCILIATION BATCHES
# ────────────────────────────────────────────────────────────
class ReconciliationBatch(Base):
    __tablename__ = "reconciliation_batches"

    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    run_date: Mapped[date] = mapped_column(Date, nullable=False)
    claimed_statement_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    finalized_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    released_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_batches_run_date", "run_date"),
    )


# ────────────────────────────────────────────────────────────
# CONFLICT QUEUE
# ────────────────────────────────────────────────────────────
class ConflictQueueItem(Base):
    __tablename__ = "conflict_queue_items"

    review_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    window_start: Mapped[date] = mapped_column(Date, nullable=False)
    statement_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("statements.statement_id", ondelete="SET NULL"), nullable=True
    )
    order_ref: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    reason_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5, server_default="5"
    )
    status: Mapped[str] = mapped_column(
        Enum('PENDING', 'IN_REVIEW', 'RESOLVED', 'SKIPPED', name='review_status_enum'),
        nullable=False, default="PENDING", server_default="PENDING"
    )
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_conflicts_status_priority", "status", "priority"),
        Index("idx_conflicts_window_key", "account_id", "currency", "window_start"),
    )
