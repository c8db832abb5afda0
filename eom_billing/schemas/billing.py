"""
Pydantic schemas for orders, invoices, payment webhooks and statements.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from eom_billing.models.enums import PaymentOutcome


def _normalise_currency(value: str) -> str:
    value = value.strip().upper()
    if len(value) != 3 or not value.isalpha():
        raise ValueError(f"currency must be a 3-letter ISO code, got {value!r}")
    return value


# ── Orders ───────────────────────────────────────────────────

class OrderCharge(BaseModel):
    """An order as supplied by the order-management service."""
    order_ref: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    currency: str
    charge_amount: Decimal = Field(gt=0, decimal_places=2)
    created_at: datetime
    description: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def normalise_currency(cls, value: str) -> str:
        return _normalise_currency(value)

    @field_validator("created_at")
    @classmethod
    def require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("created_at must be timezone-aware")
        return value


class AttachResponse(BaseModel):
    """Statement an order was attached to; the order service stores statement_id."""
    order_ref: str
    statement_id: str
    window_start: date
    window_end: date
    statement_total: Decimal


# ── Amounts ──────────────────────────────────────────────────

class StatementAmounts(BaseModel):
    """Amounts confirmed by the payment collaborator."""
    subtotal: Decimal = Field(ge=0)
    discount: Decimal = Field(default=Decimal("0.00"), ge=0)
    tax: Decimal = Field(default=Decimal("0.00"), ge=0)
    total: Decimal = Field(ge=0)


# ── Invoicing ────────────────────────────────────────────────

class InvoiceLineItem(BaseModel):
    order_ref: str
    description: str
    amount: Decimal
    ordered_at: datetime


class InvoiceWebhookEvent(BaseModel):
    """Asynchronous payment confirmation from the invoicing collaborator."""
    external_invoice_ref: str = Field(min_length=1)
    status: PaymentOutcome
    amounts: Optional[StatementAmounts] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @model_validator(mode="after")
    def require_paid_at(self):
        if self.status == PaymentOutcome.SUCCEEDED and self.paid_at is None:
            raise ValueError("paid_at is required for a succeeded event")
        return self


class WebhookAck(BaseModel):
    external_invoice_ref: str
    outcome: str


# ── Statements ───────────────────────────────────────────────

class StatementLineResponse(BaseModel):
    order_ref: str
    amount: Decimal
    description: Optional[str] = None
    ordered_at: datetime

    model_config = {"from_attributes": True}


class StatementResponse(BaseModel):
    statement_id: str
    account_id: str
    currency: str
    window_start: date
    window_end: date
    status: str
    external_invoice_ref: Optional[str] = None
    amount_subtotal: Decimal
    amount_discount: Decimal
    amount_tax: Decimal
    amount_total: Decimal
    claimed: bool
    payment_retry_count: int
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    lines: list[StatementLineResponse] = []


# ── Scheduled runs ───────────────────────────────────────────

class CycleRunSummary(BaseModel):
    batch_id: str
    run_date: date
    released: int = 0
    claimed: int = 0
    finalized: int = 0
    failed: int = 0
    skipped: int = 0


class RetrySummary(BaseModel):
    run_date: date
    retried: int = 0
    retry_failures: int = 0
    exhausted: int = 0
    skipped: int = 0
    redelivered: int = 0


class BillingDayRequest(BaseModel):
    business_date: date


class BillingDayJob(BaseModel):
    job_id: str
    business_date: date
