"""
In-memory invoicing client for tests and local runs.
Deterministic invoice references, idempotency-key aware, and able to
simulate failures for chosen accounts or invoices.
"""

from decimal import Decimal
from typing import Optional

from eom_billing.billing.errors import ExternalInvoiceFailure
from eom_billing.invoicing.base import InvoicingClient
from eom_billing.schemas.billing import InvoiceLineItem


class StubInvoicingClient(InvoicingClient):
    """Fake collaborator that records every call."""

    def __init__(
        self,
        fail_accounts: Optional[set[str]] = None,
        fail_retries_for: Optional[set[str]] = None,
    ):
        self.fail_accounts = set(fail_accounts or ())
        self.fail_retries_for = set(fail_retries_for or ())
        self.invoices: dict[str, dict] = {}
        self.create_calls: list[dict] = []
        self.retry_calls: list[str] = []
        self._by_idempotency_key: dict[str, str] = {}

    @property
    def client_name(self) -> str:
        return "stub"

    async def create_invoice(
        self,
        account_id: str,
        line_items: list[InvoiceLineItem],
        metadata: dict[str, str],
    ) -> str:
        self.create_calls.append(
            {"account_id": account_id, "line_items": line_items, "metadata": metadata}
        )
        if account_id in self.fail_accounts:
            raise ExternalInvoiceFailure(
                f"stub rejected invoice for account {account_id}", "ERR_STUB_REJECTED"
            )

        key = metadata.get("idempotency_key")
        if key and key in self._by_idempotency_key:
            return self._by_idempotency_key[key]

        ref = f"inv_stub_{len(self.invoices) + 1:06d}"
        self.invoices[ref] = {
            "account_id": account_id,
            "total": sum((item.amount for item in line_items), Decimal("0.00")),
            "line_items": list(line_items),
            "metadata": dict(metadata),
        }
        if key:
            self._by_idempotency_key[key] = ref
        return ref

    async def retry_payment(self, external_invoice_ref: str) -> None:
        self.retry_calls.append(external_invoice_ref)
        if external_invoice_ref not in self.invoices:
            raise ExternalInvoiceFailure(
                f"unknown invoice {external_invoice_ref}", "ERR_STUB_UNKNOWN_INVOICE",
                retryable=False,
            )
        if external_invoice_ref in self.fail_retries_for:
            raise ExternalInvoiceFailure(
                f"stub could not retry {external_invoice_ref}", "ERR_STUB_RETRY_FAILED"
            )

    async def health_check(self) -> bool:
        return True
