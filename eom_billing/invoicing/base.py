"""
Abstract interface to the external invoicing/payment collaborator.
The real gateway client lives outside this service; the cycle runner and
retry coordinator only ever talk to this narrow surface.
"""

from abc import ABC, abstractmethod

from eom_billing.schemas.billing import InvoiceLineItem


class InvoicingClient(ABC):
    """
    Every client must:
    1. Create an invoice for a finalized statement and return its reference
    2. Treat metadata["idempotency_key"] as a dedupe key for create_invoice
    3. Re-trigger payment collection for an existing invoice
    4. Raise ExternalInvoiceFailure on any failure
    """

    @property
    @abstractmethod
    def client_name(self) -> str:
        ...

    @abstractmethod
    async def create_invoice(
        self,
        account_id: str,
        line_items: list[InvoiceLineItem],
        metadata: dict[str, str],
    ) -> str:
        """Create an invoice and return the collaborator's invoice reference."""
        ...

    @abstractmethod
    async def retry_payment(self, external_invoice_ref: str) -> None:
        """Ask the collaborator to attempt collection again; outcome arrives by webhook."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...
