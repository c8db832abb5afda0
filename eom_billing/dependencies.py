"""
FastAPI dependency injection.
Provides DB sessions, the billing services and API key / webhook secret checks.
"""

from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from eom_billing.billing.attachment import OrderAttachmentService
from eom_billing.billing.cycle_runner import BillingCycleRunner
from eom_billing.billing.events import OrderEventSink, RQOrderEventSink
from eom_billing.billing.store import StatementStore
from eom_billing.config import settings
from eom_billing.invoicing.base import InvoicingClient
from eom_billing.invoicing.stub_client import StubInvoicingClient
from eom_billing.models.database import async_session_factory, get_session


# ── Singleton instances ──────────────────────────────────────
_invoicing_client: Optional[InvoicingClient] = None
_event_sink: Optional[OrderEventSink] = None


def build_invoicing_client() -> InvoicingClient:
    if settings.INVOICING_BACKEND == "stub":
        return StubInvoicingClient()
    raise ValueError(f"Unknown INVOICING_BACKEND: {settings.INVOICING_BACKEND}")


def get_invoicing_client() -> InvoicingClient:
    """Get or create the invoicing client singleton."""
    global _invoicing_client
    if _invoicing_client is None:
        _invoicing_client = build_invoicing_client()
    return _invoicing_client


def get_event_sink() -> OrderEventSink:
    global _event_sink
    if _event_sink is None:
        _event_sink = RQOrderEventSink()
    return _event_sink


def get_statement_store() -> StatementStore:
    return StatementStore(async_session_factory)


def get_attachment_service() -> OrderAttachmentService:
    return OrderAttachmentService(get_statement_store())


def get_cycle_runner() -> BillingCycleRunner:
    return BillingCycleRunner(
        get_statement_store(), get_invoicing_client(), get_event_sink()
    )


async def get_db() -> AsyncSession:
    """Yield an async DB session."""
    async for session in get_session():
        yield session


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key


async def verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
) -> None:
    """Reject webhook calls without the shared secret when one is configured."""
    if settings.WEBHOOK_SECRET is None:
        return None
    if x_webhook_secret != settings.WEBHOOK_SECRET:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret",
        )
    return None
