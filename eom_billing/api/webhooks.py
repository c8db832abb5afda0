"""
/api/v1/webhooks endpoints.
Payment confirmations pushed by the invoicing collaborator.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from eom_billing.billing.cycle_runner import BillingCycleRunner
from eom_billing.billing.errors import (
    InvalidStateTransition,
    StatementImmutable,
    StatementNotFound,
)
from eom_billing.dependencies import get_cycle_runner, verify_webhook_secret
from eom_billing.schemas.billing import InvoiceWebhookEvent, WebhookAck

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/v1/webhooks",
    tags=["webhooks"],
    dependencies=[Depends(verify_webhook_secret)],
)


@router.post("/invoicing", response_model=WebhookAck)
async def invoicing_webhook(
    event: InvoiceWebhookEvent,
    runner: BillingCycleRunner = Depends(get_cycle_runner),
):
    """Apply a succeeded/failed payment event to its statement."""
    try:
        outcome = await runner.handle_invoice_event(event)
    except StatementNotFound as e:
        logger.warning("webhook_unknown_invoice", invoice_ref=event.external_invoice_ref)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except (InvalidStateTransition, StatementImmutable) as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error_code": e.error_code, "message": e.message},
        )
    return WebhookAck(external_invoice_ref=event.external_invoice_ref, outcome=outcome)
