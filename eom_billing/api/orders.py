"""
/api/v1/orders endpoints.
Called by the order-management service for every new order; the returned
statement_id is written back onto the order record.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from eom_billing.billing.attachment import OrderAttachmentService
from eom_billing.billing.errors import EarlyFinalizationConflict
from eom_billing.dependencies import get_attachment_service, verify_api_key
from eom_billing.schemas.billing import AttachResponse, OrderCharge

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/orders", tags=["orders"], dependencies=[Depends(verify_api_key)])


@router.post("/attach", response_model=AttachResponse)
async def attach_order(
    order: OrderCharge,
    service: OrderAttachmentService = Depends(get_attachment_service),
):
    """Attach an order's charge to the statement for its billing window."""
    try:
        statement = await service.attach(order)
    except EarlyFinalizationConflict as e:
        # Already queued for operator review by the service
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error_code": e.error_code,
                "reason": e.reason,
                "review_id": e.review_id,
                "statement_id": e.statement_id,
                "message": e.message,
            },
        )

    return AttachResponse(
        order_ref=order.order_ref,
        statement_id=str(statement.statement_id),
        window_start=statement.window_start,
        window_end=statement.window_end,
        statement_total=statement.amount_total,
    )
