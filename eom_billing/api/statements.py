"""
/api/v1/statements endpoints.
Read-only statement detail for operators and support.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException

from eom_billing.billing.errors import StatementNotFound
from eom_billing.billing.store import StatementStore
from eom_billing.dependencies import get_statement_store, verify_api_key
from eom_billing.schemas.billing import StatementLineResponse, StatementResponse

router = APIRouter(prefix="/api/v1/statements", tags=["statements"], dependencies=[Depends(verify_api_key)])


@router.get("/{statement_id}", response_model=StatementResponse)
async def get_statement(
    statement_id: uuid.UUID,
    store: StatementStore = Depends(get_statement_store),
):
    try:
        stmt = await store.get_statement(statement_id)
    except StatementNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    lines = await store.get_lines(statement_id)

    return StatementResponse(
        statement_id=str(stmt.statement_id),
        account_id=stmt.account_id,
        currency=stmt.currency,
        window_start=stmt.window_start,
        window_end=stmt.window_end,
        status=stmt.status,
        external_invoice_ref=stmt.external_invoice_ref,
        amount_subtotal=stmt.amount_subtotal,
        amount_discount=stmt.amount_discount,
        amount_tax=stmt.amount_tax,
        amount_total=stmt.amount_total,
        claimed=stmt.is_claimed,
        payment_retry_count=stmt.payment_retry_count,
        paid_at=stmt.paid_at,
        created_at=stmt.created_at,
        updated_at=stmt.updated_at,
        lines=[StatementLineResponse.model_validate(line) for line in lines],
    )
