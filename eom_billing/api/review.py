"""
/api/v1/review endpoints.
Operator view of orders that hit an already-closed statement.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from eom_billing.dependencies import get_db, verify_api_key
from eom_billing.models.tables import ConflictQueueItem
from eom_billing.review.queue import get_pending_reviews, get_review_queue_stats, resolve_review
from eom_billing.schemas.review import (
    ConflictItem,
    ConflictListResponse,
    ResolveRequest,
    ReviewStats,
)

router = APIRouter(prefix="/api/v1/review", tags=["review"], dependencies=[Depends(verify_api_key)])


def _to_item(item: ConflictQueueItem) -> ConflictItem:
    return ConflictItem(
        review_id=str(item.review_id),
        account_id=item.account_id,
        currency=item.currency,
        window_start=item.window_start,
        statement_id=str(item.statement_id) if item.statement_id else None,
        order_ref=item.order_ref,
        reason=item.reason,
        reason_details=item.reason_details,
        priority=item.priority,
        status=item.status,
        created_at=item.created_at,
    )


@router.get("", response_model=ConflictListResponse)
async def list_pending(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db),
):
    items = await get_pending_reviews(session, limit=limit, offset=offset)
    return ConflictListResponse(items=[_to_item(i) for i in items], limit=limit, offset=offset)


@router.get("/stats", response_model=ReviewStats)
async def review_stats(session: AsyncSession = Depends(get_db)):
    return ReviewStats(**await get_review_queue_stats(session))


@router.post("/{review_id}/resolve", response_model=ConflictItem)
async def resolve(
    review_id: uuid.UUID,
    body: ResolveRequest,
    session: AsyncSession = Depends(get_db),
):
    """Close a conflict once an operator has dealt with the order."""
    item = await resolve_review(session, str(review_id), note=body.note, skipped=body.skipped)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Review item {review_id} not found")
    await session.commit()
    return _to_item(item)
