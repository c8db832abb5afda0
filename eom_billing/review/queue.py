"""
Operator queue for orders that could not be attached to their window's
statement because it was already claimed, finalized or paid.

An order is queued at most once while pending. When one billing window
keeps producing conflicts, new items jump to priority 1 so the account is
looked at before more orders pile up.
"""

import uuid
from datetime import date, datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from eom_billing.config import settings
from eom_billing.models.tables import ConflictQueueItem
from eom_billing.models.enums import ReviewStatus
from eom_billing.observability import metrics

logger = structlog.get_logger(__name__)

ESCALATED_PRIORITY = 1


async def route_to_review(
    session: AsyncSession,
    account_id: str,
    currency: str,
    window_start: date,
    order_ref: str,
    reason: str,
    statement_id: Optional[str] = None,
    reason_details: Optional[str] = None,
    priority: int = 5,
) -> str:
    """
    Add a conflicting order to the review queue.
    Returns the review_id (the existing one if the order is already pending).
    """
    existing = await session.execute(
        select(ConflictQueueItem).where(
            ConflictQueueItem.order_ref == order_ref,
            ConflictQueueItem.status == ReviewStatus.PENDING.value,
        )
    )
    pending_item = existing.scalars().first()
    if pending_item is not None:
        return str(pending_item.review_id)

    open_for_window = await session.scalar(
        select(func.count(ConflictQueueItem.review_id)).where(
            ConflictQueueItem.account_id == account_id,
            ConflictQueueItem.currency == currency,
            ConflictQueueItem.window_start == window_start,
            ConflictQueueItem.status.in_(
                [ReviewStatus.PENDING.value, ReviewStatus.IN_REVIEW.value]
            ),
        )
    )
    open_for_window = open_for_window or 0
    if open_for_window >= settings.CONFLICT_ESCALATION_THRESHOLD:
        priority = ESCALATED_PRIORITY
        logger.warning(
            "conflict_escalated",
            account_id=account_id,
            currency=currency,
            window_start=str(window_start),
            open_conflicts=open_for_window,
        )

    review_item = ConflictQueueItem(
        account_id=account_id,
        currency=currency,
        window_start=window_start,
        statement_id=uuid.UUID(statement_id) if statement_id else None,
        order_ref=order_ref,
        reason=reason,
        reason_details=reason_details,
        priority=priority,
        status=ReviewStatus.PENDING.value,
    )
    session.add(review_item)
    await session.flush()

    logger.info(
        "routed_to_review",
        review_id=str(review_item.review_id),
        order_ref=order_ref,
        statement_id=statement_id,
        reason=reason,
        priority=priority,
    )

    return str(review_item.review_id)


async def get_pending_reviews(
    session: AsyncSession,
    limit: int = 50,
    offset: int = 0,
) -> list[ConflictQueueItem]:
    """Get pending review items ordered by priority."""
    result = await session.execute(
        select(ConflictQueueItem)
        .where(ConflictQueueItem.status == ReviewStatus.PENDING.value)
        .order_by(ConflictQueueItem.priority, ConflictQueueItem.created_at)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def resolve_review(
    session: AsyncSession,
    review_id: str,
    note: Optional[str] = None,
    skipped: bool = False,
) -> Optional[ConflictQueueItem]:
    """Close a review item. Returns None if it does not exist."""
    item = await session.get(ConflictQueueItem, uuid.UUID(review_id))
    if item is None:
        return None
    item.status = (ReviewStatus.SKIPPED if skipped else ReviewStatus.RESOLVED).value
    item.resolution_note = note
    item.resolved_at = datetime.now(timezone.utc)
    await session.flush()
    logger.info("review_resolved", review_id=review_id, status=item.status)
    return item


async def get_review_queue_stats(session: AsyncSession) -> dict:
    """Get review queue statistics and refresh the depth gauge."""
    result = await session.execute(
        select(
            ConflictQueueItem.status,
            func.count(ConflictQueueItem.review_id),
        ).group_by(ConflictQueueItem.status)
    )
    stats = {row[0]: row[1] for row in result.all()}
    for status in ReviewStatus:
        metrics.review_queue_depth.labels(status=status.value).set(stats.get(status.value, 0))
    return {
        "pending": stats.get(ReviewStatus.PENDING.value, 0),
        "in_review": stats.get(ReviewStatus.IN_REVIEW.value, 0),
        "resolved": stats.get(ReviewStatus.RESOLVED.value, 0),
        "skipped": stats.get(ReviewStatus.SKIPPED.value, 0),
        "total": sum(stats.values()),
    }
