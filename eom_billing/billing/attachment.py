"""
Order attachment: put each order's charge on the statement for its window.
"""

from typing import Optional

import structlog

from eom_billing.billing.errors import EarlyFinalizationConflict
from eom_billing.billing.store import StatementStore
from eom_billing.billing.windows import BillingWindow, compute_window
from eom_billing.config import settings
from eom_billing.models.enums import ConflictReason, StatementStatus
from eom_billing.models.tables import Statement
from eom_billing.observability import metrics
from eom_billing.review.queue import route_to_review
from eom_billing.schemas.billing import OrderCharge

logger = structlog.get_logger(__name__)


class OrderAttachmentService:
    """
    Runs in the order-creation request path.

    A window only ever has one statement. If that statement has already
    left OPEN (or a billing run holds it), the order is sent to the
    operator conflict queue instead of being appended or getting a
    second statement.
    """

    def __init__(
        self,
        store: StatementStore,
        business_timezone: Optional[str] = None,
        cycle_start_day: Optional[int] = None,
    ):
        self.store = store
        self.business_timezone = business_timezone or settings.BUSINESS_TIMEZONE
        self.cycle_start_day = cycle_start_day or settings.CYCLE_START_DAY

    def window_for(self, order: OrderCharge) -> BillingWindow:
        return compute_window(order.created_at, self.business_timezone, self.cycle_start_day)

    async def attach(self, order: OrderCharge) -> Statement:
        """Attach an order and return its statement (the caller stores statement_id)."""
        window = self.window_for(order)

        already_attached = await self.store.get_statement_for_order(order.order_ref)
        if already_attached is not None:
            logger.info(
                "order_already_attached",
                order_ref=order.order_ref,
                statement_id=str(already_attached.statement_id),
            )
            return already_attached

        statement = await self.store.get_or_create_open_statement(
            order.account_id, order.currency, window
        )

        if statement.status != StatementStatus.OPEN.value or statement.is_claimed:
            reason = (
                ConflictReason.STATEMENT_CLAIMED
                if statement.status == StatementStatus.OPEN.value
                else ConflictReason.for_status(statement.status)
            )
            conflict = EarlyFinalizationConflict(
                str(statement.statement_id), order.order_ref, reason.value
            )
            await self._escalate(order, window, conflict)
            raise conflict

        try:
            statement = await self.store.attach_charge(statement.statement_id, order)
        except EarlyFinalizationConflict as conflict:
            # A billing run claimed the statement between lookup and write
            await self._escalate(order, window, conflict)
            raise

        logger.info(
            "order_attached",
            order_ref=order.order_ref,
            statement_id=str(statement.statement_id),
            window_start=str(window.start),
            amount=str(order.charge_amount),
            statement_total=str(statement.amount_total),
        )
        return statement

    async def _escalate(
        self, order: OrderCharge, window: BillingWindow, conflict: EarlyFinalizationConflict
    ) -> None:
        metrics.early_finalization_conflicts_total.labels(reason=conflict.reason).inc()
        logger.warning(
            "early_finalization_conflict",
            order_ref=order.order_ref,
            account_id=order.account_id,
            currency=order.currency,
            window_start=str(window.start),
            statement_id=conflict.statement_id,
            reason=conflict.reason,
        )
        async with self.store.session_factory() as session:
            async with session.begin():
                conflict.review_id = await route_to_review(
                    session,
                    account_id=order.account_id,
                    currency=order.currency,
                    window_start=window.start,
                    order_ref=order.order_ref,
                    reason=conflict.reason,
                    statement_id=conflict.statement_id,
                    reason_details=(
                        f"charge {order.charge_amount} {order.currency} "
                        f"placed {order.created_at.isoformat()}"
                    ),
                )
