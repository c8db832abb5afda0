"""
Statement outcome events for the order-management service.

Paid statements settle their orders; statements that exhaust the retry
window send their orders to dunning. Delivery goes through an RQ queue
the order-management worker consumes.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel, Field
from redis import Redis
from rq import Queue

from eom_billing.config import settings
from eom_billing.models.enums import StatementEventType

logger = structlog.get_logger(__name__)


class StatementEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: StatementEventType
    statement_id: str
    account_id: str
    currency: str
    window_start: date
    window_end: date
    external_invoice_ref: str
    amount_total: Decimal
    order_refs: list[str]
    reason: str = ""
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OrderEventSink(ABC):
    @abstractmethod
    async def publish(self, event: StatementEvent) -> None:
        ...


class RQOrderEventSink(OrderEventSink):
    """Enqueue events by handler path so this service never imports order code."""

    def __init__(self, queue: Optional[Queue] = None, handler: Optional[str] = None):
        self._queue = queue
        self.handler = handler or settings.ORDER_EVENTS_HANDLER

    @property
    def queue(self) -> Queue:
        if self._queue is None:
            conn = Redis.from_url(settings.REDIS_URL)
            self._queue = Queue(settings.ORDER_EVENTS_QUEUE, connection=conn)
        return self._queue

    async def publish(self, event: StatementEvent) -> None:
        job = self.queue.enqueue(
            self.handler,
            event.model_dump(mode="json"),
            job_id=f"statement-event-{event.event_id}",
            result_ttl=86400,
            failure_ttl=604800,
        )
        logger.info(
            "order_event_enqueued",
            event_type=event.event_type.value,
            statement_id=event.statement_id,
            orders=len(event.order_refs),
            job_id=job.id,
        )


class RecordingEventSink(OrderEventSink):
    """Keeps events in memory; used by tests and dry runs."""

    def __init__(self):
        self.events: list[StatementEvent] = []

    async def publish(self, event: StatementEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: StatementEventType) -> list[StatementEvent]:
        return [e for e in self.events if e.event_type == event_type]
