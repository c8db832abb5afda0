"""
Shared test fixtures.
Each test gets its own SQLite file database so concurrent sessions behave
like separate connections to one server.
"""

from datetime import datetime, timezone
from decimal import Decimal
from itertools import count

import pytest

from eom_billing.billing.attachment import OrderAttachmentService
from eom_billing.billing.cycle_runner import BillingCycleRunner
from eom_billing.billing.events import RecordingEventSink
from eom_billing.billing.retry import RetryCoordinator
from eom_billing.billing.store import StatementStore
from eom_billing.invoicing.stub_client import StubInvoicingClient
from eom_billing.models.database import Base, build_engine, build_session_factory
from eom_billing.schemas.billing import OrderCharge


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return StatementStore(session_factory, max_retries=5, backoff_seconds=0.01)


@pytest.fixture
def invoicing():
    return StubInvoicingClient()


@pytest.fixture
def events():
    return RecordingEventSink()


class FlakyEventSink(RecordingEventSink):
    """Fails the first `failures` publishes, as a queue outage would."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def publish(self, event):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("order queue unavailable")
        await super().publish(event)


@pytest.fixture
def flaky_events():
    return FlakyEventSink()


@pytest.fixture
def attachment(store):
    return OrderAttachmentService(store, business_timezone="UTC", cycle_start_day=26)


@pytest.fixture
def runner(store, invoicing, events):
    return BillingCycleRunner(store, invoicing, events, batch_size=2)


@pytest.fixture
def coordinator(store, invoicing, events):
    return RetryCoordinator(store, invoicing, events, max_retry_days=2)


@pytest.fixture
def make_order():
    """Build order payloads with unique refs; created_at defaults to noon UTC."""
    seq = count(1)

    def _make(created, amount="10.00", account_id="acct-A", currency="USD", order_ref=None):
        if not isinstance(created, datetime):
            created = datetime(created.year, created.month, created.day, 12, tzinfo=timezone.utc)
        return OrderCharge(
            order_ref=order_ref or f"ord-{next(seq):04d}",
            account_id=account_id,
            currency=currency,
            charge_amount=Decimal(amount),
            created_at=created,
        )

    return _make

