"""
HTTP tests for the order, webhook, statement and review endpoints.
"""

from datetime import date, datetime, timezone

import httpx
import pytest

from eom_billing.config import settings
from eom_billing.dependencies import (
    get_attachment_service,
    get_cycle_runner,
    get_db,
    get_statement_store,
)
from eom_billing.main import app

RUN_AT = datetime(2026, 1, 26, 0, 5, tzinfo=timezone.utc)


@pytest.fixture
async def client(runner, store, attachment, session_factory):
    async def _db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_cycle_runner] = lambda: runner
    app.dependency_overrides[get_statement_store] = lambda: store
    app.dependency_overrides[get_attachment_service] = lambda: attachment
    app.dependency_overrides[get_db] = _db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
async def finalized(attachment, runner, store, make_order):
    stmt = await attachment.attach(make_order(date(2026, 1, 10), "80.00"))
    await runner.run(date(2026, 1, 25), now=RUN_AT)
    return await store.get_statement(stmt.statement_id)


def _order(ref="ord-1", created_at="2026-01-10T12:00:00Z", amount="50.00"):
    return {
        "order_ref": ref,
        "account_id": "acct-A",
        "currency": "usd",
        "charge_amount": amount,
        "created_at": created_at,
    }


class TestOrdersEndpoint:

    async def test_attach(self, client, store):
        resp = await client.post("/api/v1/orders/attach", json=_order())
        assert resp.status_code == 200
        body = resp.json()
        assert body["order_ref"] == "ord-1"
        assert body["window_start"] == "2025-12-26"
        assert body["window_end"] == "2026-01-25"

        second = (await client.post("/api/v1/orders/attach", json=_order("ord-2"))).json()
        assert second["statement_id"] == body["statement_id"]
        stmt = await store.get_statement_for_order("ord-2")
        assert str(stmt.statement_id) == body["statement_id"]
        assert stmt.currency == "USD"

    async def test_closed_window_conflicts(self, client, finalized):
        resp = await client.post(
            "/api/v1/orders/attach", json=_order("ord-late", "2026-01-24T08:00:00Z")
        )
        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["reason"] == "STATEMENT_FINALIZED"
        assert detail["statement_id"] == str(finalized.statement_id)
        assert detail["review_id"]

        [item] = (await client.get("/api/v1/review")).json()["items"]
        assert item["review_id"] == detail["review_id"]

    @pytest.mark.parametrize(
        "overrides",
        [{"created_at": "2026-01-10T12:00:00"}, {"charge_amount": "0.00"}, {"order_ref": ""}],
    )
    async def test_invalid_order(self, client, overrides):
        resp = await client.post("/api/v1/orders/attach", json={**_order(), **overrides})
        assert resp.status_code == 422

    async def test_api_key_enforced_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "API_KEY", "k3y")
        assert (await client.post("/api/v1/orders/attach", json=_order())).status_code == 401
        resp = await client.post(
            "/api/v1/orders/attach", json=_order(), headers={"X-API-Key": "k3y"}
        )
        assert resp.status_code == 200


class TestInvoicingWebhook:

    async def test_paid(self, client, finalized):
        resp = await client.post(
            "/api/v1/webhooks/invoicing",
            json={
                "external_invoice_ref": finalized.external_invoice_ref,
                "status": "succeeded",
                "paid_at": "2026-01-27T09:00:00Z",
            },
        )
        assert resp.status_code == 200
        assert resp.json() == {
            "external_invoice_ref": finalized.external_invoice_ref,
            "outcome": "paid",
        }

    async def test_failure_after_paid_conflicts(self, client, finalized):
        paid = {
            "external_invoice_ref": finalized.external_invoice_ref,
            "status": "succeeded",
            "paid_at": "2026-01-27T09:00:00Z",
        }
        assert (await client.post("/api/v1/webhooks/invoicing", json=paid)).status_code == 200

        resp = await client.post(
            "/api/v1/webhooks/invoicing",
            json={"external_invoice_ref": finalized.external_invoice_ref, "status": "failed"},
        )
        assert resp.status_code == 409
        assert resp.json()["detail"]["error_code"] == "ERR_STATEMENT_IMMUTABLE"

    async def test_unknown_invoice(self, client):
        resp = await client.post(
            "/api/v1/webhooks/invoicing",
            json={"external_invoice_ref": "inv_nope", "status": "failed"},
        )
        assert resp.status_code == 404

    async def test_invalid_payload(self, client):
        resp = await client.post(
            "/api/v1/webhooks/invoicing",
            json={"external_invoice_ref": "inv_1", "status": "succeeded"},
        )
        assert resp.status_code == 422

    async def test_secret_enforced_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_SECRET", "s3cret")
        body = {"external_invoice_ref": "inv_nope", "status": "failed"}

        assert (await client.post("/api/v1/webhooks/invoicing", json=body)).status_code == 401
        resp = await client.post(
            "/api/v1/webhooks/invoicing", json=body, headers={"X-Webhook-Secret": "s3cret"}
        )
        assert resp.status_code == 404


class TestStatementsEndpoint:

    async def test_statement_detail(self, client, finalized):
        resp = await client.get(f"/api/v1/statements/{finalized.statement_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "FINALIZED"
        assert body["window_start"] == "2025-12-26"
        assert body["window_end"] == "2026-01-25"
        assert body["claimed"] is False
        assert len(body["lines"]) == 1

    async def test_missing_statement(self, client):
        resp = await client.get("/api/v1/statements/00000000-0000-0000-0000-000000000000")
        assert resp.status_code == 404


class TestReviewEndpoints:

    async def test_list_and_resolve(self, client, attachment, finalized, make_order):
        from eom_billing.billing.errors import EarlyFinalizationConflict

        with pytest.raises(EarlyFinalizationConflict):
            await attachment.attach(make_order(date(2026, 1, 24), order_ref="ord-late"))

        listing = (await client.get("/api/v1/review")).json()
        [item] = listing["items"]
        assert item["order_ref"] == "ord-late"
        assert item["statement_id"] == str(finalized.statement_id)

        resp = await client.post(
            f"/api/v1/review/{item['review_id']}/resolve", json={"note": "billed separately"}
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "RESOLVED"

        stats = (await client.get("/api/v1/review/stats")).json()
        assert stats["pending"] == 0
        assert stats["resolved"] == 1

    async def test_resolve_missing(self, client):
        resp = await client.post(
            "/api/v1/review/00000000-0000-0000-0000-000000000000/resolve", json={}
        )
        assert resp.status_code == 404
