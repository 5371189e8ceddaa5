from __future__ import annotations

import dataclasses

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from services.ledger_service import get_balance
from shared.config import settings
from web_api import deps
from web_api.main import app

USER = {"X-User-Id": "A"}
ADMIN = {"X-User-Id": "admin-1"}


@pytest_asyncio.fixture
async def client(db):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_requires_user_header(client):
    resp = await client.get("/api/credits/balance")
    assert resp.status_code == 401
    assert resp.json()["error"] == "not_authenticated"


@pytest.mark.asyncio
async def test_gateway_secret(client, monkeypatch):
    monkeypatch.setattr(deps, "settings", dataclasses.replace(settings, GATEWAY_SECRET="gw"))

    assert (await client.get("/api/credits/balance", headers=USER)).status_code == 401
    resp = await client.get("/api/credits/balance", headers={**USER, "X-Gateway-Secret": "gw"})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_balance_and_transfer(client, fund):
    await fund("A", 500)

    resp = await client.get("/api/credits/balance", headers=USER)
    assert resp.json() == {"account_id": "A", "balance": 500}

    body = {"to_account": "B", "amount": 200}
    headers = {**USER, "Idempotency-Key": "k-1"}
    first = await client.post("/api/credits/transfer", json=body, headers=headers)
    second = await client.post("/api/credits/transfer", json=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["from_balance"] == 300
    assert first.json()["operation_id"] == "k-1"
    assert second.json()["status"] == "already_processed"
    assert await get_balance("A") == 300
    assert await get_balance("B") == 200

    lookup = await client.get("/api/credits/transfers/k-1", headers=USER)
    assert lookup.status_code == 200
    assert lookup.json()["amount"] == 200
    missing = await client.get("/api/credits/transfers/k-404", headers=USER)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_business_errors_are_typed(client, fund):
    await fund("A", 100)

    resp = await client.post("/api/credits/transfer", json={"to_account": "B", "amount": 200}, headers=USER)
    assert resp.status_code == 409
    data = resp.json()
    assert data["error"] == "insufficient_funds"
    assert data["message"]
    assert data["trace_id"]

    resp = await client.post("/api/credits/transfer", json={"to_account": "A", "amount": 100}, headers=USER)
    assert resp.json()["error"] == "self_transfer"

    resp = await client.post("/api/credits/transfer", json={"to_account": "B", "amount": 150}, headers=USER)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_amount"


@pytest.mark.asyncio
async def test_history_endpoint(client, fund):
    for amount in (1, 2, 3):
        await fund("A", amount)

    resp = await client.get("/api/credits/entries", params={"limit": 2}, headers=USER)
    page = resp.json()
    assert [e["amount"] for e in page["entries"]] == [3, 2]

    resp = await client.get(
        "/api/credits/entries",
        params={"limit": 2, "page_token": page["next_page_token"]},
        headers=USER,
    )
    assert [e["amount"] for e in resp.json()["entries"]] == [1]

    bad = await client.get("/api/credits/entries", params={"page_token": "x!"}, headers=USER)
    assert bad.status_code == 400
    assert bad.json()["error"] == "invalid_page_token"

    wrong_kind = await client.get("/api/credits/entries", params={"kind": "bonus"}, headers=USER)
    assert wrong_kind.status_code == 422


@pytest.mark.asyncio
async def test_payment_flow(client):
    pricing = await client.get("/api/pricing")
    assert {r["amount"]: r["credits"] for r in pricing.json()} == {10: 10, 30: 40, 50: 70}

    resp = await client.post("/api/payments", json={"payment_id": "pay_1", "amount": 30}, headers=USER)
    assert resp.status_code == 201
    assert resp.json()["status"] == "pending"

    # Without a gateway key only the webhook can settle.
    early = await client.post("/api/payments/confirm", json={"payment_id": "pay_1", "amount": 30}, headers=USER)
    assert early.status_code == 409
    assert early.json()["error"] == "payment_not_confirmed"
    assert await get_balance("A") == 0

    webhook = {
        "type": "payment_paid",
        "data": {"id": "pay_1", "status": "paid", "amount": 3000},
        "secret_token": "whsec_test",
    }
    assert (await client.post("/moyasar/webhook", json=webhook)).json()["outcome"] == "settled"

    resp = await client.post("/api/payments/confirm", json={"payment_id": "pay_1", "amount": 30}, headers=USER)
    assert resp.status_code == 200
    assert resp.json()["credits_granted"] == 40
    assert resp.json()["status"] == "already_processed"
    assert await get_balance("A") == 40

    other = await client.post(
        "/api/payments/confirm", json={"payment_id": "pay_1", "amount": 30}, headers={"X-User-Id": "B"}
    )
    assert other.status_code == 409
    assert await get_balance("B") == 0


@pytest.mark.asyncio
async def test_confirm_of_made_up_payment_grants_nothing(client):
    resp = await client.post(
        "/api/payments/confirm", json={"payment_id": "made_up", "amount": 50}, headers=USER
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "payment_not_confirmed"
    assert await get_balance("A") == 0


@pytest.mark.asyncio
async def test_webhook_secret_and_settlement(client):
    payload = {
        "type": "payment_paid",
        "data": {"id": "pay_w", "status": "paid", "amount": 5000, "metadata": {"user_id": "A"}},
    }

    denied = await client.post("/moyasar/webhook", json={**payload, "secret_token": "nope"})
    assert denied.status_code == 401
    assert await get_balance("A") == 0

    ok = await client.post("/moyasar/webhook", json=payload, headers={"X-Moyasar-Signature": "whsec_test"})
    assert ok.status_code == 200
    assert ok.json()["outcome"] == "settled"

    replay = await client.post("/moyasar/webhook", json={**payload, "secret_token": "whsec_test"})
    assert replay.json()["outcome"] == "already_processed"
    assert await get_balance("A") == 70


@pytest.mark.asyncio
async def test_webhook_malformed_json(client):
    resp = await client.post(
        "/moyasar/webhook", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_webhook_acknowledges_unknown_amount(client):
    payload = {
        "secret_token": "whsec_test",
        "id": "pay_odd",
        "status": "paid",
        "amount": 1700,
        "metadata": {"user_id": "A"},
    }
    resp = await client.post("/moyasar/webhook", json=payload)
    assert resp.status_code == 200
    assert await get_balance("A") == 0


@pytest.mark.asyncio
async def test_research_endpoints(client, fund):
    await fund("A", 15)

    assert (await client.get("/api/research/cost")).json() == {"cost": 10}

    charge = await client.post("/api/research/charge", json={"request_id": "r1", "topic": "x"}, headers=USER)
    assert charge.json()["balance"] == 5

    refund = await client.post(
        "/api/admin/research/refunds", json={"account_id": "A", "request_id": "r1"}, headers=ADMIN
    )
    assert refund.json()["balance"] == 15

    missing = await client.post(
        "/api/admin/research/refunds", json={"account_id": "A", "request_id": "r2"}, headers=ADMIN
    )
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_user_cannot_refund_own_research(client, fund):
    await fund("A", 10)
    await client.post("/api/research/charge", json={"request_id": "r1"}, headers=USER)
    assert await get_balance("A") == 0

    own = await client.post("/api/research/refund", json={"request_id": "r1"}, headers=USER)
    assert own.status_code == 404

    admin_route = await client.post(
        "/api/admin/research/refunds", json={"account_id": "A", "request_id": "r1"}, headers=USER
    )
    assert admin_route.status_code == 403
    assert await get_balance("A") == 0


@pytest.mark.asyncio
async def test_admin_routes_require_admin(client):
    resp = await client.post("/api/admin/grants", json={"recipient_id": "C", "amount": 100}, headers=USER)
    assert resp.status_code == 403
    assert await get_balance("C") == 0


@pytest.mark.asyncio
async def test_admin_grant_and_reads(client):
    resp = await client.post(
        "/api/admin/grants",
        json={"recipient_id": "C", "amount": 200, "note": "هدية"},
        headers=ADMIN,
    )
    assert resp.status_code == 200
    assert resp.json()["balance"] == 200

    bad = await client.post("/api/admin/grants", json={"recipient_id": "C", "amount": 150}, headers=ADMIN)
    assert bad.status_code == 400

    stats = (await client.get("/api/admin/stats", headers=ADMIN)).json()
    assert stats["total_accounts"] == 1
    assert stats["outstanding_credits"] == 200
    assert stats["entries_by_kind"] == {"admin_gift": 1}

    accounts = (await client.get("/api/admin/accounts", headers=ADMIN)).json()
    assert [a["id"] for a in accounts] == ["C"]

    entries = (await client.get("/api/admin/entries", headers=ADMIN)).json()
    assert entries["entries"][0]["actor_id"] == "admin-1"

    missing = await client.get("/api/admin/accounts/nobody", headers=ADMIN)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_admin_pricing_and_cost(client):
    resp = await client.put("/api/admin/pricing/100", json={"credits": 150}, headers=ADMIN)
    assert resp.json()["credits"] == 150

    assert (await client.delete("/api/admin/pricing/100", headers=ADMIN)).status_code == 204
    assert (await client.delete("/api/admin/pricing/100", headers=ADMIN)).status_code == 404

    resp = await client.put("/api/admin/research-cost", json={"cost": 20}, headers=ADMIN)
    assert resp.json() == {"cost": 20}
    assert (await client.get("/api/research/cost")).json() == {"cost": 20}
