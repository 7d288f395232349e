"""HTTP surface, driven in-process through httpx's ASGI transport."""

import httpx
import pytest

from shopcore.common.config import settings
from shopcore.services.orders.main import build_app

CART = {
    "currency": "USD",
    "email": "buyer@example.com",
    "items": [{"product_id": "p-1", "sku": "SKU-A", "title": "Mug", "quantity": 2, "unit_price": "7.50"}],
    "shipping": "3.00",
}


@pytest.fixture
async def client(container):
    transport = httpx.ASGITransport(app=build_app(container, run_workers=False))
    async with httpx.AsyncClient(transport=transport, base_url="http://shopcore.test") as client:
        yield client


def _as(customer_id):
    return {"x-customer-id": customer_id}


SYSTEM = {"x-api-key": settings.api_key}


async def _receive(client, sku="SKU-A", quantity=5):
    response = await client.post("/inventory/receive", json={"sku": sku, "quantity": quantity}, headers=SYSTEM)
    assert response.status_code == 200
    return response.json()


async def test_requests_need_credentials(client):
    assert (await client.post("/orders", json=CART)).status_code == 401
    assert (await client.post("/orders", json=CART, headers={"x-api-key": "wrong"})).status_code == 401
    receipt = await client.post("/inventory/receive", json={"sku": "SKU-A", "quantity": 1}, headers=_as("c-1"))
    assert receipt.status_code == 401
    assert (await client.get("/inventory/SKU-A/main")).status_code == 401


async def test_checkout_and_pay(client):
    assert (await _receive(client))["available"] == 5

    created = await client.post("/orders", json=CART, headers=_as("c-1"))
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "pending_payment"
    assert body["grand_total"] == "18.00"
    assert body["lines"][0]["line_total"] == "15.00"

    paid = await client.post(f"/orders/{body['order_id']}/pay", json={"method": {"type": "card"}}, headers=_as("c-1"))
    assert paid.status_code == 200
    assert paid.json()["outcome"] == "succeeded"

    order = (await client.get(f"/orders/{body['order_id']}", headers=_as("c-1"))).json()
    assert (order["status"], order["captured"]) == ("confirmed", "18.00")
    level = (await client.get("/inventory/SKU-A/main", headers=_as("c-1"))).json()
    assert (level["on_hand"], level["reserved"]) == (3, 0)


async def test_insufficient_stock_is_a_conflict(client):
    await _receive(client, quantity=1)

    response = await client.post("/orders", json=CART, headers=_as("c-1"))

    assert response.status_code == 409
    assert response.json()["code"] == "insufficient_stock"
    assert (response.json()["requested"], response.json()["available"]) == (2, 1)


async def test_errors_carry_stable_codes(client):
    await _receive(client)
    order_id = (await client.post("/orders", json=CART, headers=_as("c-1"))).json()["order_id"]

    forbidden = await client.get(f"/orders/{order_id}", headers=_as("c-2"))
    missing = await client.get("/orders/does-not-exist", headers=_as("c-1"))
    premature = await client.post(f"/orders/{order_id}/refunds", json={"amount": "1.00"}, headers=_as("c-1"))
    fulfilment = await client.post(f"/orders/{order_id}/fulfillment/shipped", headers=_as("c-1"))

    assert (forbidden.status_code, forbidden.json()["code"]) == (403, "forbidden")
    assert (missing.status_code, missing.json()["code"]) == (404, "not_found")
    assert (premature.status_code, premature.json()["code"]) == (422, "validation_error")
    assert fulfilment.status_code == 403


async def test_refund_and_cancel_over_http(client):
    await _receive(client)
    order_id = (await client.post("/orders", json=CART, headers=_as("c-1"))).json()["order_id"]
    await client.post(f"/orders/{order_id}/pay", json={}, headers=_as("c-1"))

    refund = await client.post(f"/orders/{order_id}/refunds", json={"amount": "5.00"}, headers=_as("c-1"))
    assert refund.status_code == 200
    assert (refund.json()["outcome"], refund.json()["amount"]) == ("refunded", "5.00")

    cancelled = await client.post(f"/orders/{order_id}/cancel", json={"reason": "changed_mind"}, headers=_as("c-1"))
    assert cancelled.status_code == 200
    assert (cancelled.json()["status"], cancelled.json()["refunded"]) == ("cancelled", "18.00")


async def test_three_d_secure_over_http(client):
    await _receive(client)
    order_id = (await client.post("/orders", json=CART, headers=_as("c-1"))).json()["order_id"]

    pending = await client.post(
        f"/orders/{order_id}/pay", json={"method": {"type": "card", "token": "tok_3ds"}}, headers=_as("c-1")
    )
    assert pending.json()["outcome"] == "requires_action"
    assert (await client.get(f"/orders/{order_id}", headers=_as("c-1"))).json()["payment_pending_action"] is True

    done = await client.post(
        f"/payments/{pending.json()['payment_id']}/complete",
        json={"action_result": {"result": "approved"}},
        headers=_as("c-1"),
    )
    assert done.json()["outcome"] == "succeeded"


async def test_webhook_endpoint(client, gateway):
    raw, headers = gateway.webhook("payment.succeeded", "fake_unknown")

    forged = await client.post("/webhooks/fake", content=raw, headers={"x-signature": "nope"})
    unknown = await client.post("/webhooks/acme", content=raw, headers=headers)
    orphan = await client.post("/webhooks/fake", content=raw, headers=headers)

    assert (forged.status_code, forged.json()["reason"]) == (400, "invalid_signature")
    assert (unknown.status_code, unknown.json()["reason"]) == (400, "unknown_source")
    assert (orphan.status_code, orphan.json()["reason"]) == (400, "processing_failed")


async def test_payment_methods_listing(client):
    response = await client.get("/payment-methods", params={"currency": "eur", "amount": "20.00"})
    assert response.status_code == 200
    assert sorted(m["method_type"] for m in response.json()) == ["bank_transfer", "card"]


async def test_health_and_metrics(client):
    assert (await client.get("/health")).json() == {"ok": True}
    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text
