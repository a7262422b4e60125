from urllib.parse import urlencode

import httpx
import pytest

from helpers import razorpay_checkout, razorpay_payment, razorpay_refund, razorpay_webhook
from storefront.main import create_app

CHECKOUT = {
    "customer": {"name": "Asha", "email": "asha@example.com", "phone": "+91-9000000000"},
    "shipping_address": {"line1": "12 MG Road", "city": "Bengaluru", "postal_code": "560001", "country": "IN"},
    "lines": [{"product_id": "tshirt", "quantity": 1}],
}


@pytest.fixture
async def client(ctx):
    app = create_app(context=ctx)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://storefront.test") as client:
        yield client


async def place(client, **overrides):
    response = await client.post("/orders", json={**CHECKOUT, **overrides})
    assert response.status_code == 201, response.text
    return response.json()


async def paid_order(client):
    order = await place(client)
    begun = await client.post("/payments/begin", json={"order_id": order["id"], "gateway": "razorpay"})
    assert begun.status_code == 200
    body, headers = razorpay_webhook(
        "payment.captured", razorpay_payment("pay_ABC", "order_0001", 63882, order["id"])
    )
    verified = await client.post("/payments/verify/razorpay", content=body, headers=headers)
    assert verified.json()["payment_status"] == "paid"
    return order


async def test_place_order(client):
    order = await place(client)
    assert order["status"] == "pending"
    assert order["order_number"].startswith("PLG")
    assert order["pricing"] == {
        "subtotal": 49900,
        "tax": 8982,
        "shipping": 5000,
        "discount": 0,
        "total": 63882,
        "total_display": "638.82",
    }
    assert order["payment"]["status"] == "unpaid"
    assert order["history"][0]["to"] == "pending"


async def test_free_shipping_over_threshold(client):
    order = await place(client, lines=[{"product_id": "tshirt", "quantity": 2}])
    assert order["pricing"]["shipping"] == 0
    assert order["pricing"]["total"] == 117764


async def test_out_of_stock(client):
    response = await client.post("/orders", json={**CHECKOUT, "lines": [{"product_id": "mug", "quantity": 3}]})
    assert response.status_code == 409
    assert response.json()["error"] == "out_of_stock"


async def test_invalid_checkout(client):
    response = await client.post("/orders", json={**CHECKOUT, "lines": [{"product_id": "mug", "quantity": 0}]})
    assert response.status_code == 422


async def test_unknown_order(client):
    response = await client.get("/orders/missing")
    assert response.status_code == 404
    assert response.json()["error"] == "unknown_order"


async def test_payment_methods_by_currency(client):
    response = await client.get("/payments/methods", params={"currency": "INR"})
    assert sorted(m["id"] for m in response.json()["methods"]) == ["cod", "razorpay"]

    response = await client.get("/payments/methods", params={"currency": "EUR"})
    assert response.json()["methods"] == []


async def test_begin_payment(client):
    order = await place(client)
    response = await client.post("/payments/begin", json={"order_id": order["id"], "gateway": "razorpay"})
    assert response.status_code == 200
    data = response.json()
    assert data["gateway"] == "razorpay"
    assert data["client_continuation"]["intent_id"] == "order_0001"
    assert data["expires_at"].startswith("2026-03-01T12:30")


async def test_begin_with_unknown_gateway(client):
    order = await place(client)
    response = await client.post("/payments/begin", json={"order_id": order["id"], "gateway": "bitcoin"})
    assert response.status_code == 404
    assert response.json()["error"] == "unknown_gateway"


async def test_webhook_is_idempotent(client):
    order = await paid_order(client)
    body, headers = razorpay_webhook(
        "payment.captured", razorpay_payment("pay_ABC", "order_0001", 63882, order["id"])
    )
    again = await client.post("/payments/verify/razorpay", content=body, headers=headers)
    assert again.status_code == 200
    assert again.json()["outcome"] == "duplicate"

    fetched = (await client.get(f"/orders/{order['id']}")).json()
    assert fetched["payment"] == {
        "status": "paid",
        "gateway": "razorpay",
        "captured": 63882,
        "refunded": 0,
        "net_settled": 63882,
    }


async def test_webhook_with_bad_signature(client):
    order = await place(client)
    await client.post("/payments/begin", json={"order_id": order["id"], "gateway": "razorpay"})
    body, headers = razorpay_webhook("payment.captured", razorpay_payment("pay_ABC", "order_0001", 63882), "nope")
    response = await client.post("/payments/verify/razorpay", content=body, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "signature_invalid"


async def test_rejected_event_is_a_conflict(client):
    await paid_order(client)
    body, headers = razorpay_webhook("refund.processed", razorpay_refund("rfnd_9", "pay_ABC", "order_0001", 70000))
    response = await client.post("/payments/verify/razorpay", content=body, headers=headers)
    assert response.status_code == 409
    assert response.json()["error"] == "rejected"


async def test_redirect_return(client):
    order = await place(client)
    await client.post("/payments/begin", json={"order_id": order["id"], "gateway": "razorpay"})
    body, _ = razorpay_checkout("order_0001", "pay_ABC")

    response = await client.get(f"/payments/return/razorpay?{body.decode()}")
    assert response.status_code == 303
    assert response.headers["location"] == f"https://www.shop.test/payment/success?{urlencode({'order_id': order['id']})}"


async def test_redirect_return_with_forged_signature(client):
    order = await place(client)
    await client.post("/payments/begin", json={"order_id": order["id"], "gateway": "razorpay"})
    body, headers = razorpay_checkout("order_0001", "pay_ABC", secret="forged")

    response = await client.post("/payments/return/razorpay", content=body, headers=headers)
    assert response.status_code == 303
    assert response.headers["location"] == "https://www.shop.test/payment/failed?error=signature_invalid"


async def test_customer_cancel(client):
    order = await place(client)
    response = await client.post(f"/orders/{order['id']}/cancel", json={"reason": "ordered twice"})
    assert response.json() == {"order_id": order["id"], "status": "cancelled"}

    again = await client.post(f"/orders/{order['id']}/cancel", json={})
    assert again.status_code == 409
    assert again.json()["error"] == "already_terminal"


async def test_cancel_of_paid_order_requires_refund(client):
    order = await paid_order(client)
    response = await client.post(f"/orders/{order['id']}/cancel", json={})
    assert response.status_code == 409
    assert response.json()["error"] == "refund_required"


async def test_admin_fulfilment(client):
    order = await paid_order(client)
    for to in ["accepted", "processing", "shipped"]:
        response = await client.post(f"/admin/orders/{order['id']}/transition", json={"to": to})
        assert response.status_code == 200, response.text
    delivered = await client.post(
        f"/admin/orders/{order['id']}/transition", json={"to": "delivered", "actor": "carrier"}
    )
    assert delivered.json()["status"] == "delivered"

    history = (await client.get(f"/orders/{order['id']}")).json()["history"]
    assert [h["to"] for h in history] == ["pending", "accepted", "processing", "shipped", "delivered"]


async def test_accept_requires_payment(client):
    order = await place(client)
    response = await client.post(f"/admin/orders/{order['id']}/transition", json={"to": "accepted"})
    assert response.status_code == 409
    assert response.json()["error"] == "requires_payment"


async def test_bulk_transition(client):
    first = await place(client)
    second = await place(client)
    response = await client.post(
        "/admin/orders/bulk/transition",
        json={"order_ids": [first["id"], second["id"], "missing"], "to": "declined", "note": "fraud check"},
    )
    data = response.json()
    assert data["updated"] == 2
    assert data["failed"] == 1


async def test_admin_refund_and_ledger(client, razorpay_api):
    order = await paid_order(client)
    response = await client.post(f"/admin/orders/{order['id']}/refund", json={"amount": 10000, "reason": "damaged"})
    assert response.status_code == 202
    assert response.json()["amount"] == 10000
    assert response.json()["status"] == "processed"

    ledger = (await client.get(f"/admin/orders/{order['id']}/ledger")).json()
    assert [e["kind"] for e in ledger] == ["intent_created", "captured"]
    assert ledger[0]["verified"] is False
    assert ledger[1]["gateway_event_id"] == "pay_ABC"


async def test_refund_over_balance(client):
    order = await paid_order(client)
    response = await client.post(f"/admin/orders/{order['id']}/refund", json={"amount": 70000})
    assert response.status_code == 422
    assert response.json()["error"] == "invalid_amount"


async def test_admin_listing_and_stats(client):
    paid = await paid_order(client)
    await place(client)

    listing = (await client.get("/admin/orders", params={"payment_status": "paid"})).json()
    assert [o["id"] for o in listing] == [paid["id"]]

    stats = (await client.get("/admin/payments/stats")).json()
    assert stats["orders_total"] == 2
    assert stats["orders_by_payment_status"] == {"paid": 1, "unpaid": 1}
    assert stats["gateways"] == [
        {
            "gateway": "razorpay",
            "currency": "INR",
            "captured": 63882,
            "refunded": 0,
            "net_settled": 63882,
            "captures": 1,
            "failures": 0,
        }
    ]


async def test_products_and_stock(client):
    await place(client)
    products = {p["id"]: p for p in (await client.get("/products")).json()}
    assert products["tshirt"]["available"] == 4
    assert products["tshirt"]["reserved"] == 1

    response = await client.put(
        "/admin/products/tshirt/stock",
        json={"name": "Logo T-Shirt", "price": 49900, "currency": "INR", "on_hand": 20},
    )
    assert response.json()["on_hand"] == 20
    assert response.json()["available"] == 19


async def test_health(client):
    response = await client.get("/health")
    assert response.json() == {"status": "ok", "service": "storefront", "gateways": ["cod", "razorpay"]}


async def test_discount_larger_than_total(client):
    response = await client.post("/orders", json={**CHECKOUT, "discount": 100000})
    assert response.status_code == 422
    assert response.json()["error"] == "invalid_amount"


async def test_shipment_tracking(client):
    order = await paid_order(client)
    for to in ["accepted", "processing"]:
        await client.post(f"/admin/orders/{order['id']}/transition", json={"to": to})
    shipped = await client.post(
        f"/admin/orders/{order['id']}/transition",
        json={"to": "shipped", "shipment": {"tracking_number": "AWB123", "carrier": "BlueDart"}},
    )
    assert shipped.status_code == 200, shipped.text
    assert shipped.json()["tracking"]["tracking_number"] == "AWB123"

    tracked = await client.get(f"/orders/track/{order['order_number']}", params={"email": "ASHA@example.com"})
    assert tracked.status_code == 200
    data = tracked.json()
    assert data["status"] == "shipped"
    assert data["tracking"]["carrier"] == "BlueDart"
    assert [(t["status"], t["completed"]) for t in data["timeline"]] == [
        ("pending", True),
        ("accepted", True),
        ("processing", True),
        ("shipped", True),
        ("expected_delivery", False),
    ]

    stranger = await client.get(f"/orders/track/{order['order_number']}", params={"email": "someone@example.com"})
    assert stranger.status_code == 404
    assert stranger.json()["error"] == "unknown_order"


async def test_shipment_details_on_other_transition(client):
    order = await paid_order(client)
    response = await client.post(
        f"/admin/orders/{order['id']}/transition", json={"to": "accepted", "shipment": {"carrier": "BlueDart"}}
    )
    assert response.status_code == 409
    assert response.json()["error"] == "illegal_transition"


async def test_admin_notes(client):
    order = await place(client)
    response = await client.patch(f"/admin/orders/{order['id']}/notes", json={"admin_notes": "gift wrap"})
    assert response.json() == {"order_id": order["id"], "notes": {"admin": "gift wrap", "internal": ""}}

    response = await client.patch(f"/admin/orders/{order['id']}/notes", json={"internal_notes": "VIP"})
    assert response.json()["notes"] == {"admin": "gift wrap", "internal": "VIP"}

    missing = await client.patch("/admin/orders/missing/notes", json={"admin_notes": "x"})
    assert missing.status_code == 404


async def test_unexpected_error_is_internal_error(ctx, monkeypatch):
    def broken(currency=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(ctx.gateways, "describe_all", broken)
    app = create_app(context=ctx)
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://storefront.test") as client:
        response = await client.get("/payments/methods")
    assert response.status_code == 500
    assert response.json() == {"detail": "Internal error", "error": "internal_error"}
