import json

import httpx
import pytest

from storefront.errors import SignatureInvalid, UnknownEvent, UnsupportedCurrency
from storefront.payment.gateways import PayPalAdapter
from storefront.payment.ledger import EntryKind

WEBHOOK_HEADERS = {
    "content-type": "application/json",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-TIME": "2026-03-01T12:00:00Z",
    "PAYPAL-TRANSMISSION-SIG": "c2lnbmF0dXJl",
    "PAYPAL-CERT-URL": "https://api.paypal.test/cert.pem",
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
}


def capture(capture_id="CAP-1", status="COMPLETED", value="14.99"):
    return {
        "id": capture_id,
        "status": status,
        "amount": {"currency_code": "USD", "value": value},
        "custom_id": "o1",
    }


class FakePayPal:
    def __init__(self):
        self.requests = []
        self.verification_status = "SUCCESS"
        self.already_captured = False

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
        if path == "/v2/checkout/orders" and request.method == "POST":
            return httpx.Response(
                201,
                json={
                    "id": "5O190127TN364715T",
                    "status": "CREATED",
                    "links": [{"rel": "approve", "href": "https://paypal.test/checkoutnow?token=5O190127TN364715T"}],
                },
            )
        if path.endswith("/capture"):
            if self.already_captured:
                return httpx.Response(422, json={"details": [{"issue": "ORDER_ALREADY_CAPTURED"}]})
            return httpx.Response(201, json=self.captured_order())
        if path.startswith("/v2/checkout/orders/"):
            return httpx.Response(200, json=self.captured_order())
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})
        if path.endswith("/refund"):
            return httpx.Response(201, json={"id": "REF-1", "status": "COMPLETED"})
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})

    def captured_order(self):
        return {
            "id": "5O190127TN364715T",
            "status": "COMPLETED",
            "purchase_units": [{"custom_id": "o1", "payments": {"captures": [capture()]}}],
        }

    def paths(self):
        return [r.url.path for r in self.requests]


@pytest.fixture
def api():
    return FakePayPal()


@pytest.fixture
def adapter(api):
    client = httpx.AsyncClient(transport=httpx.MockTransport(api), base_url="https://api.paypal.test")
    return PayPalAdapter("client", "secret", "WH-1", http_client=client)


async def test_create_order_uses_major_units(adapter, api):
    handle = await adapter.create_intent("o1", 1499, "USD", "https://shop.test/payments/return/paypal", {"attempt": 1})
    assert handle.gateway_intent_id == "5O190127TN364715T"
    assert handle.client_continuation["approval_url"].startswith("https://paypal.test/checkoutnow")

    request = api.requests[-1]
    body = json.loads(request.content)
    assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "14.99"}
    assert body["purchase_units"][0]["custom_id"] == "o1"
    assert body["application_context"]["cancel_url"] == "https://shop.test/payments/return/paypal?cancel=1"
    assert request.headers["authorization"] == "Bearer A21"
    assert request.headers["paypal-request-id"] == "storefront-o1-1"


async def test_access_token_is_cached(adapter, api):
    await adapter.create_intent("o1", 1499, "USD", "https://shop.test/r", {"attempt": 1})
    await adapter.create_intent("o2", 1499, "USD", "https://shop.test/r", {"attempt": 1})
    assert api.paths().count("/v1/oauth2/token") == 1


async def test_rupees_are_not_supported(adapter):
    with pytest.raises(UnsupportedCurrency):
        await adapter.create_intent("o1", 63882, "INR", "https://shop.test/r", {})


async def test_approved_return_captures_order(adapter, api):
    event = await adapter.verify_callback(b"token=5O190127TN364715T&PayerID=PAYER1", {})
    assert event.outcome is EntryKind.CAPTURED
    assert event.gateway_event_id == "CAP-1"
    assert event.gateway_intent_id == "5O190127TN364715T"
    assert event.order_id == "o1"
    assert event.amount == 1499
    assert "/v2/checkout/orders/5O190127TN364715T/capture" in api.paths()


async def test_return_after_webhook_capture_reads_order(adapter, api):
    api.already_captured = True
    event = await adapter.verify_callback(b"token=5O190127TN364715T&PayerID=PAYER1", {})
    assert event.gateway_event_id == "CAP-1"
    assert api.requests[-1].method == "GET"


async def test_cancel_return_voids_intent(adapter, api):
    event = await adapter.verify_callback(b"cancel=1&token=5O190127TN364715T", {})
    assert event.outcome is EntryKind.VOIDED
    assert event.gateway_event_id == "5O190127TN364715T:voided"
    assert api.requests == []


def webhook(event_type, resource):
    return json.dumps({"id": "WH-EVT-1", "event_type": event_type, "resource": resource}).encode()


async def test_capture_completed_webhook(adapter, api):
    resource = {**capture(), "supplementary_data": {"related_ids": {"order_id": "5O190127TN364715T"}}}
    event = await adapter.verify_callback(webhook("PAYMENT.CAPTURE.COMPLETED", resource), WEBHOOK_HEADERS)
    assert event.outcome is EntryKind.CAPTURED
    assert event.gateway_intent_id == "5O190127TN364715T"

    verification = json.loads(api.requests[-1].content)
    assert verification["webhook_id"] == "WH-1"
    assert verification["transmission_sig"] == "c2lnbmF0dXJl"
    assert verification["webhook_event"]["event_type"] == "PAYMENT.CAPTURE.COMPLETED"


async def test_failed_verification(adapter, api):
    api.verification_status = "FAILURE"
    with pytest.raises(SignatureInvalid):
        await adapter.verify_callback(webhook("PAYMENT.CAPTURE.COMPLETED", capture()), WEBHOOK_HEADERS)


async def test_missing_transmission_header(adapter):
    headers = {k: v for k, v in WEBHOOK_HEADERS.items() if k != "PAYPAL-CERT-URL"}
    with pytest.raises(SignatureInvalid):
        await adapter.verify_callback(webhook("PAYMENT.CAPTURE.COMPLETED", capture()), headers)


async def test_refund_webhook_points_at_capture(adapter):
    resource = {
        "id": "REF-1",
        "status": "COMPLETED",
        "amount": {"currency_code": "USD", "value": "5.00"},
        "links": [{"rel": "up", "href": "https://api.paypal.test/v2/payments/captures/CAP-1"}],
    }
    event = await adapter.verify_callback(webhook("PAYMENT.CAPTURE.REFUNDED", resource), WEBHOOK_HEADERS)
    assert event.outcome is EntryKind.REFUNDED
    assert event.gateway_event_id == "REF-1"
    assert event.gateway_payment_id == "CAP-1"
    assert event.amount == 500


async def test_unhandled_webhook(adapter):
    with pytest.raises(UnknownEvent):
        await adapter.verify_callback(webhook("CHECKOUT.ORDER.APPROVED", {"id": "X"}), WEBHOOK_HEADERS)


async def test_refund_request(adapter, api):
    handle = await adapter.refund("5O190127TN364715T", "CAP-1", 500, "USD", "damaged")
    assert handle.refund_id == "REF-1"
    assert handle.status == "completed"
    request = api.requests[-1]
    assert request.url.path == "/v2/payments/captures/CAP-1/refund"
    assert json.loads(request.content)["amount"] == {"value": "5.00", "currency_code": "USD"}
