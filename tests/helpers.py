"""テスト用のゲートウェイ署名ヘルパーとフェイク API"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx

from storefront.context import Clock

RAZORPAY_KEY_ID = "rzp_test_key"
RAZORPAY_KEY_SECRET = "rzp_test_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"
STRIPE_WEBHOOK_SECRET = "whsec_test"


class FrozenClock(Clock):
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeRazorpay:
    """Razorpay REST API の最小限のフェイク (httpx.MockTransport 用)"""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.orders: dict[str, dict] = {}
        self.fail_with: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": {"description": "boom"}})
        body = json.loads(request.content or b"{}")
        if request.url.path == "/v1/orders":
            order_id = f"order_{len(self.orders) + 1:04d}"
            self.orders[order_id] = body
            return httpx.Response(
                200,
                json={"id": order_id, "amount": body["amount"], "currency": body["currency"], "status": "created"},
            )
        if request.url.path.endswith("/refund"):
            payment_id = request.url.path.split("/")[3]
            return httpx.Response(
                200,
                json={"id": f"rfnd_{len(self.requests):04d}", "payment_id": payment_id,
                      "amount": body["amount"], "status": "processed"},
            )
        return httpx.Response(404, json={"error": {"description": "not found"}})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), base_url="https://api.razorpay.test")

    @property
    def order_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/v1/orders"]


def razorpay_checkout(rzp_order_id: str, payment_id: str, secret: str = RAZORPAY_KEY_SECRET) -> tuple[bytes, dict]:
    signature = hmac.new(secret.encode(), f"{rzp_order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()
    body = urlencode(
        {
            "razorpay_order_id": rzp_order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature,
        }
    ).encode()
    return body, {"content-type": "application/x-www-form-urlencoded"}


def razorpay_webhook(event: str, payload: dict, secret: str = RAZORPAY_WEBHOOK_SECRET) -> tuple[bytes, dict]:
    body = json.dumps({"entity": "event", "event": event, "payload": payload}).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return body, {"content-type": "application/json", "X-Razorpay-Signature": signature}


def razorpay_payment(payment_id: str, rzp_order_id: str, amount: int, order_id: str | None = None) -> dict:
    entity = {"id": payment_id, "order_id": rzp_order_id, "amount": amount, "currency": "INR", "notes": {}}
    if order_id:
        entity["notes"]["order_id"] = order_id
    return {"payment": {"entity": entity}}


def razorpay_refund(refund_id: str, payment_id: str, rzp_order_id: str, amount: int) -> dict:
    return {
        "refund": {"entity": {"id": refund_id, "payment_id": payment_id, "amount": amount, "currency": "INR"}},
        "payment": {"entity": {"id": payment_id, "order_id": rzp_order_id, "amount": amount, "currency": "INR"}},
    }


def stripe_webhook(event_type: str, obj: dict, secret: str = STRIPE_WEBHOOK_SECRET) -> tuple[bytes, dict]:
    payload = json.dumps(
        {"id": f"evt_{obj['id']}", "object": "event", "type": event_type, "data": {"object": obj}}
    )
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload.encode(), {"content-type": "application/json", "Stripe-Signature": f"t={timestamp},v1={signature}"}
