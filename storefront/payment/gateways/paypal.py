"""
Payment — PayPal アダプター

Orders v2 API を httpx で呼び出す。アクセストークンは client credentials で取得し、
有効期限までキャッシュする。

  create_intent : POST /v2/checkout/orders (intent=CAPTURE, 金額は主単位の文字列)
  リダイレクト  : 顧客の承認後 ?token=<PayPal order id> で戻る → capture を実行
  Webhook       : POST /v1/notifications/verify-webhook-signature で PayPal 側に検証させる
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Literal

import httpx
from pydantic import BaseModel

from ...errors import GatewayUnavailable, InvalidAmount, PayloadMalformed, SignatureInvalid, UnknownEvent
from ...money import format_major, to_minor
from ..ledger import EntryKind
from .base import (
    Capability,
    GatewayAdapter,
    IntentHandle,
    RefundHandle,
    VerifiedEvent,
    decode_fields,
    header,
    parse_variant,
    payload_hash,
)

logger = logging.getLogger(__name__)

TRANSMISSION_HEADERS = {
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "cert_url": "PAYPAL-CERT-URL",
    "auth_algo": "PAYPAL-AUTH-ALGO",
}


class PayPalWebhook(BaseModel):
    gateway: Literal["paypal"] = "paypal"
    id: str
    event_type: str
    resource: dict


class PayPalReturn(BaseModel):
    """承認・キャンセル後に return_url / cancel_url に付与されるクエリ"""

    gateway: Literal["paypal"] = "paypal"
    token: str
    PayerID: str | None = None
    cancel: str | None = None


WEBHOOK_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED": EntryKind.CAPTURED,
    "PAYMENT.CAPTURE.DENIED": EntryKind.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": EntryKind.REFUNDED,
}


def _link(resource: dict, rel: str) -> str | None:
    for link in resource.get("links") or []:
        if link.get("rel") == rel:
            return link.get("href")
    return None


class PayPalAdapter(GatewayAdapter):
    name = "paypal"
    display_name = "PayPal"
    description = "PayPal Wallet, International Cards"
    supported_currencies = frozenset({"USD", "EUR", "GBP"})

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: str | None = None,
        api_url: str = "https://api-m.sandbox.paypal.com",
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout)
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(base_url=api_url, timeout=timeout)
        self._token: str | None = None
        self._token_expires = 0.0
        self._token_lock = asyncio.Lock()

    def capabilities(self) -> frozenset[Capability]:
        return frozenset(
            {
                Capability.PREPAYMENT,
                Capability.REFUND,
                Capability.PARTIAL_REFUND,
                Capability.WEBHOOK,
                Capability.CLIENT_REDIRECT,
            }
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    # ── 通信 ──────────────────────────────────────

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires:
                return self._token
            response = await self.with_deadline(
                self.http.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                ),
                "token request",
            )
            if response.status_code != 200:
                logger.error("PayPal token request returned %d", response.status_code)
                raise GatewayUnavailable(f"PayPal authentication failed with HTTP {response.status_code}")
            data = response.json()
            self._token = data["access_token"]
            # 期限の 60 秒前に更新する
            self._token_expires = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
            return self._token

    async def _request(self, method: str, path: str, what: str, payload: dict | None = None, request_id: str | None = None):
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        response = await self.with_deadline(
            self.http.request(method, path, json=payload, headers=headers), what
        )
        if response.status_code >= 500 or response.status_code in (401, 403):
            logger.error("PayPal %s returned %d: %s", what, response.status_code, response.text[:200])
            raise GatewayUnavailable(f"PayPal {what} failed with HTTP {response.status_code}")
        return response

    # ── インテント作成 ────────────────────────────

    async def create_intent(
        self,
        order_id: str,
        amount: int,
        currency: str,
        return_url: str,
        metadata: dict,
    ) -> IntentHandle:
        self.check_request(amount, currency)
        response = await self._request(
            "POST",
            "/v2/checkout/orders",
            "order creation",
            {
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "reference_id": order_id,
                        "custom_id": order_id,
                        "invoice_id": str(metadata.get("order_number") or order_id),
                        "amount": {"currency_code": currency.upper(), "value": format_major(amount, currency)},
                    }
                ],
                "application_context": {
                    "return_url": return_url,
                    "cancel_url": f"{return_url}?cancel=1",
                    "user_action": "PAY_NOW",
                },
            },
            request_id=f"storefront-{order_id}-{metadata.get('attempt', amount)}",
        )
        if response.status_code >= 400:
            raise InvalidAmount(f"PayPal rejected order creation: {response.text[:200]}")
        created = response.json()
        approval_url = _link(created, "approve") or _link(created, "payer-action")
        logger.info("Created PayPal order %s for order %s", created["id"], order_id)
        return IntentHandle(
            gateway_intent_id=created["id"],
            client_continuation={"intent_id": created["id"], "approval_url": approval_url},
        )

    # ── 検証 ──────────────────────────────────────

    async def verify_callback(self, body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        digest = payload_hash(body)
        if header(headers, TRANSMISSION_HEADERS["transmission_sig"]) is not None:
            return await self._verify_webhook(body, headers, digest)

        returned = parse_variant(PayPalReturn, decode_fields(body, headers))
        if returned.cancel:
            return VerifiedEvent(
                gateway=self.name,
                gateway_event_id=f"{returned.token}:voided",
                gateway_intent_id=returned.token,
                outcome=EntryKind.VOIDED,
                raw_payload_hash=digest,
            )
        return await self._capture(returned.token, digest)

    async def _capture(self, paypal_order_id: str, digest: str) -> VerifiedEvent:
        """承認済みの PayPal 注文を capture する。既に capture 済みなら読み直す。"""
        response = await self._request(
            "POST",
            f"/v2/checkout/orders/{paypal_order_id}/capture",
            "capture",
            {},
            request_id=f"storefront-capture-{paypal_order_id}",
        )
        if response.status_code == 422 and "ORDER_ALREADY_CAPTURED" in response.text:
            response = await self._request("GET", f"/v2/checkout/orders/{paypal_order_id}", "order lookup")
        if response.status_code == 404:
            raise PayloadMalformed(f"Unknown PayPal order {paypal_order_id}")
        if response.status_code >= 400:
            raise UnknownEvent(f"PayPal order {paypal_order_id} is not approved: {response.text[:200]}")

        order = response.json()
        try:
            unit = order["purchase_units"][0]
            capture = unit["payments"]["captures"][0]
        except (KeyError, IndexError) as e:
            raise PayloadMalformed(f"PayPal order {paypal_order_id} has no capture") from e
        return self._from_capture(capture, digest, paypal_order_id, unit.get("custom_id"))

    def _from_capture(
        self,
        capture: dict,
        digest: str,
        paypal_order_id: str | None,
        order_id: str | None,
        kind: EntryKind | None = None,
    ) -> VerifiedEvent:
        status = capture.get("status")
        if kind is None:
            if status == "COMPLETED":
                kind = EntryKind.CAPTURED
            elif status in ("DECLINED", "FAILED"):
                kind = EntryKind.FAILED
            else:
                raise UnknownEvent(f"PayPal capture {capture['id']} is {status}")
        currency = capture["amount"]["currency_code"]
        return VerifiedEvent(
            gateway=self.name,
            gateway_event_id=capture["id"] if kind is EntryKind.CAPTURED else f"{capture['id']}:{kind.value}",
            gateway_intent_id=paypal_order_id,
            gateway_payment_id=capture["id"],
            order_id=order_id or capture.get("custom_id"),
            outcome=kind,
            amount=to_minor(capture["amount"]["value"], currency),
            currency=currency,
            raw_payload_hash=digest,
        )

    async def _verify_webhook(self, body: bytes, headers: Mapping[str, str], digest: str) -> VerifiedEvent:
        if not self.webhook_id:
            raise SignatureInvalid("PayPal webhook id is not configured")
        transmission = {}
        for field, name in TRANSMISSION_HEADERS.items():
            value = header(headers, name)
            if not value:
                raise SignatureInvalid(f"Missing {name} header")
            transmission[field] = value

        event = decode_fields(body, {"content-type": "application/json"})
        response = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            "webhook verification",
            {**transmission, "webhook_id": self.webhook_id, "webhook_event": event},
        )
        if response.status_code >= 400 or response.json().get("verification_status") != "SUCCESS":
            logger.warning("PayPal webhook verification failed (HTTP %d)", response.status_code)
            raise SignatureInvalid("PayPal webhook signature mismatch")

        webhook = parse_variant(PayPalWebhook, event)
        kind = WEBHOOK_EVENTS.get(webhook.event_type)
        if kind is None:
            raise UnknownEvent(f"Unhandled PayPal event {webhook.event_type}")
        resource = webhook.resource
        try:
            if kind is EntryKind.REFUNDED:
                capture_url = _link(resource, "up") or ""
                currency = resource["amount"]["currency_code"]
                return VerifiedEvent(
                    gateway=self.name,
                    gateway_event_id=resource["id"],
                    gateway_payment_id=capture_url.rstrip("/").rsplit("/", 1)[-1] or None,
                    order_id=resource.get("custom_id"),
                    outcome=kind,
                    amount=to_minor(resource["amount"]["value"], currency),
                    currency=currency,
                    raw_payload_hash=digest,
                )
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            return self._from_capture(resource, digest, related.get("order_id"), resource.get("custom_id"), kind)
        except KeyError as e:
            raise PayloadMalformed(f"PayPal {webhook.event_type} is missing {e}") from e

    # ── 返金 ──────────────────────────────────────

    async def refund(
        self,
        gateway_intent_id: str,
        payment_id: str,
        amount: int,
        currency: str,
        reason: str,
    ) -> RefundHandle:
        if amount <= 0:
            raise InvalidAmount(f"Refund amount must be positive, got {amount}")
        response = await self._request(
            "POST",
            f"/v2/payments/captures/{payment_id}/refund",
            "refund",
            {
                "amount": {"value": format_major(amount, currency), "currency_code": currency.upper()},
                "note_to_payer": reason[:255],
            },
        )
        if response.status_code >= 400:
            raise InvalidAmount(f"PayPal rejected refund: {response.text[:200]}")
        refund = response.json()
        logger.info("Requested PayPal refund %s for capture %s", refund["id"], payment_id)
        return RefundHandle(refund_id=refund["id"], status=refund.get("status", "PENDING").lower(), amount=amount)
