"""
Payment — Razorpay アダプター

REST API (https://api.razorpay.com/v1) を httpx で直接呼び出す。認証はキー ID / シークレットの Basic 認証。

署名:
  チェックアウトのコールバック : HMAC-SHA256(key_secret, "<order_id>|<payment_id>")
  Webhook (X-Razorpay-Signature) : HMAC-SHA256(webhook_secret, 生のリクエストボディ)

captured のイベント ID は payment_id にそろえ、リダイレクトと Webhook の両方が
届いても台帳の UNIQUE 制約で 1 件にまとまるようにする。
"""

import logging
from collections.abc import Mapping
from typing import Literal

import httpx
from pydantic import BaseModel, Field

from ...errors import GatewayUnavailable, InvalidAmount, PayloadMalformed, SignatureInvalid, UnknownEvent
from ..ledger import EntryKind
from .base import (
    Capability,
    GatewayAdapter,
    IntentHandle,
    RefundHandle,
    VerifiedEvent,
    decode_fields,
    header,
    hmac_sha256,
    parse_variant,
    payload_hash,
    signatures_match,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Razorpay-Signature"


class RazorpayCheckoutCallback(BaseModel):
    """Checkout.js がコールバック URL に POST するフォーム"""

    gateway: Literal["razorpay"] = "razorpay"
    order_id: str = Field(alias="razorpay_order_id")
    payment_id: str = Field(alias="razorpay_payment_id")
    signature: str = Field(alias="razorpay_signature")

    model_config = {"populate_by_name": True}


class RazorpayWebhook(BaseModel):
    gateway: Literal["razorpay"] = "razorpay"
    event: str
    payload: dict


# Webhook のイベント種別 → 台帳の種類
WEBHOOK_EVENTS = {
    "payment.authorized": EntryKind.AUTHORIZED,
    "payment.captured": EntryKind.CAPTURED,
    "order.paid": EntryKind.CAPTURED,
    "payment.failed": EntryKind.FAILED,
    "refund.processed": EntryKind.REFUNDED,
}


def _entity(payload: dict, name: str) -> dict:
    entity = payload.get(name, {}).get("entity")
    if not isinstance(entity, dict):
        raise PayloadMalformed(f"Webhook payload has no {name} entity")
    return entity


class RazorpayAdapter(GatewayAdapter):
    name = "razorpay"
    display_name = "Razorpay"
    description = "Credit/Debit Cards, UPI, Net Banking, Wallets"
    supported_currencies = frozenset({"INR"})

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str | None = None,
        api_url: str = "https://api.razorpay.com",
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout)
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(base_url=api_url, timeout=timeout)
        self.auth = httpx.BasicAuth(key_id, key_secret)

    def capabilities(self) -> frozenset[Capability]:
        return frozenset(
            {
                Capability.PREPAYMENT,
                Capability.REFUND,
                Capability.PARTIAL_REFUND,
                Capability.WEBHOOK,
                Capability.CLIENT_SDK,
            }
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def _post(self, path: str, payload: dict, what: str) -> dict:
        response = await self.with_deadline(self.http.post(path, json=payload, auth=self.auth), what)
        if response.status_code >= 500 or response.status_code in (401, 403):
            logger.error("Razorpay %s returned %d: %s", what, response.status_code, response.text[:200])
            raise GatewayUnavailable(f"Razorpay {what} failed with HTTP {response.status_code}")
        if response.status_code >= 400:
            try:
                description = response.json().get("error", {}).get("description", "")
            except ValueError:
                description = response.text[:200]
            raise InvalidAmount(f"Razorpay rejected {what}: {description}")
        return response.json()

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
        receipt = str(metadata.get("order_number") or order_id)[:40]
        created = await self._post(
            "/v1/orders",
            {
                "amount": amount,
                "currency": currency.upper(),
                "receipt": receipt,
                "notes": {"order_id": order_id, **{k: str(v) for k, v in metadata.items()}},
                "payment_capture": 1,
            },
            "order creation",
        )
        logger.info("Created Razorpay order %s for order %s", created["id"], order_id)
        return IntentHandle(
            gateway_intent_id=created["id"],
            client_continuation={
                "key_id": self.key_id,
                "intent_id": created["id"],
                "order_id": order_id,
                "amount": amount,
                "currency": currency.upper(),
                "callback_url": return_url,
            },
        )

    # ── 検証 ──────────────────────────────────────

    async def verify_callback(self, body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        digest = payload_hash(body)
        signature = header(headers, SIGNATURE_HEADER)
        if signature is not None:
            return self._verify_webhook(body, signature, digest)

        callback = parse_variant(RazorpayCheckoutCallback, decode_fields(body, headers))
        expected = hmac_sha256(self.key_secret, f"{callback.order_id}|{callback.payment_id}".encode())
        if not signatures_match(expected, callback.signature):
            logger.warning("Razorpay checkout signature mismatch for %s", callback.order_id)
            raise SignatureInvalid("Razorpay payment signature mismatch")
        return VerifiedEvent(
            gateway=self.name,
            gateway_event_id=callback.payment_id,
            gateway_intent_id=callback.order_id,
            gateway_payment_id=callback.payment_id,
            outcome=EntryKind.CAPTURED,
            raw_payload_hash=digest,
        )

    def _verify_webhook(self, body: bytes, signature: str, digest: str) -> VerifiedEvent:
        if not self.webhook_secret:
            raise SignatureInvalid("Razorpay webhook secret is not configured")
        if not signatures_match(hmac_sha256(self.webhook_secret, body), signature):
            logger.warning("Razorpay webhook signature mismatch")
            raise SignatureInvalid("Razorpay webhook signature mismatch")

        webhook = parse_variant(RazorpayWebhook, decode_fields(body, {"content-type": "application/json"}))
        kind = WEBHOOK_EVENTS.get(webhook.event)
        if kind is None:
            raise UnknownEvent(f"Unhandled Razorpay event {webhook.event}")
        try:
            return self._webhook_event(webhook, kind, digest)
        except KeyError as e:
            raise PayloadMalformed(f"Razorpay {webhook.event} is missing {e}") from e

    def _webhook_event(self, webhook: RazorpayWebhook, kind: EntryKind, digest: str) -> VerifiedEvent:
        if kind is EntryKind.REFUNDED:
            refund = _entity(webhook.payload, "refund")
            payment = webhook.payload.get("payment", {}).get("entity") or {}
            return VerifiedEvent(
                gateway=self.name,
                gateway_event_id=refund["id"],
                gateway_intent_id=payment.get("order_id"),
                gateway_payment_id=refund["payment_id"],
                order_id=(payment.get("notes") or {}).get("order_id"),
                outcome=kind,
                amount=refund["amount"],
                currency=refund.get("currency"),
                raw_payload_hash=digest,
            )

        payment = _entity(webhook.payload, "payment")
        if kind is EntryKind.CAPTURED:
            event_id = payment["id"]
        else:
            event_id = f"{payment['id']}:{kind.value}"
        return VerifiedEvent(
            gateway=self.name,
            gateway_event_id=event_id,
            gateway_intent_id=payment.get("order_id"),
            gateway_payment_id=payment["id"],
            order_id=(payment.get("notes") or {}).get("order_id"),
            outcome=kind,
            amount=payment.get("amount"),
            currency=payment.get("currency"),
            raw_payload_hash=digest,
        )

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
        refund = await self._post(
            f"/v1/payments/{payment_id}/refund",
            {"amount": amount, "notes": {"reason": reason}},
            "refund",
        )
        logger.info("Requested Razorpay refund %s for payment %s", refund["id"], payment_id)
        return RefundHandle(refund_id=refund["id"], status=refund.get("status", "pending"), amount=amount)
