"""
Payment — Stripe アダプター

公式 SDK (stripe) は同期 API なので、呼び出しはワーカースレッドで実行し with_deadline で包む。
API キーはグローバルな stripe.api_key に設定せず、呼び出しごとに渡す。

  Webhook (Stripe-Signature)   : stripe.Webhook.construct_event で検証
  リダイレクト (payment_intent) : 署名がないので API から PaymentIntent を取得して確認
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Literal

import stripe
from pydantic import BaseModel

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
    parse_variant,
    payload_hash,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"


class StripeWebhook(BaseModel):
    gateway: Literal["stripe"] = "stripe"
    id: str
    type: str
    data: dict


class StripeReturn(BaseModel):
    """confirmPayment 後のリダイレクト (?payment_intent=pi_...)"""

    gateway: Literal["stripe"] = "stripe"
    payment_intent: str
    redirect_status: str | None = None


INTENT_EVENTS = {
    "payment_intent.succeeded": EntryKind.CAPTURED,
    "payment_intent.amount_capturable_updated": EntryKind.AUTHORIZED,
    "payment_intent.payment_failed": EntryKind.FAILED,
    "payment_intent.canceled": EntryKind.VOIDED,
}

REFUND_EVENTS = frozenset({"refund.created", "refund.updated"})


def _intent_event_id(intent_id: str, kind: EntryKind) -> str:
    return intent_id if kind is EntryKind.CAPTURED else f"{intent_id}:{kind.value}"


class StripeAdapter(GatewayAdapter):
    name = "stripe"
    display_name = "Stripe"
    description = "International Credit/Debit Cards"
    supported_currencies = frozenset({"USD", "EUR", "GBP", "INR"})

    def __init__(
        self,
        secret_key: str,
        publishable_key: str | None = None,
        webhook_secret: str | None = None,
        timeout: float = 15.0,
    ) -> None:
        super().__init__(timeout)
        self.secret_key = secret_key
        self.publishable_key = publishable_key
        self.webhook_secret = webhook_secret

    def capabilities(self) -> frozenset[Capability]:
        return frozenset(
            {
                Capability.PREPAYMENT,
                Capability.REFUND,
                Capability.PARTIAL_REFUND,
                Capability.WEBHOOK,
                Capability.CLIENT_SDK,
                Capability.CLIENT_REDIRECT,
            }
        )

    async def _call(self, fn, what: str, **kwargs):
        try:
            return await self.with_deadline(asyncio.to_thread(fn, api_key=self.secret_key, **kwargs), what)
        except stripe.InvalidRequestError as e:
            raise InvalidAmount(f"Stripe rejected {what}: {e.user_message or e}") from e
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", what, e)
            raise GatewayUnavailable(f"Stripe {what} failed") from e

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
        intent = await self._call(
            stripe.PaymentIntent.create,
            "payment intent creation",
            amount=amount,
            currency=currency.lower(),
            metadata={"order_id": order_id, **{k: str(v) for k, v in metadata.items()}},
            automatic_payment_methods={"enabled": True},
            idempotency_key=f"storefront:{order_id}:{metadata.get('attempt', amount)}",
        )
        logger.info("Created Stripe PaymentIntent %s for order %s", intent["id"], order_id)
        return IntentHandle(
            gateway_intent_id=intent["id"],
            client_continuation={
                "intent_id": intent["id"],
                "client_secret": intent["client_secret"],
                "publishable_key": self.publishable_key,
                "return_url": return_url,
            },
        )

    # ── 検証 ──────────────────────────────────────

    async def verify_callback(self, body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        digest = payload_hash(body)
        signature = header(headers, SIGNATURE_HEADER)
        if signature is not None:
            return self._verify_webhook(body, signature, digest)

        returned = parse_variant(StripeReturn, decode_fields(body, headers))
        intent = await self._call(stripe.PaymentIntent.retrieve, "payment intent lookup", id=returned.payment_intent)
        return self._from_intent(intent, digest)

    def _verify_webhook(self, body: bytes, signature: str, digest: str) -> VerifiedEvent:
        if not self.webhook_secret:
            raise SignatureInvalid("Stripe webhook secret is not configured")
        try:
            event = stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("Stripe webhook signature invalid: %s", e)
            raise SignatureInvalid("Stripe webhook signature mismatch") from e
        except ValueError as e:
            raise PayloadMalformed(f"Stripe webhook body is not valid JSON: {e}") from e

        logger.info("Verified Stripe event %s (%s)", event["id"], event["type"])
        webhook = parse_variant(StripeWebhook, decode_fields(body, {"content-type": "application/json"}))
        obj = webhook.data.get("object") or {}
        try:
            if webhook.type in INTENT_EVENTS:
                return self._from_intent(obj, digest, INTENT_EVENTS[webhook.type])
            if webhook.type in REFUND_EVENTS:
                return self._from_refund(obj, digest)
        except KeyError as e:
            raise PayloadMalformed(f"Stripe {webhook.type} is missing {e}") from e
        raise UnknownEvent(f"Unhandled Stripe event {webhook.type}")

    def _from_intent(self, intent, digest: str, kind: EntryKind | None = None) -> VerifiedEvent:
        if kind is None:
            status = intent["status"]
            if status == "succeeded":
                kind = EntryKind.CAPTURED
            elif status == "requires_capture":
                kind = EntryKind.AUTHORIZED
            elif status == "canceled":
                kind = EntryKind.VOIDED
            elif status == "requires_payment_method" and intent.get("last_payment_error"):
                kind = EntryKind.FAILED
            else:
                raise UnknownEvent(f"Stripe PaymentIntent {intent['id']} is still {status}")

        if kind is EntryKind.CAPTURED:
            amount = intent.get("amount_received") or intent["amount"]
        else:
            amount = intent["amount"]
        metadata = intent.get("metadata") or {}
        return VerifiedEvent(
            gateway=self.name,
            gateway_event_id=_intent_event_id(intent["id"], kind),
            gateway_intent_id=intent["id"],
            gateway_payment_id=intent["id"],
            order_id=metadata.get("order_id"),
            outcome=kind,
            amount=amount,
            currency=intent["currency"].upper(),
            raw_payload_hash=digest,
        )

    def _from_refund(self, refund, digest: str) -> VerifiedEvent:
        if refund["status"] != "succeeded":
            raise UnknownEvent(f"Stripe refund {refund['id']} is {refund['status']}")
        return VerifiedEvent(
            gateway=self.name,
            gateway_event_id=refund["id"],
            gateway_intent_id=refund.get("payment_intent"),
            gateway_payment_id=refund.get("payment_intent"),
            order_id=(refund.get("metadata") or {}).get("order_id"),
            outcome=EntryKind.REFUNDED,
            amount=refund["amount"],
            currency=refund["currency"].upper(),
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
        refund = await self._call(
            stripe.Refund.create,
            "refund",
            payment_intent=payment_id or gateway_intent_id,
            amount=amount,
            metadata={"reason": reason},
        )
        logger.info("Requested Stripe refund %s for %s", refund["id"], payment_id)
        return RefundHandle(refund_id=refund["id"], status=refund["status"], amount=amount)
