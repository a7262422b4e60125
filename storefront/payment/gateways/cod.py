"""
Payment — 代金引換 (Cash on Delivery) アダプター

外部との通信はない。インテントは即座に発行し、注文確認のコールバックでオーソリ扱いにする。
現金の回収 (captured) は配達完了の遷移時にコーディネーターが台帳へ記録する。
"""

import uuid
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel

from ...errors import Unsupported
from ..ledger import EntryKind
from .base import (
    Capability,
    GatewayAdapter,
    IntentHandle,
    RefundHandle,
    VerifiedEvent,
    decode_fields,
    parse_variant,
    payload_hash,
)


class CodCallback(BaseModel):
    gateway: Literal["cod"] = "cod"
    order_id: str
    intent_id: str | None = None


def collected_event_id(gateway_intent_id: str) -> str:
    return f"{gateway_intent_id}:collected"


class CodAdapter(GatewayAdapter):
    name = "cod"
    display_name = "Cash on Delivery"
    method_type = "offline"
    description = "Pay when you receive your order"
    supported_currencies = frozenset({"INR", "USD"})

    def capabilities(self) -> frozenset[Capability]:
        return frozenset({Capability.POSTPAYMENT})

    async def create_intent(
        self,
        order_id: str,
        amount: int,
        currency: str,
        return_url: str,
        metadata: dict,
    ) -> IntentHandle:
        self.check_request(amount, currency)
        intent_id = f"cod_{uuid.uuid4().hex}"
        return IntentHandle(
            gateway_intent_id=intent_id,
            client_continuation={"intent_id": intent_id, "order_id": order_id, "confirm_url": return_url},
        )

    async def verify_callback(self, body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        callback = parse_variant(CodCallback, decode_fields(body, headers))
        return VerifiedEvent(
            gateway=self.name,
            gateway_event_id=f"cod:{callback.order_id}:authorized",
            gateway_intent_id=callback.intent_id,
            order_id=callback.order_id,
            outcome=EntryKind.AUTHORIZED,
            raw_payload_hash=payload_hash(body),
        )

    async def refund(
        self,
        gateway_intent_id: str,
        payment_id: str,
        amount: int,
        currency: str,
        reason: str,
    ) -> RefundHandle:
        raise Unsupported("Cash on delivery payments cannot be refunded through the gateway")
