"""
Payment — ゲートウェイアダプターの共通インターフェース

各ゲートウェイ (Razorpay / Stripe / PayPal / 代引き) の差異をここで吸収する。
コーディネーターはアダプターの具体的なクラスを知らず、レジストリから名前で引く。

  create_intent   : 支払いセッションを作成し、クライアントが続行するための情報を返す
  verify_callback : リダイレクト・Webhook の生データを検証し VerifiedEvent に変換する
  refund          : 返金を依頼する(台帳の更新は返金イベントの検証時)

ネットワーク呼び出しは with_deadline() で包み、タイムアウトと通信エラーを
GatewayUnavailable に変換する。
"""

import asyncio
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from urllib.parse import parse_qsl

import httpx
from pydantic import BaseModel, ValidationError

from ...errors import GatewayUnavailable, InvalidAmount, PayloadMalformed, UnsupportedCurrency
from ..ledger import EntryKind

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    PREPAYMENT = "prepayment"
    POSTPAYMENT = "postpayment"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"
    WEBHOOK = "webhook"
    CLIENT_REDIRECT = "client_redirect"
    CLIENT_SDK = "client_sdk"


class IntentHandle(BaseModel):
    gateway_intent_id: str
    client_continuation: dict
    expires_at: datetime | None = None


class VerifiedEvent(BaseModel):
    """検証済みのゲートウェイイベント。金額が None の場合はインテントの金額で補う。"""

    gateway: str
    gateway_event_id: str
    gateway_intent_id: str | None = None
    gateway_payment_id: str | None = None
    order_id: str | None = None
    outcome: EntryKind
    amount: int | None = None
    currency: str | None = None
    raw_payload_hash: str


class RefundHandle(BaseModel):
    refund_id: str
    status: str
    amount: int


def payload_hash(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, received: str) -> bool:
    """大文字・小文字を区別せず定数時間で比較する。"""
    return hmac.compare_digest(expected.lower().encode(), received.strip().lower().encode())


def header(headers: Mapping[str, str], name: str) -> str | None:
    """ヘッダー名の大文字・小文字を区別せずに取り出す。"""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def decode_fields(body: bytes, headers: Mapping[str, str]) -> dict:
    """
    JSON またはフォーム (application/x-www-form-urlencoded / クエリ文字列) の本文を dict にする。
    """
    content_type = (header(headers, "content-type") or "").lower()
    text = body.decode("utf-8", errors="replace").strip()
    if "json" in content_type or text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError as e:
            raise PayloadMalformed(f"Body is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise PayloadMalformed("JSON body must be an object")
        return data
    return dict(parse_qsl(text, keep_blank_values=True))


def parse_variant(model: type[BaseModel], data: dict) -> BaseModel:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise PayloadMalformed(f"{model.__name__}: {e.error_count()} invalid field(s)") from e


class GatewayAdapter(ABC):
    name: str = ""
    display_name: str = ""
    method_type: str = "gateway"
    description: str = ""
    supported_currencies: frozenset[str] = frozenset()

    def __init__(self, timeout: float = 15.0) -> None:
        self.timeout = timeout

    # ── 共通処理 ──────────────────────────────────

    def check_request(self, amount: int, currency: str) -> None:
        if amount <= 0:
            raise InvalidAmount(f"Amount must be positive, got {amount}")
        if currency.upper() not in self.supported_currencies:
            raise UnsupportedCurrency(f"{self.name} does not support {currency}")

    async def with_deadline(self, awaitable, what: str):
        """タイムアウト・通信エラーを GatewayUnavailable に変換する。"""
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except asyncio.TimeoutError:
            logger.warning("%s %s timed out after %.1fs", self.name, what, self.timeout)
            raise GatewayUnavailable(f"{self.name} {what} timed out") from None
        except httpx.TransportError as e:
            logger.warning("%s %s failed: %s", self.name, what, e)
            raise GatewayUnavailable(f"{self.name} {what} failed: {e}") from e

    def describe(self) -> dict:
        """利用可能な支払い方法の一覧に載せる情報"""
        return {
            "id": self.name,
            "name": self.display_name,
            "type": self.method_type,
            "supported_currencies": sorted(self.supported_currencies),
            "description": self.description,
            "capabilities": sorted(c.value for c in self.capabilities()),
        }

    async def aclose(self) -> None:
        pass

    # ── ゲートウェイ固有 ──────────────────────────

    @abstractmethod
    def capabilities(self) -> frozenset[Capability]: ...

    @abstractmethod
    async def create_intent(
        self,
        order_id: str,
        amount: int,
        currency: str,
        return_url: str,
        metadata: dict,
    ) -> IntentHandle: ...

    @abstractmethod
    async def verify_callback(self, body: bytes, headers: Mapping[str, str]) -> VerifiedEvent: ...

    @abstractmethod
    async def refund(
        self,
        gateway_intent_id: str,
        payment_id: str,
        amount: int,
        currency: str,
        reason: str,
    ) -> RefundHandle: ...
