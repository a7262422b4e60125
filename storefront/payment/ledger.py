"""
Payment — 冪等台帳 (Idempotent Ledger) のルール

台帳は検証済みのゲートウェイイベントを追記するだけのログ。
注文の payment_status は台帳から導出される射影 (projection) であり、
derive_payment_status(entries) は副作用のない純粋関数。

シーケンス規則 (order_id, gateway, gateway_intent_id ごと):

    intent_created ──▶ authorized ──▶ captured ──▶ refunded*
          │                 │
          └──▶ captured     └──▶ failed / voided
          └──▶ failed / voided

  - 終端 (captured / failed / voided) は 1 インテントにつき最大 1 つ
  - refunded の累計は captured の金額を超えない
  - 1 つの注文で captured は最大 1 回 (二重請求の防止)
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class EntryKind(str, Enum):
    INTENT_CREATED = "intent_created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    VOIDED = "voided"


TERMINAL_KINDS = frozenset({EntryKind.CAPTURED, EntryKind.FAILED, EntryKind.VOIDED})


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    AUTHORIZED = "authorized"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


SETTLED_STATUSES = frozenset(
    {PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}
)


class LedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry_id: str
    order_id: str
    gateway: str
    gateway_intent_id: str
    gateway_event_id: str
    gateway_payment_id: str | None = None
    kind: EntryKind
    amount: int
    currency: str
    raw_payload_hash: str
    received_at: datetime
    verified: bool = True


class RecordOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RecordResult:
    outcome: RecordOutcome
    entry: LedgerEntry
    reason: str = ""


def check_sequence(history: list[LedgerEntry], entry: LedgerEntry) -> str | None:
    """
    entry を history の後ろに追記できるか判定する。
    追記できない場合は理由を返す(RecordOutcome.REJECTED になる)。
    """
    if entry.amount < 0:
        return "negative amount"

    same = [
        e for e in history
        if e.gateway == entry.gateway and e.gateway_intent_id == entry.gateway_intent_id
    ]
    kinds = [e.kind for e in same]
    settled = any(k in TERMINAL_KINDS for k in kinds)

    if entry.kind is EntryKind.INTENT_CREATED:
        if same:
            return "intent already recorded"
        return None

    if entry.kind is EntryKind.AUTHORIZED:
        if EntryKind.INTENT_CREATED not in kinds:
            return "authorization without intent"
        if EntryKind.AUTHORIZED in kinds:
            return "intent already authorized"
        if settled:
            return "intent already settled"
        return None

    if entry.kind is EntryKind.CAPTURED:
        if EntryKind.INTENT_CREATED not in kinds and EntryKind.AUTHORIZED not in kinds:
            return "capture without intent"
        if settled:
            return "intent already settled"
        if any(e.kind is EntryKind.CAPTURED for e in history):
            return "order already captured"
        return None

    if entry.kind in (EntryKind.FAILED, EntryKind.VOIDED):
        if EntryKind.INTENT_CREATED not in kinds:
            return f"{entry.kind.value} without intent"
        if settled:
            return "intent already settled"
        return None

    if entry.kind is EntryKind.REFUNDED:
        captured = sum(e.amount for e in same if e.kind is EntryKind.CAPTURED)
        if not captured:
            return "refund without capture"
        if entry.amount <= 0:
            return "refund amount must be positive"
        refunded = sum(e.amount for e in same if e.kind is EntryKind.REFUNDED)
        if refunded + entry.amount > captured:
            return f"refund exceeds captured amount ({refunded + entry.amount} > {captured})"
        return None

    return f"unknown kind {entry.kind}"


def net_settled(entries: list[LedgerEntry]) -> int:
    """captured の合計 − refunded の合計"""
    captured = sum(e.amount for e in entries if e.kind is EntryKind.CAPTURED)
    refunded = sum(e.amount for e in entries if e.kind is EntryKind.REFUNDED)
    return captured - refunded


def derive_payment_status(entries: list[LedgerEntry]) -> PaymentStatus:
    """台帳のイベント列(受信順)から payment_status を導出する。"""
    status = PaymentStatus.UNPAID
    for e in entries:
        if e.kind is EntryKind.AUTHORIZED and status in (PaymentStatus.UNPAID, PaymentStatus.FAILED):
            status = PaymentStatus.AUTHORIZED
        elif e.kind is EntryKind.CAPTURED:
            status = PaymentStatus.PAID
        elif e.kind is EntryKind.FAILED and status in (PaymentStatus.UNPAID, PaymentStatus.AUTHORIZED):
            status = PaymentStatus.FAILED
        elif e.kind is EntryKind.VOIDED and status is PaymentStatus.AUTHORIZED:
            status = PaymentStatus.UNPAID

    captured = sum(e.amount for e in entries if e.kind is EntryKind.CAPTURED)
    if not captured:
        return status
    refunded = sum(e.amount for e in entries if e.kind is EntryKind.REFUNDED)
    if refunded == 0:
        return PaymentStatus.PAID
    if refunded >= captured:
        return PaymentStatus.REFUNDED
    return PaymentStatus.PARTIALLY_REFUNDED
