"""
Order — 注文集約と状態遷移 (Order State Machine)

注文ステータスはこのモジュールの transition() を通してのみ変更する。
遷移はすべて history に {from, to, at, by, note} として記録される。

状態遷移:
    pending    → accepted (admin) / cancelled / declined (admin)
    accepted   → processing (admin) / cancelled
    processing → shipped (admin) / cancelled
    shipped    → delivered (admin / carrier)
    delivered, cancelled, declined は終端

payment_status は台帳から導出される別軸の状態 (payment.ledger 参照)。
"""

import random
import string
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

from ..errors import AlreadyTerminal, IllegalTransition, InvalidAmount, RefundRequired, RequiresPayment
from ..payment.ledger import PaymentStatus


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    DECLINED = "declined"


class Actor(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    CARRIER = "carrier"
    SYSTEM = "system"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.DECLINED})

# (from, to) → 許可されるアクター
TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], frozenset[Actor]] = {
    (OrderStatus.PENDING, OrderStatus.ACCEPTED): frozenset({Actor.ADMIN}),
    (OrderStatus.PENDING, OrderStatus.CANCELLED): frozenset({Actor.ADMIN, Actor.CUSTOMER, Actor.SYSTEM}),
    (OrderStatus.PENDING, OrderStatus.DECLINED): frozenset({Actor.ADMIN}),
    (OrderStatus.ACCEPTED, OrderStatus.PROCESSING): frozenset({Actor.ADMIN}),
    (OrderStatus.ACCEPTED, OrderStatus.CANCELLED): frozenset({Actor.ADMIN, Actor.CUSTOMER, Actor.SYSTEM}),
    (OrderStatus.PROCESSING, OrderStatus.SHIPPED): frozenset({Actor.ADMIN}),
    (OrderStatus.PROCESSING, OrderStatus.CANCELLED): frozenset({Actor.ADMIN, Actor.CUSTOMER, Actor.SYSTEM}),
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED): frozenset({Actor.ADMIN, Actor.CARRIER}),
}

# キャンセル・拒否が許される payment_status
RELEASABLE_PAYMENT = frozenset({PaymentStatus.UNPAID, PaymentStatus.FAILED, PaymentStatus.REFUNDED})

# 代引きはオーソリ済みでも現金は未回収なのでキャンセルできる
POSTPAYMENT_RELEASABLE = RELEASABLE_PAYMENT | {PaymentStatus.AUTHORIZED}

# 受注 (accepted) に必要な payment_status(前払いゲートウェイ)
ACCEPTABLE_PAYMENT = frozenset({PaymentStatus.PAID, PaymentStatus.AUTHORIZED})

POSTPAYMENT_GATEWAYS = frozenset({"cod"})

# 配達予定日を指定しない出荷の標準日数
STANDARD_DELIVERY_DAYS = 3


class LineItem(BaseModel):
    product_id: str
    name: str
    unit_price: int
    quantity: int = Field(gt=0)
    subtotal: int


class Customer(BaseModel):
    name: str
    email: str
    phone: str = ""


class HistoryEntry(BaseModel):
    from_status: OrderStatus | None = Field(default=None, alias="from")
    to_status: OrderStatus = Field(alias="to")
    at: datetime
    by: str
    note: str = ""

    model_config = {"populate_by_name": True}


class Shipment(BaseModel):
    """出荷時に管理者・配送業者が渡す値(すべて省略可)"""
    tracking_number: str | None = None
    carrier: str | None = None
    estimated_delivery: datetime | None = None


class Tracking(BaseModel):
    tracking_number: str
    carrier: str = ""
    shipped_at: datetime
    estimated_delivery: datetime
    delivered_at: datetime | None = None


class OrderNotes(BaseModel):
    admin: str = ""
    internal: str = ""


def generate_tracking_number(now: datetime) -> str:
    """PLUGD + タイムスタンプ下 6 桁 + 英数字 6 文字"""
    timestamp = str(int(now.timestamp() * 1000))[-6:]
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"PLUGD{timestamp}{suffix}"


def ship(shipment: Shipment | None, at: datetime) -> Tracking:
    shipment = shipment or Shipment()
    return Tracking(
        tracking_number=shipment.tracking_number or generate_tracking_number(at),
        carrier=shipment.carrier or "",
        shipped_at=at,
        estimated_delivery=shipment.estimated_delivery or at + timedelta(days=STANDARD_DELIVERY_DAYS),
    )


class Order(BaseModel):
    order_id: str
    order_number: str
    lines: list[LineItem]
    subtotal: int
    tax: int = 0
    shipping: int = 0
    discount: int = 0
    total: int
    currency: str
    shipping_address: dict
    customer: Customer
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    gateway: str | None = None
    created_at: datetime
    updated_at: datetime
    history: list[HistoryEntry] = Field(default_factory=list)
    tracking: Tracking | None = None
    notes: OrderNotes = Field(default_factory=OrderNotes)
    version: int = 1

    @staticmethod
    def compute_total(subtotal: int, tax: int, shipping: int, discount: int) -> int:
        """total = subtotal + tax + shipping − discount。割引が割引前の合計を超えれば InvalidAmount。"""
        before_discount = subtotal + tax + shipping
        if discount > before_discount:
            raise InvalidAmount(f"Discount {discount} exceeds the order total {before_discount}")
        return before_discount - discount

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_postpayment(self) -> bool:
        return self.gateway in POSTPAYMENT_GATEWAYS

    def reservation_lines(self) -> list[tuple[str, int]]:
        return [(line.product_id, line.quantity) for line in self.lines]

    def check_transition(self, to: OrderStatus, actor: Actor) -> None:
        """遷移が許されなければ例外を投げる。"""
        if self.is_terminal:
            raise AlreadyTerminal(f"Order {self.order_number} is already {self.status.value}")
        if to == self.status:
            raise IllegalTransition(f"Order {self.order_number} is already {to.value}")

        allowed = TRANSITIONS.get((self.status, to))
        if allowed is None:
            raise IllegalTransition(f"Cannot move order from {self.status.value} to {to.value}")
        if actor not in allowed:
            raise IllegalTransition(f"{actor.value} may not move order from {self.status.value} to {to.value}")

        releasable = POSTPAYMENT_RELEASABLE if self.is_postpayment else RELEASABLE_PAYMENT
        if to in (OrderStatus.CANCELLED, OrderStatus.DECLINED) and self.payment_status not in releasable:
            raise RefundRequired(
                f"Order {self.order_number} is {self.payment_status.value}; refund before {to.value}"
            )
        if (
            to == OrderStatus.ACCEPTED
            and not self.is_postpayment
            and self.payment_status not in ACCEPTABLE_PAYMENT
        ):
            raise RequiresPayment(f"Order {self.order_number} is {self.payment_status.value}")

    def transition(
        self,
        to: OrderStatus,
        actor: Actor,
        at: datetime,
        note: str = "",
        shipment: Shipment | None = None,
    ) -> "Order":
        """
        検証済みの遷移を適用した新しい Order を返す(元のインスタンスは変更しない)。

        shipped では追跡情報を設定する(追跡番号・配達予定日は省略時に生成)。
        delivered では追跡情報に配達日時を記録する。
        """
        self.check_transition(to, actor)
        if shipment is not None and to != OrderStatus.SHIPPED:
            raise IllegalTransition(f"Shipment details only apply to {OrderStatus.SHIPPED.value}")

        entry = HistoryEntry(from_status=self.status, to_status=to, at=at, by=actor.value, note=note)
        update = {
            "status": to,
            "updated_at": at,
            "history": [*self.history, entry],
        }
        if to == OrderStatus.SHIPPED:
            update["tracking"] = ship(shipment, at)
        elif to == OrderStatus.DELIVERED and self.tracking is not None:
            update["tracking"] = self.tracking.model_copy(update={"delivered_at": at})
        return self.model_copy(update=update)
