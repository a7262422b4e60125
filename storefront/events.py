"""
Storefront — ドメインイベント定義

外部の協調者(出荷・メール・分析)が購読するイベント。
イベントは過去形で命名し、不変(immutable)として扱う。
購読側は冪等であることが前提(at-least-once 配信を許容する)。
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: str
    timestamp: datetime

    @property
    def event_type(self) -> str:
        return type(self).__name__


class OrderPlaced(DomainEvent):
    """注文が作成された(在庫引き当て済み)"""
    order_number: str
    total: int
    currency: str
    gateway: str | None = None


class PaymentAuthorized(DomainEvent):
    """支払いがオーソリされた(代引きは配達時に回収)"""
    gateway: str
    amount: int
    currency: str


class PaymentSettled(DomainEvent):
    """支払いが確定した(captured)"""
    gateway: str
    amount: int
    currency: str


class PaymentFailed(DomainEvent):
    """支払いが失敗した(在庫は解放済み)"""
    gateway: str
    reason: str = ""


class PaymentRefunded(DomainEvent):
    """返金が確定した"""
    gateway: str
    amount: int
    currency: str
    net_settled: int


class StockShortfall(DomainEvent):
    """支払いは確定したが在庫が足りない(引き当てが失効した後に他の注文が確保した)"""
    items: dict[str, int]


class OrderStatusChanged(DomainEvent):
    """注文ステータスが遷移した"""
    from_status: str
    to_status: str
    actor: str
    note: str = ""


class OrderShipped(OrderStatusChanged):
    """注文が出荷された(追跡情報つき)"""
    tracking_number: str = ""
    carrier: str = ""
    estimated_delivery: datetime | None = None


class OrderCancelled(OrderStatusChanged):
    """注文がキャンセル(または拒否)された"""
