"""
Order — クエリハンドラ (Read 側)

公開ビューには支払いの要約だけを載せ、インテントの client_continuation や
台帳の生データは含めない(管理者向けの ledger_view を除く)。
"""

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import ledger_entries, orders
from ..money import to_major
from ..payment.ledger import EntryKind, net_settled
from ..payment.ledger_store import LedgerRepository
from .aggregate import Order, OrderStatus
from .repository import OrderRepository


def _display(amount: int, currency: str) -> str:
    return str(to_major(amount, currency))


def order_view(order: Order, entries: list | None = None) -> dict:
    entries = entries or []
    captured = sum(e.amount for e in entries if e.kind is EntryKind.CAPTURED)
    refunded = sum(e.amount for e in entries if e.kind is EntryKind.REFUNDED)
    return {
        "id": order.order_id,
        "order_number": order.order_number,
        "status": order.status.value,
        "customer": order.customer.model_dump(),
        "shipping_address": order.shipping_address,
        "lines": [line.model_dump() for line in order.lines],
        "pricing": {
            "subtotal": order.subtotal,
            "tax": order.tax,
            "shipping": order.shipping,
            "discount": order.discount,
            "total": order.total,
            "total_display": _display(order.total, order.currency),
        },
        "currency": order.currency,
        "payment": {
            "status": order.payment_status.value,
            "gateway": order.gateway,
            "captured": captured,
            "refunded": refunded,
            "net_settled": net_settled(entries),
        },
        "history": [h.model_dump(mode="json", by_alias=True) for h in order.history],
        "tracking": order.tracking.model_dump(mode="json") if order.tracking else None,
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
    }


async def track_order(session: AsyncSession, order_number: str, email: str) -> dict | None:
    """
    注文番号での追跡(ゲスト向け)。

    注文時のメールアドレスが一致しなければ None(存在の有無も明かさない)。
    timeline は履歴に、出荷済みで未配達なら配達予定を加えたもの。
    """
    order = await OrderRepository().get_by_number(session, order_number)
    if order is None or order.customer.email.lower() != email.strip().lower():
        return None

    timeline = [
        {"status": h.to_status.value, "at": h.at.isoformat(), "note": h.note, "completed": True}
        for h in order.history
    ]
    tracking = order.tracking
    if tracking is not None and order.status is OrderStatus.SHIPPED:
        timeline.append(
            {
                "status": "expected_delivery",
                "at": tracking.estimated_delivery.isoformat(),
                "note": "",
                "completed": False,
            }
        )
    return {
        "order_number": order.order_number,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "tracking": tracking.model_dump(mode="json") if tracking else None,
        "timeline": timeline,
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文と支払いの要約を取得する。"""
    order = await OrderRepository().get(session, order_id)
    if order is None:
        return None
    entries = await LedgerRepository().list_for_order(session, order_id)
    return order_view(order, entries)


async def list_orders(
    session: AsyncSession,
    status: str | None = None,
    payment_status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    """管理者向けの注文一覧(新しい順)"""
    found = await OrderRepository().list_orders(session, status, payment_status, limit, offset)
    return [
        {
            "id": o.order_id,
            "order_number": o.order_number,
            "status": o.status.value,
            "payment_status": o.payment_status.value,
            "gateway": o.gateway,
            "customer_name": o.customer.name,
            "total": o.total,
            "total_display": _display(o.total, o.currency),
            "currency": o.currency,
            "created_at": o.created_at.isoformat(),
        }
        for o in found
    ]


async def ledger_view(session: AsyncSession, order_id: str) -> list[dict]:
    entries = await LedgerRepository().list_for_order(session, order_id)
    return [e.model_dump(mode="json") for e in entries]


async def payment_stats(session: AsyncSession) -> dict:
    """ゲートウェイごとの件数と確定額・返金額を集計する。"""
    status_rows = await session.execute(
        select(orders.c.payment_status, func.count()).group_by(orders.c.payment_status)
    )
    by_status = {row[0]: row[1] for row in status_rows.fetchall()}

    c = ledger_entries.c
    gateway_rows = await session.execute(
        select(
            c.gateway,
            c.currency,
            func.sum(case((c.kind == EntryKind.CAPTURED.value, c.amount), else_=0)).label("captured"),
            func.sum(case((c.kind == EntryKind.REFUNDED.value, c.amount), else_=0)).label("refunded"),
            func.sum(case((c.kind == EntryKind.CAPTURED.value, 1), else_=0)).label("captures"),
            func.sum(case((c.kind == EntryKind.FAILED.value, 1), else_=0)).label("failures"),
        )
        .group_by(c.gateway, c.currency)
        .order_by(c.gateway, c.currency)
    )
    gateways = [
        {
            "gateway": row.gateway,
            "currency": row.currency,
            "captured": int(row.captured or 0),
            "refunded": int(row.refunded or 0),
            "net_settled": int(row.captured or 0) - int(row.refunded or 0),
            "captures": int(row.captures or 0),
            "failures": int(row.failures or 0),
        }
        for row in gateway_rows.fetchall()
    ]
    return {
        "orders_total": sum(by_status.values()),
        "orders_by_payment_status": by_status,
        "gateways": gateways,
    }
