"""
Order — リポジトリ (OrderRepository)

orders テーブルへの読み書き。更新は version による楽観的ロックで行う:
読み込んだ version と一致する行だけを更新し、一致しなければ StaleOrder。
ステータス更新と history の追記は 1 回の UPDATE で書き込む。
"""

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import orders
from ..errors import StaleOrder, UnknownOrder
from .aggregate import Order


def _to_order(row) -> Order:
    return Order(
        order_id=row.order_id,
        order_number=row.order_number,
        lines=row.lines,
        subtotal=row.subtotal,
        tax=row.tax,
        shipping=row.shipping,
        discount=row.discount,
        total=row.total,
        currency=row.currency,
        shipping_address=row.shipping_address,
        customer=row.customer,
        status=row.status,
        payment_status=row.payment_status,
        gateway=row.gateway,
        created_at=row.created_at,
        updated_at=row.updated_at,
        history=row.history,
        tracking=row.tracking,
        notes=row.notes or {},
        version=row.version,
    )


def _columns(order: Order) -> dict:
    data = order.model_dump(mode="json", by_alias=True)
    return {
        "order_number": order.order_number,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "gateway": order.gateway,
        "currency": order.currency,
        "subtotal": order.subtotal,
        "tax": order.tax,
        "shipping": order.shipping,
        "discount": order.discount,
        "total": order.total,
        "lines": data["lines"],
        "shipping_address": data["shipping_address"],
        "customer": data["customer"],
        "history": data["history"],
        "tracking": data["tracking"],
        "notes": data["notes"],
        "updated_at": order.updated_at,
    }


class OrderRepository:
    async def get(self, session: AsyncSession, order_id: str) -> Order | None:
        result = await session.execute(select(orders).where(orders.c.order_id == order_id))
        row = result.first()
        return _to_order(row) if row else None

    async def load(self, session: AsyncSession, order_id: str) -> Order:
        order = await self.get(session, order_id)
        if order is None:
            raise UnknownOrder(f"Order {order_id} not found")
        return order

    async def get_by_number(self, session: AsyncSession, order_number: str) -> Order | None:
        result = await session.execute(select(orders).where(orders.c.order_number == order_number))
        row = result.first()
        return _to_order(row) if row else None

    async def save(self, session: AsyncSession, order: Order) -> Order:
        """新しい注文を INSERT する。"""
        await session.execute(
            insert(orders).values(
                order_id=order.order_id,
                version=order.version,
                created_at=order.created_at,
                **_columns(order),
            )
        )
        return order

    async def update(self, session: AsyncSession, order: Order, expected_version: int) -> Order:
        """version が一致する場合だけ更新し、version を 1 進めた Order を返す。"""
        result = await session.execute(
            update(orders)
            .where(orders.c.order_id == order.order_id, orders.c.version == expected_version)
            .values(version=expected_version + 1, **_columns(order))
        )
        if result.rowcount != 1:
            raise StaleOrder(f"Order {order.order_id} was modified concurrently")
        return order.model_copy(update={"version": expected_version + 1})

    async def transition(self, session: AsyncSession, current: Order, updated: Order) -> Order:
        """状態遷移 (status + history) を 1 回の書き込みで保存する。"""
        return await self.update(session, updated, current.version)

    async def list_orders(
        self,
        session: AsyncSession,
        status: str | None = None,
        payment_status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Order]:
        stmt = select(orders)
        if status:
            stmt = stmt.where(orders.c.status == status)
        if payment_status:
            stmt = stmt.where(orders.c.payment_status == payment_status)
        result = await session.execute(
            stmt.order_by(orders.c.created_at.desc()).limit(limit).offset(offset)
        )
        return [_to_order(row) for row in result.fetchall()]
