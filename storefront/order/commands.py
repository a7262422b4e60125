"""
Order — コマンドハンドラ (Write 側)

チェックアウト: 注文を作成し、同じトランザクションで在庫を引き当てる。
1 行でも在庫が足りなければ OutOfStock で全体を中止する(インテントは作らない)。

  1. 商品情報から明細スナップショットと価格内訳を作る
  2. 注文を INSERT
  3. 在庫を引き当て
  4. コミット後に OrderPlaced を発行

管理者メモ (admin / internal) の更新もここで扱う。
"""

import logging
import random
import uuid
from datetime import datetime

from ..context import CoreContext
from ..errors import InvalidAmount, OutOfStock, UnsupportedCurrency
from ..events import OrderPlaced
from ..money import apply_rate
from .aggregate import Actor, Customer, HistoryEntry, LineItem, Order, OrderStatus

logger = logging.getLogger(__name__)


def generate_order_number(now: datetime) -> str:
    """PLG + タイムスタンプ下 8 桁 + 乱数 3 桁"""
    timestamp = str(int(now.timestamp() * 1000))[-8:]
    return f"PLG{timestamp}{random.randint(0, 999):03d}"


async def place_order(
    ctx: CoreContext,
    customer: Customer,
    shipping_address: dict,
    lines: list[tuple[str, int]],
    gateway: str | None = None,
    discount: int = 0,
) -> Order:
    """注文作成コマンド"""
    if not lines:
        raise InvalidAmount("Order must contain at least one line")
    if any(quantity <= 0 for _, quantity in lines):
        raise InvalidAmount("Line quantity must be positive")
    if discount < 0:
        raise InvalidAmount("Discount must not be negative")
    if gateway is not None:
        ctx.gateways.get(gateway)

    settings = ctx.settings
    now = ctx.clock.now()
    order_id = str(uuid.uuid4())

    async with ctx.session_factory() as session:
        async with session.begin():
            items: list[LineItem] = []
            currencies = set()
            for product_id, quantity in lines:
                product = await ctx.inventory.get_product(session, product_id)
                if product is None:
                    raise OutOfStock(product_id, quantity, 0)
                currencies.add(product.currency)
                items.append(
                    LineItem(
                        product_id=product_id,
                        name=product.name,
                        unit_price=product.price,
                        quantity=quantity,
                        subtotal=product.price * quantity,
                    )
                )
            if len(currencies) != 1:
                raise UnsupportedCurrency(f"Basket mixes currencies: {sorted(currencies)}")

            subtotal = sum(item.subtotal for item in items)
            tax = apply_rate(subtotal, settings.tax_rate_basis_points)
            shipping = 0 if subtotal > settings.free_shipping_threshold else settings.shipping_fee

            order = Order(
                order_id=order_id,
                order_number=generate_order_number(now),
                lines=items,
                subtotal=subtotal,
                tax=tax,
                shipping=shipping,
                discount=discount,
                total=Order.compute_total(subtotal, tax, shipping, discount),
                currency=currencies.pop(),
                shipping_address=shipping_address,
                customer=customer,
                gateway=gateway,
                created_at=now,
                updated_at=now,
                history=[
                    HistoryEntry(to_status=OrderStatus.PENDING, at=now, by=Actor.CUSTOMER.value, note="Order placed")
                ],
            )
            await ctx.orders.save(session, order)
            await ctx.inventory.reserve(session, order_id, order.reservation_lines(), now)

    logger.info("Placed order %s (%s) total=%d %s", order.order_number, order_id, order.total, order.currency)
    await ctx.bus.publish(
        OrderPlaced(
            order_id=order_id,
            timestamp=now,
            order_number=order.order_number,
            total=order.total,
            currency=order.currency,
            gateway=gateway,
        )
    )
    return order


async def update_notes(
    ctx: CoreContext,
    order_id: str,
    admin: str | None = None,
    internal: str | None = None,
) -> Order:
    """管理者メモの更新コマンド(None の項目は変更しない)"""
    changes = {k: v for k, v in (("admin", admin), ("internal", internal)) if v is not None}
    async with ctx.locks.hold(order_id):
        async with ctx.session_factory() as session:
            async with session.begin():
                order = await ctx.orders.load(session, order_id)
                if not changes:
                    return order
                updated = order.model_copy(
                    update={
                        "notes": order.notes.model_copy(update=changes),
                        "updated_at": ctx.clock.now(),
                    }
                )
                order = await ctx.orders.update(session, updated, order.version)
    logger.info("Updated notes for order %s: %s", order_id, sorted(changes))
    return order
