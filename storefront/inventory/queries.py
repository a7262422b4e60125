"""
Inventory — クエリハンドラ (Read 側)
"""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import inventory_reservations, products
from ..money import to_major


def _reserved_subquery(now: datetime):
    r = inventory_reservations.c
    return (
        select(r.product_id, func.sum(r.quantity).label("reserved"))
        .where(r.committed.is_(False), r.released.is_(False), r.expires_at > now)
        .group_by(r.product_id)
        .subquery()
    )


def _product_dict(row) -> dict:
    reserved = int(row.reserved or 0)
    return {
        "id": row.product_id,
        "product_name": row.name,
        "on_hand": row.on_hand,
        "reserved": reserved,
        "available": row.on_hand - reserved,
        "price": row.price,
        "price_display": str(to_major(row.price, row.currency)),
        "currency": row.currency,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_product(session: AsyncSession, product_id: str, now: datetime) -> dict | None:
    reserved = _reserved_subquery(now)
    result = await session.execute(
        select(products, reserved.c.reserved)
        .outerjoin(reserved, reserved.c.product_id == products.c.product_id)
        .where(products.c.product_id == product_id)
    )
    row = result.first()
    if not row:
        return None
    return _product_dict(row)


async def list_products(session: AsyncSession, now: datetime) -> list[dict]:
    reserved = _reserved_subquery(now)
    result = await session.execute(
        select(products, reserved.c.reserved)
        .outerjoin(reserved, reserved.c.product_id == products.c.product_id)
        .order_by(products.c.name)
    )
    return [_product_dict(row) for row in result.fetchall()]
