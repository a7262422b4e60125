"""
Inventory — 在庫引き当てガード (InventoryService)

チェックアウト中の在庫の売り越しを防ぐため、注文ごとにソフトな引き当てを保持する。

  available = on_hand - Σ(有効な引き当て)
  有効な引き当て = committed でも released でもなく、期限切れでないもの

  reserve  : 全行を引き当てる。1 行でも不足すれば OutOfStock(何も書かない)
  commit   : 支払い確定時。on_hand を減らし、引き当てを committed にする(on_hand は負にしない)
  release  : 支払い失敗・キャンセル・期限切れ時。引き当てを解放する
  extend   : インテントより先に期限が切れないよう延長する
  hold     : オーソリ済みの注文の引き当てを捕捉まで保持する
  restock  : 確定済みの注文が出荷前にキャンセルされたとき、on_hand に戻す

すべてのメソッドは呼び出し側のトランザクション(session)の中で動く。
"""

import logging
import uuid
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import inventory_reservations, orders, products
from ..errors import OutOfStock

logger = logging.getLogger(__name__)


def _active(now: datetime):
    r = inventory_reservations.c
    return and_(r.committed.is_(False), r.released.is_(False), r.expires_at > now)


@dataclass
class CommitResult:
    committed: int = 0
    # product_id → 確定できなかった数量
    shortfall: dict[str, int] = field(default_factory=dict)


class InventoryService:
    def __init__(self, reservation_ttl_minutes: int = 45) -> None:
        self.ttl = timedelta(minutes=reservation_ttl_minutes)

    async def set_stock(
        self,
        session: AsyncSession,
        product_id: str,
        name: str,
        price: int,
        currency: str,
        on_hand: int,
        now: datetime,
    ) -> None:
        """在庫レコードを登録・更新する(カタログ本体は外部サービス)。"""
        result = await session.execute(select(products.c.product_id).where(products.c.product_id == product_id))
        values = {
            "name": name,
            "price": price,
            "currency": currency.upper(),
            "on_hand": on_hand,
            "updated_at": now,
        }
        if result.first() is None:
            await session.execute(insert(products).values(product_id=product_id, **values))
        else:
            await session.execute(update(products).where(products.c.product_id == product_id).values(**values))

    async def get_product(self, session: AsyncSession, product_id: str, for_update: bool = False):
        stmt = select(products).where(products.c.product_id == product_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.first()

    async def reserved_quantity(self, session: AsyncSession, product_id: str, now: datetime) -> int:
        r = inventory_reservations.c
        result = await session.execute(
            select(func.coalesce(func.sum(r.quantity), 0)).where(r.product_id == product_id, _active(now))
        )
        return int(result.scalar_one())

    async def available(self, session: AsyncSession, product_id: str, now: datetime) -> int:
        row = await self.get_product(session, product_id)
        if row is None:
            return 0
        return row.on_hand - await self.reserved_quantity(session, product_id, now)

    async def reserve(
        self,
        session: AsyncSession,
        order_id: str,
        lines: Iterable[tuple[str, int]],
        now: datetime,
        expires_at: datetime | None = None,
    ) -> datetime:
        """
        在庫引き当てコマンド

        1. 商品行をロック (FOR UPDATE) して現在の在庫を確認
        2. 全行が足りれば引き当てを記録
        3. 1 行でも不足すれば OutOfStock
        """
        wanted: Counter[str] = Counter()
        for product_id, quantity in lines:
            wanted[product_id] += quantity
        expires_at = expires_at or now + self.ttl

        for product_id, quantity in sorted(wanted.items()):
            row = await self.get_product(session, product_id, for_update=True)
            if row is None:
                raise OutOfStock(product_id, quantity, 0)
            available = row.on_hand - await self.reserved_quantity(session, product_id, now)
            if available < quantity:
                logger.info(
                    "Reservation failed for order %s: %s requested=%d available=%d",
                    order_id, product_id, quantity, available,
                )
                raise OutOfStock(product_id, quantity, available)

        for product_id, quantity in sorted(wanted.items()):
            await session.execute(
                insert(inventory_reservations).values(
                    reservation_id=str(uuid.uuid4()),
                    order_id=order_id,
                    product_id=product_id,
                    quantity=quantity,
                    expires_at=expires_at,
                    committed=False,
                    released=False,
                    created_at=now,
                )
            )
        return expires_at

    async def active_for(self, session: AsyncSession, order_id: str, now: datetime) -> list:
        r = inventory_reservations.c
        result = await session.execute(
            select(inventory_reservations).where(r.order_id == order_id, _active(now)).order_by(r.product_id)
        )
        return result.fetchall()

    async def extend(self, session: AsyncSession, order_id: str, expires_at: datetime, now: datetime) -> int:
        r = inventory_reservations.c
        result = await session.execute(
            update(inventory_reservations)
            .where(r.order_id == order_id, _active(now), r.expires_at < expires_at)
            .values(expires_at=expires_at)
        )
        return result.rowcount

    async def release(self, session: AsyncSession, order_id: str) -> int:
        """在庫解放コマンド(補償トランザクション)"""
        r = inventory_reservations.c
        result = await session.execute(
            update(inventory_reservations)
            .where(r.order_id == order_id, r.committed.is_(False), r.released.is_(False))
            .values(released=True)
        )
        if result.rowcount:
            logger.info("Released %d reservation(s) for order %s", result.rowcount, order_id)
        return result.rowcount

    async def hold(
        self,
        session: AsyncSession,
        order_id: str,
        lines: Iterable[tuple[str, int]],
        until: datetime,
        now: datetime,
    ) -> bool:
        """
        オーソリ済みの注文の引き当てを until まで保持する。
        有効な引き当てがなければ取り直す。在庫が足りなければ False(確定時に不足分を報告)。
        """
        if await self.active_for(session, order_id, now):
            await self.extend(session, order_id, until, now)
            return True
        try:
            await self.reserve(session, order_id, lines, now, expires_at=until)
        except OutOfStock as e:
            logger.warning("Could not hold stock for authorized order %s: %s", order_id, e)
            return False
        return True

    async def commit(
        self,
        session: AsyncSession,
        order_id: str,
        lines: Iterable[tuple[str, int]],
        now: datetime,
    ) -> CommitResult:
        """
        在庫確定コマンド

        有効な引き当ての数量を on_hand から差し引き、引き当てを committed にする。
        引き当てが失効していた分は、他の注文の引き当てに影響しない空き在庫からだけ差し引く。
        空きが足りない分は shortfall として返す(on_hand は負にしない)。
        """
        r = inventory_reservations.c
        result = await session.execute(
            select(inventory_reservations).where(r.order_id == order_id, _active(now))
        )
        held: Counter[str] = Counter()
        for row in result.fetchall():
            held[row.product_id] += row.quantity

        wanted: Counter[str] = Counter()
        for product_id, quantity in lines:
            wanted[product_id] += quantity

        outcome = CommitResult()
        unreserved: dict[str, int] = {}
        for product_id, quantity in sorted(wanted.items()):
            row = await self.get_product(session, product_id, for_update=True)
            if row is None:
                logger.warning("Product %s vanished before commit of order %s", product_id, order_id)
                outcome.shortfall[product_id] = quantity
                continue
            taken = min(held[product_id], quantity)
            missing = quantity - taken
            if missing:
                free = max(row.on_hand - await self.reserved_quantity(session, product_id, now), 0)
                logger.warning(
                    "Committing order %s without a live reservation for %s (held=%d, needed=%d, free=%d)",
                    order_id, product_id, held[product_id], quantity, free,
                )
                unreserved[product_id] = min(missing, free)
                taken += unreserved[product_id]
                if missing > free:
                    outcome.shortfall[product_id] = missing - free
            if taken:
                await session.execute(
                    update(products)
                    .where(products.c.product_id == product_id)
                    .values(on_hand=products.c.on_hand - taken, updated_at=now)
                )
            outcome.committed += taken

        await session.execute(
            update(inventory_reservations)
            .where(r.order_id == order_id, _active(now))
            .values(committed=True)
        )
        await session.execute(
            update(inventory_reservations)
            .where(r.order_id == order_id, r.committed.is_(False), r.released.is_(False))
            .values(released=True)
        )
        # 失効後に確定した分も committed として記録し、キャンセル時に戻せるようにする
        for product_id, quantity in unreserved.items():
            if not quantity:
                continue
            await session.execute(
                insert(inventory_reservations).values(
                    reservation_id=str(uuid.uuid4()),
                    order_id=order_id,
                    product_id=product_id,
                    quantity=quantity,
                    expires_at=now,
                    committed=True,
                    released=False,
                    created_at=now,
                )
            )
        if outcome.shortfall:
            logger.error("Order %s is short of stock after payment: %s", order_id, outcome.shortfall)
        return outcome

    async def committed_for(self, session: AsyncSession, order_id: str) -> list:
        r = inventory_reservations.c
        result = await session.execute(
            select(inventory_reservations).where(
                r.order_id == order_id, r.committed.is_(True), r.released.is_(False)
            )
        )
        return result.fetchall()

    async def restock(self, session: AsyncSession, order_id: str, now: datetime) -> int:
        """確定済みの引き当てを在庫に戻す(出荷前のキャンセル時)。"""
        returned = 0
        for row in await self.committed_for(session, order_id):
            await session.execute(
                update(products)
                .where(products.c.product_id == row.product_id)
                .values(on_hand=products.c.on_hand + row.quantity, updated_at=now)
            )
            await session.execute(
                update(inventory_reservations)
                .where(inventory_reservations.c.reservation_id == row.reservation_id)
                .values(released=True)
            )
            returned += row.quantity
        if returned:
            logger.info("Returned %d unit(s) to stock for order %s", returned, order_id)
        return returned

    async def release_expired(
        self, session: AsyncSession, now: datetime, keep_payment_statuses: Iterable[str] = ()
    ) -> list[str]:
        """
        期限切れの引き当てを解放し、該当する注文 ID を返す(冪等)。
        keep_payment_statuses の payment_status を持つ注文の引き当ては残す。
        """
        r = inventory_reservations.c
        stale = and_(r.committed.is_(False), r.released.is_(False), r.expires_at <= now)
        keep = list(keep_payment_statuses)
        if keep:
            locked = select(orders.c.order_id).where(orders.c.payment_status.in_(keep))
            stale = and_(stale, r.order_id.not_in(locked))
        result = await session.execute(select(r.order_id).where(stale).distinct())
        order_ids = [row.order_id for row in result.fetchall()]
        if order_ids:
            await session.execute(update(inventory_reservations).where(stale).values(released=True))
        return order_ids
