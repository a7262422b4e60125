"""
Storefront — CoreContext

コーディネーターの各エントリーポイントに明示的に渡す依存関係の束。
アプリケーション全体のシングルトン(共有エンジン・環境変数・グローバルな Redis 接続)
をモジュールレベルに置かず、ここに集約する。

注文ごとの排他 (OrderLocks):
  台帳書き込み + 状態遷移 + 在庫更新の短いクリティカルセクションだけを保護する。
  ゲートウェイへのネットワーク呼び出し中はロックを保持しない。
"""

import asyncio
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from . import db
from .bus import EventBus, InMemoryEventBus, RedisEventBus
from .config import Settings
from .inventory.service import InventoryService
from .order.repository import OrderRepository
from .payment.gateways import AdapterRegistry, build_registry
from .payment.intents import IntentRepository
from .payment.ledger_store import LedgerRepository


class Clock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class OrderLocks(ABC):
    """注文単位のアドバイザリロック"""

    @abstractmethod
    def hold(self, order_id: str) -> AbstractAsyncContextManager[None]: ...


class LocalOrderLocks(OrderLocks):
    """単一プロセス用: キーごとの asyncio.Lock。保持・待機している呼び出しがなくなれば破棄する。"""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: Counter[str] = Counter()

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._users[order_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[order_id] -= 1
            if not self._users[order_id]:
                del self._users[order_id]
                del self._locks[order_id]

    def key_count(self) -> int:
        return len(self._locks)


class RedisOrderLocks(OrderLocks):
    """複数プロセス用: Redis の分散ロック (SET NX + トークン照合で解放)"""

    def __init__(self, redis: aioredis.Redis, timeout: float = 10.0, blocking_timeout: float = 5.0) -> None:
        self.redis = redis
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        lock = self.redis.lock(
            f"storefront:order-lock:{order_id}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        async with lock:
            yield


@dataclass
class CoreContext:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    orders: OrderRepository
    ledger: LedgerRepository
    intents: IntentRepository
    inventory: InventoryService
    gateways: AdapterRegistry
    clock: Clock
    bus: EventBus
    locks: OrderLocks
    engine: AsyncEngine | None = None
    redis: aioredis.Redis | None = None

    async def aclose(self) -> None:
        await self.gateways.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_context(
    settings: Settings,
    *,
    engine: AsyncEngine | None = None,
    clock: Clock | None = None,
    bus: EventBus | None = None,
    locks: OrderLocks | None = None,
    registry: AdapterRegistry | None = None,
) -> CoreContext:
    """Settings から CoreContext を組み立てる。テストでは各部品を差し替えられる。"""
    engine = engine or db.create_engine(settings.database_url)
    clock = clock or Clock()
    redis = None
    if settings.redis_url and (bus is None or locks is None):
        redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    if bus is None:
        bus = RedisEventBus(redis) if redis is not None else InMemoryEventBus()
    if locks is None:
        locks = RedisOrderLocks(redis) if redis is not None else LocalOrderLocks()
    inventory = InventoryService(settings.reservation_ttl_minutes)
    return CoreContext(
        settings=settings,
        session_factory=db.create_session_factory(engine),
        orders=OrderRepository(),
        ledger=LedgerRepository(),
        intents=IntentRepository(),
        inventory=inventory,
        gateways=registry or build_registry(settings),
        clock=clock,
        bus=bus,
        locks=locks,
        engine=engine,
        redis=redis,
    )
