"""
Storefront — データストア

4 つのリレーション (orders / ledger_entries / gateway_intents /
inventory_reservations) と在庫用の products を定義する。

ledger_entries は追記専用。(gateway, gateway_event_id) の UNIQUE 制約が
イベントの二重適用を防ぐ最終的な直列化ポイントになる。
"""

from datetime import timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """常に UTC の aware datetime として読み書きする (SQLite は tz を保存しない)。"""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("order_id", String(36), primary_key=True),
    Column("order_number", String(32), nullable=False, unique=True),
    Column("status", String(16), nullable=False),
    Column("payment_status", String(24), nullable=False),
    Column("gateway", String(16)),
    Column("currency", String(3), nullable=False),
    Column("subtotal", BigInteger, nullable=False),
    Column("tax", BigInteger, nullable=False),
    Column("shipping", BigInteger, nullable=False),
    Column("discount", BigInteger, nullable=False),
    Column("total", BigInteger, nullable=False),
    Column("lines", JSON, nullable=False),
    Column("shipping_address", JSON, nullable=False),
    Column("customer", JSON, nullable=False),
    Column("history", JSON, nullable=False),
    Column("tracking", JSON),
    Column("notes", JSON),
    Column("version", Integer, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
)
Index("ix_orders_status", orders.c.status)
Index("ix_orders_payment_status", orders.c.payment_status)

ledger_entries = Table(
    "ledger_entries",
    metadata,
    Column("entry_id", String(36), primary_key=True),
    Column("seq", Integer, nullable=False),
    Column("order_id", String(36), nullable=False),
    Column("gateway", String(16), nullable=False),
    Column("gateway_intent_id", String(128), nullable=False),
    Column("gateway_event_id", String(160), nullable=False),
    Column("gateway_payment_id", String(128)),
    Column("kind", String(16), nullable=False),
    Column("amount", BigInteger, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("raw_payload_hash", String(64), nullable=False),
    Column("received_at", UTCDateTime, nullable=False),
    Column("verified", Boolean, nullable=False),
    UniqueConstraint("gateway", "gateway_event_id", name="uq_ledger_gateway_event"),
)
Index(
    "ix_ledger_order_intent",
    ledger_entries.c.order_id,
    ledger_entries.c.gateway,
    ledger_entries.c.gateway_intent_id,
)
Index("ix_ledger_payment", ledger_entries.c.gateway, ledger_entries.c.gateway_payment_id)

gateway_intents = Table(
    "gateway_intents",
    metadata,
    Column("intent_id", String(36), primary_key=True),
    Column("order_id", String(36), nullable=False),
    Column("gateway", String(16), nullable=False),
    Column("amount", BigInteger, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("gateway_intent_id", String(128), nullable=False),
    Column("status", String(16), nullable=False),
    Column("client_continuation", JSON, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("expires_at", UTCDateTime, nullable=False),
    UniqueConstraint("gateway", "gateway_intent_id", name="uq_intent_gateway_ref"),
)
Index("ix_intents_order", gateway_intents.c.order_id)
Index("ix_intents_status_expiry", gateway_intents.c.status, gateway_intents.c.expires_at)

products = Table(
    "products",
    metadata,
    Column("product_id", String(64), primary_key=True),
    Column("name", Text, nullable=False),
    Column("price", BigInteger, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("on_hand", Integer, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
)

inventory_reservations = Table(
    "inventory_reservations",
    metadata,
    Column("reservation_id", String(36), primary_key=True),
    Column("order_id", String(36), nullable=False),
    Column("product_id", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("expires_at", UTCDateTime, nullable=False),
    Column("committed", Boolean, nullable=False, default=False),
    Column("released", Boolean, nullable=False, default=False),
    Column("created_at", UTCDateTime, nullable=False),
)
Index("ix_reservations_order", inventory_reservations.c.order_id)
Index("ix_reservations_product", inventory_reservations.c.product_id)


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
