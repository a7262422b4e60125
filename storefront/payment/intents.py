"""
Payment — ゲートウェイインテント

1 回の支払い試行を表す一時的なレコード。status は open からのみ遷移する:

    open ──▶ completed   (captured / 代引きのオーソリ)
         ──▶ cancelled   (failed / voided / 別ゲートウェイへの切り替え)
         ──▶ expired     (TTL 超過、スイーパーが設定)

注文は複数のインテントを持ちうるが、"現在の" インテントは最新の open のものだけ。
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import gateway_intents


class IntentStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class GatewayIntent(BaseModel):
    intent_id: str
    order_id: str
    gateway: str
    amount: int
    currency: str
    gateway_intent_id: str
    status: IntentStatus = IntentStatus.OPEN
    created_at: datetime
    expires_at: datetime
    client_continuation: dict

    def is_current(self, now: datetime) -> bool:
        return self.status is IntentStatus.OPEN and self.expires_at > now


def _to_intent(row) -> GatewayIntent:
    return GatewayIntent(
        intent_id=row.intent_id,
        order_id=row.order_id,
        gateway=row.gateway,
        amount=row.amount,
        currency=row.currency,
        gateway_intent_id=row.gateway_intent_id,
        status=IntentStatus(row.status),
        created_at=row.created_at,
        expires_at=row.expires_at,
        client_continuation=row.client_continuation,
    )


class IntentRepository:
    async def add(self, session: AsyncSession, intent: GatewayIntent) -> None:
        await session.execute(
            insert(gateway_intents).values(
                intent_id=intent.intent_id,
                order_id=intent.order_id,
                gateway=intent.gateway,
                amount=intent.amount,
                currency=intent.currency,
                gateway_intent_id=intent.gateway_intent_id,
                status=intent.status.value,
                client_continuation=intent.client_continuation,
                created_at=intent.created_at,
                expires_at=intent.expires_at,
            )
        )

    async def get_by_gateway_ref(
        self, session: AsyncSession, gateway: str, gateway_intent_id: str
    ) -> GatewayIntent | None:
        c = gateway_intents.c
        result = await session.execute(
            select(gateway_intents).where(c.gateway == gateway, c.gateway_intent_id == gateway_intent_id)
        )
        row = result.first()
        return _to_intent(row) if row else None

    async def latest_for_order(
        self, session: AsyncSession, order_id: str, gateway: str | None = None
    ) -> GatewayIntent | None:
        c = gateway_intents.c
        stmt = select(gateway_intents).where(c.order_id == order_id)
        if gateway is not None:
            stmt = stmt.where(c.gateway == gateway)
        result = await session.execute(stmt.order_by(c.created_at.desc()).limit(1))
        row = result.first()
        return _to_intent(row) if row else None

    async def open_for_order(self, session: AsyncSession, order_id: str, gateway: str) -> GatewayIntent | None:
        c = gateway_intents.c
        result = await session.execute(
            select(gateway_intents)
            .where(c.order_id == order_id, c.gateway == gateway, c.status == IntentStatus.OPEN.value)
            .order_by(c.created_at.desc())
            .limit(1)
        )
        row = result.first()
        return _to_intent(row) if row else None

    async def list_for_order(self, session: AsyncSession, order_id: str) -> list[GatewayIntent]:
        c = gateway_intents.c
        result = await session.execute(
            select(gateway_intents).where(c.order_id == order_id).order_by(c.created_at)
        )
        return [_to_intent(row) for row in result.fetchall()]

    async def close(self, session: AsyncSession, intent_id: str, status: IntentStatus) -> bool:
        """open のインテントだけを終端状態にする(単調遷移)。"""
        c = gateway_intents.c
        result = await session.execute(
            update(gateway_intents)
            .where(c.intent_id == intent_id, c.status == IntentStatus.OPEN.value)
            .values(status=status.value)
        )
        return result.rowcount > 0

    async def list_expired(self, session: AsyncSession, now: datetime) -> list[GatewayIntent]:
        c = gateway_intents.c
        result = await session.execute(
            select(gateway_intents)
            .where(c.status == IntentStatus.OPEN.value, c.expires_at <= now)
            .order_by(c.expires_at)
        )
        return [_to_intent(row) for row in result.fetchall()]
