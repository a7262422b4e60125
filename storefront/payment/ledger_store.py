"""
Payment — 台帳ストア (LedgerRepository)

ledger_entries テーブルへの追記と読み出し。
(gateway, gateway_event_id) の UNIQUE 制約で同じイベントの二重適用を防ぐ。
制約違反は異常ではなく RecordOutcome.DUPLICATE として扱う。
"""

import logging

from sqlalchemy import func, insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import ledger_entries
from .ledger import EntryKind, LedgerEntry, RecordOutcome, RecordResult, check_sequence

logger = logging.getLogger(__name__)


def _to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row.entry_id,
        order_id=row.order_id,
        gateway=row.gateway,
        gateway_intent_id=row.gateway_intent_id,
        gateway_event_id=row.gateway_event_id,
        gateway_payment_id=row.gateway_payment_id,
        kind=EntryKind(row.kind),
        amount=row.amount,
        currency=row.currency,
        raw_payload_hash=row.raw_payload_hash,
        received_at=row.received_at,
        verified=row.verified,
    )


class LedgerRepository:
    async def insert_unique(self, session: AsyncSession, entry: LedgerEntry) -> bool:
        """
        イベントを台帳に追記する。既に同じ (gateway, gateway_event_id) があれば False。

        PostgreSQL / SQLite では ON CONFLICT DO NOTHING を使い、外側のトランザクションを壊さない。
        それ以外の方言では IntegrityError がそのまま呼び出し側に伝わる。
        """
        seq = await session.execute(
            select(func.coalesce(func.max(ledger_entries.c.seq), 0)).where(
                ledger_entries.c.order_id == entry.order_id
            )
        )
        values = {
            "entry_id": entry.entry_id,
            "seq": seq.scalar_one() + 1,
            "order_id": entry.order_id,
            "gateway": entry.gateway,
            "gateway_intent_id": entry.gateway_intent_id,
            "gateway_event_id": entry.gateway_event_id,
            "gateway_payment_id": entry.gateway_payment_id,
            "kind": entry.kind.value,
            "amount": entry.amount,
            "currency": entry.currency,
            "raw_payload_hash": entry.raw_payload_hash,
            "received_at": entry.received_at,
            "verified": entry.verified,
        }
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(ledger_entries).values(**values).on_conflict_do_nothing(
                index_elements=["gateway", "gateway_event_id"]
            )
        elif dialect == "sqlite":
            stmt = sqlite_insert(ledger_entries).values(**values).on_conflict_do_nothing(
                index_elements=["gateway", "gateway_event_id"]
            )
        else:
            stmt = insert(ledger_entries).values(**values)
        result = await session.execute(stmt)
        if result.rowcount == 0:
            logger.info("Duplicate ledger event %s/%s", entry.gateway, entry.gateway_event_id)
            return False
        return True

    async def list_for_order(self, session: AsyncSession, order_id: str) -> list[LedgerEntry]:
        """注文の全イベントを受信順 (received_at, seq) に読み出す。"""
        c = ledger_entries.c
        result = await session.execute(
            select(ledger_entries).where(c.order_id == order_id).order_by(c.received_at, c.seq)
        )
        return [_to_entry(row) for row in result.fetchall()]

    async def get_event(self, session: AsyncSession, gateway: str, gateway_event_id: str) -> LedgerEntry | None:
        c = ledger_entries.c
        result = await session.execute(
            select(ledger_entries).where(c.gateway == gateway, c.gateway_event_id == gateway_event_id)
        )
        row = result.first()
        return _to_entry(row) if row else None

    async def find_capture_by_payment(
        self, session: AsyncSession, gateway: str, gateway_payment_id: str
    ) -> LedgerEntry | None:
        """返金イベントの振り分け用: 決済 ID から captured エントリを探す。"""
        c = ledger_entries.c
        result = await session.execute(
            select(ledger_entries).where(
                c.gateway == gateway,
                c.gateway_payment_id == gateway_payment_id,
                c.kind == EntryKind.CAPTURED.value,
            )
        )
        row = result.first()
        return _to_entry(row) if row else None

    async def record(self, session: AsyncSession, entry: LedgerEntry) -> RecordResult:
        """
        重複チェック → シーケンス規則 → 追記。

        Applied / Duplicate / Rejected のいずれかを返す。Duplicate は正常系。
        """
        existing = await self.get_event(session, entry.gateway, entry.gateway_event_id)
        if existing is not None:
            return RecordResult(RecordOutcome.DUPLICATE, existing)

        history = await self.list_for_order(session, entry.order_id)
        reason = check_sequence(history, entry)
        if reason:
            logger.warning(
                "Rejected ledger event %s/%s (%s) for order %s: %s",
                entry.gateway, entry.gateway_event_id, entry.kind.value, entry.order_id, reason,
            )
            return RecordResult(RecordOutcome.REJECTED, entry, reason)

        if not await self.insert_unique(session, entry):
            existing = await self.get_event(session, entry.gateway, entry.gateway_event_id)
            return RecordResult(RecordOutcome.DUPLICATE, existing or entry)
        return RecordResult(RecordOutcome.APPLIED, entry)
