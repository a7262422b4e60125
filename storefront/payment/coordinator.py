"""
Payment — コーディネーター

注文・ゲートウェイインテント・台帳・在庫の間を取り持つ。

    checkout ─▶ begin_payment ─▶ (顧客がゲートウェイで支払い)
                                   │
               リダイレクト (同期) ┼ Webhook (非同期)
                                   ▼
                               finalize ─▶ 台帳に追記 ─▶ payment_status を導出
                                          ─▶ 在庫を確定 / 解放 ─▶ ドメインイベント発行

書き込みはすべて注文ごとのロック + 1 トランザクションの中で行い、
ゲートウェイへのネットワーク呼び出しはロックの外で行う。
ドメインイベントはコミット後に発行する。
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from ..context import CoreContext
from ..errors import (
    AlreadyTerminal,
    GatewayUnavailable,
    IllegalTransition,
    InvalidAmount,
    PayloadMalformed,
    Rejected,
    StorefrontError,
    StoreUnavailable,
    UnknownEvent,
    UnknownOrder,
)
from ..events import (
    DomainEvent,
    OrderCancelled,
    OrderShipped,
    OrderStatusChanged,
    PaymentAuthorized,
    PaymentFailed,
    PaymentRefunded,
    PaymentSettled,
    StockShortfall,
)
from ..order.aggregate import Actor, Order, OrderStatus, Shipment
from .gateways.base import RefundHandle, VerifiedEvent, payload_hash
from .gateways.cod import collected_event_id
from .intents import GatewayIntent, IntentStatus
from .ledger import (
    EntryKind,
    LedgerEntry,
    PaymentStatus,
    RecordOutcome,
    derive_payment_status,
    net_settled,
)

logger = logging.getLogger(__name__)

# 一括更新で指定できる遷移先
BULK_TARGETS = frozenset(
    {OrderStatus.ACCEPTED, OrderStatus.DECLINED, OrderStatus.CANCELLED, OrderStatus.PROCESSING}
)

# この payment_status の注文には新しいインテントを作らない
LOCKED_IN_PAYMENT = frozenset(
    {
        PaymentStatus.AUTHORIZED,
        PaymentStatus.PAID,
        PaymentStatus.PARTIALLY_REFUNDED,
        PaymentStatus.REFUNDED,
    }
)


# captured / refunded 以外のイベントを受け付けるインテントの状態。
# オーソリの取り消しはチェックアウトの期限を過ぎても届く。
INTENT_ACCEPTS = {
    EntryKind.AUTHORIZED: frozenset({IntentStatus.OPEN}),
    EntryKind.FAILED: frozenset({IntentStatus.OPEN}),
    EntryKind.VOIDED: frozenset({IntentStatus.OPEN, IntentStatus.EXPIRED}),
}


@dataclass
class BeginResult:
    intent: GatewayIntent
    reused: bool = False

    @property
    def client_continuation(self) -> dict:
        return self.intent.client_continuation

    @property
    def expires_at(self) -> datetime:
        return self.intent.expires_at


@dataclass
class FinalizeResult:
    outcome: RecordOutcome
    order_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    kind: EntryKind
    reason: str = ""


@dataclass
class ReturnResult:
    result: FinalizeResult | None
    redirect_url: str


@dataclass
class SweepReport:
    expired_intents: list[str] = field(default_factory=list)
    released_reservations: list[str] = field(default_factory=list)


class PaymentCoordinator:
    def __init__(self, ctx: CoreContext) -> None:
        self.ctx = ctx

    # ── トランザクション ──────────────────────────

    @asynccontextmanager
    async def _session(self):
        try:
            async with self.ctx.session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError) as e:
            logger.exception("Database unavailable")
            raise StoreUnavailable("Database unavailable") from e

    @asynccontextmanager
    async def _locked(self, order_id: str):
        async with self.ctx.locks.hold(order_id):
            async with self._session() as session:
                yield session

    async def _publish(self, events: list[DomainEvent]) -> None:
        for event in events:
            await self.ctx.bus.publish(event)

    async def _set_payment_status(self, session, order: Order, now: datetime, **changes) -> Order:
        """台帳から payment_status を導出し、変化があれば注文に書き込む。"""
        entries = await self.ctx.ledger.list_for_order(session, order.order_id)
        status = derive_payment_status(entries)
        if status != order.payment_status:
            changes["payment_status"] = status
        changes = {k: v for k, v in changes.items() if getattr(order, k) != v}
        if not changes:
            return order
        updated = order.model_copy(update={**changes, "updated_at": now})
        return await self.ctx.orders.update(session, updated, order.version)

    async def _commit_stock(self, session, order: Order, now: datetime) -> list[DomainEvent]:
        if await self.ctx.inventory.committed_for(session, order.order_id):
            return []
        result = await self.ctx.inventory.commit(session, order.order_id, order.reservation_lines(), now)
        if not result.shortfall:
            return []
        return [StockShortfall(order_id=order.order_id, timestamp=now, items=result.shortfall)]

    # ── begin_payment ─────────────────────────────

    async def begin_payment(self, order_id: str, gateway: str) -> BeginResult:
        """
        支払い開始

        1. 既存のインテントを確認 (同じゲートウェイの open なものはそのまま返す)
        2. 在庫の引き当てを再確保・延長
        3. ロックの外でゲートウェイにインテントを作成
        4. インテント + intent_created + orders.gateway を 1 トランザクションで保存
        """
        adapter = self.ctx.gateways.get(gateway)
        settings = self.ctx.settings
        ttl = timedelta(minutes=settings.intent_ttl_minutes)

        now = self.ctx.clock.now()
        async with self._locked(order_id) as session:
            order = await self.ctx.orders.load(session, order_id)
            current = await self._current_intent(session, order, now, gateway)
            if current is not None:
                return BeginResult(current, reused=True)

            active = await self.ctx.inventory.active_for(session, order_id, now)
            if active:
                await self.ctx.inventory.extend(session, order_id, now + self.ctx.inventory.ttl, now)
            else:
                await self.ctx.inventory.reserve(session, order_id, order.reservation_lines(), now)

        attempt = str(uuid.uuid4())
        try:
            handle = await adapter.create_intent(
                order_id,
                order.total,
                order.currency,
                settings.return_url(gateway),
                {"order_number": order.order_number, "attempt": attempt},
            )
        except StorefrontError:
            if not active:
                await self._release_unused_reservation(order_id)
            raise

        now = self.ctx.clock.now()
        async with self._locked(order_id) as session:
            order = await self.ctx.orders.load(session, order_id)
            current = await self._current_intent(session, order, now, gateway)
            if current is not None:
                logger.info(
                    "Discarding %s intent %s for order %s: %s already open",
                    gateway, handle.gateway_intent_id, order_id, current.gateway_intent_id,
                )
                return BeginResult(current, reused=True)

            intent = GatewayIntent(
                intent_id=attempt,
                order_id=order_id,
                gateway=gateway,
                amount=order.total,
                currency=order.currency,
                gateway_intent_id=handle.gateway_intent_id,
                created_at=now,
                expires_at=handle.expires_at or now + ttl,
                client_continuation=handle.client_continuation,
            )
            await self.ctx.intents.add(session, intent)
            recorded = await self.ctx.ledger.record(
                session,
                LedgerEntry(
                    entry_id=str(uuid.uuid4()),
                    order_id=order_id,
                    gateway=gateway,
                    gateway_intent_id=handle.gateway_intent_id,
                    gateway_event_id=f"intent:{handle.gateway_intent_id}",
                    kind=EntryKind.INTENT_CREATED,
                    amount=order.total,
                    currency=order.currency,
                    raw_payload_hash=payload_hash(json.dumps(handle.client_continuation, sort_keys=True).encode()),
                    received_at=now,
                    verified=False,
                ),
            )
            if recorded.outcome is RecordOutcome.REJECTED:
                raise Rejected(recorded.reason)
            await self._set_payment_status(session, order, now, gateway=gateway)

        logger.info(
            "Began %s payment for order %s: intent %s (%d %s)",
            gateway, order_id, handle.gateway_intent_id, order.total, order.currency,
        )
        return BeginResult(intent)

    async def _release_unused_reservation(self, order_id: str) -> None:
        """インテントを作れなかったときに、この呼び出しで取った引き当てを戻す。"""
        async with self._locked(order_id) as session:
            latest = await self.ctx.intents.latest_for_order(session, order_id)
            if latest is not None and latest.is_current(self.ctx.clock.now()):
                return
            await self.ctx.inventory.release(session, order_id)

    async def _current_intent(self, session, order: Order, now: datetime, gateway: str) -> GatewayIntent | None:
        """
        再利用できる open なインテントを返す。別ゲートウェイの open なインテントはキャンセルする。
        支払い済み・オーソリ済みの注文で再利用できるものがなければ AlreadyTerminal。
        """
        latest = await self.ctx.intents.latest_for_order(session, order.order_id)
        live = latest if latest is not None and latest.is_current(now) else None

        if order.payment_status in LOCKED_IN_PAYMENT:
            if live is not None:
                return live
            raise AlreadyTerminal(f"Order {order.order_number} is already {order.payment_status.value}")
        if order.is_terminal:
            raise AlreadyTerminal(f"Order {order.order_number} is already {order.status.value}")

        if live is None:
            return None
        if live.gateway == gateway:
            return live
        await self.ctx.intents.close(session, live.intent_id, IntentStatus.CANCELLED)
        logger.info("Cancelled %s intent %s for order %s (switching to %s)",
                    live.gateway, live.gateway_intent_id, order.order_id, gateway)
        return None

    # ── finalize ──────────────────────────────────

    async def finalize(self, gateway: str, body: bytes, headers) -> FinalizeResult:
        """
        ゲートウェイからのコールバック(リダイレクト・Webhook)を確定させる。

        検証に失敗した場合は何も書き込まない。同じイベントが何度届いても結果は同じ
        (2 回目以降は RecordOutcome.DUPLICATE)。
        """
        adapter = self.ctx.gateways.get(gateway)
        event = await adapter.verify_callback(body, headers)

        async with self._session() as session:
            intent = await self._resolve_intent(session, event)

        try:
            return await self._apply(event, intent)
        except IntegrityError:
            # 別プロセスが同じイベントを先に書き込んだ
            logger.info("Concurrent insert of %s/%s; treating as duplicate", event.gateway, event.gateway_event_id)
            async with self._session() as session:
                order = await self.ctx.orders.load(session, intent.order_id)
            return FinalizeResult(
                RecordOutcome.DUPLICATE, order.order_id, order.status, order.payment_status, event.outcome
            )

    async def _resolve_intent(self, session, event: VerifiedEvent) -> GatewayIntent:
        intents = self.ctx.intents
        intent = None
        if event.gateway_intent_id:
            intent = await intents.get_by_gateway_ref(session, event.gateway, event.gateway_intent_id)
        if intent is None and event.outcome is EntryKind.REFUNDED and event.gateway_payment_id:
            capture = await self.ctx.ledger.find_capture_by_payment(session, event.gateway, event.gateway_payment_id)
            if capture is not None:
                intent = await intents.get_by_gateway_ref(session, event.gateway, capture.gateway_intent_id)
        if intent is None and not event.gateway_intent_id and event.order_id:
            intent = await intents.open_for_order(session, event.order_id, event.gateway)
            if intent is None:
                # 再送された確認は閉じたインテントに解決し、台帳で DUPLICATE として扱う
                intent = await intents.latest_for_order(session, event.order_id, event.gateway)
        if intent is None:
            raise UnknownOrder(
                f"No {event.gateway} intent matches {event.gateway_intent_id or event.gateway_payment_id or event.order_id}"
            )
        if event.order_id and event.order_id != intent.order_id:
            logger.warning(
                "Event %s/%s names order %s but intent belongs to %s",
                event.gateway, event.gateway_event_id, event.order_id, intent.order_id,
            )
            raise PayloadMalformed("Callback order does not match the payment intent")
        return intent

    async def _apply(self, event: VerifiedEvent, intent: GatewayIntent) -> FinalizeResult:
        kind = event.outcome
        published: list[DomainEvent] = []

        async with self._locked(intent.order_id) as session:
            now = self.ctx.clock.now()
            order = await self.ctx.orders.load(session, intent.order_id)

            def result(outcome: RecordOutcome, reason: str = "") -> FinalizeResult:
                return FinalizeResult(outcome, order.order_id, order.status, order.payment_status, kind, reason)

            if await self.ctx.ledger.get_event(session, event.gateway, event.gateway_event_id):
                logger.info("Duplicate %s event %s for order %s", event.gateway, event.gateway_event_id, order.order_id)
                return result(RecordOutcome.DUPLICATE)

            current = await self.ctx.intents.get_by_gateway_ref(session, intent.gateway, intent.gateway_intent_id)
            accepting = INTENT_ACCEPTS.get(kind)
            if accepting is not None and current.status not in accepting:
                reason = f"{kind.value} for {current.status.value} intent {intent.gateway_intent_id}"
                logger.warning("Rejected %s event %s for order %s: %s",
                               event.gateway, event.gateway_event_id, order.order_id, reason)
                return result(RecordOutcome.REJECTED, reason)

            amount = event.amount if event.amount is not None else intent.amount
            currency = (event.currency or intent.currency).upper()
            if kind is EntryKind.CAPTURED and (amount != intent.amount or currency != intent.currency):
                reason = f"captured {amount} {currency} does not match intent {intent.amount} {intent.currency}"
                logger.warning("Rejected capture %s for order %s: %s", event.gateway_event_id, order.order_id, reason)
                return result(RecordOutcome.REJECTED, reason)

            recorded = await self.ctx.ledger.record(
                session,
                LedgerEntry(
                    entry_id=str(uuid.uuid4()),
                    order_id=order.order_id,
                    gateway=event.gateway,
                    gateway_intent_id=intent.gateway_intent_id,
                    gateway_event_id=event.gateway_event_id,
                    gateway_payment_id=event.gateway_payment_id,
                    kind=kind,
                    amount=amount,
                    currency=currency,
                    raw_payload_hash=event.raw_payload_hash,
                    received_at=now,
                ),
            )
            if recorded.outcome is not RecordOutcome.APPLIED:
                return result(recorded.outcome, recorded.reason)

            changes = {"gateway": intent.gateway} if kind in (EntryKind.CAPTURED, EntryKind.AUTHORIZED) else {}
            order = await self._set_payment_status(session, order, now, **changes)
            published.extend(await self._after_payment_event(session, order, intent, kind, amount, currency, now))

        logger.info(
            "Applied %s %s for order %s: payment_status=%s",
            event.gateway, kind.value, order.order_id, order.payment_status.value,
        )
        await self._publish(published)
        return FinalizeResult(RecordOutcome.APPLIED, order.order_id, order.status, order.payment_status, kind)

    async def _after_payment_event(
        self,
        session,
        order: Order,
        intent: GatewayIntent,
        kind: EntryKind,
        amount: int,
        currency: str,
        now: datetime,
    ) -> list[DomainEvent]:
        """インテントの状態と在庫を台帳イベントに合わせ、発行するイベントを返す。"""
        intents = self.ctx.intents
        inventory = self.ctx.inventory
        base = {"order_id": order.order_id, "timestamp": now, "gateway": intent.gateway}

        if kind is EntryKind.CAPTURED:
            await intents.close(session, intent.intent_id, IntentStatus.COMPLETED)
            if order.status in (OrderStatus.CANCELLED, OrderStatus.DECLINED):
                logger.warning("Order %s is %s but payment was captured; refund required",
                               order.order_id, order.status.value)
                return [PaymentSettled(**base, amount=amount, currency=currency)]
            shortfall = await self._commit_stock(session, order, now)
            return [PaymentSettled(**base, amount=amount, currency=currency), *shortfall]

        if kind is EntryKind.AUTHORIZED:
            if order.is_terminal:
                return [PaymentAuthorized(**base, amount=amount, currency=currency)]
            if order.is_postpayment:
                await intents.close(session, intent.intent_id, IntentStatus.COMPLETED)
                shortfall = await self._commit_stock(session, order, now)
                return [PaymentAuthorized(**base, amount=amount, currency=currency), *shortfall]
            # 捕捉までの間に引き当てが失効しないよう、オーソリの保持期間まで延ばす
            until = now + timedelta(days=self.ctx.settings.authorization_hold_days)
            await inventory.hold(session, order.order_id, order.reservation_lines(), until, now)
            return [PaymentAuthorized(**base, amount=amount, currency=currency)]

        if kind in (EntryKind.FAILED, EntryKind.VOIDED):
            await intents.close(session, intent.intent_id, IntentStatus.CANCELLED)
            latest = await intents.latest_for_order(session, order.order_id)
            retrying = latest is not None and latest.intent_id != intent.intent_id and latest.is_current(now)
            if order.payment_status in (PaymentStatus.UNPAID, PaymentStatus.FAILED) and not retrying:
                await inventory.release(session, order.order_id)
            if kind is EntryKind.FAILED:
                return [PaymentFailed(**base, reason=f"{intent.gateway} reported the payment as failed")]
            return []

        if kind is EntryKind.REFUNDED:
            entries = await self.ctx.ledger.list_for_order(session, order.order_id)
            return [PaymentRefunded(**base, amount=amount, currency=currency, net_settled=net_settled(entries))]
        return []

    # ── complete_return ───────────────────────────

    async def complete_return(self, gateway: str, body: bytes, headers) -> ReturnResult:
        """顧客のリダイレクトを finalize し、表示するページを決める。"""
        settings = self.ctx.settings
        try:
            result = await self.finalize(gateway, body, headers)
        except (UnknownEvent, GatewayUnavailable) as e:
            logger.info("Return from %s is still pending: %s", gateway, e)
            return ReturnResult(None, settings.pending_url)
        except StorefrontError as e:
            logger.warning("Return from %s failed: %s", gateway, e)
            return ReturnResult(None, f"{settings.failure_url}?{urlencode({'error': e.code})}")

        query = urlencode({"order_id": result.order_id})
        if result.outcome is RecordOutcome.REJECTED or result.kind in (EntryKind.FAILED, EntryKind.VOIDED):
            return ReturnResult(result, f"{settings.failure_url}?{query}")
        if result.payment_status in (PaymentStatus.PAID, PaymentStatus.AUTHORIZED):
            return ReturnResult(result, f"{settings.success_url}?{query}")
        if result.payment_status is PaymentStatus.FAILED:
            return ReturnResult(result, f"{settings.failure_url}?{query}")
        return ReturnResult(result, f"{settings.pending_url}?{query}")

    # ── 注文ステータスの遷移 ──────────────────────

    async def transition(
        self,
        order_id: str,
        to: OrderStatus,
        actor: Actor,
        note: str = "",
        shipment: Shipment | None = None,
    ) -> Order:
        """
        状態遷移と副作用を 1 トランザクションで行う。

          cancelled / declined : 在庫を解放 (確定済みなら戻す)、OrderCancelled
          shipped              : 追跡情報を設定、OrderShipped
          delivered (代引き)   : 現金回収を captured として台帳に記録
        """
        published: list[DomainEvent] = []
        async with self._locked(order_id) as session:
            now = self.ctx.clock.now()
            order = await self.ctx.orders.load(session, order_id)
            order.check_transition(to, actor)

            if to is OrderStatus.DELIVERED and order.is_postpayment:
                order = await self._record_cash_collection(session, order, now, published)

            updated = order.transition(to, actor, now, note, shipment)
            updated = await self.ctx.orders.transition(session, order, updated)

            change = {
                "order_id": order_id,
                "timestamp": now,
                "from_status": order.status.value,
                "to_status": to.value,
                "actor": actor.value,
                "note": note,
            }
            if to in (OrderStatus.CANCELLED, OrderStatus.DECLINED):
                await self.ctx.inventory.release(session, order_id)
                await self.ctx.inventory.restock(session, order_id, now)
                for intent in await self.ctx.intents.list_for_order(session, order_id):
                    await self.ctx.intents.close(session, intent.intent_id, IntentStatus.CANCELLED)
                published.append(OrderCancelled(**change))
            elif to is OrderStatus.SHIPPED:
                tracking = updated.tracking
                published.append(
                    OrderShipped(
                        **change,
                        tracking_number=tracking.tracking_number,
                        carrier=tracking.carrier,
                        estimated_delivery=tracking.estimated_delivery,
                    )
                )
            else:
                published.append(OrderStatusChanged(**change))

        logger.info("Order %s: %s -> %s by %s", order_id, order.status.value, to.value, actor.value)
        await self._publish(published)
        return updated

    async def _record_cash_collection(self, session, order: Order, now: datetime, published: list) -> Order:
        intent = await self.ctx.intents.latest_for_order(session, order.order_id, order.gateway)
        if intent is None:
            raise IllegalTransition(f"Order {order.order_number} has no cash-on-delivery intent")
        recorded = await self.ctx.ledger.record(
            session,
            LedgerEntry(
                entry_id=str(uuid.uuid4()),
                order_id=order.order_id,
                gateway=intent.gateway,
                gateway_intent_id=intent.gateway_intent_id,
                gateway_event_id=collected_event_id(intent.gateway_intent_id),
                kind=EntryKind.CAPTURED,
                amount=intent.amount,
                currency=intent.currency,
                raw_payload_hash=payload_hash(f"{order.order_id}:delivered:{now.isoformat()}".encode()),
                received_at=now,
            ),
        )
        if recorded.outcome is RecordOutcome.REJECTED:
            raise Rejected(f"Cannot record cash collection: {recorded.reason}")
        if recorded.outcome is RecordOutcome.APPLIED:
            await self.ctx.intents.close(session, intent.intent_id, IntentStatus.COMPLETED)
            published.extend(await self._commit_stock(session, order, now))
            published.append(
                PaymentSettled(
                    order_id=order.order_id,
                    timestamp=now,
                    gateway=intent.gateway,
                    amount=intent.amount,
                    currency=intent.currency,
                )
            )
        return await self._set_payment_status(session, order, now)

    async def bulk_transition(
        self, order_ids: list[str], to: OrderStatus, actor: Actor = Actor.ADMIN, note: str = ""
    ) -> list[dict]:
        """複数の注文を順に遷移させ、注文ごとの成否を返す。"""
        if to not in BULK_TARGETS:
            raise IllegalTransition(f"Bulk update cannot move orders to {to.value}")
        results = []
        for order_id in order_ids:
            try:
                order = await self.transition(order_id, to, actor, note)
            except StorefrontError as e:
                results.append({"order_id": order_id, "ok": False, "error": e.code, "detail": e.message})
            else:
                results.append({"order_id": order_id, "ok": True, "status": order.status.value})
        return results

    # ── 返金 ──────────────────────────────────────

    async def refund(self, order_id: str, amount: int | None = None, reason: str = "") -> RefundHandle:
        """
        返金を依頼する。台帳はゲートウェイからの返金イベントを検証したときに更新される。
        amount を省略すると未返金の全額。
        """
        async with self._session() as session:
            order = await self.ctx.orders.load(session, order_id)
            entries = await self.ctx.ledger.list_for_order(session, order_id)

        capture = next((e for e in entries if e.kind is EntryKind.CAPTURED), None)
        if capture is None:
            raise IllegalTransition(f"Order {order.order_number} has no captured payment to refund")
        remaining = net_settled(entries)
        amount = remaining if amount is None else amount
        if amount <= 0:
            raise InvalidAmount(f"Refund amount must be positive, got {amount}")
        if amount > remaining:
            raise InvalidAmount(f"Refund of {amount} exceeds the refundable balance {remaining}")

        adapter = self.ctx.gateways.get(capture.gateway)
        handle = await adapter.refund(
            capture.gateway_intent_id,
            capture.gateway_payment_id or capture.gateway_intent_id,
            amount,
            capture.currency,
            reason or "Requested by merchant",
        )
        logger.info(
            "Refund %s requested for order %s: %d %s (%s)",
            handle.refund_id, order_id, amount, capture.currency, handle.status,
        )
        return handle

    # ── 期限切れの掃除 ────────────────────────────

    async def sweep(self) -> SweepReport:
        """
        期限切れの open なインテントを expired にし、捕捉のない注文の引き当てを解放する。
        何度実行しても結果は変わらない。
        """
        report = SweepReport()
        now = self.ctx.clock.now()
        async with self._session() as session:
            stale = await self.ctx.intents.list_expired(session, now)

        released: set[str] = set()
        for intent in stale:
            async with self._locked(intent.order_id) as session:
                if not await self.ctx.intents.close(session, intent.intent_id, IntentStatus.EXPIRED):
                    continue
                report.expired_intents.append(intent.intent_id)

                entries = await self.ctx.ledger.list_for_order(session, intent.order_id)
                if derive_payment_status(entries) in LOCKED_IN_PAYMENT:
                    continue
                latest = await self.ctx.intents.latest_for_order(session, intent.order_id)
                if latest is not None and latest.is_current(now):
                    continue
                if await self.ctx.inventory.release(session, intent.order_id):
                    released.add(intent.order_id)

        async with self._session() as session:
            released.update(
                await self.ctx.inventory.release_expired(session, now, [s.value for s in LOCKED_IN_PAYMENT])
            )

        report.released_reservations = sorted(released)
        if report.expired_intents or report.released_reservations:
            logger.info(
                "Sweep expired %d intent(s), released reservations for %d order(s)",
                len(report.expired_intents), len(report.released_reservations),
            )
        return report
