"""
Storefront — FastAPI エントリーポイント

支払いと注文ライフサイクルの HTTP インターフェース。

┌──────────┐  POST /orders           ┌──────────────┐
│ Frontend │ ──────────────────────▶ │  Storefront  │
│          │  POST /payments/begin   │              │──▶ Razorpay / Stripe / PayPal
└──────────┘                         │  Coordinator │
      ▲       /payments/return/{gw}  │              │◀── Webhook /payments/verify/{gw}
      └──── 303 success / failed ─── └──────┬───────┘
                                            │ storefront_events (Redis Pub/Sub)
                                            ▼
                                    出荷・メール・分析
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import InterfaceError, OperationalError

from . import db
from .config import Settings, configure_logging
from .context import CoreContext, build_context
from .errors import Bug, Rejected, StorefrontError, UnknownOrder
from .inventory import queries as inventory_queries
from .order import commands
from .order import queries as order_queries
from .order.aggregate import Actor, Customer, OrderStatus, Shipment
from .payment.coordinator import PaymentCoordinator
from .payment.ledger import RecordOutcome
from .payment.sweeper import run_sweeper

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class CheckoutLine(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)


class PlaceOrderRequest(BaseModel):
    customer: Customer
    shipping_address: dict
    lines: list[CheckoutLine] = Field(min_length=1)
    gateway: str | None = None
    discount: int = Field(default=0, ge=0)


class CancelRequest(BaseModel):
    reason: str = ""


class BeginPaymentRequest(BaseModel):
    order_id: str
    gateway: str


class TransitionRequest(BaseModel):
    to: OrderStatus
    note: str = ""
    actor: Actor = Actor.ADMIN
    # shipped のときだけ指定できる
    shipment: Shipment | None = None


class NotesRequest(BaseModel):
    admin_notes: str | None = None
    internal_notes: str | None = None


class BulkTransitionRequest(BaseModel):
    order_ids: list[str] = Field(min_length=1)
    to: OrderStatus
    note: str = ""


class RefundRequest(BaseModel):
    amount: int | None = Field(default=None, gt=0)
    reason: str = ""


class StockRequest(BaseModel):
    name: str
    price: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    on_hand: int = Field(ge=0)


# ── Application ──────────────────────────────────


def create_app(settings: Settings | None = None, context: CoreContext | None = None) -> FastAPI:
    """
    アプリケーションを組み立てる。

    context を渡した場合はそれを使い、lifespan では組み立て・破棄をしない(テスト用)。
    """
    settings = settings or (context.settings if context else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_context = context is None
        if owns_context:
            configure_logging(settings.log_level)
            app.state.ctx = build_context(settings)
            app.state.coordinator = PaymentCoordinator(app.state.ctx)
            await db.init_schema(app.state.ctx.engine)

        shutdown_event = asyncio.Event()
        sweeper_task = None
        if settings.sweep_interval_seconds > 0:
            sweeper_task = asyncio.create_task(
                run_sweeper(app.state.coordinator, shutdown_event, settings.sweep_interval_seconds)
            )
        yield
        shutdown_event.set()
        if sweeper_task is not None:
            sweeper_task.cancel()
            try:
                await sweeper_task
            except asyncio.CancelledError:
                pass
        if owns_context:
            await app.state.ctx.aclose()

    app = FastAPI(title="Storefront Payments", lifespan=lifespan)
    if context is not None:
        app.state.ctx = context
        app.state.coordinator = PaymentCoordinator(context)

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.code})

    @app.exception_handler(OperationalError)
    @app.exception_handler(InterfaceError)
    async def store_error_handler(request: Request, exc: Exception):
        logger.exception("Database unavailable during %s %s", request.method, request.url.path)
        return JSONResponse(status_code=503, content={"detail": "Database unavailable", "error": "store_unavailable"})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error during %s %s", request.method, request.url.path)
        bug = Bug("Internal error")
        return JSONResponse(status_code=bug.status_code, content={"detail": bug.message, "error": bug.code})

    _register_routes(app)
    return app


def _ctx(request: Request) -> CoreContext:
    return request.app.state.ctx


def _coordinator(request: Request) -> PaymentCoordinator:
    return request.app.state.coordinator


def _register_routes(app: FastAPI) -> None:
    # ── 注文 ─────────────────────────────────────

    @app.post("/orders", status_code=201)
    async def place_order(req: PlaceOrderRequest, request: Request):
        """チェックアウト(在庫引き当てを含む)"""
        ctx = _ctx(request)
        order = await commands.place_order(
            ctx,
            req.customer,
            req.shipping_address,
            [(line.product_id, line.quantity) for line in req.lines],
            gateway=req.gateway,
            discount=req.discount,
        )
        return order_queries.order_view(order)

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str, request: Request):
        async with _ctx(request).session_factory() as session:
            order = await order_queries.get_order(session, order_id)
        if not order:
            raise UnknownOrder(f"Order {order_id} not found")
        return order

    @app.get("/orders/track/{order_number}")
    async def track_order(order_number: str, email: str, request: Request):
        """注文番号 + メールアドレスでの配送追跡"""
        async with _ctx(request).session_factory() as session:
            tracked = await order_queries.track_order(session, order_number, email)
        if not tracked:
            raise UnknownOrder(f"Order {order_number} not found")
        return tracked

    @app.post("/orders/{order_id}/cancel")
    async def cancel_order(order_id: str, req: CancelRequest, request: Request):
        """顧客によるキャンセル"""
        order = await _coordinator(request).transition(
            order_id, OrderStatus.CANCELLED, Actor.CUSTOMER, req.reason or "Cancelled by customer"
        )
        return {"order_id": order.order_id, "status": order.status.value}

    # ── 支払い ───────────────────────────────────

    @app.get("/payments/methods")
    async def payment_methods(request: Request, currency: str | None = None):
        """利用可能な支払い方法"""
        return {"methods": _ctx(request).gateways.describe_all(currency)}

    @app.post("/payments/begin")
    async def begin_payment(req: BeginPaymentRequest, request: Request):
        result = await _coordinator(request).begin_payment(req.order_id, req.gateway)
        return {
            "intent_id": result.intent.intent_id,
            "gateway": result.intent.gateway,
            "client_continuation": result.client_continuation,
            "expires_at": result.expires_at.isoformat(),
        }

    @app.post("/payments/verify/{gateway}")
    async def verify_payment(gateway: str, request: Request):
        """ゲートウェイからの Webhook。生のボディで署名を検証する。"""
        body = await request.body()
        result = await _coordinator(request).finalize(gateway, body, dict(request.headers))
        if result.outcome is RecordOutcome.REJECTED:
            raise Rejected(result.reason)
        return {
            "outcome": result.outcome.value,
            "order_id": result.order_id,
            "status": result.status.value,
            "payment_status": result.payment_status.value,
        }

    @app.api_route("/payments/return/{gateway}", methods=["GET", "POST"])
    async def payment_return(gateway: str, request: Request):
        """顧客のリダイレクト。結果に応じたページへ 303 で転送する。"""
        if request.method == "GET":
            body = request.url.query.encode()
            headers = {k: v for k, v in request.headers.items() if k.lower() != "content-type"}
        else:
            body = await request.body()
            headers = dict(request.headers)
        returned = await _coordinator(request).complete_return(gateway, body, headers)
        return RedirectResponse(returned.redirect_url, status_code=303)

    # ── 管理者 ───────────────────────────────────

    @app.get("/admin/orders")
    async def admin_list_orders(
        request: Request,
        status: str | None = None,
        payment_status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ):
        async with _ctx(request).session_factory() as session:
            return await order_queries.list_orders(session, status, payment_status, min(limit, 200), offset)

    @app.post("/admin/orders/bulk/transition")
    async def admin_bulk_transition(req: BulkTransitionRequest, request: Request):
        results = await _coordinator(request).bulk_transition(req.order_ids, req.to, Actor.ADMIN, req.note)
        return {
            "updated": sum(1 for r in results if r["ok"]),
            "failed": sum(1 for r in results if not r["ok"]),
            "results": results,
        }

    @app.post("/admin/orders/{order_id}/transition")
    async def admin_transition(order_id: str, req: TransitionRequest, request: Request):
        order = await _coordinator(request).transition(order_id, req.to, req.actor, req.note, req.shipment)
        return {
            "order_id": order.order_id,
            "status": order.status.value,
            "payment_status": order.payment_status.value,
            "tracking": order.tracking.model_dump(mode="json") if order.tracking else None,
        }

    @app.patch("/admin/orders/{order_id}/notes")
    async def admin_notes(order_id: str, req: NotesRequest, request: Request):
        order = await commands.update_notes(_ctx(request), order_id, req.admin_notes, req.internal_notes)
        return {"order_id": order.order_id, "notes": order.notes.model_dump()}

    @app.post("/admin/orders/{order_id}/refund", status_code=202)
    async def admin_refund(order_id: str, req: RefundRequest, request: Request):
        """返金を依頼する。台帳への反映はゲートウェイの返金イベント受信時。"""
        handle = await _coordinator(request).refund(order_id, req.amount, req.reason)
        return {"refund_id": handle.refund_id, "status": handle.status, "amount": handle.amount}

    @app.get("/admin/orders/{order_id}/ledger")
    async def admin_ledger(order_id: str, request: Request):
        async with _ctx(request).session_factory() as session:
            return await order_queries.ledger_view(session, order_id)

    @app.get("/admin/payments/stats")
    async def admin_payment_stats(request: Request):
        async with _ctx(request).session_factory() as session:
            return await order_queries.payment_stats(session)

    # ── 在庫 ─────────────────────────────────────

    @app.get("/products")
    async def list_products(request: Request):
        ctx = _ctx(request)
        async with ctx.session_factory() as session:
            return await inventory_queries.list_products(session, ctx.clock.now())

    @app.put("/admin/products/{product_id}/stock")
    async def set_stock(product_id: str, req: StockRequest, request: Request):
        ctx = _ctx(request)
        now = ctx.clock.now()
        async with ctx.session_factory() as session:
            async with session.begin():
                await ctx.inventory.set_stock(
                    session, product_id, req.name, req.price, req.currency, req.on_hand, now
                )
            return await inventory_queries.get_product(session, product_id, now)

    @app.get("/health")
    async def health(request: Request):
        return {"status": "ok", "service": "storefront", "gateways": _ctx(request).gateways.names()}


app = create_app()
