import pytest

from helpers import (
    RAZORPAY_KEY_ID,
    RAZORPAY_KEY_SECRET,
    RAZORPAY_WEBHOOK_SECRET,
    FakeRazorpay,
    FrozenClock,
)
from storefront import db
from storefront.bus import InMemoryEventBus
from storefront.config import Settings
from storefront.context import LocalOrderLocks, build_context
from storefront.order import commands
from storefront.order.aggregate import Customer
from storefront.payment.coordinator import PaymentCoordinator
from storefront.payment.gateways import AdapterRegistry, CodAdapter, RazorpayAdapter

PRODUCTS = [
    # product_id, name, price, currency, on_hand
    ("tshirt", "Logo T-Shirt", 49900, "INR", 5),
    ("mug", "Coffee Mug", 29900, "INR", 2),
    ("poster", "Poster", 1500, "USD", 10),
]


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}",
        public_base_url="https://shop.test",
        frontend_url="https://www.shop.test",
        razorpay_key_id=RAZORPAY_KEY_ID,
        razorpay_key_secret=RAZORPAY_KEY_SECRET,
        razorpay_webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        sweep_interval_seconds=0,
    )


@pytest.fixture
def razorpay_api():
    return FakeRazorpay()


@pytest.fixture
def registry(razorpay_api):
    registry = AdapterRegistry()
    registry.register(
        RazorpayAdapter(
            RAZORPAY_KEY_ID,
            RAZORPAY_KEY_SECRET,
            RAZORPAY_WEBHOOK_SECRET,
            http_client=razorpay_api.client(),
        )
    )
    registry.register(CodAdapter())
    return registry


@pytest.fixture
async def ctx(settings, clock, registry):
    engine = db.create_engine(settings.database_url)
    await db.init_schema(engine)
    context = build_context(
        settings,
        engine=engine,
        clock=clock,
        bus=InMemoryEventBus(),
        locks=LocalOrderLocks(),
        registry=registry,
    )
    async with context.session_factory() as session:
        async with session.begin():
            for product_id, name, price, currency, on_hand in PRODUCTS:
                await context.inventory.set_stock(session, product_id, name, price, currency, on_hand, clock.now())
    yield context
    await context.aclose()


@pytest.fixture
def coordinator(ctx):
    return PaymentCoordinator(ctx)


@pytest.fixture
def make_order(ctx):
    async def make(lines=(("tshirt", 1),), gateway=None, discount=0):
        return await commands.place_order(
            ctx,
            Customer(name="Asha", email="asha@example.com", phone="+91-9000000000"),
            {"line1": "12 MG Road", "city": "Bengaluru", "postal_code": "560001", "country": "IN"},
            list(lines),
            gateway=gateway,
            discount=discount,
        )

    return make


@pytest.fixture
def on_hand(ctx):
    async def read(product_id):
        async with ctx.session_factory() as session:
            row = await ctx.inventory.get_product(session, product_id)
            return row.on_hand

    return read


@pytest.fixture
def available(ctx, clock):
    async def read(product_id):
        async with ctx.session_factory() as session:
            return await ctx.inventory.available(session, product_id, clock.now())

    return read
