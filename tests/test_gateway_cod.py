import pytest

from storefront.errors import PayloadMalformed, Unsupported, UnsupportedCurrency
from storefront.payment.gateways import CodAdapter
from storefront.payment.gateways.cod import collected_event_id
from storefront.payment.ledger import EntryKind


async def test_intent_is_issued_locally():
    handle = await CodAdapter().create_intent("o1", 63882, "INR", "https://shop.test/r", {})
    assert handle.gateway_intent_id.startswith("cod_")
    assert handle.client_continuation["order_id"] == "o1"


async def test_unsupported_currency():
    with pytest.raises(UnsupportedCurrency):
        await CodAdapter().create_intent("o1", 1000, "GBP", "https://shop.test/r", {})


async def test_confirmation_authorizes_order():
    event = await CodAdapter().verify_callback(b'{"order_id": "o1"}', {"content-type": "application/json"})
    assert event.outcome is EntryKind.AUTHORIZED
    assert event.gateway_event_id == "cod:o1:authorized"
    assert event.order_id == "o1"
    assert event.amount is None


async def test_confirmation_needs_order_id():
    with pytest.raises(PayloadMalformed):
        await CodAdapter().verify_callback(b"{}", {"content-type": "application/json"})


async def test_refund_is_unsupported():
    with pytest.raises(Unsupported):
        await CodAdapter().refund("cod_1", "cod_1", 100, "INR", "")


def test_collected_event_id():
    assert collected_event_id("cod_abc") == "cod_abc:collected"
