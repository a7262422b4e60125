from datetime import datetime, timedelta, timezone

from storefront.payment.ledger import (
    EntryKind,
    LedgerEntry,
    PaymentStatus,
    check_sequence,
    derive_payment_status,
    net_settled,
)

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def entry(kind, amount=20000, intent="order_1", event=None, n=0):
    return LedgerEntry(
        entry_id=f"e{n}-{kind.value}",
        order_id="o1",
        gateway="razorpay",
        gateway_intent_id=intent,
        gateway_event_id=event or f"{intent}:{kind.value}:{n}",
        kind=kind,
        amount=amount,
        currency="INR",
        raw_payload_hash="0" * 64,
        received_at=T0 + timedelta(seconds=n),
    )


def test_capture_requires_intent():
    assert check_sequence([], entry(EntryKind.CAPTURED)) == "capture without intent"
    assert check_sequence([entry(EntryKind.INTENT_CREATED)], entry(EntryKind.CAPTURED, n=1)) is None


def test_authorized_then_captured_is_allowed():
    history = [entry(EntryKind.INTENT_CREATED), entry(EntryKind.AUTHORIZED, n=1)]
    assert check_sequence(history, entry(EntryKind.CAPTURED, n=2)) is None
    assert check_sequence(history, entry(EntryKind.AUTHORIZED, n=3)) == "intent already authorized"


def test_only_one_terminal_per_intent():
    history = [entry(EntryKind.INTENT_CREATED), entry(EntryKind.FAILED, n=1)]
    assert check_sequence(history, entry(EntryKind.CAPTURED, n=2)) == "intent already settled"
    assert check_sequence(history, entry(EntryKind.VOIDED, n=2)) == "intent already settled"


def test_second_capture_on_another_intent_is_rejected():
    history = [
        entry(EntryKind.INTENT_CREATED, intent="order_1"),
        entry(EntryKind.CAPTURED, intent="order_1", n=1),
        entry(EntryKind.INTENT_CREATED, intent="order_2", n=2),
    ]
    assert check_sequence(history, entry(EntryKind.CAPTURED, intent="order_2", n=3)) == "order already captured"


def test_refunds_never_exceed_capture():
    history = [
        entry(EntryKind.INTENT_CREATED),
        entry(EntryKind.CAPTURED, amount=200, n=1),
        entry(EntryKind.REFUNDED, amount=80, n=2),
    ]
    assert check_sequence(history, entry(EntryKind.REFUNDED, amount=120, n=3)) is None
    reason = check_sequence(history, entry(EntryKind.REFUNDED, amount=121, n=3))
    assert reason.startswith("refund exceeds captured amount")


def test_refund_without_capture_is_rejected():
    assert check_sequence([entry(EntryKind.INTENT_CREATED)], entry(EntryKind.REFUNDED, n=1)) == "refund without capture"


def test_intent_created_only_once():
    assert check_sequence([entry(EntryKind.INTENT_CREATED)], entry(EntryKind.INTENT_CREATED, n=1))


def test_payment_status_projection():
    created = entry(EntryKind.INTENT_CREATED, amount=200)
    assert derive_payment_status([]) is PaymentStatus.UNPAID
    assert derive_payment_status([created]) is PaymentStatus.UNPAID
    assert derive_payment_status([created, entry(EntryKind.AUTHORIZED, n=1)]) is PaymentStatus.AUTHORIZED
    assert derive_payment_status([created, entry(EntryKind.FAILED, n=1)]) is PaymentStatus.FAILED

    captured = [created, entry(EntryKind.CAPTURED, amount=200, n=1)]
    assert derive_payment_status(captured) is PaymentStatus.PAID
    partial = captured + [entry(EntryKind.REFUNDED, amount=80, n=2)]
    assert derive_payment_status(partial) is PaymentStatus.PARTIALLY_REFUNDED
    full = partial + [entry(EntryKind.REFUNDED, amount=120, n=3)]
    assert derive_payment_status(full) is PaymentStatus.REFUNDED


def test_void_after_authorization_returns_to_unpaid():
    entries = [
        entry(EntryKind.INTENT_CREATED),
        entry(EntryKind.AUTHORIZED, n=1),
        entry(EntryKind.VOIDED, n=2),
    ]
    assert derive_payment_status(entries) is PaymentStatus.UNPAID


def test_failure_on_old_intent_does_not_undo_payment():
    entries = [
        entry(EntryKind.INTENT_CREATED, intent="order_1"),
        entry(EntryKind.INTENT_CREATED, intent="order_2", n=1),
        entry(EntryKind.CAPTURED, intent="order_2", n=2),
        entry(EntryKind.FAILED, intent="order_1", n=3),
    ]
    assert derive_payment_status(entries) is PaymentStatus.PAID


def test_net_settled():
    entries = [
        entry(EntryKind.INTENT_CREATED, amount=200),
        entry(EntryKind.CAPTURED, amount=200, n=1),
        entry(EntryKind.REFUNDED, amount=80, n=2),
    ]
    assert net_settled(entries) == 120
