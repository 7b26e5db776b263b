import json
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import WEBHOOK_SECRET, make_order, order_item
from errors import (
    ConcurrentUpdateError,
    InvalidStatusTransition,
    InvalidStatusValue,
    ItemAlreadyCancelled,
    ItemNotFound,
    RefundGatewayError,
    SignatureMismatch,
    ValidationFailed,
)
from gateway import sign
from lifecycle import apply_cancellation, find_item
from schemas import (
    GatewayRefs,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Refund,
    RefundStatus,
)


def assert_summary_consistent(order):
    s = order.summary
    assert s.total_amount == s.items_price - s.discount


def paid_order(items=None, **fields):
    items = items or [order_item("A", "100", 1), order_item("B", "50", 2, offer_price="40")]
    return make_order(
        items,
        payment_method=PaymentMethod.gateway,
        payment_status=PaymentStatus.paid,
        gateway=GatewayRefs(order_id="order_9", payment_id="pay_9", signature="sig"),
        **fields,
    )


def webhook(lifecycle, event):
    body = json.dumps(event).encode()
    return lifecycle.handle_webhook(body, sign(WEBHOOK_SECRET, body))


# Pure cancellation

def test_cancel_one_item_recomputes_summary(two_item_order):
    result = apply_cancellation(two_item_order, "A")

    summary = result.order.summary
    assert summary.items_price == Decimal("100")
    assert summary.discount == Decimal("20")
    assert summary.total_amount == Decimal("80")
    assert result.refund_amount == Decimal("100")
    assert result.fully_cancelled is False
    assert result.order.status == OrderStatus.placed
    assert_summary_consistent(result.order)


def test_apply_cancellation_leaves_input_untouched(two_item_order):
    apply_cancellation(two_item_order, "A")
    assert not any(i.cancelled for i in two_item_order.items)
    assert two_item_order.summary.total_amount == Decimal("180")


def test_cancelling_last_item_cancels_order(two_item_order):
    first = apply_cancellation(two_item_order, "A").order
    result = apply_cancellation(first, "B")
    assert result.fully_cancelled
    assert result.order.status == OrderStatus.cancelled
    assert result.order.cancelled_at is not None
    assert result.refund_amount == Decimal("80")
    assert result.order.summary.total_amount == Decimal("0")
    assert_summary_consistent(result.order)


def test_cancel_whole_order_refunds_everything(two_item_order):
    result = apply_cancellation(two_item_order)
    assert all(i.cancelled for i in result.order.items)
    assert result.order.status == OrderStatus.cancelled
    assert result.refund_amount == Decimal("180")
    assert_summary_consistent(result.order)


def test_item_cannot_be_cancelled_twice(two_item_order):
    once = apply_cancellation(two_item_order, "A").order
    with pytest.raises(ItemAlreadyCancelled):
        apply_cancellation(once, "A")


def test_unknown_item(two_item_order):
    with pytest.raises(ItemNotFound):
        apply_cancellation(two_item_order, "Z")


@pytest.mark.parametrize("status", [OrderStatus.shipped, OrderStatus.delivered, OrderStatus.cancelled])
def test_cancel_only_from_placed_or_confirmed(two_item_order, status):
    order = two_item_order.model_copy(update={"status": status})
    with pytest.raises(InvalidStatusTransition):
        apply_cancellation(order)
    with pytest.raises(InvalidStatusTransition):
        apply_cancellation(order, "A")


def test_fully_cancelled_order_cannot_be_cancelled_again(two_item_order):
    cancelled = apply_cancellation(two_item_order).order
    with pytest.raises(InvalidStatusTransition):
        apply_cancellation(cancelled)


def test_find_item_falls_back_to_product_id():
    items = [
        order_item("1", "10", 1, product_id="p").model_copy(update={"cancelled": True}),
        order_item("2", "10", 1, product_id="p"),
    ]
    index, item = find_item(make_order(items), "p")
    assert (index, item.item_id) == (1, "2")


# Driver

def test_cod_item_cancellation_issues_no_refund(lifecycle, store, gateway, two_item_order):
    store.insert("order", two_item_order)
    result = lifecycle.cancel_item(two_item_order.id, "A")

    stored = store.find_by_id("order", two_item_order.id, Order)
    assert stored.items[0].cancelled
    assert stored.summary.total_amount == Decimal("80")
    assert stored.refunds == []
    assert stored.payment_status == PaymentStatus.pending
    assert gateway.refunds == []
    assert result.refund is None


def test_partial_then_full_refund(lifecycle, store, gateway, notifier):
    order = paid_order()
    store.insert("order", order)

    lifecycle.cancel_item(order.id, "A")
    stored = store.find_by_id("order", order.id, Order)
    assert gateway.refunds[0]["payment_id"] == "pay_9"
    assert gateway.refunds[0]["amount"] == Decimal("100")
    assert stored.payment_status == PaymentStatus.partial_refunded
    assert stored.refunds[0].refund_id == "rfnd_1"
    assert stored.refunds[0].status == RefundStatus.pending
    assert stored.refunds[0].amount == Decimal("100")

    lifecycle.cancel_item(order.id, "B")
    stored = store.find_by_id("order", order.id, Order)
    assert gateway.refunds[1]["amount"] == Decimal("80")
    assert stored.payment_status == PaymentStatus.refunded
    assert stored.status == OrderStatus.cancelled
    assert [r.refund_id for r in stored.refunds] == ["rfnd_1", "rfnd_2"]
    assert any("Refund" in subject for _, subject, _ in notifier.sent)


def test_full_cancellation_of_paid_order(lifecycle, store, gateway):
    order = paid_order()
    store.insert("order", order)
    result = lifecycle.cancel_order(order.id)

    stored = store.find_by_id("order", order.id, Order)
    assert gateway.refunds[0]["amount"] == Decimal("180")
    assert stored.payment_status == PaymentStatus.refunded
    assert stored.status == OrderStatus.cancelled
    assert all(i.cancelled for i in stored.items)
    assert result.refund.amount == Decimal("180")


def test_refund_failure_persists_nothing(lifecycle, store, gateway):
    order = paid_order()
    store.insert("order", order)
    gateway.fail_refunds = True

    with pytest.raises(RefundGatewayError):
        lifecycle.cancel_order(order.id)

    stored = store.find_by_id("order", order.id, Order)
    assert stored.status == OrderStatus.placed
    assert stored.payment_status == PaymentStatus.paid
    assert not any(i.cancelled for i in stored.items)
    assert stored.version == 0


def test_update_status_saves_and_notifies(lifecycle, store, notifier, two_item_order):
    store.insert("order", two_item_order)
    order = lifecycle.update_status(two_item_order.id, "Delivered")
    assert order.status == OrderStatus.delivered
    assert order.delivered_at is not None
    assert "Delivered" in notifier.sent[-1][1]

    # enum membership is the only rule, so going backwards is accepted
    assert lifecycle.update_status(two_item_order.id, "Placed").status == OrderStatus.placed


def test_update_status_rejects_unknown_values(lifecycle, store, two_item_order):
    store.insert("order", two_item_order)
    with pytest.raises(InvalidStatusValue):
        lifecycle.update_status(two_item_order.id, "Lost")


def test_user_orders_newest_first(lifecycle, store):
    now = datetime.now(timezone.utc)
    older = make_order([order_item("A", "1", 1)], placed_at=now - timedelta(days=1))
    store.insert("order", older)
    newer = make_order([order_item("B", "1", 1)], placed_at=now)
    store.insert("order", newer)
    store.insert("order", make_order([order_item("C", "1", 1)], user_id="someone-else"))
    assert [o.id for o in lifecycle.list_user_orders("u1")] == [newer.id, older.id]


# Webhooks

def test_refund_processed_updates_only_that_refund(lifecycle, store):
    order = paid_order(refunds=[
        Refund(refund_id="rfnd_a", amount=Decimal("10")),
        Refund(refund_id="rfnd_b", amount=Decimal("20")),
    ])
    store.insert("order", order)

    webhook(lifecycle, {"event": "refund.processed", "payload": {"refund": {"entity": {"id": "rfnd_a"}}}})

    stored = store.find_by_id("order", order.id, Order)
    assert [r.status for r in stored.refunds] == [RefundStatus.processed, RefundStatus.pending]


def test_refund_failed_event(lifecycle, store):
    order = paid_order(refunds=[Refund(refund_id="rfnd_a", amount=Decimal("10"))])
    store.insert("order", order)
    webhook(lifecycle, {"event": "refund.failed", "payload": {"refund": {"entity": {"id": "rfnd_a"}}}})
    assert store.find_by_id("order", order.id, Order).refunds[0].status == RefundStatus.failed


def test_payment_captured_marks_order_paid(lifecycle, store):
    order = make_order(
        [order_item("A", "100", 1)],
        payment_method=PaymentMethod.gateway,
        gateway=GatewayRefs(order_id="order_7"),
    )
    store.insert("order", order)
    event = {"event": "payment.captured", "payload": {"payment": {"entity": {"id": "pay_7", "order_id": "order_7"}}}}

    assert webhook(lifecycle, event) == {"received": True}
    webhook(lifecycle, event)

    stored = store.find_by_id("order", order.id, Order)
    assert stored.payment_status == PaymentStatus.paid
    assert stored.gateway.payment_id == "pay_7"


def test_payment_captured_replay_keeps_refund_state(lifecycle, store):
    order = paid_order()
    order.payment_status = PaymentStatus.refunded
    store.insert("order", order)
    webhook(lifecycle, {"event": "payment.captured",
                        "payload": {"payment": {"entity": {"id": "pay_9", "order_id": "order_9"}}}})
    assert store.find_by_id("order", order.id, Order).payment_status == PaymentStatus.refunded


def test_webhook_with_bad_signature(lifecycle):
    body = json.dumps({"event": "refund.processed"}).encode()
    with pytest.raises(SignatureMismatch):
        lifecycle.handle_webhook(body, "deadbeef")


def test_malformed_webhook(lifecycle):
    body = b'{"event": "payment.captured", "payload": {}}'
    with pytest.raises(ValidationFailed):
        lifecycle.handle_webhook(body, sign(WEBHOOK_SECRET, body))


def test_unknown_events_are_acknowledged(lifecycle):
    assert webhook(lifecycle, {"event": "order.paid", "payload": {}}) == {"received": True}


def test_stale_save_is_rejected(store, two_item_order):
    store.insert("order", two_item_order)
    first = store.find_by_id("order", two_item_order.id, Order)
    second = store.find_by_id("order", two_item_order.id, Order)
    store.save("order", first)
    with pytest.raises(ConcurrentUpdateError):
        store.save("order", second)


def test_parallel_item_cancellations_are_serialized(lifecycle, store, gateway):
    order = paid_order()
    store.insert("order", order)
    start = threading.Barrier(2)
    errors = []

    def cancel(item_ref):
        start.wait()
        try:
            lifecycle.cancel_item(order.id, item_ref)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=cancel, args=(ref,)) for ref in ("A", "B")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    stored = store.find_by_id("order", order.id, Order)
    assert errors == []
    assert stored.summary.total_amount == Decimal("0")
    assert sorted(r["amount"] for r in gateway.refunds) == [Decimal("80"), Decimal("100")]
    assert len(stored.refunds) == 2
    assert stored.status == OrderStatus.cancelled
    assert stored.payment_status == PaymentStatus.refunded
    assert_summary_consistent(stored)
