"""
Order lifecycle: status changes, cancellations with refunds, and Razorpay
webhook reconciliation.

`apply_cancellation` is pure: it returns the cancelled copy of an order and the
amount to refund. `OrderLifecycle` runs it under a per-order lock, talks to the
gateway, saves, and only then notifies the customer.
"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, NamedTuple, Optional

from database import DocumentStore
from errors import (
    ConcurrentUpdateError,
    InvalidStatusTransition,
    InvalidStatusValue,
    ItemAlreadyCancelled,
    ItemNotFound,
    OrderNotFound,
    OrderSuperseded,
    SignatureMismatch,
    ValidationFailed,
)
from gateway import PaymentGateway, verify_webhook_signature
from locks import KeyedLock
from notifications import Notifier, dispatch
from orders import summarize
from schemas import (
    CANCELLABLE_STATUSES,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Refund,
    RefundStatus,
)

logger = logging.getLogger(__name__)

ORDERS = "order"

REFUNDABLE_PAYMENT_STATUSES = (PaymentStatus.paid, PaymentStatus.partial_refunded)
REFUND_EVENTS = {"refund.processed": RefundStatus.processed, "refund.failed": RefundStatus.failed}


class CancellationResult(NamedTuple):
    order: Order
    refund_amount: Decimal
    fully_cancelled: bool
    refund: Optional[Refund] = None


def find_item(order: Order, item_ref: str):
    """Locate an item by item id, falling back to the first active item of that product."""
    for index, item in enumerate(order.items):
        if item.item_id == item_ref:
            return index, item
    by_product = [(i, item) for i, item in enumerate(order.items) if item.product_id == item_ref]
    if not by_product:
        raise ItemNotFound()
    return next(((i, item) for i, item in by_product if not item.cancelled), by_product[0])


def apply_cancellation(order: Order, item_ref: Optional[str] = None) -> CancellationResult:
    if order.superseded_by:
        raise OrderSuperseded()
    if order.status not in CANCELLABLE_STATUSES:
        raise InvalidStatusTransition(f"Order cannot be cancelled in current status: {order.status.value}")

    items: List[OrderItem] = list(order.items)
    if item_ref is None:
        items = [item.model_copy(update={"cancelled": True}) for item in items]
    else:
        index, item = find_item(order, item_ref)
        if item.cancelled:
            raise ItemAlreadyCancelled()
        items[index] = item.model_copy(update={"cancelled": True})

    summary = summarize(items)
    fully_cancelled = all(item.cancelled for item in items)
    update = {"items": items, "summary": summary}
    if fully_cancelled:
        update["status"] = OrderStatus.cancelled
        update["cancelled_at"] = datetime.now(timezone.utc)

    refund_amount = max(order.summary.total_amount - summary.total_amount, Decimal("0.00"))
    return CancellationResult(order.model_copy(update=update, deep=True), refund_amount, fully_cancelled)


def needs_refund(order: Order, amount: Decimal) -> bool:
    return (
        order.payment_method == PaymentMethod.gateway
        and order.payment_status in REFUNDABLE_PAYMENT_STATUSES
        and amount > 0
    )


class OrderLifecycle:
    def __init__(self, store: DocumentStore, gateway: PaymentGateway, notifier: Notifier,
                 locks: KeyedLock, webhook_secret: str):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.locks = locks
        self.webhook_secret = webhook_secret

    # Reads

    def get_order(self, order_id: str) -> Order:
        return self.store.find_by_id(ORDERS, order_id, Order, OrderNotFound)

    def list_user_orders(self, user_id: str) -> List[Order]:
        # provisional orders replaced by a paid one are hidden
        query = {"user_id": user_id, "superseded_by": None}
        return self.store.find(ORDERS, query, Order, sort=[("placed_at", -1)])

    def list_orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        query = {"status": status.value} if status else {}
        return self.store.find(ORDERS, query, Order, sort=[("placed_at", -1)])

    # Status

    def update_status(self, order_id: str, status: str) -> Order:
        try:
            new_status = OrderStatus(status)
        except ValueError:
            raise InvalidStatusValue()

        with self.locks.hold(order_id):
            order = self.get_order(order_id)
            previous = order.status
            order.status = new_status
            now = datetime.now(timezone.utc)
            if new_status == OrderStatus.delivered:
                order.delivered_at = now
            elif new_status == OrderStatus.cancelled:
                order.cancelled_at = now
            self.store.save(ORDERS, order)
        logger.info("Order %s status %s -> %s", order_id, previous.value, new_status.value)

        self._notify_status(order)
        return order

    def _notify_status(self, order: Order) -> None:
        dispatch(self.notifier.send_order_status_update, order.user_email, {
            "order_id": order.id,
            "new_status": order.status.value,
            "date": datetime.now(timezone.utc).date().isoformat(),
        })

    # Cancellation

    def cancel_order(self, order_id: str, reason: str = "Order cancelled") -> CancellationResult:
        return self._cancel(order_id, None, reason)

    def cancel_item(self, order_id: str, item_ref: str, reason: str = "Item cancelled") -> CancellationResult:
        return self._cancel(order_id, item_ref, reason)

    def _cancel(self, order_id: str, item_ref: Optional[str], reason: str) -> CancellationResult:
        with self.locks.hold(order_id):
            order = self.get_order(order_id)
            result = apply_cancellation(order, item_ref)
            updated = result.order
            refund = None
            if needs_refund(order, result.refund_amount):
                # a gateway failure propagates and nothing below is saved
                response = self.gateway.refund(
                    order.gateway.payment_id,
                    result.refund_amount,
                    notes={"order_id": order.id, "reason": reason},
                )
                refund = Refund(refund_id=response["id"], amount=result.refund_amount, reason=reason)
                updated.refunds.append(refund)
                updated.payment_status = (
                    PaymentStatus.refunded if result.fully_cancelled else PaymentStatus.partial_refunded
                )
            try:
                self.store.save(ORDERS, updated)
            except ConcurrentUpdateError:
                if refund is not None:
                    logger.error("Refund %s issued for order %s but the order was not saved", refund.refund_id, order_id)
                raise
        logger.info(
            "Order %s cancelled %s, refund %s", order_id, "fully" if result.fully_cancelled else f"item {item_ref}",
            result.refund_amount,
        )

        if result.fully_cancelled:
            self._notify_status(updated)
        if refund is not None:
            dispatch(self.notifier.send_refund_status, updated.user_email, {
                "order_id": updated.id,
                "refund_id": refund.refund_id,
                "amount": str(refund.amount),
                "status": refund.status.value,
            })
        return result._replace(refund=refund)

    # Webhooks

    def handle_webhook(self, raw_body: bytes, signature: str) -> dict:
        if not verify_webhook_signature(self.webhook_secret, raw_body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise SignatureMismatch()
        try:
            event = json.loads(raw_body)
            name = event["event"]
            if name == "payment.captured":
                entity = event["payload"]["payment"]["entity"]
                target = (entity["order_id"], entity["id"])
            elif name in REFUND_EVENTS:
                target = (event["payload"]["refund"]["entity"]["id"], REFUND_EVENTS[name])
        except (ValueError, KeyError, TypeError):
            raise ValidationFailed("Malformed webhook payload")

        if name == "payment.captured":
            self._mark_paid(*target)
        elif name in REFUND_EVENTS:
            self._reconcile_refund(*target)
        else:
            logger.info("Ignoring webhook event %s", name)
        return {"received": True}

    def _mark_paid(self, gateway_order_id: str, payment_id: str) -> None:
        matches = self.store.find(ORDERS, {"gateway.order_id": gateway_order_id, "superseded_by": None}, Order)
        if not matches:
            logger.warning("payment.captured for unknown Razorpay order %s", gateway_order_id)
        for found in matches:
            with self.locks.hold(found.id):
                order = self.get_order(found.id)
                # a replay must not undo a refund
                if order.payment_status in (PaymentStatus.pending, PaymentStatus.failed):
                    order.payment_status = PaymentStatus.paid
                order.gateway.payment_id = payment_id
                self.store.save(ORDERS, order)
            logger.info("Order %s captured by payment %s", order.id, payment_id)

    def _reconcile_refund(self, refund_id: str, status: RefundStatus) -> None:
        found = self.store.find_one(ORDERS, {"refunds.refund_id": refund_id}, Order)
        if found is None:
            logger.warning("Refund webhook for unknown refund %s", refund_id)
            return
        with self.locks.hold(found.id):
            order = self.get_order(found.id)
            for refund in order.refunds:
                if refund.refund_id == refund_id:
                    refund.status = status
            self.store.save(ORDERS, order)
        logger.info("Refund %s on order %s is %s", refund_id, order.id, status.value)
