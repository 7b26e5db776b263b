"""
Checkout.

Cash on delivery places the order right away. Gateway checkout first saves a
provisional unpaid order carrying the Razorpay order id; once the client returns
the payment signature, `verify_and_place_order` checks it and places a new, paid
order. The provisional order is kept and points at its replacement through
`superseded_by`; the payment belongs to the paid order only. A checkout whose
total no longer matches the provisional order is refused.
"""
import logging
from decimal import Decimal
from typing import List

from pydantic import BaseModel

from cart import CartService
from catalog import CatalogService
from database import DocumentStore
from errors import AmountMismatch, ConcurrentUpdateError, SignatureMismatch, ValidationFailed
from gateway import PaymentGateway, verify_payment_signature
from notifications import Notifier, dispatch
from orders import build_order_items, check_stock, money, summarize
from schemas import (
    CartEntry,
    CheckoutRequest,
    GatewayRefs,
    Order,
    PaymentMethod,
    PaymentStatus,
    User,
)

logger = logging.getLogger(__name__)

ORDERS = "order"
MAX_SAVE_ATTEMPTS = 3


class PaymentVerification(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


def confirmation_data(user: User, order: Order) -> dict:
    return {
        "customer_name": user.full_name or "Customer",
        "order_id": order.id,
        "items": [
            {"name": i.name, "quantity": i.quantity, "price": str(i.offer_price if i.offer_price is not None else i.price)}
            for i in order.items
        ],
        "total_amount": str(order.summary.total_amount),
    }


class CheckoutService:
    def __init__(self, store: DocumentStore, catalog: CatalogService, cart: CartService,
                 gateway: PaymentGateway, notifier: Notifier, key_secret: str, currency: str = "INR"):
        self.store = store
        self.catalog = catalog
        self.cart = cart
        self.gateway = gateway
        self.notifier = notifier
        self.key_secret = key_secret
        self.currency = currency

    def _entries(self, user: User, request: CheckoutRequest) -> List[CartEntry]:
        entries = request.items if request.items else user.cart
        if not entries:
            raise ValidationFailed("Cart is empty")
        return entries

    def _new_order(self, user: User, request: CheckoutRequest, entries: List[CartEntry]) -> Order:
        items = build_order_items(entries, self.catalog)
        return Order(
            user_id=user.id,
            user_email=user.email,
            items=items,
            shipping_address=request.shipping_address,
            summary=summarize(items),
            payment_method=request.payment_method,
        )

    def create_gateway_order(self, amount: Decimal) -> dict:
        if amount <= 0:
            raise ValidationFailed("Amount must be positive")
        created = self.gateway.create_order(money(amount), self.currency)
        return {
            "razorpay_order_id": created["id"],
            "amount": str(created["amount"]),
            "currency": created["currency"],
        }

    def place_order(self, user_id: str, request: CheckoutRequest) -> dict:
        user = self.cart.get_user(user_id)
        entries = self._entries(user, request)
        check_stock(entries, self.catalog)
        order = self._new_order(user, request, entries)

        if request.payment_method == PaymentMethod.cod:
            self.store.insert(ORDERS, order)
            logger.info("COD order %s placed by user %s for %s", order.id, user.id, order.summary.total_amount)
            self.cart.clear_cart(user.id)
            dispatch(self.notifier.send_order_confirmation, user.email, confirmation_data(user, order))
            return {"order": order}

        created = self.gateway.create_order(order.summary.total_amount, self.currency)
        order.gateway = GatewayRefs(order_id=created["id"])
        self.store.insert(ORDERS, order)
        logger.info("Provisional order %s awaiting payment for Razorpay order %s", order.id, created["id"])
        return {
            "order": order,
            "razorpay_order_id": created["id"],
            "amount": str(created["amount"]),
            "currency": created["currency"],
        }

    def verify_and_place_order(self, user_id: str, payment: PaymentVerification, order_data: CheckoutRequest) -> Order:
        if not verify_payment_signature(
            self.key_secret, payment.razorpay_order_id, payment.razorpay_payment_id, payment.razorpay_signature
        ):
            logger.warning("Payment signature mismatch for Razorpay order %s", payment.razorpay_order_id)
            raise SignatureMismatch("Payment verification failed")

        user = self.cart.get_user(user_id)
        order = self._new_order(user, order_data, self._entries(user, order_data))
        provisional = self._provisional_orders(payment.razorpay_order_id, user.id)
        for p in provisional:
            if p.summary.total_amount != order.summary.total_amount:
                logger.warning(
                    "Razorpay order %s was created for %s but checkout now totals %s",
                    payment.razorpay_order_id, p.summary.total_amount, order.summary.total_amount,
                )
                raise AmountMismatch()

        order.payment_method = PaymentMethod.gateway
        order.payment_status = PaymentStatus.paid
        order.gateway = GatewayRefs(
            order_id=payment.razorpay_order_id,
            payment_id=payment.razorpay_payment_id,
            signature=payment.razorpay_signature,
        )
        self.store.insert(ORDERS, order)
        logger.info("Paid order %s placed for Razorpay payment %s", order.id, payment.razorpay_payment_id)
        for p in provisional:
            self._supersede(p.id, order)

        self.cart.clear_cart(user.id)
        dispatch(self.notifier.send_order_confirmation, user.email, confirmation_data(user, order))
        return order

    def _provisional_orders(self, gateway_order_id: str, user_id: str) -> List[Order]:
        return self.store.find(
            ORDERS, {"gateway.order_id": gateway_order_id, "user_id": user_id, "superseded_by": None}, Order
        )

    def _supersede(self, provisional_id: str, paid: Order) -> None:
        """Point a provisional order at its paid replacement and hand the payment over to it."""
        for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
            provisional = self.store.find_by_id(ORDERS, provisional_id, Order)
            provisional.superseded_by = paid.id
            # a payment.captured webhook may have bound the payment here first
            provisional.gateway.payment_id = None
            provisional.payment_status = PaymentStatus.pending
            try:
                self.store.save(ORDERS, provisional)
                return
            except ConcurrentUpdateError:
                if attempt == MAX_SAVE_ATTEMPTS:
                    logger.error("Could not link provisional order %s to %s", provisional_id, paid.id)
