"""
Shared fixtures: an in-memory Mongo (mongomock), a fake Razorpay gateway and a
notifier that records what it would have sent.
"""
from decimal import Decimal

import mongomock
import pytest

from cart import CartService
from catalog import CatalogService
from database import DocumentStore
from errors import GatewayError, RefundGatewayError
from gateway import PaymentGateway
from lifecycle import OrderLifecycle
from locks import KeyedLock
from notifications import Notifier
from orders import summarize
from payments import CheckoutService
from schemas import (
    Address,
    Order,
    OrderItem,
    Pricing,
    ProductIn,
    SizeStock,
    User,
    VariantIn,
)

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"

ADDRESS = Address(full_name="Asha Rao", address="12 MG Road", city="Bengaluru", state="KA",
                  pincode="560001", phone="9999999999")


class FakeGateway(PaymentGateway):
    def __init__(self):
        self.orders = []
        self.refunds = []
        self.fail_orders = False
        self.fail_refunds = False

    def create_order(self, amount, currency="INR", receipt=None):
        if self.fail_orders:
            raise GatewayError()
        order = {"id": f"order_{len(self.orders) + 1}", "amount": amount, "currency": currency}
        self.orders.append(order)
        return order

    def refund(self, payment_id, amount, notes=None):
        if self.fail_refunds:
            raise RefundGatewayError()
        refund = {"id": f"rfnd_{len(self.refunds) + 1}", "payment_id": payment_id, "amount": amount,
                  "status": "pending", "notes": notes}
        self.refunds.append(refund)
        return refund


class RecordingNotifier(Notifier):
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def _deliver(self, to, subject, body):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((to, subject, body))


def shirt_payload():
    return ProductIn(
        name="Linen Shirt",
        description="Relaxed fit",
        brand="Loom",
        category="Clothing",
        images=["https://cdn.example.com/shirt.jpg"],
        variants=[
            VariantIn(
                color="Red",
                pricing=Pricing(price=Decimal("500"), offer_price=Decimal("400")),
                images=["https://cdn.example.com/shirt-red.jpg"],
                size_stock=[SizeStock(size="M", stock=2), SizeStock(size="L", stock=5)],
            ),
            VariantIn(
                color="Blue",
                pricing=Pricing(price=Decimal("450")),
                size_stock=[SizeStock(size="M", stock=1)],
            ),
        ],
    )


def phone_payload():
    return ProductIn(
        name="Pixel 8",
        brand="Google",
        category="Mobiles",
        variants=[
            VariantIn(color="Black", ram="8GB", rom="128GB", stock=3,
                      pricing=Pricing(price=Decimal("20000"), offer_price=Decimal("18000"))),
            VariantIn(color="Black", ram="8GB", rom="256GB", stock=0,
                      pricing=Pricing(price=Decimal("24000"))),
        ],
    )


def order_item(item_id, price, quantity, offer_price=None, product_id=None):
    return OrderItem(
        item_id=item_id,
        product_id=product_id or f"prod-{item_id}",
        variant_id=f"var-{item_id}",
        name=f"Item {item_id}",
        quantity=quantity,
        price=Decimal(price),
        offer_price=Decimal(offer_price) if offer_price is not None else None,
    )


def make_order(items, **fields):
    return Order(
        user_id=fields.pop("user_id", "u1"),
        user_email=fields.pop("user_email", "buyer@example.com"),
        items=items,
        shipping_address=ADDRESS,
        summary=summarize(items),
        **fields,
    )


@pytest.fixture
def two_item_order():
    # A: 100 x 1, B: 50 x 2 offered at 40 -> 200 / 20 / 180
    return make_order([
        order_item("A", "100", 1),
        order_item("B", "50", 2, offer_price="40"),
    ])


@pytest.fixture
def store():
    return DocumentStore(mongomock.MongoClient().db)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def catalog(store):
    return CatalogService(store)


@pytest.fixture
def carts(store, catalog):
    return CartService(store, catalog, KeyedLock())


@pytest.fixture
def checkout(store, catalog, carts, gateway, notifier):
    return CheckoutService(store, catalog, carts, gateway, notifier, KEY_SECRET)


@pytest.fixture
def lifecycle(store, gateway, notifier):
    return OrderLifecycle(store, gateway, notifier, KeyedLock(), WEBHOOK_SECRET)


@pytest.fixture
def shirt(catalog):
    return catalog.create_product(shirt_payload())


@pytest.fixture
def phone(catalog):
    return catalog.create_product(phone_payload())


@pytest.fixture
def user(store):
    u = User(full_name="Asha Rao", email="asha@example.com", password_hash="x")
    store.insert("user", u)
    return u
