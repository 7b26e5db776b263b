"""
Database Schemas for the storefront backend

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase
class name (e.g., Product -> "product"). Embedded models (variants, cart entries,
order items, refunds) live inside their owning document.

Money is held as Decimal and stored as a decimal string.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, EmailStr, Field


def utcnow():
    return datetime.now(timezone.utc)


class Role(str, Enum):
    user = "user"
    admin = "admin"
    superadmin = "superadmin"


class Document(BaseModel):
    """Fields the document store maintains on every collection."""
    id: Optional[str] = None
    version: int = 0


# Catalog

FASHION_CATEGORIES = {"clothing", "shoes", "fashion", "apparel"}
ELECTRONICS_CATEGORIES = {"mobiles", "mobile", "laptops", "laptop", "tablets", "electronics"}


class VariantShape(str, Enum):
    sized = "sized"
    configured = "configured"


class SizeStock(BaseModel):
    size: str
    stock: int = Field(ge=0)


class Pricing(BaseModel):
    price: Decimal = Field(ge=0)
    offer_price: Optional[Decimal] = Field(default=None, ge=0)


class SizedVariant(BaseModel):
    shape: Literal["sized"] = "sized"
    variant_id: str = ""
    color: str
    pricing: Pricing
    images: List[str] = []
    size_stock: List[SizeStock] = []


class ConfiguredVariant(BaseModel):
    shape: Literal["configured"] = "configured"
    variant_id: str = ""
    color: str
    pricing: Pricing
    images: List[str] = []
    ram: str
    rom: str
    stock: int = Field(ge=0)


Variant = Annotated[Union[SizedVariant, ConfiguredVariant], Field(discriminator="shape")]


class Rating(BaseModel):
    user_id: str
    user_name: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    date: datetime = Field(default_factory=utcnow)


class Product(Document):
    name: str
    description: str = ""
    brand: Optional[str] = None
    category: str
    shape: VariantShape
    images: List[str] = []
    variants: List[Variant] = []
    ratings: List[Rating] = []
    average_rating: float = 0
    is_deleted: bool = False


# Users and carts

class Selection(BaseModel):
    color: str
    size: Optional[str] = None
    ram: Optional[str] = None
    rom: Optional[str] = None

    def key(self):
        """Case-insensitive identity of the full selection tuple."""
        return tuple((v or "").strip().lower() for v in (self.color, self.size, self.ram, self.rom))


class CartEntry(BaseModel):
    entry_id: str = Field(default_factory=lambda: uuid4().hex)
    product_id: str
    variant_id: str
    selection: Selection
    quantity: int = Field(ge=1)


class User(Document):
    full_name: str
    email: EmailStr
    password_hash: str
    role: Role = Role.user
    cart: List[CartEntry] = []


# Orders

class OrderStatus(str, Enum):
    placed = "Placed"
    confirmed = "Confirmed"
    shipped = "Shipped"
    out_for_delivery = "Out for Delivery"
    delivered = "Delivered"
    cancelled = "Cancelled"


CANCELLABLE_STATUSES = (OrderStatus.placed, OrderStatus.confirmed)


class PaymentMethod(str, Enum):
    cod = "COD"
    gateway = "Gateway"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"
    partial_refunded = "partial-refunded"


class RefundStatus(str, Enum):
    pending = "pending"
    processed = "processed"
    failed = "failed"


class Address(BaseModel):
    full_name: Optional[str] = None
    address: str
    city: str
    state: Optional[str] = None
    pincode: str
    phone: str


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    product_id: str
    variant_id: str
    name: str
    quantity: int = Field(ge=1)
    price: Decimal
    offer_price: Optional[Decimal] = None
    images: List[str] = []
    selected_color: Optional[str] = None
    selected_size: Optional[str] = None
    selected_ram: Optional[str] = None
    selected_rom: Optional[str] = None
    cancelled: bool = False


class OrderSummary(BaseModel):
    items_price: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")


class GatewayRefs(BaseModel):
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None


class Refund(BaseModel):
    refund_id: str
    amount: Decimal
    reason: str = ""
    status: RefundStatus = RefundStatus.pending
    created_at: datetime = Field(default_factory=utcnow)


class Order(Document):
    user_id: str
    user_email: Optional[str] = None
    items: List[OrderItem]
    shipping_address: Address
    summary: OrderSummary
    status: OrderStatus = OrderStatus.placed
    payment_method: PaymentMethod = PaymentMethod.cod
    payment_status: PaymentStatus = PaymentStatus.pending
    gateway: GatewayRefs = GatewayRefs()
    refunds: List[Refund] = []
    superseded_by: Optional[str] = None
    placed_at: datetime = Field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class CheckoutRequest(BaseModel):
    """Order data sent at checkout. Without items the user's stored cart is used."""
    shipping_address: Address
    payment_method: PaymentMethod = PaymentMethod.cod
    items: Optional[List[CartEntry]] = None


# Catalog requests

class VariantIn(BaseModel):
    color: str
    pricing: Pricing
    images: List[str] = []
    size_stock: Optional[List[SizeStock]] = None
    ram: Optional[str] = None
    rom: Optional[str] = None
    stock: Optional[int] = Field(default=None, ge=0)


class ProductIn(BaseModel):
    name: str
    description: str = ""
    brand: Optional[str] = None
    category: str
    shape: Optional[VariantShape] = None  # required only for categories outside the known lists
    images: List[str] = []
    variants: List[VariantIn] = []
