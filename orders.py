"""
Order building: turns cart entries into immutable order item snapshots and
computes the order summary over the items that are still active.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List

from errors import OutOfStock, ValidationFailed
from schemas import CartEntry, OrderItem, OrderSummary, Product
from variants import find_variant, resolve_by_id

CENTS = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _load_products(entries: Iterable[CartEntry], catalog) -> Dict[str, Product]:
    products = {}
    for entry in entries:
        if entry.product_id not in products:
            products[entry.product_id] = catalog.get(entry.product_id)
    return products


def check_stock(entries: List[CartEntry], catalog) -> None:
    """Re-check cart quantities against current stock before an order is placed."""
    products = _load_products(entries, catalog)
    for entry in entries:
        product = products[entry.product_id]
        resolved = resolve_by_id(product, entry.variant_id, entry.selection)
        if entry.quantity > resolved.available:
            raise OutOfStock(f"Only {resolved.available} left for '{product.name}'")


def build_order_items(entries: List[CartEntry], catalog) -> List[OrderItem]:
    """Snapshot every entry. A missing product or variant aborts the whole build.

    Stock is read but never decremented here.
    """
    if not entries:
        raise ValidationFailed("Cart is empty")
    products = _load_products(entries, catalog)
    items = []
    for position, entry in enumerate(entries, start=1):
        product = products[entry.product_id]
        variant = find_variant(product, entry.variant_id)
        pricing = variant.pricing
        items.append(OrderItem(
            item_id=f"{variant.variant_id}-{position}",
            product_id=product.id,
            variant_id=variant.variant_id,
            name=product.name,
            quantity=entry.quantity,
            price=money(pricing.price),
            offer_price=money(pricing.offer_price) if pricing.offer_price is not None else None,
            images=list(variant.images or product.images),
            selected_color=entry.selection.color,
            selected_size=entry.selection.size,
            selected_ram=entry.selection.ram,
            selected_rom=entry.selection.rom,
        ))
    return items


def summarize(items: Iterable[OrderItem]) -> OrderSummary:
    items_price = Decimal("0")
    discount = Decimal("0")
    for item in items:
        if item.cancelled:
            continue
        offer = item.offer_price if item.offer_price is not None else item.price
        items_price += item.price * item.quantity
        discount += (item.price - offer) * item.quantity
    return OrderSummary(
        items_price=money(items_price),
        discount=money(discount),
        total_amount=money(items_price - discount),
    )
