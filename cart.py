"""
Cart aggregation.

The cart is an array embedded in the user document. Every mutation reads the
user, changes the array in memory and saves the whole document back; saves are
serialized per user and version checked, a lost race is retried.
"""
import logging
from typing import Callable, List, Optional

from pydantic import BaseModel

from catalog import CatalogService
from database import DocumentStore
from errors import (
    CartEntryNotFound,
    ConcurrentUpdateError,
    DuplicateVariantConflict,
    OutOfStock,
    ProductNotFound,
    UserNotFound,
    ValidationFailed,
    VariantNotFound,
)
from locks import KeyedLock
from schemas import CartEntry, Order, Selection, User
from variants import resolve_by_id, resolve_variant

logger = logging.getLogger(__name__)

USERS = "user"
MAX_SAVE_ATTEMPTS = 3


class CartMatcher(BaseModel):
    """Selects cart entries by entry id, or by product id plus any selection fields given."""
    entry_id: Optional[str] = None
    product_id: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None
    ram: Optional[str] = None
    rom: Optional[str] = None

    def matches(self, entry: CartEntry) -> bool:
        if self.entry_id:
            return entry.entry_id == self.entry_id
        if entry.product_id != self.product_id:
            return False
        for field in ("color", "size", "ram", "rom"):
            wanted = getattr(self, field)
            if wanted is not None and (getattr(entry.selection, field) or "").lower() != wanted.lower():
                return False
        return True


def _same_entry(entry: CartEntry, product_id: str, variant_id: str, selection: Selection) -> bool:
    return (
        entry.product_id == product_id
        and entry.variant_id == variant_id
        and entry.selection.key() == selection.key()
    )


class CartService:
    def __init__(self, store: DocumentStore, catalog: CatalogService, locks: KeyedLock):
        self.store = store
        self.catalog = catalog
        self.locks = locks

    def get_user(self, user_id: str) -> User:
        return self.store.find_by_id(USERS, user_id, User, UserNotFound)

    def _mutate(self, user_id: str, change: Callable[[User], object]):
        with self.locks.hold(user_id):
            for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
                user = self.get_user(user_id)
                result = change(user)
                if result is False:
                    return result
                try:
                    self.store.save(USERS, user)
                    return result
                except ConcurrentUpdateError:
                    if attempt == MAX_SAVE_ATTEMPTS:
                        raise
                    logger.info("Cart of user %s changed underneath, retrying (%d)", user_id, attempt)

    def add_to_cart(self, user_id: str, product_id: str, selection: Selection, quantity: int = 1) -> List[CartEntry]:
        if quantity < 1:
            raise ValidationFailed("Quantity must be at least 1")

        def change(user: User):
            product = self.catalog.get(product_id)
            variant, available = resolve_variant(product, selection, quantity)
            existing = next(
                (e for e in user.cart if _same_entry(e, product_id, variant.variant_id, selection)), None
            )
            in_cart = existing.quantity if existing else 0
            if in_cart + quantity > available:
                raise OutOfStock(f"Only {available} in stock and {in_cart} already in your cart")
            if existing:
                existing.quantity += quantity
            else:
                user.cart.append(CartEntry(
                    product_id=product_id,
                    variant_id=variant.variant_id,
                    selection=selection,
                    quantity=quantity,
                ))
            return user.cart

        return self._mutate(user_id, change)

    def update_quantity(self, user_id: str, product_id: str, selection: Selection, quantity: int,
                        entry_id: Optional[str] = None) -> List[CartEntry]:
        """Set the quantity of an entry; with `entry_id` the entry may also move to a new selection."""
        if quantity < 1:
            raise ValidationFailed("Quantity must be at least 1")

        def change(user: User):
            if entry_id:
                entry = next((e for e in user.cart if e.entry_id == entry_id and e.product_id == product_id), None)
            else:
                entry = next(
                    (e for e in user.cart if e.product_id == product_id and e.selection.key() == selection.key()), None
                )
            if entry is None:
                raise CartEntryNotFound()

            product = self.catalog.get(product_id)
            if entry.selection.key() == selection.key():
                variant, available = resolve_by_id(product, entry.variant_id, entry.selection)
            else:
                variant, available = resolve_variant(product, selection, quantity)
                clash = any(
                    other.entry_id != entry.entry_id and _same_entry(other, product_id, variant.variant_id, selection)
                    for other in user.cart
                )
                if clash:
                    raise DuplicateVariantConflict()
            if quantity > available:
                raise OutOfStock(f"Only {available} left in stock")
            entry.quantity = quantity
            entry.variant_id = variant.variant_id
            entry.selection = selection
            return user.cart

        return self._mutate(user_id, change)

    def remove_from_cart(self, user_id: str, matcher: CartMatcher) -> int:
        """Remove every matching entry and return how many went. No match is not an error."""
        if not (matcher.entry_id or matcher.product_id):
            raise ValidationFailed("An entry id or a product id is required")

        def change(user: User):
            keep = [e for e in user.cart if not matcher.matches(e)]
            removed = len(user.cart) - len(keep)
            if not removed:
                return False
            user.cart = keep
            return removed

        return self._mutate(user_id, change) or 0

    def clear_cart(self, user_id: str) -> None:
        def change(user: User):
            if not user.cart:
                return False
            user.cart = []
            return True

        self._mutate(user_id, change)

    def get_cart(self, user_id: str) -> List[dict]:
        """Cart entries joined with live catalog data. Read only: stale quantities only get a warning."""
        user = self.get_user(user_id)
        lines = []
        for entry in user.cart:
            line = entry.model_dump(mode="json")
            try:
                product = self.catalog.get(entry.product_id)
                variant, available = resolve_by_id(product, entry.variant_id, entry.selection)
            except (ProductNotFound, VariantNotFound):
                line.update(available_stock=0, warning="This item is no longer available")
                lines.append(line)
                continue
            images = variant.images or product.images
            line.update(
                name=product.name,
                thumbnail=images[0] if images else None,
                price=str(variant.pricing.price),
                offer_price=str(variant.pricing.offer_price) if variant.pricing.offer_price is not None else None,
                available_stock=available,
                warning=None,
            )
            if available < entry.quantity:
                line["warning"] = f"Only {available} left in stock"
            lines.append(line)
        return lines

    def reorder(self, user_id: str, order: Order) -> dict:
        """Put the items of a past order back into the cart, as far as stock allows."""

        def change(user: User):
            added, skipped = [], []
            for item in order.items:
                selection = Selection(
                    color=item.selected_color or "",
                    size=item.selected_size,
                    ram=item.selected_ram,
                    rom=item.selected_rom,
                )
                try:
                    product = self.catalog.get(item.product_id)
                    variant, available = resolve_by_id(product, item.variant_id, selection)
                except (ProductNotFound, VariantNotFound):
                    skipped.append({"item_id": item.item_id, "reason": "no longer available"})
                    continue
                existing = next(
                    (e for e in user.cart if _same_entry(e, item.product_id, variant.variant_id, selection)), None
                )
                room = available - (existing.quantity if existing else 0)
                quantity = min(item.quantity, room)
                if quantity < 1:
                    skipped.append({"item_id": item.item_id, "reason": "out of stock"})
                    continue
                if existing:
                    existing.quantity += quantity
                else:
                    user.cart.append(CartEntry(
                        product_id=item.product_id,
                        variant_id=variant.variant_id,
                        selection=selection,
                        quantity=quantity,
                    ))
                added.append({"item_id": item.item_id, "quantity": quantity})
            return {"added": added, "skipped": skipped, "cart": user.cart}

        return self._mutate(user_id, change)
