"""
Variant resolution.

A product carries variants of a single shape, picked from its category when the
product is created: sized variants (fashion, stock per size) or configured
variants (electronics, one stock per color/ram/rom). A cart selection resolves to
exactly one variant; once resolved, the variant id is the identity and later
lookups go through `find_variant`.
"""
import re
from typing import NamedTuple, Optional

from errors import OutOfStock, ValidationFailed, VariantNotFound
from schemas import (
    ELECTRONICS_CATEGORIES,
    FASHION_CATEGORIES,
    ConfiguredVariant,
    Product,
    ProductIn,
    Selection,
    SizedVariant,
    VariantIn,
    VariantShape,
)


class ResolvedVariant(NamedTuple):
    variant: object
    available: int


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", _norm(value)).strip("-")


def shape_for_category(category: str, requested: Optional[VariantShape] = None) -> VariantShape:
    c = _norm(category)
    if c in FASHION_CATEGORIES:
        return VariantShape.sized
    if c in ELECTRONICS_CATEGORIES:
        return VariantShape.configured
    if requested is None:
        raise ValidationFailed(f"Variant shape is required for category '{category}'")
    return requested


def derive_variant_id(product_id: str, shape: VariantShape, color: str, ram: str = None, rom: str = None) -> str:
    parts = [product_id, _slug(color)]
    if shape == VariantShape.configured:
        parts += [_slug(ram), _slug(rom)]
    else:
        parts.append("sized")
    return "-".join(parts)


def make_variant(product_id: str, shape: VariantShape, data: VariantIn):
    """Build a variant of the given shape. Exactly one stock representation may be set."""
    if shape == VariantShape.sized:
        if data.size_stock is None or data.ram or data.rom or data.stock is not None:
            raise ValidationFailed(f"Variant '{data.color}' must only carry size_stock")
        return SizedVariant(
            variant_id=derive_variant_id(product_id, shape, data.color),
            color=data.color,
            pricing=data.pricing,
            images=data.images,
            size_stock=data.size_stock,
        )
    if data.size_stock is not None or not data.ram or not data.rom or data.stock is None:
        raise ValidationFailed(f"Variant '{data.color}' must carry ram, rom and stock")
    return ConfiguredVariant(
        variant_id=derive_variant_id(product_id, shape, data.color, data.ram, data.rom),
        color=data.color,
        pricing=data.pricing,
        images=data.images,
        ram=data.ram,
        rom=data.rom,
        stock=data.stock,
    )


def build_product(product_id: str, payload: ProductIn) -> Product:
    shape = shape_for_category(payload.category, payload.shape)
    variants = [make_variant(product_id, shape, v) for v in payload.variants]
    ids = [v.variant_id for v in variants]
    if len(set(ids)) != len(ids):
        raise ValidationFailed("Duplicate variant for the same color/configuration")
    return Product(
        id=product_id,
        name=payload.name,
        description=payload.description,
        brand=payload.brand,
        category=payload.category,
        shape=shape,
        images=payload.images,
        variants=variants,
    )


def stock_for(variant, selection: Selection) -> Optional[int]:
    """Available stock of `variant` for the selection, None when the size is not offered."""
    if isinstance(variant, SizedVariant):
        entry = next((s for s in variant.size_stock if _norm(s.size) == _norm(selection.size)), None)
        return entry.stock if entry else None
    return variant.stock


def _matches(variant, selection: Selection) -> bool:
    if _norm(variant.color) != _norm(selection.color):
        return False
    if isinstance(variant, SizedVariant):
        return stock_for(variant, selection) is not None
    return _norm(variant.ram) == _norm(selection.ram) and _norm(variant.rom) == _norm(selection.rom)


def _check_selection(product: Product, selection: Selection):
    if product.shape == VariantShape.sized and not selection.size:
        raise ValidationFailed("Size is required for this product")
    if product.shape == VariantShape.configured and not (selection.ram and selection.rom):
        raise ValidationFailed("RAM and storage are required for this product")


def resolve_variant(product: Product, selection: Selection, quantity: int = 1) -> ResolvedVariant:
    _check_selection(product, selection)
    variant = next((v for v in product.variants if _matches(v, selection)), None)
    if variant is None:
        raise VariantNotFound(f"No variant of '{product.name}' matches the selection")
    available = stock_for(variant, selection)
    if available < quantity:
        raise OutOfStock(f"Only {available} left for '{product.name}'")
    return ResolvedVariant(variant, available)


def find_variant(product: Product, variant_id: str):
    variant = next((v for v in product.variants if v.variant_id == variant_id), None)
    if variant is None:
        raise VariantNotFound(f"Variant {variant_id} not found")
    return variant


def resolve_by_id(product: Product, variant_id: str, selection: Selection) -> ResolvedVariant:
    """Re-resolve a known variant id and read its stock for the selection (size for sized variants)."""
    variant = find_variant(product, variant_id)
    available = stock_for(variant, selection)
    if available is None:
        raise VariantNotFound(f"Size {selection.size} is not offered for '{product.name}'")
    return ResolvedVariant(variant, available)
