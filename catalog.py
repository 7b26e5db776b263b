import logging
import re
from typing import List, Optional

from bson import ObjectId

from database import DocumentStore
from errors import InvalidRating, ProductNotFound, ValidationFailed
from schemas import Product, ProductIn, Rating, SizedVariant, SizeStock, User
from variants import build_product, find_variant

logger = logging.getLogger(__name__)

PRODUCTS = "product"


class CatalogService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def get(self, product_id: str) -> Product:
        product = self.store.find_by_id(PRODUCTS, product_id, Product, ProductNotFound)
        if product.is_deleted:
            raise ProductNotFound()
        return product

    def list_products(self, q: Optional[str] = None, category: Optional[str] = None) -> List[Product]:
        query = {"is_deleted": False}
        if q:
            query["$or"] = [
                {"name": {"$regex": q, "$options": "i"}},
                {"description": {"$regex": q, "$options": "i"}},
                {"brand": {"$regex": q, "$options": "i"}},
            ]
        if category:
            query["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
        return self.store.find(PRODUCTS, query, Product)

    def create_product(self, payload: ProductIn) -> Product:
        product = build_product(str(ObjectId()), payload)
        self.store.insert(PRODUCTS, product)
        logger.info("Created product %s with %d variants", product.id, len(product.variants))
        return product

    def update_product(self, product_id: str, payload: ProductIn) -> Product:
        """Replace name, category, images and variants; ratings and identity are kept."""
        current = self.get(product_id)
        product = build_product(product_id, payload)
        product.version = current.version
        product.ratings = current.ratings
        product.average_rating = current.average_rating
        self.store.save(PRODUCTS, product)
        logger.info("Updated product %s, now %d variants", product_id, len(product.variants))
        return product

    def delete_product(self, product_id: str) -> None:
        product = self.get(product_id)
        product.is_deleted = True
        self.store.save(PRODUCTS, product)

    def update_stock(self, product_id: str, variant_id: str, stock: Optional[int] = None,
                     size_stock: Optional[List[SizeStock]] = None) -> Product:
        product = self.get(product_id)
        variant = find_variant(product, variant_id)
        if isinstance(variant, SizedVariant):
            if size_stock is None:
                raise ValidationFailed("size_stock is required for sized variants")
            variant.size_stock = size_stock
        else:
            if stock is None:
                raise ValidationFailed("stock is required for this variant")
            variant.stock = stock
        self.store.save(PRODUCTS, product)
        return product

    def add_rating(self, product_id: str, user: User, rating: int, comment: Optional[str] = None) -> Product:
        if not 1 <= rating <= 5:
            raise InvalidRating()
        product = self.get(product_id)
        product.ratings.append(Rating(user_id=user.id, user_name=user.full_name, rating=rating, comment=comment))
        product.average_rating = sum(r.rating for r in product.ratings) / len(product.ratings)
        self.store.save(PRODUCTS, product)
        return product
