import logging
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, List, Tuple

from shared.models import CartLine, ProductSnapshot
from shared.sessions import Session
from shared.utils import (
    NotFoundException, OutOfStockException, ProductUnavailableException, ValidationException,
    str_to_oid
)
from services.storefront.catalog import CatalogReader

logger = logging.getLogger(__name__)


class CartStore:
    """Per-user product -> quantity mapping, capped at the product's stock."""

    def __init__(self, db, catalog: CatalogReader):
        self.db = db
        self.catalog = catalog

    async def ensure_indexes(self):
        await self.db.cart_items.create_index([("user_id", 1), ("product_id", 1)], unique=True)
        await self.db.cart_items.create_index([("user_id", 1), ("created_at", -1)])

    async def add_item(self, session: Session, product_id: str, requested_qty: int) -> dict:
        if requested_qty < 1:
            raise ValidationException("quantity", "Quantity must be at least 1")
        product = await self.db.products.find_one({"_id": str_to_oid(product_id)})
        if not product:
            raise NotFoundException("Product not found")
        if not product.get("is_active", False):
            raise ProductUnavailableException(product_id)

        stock = product.get("stock_quantity", 0)
        if stock <= 0:
            raise OutOfStockException(product_id)

        key = {"user_id": session.user_id, "product_id": product_id}
        existing = await self.db.cart_items.find_one(key)
        current = existing["quantity"] if existing else 0
        quantity = min(current + requested_qty, stock)

        now = datetime.utcnow()
        await self.db.cart_items.update_one(
            key,
            {"$set": {"quantity": quantity, "updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True
        )
        if quantity < current + requested_qty:
            logger.info(
                "Cart quantity clamped to stock",
                extra={"user_id": session.user_id, "product_id": product_id}
            )
        return await self.db.cart_items.find_one(key)

    async def set_quantity(self, session: Session, item_id: str, new_qty: int) -> bool:
        """Returns False when the quantity is outside 1..stock and nothing was written."""
        item = await self.db.cart_items.find_one({"_id": str_to_oid(item_id), "user_id": session.user_id})
        if not item:
            raise NotFoundException("Cart item not found")

        product = await self.db.products.find_one({"_id": str_to_oid(item["product_id"])})
        stock = product.get("stock_quantity", 0) if product else 0
        if new_qty < 1 or new_qty > stock:
            return False

        await self.db.cart_items.update_one(
            {"_id": item["_id"]},
            {"$set": {"quantity": new_qty, "updated_at": datetime.utcnow()}}
        )
        return True

    async def remove_item(self, session: Session, item_id: str):
        await self.db.cart_items.delete_one({"_id": str_to_oid(item_id), "user_id": session.user_id})

    async def clear(self, user_id: str) -> int:
        result = await self.db.cart_items.delete_many({"user_id": user_id})
        return result.deleted_count

    async def snapshot(self, session: Session) -> AsyncIterator[CartLine]:
        """Yield the user's cart lines, newest first, joined with current product data."""
        cursor = self.db.cart_items.find({"user_id": session.user_id}).sort("created_at", -1)
        items = await cursor.to_list(length=None)
        products = await self.catalog.get_products_by_ids(item["product_id"] for item in items)

        for item in items:
            product = products.get(item["product_id"])
            if product is None:
                continue
            yield CartLine(
                item_id=str(item["_id"]),
                product_id=item["product_id"],
                quantity=item["quantity"],
                added_at=item.get("created_at"),
                product=ProductSnapshot(
                    id=str(product["_id"]),
                    name=product["name"],
                    price=Decimal(str(product["price"])),
                    stock_quantity=product.get("stock_quantity", 0),
                    is_active=product.get("is_active", False),
                    images=product.get("images", []),
                ),
            )

    async def summary(self, session: Session) -> Tuple[List[CartLine], Decimal]:
        lines = [line async for line in self.snapshot(session)]
        total = sum((line.line_total for line in lines), Decimal(0))
        return lines, total
