import re
from decimal import Decimal
from typing import Optional, List, Dict, Iterable, Tuple

from shared.utils import NotFoundException, str_to_oid
from bson import ObjectId
from bson.errors import InvalidId


class CatalogReader:
    """Read-only queries over products and categories."""

    def __init__(self, db):
        self.db = db

    async def ensure_indexes(self):
        await self.db.products.create_index([("is_active", 1), ("created_at", -1)])
        await self.db.products.create_index("category_id")

    async def list_products(
        self,
        category_id: Optional[str] = None,
        search: Optional[str] = None,
        featured: Optional[bool] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[dict], int]:
        query = {"is_active": True}
        if category_id:
            query["category_id"] = category_id
        if featured is not None:
            query["is_featured"] = featured

        price_query = {}
        if min_price is not None:
            price_query["$gte"] = float(min_price)
        if max_price is not None:
            price_query["$lte"] = float(max_price)
        if price_query:
            query["price"] = price_query

        if search and search.strip():
            query["name"] = {"$regex": re.escape(search.strip()), "$options": "i"}

        skip = (page - 1) * limit
        total = await self.db.products.count_documents(query)
        cursor = self.db.products.find(query).sort("created_at", -1).skip(skip).limit(limit)
        products = await cursor.to_list(length=limit)
        return products, total

    async def featured_products(self, limit: int = 6) -> List[dict]:
        products, _ = await self.list_products(featured=True, limit=limit)
        return products

    async def get_product(self, product_id: str) -> dict:
        product = await self.db.products.find_one({"_id": str_to_oid(product_id), "is_active": True})
        if not product:
            raise NotFoundException("Product not found")
        return product

    async def get_products_by_ids(self, product_ids: Iterable[str]) -> Dict[str, dict]:
        """Fetch products (active or not) for an explicit join, keyed by string id."""
        oids = []
        for product_id in set(product_ids):
            try:
                oids.append(ObjectId(product_id))
            except (InvalidId, TypeError):
                continue
        if not oids:
            return {}
        cursor = self.db.products.find({"_id": {"$in": oids}})
        return {str(doc["_id"]): doc async for doc in cursor}

    async def list_categories(self, limit: Optional[int] = None) -> List[dict]:
        cursor = self.db.categories.find({}).sort("created_at", -1)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=limit)

    async def get_category(self, category_id: str) -> dict:
        category = await self.db.categories.find_one({"_id": str_to_oid(category_id)})
        if not category:
            raise NotFoundException("Category not found")
        return category
