import logging
from datetime import datetime
from typing import List, Optional

from shared.models import CategoryDB, ProductDB
from shared.utils import CategoryInUseException, NotFoundException, ValidationException, str_to_oid
from services.admin.schemas import CategoryCreate, ProductCreate
from services.admin.storage import BUCKETS, ObjectStore

logger = logging.getLogger(__name__)

# Request-only fields that never reach the stored record
PAYLOAD_ONLY = {"image_urls"}


class AdminContentManager:
    """Back-office writes over products and categories. Deletes are hard deletes."""

    def __init__(self, db, object_store: ObjectStore):
        self.db = db
        self.object_store = object_store

    # --- Products ---

    async def list_products(self) -> List[dict]:
        cursor = self.db.products.find({}).sort("created_at", -1)
        return await cursor.to_list(length=None)

    async def get_product(self, product_id: str) -> dict:
        product = await self.db.products.find_one({"_id": str_to_oid(product_id)})
        if not product:
            raise NotFoundException("Product not found")
        return product

    async def create_product(self, record: ProductCreate, image_urls: List[str]) -> dict:
        await self._check_category(record.category_id)

        product_db = ProductDB(**record.dict(exclude=PAYLOAD_ONLY), images=clean_urls(image_urls))
        product_dict = product_db.dict(by_alias=True, exclude={"id"})
        product_dict["price"] = float(product_dict["price"])

        result = await self.db.products.insert_one(product_dict)
        logger.info("Product created", extra={"product_id": str(result.inserted_id)})
        return await self.db.products.find_one({"_id": result.inserted_id})

    async def update_product(self, product_id: str, record: ProductCreate, image_urls: List[str]) -> dict:
        existing = await self.get_product(product_id)
        await self._check_category(record.category_id)

        update_data = record.dict(exclude=PAYLOAD_ONLY)
        update_data["price"] = float(update_data["price"])
        update_data["images"] = clean_urls(image_urls)
        update_data["updated_at"] = datetime.utcnow()

        await self.db.products.update_one({"_id": existing["_id"]}, {"$set": update_data})
        await self._fit_carts_to_stock(product_id, record.stock_quantity, update_data["updated_at"])
        logger.info("Product updated", extra={"product_id": product_id})
        return await self.db.products.find_one({"_id": existing["_id"]})

    async def _fit_carts_to_stock(self, product_id: str, stock: int, now: datetime):
        # Persisted cart quantities never exceed stock; none left drops the rows
        if stock <= 0:
            await self.db.cart_items.delete_many({"product_id": product_id})
            return
        await self.db.cart_items.update_many(
            {"product_id": product_id, "quantity": {"$gt": stock}},
            {"$set": {"quantity": stock, "updated_at": now}}
        )

    async def delete_product(self, product_id: str):
        product = await self.get_product(product_id)
        await self.db.products.delete_one({"_id": product["_id"]})
        # Order items keep their reference; carts drop it
        await self.db.cart_items.delete_many({"product_id": product_id})
        logger.info("Product deleted", extra={"product_id": product_id})

    async def _check_category(self, category_id: Optional[str]):
        if category_id is None:
            return
        category = await self.db.categories.find_one({"_id": str_to_oid(category_id)})
        if not category:
            raise ValidationException("category_id", f"Invalid category: '{category_id}' not found")

    # --- Categories ---

    async def list_categories(self) -> List[dict]:
        cursor = self.db.categories.find({}).sort("created_at", -1)
        return await cursor.to_list(length=None)

    async def get_category(self, category_id: str) -> dict:
        category = await self.db.categories.find_one({"_id": str_to_oid(category_id)})
        if not category:
            raise NotFoundException("Category not found")
        return category

    async def create_category(self, record: CategoryCreate) -> dict:
        category_dict = CategoryDB(**record.dict()).dict(by_alias=True, exclude={"id"})
        result = await self.db.categories.insert_one(category_dict)
        logger.info("Category created", extra={"category_id": str(result.inserted_id)})
        return await self.db.categories.find_one({"_id": result.inserted_id})

    async def update_category(self, category_id: str, record: CategoryCreate) -> dict:
        existing = await self.get_category(category_id)
        await self.db.categories.update_one({"_id": existing["_id"]}, {"$set": record.dict()})
        logger.info("Category updated", extra={"category_id": category_id})
        return await self.db.categories.find_one({"_id": existing["_id"]})

    async def delete_category(self, category_id: str):
        """Refuse while an active product uses the category, otherwise detach inactive ones."""
        category = await self.get_category(category_id)

        in_use = await self.db.products.count_documents({"category_id": category_id, "is_active": True})
        if in_use:
            raise CategoryInUseException(category_id, in_use)

        detached = await self.db.products.update_many(
            {"category_id": category_id},
            {"$set": {"category_id": None, "updated_at": datetime.utcnow()}}
        )
        await self.db.categories.delete_one({"_id": category["_id"]})
        logger.info(
            f"Category deleted, {detached.modified_count} inactive products detached",
            extra={"category_id": category_id}
        )

    # --- Images ---

    async def upload_image(
        self, bucket: str, filename: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> str:
        if bucket not in BUCKETS:
            raise ValidationException("bucket", f"Unknown bucket: {bucket}")
        if not filename or not data:
            raise ValidationException("file", "An image file is required")
        return await self.object_store.upload(bucket, object_key(filename), data, content_type)


def object_key(filename: str, now: Optional[datetime] = None) -> str:
    """``<millisecond timestamp>-<filename>`` with path separators flattened."""
    now = now or datetime.utcnow()
    safe_name = filename.replace("/", "_").replace("\\", "_").strip()
    return f"{int(now.timestamp() * 1000)}-{safe_name}"


def clean_urls(urls: List[str]) -> List[str]:
    return [url.strip() for url in urls if url and url.strip()]
