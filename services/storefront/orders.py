"""Order lifecycle: checkout, payment hand-off, reconciliation and fulfillment.

Orders move through::

    pending -> processing -> shipped -> delivered
    pending/processing -> cancelled

``pending -> processing`` only happens when the payment gateway reports a
successful payment. The checkout steps run strictly in sequence and are not
transactional: the profile upsert is kept even if the order insert fails, and
an order whose item batch fails is left in place and reported as a partial
write for manual reconciliation.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError

from shared.models import (
    ALLOWED_TRANSITIONS, CartLine, OrderDB, OrderItemDB, OrderStatus, PaymentStatus,
    ShippingDetails
)
from shared.sessions import Session
from shared.utils import (
    EmptyCartException, InvalidAddressException, InvalidTransitionException,
    NotFoundException, OutOfStockException, PartialOrderWriteException,
    PaymentGatewayException, ProductUnavailableException, StoreException, str_to_oid
)
from services.storefront.cart import CartStore
from services.storefront.catalog import CatalogReader
from services.storefront.payments import PaymentGateway
from services.storefront.profiles import ProfileStore

logger = logging.getLogger(__name__)

REQUIRED_ADDRESS_FIELDS = ("full_name", "phone", "street", "city", "state", "country")
ORDER_NUMBER_ATTEMPTS = 3
CENTS = Decimal("0.01")


def generate_order_number() -> str:
    """Human readable, collision resistant: date prefix plus 48 random bits."""
    return f"ORD-{datetime.utcnow():%Y%m%d}-{uuid.uuid4().hex[:12].upper()}"


def unit_price(line: CartLine) -> Decimal:
    """Snapshot price rounded to cents; the order total and its items both use it."""
    return line.product.price.quantize(CENTS)


@dataclass
class CheckoutResult:
    order: dict
    items: List[dict]
    payment_link: Optional[str] = None
    payment_error: Optional[str] = None


@dataclass
class OrderDetail:
    order: dict
    items: List[dict] = field(default_factory=list)


class OrderLifecycleManager:
    def __init__(
        self,
        db,
        cart: CartStore,
        profiles: ProfileStore,
        catalog: CatalogReader,
        gateway: PaymentGateway,
        order_number_factory: Callable[[], str] = generate_order_number,
    ):
        self.db = db
        self.cart = cart
        self.profiles = profiles
        self.catalog = catalog
        self.gateway = gateway
        self.order_number_factory = order_number_factory

    async def ensure_indexes(self):
        await self.db.orders.create_index("order_number", unique=True)
        await self.db.orders.create_index([("user_id", 1), ("created_at", -1)])
        await self.db.order_items.create_index("order_id")

    # --- Checkout ---

    async def place_order(self, session: Session, snapshot: List[CartLine], details: ShippingDetails) -> CheckoutResult:
        # 1. Validate before any write
        if not snapshot:
            raise EmptyCartException()
        for name in REQUIRED_ADDRESS_FIELDS:
            value = getattr(details, name)
            if value is None or not value.strip():
                raise InvalidAddressException(name)
        for line in snapshot:
            if not line.product.is_active:
                raise ProductUnavailableException(line.product_id)
            if line.quantity > line.product.stock_quantity:
                raise OutOfStockException(
                    line.product_id,
                    f"Only {line.product.stock_quantity} of {line.product.name} left in stock"
                )

        # 2. Profile upsert happens regardless of what follows
        address = details.address()
        await self.profiles.upsert_profile(session.user_id, {
            "full_name": details.full_name,
            "phone": details.phone,
            "address": address,
        })

        # 3-5. Totals from snapshot prices, then the order row
        total = sum((unit_price(line) * line.quantity for line in snapshot), Decimal(0))
        contact = {"full_name": details.full_name, "phone": details.phone, "email": session.email}
        order_doc = await self._insert_order(session.user_id, total, address, contact)
        order_id = str(order_doc["_id"])

        # 6. Item batch
        items = await self._insert_items(order_doc, snapshot)

        logger.info(
            "Order placed",
            extra={"user_id": session.user_id, "order_id": order_id, "order_number": order_doc["order_number"]}
        )

        # 7. Payment hand-off
        result = CheckoutResult(order=order_doc, items=items)
        try:
            result.payment_link = await self.gateway.initiate_payment(order_doc["order_number"], total, contact)
        except PaymentGatewayException as e:
            logger.error(
                "Payment hand-off failed",
                extra={"order_id": order_id, "order_number": order_doc["order_number"]}
            )
            result.payment_error = e.detail
        return result

    async def _insert_order(self, user_id: str, total: Decimal, address, contact: dict) -> dict:
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            order_db = OrderDB(
                user_id=user_id,
                order_number=self.order_number_factory(),
                total_amount=total,
                shipping_address=address,
                contact=contact,
            )
            order_dict = order_db.dict(by_alias=True, exclude={"id"})
            order_dict["total_amount"] = float(order_dict["total_amount"])
            try:
                result = await self.db.orders.insert_one(order_dict)
            except DuplicateKeyError:
                logger.warning("Order number collision, regenerating", extra={"order_number": order_db.order_number})
                if attempt == ORDER_NUMBER_ATTEMPTS:
                    raise StoreException("Could not allocate a unique order number")
                continue
            order_dict["_id"] = result.inserted_id
            return order_dict

    async def _insert_items(self, order_doc: dict, snapshot: List[CartLine]) -> List[dict]:
        order_id = str(order_doc["_id"])
        items = []
        for line in snapshot:
            item = OrderItemDB(
                order_id=order_id,
                product_id=line.product_id,
                quantity=line.quantity,
                price=unit_price(line),
            ).dict(by_alias=True, exclude={"id"})
            item["price"] = float(item["price"])
            items.append(item)

        try:
            result = await self.db.order_items.insert_many(items, ordered=True)
        except BulkWriteError as e:
            raise self._partial_write(order_doc, e.details.get("nInserted", 0), len(items)) from e
        except PyMongoError as e:
            raise self._partial_write(order_doc, 0, len(items)) from e

        for item, inserted_id in zip(items, result.inserted_ids):
            item["_id"] = inserted_id
        return items

    def _partial_write(self, order_doc: dict, written: int, expected: int) -> PartialOrderWriteException:
        exc = PartialOrderWriteException(str(order_doc["_id"]), order_doc["order_number"], written, expected)
        logger.error(
            "Partial order write",
            extra={
                "order_id": exc.order_id,
                "order_number": exc.order_number,
                "items_written": written,
                "items_expected": expected,
            }
        )
        return exc

    async def initiate_payment(self, session: Session, order_id: str) -> str:
        """Restart the payment hand-off for an order that has not been paid yet."""
        order = await self._owned_order(session, order_id)
        if order["status"] != OrderStatus.PENDING.value:
            raise InvalidTransitionException(order["status"], OrderStatus.PROCESSING.value)
        if order["payment_status"] == PaymentStatus.COMPLETED.value:
            raise InvalidTransitionException(order["payment_status"], PaymentStatus.COMPLETED.value)

        total = Decimal(str(order["total_amount"])).quantize(CENTS)
        return await self.gateway.initiate_payment(order["order_number"], total, order.get("contact", {}))

    # --- Reconciliation ---

    async def reconcile_payment_success(self, order_number: str, reference: str) -> dict:
        order = await self.order_by_number(order_number)

        if order["payment_status"] != PaymentStatus.COMPLETED.value:
            update = {
                "payment_status": PaymentStatus.COMPLETED.value,
                "payment_reference": reference,
                "updated_at": datetime.utcnow(),
            }
            if order["status"] == OrderStatus.PENDING.value:
                update["status"] = OrderStatus.PROCESSING.value
            else:
                logger.warning(
                    "Payment completed for order that is no longer pending",
                    extra={"order_number": order_number, "payment_reference": reference}
                )
            await self.db.orders.update_one(
                {"_id": order["_id"], "payment_status": {"$ne": PaymentStatus.COMPLETED.value}},
                {"$set": update}
            )
            order = await self.order_by_number(order_number)
            logger.info("Payment reconciled", extra={"order_number": order_number, "payment_reference": reference})
        elif order.get("payment_reference") != reference:
            logger.warning(
                "Duplicate payment callback with a different reference",
                extra={"order_number": order_number, "payment_reference": reference}
            )

        # Finish an interrupted reconciliation, never clear twice
        if not order.get("cart_cleared"):
            await self.cart.clear(order["user_id"])
            await self.db.orders.update_one({"_id": order["_id"]}, {"$set": {"cart_cleared": True}})
            order["cart_cleared"] = True

        return order

    async def reconcile_payment_failure(self, order_number: str) -> dict:
        order = await self.order_by_number(order_number)
        if order["payment_status"] == PaymentStatus.COMPLETED.value:
            logger.warning("Ignoring failure callback for paid order", extra={"order_number": order_number})
            return order

        if order["payment_status"] != PaymentStatus.FAILED.value:
            await self.db.orders.update_one(
                {"_id": order["_id"], "payment_status": {"$ne": PaymentStatus.COMPLETED.value}},
                {"$set": {"payment_status": PaymentStatus.FAILED.value, "updated_at": datetime.utcnow()}}
            )
            order = await self.order_by_number(order_number)
            logger.info("Payment failed", extra={"order_number": order_number})
        return order

    # --- Fulfillment ---

    async def transition_status(self, order_id: str, new_status: OrderStatus) -> dict:
        order = await self._by_id(order_id)
        return await self._transition(order, OrderStatus(new_status))

    async def cancel_order(self, session: Session, order_id: str) -> dict:
        order = await self._owned_order(session, order_id)
        if order["status"] != OrderStatus.PENDING.value:
            raise InvalidTransitionException(order["status"], OrderStatus.CANCELLED.value)
        return await self._transition(order, OrderStatus.CANCELLED)

    async def _transition(self, order: dict, new_status: OrderStatus) -> dict:
        current = OrderStatus(order["status"])
        if current == new_status:
            return order
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionException(current.value, new_status.value)

        result = await self.db.orders.update_one(
            {"_id": order["_id"], "status": current.value},
            {"$set": {"status": new_status.value, "updated_at": datetime.utcnow()}}
        )
        if result.modified_count == 0:
            latest = await self.db.orders.find_one({"_id": order["_id"]})
            raise InvalidTransitionException(latest["status"], new_status.value)

        logger.info(
            f"Order moved from {current.value} to {new_status.value}",
            extra={"order_id": str(order["_id"]), "order_number": order["order_number"]}
        )
        return await self.db.orders.find_one({"_id": order["_id"]})

    # --- Reads ---

    async def list_orders(self, session: Session, limit: Optional[int] = None) -> List[dict]:
        cursor = self.db.orders.find({"user_id": session.user_id}).sort("created_at", -1)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=limit)

    async def list_all_orders(self, status: Optional[OrderStatus] = None, limit: int = 50) -> List[dict]:
        query = {"status": OrderStatus(status).value} if status else {}
        cursor = self.db.orders.find(query).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def get_order(self, session: Session, order_id: str) -> OrderDetail:
        order = await self._owned_order(session, order_id)
        items = await self.order_items(order)
        return OrderDetail(order=order, items=items)

    async def find_order(self, order_id: str) -> OrderDetail:
        """Any user's order, for back-office views."""
        order = await self._by_id(order_id)
        return OrderDetail(order=order, items=await self.order_items(order))

    async def order_items(self, order: dict) -> List[dict]:
        """Items of an order joined with their products in memory."""
        items = await self.db.order_items.find({"order_id": str(order["_id"])}).to_list(length=None)
        products = await self.catalog.get_products_by_ids(item["product_id"] for item in items)
        for item in items:
            item["product"] = products.get(item["product_id"])
        return items

    async def _owned_order(self, session: Session, order_id: str) -> dict:
        order = await self.db.orders.find_one({"_id": str_to_oid(order_id), "user_id": session.user_id})
        if not order:
            raise NotFoundException("Order not found")
        return order

    async def _by_id(self, order_id: str) -> dict:
        order = await self.db.orders.find_one({"_id": str_to_oid(order_id)})
        if not order:
            raise NotFoundException("Order not found")
        return order

    async def order_by_number(self, order_number: str) -> dict:
        order = await self.db.orders.find_one({"order_number": order_number})
        if not order:
            raise NotFoundException(f"Order {order_number} not found")
        return order


def order_totals(items: List[dict]) -> Tuple[Decimal, int]:
    """Sum of price x quantity and unit count over stored order items."""
    total = sum((Decimal(str(item["price"])) * item["quantity"] for item in items), Decimal(0))
    return total.quantize(CENTS), sum(item["quantity"] for item in items)
