from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict
from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class StatusDisplay(BaseModel):
    label: str
    color: str


STATUS_DISPLAY: Dict[OrderStatus, StatusDisplay] = {
    OrderStatus.PENDING: StatusDisplay(label="Pending", color="#999"),
    OrderStatus.PROCESSING: StatusDisplay(label="Processing", color="#fa0"),
    OrderStatus.SHIPPED: StatusDisplay(label="Shipped", color="#07f"),
    OrderStatus.DELIVERED: StatusDisplay(label="Delivered", color="#4a4"),
    OrderStatus.CANCELLED: StatusDisplay(label="Cancelled", color="#f44"),
}

# Fulfillment transitions. pending -> processing is reserved for payment reconciliation.
ALLOWED_TRANSITIONS: Dict[OrderStatus, set] = {
    OrderStatus.PENDING: {OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


class ProductDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    description: str = ""
    price: Decimal
    stock_quantity: int = 0
    category_id: Optional[str] = None
    images: List[str] = []
    specifications: Dict[str, str] = {}
    is_featured: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class CategoryDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    description: str = ""
    image_url: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class UserProfileDB(BaseModel):
    # Keyed by the owning user's id
    id: str = Field(..., alias="_id")
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Address = Field(default_factory=Address)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class OrderItemDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    order_id: str
    product_id: str
    quantity: int
    price: Decimal  # Snapshot
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    order_number: str
    total_amount: Decimal
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_reference: Optional[str] = None
    shipping_address: Address
    contact: Dict[str, Optional[str]] = {}
    cart_cleared: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True


class AdminUserDB(BaseModel):
    id: str = Field(..., alias="_id")
    is_admin: bool = False

    class Config:
        populate_by_name = True


class ProductSnapshot(BaseModel):
    """Product fields captured alongside a cart line."""
    id: str
    name: str
    price: Decimal
    stock_quantity: int
    is_active: bool
    images: List[str] = []


class CartLine(BaseModel):
    item_id: str
    product_id: str
    quantity: int
    product: ProductSnapshot
    added_at: Optional[datetime] = None

    @property
    def line_total(self) -> Decimal:
        return self.product.price * self.quantity


class ShippingDetails(BaseModel):
    """Contact and address submitted at checkout. Presence is checked by the checkout flow."""
    full_name: Optional[str] = None
    phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None

    def address(self) -> Address:
        return Address(
            street=self.street,
            city=self.city,
            state=self.state,
            country=self.country,
            postal_code=self.postal_code,
        )
