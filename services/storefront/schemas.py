from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List, Dict, Union
from decimal import Decimal
from datetime import datetime
from shared.models import Address, OrderStatus, PaymentStatus, STATUS_DISPLAY, ShippingDetails
from shared.security_config import sanitize_input, validate_password_strength
from services.storefront.orders import order_totals

# --- Auth ---
class UserRegister(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    full_name: str = Field(..., min_length=1)
    phone: Optional[str] = None

    @field_validator('password')
    def password_complexity(cls, v):
        if not validate_password_strength(v):
            raise ValueError('Password must be at least 8 characters long and contain uppercase, lowercase, and numbers')
        return v

    @field_validator('full_name', 'phone')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"

class RefreshTokenRequest(BaseModel):
    refresh_token: str

class CurrentUser(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: str

# --- Catalog ---
class ProductResponse(BaseModel):
    id: str
    name: str
    description: str = ""
    price: Decimal
    stock_quantity: int
    category_id: Optional[str] = None
    images: List[str] = []
    specifications: Dict[str, str] = {}
    is_featured: bool
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    total: int
    page: int
    limit: int

class CategoryResponse(BaseModel):
    id: str
    name: str
    description: str = ""
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None

# --- Cart ---
class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, gt=0)

class CartItemUpdate(BaseModel):
    quantity: int

class CartLineResponse(BaseModel):
    id: str
    product_id: str
    name: str
    quantity: int
    price: Decimal
    stock_quantity: int
    image_url: Optional[str] = None
    line_total: Decimal

class CartResponse(BaseModel):
    items: List[CartLineResponse]
    total: Decimal
    item_count: int

# --- Profile ---
class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None

    @field_validator('full_name', 'phone')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ProfileResponse(BaseModel):
    user_id: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Address

# --- Orders ---
class CheckoutRequest(ShippingDetails):
    @field_validator('full_name', 'phone', 'street', 'city', 'state', 'country', 'postal_code')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class OrderItemResponse(BaseModel):
    id: str
    product_id: str
    quantity: int
    price: Decimal
    product_name: Optional[str] = None
    image_url: Optional[str] = None

class OrderResponse(BaseModel):
    id: str
    order_number: str
    total_amount: Decimal
    status: OrderStatus
    status_label: str
    status_color: str
    payment_status: PaymentStatus
    payment_reference: Optional[str] = None
    shipping_address: Address
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "OrderResponse":
        display = STATUS_DISPLAY[OrderStatus(doc["status"])]
        return cls(
            id=str(doc["_id"]),
            order_number=doc["order_number"],
            total_amount=Decimal(str(doc["total_amount"])),
            status=doc["status"],
            status_label=display.label,
            status_color=display.color,
            payment_status=doc["payment_status"],
            payment_reference=doc.get("payment_reference"),
            shipping_address=doc.get("shipping_address") or {},
            created_at=doc["created_at"],
            updated_at=doc.get("updated_at"),
        )

class OrderDetailResponse(OrderResponse):
    items: List[OrderItemResponse]
    item_count: int

    @classmethod
    def from_detail(cls, order: dict, items: List[dict]) -> "OrderDetailResponse":
        """Order plus its stored items, each joined with its product when it still exists."""
        item_responses = []
        for item in items:
            product = item.get("product")
            images = product.get("images", []) if product else []
            item_responses.append(OrderItemResponse(
                id=str(item["_id"]),
                product_id=item["product_id"],
                quantity=item["quantity"],
                price=Decimal(str(item["price"])),
                product_name=product["name"] if product else None,
                image_url=images[0] if images else None,
            ))
        _, unit_count = order_totals(items)
        return cls(
            **OrderResponse.from_doc(order).dict(),
            items=item_responses,
            item_count=unit_count
        )

class CheckoutResponse(BaseModel):
    order: OrderDetailResponse
    payment_link: Optional[str] = None
    payment_error: Optional[str] = None

class PaymentLinkResponse(BaseModel):
    order_id: str
    payment_link: str

# --- Payment callbacks ---
class WebhookTransaction(BaseModel):
    id: Union[int, str]
    tx_ref: str
    status: str

class PaymentWebhook(BaseModel):
    event: Optional[str] = None
    data: WebhookTransaction
