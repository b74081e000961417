from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict
from decimal import Decimal
from shared.models import OrderStatus
from shared.security_config import sanitize_input, sanitize_mapping

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: Decimal = Field(..., ge=0, decimal_places=2)
    stock_quantity: int = Field(0, ge=0)
    category_id: Optional[str] = None
    specifications: Dict[str, str] = {}
    is_featured: bool = False
    is_active: bool = True

    @field_validator('name', 'description', 'category_id')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('specifications')
    def sanitize_specifications(cls, v):
        return sanitize_mapping(v)

class ProductPayload(ProductCreate):
    """Full product record plus the URLs of images already in the object store."""
    image_urls: List[str] = []

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    image_url: Optional[str] = None

    @field_validator('name', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class OrderStatusUpdate(BaseModel):
    status: OrderStatus

class ImageUploadResponse(BaseModel):
    bucket: str
    key: str
    url: str
