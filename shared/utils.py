from datetime import datetime, timedelta
from typing import Optional, Generic, TypeVar, Any
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from passlib.context import CryptContext
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt
from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    DATABASE_NAME: str = "storefront_db"
    SECRET_KEY: str = "secret"
    REFRESH_SECRET_KEY: str = "refresh_secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    PAYMENT_GATEWAY_URL: str = "https://api.flutterwave.com/v3"
    PAYMENT_GATEWAY_SECRET_KEY: str = "FLWSECK_TEST-secret"
    PAYMENT_WEBHOOK_HASH: str = "webhook_hash"
    PAYMENT_CURRENCY: str = "USD"
    PAYMENT_REDIRECT_URL: str = "http://localhost:8081/orders"

    OBJECT_STORE_URL: str = "http://storage:5000"
    OBJECT_STORE_KEY: str = "storage_key"

    ADMIN_SIGNOUT_DELAY_SECONDS: float = 2.0

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

def str_to_oid(id: str) -> ObjectId:
    try:
        return ObjectId(id)
    except (InvalidId, TypeError):
        raise NotFoundException("Invalid ID format")

def serialize_doc(doc: dict) -> dict:
    """Copy a stored document, exposing ``_id`` as a string ``id``."""
    data = {k: v for k, v in doc.items() if k != "_id"}
    data["id"] = str(doc["_id"])
    return data

# --- Authentication ---
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    # Add JTI
    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def create_refresh_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)

    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.REFRESH_SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise UnauthorizedException("Could not validate credentials")

def verify_refresh_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.REFRESH_SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise UnauthorizedException("Could not validate refresh token")

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: Optional[str] = None
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    code = "app_error"

    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None,
        details: Optional[Any] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.details = details

class NotFoundException(AppException):
    code = "not_found"

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    code = "unauthorized"

    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    code = "forbidden"

    def __init__(self, detail: str = "Access denied"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class ValidationException(AppException):
    code = "validation_error"

    def __init__(self, field: str, detail: Optional[str] = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail or f"{field} is required",
            details={"field": field}
        )
        self.field = field

class StoreException(AppException):
    code = "store_error"

    def __init__(self, detail: str = "Data store unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)

class InvalidAddressException(ValidationException):
    code = "invalid_address"

    def __init__(self, field: str):
        super().__init__(field, detail=f"Please enter your {field.replace('_', ' ')}")

class EmptyCartException(AppException):
    code = "empty_cart"

    def __init__(self, detail: str = "Cart is empty"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class OutOfStockException(AppException):
    code = "out_of_stock"

    def __init__(self, product_id: str, detail: Optional[str] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail or "Product is out of stock",
            details={"product_id": product_id}
        )

class ProductUnavailableException(AppException):
    code = "product_unavailable"

    def __init__(self, product_id: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="Product is not available for purchase",
            details={"product_id": product_id}
        )

class CategoryInUseException(AppException):
    code = "category_in_use"

    def __init__(self, category_id: str, product_count: int):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="Category is referenced by active products",
            details={"category_id": category_id, "active_products": product_count}
        )

class InvalidTransitionException(AppException):
    code = "invalid_transition"

    def __init__(self, current: str, requested: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot move order from {current} to {requested}",
            details={"current": current, "requested": requested}
        )

class PartialOrderWriteException(AppException):
    """Order row exists but its item batch did not fully land. Needs manual reconciliation."""
    code = "partial_order_write"

    def __init__(self, order_id: str, order_number: str, items_written: int, items_expected: int):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Order {order_number} was created but only {items_written} of {items_expected} items were saved",
            details={
                "order_id": order_id,
                "order_number": order_number,
                "items_written": items_written,
                "items_expected": items_expected,
            }
        )
        self.order_id = order_id
        self.order_number = order_number
        self.items_written = items_written
        self.items_expected = items_expected

class PaymentGatewayException(AppException):
    code = "payment_gateway_error"

    def __init__(self, detail: str = "Payment gateway unavailable"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)

class ObjectStoreException(AppException):
    code = "object_store_error"

    def __init__(self, detail: str = "Object store unavailable"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    body = ErrorResponse(error=exc.detail, code=exc.code, details=exc.details)
    return JSONResponse(status_code=exc.status_code, content=body.dict(), headers=exc.headers)

async def store_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return await app_exception_handler(request, StoreException(str(exc)))

def setup_exception_handlers(app: FastAPI):
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(PyMongoError, store_exception_handler)
