from fastapi import FastAPI, Depends, HTTPException, status, Query, Request, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
from typing import Optional, List

from shared.models import OrderStatus
from shared.utils import (
    get_db_client, settings, SuccessResponse, HealthResponse, ForbiddenException,
    serialize_doc, setup_exception_handlers
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter, AUTH_LIMIT
from shared.sessions import Session, SessionStore, get_session_store, require_session

from services.storefront.schemas import (
    UserLogin, Token, RefreshTokenRequest, ProductResponse, CategoryResponse,
    OrderResponse, OrderDetailResponse
)
from services.storefront.catalog import CatalogReader
from services.storefront.cart import CartStore
from services.storefront.profiles import ProfileStore
from services.storefront.payments import PaymentGateway
from services.storefront.orders import OrderLifecycleManager
from services.admin.schemas import ProductPayload, CategoryCreate, OrderStatusUpdate, ImageUploadResponse
from services.admin.content import AdminContentManager
from services.admin.guard import AdminGuard
from services.admin.storage import ObjectStore

# Setup Logging
logger = setup_logging("admin-service")

app = FastAPI(title="Admin Service")

# Security Setup
setup_rate_limiting(app)
setup_exception_handlers(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="admin-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

NOT_ADMIN_ACCOUNT = "Access denied. Your account is not an admin account."

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.DATABASE_NAME]

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Dependencies ---
def get_admin_guard(request: Request, sessions: SessionStore = Depends(get_session_store)) -> AdminGuard:
    return AdminGuard(request.app.mongodb, sessions, settings.ADMIN_SIGNOUT_DELAY_SECONDS)

async def require_admin(
    session: Session = Depends(require_session),
    guard: AdminGuard = Depends(get_admin_guard),
) -> Session:
    return await guard.require(session)

def get_object_store() -> ObjectStore:
    return ObjectStore.from_settings()

def get_content_manager(request: Request, object_store: ObjectStore = Depends(get_object_store)) -> AdminContentManager:
    return AdminContentManager(request.app.mongodb, object_store)

def get_order_manager(request: Request) -> OrderLifecycleManager:
    db = request.app.mongodb
    catalog = CatalogReader(db)
    return OrderLifecycleManager(
        db, CartStore(db, catalog), ProfileStore(db), catalog, PaymentGateway.from_settings()
    )

# --- Endpoints ---

# Auth
@app.post("/auth/login", response_model=SuccessResponse[Token])
@limiter.limit(AUTH_LIMIT)
async def login(
    credentials: UserLogin,
    request: Request,
    sessions: SessionStore = Depends(get_session_store),
    guard: AdminGuard = Depends(get_admin_guard),
):
    session = await sessions.sign_in(credentials.email, credentials.password)
    if not await guard.is_admin(session.user_id):
        await sessions.sign_out(session)
        logger.warning("Admin login refused", extra={"user_id": session.user_id})
        raise ForbiddenException(NOT_ADMIN_ACCOUNT)
    return SuccessResponse(data=Token(access_token=session.access_token, refresh_token=session.refresh_token))

@app.post("/auth/logout", response_model=SuccessResponse[dict])
async def logout(
    body: Optional[RefreshTokenRequest] = None,
    session: Session = Depends(require_session),
    sessions: SessionStore = Depends(get_session_store),
):
    if body is not None:
        session.refresh_token = body.refresh_token
    await sessions.sign_out(session)
    return SuccessResponse(message="Logged out successfully")

# Products
@app.get("/products", response_model=SuccessResponse[List[ProductResponse]])
async def list_products(
    admin: Session = Depends(require_admin),
    content: AdminContentManager = Depends(get_content_manager),
):
    products = await content.list_products()
    return SuccessResponse(data=[ProductResponse(**serialize_doc(doc)) for doc in products])

@app.get("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def get_product(
    product_id: str,
    admin: Session = Depends(require_admin),
    content: AdminContentManager = Depends(get_content_manager),
):
    product = await content.get_product(product_id)
    return SuccessResponse(data=ProductResponse(**serialize_doc(product)))

@app.post("/products", response_model=SuccessResponse[ProductResponse])
async def create_product(
    payload: ProductPayload,
    admin: Session = Depends(require_admin),
    content: AdminContentManager = Depends(get_content_manager),
):
    product = await content.create_product(payload, payload.image_urls)
    return SuccessResponse(data=ProductResponse(**serialize_doc(product)), message="Product created successfully")

@app.put("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(
    product_id: str,
    payload: ProductPayload,
    admin: Session = Depends(require_admin),
    content: AdminContentManager = Depends(get_content_manager),
):
    product = await content.update_product(product_id, payload, payload.image_urls)
    return SuccessResponse(data=ProductResponse(**serialize_doc(product)), message="Product updated successfully")

@app.delete("/products/{product_id}", response_model=SuccessResponse[dict])
async def delete_product(
    product_id: str,
    admin: Session = Depends(require_admin),
    content: AdminContentManager = Depends(get_content_manager),
):
    await content.delete_product(product_id)
    return SuccessResponse(data={"id": product_id}, message="Product deleted successfully")

# Categories
@app.get("/categories", response_model=SuccessResponse[List[CategoryResponse]])
async def list_categories(
    admin: Session = Depends(require_admin),
    content: AdminContentManager = Depends(get_content_manager),
):
    categories = await content.list_categories()
    return SuccessResponse(data=[CategoryResponse(**serialize_doc(doc)) for doc in categories])

@app.post("/categories", response_model=SuccessResponse[CategoryResponse])
async def create_category(
    category: CategoryCreate,
    admin: Session = Depends(require_admin),
    content: AdminContentManager = Depends(get_content_manager),
):
    created = await content.create_category(category)
    return SuccessResponse(data=CategoryResponse(**serialize_doc(created)), message="Category created successfully")

@app.put("/categories/{category_id}", response_model=SuccessResponse[CategoryResponse])
async def update_category(
    category_id: str,
    category: CategoryCreate,
    admin: Session = Depends(require_admin),
    content: AdminContentManager = Depends(get_content_manager),
):
    updated = await content.update_category(category_id, category)
    return SuccessResponse(data=CategoryResponse(**serialize_doc(updated)), message="Category updated successfully")

@app.delete("/categories/{category_id}", response_model=SuccessResponse[dict])
async def delete_category(
    category_id: str,
    admin: Session = Depends(require_admin),
    content: AdminContentManager = Depends(get_content_manager),
):
    await content.delete_category(category_id)
    return SuccessResponse(data={"id": category_id}, message="Category deleted successfully")

# Images
@app.post("/uploads/{bucket}", response_model=SuccessResponse[ImageUploadResponse])
async def upload_image(
    bucket: str,
    file: UploadFile = File(...),
    admin: Session = Depends(require_admin),
    content: AdminContentManager = Depends(get_content_manager),
):
    data = await file.read()
    url = await content.upload_image(bucket, file.filename, data, file.content_type or "application/octet-stream")
    key = url.rsplit("/", 1)[-1]
    return SuccessResponse(data=ImageUploadResponse(bucket=bucket, key=key, url=url), message="Image uploaded")

# Orders
@app.get("/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    admin: Session = Depends(require_admin),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    orders = await manager.list_all_orders(status_filter, limit)
    return SuccessResponse(data=[OrderResponse.from_doc(doc) for doc in orders])

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderDetailResponse])
async def get_order(
    order_id: str,
    admin: Session = Depends(require_admin),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    detail = await manager.find_order(order_id)
    return SuccessResponse(data=OrderDetailResponse.from_detail(detail.order, detail.items))

@app.put("/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(
    order_id: str,
    update: OrderStatusUpdate,
    admin: Session = Depends(require_admin),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    order = await manager.transition_status(order_id, update.status)
    logger.info(f"Order status set to {order['status']}", extra={"user_id": admin.user_id, "order_id": order_id})
    return SuccessResponse(data=OrderResponse.from_doc(order), message="Order status updated")

@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "unhealthy"
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    status_code = "healthy" if db_status == "connected" else "unhealthy"

    if status_code == "unhealthy":
        logger.error(f"Health Check Failed: DB={db_status}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="admin-service",
        status=status_code,
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status
    )
