from fastapi import FastAPI, Depends, HTTPException, status, Query, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from shared.utils import (
    get_db_client, settings, SuccessResponse, HealthResponse, UnauthorizedException,
    serialize_doc, setup_exception_handlers
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import (
    setup_rate_limiting, SecurityHeadersMiddleware, limiter, verify_webhook_hash,
    PUBLIC_READ_LIMIT, AUTH_LIMIT, CHECKOUT_LIMIT
)
from shared.sessions import Session, SessionStore, get_session_store, require_session

from services.storefront.schemas import (
    UserRegister, UserLogin, Token, RefreshTokenRequest, CurrentUser,
    ProductResponse, ProductListResponse, CategoryResponse,
    CartItemAdd, CartItemUpdate, CartLineResponse, CartResponse,
    ProfileUpdate, ProfileResponse, CheckoutRequest, CheckoutResponse,
    OrderResponse, OrderDetailResponse, PaymentLinkResponse, PaymentWebhook
)
from services.storefront.catalog import CatalogReader
from services.storefront.cart import CartStore
from services.storefront.profiles import ProfileStore
from services.storefront.payments import PaymentGateway, SUCCESS_STATUSES
from services.storefront.orders import OrderLifecycleManager

# Setup Logging
logger = setup_logging("storefront-service")

app = FastAPI(title="Storefront Service")

# Security Setup
setup_rate_limiting(app)
setup_exception_handlers(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="storefront-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.DATABASE_NAME]
    # Indexes
    catalog = CatalogReader(app.mongodb)
    cart = CartStore(app.mongodb, catalog)
    manager = OrderLifecycleManager(
        app.mongodb, cart, ProfileStore(app.mongodb), catalog, PaymentGateway.from_settings()
    )
    await SessionStore(app.mongodb).ensure_indexes()
    await catalog.ensure_indexes()
    await cart.ensure_indexes()
    await manager.ensure_indexes()

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Dependencies ---
def get_catalog(request: Request) -> CatalogReader:
    return CatalogReader(request.app.mongodb)

def get_cart_store(catalog: CatalogReader = Depends(get_catalog)) -> CartStore:
    return CartStore(catalog.db, catalog)

def get_profile_store(request: Request) -> ProfileStore:
    return ProfileStore(request.app.mongodb)

def get_payment_gateway() -> PaymentGateway:
    return PaymentGateway.from_settings()

def get_order_manager(
    cart: CartStore = Depends(get_cart_store),
    profiles: ProfileStore = Depends(get_profile_store),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> OrderLifecycleManager:
    return OrderLifecycleManager(cart.db, cart, profiles, cart.catalog, gateway)

# --- Helpers ---
def product_response(doc: dict) -> ProductResponse:
    return ProductResponse(**serialize_doc(doc))

async def cart_response(cart: CartStore, session: Session) -> CartResponse:
    lines, total = await cart.summary(session)
    return CartResponse(
        items=[
            CartLineResponse(
                id=line.item_id,
                product_id=line.product_id,
                name=line.product.name,
                quantity=line.quantity,
                price=line.product.price,
                stock_quantity=line.product.stock_quantity,
                image_url=line.product.images[0] if line.product.images else None,
                line_total=line.line_total,
            )
            for line in lines
        ],
        total=total,
        item_count=sum(line.quantity for line in lines),
    )

def profile_response(user_id: str, doc: Optional[dict]) -> ProfileResponse:
    doc = doc or {}
    return ProfileResponse(
        user_id=user_id,
        full_name=doc.get("full_name"),
        phone=doc.get("phone"),
        address=doc.get("address") or {},
    )

# --- Endpoints ---

# Auth
@app.post("/auth/register", response_model=SuccessResponse[CurrentUser])
@limiter.limit(AUTH_LIMIT)
async def register(
    user: UserRegister,
    request: Request,
    sessions: SessionStore = Depends(get_session_store),
    profiles: ProfileStore = Depends(get_profile_store),
):
    created = await sessions.register(user.email, user.password)
    user_id = str(created["_id"])
    await profiles.upsert_profile(user_id, {"full_name": user.full_name, "phone": user.phone})
    return SuccessResponse(
        data=CurrentUser(user_id=user_id, email=created["email"], role=created["role"]),
        message="User registered successfully"
    )

@app.post("/auth/login", response_model=SuccessResponse[Token])
@limiter.limit(AUTH_LIMIT)
async def login(credentials: UserLogin, request: Request, sessions: SessionStore = Depends(get_session_store)):
    session = await sessions.sign_in(credentials.email, credentials.password)
    return SuccessResponse(data=Token(access_token=session.access_token, refresh_token=session.refresh_token))

@app.post("/auth/refresh", response_model=SuccessResponse[Token])
async def refresh(body: RefreshTokenRequest, sessions: SessionStore = Depends(get_session_store)):
    session = await sessions.refresh(body.refresh_token)
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

@app.get("/auth/me", response_model=SuccessResponse[CurrentUser])
async def me(session: Session = Depends(require_session)):
    return SuccessResponse(data=CurrentUser(user_id=session.user_id, email=session.email, role=session.role))

# Catalog
@app.get("/products", response_model=SuccessResponse[ProductListResponse])
@limiter.limit(PUBLIC_READ_LIMIT)
async def list_products(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category_id: Optional[str] = None,
    search: Optional[str] = None,
    featured: Optional[bool] = None,
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    catalog: CatalogReader = Depends(get_catalog),
):
    products, total = await catalog.list_products(
        category_id=category_id, search=search, featured=featured,
        min_price=min_price, max_price=max_price, page=page, limit=limit
    )
    return SuccessResponse(data=ProductListResponse(
        products=[product_response(doc) for doc in products],
        total=total,
        page=page,
        limit=limit
    ))

@app.get("/products/featured", response_model=SuccessResponse[List[ProductResponse]])
@limiter.limit(PUBLIC_READ_LIMIT)
async def featured_products(
    request: Request,
    limit: int = Query(6, ge=1, le=50),
    catalog: CatalogReader = Depends(get_catalog),
):
    products = await catalog.featured_products(limit)
    return SuccessResponse(data=[product_response(doc) for doc in products])

@app.get("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
@limiter.limit(PUBLIC_READ_LIMIT)
async def get_product(product_id: str, request: Request, catalog: CatalogReader = Depends(get_catalog)):
    product = await catalog.get_product(product_id)
    return SuccessResponse(data=product_response(product))

@app.get("/categories", response_model=SuccessResponse[List[CategoryResponse]])
async def list_categories(
    limit: Optional[int] = Query(None, ge=1, le=100),
    catalog: CatalogReader = Depends(get_catalog),
):
    categories = await catalog.list_categories(limit)
    return SuccessResponse(data=[CategoryResponse(**serialize_doc(doc)) for doc in categories])

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
async def get_cart(session: Session = Depends(require_session), cart: CartStore = Depends(get_cart_store)):
    return SuccessResponse(data=await cart_response(cart, session))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(
    item: CartItemAdd,
    session: Session = Depends(require_session),
    cart: CartStore = Depends(get_cart_store),
):
    await cart.add_item(session, item.product_id, item.quantity)
    return SuccessResponse(data=await cart_response(cart, session), message="Added to cart")

@app.put("/cart/items/{item_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(
    item_id: str,
    update: CartItemUpdate,
    session: Session = Depends(require_session),
    cart: CartStore = Depends(get_cart_store),
):
    applied = await cart.set_quantity(session, item_id, update.quantity)
    message = "Quantity updated" if applied else "Quantity unchanged: outside available stock"
    return SuccessResponse(data=await cart_response(cart, session), message=message)

@app.delete("/cart/items/{item_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(
    item_id: str,
    session: Session = Depends(require_session),
    cart: CartStore = Depends(get_cart_store),
):
    await cart.remove_item(session, item_id)
    return SuccessResponse(data=await cart_response(cart, session))

# Profile
@app.get("/profile", response_model=SuccessResponse[ProfileResponse])
async def get_profile(session: Session = Depends(require_session), profiles: ProfileStore = Depends(get_profile_store)):
    profile = await profiles.get_profile(session.user_id)
    return SuccessResponse(data=profile_response(session.user_id, profile))

@app.put("/profile", response_model=SuccessResponse[ProfileResponse])
async def update_profile(
    update: ProfileUpdate,
    session: Session = Depends(require_session),
    profiles: ProfileStore = Depends(get_profile_store),
):
    # Merge partial edits with the stored record, the store only replaces
    current = await profiles.get_profile(session.user_id) or {}
    merged = {
        "full_name": current.get("full_name"),
        "phone": current.get("phone"),
        "address": current.get("address"),
    }
    merged.update({k: v for k, v in update.dict(exclude_unset=True).items() if v is not None})

    profile = await profiles.upsert_profile(session.user_id, merged)
    return SuccessResponse(data=profile_response(session.user_id, profile), message="Profile updated successfully")

# Orders
@app.post("/checkout", response_model=SuccessResponse[CheckoutResponse])
@limiter.limit(CHECKOUT_LIMIT)
async def checkout(
    details: CheckoutRequest,
    request: Request,
    session: Session = Depends(require_session),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    snapshot = [line async for line in manager.cart.snapshot(session)]
    result = await manager.place_order(session, snapshot, details)

    message = f"Order {result.order['order_number']} placed"
    if result.payment_error:
        message += "; payment could not be started, retry from the order page"
    return SuccessResponse(
        data=CheckoutResponse(
            order=OrderDetailResponse.from_detail(result.order, result.items),
            payment_link=result.payment_link,
            payment_error=result.payment_error,
        ),
        message=message
    )

@app.get("/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(
    limit: Optional[int] = Query(None, ge=1, le=100),
    session: Session = Depends(require_session),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    orders = await manager.list_orders(session, limit)
    return SuccessResponse(data=[OrderResponse.from_doc(doc) for doc in orders])

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderDetailResponse])
async def get_order(
    order_id: str,
    session: Session = Depends(require_session),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    detail = await manager.get_order(session, order_id)
    return SuccessResponse(data=OrderDetailResponse.from_detail(detail.order, detail.items))

@app.post("/orders/{order_id}/pay", response_model=SuccessResponse[PaymentLinkResponse])
@limiter.limit(CHECKOUT_LIMIT)
async def pay_order(
    order_id: str,
    request: Request,
    session: Session = Depends(require_session),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    link = await manager.initiate_payment(session, order_id)
    return SuccessResponse(data=PaymentLinkResponse(order_id=order_id, payment_link=link))

@app.put("/orders/{order_id}/cancel", response_model=SuccessResponse[OrderResponse])
async def cancel_order(
    order_id: str,
    session: Session = Depends(require_session),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    order = await manager.cancel_order(session, order_id)
    return SuccessResponse(data=OrderResponse.from_doc(order), message="Order cancelled")

# Payment callbacks
async def apply_gateway_result(manager: OrderLifecycleManager, order_number: str, transaction_id: str) -> dict:
    """Reconcile the order from the gateway's own record of the transaction."""
    transaction = await manager.gateway.confirm_transaction(transaction_id, order_number)
    if transaction.get("status") in SUCCESS_STATUSES:
        return await manager.reconcile_payment_success(order_number, str(transaction_id))
    return await manager.reconcile_payment_failure(order_number)

@app.post("/payments/webhook", response_model=SuccessResponse[OrderResponse])
async def payment_webhook(
    payload: PaymentWebhook,
    verif_hash: Optional[str] = Header(None, alias="verif-hash"),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    if not verify_webhook_hash(verif_hash, settings.PAYMENT_WEBHOOK_HASH):
        raise UnauthorizedException("Invalid webhook signature")

    order = await apply_gateway_result(manager, payload.data.tx_ref, str(payload.data.id))
    return SuccessResponse(data=OrderResponse.from_doc(order))

@app.get("/payments/callback", response_model=SuccessResponse[OrderResponse])
async def payment_callback(
    tx_ref: str,
    transaction_id: Optional[str] = None,
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    # Without a transaction to verify the redirect changes nothing
    if not transaction_id:
        order = await manager.order_by_number(tx_ref)
    else:
        order = await apply_gateway_result(manager, tx_ref, transaction_id)
    return SuccessResponse(data=OrderResponse.from_doc(order))

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
        service="storefront-service",
        status=status_code,
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status
    )
