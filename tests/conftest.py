import json
import re
from datetime import datetime

import httpx
import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from shared.models import ShippingDetails
from shared.security_config import limiter
from shared.sessions import SessionStore
from services.admin.storage import ObjectStore
from services.storefront.cart import CartStore
from services.storefront.catalog import CatalogReader
from services.storefront.orders import OrderLifecycleManager
from services.storefront.payments import PaymentGateway
from services.storefront.profiles import ProfileStore

PASSWORD = "Passw0rdOK"
GATEWAY_URL = "https://gateway.test/v3"
STORAGE_URL = "https://storage.test"


class GatewayStub:
    """In-memory stand-in for the payment gateway's REST API."""

    def __init__(self):
        self.transactions = {}
        self.requests = []
        self.fail_initiate = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path.endswith("/payments"):
            if self.fail_initiate:
                return httpx.Response(503, json={"status": "error", "message": "Service unavailable"})
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "status": "success",
                "message": "Hosted Link",
                "data": {"link": f"https://checkout.test/pay/{body['tx_ref']}"},
            })

        match = re.search(r"/transactions/(?P<id>[^/]+)/verify$", request.url.path)
        if request.method == "GET" and match:
            transaction = self.transactions.get(match.group("id"))
            if transaction is None:
                return httpx.Response(404, json={"status": "error", "message": "No transaction was found"})
            return httpx.Response(200, json={"status": "success", "data": transaction})

        return httpx.Response(404, json={"status": "error"})

    def record(self, transaction_id: str, tx_ref: str, status: str = "successful"):
        self.transactions[str(transaction_id)] = {"id": transaction_id, "tx_ref": tx_ref, "status": status}

    def gateway(self) -> PaymentGateway:
        return PaymentGateway(
            GATEWAY_URL, "FLWSECK_TEST-key", "USD", "https://shop.test/orders",
            transport=httpx.MockTransport(self.handler),
        )


class StorageStub:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.uploads = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.uploads.append(request)
        return httpx.Response(self.status_code, json={"Key": request.url.path})

    def store(self) -> ObjectStore:
        return ObjectStore(STORAGE_URL, "service-key", transport=httpx.MockTransport(self.handler))


@pytest.fixture(autouse=True)
def no_rate_limits():
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def db():
    return AsyncMongoMockClient()["storefront_test"]


@pytest.fixture
async def sessions(db):
    store = SessionStore(db)
    await store.ensure_indexes()
    return store


@pytest.fixture
def make_user(sessions):
    async def _make(email: str = "buyer@example.com"):
        await sessions.register(email, PASSWORD)
        return await sessions.sign_in(email, PASSWORD)
    return _make


@pytest.fixture
async def session(make_user):
    return await make_user()


@pytest.fixture
def make_product(db):
    async def _make(name="Widget", price=10.0, stock=5, is_active=True, **extra) -> str:
        doc = {
            "_id": ObjectId(),
            "name": name,
            "description": "",
            "price": price,
            "stock_quantity": stock,
            "category_id": None,
            "images": [f"https://img.test/{name.lower()}.png"],
            "specifications": {},
            "is_featured": False,
            "is_active": is_active,
            "created_at": datetime.utcnow(),
        }
        doc.update(extra)
        await db.products.insert_one(doc)
        return str(doc["_id"])
    return _make


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def storage_stub():
    return StorageStub()


@pytest.fixture
def catalog(db):
    return CatalogReader(db)


@pytest.fixture
async def cart(db, catalog):
    store = CartStore(db, catalog)
    await store.ensure_indexes()
    return store


@pytest.fixture
def profiles(db):
    return ProfileStore(db)


@pytest.fixture
async def manager(db, cart, profiles, catalog, gateway_stub):
    lifecycle = OrderLifecycleManager(db, cart, profiles, catalog, gateway_stub.gateway())
    await lifecycle.ensure_indexes()
    return lifecycle


@pytest.fixture
def details():
    return ShippingDetails(
        full_name="Ada Buyer",
        phone="+15550100",
        street="1 Main St",
        city="Springfield",
        state="IL",
        country="US",
        postal_code="62701",
    )
