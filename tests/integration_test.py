#!/usr/bin/env python3
"""
Integration Test Suite for the Storefront

Usage:
    1. Start both services:
         uvicorn services.storefront.main:app --port 8000
         uvicorn services.admin.main:app --port 8001
    2. Flag an existing account as admin in ``admin_users`` and export
       ADMIN_EMAIL / ADMIN_PASSWORD for it.
    3. Install dependencies: pip install requests
    4. Run the script: python tests/integration_test.py

This script tests the full flow:
    - Authentication (Register/Login)
    - Catalog Management through the admin service
    - Shopping Cart
    - Checkout and Order Tracking
    - Payment Callbacks
    - Fulfillment and Security/Negative Tests

Output:
    - Console logs with pass/fail status
    - integration_test_results.json report
"""
import requests
import json
import os
import time
import sys
from datetime import datetime
from typing import Dict, Any

# Configuration
STOREFRONT_URL = os.getenv("STOREFRONT_URL", "http://localhost:8000")
ADMIN_URL = os.getenv("ADMIN_URL", "http://localhost:8001")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@test.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "Password123!")
RESULTS_FILE = "integration_test_results.json"

CHECKOUT_DETAILS = {
    "full_name": "Test User",
    "phone": "+15550100",
    "street": "123 Test St",
    "city": "Testville",
    "state": "TS",
    "country": "US",
    "postal_code": "00000",
}

# Colors
class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'

class TestRunner:
    def __init__(self):
        self.results = []
        self.session = requests.Session()
        self.store: Dict[str, Any] = {}
        self.start_time = time.time()

    def log(self, message: str, color: str = Colors.ENDC):
        print(f"{color}{message}{Colors.ENDC}")

    def save_result(self, name: str, status: str, duration: float, error: str = None):
        self.results.append({
            "test_name": name,
            "status": status,
            "duration": duration,
            "error": error,
            "timestamp": datetime.utcnow().isoformat()
        })
        color = Colors.GREEN if status == "PASS" else Colors.FAIL
        self.log(f"[{status}] {name} ({duration:.4f}s)", color)
        if error:
            self.log(f"  Error: {error}", Colors.FAIL)

    def run_test(self, name: str, func, *args, **kwargs):
        start = time.time()
        try:
            func(*args, **kwargs)
            duration = time.time() - start
            self.save_result(name, "PASS", duration)
        except AssertionError as e:
            duration = time.time() - start
            self.save_result(name, "FAIL", duration, str(e))
        except Exception as e:
            duration = time.time() - start
            self.save_result(name, "ERROR", duration, str(e))

    def assert_status(self, response, expected: int):
        if response.status_code != expected:
            raise AssertionError(f"Expected status {expected}, got {response.status_code}. Body: {response.text}")

    def auth(self, key: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.store[key]}"}

    def save_report(self):
        with open(RESULTS_FILE, "w") as f:
            json.dump({
                "summary": {
                    "total": len(self.results),
                    "passed": len([r for r in self.results if r["status"] == "PASS"]),
                    "failed": len([r for r in self.results if r["status"] != "PASS"]),
                    "total_duration": time.time() - self.start_time
                },
                "results": self.results
            }, f, indent=2)
        self.log(f"\nTest results saved to {RESULTS_FILE}", Colors.BLUE)

# --- Test Functions ---

def test_health_check(runner: TestRunner):
    for url in (STOREFRONT_URL, ADMIN_URL):
        resp = runner.session.get(f"{url}/health")
        runner.assert_status(resp, 200)
        if resp.json()["status"] != "healthy":
            raise AssertionError(f"{url} is not healthy")

# Phase 1: Authentication

def register_user(runner: TestRunner):
    user_data = {
        "email": f"user_{int(time.time())}@test.com",
        "password": "Password123!",
        "full_name": "Test User"
    }
    resp = runner.session.post(f"{STOREFRONT_URL}/auth/register", json=user_data)
    runner.assert_status(resp, 200)
    runner.store["user_email"] = user_data["email"]
    runner.store["user_password"] = user_data["password"]

def login_users(runner: TestRunner):
    resp = runner.session.post(f"{STOREFRONT_URL}/auth/login", json={
        "email": runner.store["user_email"],
        "password": runner.store["user_password"]
    })
    runner.assert_status(resp, 200)
    runner.store["user_token"] = resp.json()["data"]["access_token"]

    resp = runner.session.post(f"{ADMIN_URL}/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    runner.assert_status(resp, 200)
    runner.store["admin_token"] = resp.json()["data"]["access_token"]

def shopper_cannot_use_admin(runner: TestRunner):
    resp = runner.session.post(f"{ADMIN_URL}/auth/login", json={
        "email": runner.store["user_email"],
        "password": runner.store["user_password"]
    })
    runner.assert_status(resp, 403)

# Phase 2: Catalog

def create_catalog(runner: TestRunner):
    headers = runner.auth("admin_token")
    resp = runner.session.post(f"{ADMIN_URL}/categories", json={"name": "Electronics"}, headers=headers)
    runner.assert_status(resp, 200)
    runner.store["category_id"] = resp.json()["data"]["id"]

    product_data = {
        "name": "Integration Test Product",
        "description": "A very nice product",
        "price": 99.99,
        "stock_quantity": 3,
        "category_id": runner.store["category_id"],
        "image_urls": [],
    }
    resp = runner.session.post(f"{ADMIN_URL}/products", json=product_data, headers=headers)
    runner.assert_status(resp, 200)
    runner.store["product_id"] = resp.json()["data"]["id"]

def list_products(runner: TestRunner):
    resp = runner.session.get(f"{STOREFRONT_URL}/products", params={"search": "Integration Test"})
    runner.assert_status(resp, 200)
    products = resp.json()["data"]["products"]
    if not any(p["id"] == runner.store["product_id"] for p in products):
        raise AssertionError("Created product not found in list")

def category_in_use(runner: TestRunner):
    resp = runner.session.delete(f"{ADMIN_URL}/categories/{runner.store['category_id']}", headers=runner.auth("admin_token"))
    runner.assert_status(resp, 409)

# Phase 3: Cart

def add_to_cart(runner: TestRunner):
    data = {"product_id": runner.store["product_id"], "quantity": 5}
    resp = runner.session.post(f"{STOREFRONT_URL}/cart/items", json=data, headers=runner.auth("user_token"))
    runner.assert_status(resp, 200)
    items = resp.json()["data"]["items"]
    if items[0]["quantity"] != 3:
        raise AssertionError("Cart quantity was not capped at stock")

# Phase 4: Checkout

def checkout(runner: TestRunner):
    resp = runner.session.post(f"{STOREFRONT_URL}/checkout", json=CHECKOUT_DETAILS, headers=runner.auth("user_token"))
    runner.assert_status(resp, 200)
    data = resp.json()["data"]
    order = data["order"]
    runner.store["order_id"] = order["id"]
    runner.store["order_number"] = order["order_number"]
    if order["status"] != "pending":
        raise AssertionError("Order status should be pending")
    if not data["payment_link"] and not data["payment_error"]:
        raise AssertionError("Checkout returned neither a payment link nor an error")

def cart_kept_until_paid(runner: TestRunner):
    resp = runner.session.get(f"{STOREFRONT_URL}/cart", headers=runner.auth("user_token"))
    runner.assert_status(resp, 200)
    if not resp.json()["data"]["items"]:
        raise AssertionError("Cart cleared before payment")

# Phase 5: Payment callbacks

def webhook_signature(runner: TestRunner):
    payload = {"event": "charge.completed", "data": {"id": 1, "tx_ref": runner.store["order_number"], "status": "successful"}}
    resp = runner.session.post(f"{STOREFRONT_URL}/payments/webhook", json=payload, headers={"verif-hash": "forged"})
    runner.assert_status(resp, 401)

def unverified_callback(runner: TestRunner):
    params = {"tx_ref": runner.store["order_number"], "status": "cancelled"}
    resp = runner.session.get(f"{STOREFRONT_URL}/payments/callback", params=params)
    runner.assert_status(resp, 200)
    order = resp.json()["data"]
    if order["payment_status"] != "pending" or order["status"] != "pending":
        raise AssertionError(f"Unverified callback changed the order: {order['status']}/{order['payment_status']}")

# Phase 6: Fulfillment

def ship_unpaid_order(runner: TestRunner):
    resp = runner.session.put(
        f"{ADMIN_URL}/orders/{runner.store['order_id']}/status",
        json={"status": "shipped"},
        headers=runner.auth("admin_token")
    )
    runner.assert_status(resp, 409)

def cancel_order(runner: TestRunner):
    resp = runner.session.put(f"{STOREFRONT_URL}/orders/{runner.store['order_id']}/cancel", headers=runner.auth("user_token"))
    runner.assert_status(resp, 200)
    if resp.json()["data"]["status"] != "cancelled":
        raise AssertionError("Order was not cancelled")

# Phase 7: Negative Tests

def negative_tests(runner: TestRunner):
    # Invalid Token
    headers = {"Authorization": "Bearer invalid_token"}
    resp = runner.session.get(f"{STOREFRONT_URL}/cart", headers=headers)
    if resp.status_code != 401:
        raise AssertionError(f"Expected 401 for invalid token, got {resp.status_code}")

    # Missing address field
    details = dict(CHECKOUT_DETAILS, city="")
    runner.session.post(
        f"{STOREFRONT_URL}/cart/items", json={"product_id": runner.store["product_id"]}, headers=runner.auth("user_token")
    )
    resp = runner.session.post(f"{STOREFRONT_URL}/checkout", json=details, headers=runner.auth("user_token"))
    if resp.status_code != 422:
        raise AssertionError(f"Expected 422 for missing city, got {resp.status_code}")

    # Bad Data (Product create with negative price)
    bad_product = {"name": "Bad", "price": -10}
    resp = runner.session.post(f"{ADMIN_URL}/products", json=bad_product, headers=runner.auth("admin_token"))
    if resp.status_code != 422:
        raise AssertionError(f"Expected 422 for negative price, got {resp.status_code}")


def main():
    runner = TestRunner()
    runner.log("Starting Integration Tests...\n", Colors.HEADER)

    # 1. Health
    runner.run_test("Health Check", test_health_check, runner)

    # 2. Auth
    runner.run_test("Register User", register_user, runner)
    runner.run_test("Login Users", login_users, runner)
    runner.run_test("Shopper Refused By Admin", shopper_cannot_use_admin, runner)

    # 3. Catalog
    runner.run_test("Create Catalog", create_catalog, runner)
    runner.run_test("List Products", list_products, runner)
    runner.run_test("Category In Use", category_in_use, runner)

    # 4. Cart
    runner.run_test("Add to Cart", add_to_cart, runner)

    # 5. Checkout
    runner.run_test("Checkout", checkout, runner)
    runner.run_test("Cart Kept Until Paid", cart_kept_until_paid, runner)

    # 6. Payment
    runner.run_test("Webhook Signature", webhook_signature, runner)
    runner.run_test("Unverified Callback Ignored", unverified_callback, runner)

    # 7. Fulfillment
    runner.run_test("Ship Unpaid Order", ship_unpaid_order, runner)
    runner.run_test("Cancel Order", cancel_order, runner)

    # 8. Negative
    runner.run_test("Negative Tests", negative_tests, runner)

    runner.save_report()

    # Exit code
    if any(r["status"] != "PASS" for r in runner.results):
        sys.exit(1)

if __name__ == "__main__":
    main()
