"""Client for the hosted payment gateway (Flutterwave v3 style REST API).

The storefront never moves money itself: it asks the gateway for a hosted
checkout link bound to the order number (``tx_ref``) and later learns the
outcome through the redirect callback or the webhook.
"""
import logging
from decimal import Decimal
from typing import Optional

import httpx

from shared.utils import settings, PaymentGatewayException

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"successful", "completed"}


class PaymentGateway:
    def __init__(
        self,
        base_url: str,
        secret_key: str,
        currency: str,
        redirect_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.currency = currency
        self.redirect_url = redirect_url
        self.transport = transport
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "PaymentGateway":
        return cls(
            base_url=settings.PAYMENT_GATEWAY_URL,
            secret_key=settings.PAYMENT_GATEWAY_SECRET_KEY,
            currency=settings.PAYMENT_CURRENCY,
            redirect_url=settings.PAYMENT_REDIRECT_URL,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            transport=self.transport,
            timeout=self.timeout,
        )

    async def initiate_payment(self, order_number: str, amount: Decimal, customer: dict) -> str:
        """Start a hosted payment and return the link the customer is sent to."""
        payload = {
            "tx_ref": order_number,
            "amount": str(amount),
            "currency": self.currency,
            "redirect_url": self.redirect_url,
            "customer": {
                "email": customer.get("email"),
                "phonenumber": customer.get("phone"),
                "name": customer.get("full_name"),
            },
            "customizations": {"title": f"Order {order_number}"},
        }
        async with self._client() as client:
            try:
                response = await client.post("/payments", json=payload)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                raise PaymentGatewayException(f"Payment gateway rejected request: {e.response.status_code}")
            except httpx.RequestError:
                raise PaymentGatewayException("Payment gateway unavailable")
            except ValueError:
                raise PaymentGatewayException("Payment gateway returned an invalid response")

        if data.get("status") != "success" or not (data.get("data") or {}).get("link"):
            raise PaymentGatewayException(data.get("message") or "Payment gateway returned no link")

        logger.info("Payment initiated", extra={"order_number": order_number})
        return data["data"]["link"]

    async def verify_transaction(self, transaction_id: str) -> dict:
        """Look up a transaction by gateway id. Returns the gateway's ``data`` object."""
        async with self._client() as client:
            try:
                response = await client.get(f"/transactions/{transaction_id}/verify")
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                raise PaymentGatewayException(f"Transaction lookup failed: {e.response.status_code}")
            except httpx.RequestError:
                raise PaymentGatewayException("Payment gateway unavailable")
            except ValueError:
                raise PaymentGatewayException("Payment gateway returned an invalid response")
        return data.get("data") or {}

    async def confirm_transaction(self, transaction_id: str, order_number: str) -> dict:
        """Verified transaction for ``order_number``; a transaction for another order is rejected."""
        transaction = await self.verify_transaction(transaction_id)
        if transaction.get("tx_ref") != order_number:
            raise PaymentGatewayException("Transaction does not belong to this order")
        return transaction
