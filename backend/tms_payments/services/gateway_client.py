"""
Gateway Client — Adapter around the Razorpay REST API.

The core depends only on the GatewayClient contract: create an order, fetch a
payment, refund a payment. Every call is bounded by a timeout and either
returns an explicit result or raises; nothing is assumed to have succeeded.
"""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Dict, Optional

import requests
from pydantic import BaseModel

from tms_payments.config import DEMO_KEY_SECRET, Settings, get_settings
from tms_payments.exceptions import GatewayRejected, GatewayUnavailable
from tms_payments.utils.hashing import client_signature_payload, compute_signature

logger = logging.getLogger(__name__)


class GatewayOrder(BaseModel):
    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: str = "created"


class GatewayPayment(BaseModel):
    id: str
    order_id: Optional[str] = None
    amount: int
    currency: str = "INR"
    status: str                      # created | authorized | captured | failed | refunded
    method: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    created_at: Optional[int] = None


class GatewayRefund(BaseModel):
    id: str
    payment_id: str
    amount: int
    status: str = "processed"


class GatewayClient(ABC):
    """Contract the payment core needs from its gateway."""

    @abstractmethod
    def create_order(self, amount: int, currency: str, receipt: str, metadata: Dict[str, str]) -> GatewayOrder:
        ...

    @abstractmethod
    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        ...

    @abstractmethod
    def refund(self, payment_id: str, amount: Optional[int] = None) -> GatewayRefund:
        ...


class RazorpayGatewayClient(GatewayClient):
    """Talks to https://api.razorpay.com/v1 with HTTP basic auth."""

    def __init__(self, key_id: str, key_secret: str, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = (key_id, key_secret)

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=json, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.warning(f"Gateway {method} {path} unreachable: {e}")
            raise GatewayUnavailable("Payment gateway is unreachable, please retry") from e
        except requests.RequestException as e:
            logger.error(f"Gateway {method} {path} failed: {e}")
            raise GatewayUnavailable("Payment gateway request failed") from e

        if response.status_code >= 500:
            logger.warning(f"Gateway {method} {path} -> {response.status_code}")
            raise GatewayUnavailable(f"Payment gateway error ({response.status_code})")
        if response.status_code >= 400:
            description = ""
            try:
                description = response.json().get("error", {}).get("description", "")
            except ValueError:
                description = response.text[:200]
            logger.error(f"Gateway {method} {path} rejected ({response.status_code}): {description}")
            raise GatewayRejected(description or f"Payment gateway rejected request ({response.status_code})")

        try:
            return response.json()
        except ValueError as e:
            raise GatewayUnavailable("Payment gateway returned an unreadable response") from e

    def create_order(self, amount: int, currency: str, receipt: str, metadata: Dict[str, str]) -> GatewayOrder:
        data = self._request("POST", "/orders", json={
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": metadata,
            "payment_capture": 1,
        })
        return GatewayOrder.model_validate(data)

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        data = self._request("GET", f"/payments/{payment_id}")
        return GatewayPayment.model_validate(data)

    def refund(self, payment_id: str, amount: Optional[int] = None) -> GatewayRefund:
        body = {"speed": "normal"}
        if amount is not None:
            body["amount"] = amount
        data = self._request("POST", f"/payments/{payment_id}/refund", json=body)
        return GatewayRefund.model_validate(data)


class DemoGatewayClient(GatewayClient):
    """In-process gateway for DEMO_MODE and tests.

    Orders and payments live in memory. simulate_payment() plays the part of
    the checkout widget and returns a correctly signed redirect.
    """

    def __init__(self, key_secret: str = DEMO_KEY_SECRET, currency: str = "INR"):
        self.key_secret = key_secret
        self.currency = currency
        self.orders: Dict[str, GatewayOrder] = {}
        self.payments: Dict[str, GatewayPayment] = {}
        self.refunds: Dict[str, GatewayRefund] = {}
        self.calls: Dict[str, int] = {"create_order": 0, "fetch_payment": 0, "refund": 0}
        self._lock = threading.Lock()

    def create_order(self, amount: int, currency: str, receipt: str, metadata: Dict[str, str]) -> GatewayOrder:
        with self._lock:
            self.calls["create_order"] += 1
            order = GatewayOrder(
                id=f"order_demo_{uuid.uuid4().hex[:14]}",
                amount=amount,
                currency=currency,
                receipt=receipt,
            )
            self.orders[order.id] = order
        return order

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        with self._lock:
            self.calls["fetch_payment"] += 1
            payment = self.payments.get(payment_id)
        if payment is None:
            raise GatewayRejected(f"The id provided does not exist: {payment_id}")
        return payment

    def refund(self, payment_id: str, amount: Optional[int] = None) -> GatewayRefund:
        with self._lock:
            self.calls["refund"] += 1
            payment = self.payments.get(payment_id)
            if payment is None or payment.status != "captured":
                raise GatewayRejected("Payment is not in a refundable state")
            refund = GatewayRefund(
                id=f"rfnd_demo_{uuid.uuid4().hex[:14]}",
                payment_id=payment_id,
                amount=amount if amount is not None else payment.amount,
            )
            self.refunds[refund.id] = refund
        return refund

    def simulate_payment(
        self,
        order_id: str,
        status: str = "captured",
        amount: Optional[int] = None,
        payment_id: Optional[str] = None,
    ) -> Dict[str, str]:
        """Record a payment against an order and return the signed redirect fields."""
        order = self.orders.get(order_id)
        if order is None:
            raise GatewayRejected(f"Unknown order: {order_id}")

        payment = GatewayPayment(
            id=payment_id or f"pay_demo_{uuid.uuid4().hex[:14]}",
            order_id=order_id,
            amount=order.amount if amount is None else amount,
            currency=order.currency,
            status=status,
            method="upi",
            error_code="BAD_REQUEST_ERROR" if status == "failed" else None,
            error_description="Payment declined by bank" if status == "failed" else None,
        )
        with self._lock:
            self.payments[payment.id] = payment
        signature = compute_signature(client_signature_payload(order_id, payment.id), self.key_secret)
        return {"order_id": order_id, "payment_id": payment.id, "signature": signature}


def build_gateway_client(settings: Settings) -> GatewayClient:
    if settings.DEMO_MODE:
        logger.warning("DEMO_MODE enabled: using in-process demo payment gateway")
        return DemoGatewayClient(key_secret=settings.client_signing_secret, currency=settings.CURRENCY)
    return RazorpayGatewayClient(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        base_url=settings.RAZORPAY_BASE_URL,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )


@lru_cache()
def get_gateway_client() -> GatewayClient:
    """Cached gateway client for the configured environment."""
    return build_gateway_client(get_settings())
