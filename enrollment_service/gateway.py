"""
Payment gateway adapter.

The orchestrator only talks to the ``PaymentGateway`` interface: create a
remote order, fetch its current state, and verify the signature a
confirmation callback carries. ``RazorpayGateway`` is the production
implementation; it is built once at startup and injected, never held as a
module-level client.
"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Optional

import razorpay
import requests

from enrollment_service.errors import GatewayError

logger = logging.getLogger(__name__)

# Razorpay order states in which the checkout can still be completed
PAYABLE_ORDER_STATES = ("created", "attempted")
PAID_ORDER_STATE = "paid"


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def verify_signature(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    """Constant-time check of a confirmation signature against the key secret."""
    if not secret or not signature:
        return False
    expected = compute_signature(secret, order_id, payment_id)
    return hmac.compare_digest(expected.encode(), signature.encode())


class PaymentGateway(ABC):
    key_id: str = ""

    @abstractmethod
    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: Optional[dict] = None) -> dict:
        """Returns ``{"id", "amount", "currency", "status"}``."""

    @abstractmethod
    def fetch_order(self, order_id: str) -> dict:
        """Returns ``{"id", "amount", "currency", "status"}``."""

    @abstractmethod
    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        ...


def _order_state(order: dict) -> dict:
    return {
        "id": order["id"],
        "amount": int(order["amount"]),
        "currency": order.get("currency"),
        "status": order.get("status"),
    }


class RazorpayGateway(PaymentGateway):
    def __init__(self, key_id: str, key_secret: str, timeout: float = 10.0, client: Optional[razorpay.Client] = None):
        self.key_id = key_id
        self._key_secret = key_secret
        self.timeout = timeout
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    def create_order(self, amount_minor, currency, receipt, notes=None):
        data = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        try:
            order = self.client.order.create(data=data, timeout=self.timeout)
        except (razorpay.errors.BadRequestError,
                razorpay.errors.ServerError,
                razorpay.errors.GatewayError,
                requests.RequestException) as e:
            logger.exception("Razorpay order creation failed receipt=%s", receipt)
            raise GatewayError("Payment provider could not create the order, please retry") from e
        logger.info("Created razorpay order id=%s amount=%s %s", order["id"], amount_minor, currency)
        return _order_state(order)

    def fetch_order(self, order_id):
        try:
            order = self.client.order.fetch(order_id, timeout=self.timeout)
        except (razorpay.errors.BadRequestError,
                razorpay.errors.ServerError,
                razorpay.errors.GatewayError,
                requests.RequestException) as e:
            logger.exception("Razorpay order fetch failed order=%s", order_id)
            raise GatewayError("Payment provider could not be reached, please retry") from e
        return _order_state(order)

    def verify_signature(self, order_id, payment_id, signature):
        return verify_signature(self._key_secret, order_id, payment_id, signature)
