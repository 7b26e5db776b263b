"""
Razorpay client and signature checks.

Amounts cross this boundary as Decimal in major units (rupees); the API itself
speaks integer subunits (paise).
"""
import hashlib
import hmac
import logging
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx

from errors import GatewayError, RefundGatewayError

logger = logging.getLogger(__name__)

RAZORPAY_API = "https://api.razorpay.com/v1"


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(secret: str, gateway_order_id: str, payment_id: str, signature: str) -> bool:
    expected = sign(secret, f"{gateway_order_id}|{payment_id}".encode())
    return hmac.compare_digest(expected.encode(), (signature or "").encode())


def verify_webhook_signature(secret: str, body: bytes, signature: str) -> bool:
    expected = sign(secret, body)
    return hmac.compare_digest(expected.encode(), (signature or "").encode())


def to_subunits(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_subunits(value: int) -> Decimal:
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


class PaymentGateway:
    """What the checkout and cancellation code needs from a payment provider."""

    def create_order(self, amount: Decimal, currency: str = "INR", receipt: Optional[str] = None) -> dict:
        raise NotImplementedError

    def refund(self, payment_id: str, amount: Decimal, notes: Optional[dict] = None) -> dict:
        raise NotImplementedError


class RazorpayGateway(PaymentGateway):
    def __init__(self, key_id: str, key_secret: str, base_url: str = RAZORPAY_API, timeout: float = 10.0,
                 client: Optional[httpx.Client] = None):
        self.key_id = key_id
        self.client = client or httpx.Client(base_url=base_url, auth=(key_id, key_secret), timeout=timeout)

    def _post(self, path: str, payload: dict, error=GatewayError) -> dict:
        try:
            response = self.client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("Razorpay %s returned %s: %s", path, exc.response.status_code, exc.response.text)
            raise error() from exc
        except httpx.HTTPError as exc:
            logger.error("Razorpay %s failed: %s", path, exc)
            raise error() from exc
        return response.json()

    def create_order(self, amount: Decimal, currency: str = "INR", receipt: Optional[str] = None) -> dict:
        data = self._post("/orders", {
            "amount": to_subunits(amount),
            "currency": currency,
            "receipt": receipt or f"receipt_{int(time.time() * 1000)}",
            "payment_capture": 1,
        })
        return {"id": data["id"], "amount": from_subunits(data["amount"]), "currency": data["currency"]}

    def refund(self, payment_id: str, amount: Decimal, notes: Optional[dict] = None) -> dict:
        data = self._post(
            f"/payments/{payment_id}/refund",
            {"amount": to_subunits(amount), "notes": notes or {}},
            error=RefundGatewayError,
        )
        return {"id": data["id"], "amount": from_subunits(data["amount"]), "status": data.get("status", "pending")}
