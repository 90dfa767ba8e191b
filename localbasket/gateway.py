from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Optional, TypedDict
import logging
import os
import uuid

import httpx

from .errors import GatewayError, InvalidAmountError
from .helpers import ZERO, now_ts
from .infra.timings import timeit

logger = logging.getLogger(__name__)

RAZORPAY_API_BASE = os.environ.get(
    "RAZORPAY_API_BASE", "https://api.razorpay.com/v1"
)


def to_minor_units(amount: Decimal) -> int:
    """Rupees -> paise, rounded half-up at the nearest paisa."""
    if amount is None or not isinstance(amount, Decimal):
        raise InvalidAmountError("amount must be a decimal currency amount")
    if not amount.is_finite() or amount <= ZERO:
        raise InvalidAmountError("amount must be greater than zero")
    try:
        minor = int((amount * 100).quantize(Decimal("1"),
                                           rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise InvalidAmountError("amount is too large")
    if minor <= 0:
        raise InvalidAmountError("amount rounds to zero")
    return minor


def from_minor_units(minor: int) -> Decimal:
    return Decimal(int(minor)) / Decimal(100)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class GatewayOrder(TypedDict):
    id: str
    amount: int  # minor units
    currency: str
    key_id: str


class PaymentAdapter(ABC):
    @abstractmethod
    async def create_order(
            self, amount: Decimal, currency: str, notes: Dict[str, str]
    ) -> GatewayOrder: ...

    async def aclose(self) -> None:
        return None


# ----------------------------
# Razorpay implementation
# ----------------------------
class RazorpayGateway(PaymentAdapter):

    def __init__(self, key_id: str, key_secret: str,
                 http: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0,
                 base_url: str = RAZORPAY_API_BASE) -> None:
        if not key_id or not key_secret:
            raise ValueError("Razorpay needs both key id and key secret")
        self.key_id = key_id
        self._key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._own_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._own_http:
            await self.http.aclose()

    @staticmethod
    def _provider_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text or f"HTTP {resp.status_code}"
        err = body.get("error") if isinstance(body, dict) else None
        if isinstance(err, dict) and err.get("description"):
            return str(err["description"])
        return f"HTTP {resp.status_code}"

    async def create_order(
            self, amount: Decimal, currency: str, notes: Dict[str, str]
    ) -> GatewayOrder:
        minor = to_minor_units(amount)
        body = {
            "amount": minor,
            "currency": currency.upper(),
            "receipt": f"rcpt_{uuid.uuid4().hex[:16]}",
            "notes": notes or {},
        }
        try:
            async with timeit("gateway.create_order"):
                resp = await self.http.post(
                    f"{self.base_url}/orders",
                    json=body,
                    auth=(self.key_id, self._key_secret),
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            logger.error("razorpay order creation failed: %s", e)
            raise GatewayError(f"payment gateway unreachable: {e}") from e

        if resp.status_code >= 400:
            msg = self._provider_message(resp)
            logger.error("razorpay rejected order (%s): %s",
                         resp.status_code, msg)
            raise GatewayError(msg, status_code=resp.status_code)

        data = resp.json()
        return {
            "id": data["id"],
            "amount": int(data.get("amount", minor)),
            "currency": data.get("currency", currency.upper()),
            "key_id": self.key_id,
        }


# ----------------------------
# Mock implementation (local development)
# ----------------------------
class MockGateway(PaymentAdapter):

    def __init__(self, key_id: str = "rzp_test_mock") -> None:
        self.key_id = key_id
        self.orders: List[Dict] = []

    async def create_order(
            self, amount: Decimal, currency: str, notes: Dict[str, str]
    ) -> GatewayOrder:
        minor = to_minor_units(amount)
        order_id = f"order_mock_{uuid.uuid4().hex[:14]}"
        self.orders.append({
            "id": order_id,
            "amount": minor,
            "currency": currency.upper(),
            "notes": dict(notes or {}),
            "created_at": now_ts(),
        })
        return {
            "id": order_id,
            "amount": minor,
            "currency": currency.upper(),
            "key_id": self.key_id,
        }


BACKEND = os.getenv("PAYMENT_BACKEND", "").lower()  # 'razorpay' | 'mock'


def new_gateway(*, key_id: Optional[str], key_secret: Optional[str],
                http: Optional[httpx.AsyncClient] = None,
                timeout: float = 10.0,
                backend: Optional[str] = None) -> PaymentAdapter:
    backend = (backend or BACKEND or "").lower()
    if not backend:
        backend = "razorpay" if key_id and key_secret else "mock"
    if backend == "razorpay":
        return RazorpayGateway(key_id, key_secret, http=http,
                               timeout=timeout)
    if backend == "mock":
        return MockGateway()
    raise RuntimeError(f"unknown PAYMENT_BACKEND: {backend!r}")
