from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..helpers import ZERO, money_out
from .intent import ShippingRecord


@dataclass(frozen=True)
class CouponSummary:
    code: str
    name: str = ""
    type: str = ""
    value: str = ""
    discount: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "type": self.type,
            "value": self.value,
            "discount": (
                None if self.discount is None else money_out(self.discount)
            ),
        }


@dataclass(frozen=True)
class OrderRecord:
    """Confirmed order rebuilt from a webhook; lives for one request."""

    payment_id: str
    grand_total: Decimal
    shipping: ShippingRecord
    items: List[Dict[str, Any]] = field(default_factory=list)
    coupon: Optional[CouponSummary] = None
    discount: Decimal = ZERO
    currency: str = "INR"
    order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paymentId": self.payment_id,
            "orderId": self.order_id,
            "grandTotal": money_out(self.grand_total),
            "currency": self.currency,
            "shipping": self.shipping.to_dict(),
            "items": self.items,
            "coupon": None if self.coupon is None else self.coupon.to_dict(),
            "discount": money_out(self.discount),
        }
