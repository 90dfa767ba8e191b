from __future__ import annotations
import json
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Sequence

from ..errors import ValidationError
from ..helpers import (
    is_valid_email, is_valid_phone, is_valid_pincode, money_str
)
from .cart import CartLine, DEFAULT_POLICY, ShippingPolicy, Totals, \
    compute_totals
from .coupons import Coupon


@dataclass(frozen=True)
class ShippingRecord:
    name: str
    email: str
    address: str
    phone: str
    pincode: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class OrderIntent:
    amount: Decimal
    currency: str
    notes: Dict[str, str]
    totals: Totals


def parse_shipping(data: Optional[Mapping[str, Any]]) -> ShippingRecord:
    data = data or {}

    def _get(*keys: str) -> str:
        for k in keys:
            v = data.get(k)
            if v is not None:
                return str(v).strip()
        return ""

    return ShippingRecord(
        name=_get("name"),
        email=_get("email"),
        address=_get("address"),
        phone=_get("phone", "contact"),
        pincode=_get("pincode", "postal_code", "pin"),
    )


def validate_shipping(shipping: ShippingRecord) -> None:
    # first failing field wins, in form order
    for field in ("name", "email", "address", "phone", "pincode"):
        if not getattr(shipping, field):
            raise ValidationError(field, f"{field} is required")
    if not is_valid_email(shipping.email):
        raise ValidationError("email", "enter a valid email address")
    if not is_valid_phone(shipping.phone):
        raise ValidationError(
            "phone", "enter a valid 10-digit mobile number"
        )
    if not is_valid_pincode(shipping.pincode):
        raise ValidationError("pincode", "PIN code must be exactly 6 digits")


def coupon_summary(coupon: Optional[Coupon],
                   discount: Decimal) -> Optional[Dict[str, str]]:
    if coupon is None:
        return None
    return {
        "code": coupon.code,
        "name": coupon.name,
        "type": coupon.type,
        "value": str(coupon.value),
        "discount": money_str(discount),
    }


def build_intent(lines: Sequence[CartLine], shipping: ShippingRecord,
                 coupon: Optional[Coupon], discount: Decimal,
                 currency: str = "INR",
                 policy: ShippingPolicy = DEFAULT_POLICY) -> OrderIntent:
    """Assemble the payment-order request for a validated cart.

    Every notes value is a string; structured fields are JSON-encoded so
    the gateway can echo them back untouched in its webhook.
    """
    if not lines:
        raise ValidationError("items", "cart is empty")
    validate_shipping(shipping)

    if coupon is None:
        discount = Decimal(0)
    totals = compute_totals(lines, discount, policy)
    summary = coupon_summary(coupon, totals.discount)

    notes = {
        "shipping": json.dumps(shipping.to_dict(), separators=(",", ":")),
        "items": json.dumps(
            [line.to_dict() for line in lines], separators=(",", ":")
        ),
        "coupon": (
            json.dumps(summary, separators=(",", ":")) if summary else ""
        ),
        "discount": money_str(totals.discount),
        "subtotal": money_str(totals.subtotal),
        "shipping_fee": money_str(totals.shipping),
    }
    return OrderIntent(
        amount=totals.grand_total,
        currency=currency.upper(),
        notes=notes,
        totals=totals,
    )
