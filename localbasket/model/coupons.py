from __future__ import annotations
import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..helpers import ZERO, parse_iso, quantize, to_money, utcnow

logger = logging.getLogger(__name__)

DEFAULT_COUPONS_FILE = Path(__file__).resolve().parent.parent / "data" / \
    "coupons.json"

PERCENTAGE = "percentage"
FLAT = "flat"
COUPON_TYPES = (PERCENTAGE, FLAT)


class CouponRejection(str, enum.Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    BELOW_MINIMUM = "below_minimum"


_REJECTION_MESSAGES = {
    CouponRejection.NOT_FOUND: "Invalid coupon code",
    CouponRejection.EXPIRED: "This coupon has expired",
    CouponRejection.BELOW_MINIMUM: "Minimum purchase not met",
}


def rejection_message(reason: CouponRejection,
                      coupon: Optional["Coupon"] = None) -> str:
    msg = _REJECTION_MESSAGES[reason]
    if reason is CouponRejection.BELOW_MINIMUM and coupon is not None:
        msg = f"{msg}: add items worth at least ₹{coupon.min_purchase}"
    return msg


@dataclass(frozen=True)
class Coupon:
    code: str
    name: str
    type: str
    value: Decimal
    expires_at: datetime
    min_purchase: Decimal = ZERO
    max_discount: Optional[Decimal] = None
    message: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> "Coupon":
        ctype = str(data.get("type", "")).strip().lower()
        if ctype in ("percent", "percentage"):
            ctype = PERCENTAGE
        if ctype not in COUPON_TYPES:
            raise ValueError(f"unknown coupon type: {data.get('type')!r}")
        max_discount = data.get("max_discount")
        return cls(
            code=str(data["code"]).strip().upper(),
            name=str(data.get("name") or data["code"]),
            type=ctype,
            value=to_money(data["value"]),
            expires_at=parse_iso(str(data["expires_at"])),
            min_purchase=to_money(data.get("min_purchase", 0)),
            max_discount=(
                None if max_discount is None else to_money(max_discount)
            ),
            message=str(data.get("message", "")),
        )

    def to_dict(self) -> Dict:
        return {
            "code": self.code,
            "name": self.name,
            "type": self.type,
            "value": float(self.value),
            "max_discount": (
                None if self.max_discount is None
                else float(self.max_discount)
            ),
            "min_purchase": float(self.min_purchase),
            "expires_at": self.expires_at.isoformat(),
            "message": self.message,
        }

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class CouponResult:
    coupon: Optional[Coupon]
    discount: Decimal
    reason: Optional[CouponRejection] = None

    @property
    def applied(self) -> bool:
        return self.coupon is not None


def _raw_discount(subtotal: Decimal, coupon: Coupon) -> Decimal:
    if coupon.type == PERCENTAGE:
        raw = subtotal * coupon.value / Decimal(100)
        if coupon.max_discount is not None:
            raw = min(raw, coupon.max_discount)
        return raw
    cap = coupon.max_discount if coupon.max_discount is not None \
        else coupon.value
    return min(coupon.value, cap)


def evaluate(subtotal: Decimal, coupon: Optional[Coupon],
             now: Optional[datetime] = None) -> CouponResult:
    """Discount for ``subtotal`` under ``coupon`` at time ``now``.

    Pure. Rejections carry a distinct reason and a zero discount; an applied
    coupon never discounts more than the subtotal, even with bad data.
    """
    if now is None:
        now = utcnow()
    if coupon is None:
        return CouponResult(None, ZERO, CouponRejection.NOT_FOUND)
    if coupon.is_expired(now):
        return CouponResult(None, ZERO, CouponRejection.EXPIRED)
    if subtotal < coupon.min_purchase:
        return CouponResult(None, ZERO, CouponRejection.BELOW_MINIMUM)

    discount = _raw_discount(subtotal, coupon)
    # clamp last: malformed data (negative values, caps) stays in range
    discount = max(ZERO, min(discount, subtotal))
    return CouponResult(coupon, quantize(discount))


class CouponBook:
    """Static, read-only coupon list keyed by upper-cased code."""

    def __init__(self, coupons: List[Coupon]) -> None:
        self._by_code: Dict[str, Coupon] = {c.code: c for c in coupons}

    @classmethod
    def load(cls, path: Union[str, Path, None] = None) -> "CouponBook":
        path = Path(path) if path else DEFAULT_COUPONS_FILE
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
        coupons = []
        for entry in raw:
            try:
                coupons.append(Coupon.from_dict(entry))
            except (KeyError, ValueError) as e:
                logger.warning("skipping bad coupon entry %r: %s", entry, e)
        logger.info("loaded %d coupons from %s", len(coupons), path)
        return cls(coupons)

    def all(self) -> List[Coupon]:
        return list(self._by_code.values())

    def find(self, code: Optional[str]) -> Optional[Coupon]:
        if not code:
            return None
        code = code.strip().upper()
        if not code:
            return None
        return self._by_code.get(code)

    def apply(self, code: Optional[str], subtotal: Decimal,
              now: Optional[datetime] = None) -> CouponResult:
        return evaluate(subtotal, self.find(code), now)
