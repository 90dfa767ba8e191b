from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from ..errors import ValidationError
from ..helpers import ZERO, quantize, to_money
from .coupons import Coupon, CouponResult, evaluate


MAX_LINE_QTY = 10000


# ----------------------------
# Lines & totals
# ----------------------------
@dataclass(frozen=True)
class CartLine:
    product_id: int
    name: str
    price: Decimal
    qty: int
    image: str = ""

    @property
    def line_total(self) -> Decimal:
        return self.price * self.qty

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.product_id,
            "name": self.name,
            "price": str(self.price),
            "qty": self.qty,
            "img": self.image,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CartLine":
        try:
            product_id = int(data["id"])
            qty = int(data.get("qty", 1))
            price = to_money(data["price"])
        except (KeyError, TypeError, ValueError, OverflowError):
            raise ValidationError("items", f"invalid cart line: {data!r}")
        if qty < 1:
            raise ValidationError("items", "quantity must be at least 1")
        if qty > MAX_LINE_QTY:
            raise ValidationError("items", "quantity is too large")
        if price < ZERO:
            raise ValidationError("items", "price cannot be negative")
        return cls(
            product_id=product_id,
            name=str(data.get("name", "")),
            price=price,
            qty=qty,
            image=str(data.get("img") or data.get("image") or ""),
        )


def lines_from_payload(items: Any) -> Tuple[CartLine, ...]:
    if not isinstance(items, list):
        raise ValidationError("items", "items must be a list")
    return tuple(CartLine.from_dict(i) for i in items if isinstance(i, dict))


@dataclass(frozen=True)
class ShippingPolicy:
    free_threshold: Decimal = Decimal("400")
    flat_fee: Decimal = Decimal("80")

    def fee_for(self, subtotal: Decimal) -> Decimal:
        if subtotal <= ZERO:
            return ZERO
        if subtotal >= self.free_threshold:
            return ZERO
        return self.flat_fee


DEFAULT_POLICY = ShippingPolicy()


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping: Decimal
    discount: Decimal
    grand_total: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "shipping": str(self.shipping),
            "discount": str(self.discount),
            "grandTotal": str(self.grand_total),
        }


def subtotal_of(lines: Iterable[CartLine]) -> Decimal:
    return sum((line.line_total for line in lines), ZERO)


def compute_totals(lines: Iterable[CartLine], discount: Decimal,
                   policy: ShippingPolicy = DEFAULT_POLICY) -> Totals:
    subtotal = quantize(subtotal_of(lines))
    shipping = quantize(policy.fee_for(subtotal))
    discount = quantize(max(ZERO, min(discount, subtotal)))
    grand_total = max(ZERO, subtotal + shipping - discount)
    return Totals(subtotal, shipping, discount, quantize(grand_total))


# ----------------------------
# Cart aggregate
# ----------------------------
@dataclass(frozen=True)
class Cart:
    """Immutable cart snapshot; every operation returns a new Cart."""

    lines: Tuple[CartLine, ...] = ()
    coupon: Optional[Coupon] = None
    discount: Decimal = ZERO
    policy: ShippingPolicy = field(default=DEFAULT_POLICY, compare=False)

    @property
    def count(self) -> int:
        return sum(line.qty for line in self.lines)

    @property
    def subtotal(self) -> Decimal:
        return subtotal_of(self.lines)

    def is_empty(self) -> bool:
        return not self.lines

    def line_for(self, product_id: int) -> Optional[CartLine]:
        for line in self.lines:
            if line.product_id == product_id:
                return line
        return None

    def totals(self) -> Totals:
        return compute_totals(self.lines, self.discount, self.policy)

    def _with_lines(self, lines: Tuple[CartLine, ...],
                    now: Optional[datetime]) -> "Cart":
        # coupon follows the new subtotal; drop it once it stops applying
        if self.coupon is None:
            return replace(self, lines=lines)
        result = evaluate(subtotal_of(lines), self.coupon, now)
        return replace(self, lines=lines, coupon=result.coupon,
                       discount=result.discount)

    def add_line(self, product: Mapping[str, Any],
                 now: Optional[datetime] = None) -> "Cart":
        product_id = int(product["id"])
        on_hand = int(product.get("quantity", 0))
        existing = self.line_for(product_id)
        wanted = (existing.qty if existing else 0) + 1
        if on_hand <= 0:
            raise ValidationError("quantity", "product is out of stock")
        if wanted > on_hand:
            raise ValidationError(
                "quantity", f"only {on_hand} left in stock"
            )

        if existing:
            lines = tuple(
                replace(line, qty=wanted)
                if line.product_id == product_id else line
                for line in self.lines
            )
        else:
            # price/name/image are snapshots taken now
            lines = self.lines + (CartLine(
                product_id=product_id,
                name=str(product.get("name", "")),
                price=to_money(product["price"]),
                qty=1,
                image=str(product.get("image") or ""),
            ),)
        return self._with_lines(lines, now)

    def change_quantity(self, product_id: int, delta: int,
                        now: Optional[datetime] = None) -> "Cart":
        lines = []
        for line in self.lines:
            if line.product_id == product_id:
                qty = line.qty + delta
                if qty <= 0:
                    continue
                line = replace(line, qty=qty)
            lines.append(line)
        return self._with_lines(tuple(lines), now)

    def remove(self, product_id: int,
               now: Optional[datetime] = None) -> "Cart":
        lines = tuple(
            line for line in self.lines if line.product_id != product_id
        )
        return self._with_lines(lines, now)

    def clear(self) -> "Cart":
        return Cart(policy=self.policy)

    def apply_coupon(self, coupon: Optional[Coupon],
                     now: Optional[datetime] = None
                     ) -> Tuple["Cart", CouponResult]:
        result = evaluate(self.subtotal, coupon, now)
        cart = replace(self, coupon=result.coupon, discount=result.discount)
        return cart, result

    def remove_coupon(self) -> "Cart":
        return replace(self, coupon=None, discount=ZERO)
