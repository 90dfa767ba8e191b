import time
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import hmac
from typing import Any, Optional

CENT = Decimal("0.01")
ZERO = Decimal("0")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
# 10-digit mobile numbers start with 6-9
_PHONE_RE = re.compile(r"^[6-9]\d{9}$")
_PINCODE_RE = re.compile(r"^\d{6}$")

# money values at or above this are rejected as input
MAX_MONEY = Decimal("1e12")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(value: str) -> datetime:
    # accept a trailing "Z"; naive timestamps are taken as UTC
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return _EMAIL_RE.match(email) is not None


def is_valid_phone(phone: Optional[str]) -> bool:
    if not phone:
        return False
    return _PHONE_RE.match(phone.strip()) is not None


def is_valid_pincode(pincode: Optional[str]) -> bool:
    if not pincode:
        return False
    return _PINCODE_RE.match(pincode.strip()) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# ----------------------------
# Money
# ----------------------------
def to_money(value: Any) -> Decimal:
    """Convert JSON-ish input (int, float, str, Decimal) to a Decimal.

    Floats go through ``str`` so ``0.1`` stays ``0.1`` instead of the
    binary expansion. Raises ``ValueError`` for anything unparsable or
    at or above ``MAX_MONEY`` in magnitude.
    """
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, bool) or value is None:
        raise ValueError(f"not a money amount: {value!r}")
    else:
        try:
            d = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"not a money amount: {value!r}")
    if not d.is_finite():
        raise ValueError(f"not a money amount: {value!r}")
    if abs(d) >= MAX_MONEY:
        raise ValueError(f"money amount out of range: {value!r}")
    return d


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(amount: Decimal) -> str:
    return str(quantize(amount))


def money_out(amount: Decimal) -> float | int:
    # JSON-friendly: whole amounts as int, otherwise float rupees
    q = quantize(amount)
    if q == q.to_integral_value():
        return int(q)
    return float(q)
