"""Webhook verification and order reconstruction.

The gateway calls back with the raw payment event and an HMAC-SHA256
signature of the body. After the signature checks out, the order context
that was stashed in the payment-order notes is parsed back into a
canonical OrderRecord and handed to the mail dispatcher.
"""
from __future__ import annotations
import enum
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .errors import MalformedPayloadError, SignatureError
from .gateway import from_minor_units
from .helpers import ZERO, ct_equal, quantize, to_money
from .model.intent import ShippingRecord, parse_shipping
from .model.order import CouponSummary, OrderRecord
from .model.seenpayments import SeenPayments
from .notify import NotificationDispatcher

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-razorpay-signature"

# accepted only when explicitly enabled for local testing
TEST_SIGNATURE = "razorpay_test_signature"


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class WebhookVerifier:
    def __init__(self, secret: Optional[str],
                 allow_test_signature: bool = False) -> None:
        self.secret = secret
        self.allow_test_signature = allow_test_signature
        if allow_test_signature:
            logger.warning(
                "webhook test signature bypass is ENABLED; "
                "never run this in production"
            )

    def verify(self, body: Optional[bytes], signature: Optional[str]) -> None:
        if not body:
            raise SignatureError("missing raw body")
        if not signature:
            raise SignatureError("missing signature")
        if self.allow_test_signature and ct_equal(signature, TEST_SIGNATURE):
            return
        if not self.secret:
            raise SignatureError("webhook secret not configured")
        expected = sign(body, self.secret)
        if not ct_equal(expected, signature.strip()):
            raise SignatureError("signature mismatch")


# ----------------------------
# Payload shapes
# ----------------------------
class PayloadShape(enum.Enum):
    DIRECT = "direct"  # the body is the payment entity itself
    NESTED = "nested"  # payload.payment.entity


@dataclass(frozen=True)
class PaymentEntity:
    shape: PayloadShape
    id: str
    amount: int  # minor units
    currency: str = "INR"
    notes: Dict[str, Any] = field(default_factory=dict)
    email: str = ""
    contact: str = ""
    order_id: Optional[str] = None
    status: str = ""
    event: str = ""

    @property
    def failed(self) -> bool:
        return self.status == "failed" or self.event.endswith(".failed")


def parse_event(body: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise MalformedPayloadError("body is not valid JSON")
    if not isinstance(event, dict):
        raise MalformedPayloadError("body is not a JSON object")
    return event


def _nested_entity(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    payload = event.get("payload")
    if not isinstance(payload, dict):
        return None
    payment = payload.get("payment")
    if not isinstance(payment, dict):
        return None
    entity = payment.get("entity")
    return entity if isinstance(entity, dict) else None


def _as_amount(value: Any) -> int:
    if isinstance(value, bool):
        raise MalformedPayloadError("payment amount is not an integer")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and value.strip().isdigit():
        amount = int(value.strip())
    else:
        raise MalformedPayloadError("payment amount is not an integer")
    if amount < 0:
        raise MalformedPayloadError("payment amount is negative")
    return amount


def resolve_payment(event: Dict[str, Any]) -> PaymentEntity:
    entity = _nested_entity(event)
    shape = PayloadShape.NESTED
    if entity is None:
        if "id" in event and "amount" in event:
            entity, shape = event, PayloadShape.DIRECT
        else:
            raise MalformedPayloadError("no payment entity in payload")

    payment_id = entity.get("id")
    if not payment_id or not isinstance(payment_id, str):
        raise MalformedPayloadError("payment entity has no id")
    if "amount" not in entity:
        raise MalformedPayloadError("payment entity has no amount")

    notes = entity.get("notes")
    # the gateway sends [] rather than {} for empty notes
    if not isinstance(notes, dict):
        notes = {}

    return PaymentEntity(
        shape=shape,
        id=payment_id,
        amount=_as_amount(entity["amount"]),
        currency=str(entity.get("currency") or "INR").upper(),
        notes=notes,
        email=str(entity.get("email") or ""),
        contact=str(entity.get("contact") or ""),
        order_id=entity.get("order_id"),
        status=str(entity.get("status") or ""),
        event=str(event.get("event") or ""),
    )


# ----------------------------
# Notes
# ----------------------------
@dataclass(frozen=True)
class ParsedNotes:
    shipping: Dict[str, Any]
    items: List[Dict[str, Any]]
    coupon: Optional[CouponSummary]
    discount: Decimal


def _json_note(notes: Dict[str, Any], key: str, kind: type) -> Any:
    raw = notes.get(key)
    if raw is None or raw == "":
        return None
    if isinstance(raw, kind):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("notes field %r is not valid JSON; ignoring", key)
        return None
    if not isinstance(value, kind):
        logger.warning("notes field %r has unexpected type %s; ignoring",
                       key, type(value).__name__)
        return None
    return value


def _money_or_none(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return to_money(value)
    except ValueError:
        return None


def _parse_coupon(notes: Dict[str, Any]) -> Optional[CouponSummary]:
    obj = _json_note(notes, "coupon", dict)
    if obj is not None and obj.get("code"):
        return CouponSummary(
            code=str(obj["code"]),
            name=str(obj.get("name") or ""),
            type=str(obj.get("type") or ""),
            value=str(obj.get("value") or ""),
            discount=_money_or_none(obj.get("discount")),
        )
    code = notes.get("coupon_code")
    if code:
        return CouponSummary(
            code=str(code),
            name=str(notes.get("coupon_name") or ""),
            type=str(notes.get("coupon_type") or ""),
            value=str(notes.get("coupon_value") or ""),
            discount=_money_or_none(notes.get("coupon_discount")),
        )
    return None


def _derive_discount(notes: Dict[str, Any],
                     coupon: Optional[CouponSummary]) -> Decimal:
    # explicit field first, then the coupon's own figure
    candidates = [_money_or_none(notes.get("discount"))]
    if coupon is not None:
        candidates.append(coupon.discount)
    for value in candidates:
        if value is not None:
            return quantize(max(ZERO, value))
    return ZERO


def parse_notes(notes: Dict[str, Any]) -> ParsedNotes:
    shipping = _json_note(notes, "shipping", dict) or {}
    items = _json_note(notes, "items", list) or []
    items = [i for i in items if isinstance(i, dict)]
    coupon = _parse_coupon(notes)
    return ParsedNotes(
        shipping=shipping,
        items=items,
        coupon=coupon,
        discount=_derive_discount(notes, coupon),
    )


def _shipping_for(payment: PaymentEntity,
                  parsed: ParsedNotes) -> ShippingRecord:
    source = dict(parsed.shipping)
    # older clients sent the shipping fields as flat notes keys
    for key in ("name", "email", "address", "phone", "pincode"):
        if not source.get(key) and payment.notes.get(key):
            source[key] = payment.notes[key]
    record = parse_shipping(source)
    email = record.email or payment.email
    phone = record.phone or payment.contact
    if email == record.email and phone == record.phone:
        return record
    return ShippingRecord(record.name, email, record.address, phone,
                          record.pincode)


def reconstruct_order(payment: PaymentEntity) -> OrderRecord:
    parsed = parse_notes(payment.notes)
    return OrderRecord(
        payment_id=payment.id,
        order_id=payment.order_id,
        grand_total=from_minor_units(payment.amount),
        currency=payment.currency,
        shipping=_shipping_for(payment, parsed),
        items=parsed.items,
        coupon=parsed.coupon,
        discount=parsed.discount,
    )


# ----------------------------
# Processor
# ----------------------------
@dataclass(frozen=True)
class WebhookResult:
    order: Optional[OrderRecord]
    duplicate: bool = False
    ignored: bool = False


class WebhookProcessor:
    def __init__(self, verifier: WebhookVerifier,
                 dispatcher: NotificationDispatcher,
                 seen: Optional[SeenPayments] = None) -> None:
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.seen = seen

    async def handle(self, body: Optional[bytes],
                     signature: Optional[str]) -> WebhookResult:
        self.verifier.verify(body, signature)
        payment = resolve_payment(parse_event(body))

        if payment.failed:
            logger.info("payment %s failed (%s); nothing to confirm",
                        payment.id, payment.event or payment.status)
            return WebhookResult(order=None, ignored=True)

        order = reconstruct_order(payment)

        first = (self.seen is None
                 or await self.seen.mark_seen(order.payment_id))
        if not first:
            logger.info("payment %s already confirmed; skipping mail",
                        order.payment_id)
            return WebhookResult(order=order, duplicate=True)

        self.dispatcher.submit(order)
        logger.info("payment %s confirmed (%s %s), mail queued",
                    order.payment_id, order.grand_total, order.currency)
        return WebhookResult(order=order)
