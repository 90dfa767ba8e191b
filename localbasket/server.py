from __future__ import annotations

import html
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

import httpx
import redis.asyncio as redis
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import __version__
from .errors import (
    GatewayError, InvalidAmountError, NotificationError, ValidationError,
    MalformedPayloadError, SignatureError,
)
from .gateway import PaymentAdapter, new_gateway
from .helpers import money_out, to_money
from .infra.sql import make_async_engine
from .infra.timings import summary as timings_summary, timeit
from .model.cart import Cart, ShippingPolicy, lines_from_payload
from .model.catalog import CatalogStore
from .model.coupons import CouponBook, rejection_message
from .model.db import Base
from .model.intent import ShippingRecord, build_intent, parse_shipping
from .model.order import OrderRecord
from .model import seenpayments
from .notify import LogSender, NotificationDispatcher, SmtpSender
from .webhook import SIGNATURE_HEADER, WebhookProcessor, WebhookVerifier

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./products.db")

RAZORPAY_KEY_ID = os.environ.get("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.environ.get("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.environ.get("RAZORPAY_WEBHOOK_SECRET")
# local/dev only: accept the sentinel test signature
WEBHOOK_ALLOW_TEST_SIGNATURE = \
    os.environ.get("WEBHOOK_ALLOW_TEST_SIGNATURE", "0") == "1"
GATEWAY_TIMEOUT = float(os.environ.get("GATEWAY_TIMEOUT", "10"))

CATALOG_TTL_SECONDS = float(os.environ.get("CATALOG_TTL_SECONDS", "300"))
COUPONS_FILE = os.environ.get("COUPONS_FILE")  # None -> bundled list
CURRENCY = os.environ.get("CURRENCY", "INR").upper()
SHIPPING_POLICY = ShippingPolicy(
    free_threshold=Decimal(os.environ.get("FREE_SHIPPING_THRESHOLD", "400")),
    flat_fee=Decimal(os.environ.get("SHIPPING_FEE", "80")),
)

SMTP_HOST = os.environ.get("SMTP_HOST")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASS = os.environ.get("SMTP_PASS", "")
SMTP_TIMEOUT = float(os.environ.get("SMTP_TIMEOUT", "10"))
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL")
STORE_NAME = os.environ.get("STORE_NAME", "The Local Basket")

REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")

engine, SessionAsync, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


# ---
# startup / shutdown
# ---
def _say_hello(app: FastAPI):
    gw = type(app.state.gateway).__name__
    mail = type(app.state.dispatcher.sender).__name__
    dedup = seenpayments.BACKEND
    print('\n' * 2)
    print('=' * 50)
    print(f'{STORE_NAME} is starting up...')
    print(f'   - Payment gateway: {gw}')
    print(f'   - Mail sender:     {mail}')
    print(f'   - Webhook dedup:   {dedup}')
    print('=' * 50)
    print('\n' * 2)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create SQL tables for the catalog
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.http = httpx.AsyncClient(
        timeout=GATEWAY_TIMEOUT,
        limits=httpx.Limits(max_connections=64,
                            max_keepalive_connections=16),
    )
    app.state.gateway = new_gateway(
        key_id=RAZORPAY_KEY_ID,
        key_secret=RAZORPAY_KEY_SECRET,
        http=app.state.http,
        timeout=GATEWAY_TIMEOUT,
    )
    app.state.catalog = CatalogStore(ttl_seconds=CATALOG_TTL_SECONDS,
                                     gated=gated)
    app.state.coupons = CouponBook.load(COUPONS_FILE)

    app.state.redis = None
    if seenpayments.BACKEND == "redis":
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )
    app.state.seen = seenpayments.new_store(r=app.state.redis)

    sender = (
        SmtpSender(SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS,
                   timeout=SMTP_TIMEOUT)
        if SMTP_HOST else LogSender()
    )
    app.state.dispatcher = NotificationDispatcher(
        sender, admin_email=ADMIN_EMAIL, store_name=STORE_NAME
    )
    app.state.dispatcher.start()
    app.state.verifier = WebhookVerifier(
        RAZORPAY_WEBHOOK_SECRET,
        allow_test_signature=WEBHOOK_ALLOW_TEST_SIGNATURE,
    )
    if not RAZORPAY_WEBHOOK_SECRET:
        logger.warning("RAZORPAY_WEBHOOK_SECRET not set; "
                       "all webhooks will be rejected")
    _say_hello(app)

    yield

    await app.state.dispatcher.stop()
    await app.state.gateway.aclose()
    await app.state.http.aclose()
    if app.state.redis is not None:
        await app.state.redis.aclose()
    await engine.dispose()


app = FastAPI(
    title="The Local Basket",
    version=__version__,
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)


# ----------------------------
# Dependencies
# ----------------------------
def get_catalog(request: Request) -> CatalogStore:
    return request.app.state.catalog


def get_coupons(request: Request) -> CouponBook:
    return request.app.state.coupons


def get_gateway(request: Request) -> PaymentAdapter:
    return request.app.state.gateway


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_processor(
    request: Request,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> WebhookProcessor:
    return WebhookProcessor(
        request.app.state.verifier, dispatcher, seen=request.app.state.seen
    )


# ----------------------------
# Error mapping
# ----------------------------
@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return ORJSONResponse(
        {"success": False, "field": exc.field, "error": exc.message},
        status_code=400,
    )


@app.exception_handler(InvalidAmountError)
async def _invalid_amount(request: Request, exc: InvalidAmountError):
    return ORJSONResponse({"success": False, "error": str(exc)},
                          status_code=400)


@app.exception_handler(GatewayError)
async def _gateway_error(request: Request, exc: GatewayError):
    return ORJSONResponse({"success": False, "error": str(exc)},
                          status_code=502)


# ----------------------------
# Helpers
# ----------------------------
def _amount_from(payload: Dict[str, Any]) -> Decimal:
    try:
        return to_money(payload.get("amount"))
    except ValueError:
        raise InvalidAmountError("amount must be a number")


def _string_notes(notes: Any) -> Dict[str, str]:
    if notes is None:
        return {}
    if not isinstance(notes, dict):
        raise ValidationError("notes", "notes must be an object")
    out = {}
    for k, v in notes.items():
        if isinstance(v, str):
            out[str(k)] = v
        else:
            out[str(k)] = json.dumps(v, separators=(",", ":"))
    return out


# ----------------------------
# API: catalog & coupons
# ----------------------------
@app.get("/api/products")
async def list_products(
    db: AsyncSession = Depends(get_db),
    catalog: CatalogStore = Depends(get_catalog),
):
    try:
        products, cached = await catalog.list_products(db)
    except SQLAlchemyError as e:
        logger.exception("failed to load products")
        return ORJSONResponse(
            {"success": False, "error": f"Failed to load products: {e}"},
            status_code=500,
        )
    return {"success": True, "products": products, "cached": cached}


@app.get("/api/coupons")
async def list_coupons(coupons: CouponBook = Depends(get_coupons)):
    return [c.to_dict() for c in coupons.all()]


@app.post("/api/coupons/apply")
async def apply_coupon(
    payload: dict,
    coupons: CouponBook = Depends(get_coupons),
):
    code = str(payload.get("code") or "")
    cart = Cart(lines=lines_from_payload(payload.get("items", [])),
                policy=SHIPPING_POLICY)
    coupon = coupons.find(code)
    cart, result = cart.apply_coupon(coupon)
    if not result.applied:
        return ORJSONResponse(
            {
                "success": False,
                "reason": result.reason.value,
                "message": rejection_message(result.reason, coupon),
            },
            status_code=400,
        )
    return {
        "success": True,
        "coupon": result.coupon.to_dict(),
        "discount": money_out(result.discount),
        "message": result.coupon.message,
        "totals": cart.totals().to_dict(),
    }


# ----------------------------
# API: checkout
# ----------------------------
@app.post("/api/checkout/intent")
async def checkout_intent(
    payload: dict,
    coupons: CouponBook = Depends(get_coupons),
):
    cart = Cart(lines=lines_from_payload(payload.get("items", [])),
                policy=SHIPPING_POLICY)
    code = payload.get("coupon_code") or payload.get("coupon")
    if code:
        coupon = coupons.find(str(code))
        cart, result = cart.apply_coupon(coupon)
        if not result.applied:
            raise ValidationError(
                "coupon", rejection_message(result.reason, coupon)
            )

    shipping = parse_shipping(payload.get("shipping"))
    intent = build_intent(
        cart.lines, shipping, cart.coupon, cart.discount,
        currency=str(payload.get("currency") or CURRENCY),
        policy=SHIPPING_POLICY,
    )
    return {
        "success": True,
        "intent": {
            "amount": money_out(intent.amount),
            "currency": intent.currency,
            "notes": intent.notes,
        },
        "totals": intent.totals.to_dict(),
    }


@app.post("/create-razorpay-order")
async def create_razorpay_order(
    payload: dict,
    gateway: PaymentAdapter = Depends(get_gateway),
):
    amount = _amount_from(payload)
    currency = str(payload.get("currency") or CURRENCY)
    notes = _string_notes(payload.get("notes"))

    order = await gateway.create_order(amount, currency, notes)
    logger.info("created payment order %s for %s %s",
                order["id"], amount, currency)
    return {"success": True, "order": order}


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/razorpay-webhook")
async def razorpay_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_processor),
):
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        async with timeit("webhook.handle"):
            result = await processor.handle(body, signature)
    except SignatureError as e:
        logger.warning("webhook rejected: %s", e)
        return ORJSONResponse({"status": "invalid signature"},
                              status_code=400)
    except MalformedPayloadError as e:
        logger.warning("webhook payload rejected: %s", e)
        return ORJSONResponse({"status": "error", "error": str(e)},
                              status_code=400)
    except Exception as e:
        logger.exception("webhook processing failed")
        return ORJSONResponse({"status": "error", "error": str(e)},
                              status_code=500)

    resp = {"status": "ok"}
    if result.duplicate:
        resp["duplicate"] = True
    if result.ignored:
        resp["ignored"] = True
    return resp


# ----------------------------
# Legacy direct order path (pre-webhook clients)
# ----------------------------
@app.post("/send-order")
async def send_order(
    payload: dict,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    items = payload.get("items")
    if not items or not isinstance(items, list):
        return ORJSONResponse(
            {"success": False, "error": "No items in order"},
            status_code=400,
        )
    try:
        grand_total = to_money(payload.get("grandTotal"))
    except ValueError:
        return ORJSONResponse(
            {"success": False, "error": "grandTotal must be a number"},
            status_code=400,
        )

    raw = parse_shipping(payload.get("shipping"))
    shipping = ShippingRecord(
        name=html.escape(raw.name),
        email=html.escape(raw.email),
        address=html.escape(raw.address),
        phone=html.escape(raw.phone),
        pincode=html.escape(raw.pincode),
    )
    order = OrderRecord(
        payment_id=str(payload.get("paymentId")
                       or f"legacy_{uuid.uuid4().hex[:12]}"),
        grand_total=grand_total,
        shipping=shipping,
        items=[
            {
                "id": i.get("id"),
                "img": i.get("img"),
                "name": html.escape(str(i.get("name", ""))),
                "price": i.get("price"),
                "qty": i.get("qty"),
            }
            for i in items if isinstance(i, dict)
        ],
        currency=CURRENCY,
    )

    try:
        async with timeit("mail.send_now"):
            ids = await dispatcher.send_now(order)
    except NotificationError as e:
        logger.error("order mail failed for %s: %s", order.payment_id, e)
        return ORJSONResponse(
            {
                "success": False,
                "error": "Error processing order",
                "details": str(e),
            },
            status_code=500,
        )
    return {
        "success": True,
        "message": "Order received successfully!",
        "messageId": ids[0] if ids else None,
        "messageIds": ids,
    }


# ----------------------------
# Liveness
# ----------------------------
@app.get("/health")
async def health():
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "localbasket",
        "version": __version__,
        "timings": timings_summary(),
    }
