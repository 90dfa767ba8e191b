"""HTTP tests for the storefront API."""

import json
from decimal import Decimal

import pytest

from localbasket.errors import GatewayError
from localbasket.model.seenpayments import MemorySeenPayments
from localbasket.server import app, get_gateway
from localbasket.webhook import SIGNATURE_HEADER, sign
from tests.conftest import WEBHOOK_SECRET

SHIPPING = {"name": "Asha Rao", "email": "asha@example.com",
            "address": "12 MG Road, Pune", "phone": "9876543210",
            "pincode": "411001"}
MANGO = {"id": 1, "name": "Alphonso Mango Box", "price": "100", "qty": 2,
         "img": "images/mango.jpg"}


def _webhook_body(notes, amount=23000, payment_id="pay_api_1"):
    return json.dumps({
        "entity": "event",
        "event": "payment.captured",
        "payload": {"payment": {"entity": {
            "id": payment_id,
            "amount": amount,
            "currency": "INR",
            "status": "captured",
            "order_id": "order_api_1",
            "email": "asha@example.com",
            "contact": "+919876543210",
            "notes": notes,
        }}},
    }).encode()


def _post_webhook(client, body, signature=None):
    return client.post(
        "/razorpay-webhook",
        content=body,
        headers={
            SIGNATURE_HEADER: signature or sign(body, WEBHOOK_SECRET),
            "content-type": "application/json",
        },
    )


def _intent_notes(client, code="XMAS25"):
    resp = client.post("/api/checkout/intent", json={
        "items": [MANGO], "shipping": SHIPPING, "coupon_code": code,
    })
    assert resp.status_code == 200
    return resp.json()["intent"]["notes"]


# ── catalog ──────────────────────────────────────────────────────────────────


def test_products(client):
    resp = client.get("/api/products")
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert [p["name"] for p in data["products"]] == [
        "Alphonso Mango Box", "Cold Pressed Groundnut Oil", "Organic Jaggery",
    ]
    assert data["products"][2]["description"] == ""
    assert data["products"][2]["quantity"] == 0


def test_products_cached_on_second_read(client):
    first = client.get("/api/products").json()
    second = client.get("/api/products").json()
    assert first["cached"] is False
    assert second["cached"] is True
    assert first["products"] == second["products"]


# ── coupons ──────────────────────────────────────────────────────────────────


def test_list_coupons(client):
    resp = client.get("/api/coupons")
    assert resp.status_code == 200
    codes = {c["code"] for c in resp.json()}
    assert codes == {"XMAS25", "BIG100", "OLDIE"}


def test_apply_coupon(client):
    resp = client.post("/api/coupons/apply",
                       json={"code": " xmas25 ", "items": [MANGO]})
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["coupon"]["code"] == "XMAS25"
    assert data["discount"] == 50
    assert data["totals"] == {"subtotal": "200.00", "shipping": "80.00",
                              "discount": "50.00", "grandTotal": "230.00"}


def test_apply_unknown_coupon(client):
    resp = client.post("/api/coupons/apply",
                       json={"code": "NOPE", "items": [MANGO]})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "reason": "not_found",
                           "message": "Invalid coupon code"}


def test_apply_expired_coupon(client):
    resp = client.post("/api/coupons/apply",
                       json={"code": "OLDIE", "items": [MANGO]})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "expired"


def test_apply_below_minimum(client):
    item = dict(MANGO, price="40", qty=1)
    resp = client.post("/api/coupons/apply",
                       json={"code": "BIG100", "items": [item]})
    assert resp.status_code == 400
    body = resp.json()
    assert body["reason"] == "below_minimum"
    assert "100" in body["message"]


# ── checkout ─────────────────────────────────────────────────────────────────


def test_checkout_intent(client):
    resp = client.post("/api/checkout/intent", json={
        "items": [MANGO], "shipping": SHIPPING, "coupon_code": "XMAS25",
    })
    assert resp.status_code == 200
    intent = resp.json()["intent"]
    assert intent["amount"] == 230
    assert intent["currency"] == "INR"
    assert intent["notes"]["discount"] == "50.00"
    assert json.loads(intent["notes"]["coupon"])["code"] == "XMAS25"
    assert json.loads(intent["notes"]["shipping"])["pincode"] == "411001"


def test_checkout_intent_without_coupon(client):
    resp = client.post("/api/checkout/intent",
                       json={"items": [MANGO], "shipping": SHIPPING})
    assert resp.status_code == 200
    data = resp.json()
    assert data["intent"]["amount"] == 280
    assert data["intent"]["notes"]["coupon"] == ""


def test_checkout_intent_bad_phone(client):
    resp = client.post("/api/checkout/intent", json={
        "items": [MANGO], "shipping": dict(SHIPPING, phone="12345"),
    })
    assert resp.status_code == 400
    assert resp.json()["field"] == "phone"


def test_checkout_intent_empty_cart(client):
    resp = client.post("/api/checkout/intent",
                       json={"items": [], "shipping": SHIPPING})
    assert resp.status_code == 400
    assert resp.json()["field"] == "items"


def test_checkout_intent_out_of_range_price(client):
    resp = client.post("/api/checkout/intent", json={
        "items": [dict(MANGO, price="1e50")], "shipping": SHIPPING,
    })
    assert resp.status_code == 400
    assert resp.json()["field"] == "items"


def test_checkout_intent_rejected_coupon(client):
    resp = client.post("/api/checkout/intent", json={
        "items": [MANGO], "shipping": SHIPPING, "coupon_code": "OLDIE",
    })
    assert resp.status_code == 400
    assert resp.json()["field"] == "coupon"


# ── payment order ────────────────────────────────────────────────────────────


def test_create_order(client):
    resp = client.post("/create-razorpay-order", json={
        "amount": 230, "currency": "inr",
        "notes": {"discount": "50.00", "count": 2},
    })
    assert resp.status_code == 200
    order = resp.json()["order"]
    assert order["id"].startswith("order_mock_")
    assert order["amount"] == 23000
    assert order["currency"] == "INR"
    notes = app.state.gateway.orders[-1]["notes"]
    assert notes == {"discount": "50.00", "count": "2"}


def test_create_order_zero_amount(client):
    resp = client.post("/create-razorpay-order", json={"amount": 0})
    assert resp.status_code == 400
    assert resp.json()["success"] is False


@pytest.mark.parametrize("amount", ["lots", "1e50", "Infinity"])
def test_create_order_non_numeric_amount(client, amount):
    resp = client.post("/create-razorpay-order", json={"amount": amount})
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_create_order_notes_must_be_object(client):
    resp = client.post("/create-razorpay-order",
                       json={"amount": 10, "notes": ["a", "b"]})
    assert resp.status_code == 400
    assert resp.json()["field"] == "notes"


def test_create_order_gateway_failure(client):
    class DownGateway:
        async def create_order(self, amount, currency, notes):
            raise GatewayError("payment gateway unreachable: timed out")

    app.dependency_overrides[get_gateway] = lambda: DownGateway()
    resp = client.post("/create-razorpay-order", json={"amount": 10})
    assert resp.status_code == 502
    assert "unreachable" in resp.json()["error"]


# ── webhook ──────────────────────────────────────────────────────────────────


def test_webhook_dispatches_order(client, dispatcher):
    body = _webhook_body(_intent_notes(client))
    resp = _post_webhook(client, body)
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}

    [order] = dispatcher.submitted
    assert order.payment_id == "pay_api_1"
    assert order.grand_total == Decimal("230")
    assert order.coupon.code == "XMAS25"
    assert order.discount == Decimal("50")
    assert order.shipping.email == "asha@example.com"


def test_webhook_signature_over_other_body(client, dispatcher):
    notes = _intent_notes(client)
    body = _webhook_body(notes)
    other = _webhook_body(notes, amount=100)
    resp = _post_webhook(client, body, signature=sign(other, WEBHOOK_SECRET))
    assert resp.status_code == 400
    assert resp.json() == {"status": "invalid signature"}
    assert dispatcher.submitted == []


def test_webhook_missing_signature(client, dispatcher):
    resp = client.post("/razorpay-webhook", content=b"{}")
    assert resp.status_code == 400
    assert dispatcher.submitted == []


def test_webhook_test_signature_rejected_by_default(client, dispatcher):
    body = _webhook_body(_intent_notes(client))
    resp = _post_webhook(client, body, signature="razorpay_test_signature")
    assert resp.status_code == 400
    assert dispatcher.submitted == []


def test_webhook_malformed_json(client, dispatcher):
    body = b"{not json"
    resp = _post_webhook(client, body)
    assert resp.status_code == 400
    assert resp.json()["status"] == "error"
    assert dispatcher.submitted == []


def test_webhook_redelivery_dispatches_twice(client, dispatcher):
    body = _webhook_body(_intent_notes(client))
    assert _post_webhook(client, body).status_code == 200
    assert _post_webhook(client, body).status_code == 200
    assert len(dispatcher.submitted) == 2


def test_webhook_redelivery_suppressed_with_guard(client, dispatcher):
    app.state.seen = MemorySeenPayments()
    body = _webhook_body(_intent_notes(client))
    assert _post_webhook(client, body).json() == {"status": "ok"}
    second = _post_webhook(client, body)
    assert second.status_code == 200
    assert second.json() == {"status": "ok", "duplicate": True}
    assert len(dispatcher.submitted) == 1


def test_webhook_malformed_coupon_note(client, dispatcher):
    notes = _intent_notes(client)
    notes["coupon"] = "{broken"
    notes.pop("discount")
    resp = _post_webhook(client, _webhook_body(notes))
    assert resp.status_code == 200
    [order] = dispatcher.submitted
    assert order.coupon is None
    assert order.discount == Decimal("0")


def test_webhook_out_of_range_discount_note(client, dispatcher):
    notes = _intent_notes(client)
    notes["discount"] = "1e50"
    notes["coupon"] = json.dumps({"code": "XMAS25", "discount": "1e50"})
    resp = _post_webhook(client, _webhook_body(notes))
    assert resp.status_code == 200
    [order] = dispatcher.submitted
    assert order.discount == Decimal("0")


def test_webhook_failed_payment_ignored(client, dispatcher):
    body = json.dumps({
        "event": "payment.failed",
        "payload": {"payment": {"entity": {
            "id": "pay_failed_1", "amount": 100, "currency": "INR",
            "status": "failed", "notes": [],
        }}},
    }).encode()
    resp = _post_webhook(client, body)
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "ignored": True}
    assert dispatcher.submitted == []


# ── legacy order mail ────────────────────────────────────────────────────────


def test_send_order(client, dispatcher):
    resp = client.post("/send-order", json={
        "items": [dict(MANGO, name="<b>Mango</b>")],
        "shipping": SHIPPING,
        "grandTotal": 280,
    })
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["messageId"] == "<admin-1@test>"
    [order] = dispatcher.sent_now
    assert order.items[0]["name"] == "&lt;b&gt;Mango&lt;/b&gt;"


def test_send_order_without_items(client, dispatcher):
    resp = client.post("/send-order", json={"items": [], "grandTotal": 10})
    assert resp.status_code == 400
    assert resp.json()["error"] == "No items in order"


def test_send_order_mail_failure(client, dispatcher):
    dispatcher.fail_send_now = True
    resp = client.post("/send-order", json={
        "items": [MANGO], "shipping": SHIPPING, "grandTotal": 280,
    })
    assert resp.status_code == 500
    assert resp.json()["error"] == "Error processing order"


# ── health ───────────────────────────────────────────────────────────────────


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "OK"
    assert data["service"] == "localbasket"
    assert "timings" in data
