"""Unit tests for the order intent builder."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from localbasket.errors import ValidationError
from localbasket.model.cart import CartLine
from localbasket.model.coupons import Coupon
from localbasket.model.intent import (
    ShippingRecord, build_intent, parse_shipping,
)

NOW = datetime(2026, 10, 1, tzinfo=timezone.utc)

LINES = (
    CartLine(product_id=1, name="Mango Box", price=Decimal("100"), qty=2,
             image="mango.jpg"),
)
SHIPPING = ShippingRecord(
    name="Asha Rao", email="asha@example.com", address="12 MG Road, Pune",
    phone="9876543210", pincode="411001",
)
XMAS25 = Coupon(code="XMAS25", name="Christmas", type="percentage",
                value=Decimal("25"), expires_at=NOW + timedelta(days=90))


def _with(**kw) -> ShippingRecord:
    data = SHIPPING.to_dict()
    data.update(kw)
    return ShippingRecord(**data)


class TestBuildIntent:

    def test_amount_matches_totals(self):
        intent = build_intent(LINES, SHIPPING, XMAS25, Decimal("50"))
        assert intent.amount == Decimal("230.00")
        assert intent.currency == "INR"
        assert intent.totals.grand_total == intent.amount

    def test_all_notes_are_strings(self):
        intent = build_intent(LINES, SHIPPING, XMAS25, Decimal("50"))
        assert all(isinstance(v, str) for v in intent.notes.values())

    def test_notes_round_trip(self):
        intent = build_intent(LINES, SHIPPING, XMAS25, Decimal("50"))
        notes = intent.notes
        assert json.loads(notes["shipping"]) == SHIPPING.to_dict()
        items = json.loads(notes["items"])
        assert items == [{"id": 1, "name": "Mango Box", "price": "100",
                          "qty": 2, "img": "mango.jpg"}]
        coupon = json.loads(notes["coupon"])
        assert coupon["code"] == "XMAS25"
        assert coupon["discount"] == "50.00"
        assert notes["discount"] == "50.00"

    def test_no_coupon(self):
        intent = build_intent(LINES, SHIPPING, None, Decimal("50"))
        assert intent.notes["coupon"] == ""
        assert intent.notes["discount"] == "0.00"
        assert intent.amount == Decimal("280.00")

    def test_currency_upper_cased(self):
        intent = build_intent(LINES, SHIPPING, None, Decimal("0"),
                              currency="inr")
        assert intent.currency == "INR"

    def test_empty_cart(self):
        with pytest.raises(ValidationError) as exc:
            build_intent((), SHIPPING, None, Decimal("0"))
        assert exc.value.field == "items"


class TestShippingValidation:

    @pytest.mark.parametrize("field,value", [
        ("name", ""),
        ("email", "asha-at-example.com"),
        ("address", ""),
        ("phone", "12345"),
        ("phone", "5876543210"),
        ("phone", "98765432101"),
        ("pincode", "4110"),
        ("pincode", "41100a"),
    ])
    def test_bad_field_is_reported(self, field, value):
        with pytest.raises(ValidationError) as exc:
            build_intent(LINES, _with(**{field: value}), None, Decimal("0"))
        assert exc.value.field == field

    def test_first_failing_field_wins(self):
        bad = _with(email="nope", phone="1", pincode="")
        with pytest.raises(ValidationError) as exc:
            build_intent(LINES, bad, None, Decimal("0"))
        # missing fields are reported before malformed ones
        assert exc.value.field == "pincode"

    def test_format_order(self):
        bad = _with(email="nope", phone="1")
        with pytest.raises(ValidationError) as exc:
            build_intent(LINES, bad, None, Decimal("0"))
        assert exc.value.field == "email"


class TestParseShipping:

    def test_aliases(self):
        rec = parse_shipping({"name": " Asha ", "email": "a@b.in",
                              "address": "x", "contact": "9876543210",
                              "postal_code": 411001})
        assert rec.name == "Asha"
        assert rec.phone == "9876543210"
        assert rec.pincode == "411001"

    def test_none(self):
        rec = parse_shipping(None)
        assert rec == ShippingRecord("", "", "", "", "")
