"""Shared fixtures.

The app reads its configuration at import time, so the environment is
pinned here before anything from ``localbasket.server`` is imported.
"""

import json
import os
import sqlite3
import tempfile

_TMP = tempfile.mkdtemp(prefix="localbasket-tests-")
DB_PATH = os.path.join(_TMP, "products.db")
COUPONS_PATH = os.path.join(_TMP, "coupons.json")

TEST_COUPONS = [
    {"code": "XMAS25", "name": "Christmas Special", "type": "percentage",
     "value": 25, "min_purchase": 0, "expires_at": "2099-12-31T23:59:59Z",
     "message": "25% off your order"},
    {"code": "BIG100", "name": "Big Basket", "type": "flat", "value": 20,
     "min_purchase": 100, "expires_at": "2099-12-31T23:59:59Z",
     "message": "₹20 off above ₹100"},
    {"code": "OLDIE", "name": "Expired", "type": "percentage", "value": 90,
     "expires_at": "2001-01-01T00:00:00Z", "message": "too late"},
]
with open(COUPONS_PATH, "w", encoding="utf-8") as f:
    json.dump(TEST_COUPONS, f)

os.environ["DATABASE_URL"] = f"sqlite:///{DB_PATH}"
os.environ["COUPONS_FILE"] = COUPONS_PATH
os.environ["PAYMENT_BACKEND"] = "mock"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["WEBHOOK_ALLOW_TEST_SIGNATURE"] = "0"
os.environ["WEBHOOK_DEDUP_BACKEND"] = "off"
os.environ["ADMIN_EMAIL"] = "orders@localbasket.test"
os.environ["CATALOG_TTL_SECONDS"] = "300"
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from localbasket.server import app, get_dispatcher  # noqa: E402
from tests.fakes import RecordingDispatcher  # noqa: E402

WEBHOOK_SECRET = os.environ["RAZORPAY_WEBHOOK_SECRET"]

PRODUCTS = [
    ("Alphonso Mango Box", "Ratnagiri alphonso, 1 dozen", 100.0, 12,
     "images/mango.jpg"),
    ("Cold Pressed Groundnut Oil", "1 litre", 250.0, 5, "images/oil.jpg"),
    ("Organic Jaggery", None, 50.0, 0, "images/jaggery.jpg"),
]


def seed_products(rows=PRODUCTS):
    with sqlite3.connect(DB_PATH) as conn:
        conn.execute("DELETE FROM products")
        conn.executemany(
            "INSERT INTO products (name, description, price, quantity, image)"
            " VALUES (?, ?, ?, ?, ?)",
            rows,
        )
        conn.commit()


@pytest.fixture
def client():
    with TestClient(app) as c:
        seed_products()
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def dispatcher(client):
    fake = RecordingDispatcher()
    app.dependency_overrides[get_dispatcher] = lambda: fake
    return fake
