"""
Shared fixtures for the storefront test-suite.

``MockMongoStore`` is the real ``MongoStore`` over a mongomock client with
native transactions switched off, so every test runs the compensation path
and the same queries production sends to MongoDB.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from storefront import create_app
from storefront.payments import FakePaymentProcessor
from storefront.store import MongoStore

TEST_CONFIG = {
    "TESTING": True,
    "JWT_SECRET_KEY": "storefront-test-secret-key-0123456789",
    "DEFAULT_ADMIN_EMAIL": "admin@example.com",
    "TRUSTED_PROXY_HOPS": 0,
    "PAYMENT_TIMEOUT_SECONDS": 2.0,
    "CURRENCY": "USD",
}


class MockMongoStore(MongoStore):
    """MongoStore on mongomock that counts the units of work it opens."""

    def __init__(self):
        client = mongomock.MongoClient()
        super().__init__(client, client["storefront_test"], transactions=False)
        self.transactions_started = 0
        self.ensure_indexes()

    @contextmanager
    def transaction(self):
        self.transactions_started += 1
        with super().transaction() as journal:
            yield journal


class RecordingResetNotifier:

    def __init__(self):
        self.sent = []

    def send_reset_link(self, email, link, expires_at):
        self.sent.append({"email": email, "link": link, "expires_at": expires_at})


# ============================================================================
# Seed helpers
# ============================================================================

def seed_product(store, name="Sample Product", price=10.0, categories=("general",)):
    product = {
        "name": name,
        "description": f"{name} description",
        "price": price,
        "categories": list(categories),
        "is_featured": False,
        "created_at": datetime.utcnow(),
    }
    store.insert_one("products", product)
    return product


def seed_coupon(store, code="SAVE20", percent=20, max_discount=10, expires_in_days=30, is_active=True):
    coupon = {
        "code": code,
        "discount_percent": percent,
        "max_discount": max_discount,
        "expiry": datetime.utcnow() + timedelta(days=expires_in_days),
        "is_active": is_active,
        "created_at": datetime.utcnow(),
    }
    store.insert_one("coupons", coupon)
    return coupon


def seed_two_item_cart(store, user_id="user-1"):
    """Three $10 shirts and one $50 jacket: $80 in total."""
    from storefront import cart as carts

    shirt = seed_product(store, "Shirt", 10.0)
    jacket = seed_product(store, "Jacket", 50.0)
    carts.add_or_update(store, user_id, str(shirt["_id"]), 3)
    return carts.add_or_update(store, user_id, str(jacket["_id"]), 1)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store():
    return MockMongoStore()


@pytest.fixture
def processor():
    return FakePaymentProcessor()


@pytest.fixture
def notifier():
    return RecordingResetNotifier()


@pytest.fixture
def app(store, processor, notifier):
    return create_app(
        dict(TEST_CONFIG),
        store=store,
        payment_processor=processor,
        reset_notifier=notifier,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(store, app):
    """Insert a user directly and return ``(user_document, auth_headers)``."""

    def factory(email="shopper@example.com", role="user"):
        user = {
            "first_name": "Test",
            "last_name": "User",
            "email": email,
            "password": b"not-used",
            "role": role,
            "created_at": datetime.utcnow(),
        }
        store.insert_one("users", user)
        with app.app_context():
            token = create_access_token(identity=str(user["_id"]))
        return user, {"Authorization": f"Bearer {token}"}

    return factory
