"""
Checkout orchestration: outcomes, atomicity, isolation and payment failure
handling.
"""

import logging
import threading
import time
from datetime import datetime, timedelta

import pytest
from pymongo.errors import OperationFailure

from storefront import cart as carts
from storefront.checkout import CheckoutService
from storefront.errors import (
    CartEmpty,
    CartNotFound,
    Conflict,
    CouponExpired,
    CouponInactive,
    CouponInvalid,
    PaymentFailed,
    TransactionAborted,
)
from storefront.orders import ORDER_COMPLETED
from storefront.payments import FakePaymentProcessor, PaymentResult

from conftest import MockMongoStore, seed_coupon, seed_product, seed_two_item_cart


def make_service(store, processor=None, timeout=2.0):
    return CheckoutService(
        store, processor or FakePaymentProcessor(), currency="USD", payment_timeout=timeout
    )


def snapshot_cart(store, user_id="user-1"):
    cart = carts.find_cart(store, user_id)
    return {
        key: cart[key]
        for key in ("items", "status", "total_quantity", "total_price", "version", "checkout_lock")
    }


class SlowProcessor:

    def __init__(self, delay, approve=True):
        self.release = threading.Event()
        self.delay = delay
        self.approve = approve

    def process(self, order):
        self.release.wait(self.delay)
        return PaymentResult(self.approve, "LATE" if self.approve else None)


class BrokenProcessor:

    def process(self, order):
        raise ConnectionError("gateway unreachable")


class InterleavingProcessor:
    """Runs ``action`` while the charge is in flight, then approves."""

    def __init__(self, action):
        self.action = action
        self.charges = 0
        self.errors = []

    def process(self, order):
        self.charges += 1
        try:
            self.action()
        except Exception as exc:
            self.errors.append(exc)
        return PaymentResult(True, f"PAY-{self.charges}")


class FailingCartWriteStore(MockMongoStore):
    """Raises a driver error when checkout writes the drained cart."""

    def replace_one(self, collection, query, document, session=None):
        if collection == "carts" and query.get("checkout_lock"):
            raise OperationFailure("WriteConflict")
        return super().replace_one(collection, query, document, session=session)


class ConcurrentWriterStore(MockMongoStore):
    """Another writer bumps the cart version just before the drain lands."""

    def replace_one(self, collection, query, document, session=None):
        if collection == "carts" and query.get("checkout_lock"):
            query = dict(query, version=query["version"] + 1)
        return super().replace_one(collection, query, document, session=session)


# ============================================================================
# Outcomes
# ============================================================================

class TestCheckoutOutcomes:

    def test_empty_cart(self, store):
        seed_two_item_cart(store)
        carts.empty_cart(store, "user-1")

        with pytest.raises(CartEmpty):
            make_service(store).checkout("user-1")
        assert store.count("orders") == 0
        assert carts.find_cart(store, "user-1")["checkout_lock"] is None

    def test_checkout_without_coupon(self, store):
        cart = seed_two_item_cart(store)
        assert cart["total_price"] == 80.0

        order = make_service(store).checkout("user-1")

        assert order["total_price"] == 80.0
        assert order["discount_amount"] == 0.0
        assert order["payable_amount"] == 80.0
        assert order["status"] == ORDER_COMPLETED
        assert order["currency"] == "USD"
        assert order["payment_reference"].startswith("PAY-")
        assert len(order["items"]) == 2

        stored_order = store.find_one("orders", {"_id": order["_id"]})
        assert stored_order["status"] == ORDER_COMPLETED

        stored_cart = carts.find_cart(store, "user-1")
        assert stored_cart["items"] == []
        assert stored_cart["total_quantity"] == 0
        assert stored_cart["total_price"] == 0.0
        assert stored_cart["status"] == carts.CART_CHECKOUT
        assert stored_cart["checkout_lock"] is None

    def test_checkout_with_capped_coupon(self, store):
        seed_two_item_cart(store)
        seed_coupon(store, "SAVE20", percent=20, max_discount=10)

        order = make_service(store).checkout("user-1", "save20")

        assert order["discount_amount"] == 10.0
        assert order["payable_amount"] == 70.0
        assert order["coupon_code"] == "SAVE20"
        stored_order = store.find_one("orders", {"_id": order["_id"]})
        assert stored_order["discount_amount"] == 10.0

    def test_payment_declined(self, store):
        seed_two_item_cart(store)
        before = snapshot_cart(store)

        with pytest.raises(PaymentFailed):
            make_service(store, FakePaymentProcessor(approve=False)).checkout("user-1")

        assert store.count("orders") == 0
        after = snapshot_cart(store)
        assert after == before
        assert len(after["items"]) == 2
        assert after["status"] == carts.CART_ACTIVE

    def test_expired_coupon(self, store):
        seed_two_item_cart(store)
        seed_coupon(store, "OLD", expires_in_days=-1)
        processor = FakePaymentProcessor()
        before = snapshot_cart(store)

        with pytest.raises(CouponExpired):
            make_service(store, processor).checkout("user-1", "OLD")

        assert processor.processed == []
        assert store.count("orders") == 0
        assert snapshot_cart(store) == before


# ============================================================================
# Failure paths
# ============================================================================

class TestFailures:

    def test_no_cart(self, store):
        with pytest.raises(CartNotFound):
            make_service(store).checkout("ghost")

    @pytest.mark.parametrize(
        "code,kwargs,error",
        [
            ("NOPE", None, CouponInvalid),
            ("OFF", {"is_active": False}, CouponInactive),
        ],
    )
    def test_coupon_failures_leave_cart_untouched(self, store, code, kwargs, error):
        seed_two_item_cart(store)
        if kwargs is not None:
            seed_coupon(store, code, **kwargs)
        before = snapshot_cart(store)

        with pytest.raises(error):
            make_service(store).checkout("user-1", code)

        assert snapshot_cart(store) == before
        assert store.count("orders") == 0

    def test_blank_coupon_code_is_ignored(self, store):
        seed_two_item_cart(store)
        order = make_service(store).checkout("user-1", "   ")
        assert order["discount_amount"] == 0.0
        assert order["coupon_code"] is None

    def test_payment_timeout(self, store):
        seed_two_item_cart(store)
        processor = SlowProcessor(delay=5, approve=False)
        before = snapshot_cart(store)

        try:
            with pytest.raises(PaymentFailed) as excinfo:
                make_service(store, processor, timeout=0.05).checkout("user-1")
        finally:
            processor.release.set()

        assert "did not answer" in excinfo.value.message
        assert store.count("orders") == 0
        assert snapshot_cart(store) == before

    def test_late_approval_is_logged_for_reconciliation(self, store, caplog):
        seed_two_item_cart(store)
        processor = SlowProcessor(delay=5)
        caplog.set_level(logging.WARNING, logger="storefront.checkout")

        with pytest.raises(PaymentFailed):
            make_service(store, processor, timeout=0.05).checkout("user-1")
        processor.release.set()

        deadline = time.monotonic() + 2
        while time.monotonic() < deadline:
            if any("approved after the timeout" in r.getMessage() for r in caplog.records):
                break
            time.sleep(0.01)

        late = [r for r in caplog.records if "approved after the timeout" in r.getMessage()]
        assert late and late[0].levelno == logging.WARNING
        assert "LATE" in late[0].getMessage()

    def test_processor_exception(self, store):
        seed_two_item_cart(store)
        before = snapshot_cart(store)

        with pytest.raises(PaymentFailed):
            make_service(store, BrokenProcessor()).checkout("user-1")

        assert store.count("orders") == 0
        assert snapshot_cart(store) == before

    def test_driver_error_after_payment_rolls_back(self):
        store = FailingCartWriteStore()
        seed_two_item_cart(store)
        before = snapshot_cart(store)

        with pytest.raises(TransactionAborted):
            make_service(store).checkout("user-1")

        assert store.count("orders") == 0
        assert snapshot_cart(store) == before

    def test_concurrent_cart_change_aborts(self):
        store = ConcurrentWriterStore()
        seed_two_item_cart(store)
        before = snapshot_cart(store)

        with pytest.raises(TransactionAborted):
            make_service(store).checkout("user-1")

        assert store.count("orders") == 0
        assert snapshot_cart(store) == before

    def test_second_checkout_finds_empty_cart(self, store):
        seed_two_item_cart(store)
        service = make_service(store)
        service.checkout("user-1")

        with pytest.raises(CartEmpty):
            service.checkout("user-1")
        assert store.count("orders") == 1

    def test_checkout_runs_in_one_transaction(self, store):
        seed_two_item_cart(store)
        started = store.transactions_started
        make_service(store).checkout("user-1")
        assert store.transactions_started == started + 1

    def test_retry_after_failed_payment(self, store):
        seed_two_item_cart(store)
        with pytest.raises(PaymentFailed):
            make_service(store, FakePaymentProcessor(approve=False)).checkout("user-1")

        order = make_service(store).checkout("user-1")
        assert order["total_price"] == 80.0
        assert store.count("orders") == 1


# ============================================================================
# Isolation
# ============================================================================

class TestIsolation:

    def test_cart_edit_during_payment_is_refused_not_lost(self, store):
        seed_two_item_cart(store)
        hat = seed_product(store, "Hat", 15.0)
        processor = InterleavingProcessor(
            lambda: carts.add_or_update(store, "user-1", str(hat["_id"]), 2)
        )

        order = make_service(store, processor).checkout("user-1")

        assert len(processor.errors) == 1
        assert isinstance(processor.errors[0], Conflict)
        assert len(order["items"]) == 2
        assert str(hat["_id"]) not in [item["product_id"] for item in order["items"]]
        assert carts.find_cart(store, "user-1")["items"] == []

        cart = carts.add_or_update(store, "user-1", str(hat["_id"]), 2)
        assert cart["total_quantity"] == 2
        assert cart["status"] == carts.CART_ACTIVE

    def test_second_checkout_during_payment_is_refused(self, store):
        seed_two_item_cart(store)
        service_holder = {}
        processor = InterleavingProcessor(lambda: service_holder["service"].checkout("user-1"))
        service = make_service(store, processor)
        service_holder["service"] = service

        order = service.checkout("user-1")

        assert processor.charges == 1
        assert len(processor.errors) == 1
        assert isinstance(processor.errors[0], TransactionAborted)
        assert store.count("orders") == 1
        assert order["status"] == ORDER_COMPLETED
        cart = carts.find_cart(store, "user-1")
        assert cart["items"] == []
        assert cart["status"] == carts.CART_CHECKOUT

    def test_stale_cart_copy_cannot_overwrite_newer_write(self, store):
        seed_two_item_cart(store)
        stale = carts.find_cart(store, "user-1")
        carts.empty_cart(store, "user-1")

        carts.add_or_increment_item(stale, "extra", 1, 5)
        with pytest.raises(Conflict):
            carts.save_cart(store, stale)
        assert carts.find_cart(store, "user-1")["items"] == []

    def test_stale_checkout_lock_is_released(self, store):
        seed_two_item_cart(store)
        cart = carts.find_cart(store, "user-1")
        store.db["carts"].update_one(
            {"_id": cart["_id"]},
            {
                "$set": {
                    "checkout_lock": "abandoned",
                    "checkout_locked_at": datetime.utcnow() - timedelta(hours=1),
                }
            },
        )

        order = make_service(store).checkout("user-1")

        assert order["total_price"] == 80.0
        assert carts.find_cart(store, "user-1")["checkout_lock"] is None

    def test_live_checkout_lock_blocks_cart_edits(self, store):
        seed_two_item_cart(store)
        cart = carts.find_cart(store, "user-1")
        store.db["carts"].update_one(
            {"_id": cart["_id"]},
            {"$set": {"checkout_lock": "busy", "checkout_locked_at": datetime.utcnow()}},
        )

        with pytest.raises(Conflict):
            carts.empty_cart(store, "user-1")
        with pytest.raises(TransactionAborted):
            make_service(store).checkout("user-1")
        assert len(carts.find_cart(store, "user-1")["items"]) == 2
