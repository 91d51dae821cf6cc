"""Cart to order checkout.

``CheckoutService.checkout`` walks the cart through

    START -> CART_LOADED -> DISCOUNT_APPLIED -> ORDER_CREATED
          -> PAYMENT_PENDING -> COMPLETED

inside a single ``store.transaction()``. Any failure leaves the unit of work
through ABORTED: the transaction is rolled back, so no order survives and the
cart keeps its items and status.

The cart is claimed by setting ``checkout_lock`` before anything is charged.
Cart edits and other checkouts are refused until the drain releases it.
"""

import concurrent.futures
import copy
import functools
import logging
import os
from datetime import datetime
from typing import Dict, Optional

from . import cart as carts
from .coupons import apply_coupon, normalize_code
from .errors import CartEmpty, CartNotFound, PaymentFailed, StoreError, TransactionAborted
from .orders import complete_order, create_order

logger = logging.getLogger(__name__)

START = "START"
CART_LOADED = "CART_LOADED"
DISCOUNT_APPLIED = "DISCOUNT_APPLIED"
ORDER_CREATED = "ORDER_CREATED"
PAYMENT_PENDING = "PAYMENT_PENDING"
COMPLETED = "COMPLETED"
ABORTED = "ABORTED"


class CheckoutService:
    def __init__(
        self,
        store,
        payment_processor,
        currency: str = "USD",
        payment_timeout: float = 30.0,
    ):
        self.store = store
        self.payment_processor = payment_processor
        self.currency = currency
        self.payment_timeout = payment_timeout

    def checkout(self, user_id: str, coupon_code: Optional[str] = None) -> Dict:
        stage = START
        try:
            self._release_stale_lock(user_id)
            with self.store.transaction() as session:
                cart = self._claim_cart(user_id, session)
                lock = cart["checkout_lock"]
                claimed_version = cart.get("version")
                stage = self._advance(user_id, stage, CART_LOADED)

                code = normalize_code(coupon_code) or None
                discount_amount = 0.0
                if code:
                    discount_amount = apply_coupon(
                        self.store, code, cart["total_price"], session=session
                    )
                    stage = self._advance(user_id, stage, DISCOUNT_APPLIED)

                order = create_order(cart, discount_amount, self.currency, code)
                self.store.insert_one("orders", order, session=session)
                stage = self._advance(user_id, stage, ORDER_CREATED)

                stage = self._advance(user_id, stage, PAYMENT_PENDING)
                result = self._charge(order)
                if not result.success:
                    raise PaymentFailed("Payment was declined by the processor.")

                complete_order(order, result.reference)
                self.store.replace_one("orders", {"_id": order["_id"]}, order, session=session)

                carts.clear(cart)
                cart["status"] = carts.CART_CHECKOUT
                carts.recompute_totals(cart)
                cart["version"] = claimed_version + 1
                cart["checkout_lock"] = None
                cart["checkout_locked_at"] = None
                cart["updated_at"] = datetime.utcnow()
                drained = self.store.replace_one(
                    "carts",
                    {"_id": cart["_id"], "version": claimed_version, "checkout_lock": lock},
                    cart,
                    session=session,
                )
                if not drained:
                    raise TransactionAborted("Cart was modified during checkout.")
        except StoreError as exc:
            logger.warning(
                "Checkout for user %s %s at %s: %s", user_id, ABORTED, stage, exc.message
            )
            raise
        except Exception as exc:
            logger.exception("Checkout for user %s %s at %s", user_id, ABORTED, stage)
            raise TransactionAborted() from exc

        self._advance(user_id, stage, COMPLETED)
        logger.info(
            "Order %s completed for user %s (%s %s)",
            order["_id"],
            user_id,
            order["payable_amount"],
            order["currency"],
        )
        return order

    def _release_stale_lock(self, user_id: str):
        cart = carts.find_cart(self.store, user_id)
        if not cart or not carts.lock_is_stale(cart):
            return
        released = self.store.find_one_and_update(
            "carts",
            {"_id": cart["_id"], "checkout_lock": cart["checkout_lock"]},
            {
                "$set": {"checkout_lock": None, "checkout_locked_at": None},
                "$inc": {"version": 1},
            },
        )
        if released:
            logger.warning(
                "Released stale checkout lock on cart %s (taken at %s)",
                cart["_id"],
                cart.get("checkout_locked_at"),
            )

    def _claim_cart(self, user_id: str, session) -> Dict:
        # Taking the lock and bumping the version in one write makes the claim
        # exclusive: a second checkout or a cart edit cannot match any more.
        cart = self.store.find_one_and_update(
            "carts",
            {"user_id": user_id, "checkout_lock": None},
            {
                "$set": {
                    "checkout_lock": os.urandom(8).hex(),
                    "checkout_locked_at": datetime.utcnow(),
                },
                "$inc": {"version": 1},
            },
            session=session,
        )
        if not cart:
            if carts.find_cart(self.store, user_id, session=session):
                raise TransactionAborted("A checkout for this cart is already in progress.")
            raise CartNotFound()
        if not cart.get("items"):
            raise CartEmpty()
        return cart

    def _charge(self, order: Dict):
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self.payment_processor.process, copy.deepcopy(order))
        try:
            return future.result(timeout=self.payment_timeout)
        except concurrent.futures.TimeoutError as exc:
            future.add_done_callback(functools.partial(_report_late_payment, order.get("_id")))
            raise PaymentFailed(
                f"Payment processor did not answer within {self.payment_timeout:g} seconds."
            ) from exc
        except Exception as exc:
            logger.error("Payment processor error for order %s: %s", order.get("_id"), exc)
            raise PaymentFailed() from exc
        finally:
            executor.shutdown(wait=False)

    @staticmethod
    def _advance(user_id: str, current: str, target: str) -> str:
        logger.debug("Checkout for user %s: %s -> %s", user_id, current, target)
        return target


def _report_late_payment(order_id, future):
    if future.cancelled() or future.exception() is not None:
        return
    result = future.result()
    if result.success:
        logger.warning(
            "Payment for rolled back order %s was approved after the timeout "
            "(reference %s); the charge needs to be reconciled",
            order_id,
            result.reference,
        )
