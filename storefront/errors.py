from typing import Dict, Optional


class StoreError(Exception):
    """Base class for failures the API reports to its callers.

    Every subclass maps to one HTTP status code; the class name doubles as the
    machine readable ``error`` field of the JSON body.
    """

    status_code = 500
    default_message = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, str]:
        return {"message": self.message, "error": self.kind}


class InvalidInput(StoreError):
    status_code = 400
    default_message = "The request payload is invalid."


class NotFound(StoreError):
    status_code = 404
    default_message = "The requested resource was not found."


class Conflict(StoreError):
    status_code = 409
    default_message = "The resource already exists."


class CartNotFound(NotFound):
    default_message = "No cart found."


class CartEmpty(StoreError):
    status_code = 400
    default_message = "Cart is empty."


class CouponInvalid(NotFound):
    default_message = "Coupon code is not valid."


class CouponExpired(StoreError):
    status_code = 400
    default_message = "Coupon has expired."


class CouponInactive(StoreError):
    status_code = 400
    default_message = "Coupon is not active."


class InvalidDiscount(StoreError):
    status_code = 400
    default_message = "Discount cannot exceed the order total."


class PaymentFailed(StoreError):
    status_code = 402
    default_message = "Payment could not be completed."


class TransactionAborted(StoreError):
    status_code = 409
    default_message = "Checkout was rolled back. Please try again."
