import copy
from datetime import datetime
from typing import Dict, Optional

from .errors import InvalidDiscount
from .helpers import safe_float

ORDER_PENDING = "PENDING"
ORDER_COMPLETED = "COMPLETED"
ORDER_CANCELLED = "CANCELLED"
ORDER_STATUSES = (ORDER_PENDING, ORDER_COMPLETED, ORDER_CANCELLED)

# Transitions an administrator may apply to a stored order.
ADMIN_TRANSITIONS = {
    ORDER_COMPLETED: {ORDER_CANCELLED},
}


def create_order(
    cart: Dict,
    discount_amount: float,
    currency: str = "USD",
    coupon_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """Snapshot ``cart`` into a new PENDING order. The caller persists it."""
    total_price = round(safe_float(cart.get("total_price"), 0.0), 2)
    discount_amount = round(safe_float(discount_amount, -1.0), 2)
    if discount_amount < 0 or discount_amount > total_price:
        raise InvalidDiscount()

    now = now or datetime.utcnow()
    return {
        "user_id": cart["user_id"],
        "items": copy.deepcopy(cart.get("items", [])),
        "total_quantity": cart.get("total_quantity", 0),
        "total_price": total_price,
        "discount_amount": discount_amount,
        "payable_amount": round(total_price - discount_amount, 2),
        "coupon_code": coupon_code or None,
        "currency": (currency or "USD").upper(),
        "status": ORDER_PENDING,
        "payment_reference": None,
        "created_at": now,
        "updated_at": now,
    }


def complete_order(order: Dict, reference: Optional[str], now: Optional[datetime] = None) -> Dict:
    order["status"] = ORDER_COMPLETED
    order["payment_reference"] = reference
    order["updated_at"] = now or datetime.utcnow()
    return order


def can_transition(current: str, target: str) -> bool:
    return target in ADMIN_TRANSITIONS.get(current, set())
