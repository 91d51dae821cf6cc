from datetime import datetime
from typing import Dict, Optional, Tuple

from .errors import CouponExpired, CouponInactive, CouponInvalid
from .helpers import parse_iso_date, safe_float


def normalize_code(code) -> str:
    return str(code or "").strip().upper()


def validate_coupon(coupon: Dict, now: Optional[datetime] = None) -> Dict:
    now = now or datetime.utcnow()
    if not coupon.get("is_active", True):
        raise CouponInactive()
    expiry = coupon.get("expiry")
    if isinstance(expiry, datetime) and expiry < now:
        raise CouponExpired()
    return coupon


def compute_discount(coupon: Dict, cart_total: float) -> float:
    """Percentage of the cart total, capped by ``max_discount`` and the total."""
    cart_total = max(safe_float(cart_total, 0.0), 0.0)
    percent = min(max(safe_float(coupon.get("discount_percent"), 0.0), 0.0), 100.0)
    discount = cart_total * percent / 100

    max_discount = coupon.get("max_discount")
    if max_discount is not None:
        discount = min(discount, max(safe_float(max_discount, 0.0), 0.0))

    return round(min(discount, cart_total), 2)


def find_coupon_by_code(store, code, session=None) -> Optional[Dict]:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return store.find_one("coupons", {"code": normalized}, session=session)


def apply_coupon(store, code, cart_total, session=None, now=None) -> float:
    coupon = find_coupon_by_code(store, code, session=session)
    if not coupon:
        raise CouponInvalid()
    validate_coupon(coupon, now=now)
    return compute_discount(coupon, cart_total)


def normalize_coupon_payload(payload: Dict, partial: bool = False) -> Tuple[Dict, Optional[str]]:
    """Validate an admin coupon payload.

    Returns ``(fields, error)``. With ``partial`` only the supplied keys are
    checked, which is what updates need.
    """
    fields: Dict[str, object] = {}

    if "code" in payload or not partial:
        code = normalize_code(payload.get("code"))
        if not code:
            return {}, "A coupon code is required."
        fields["code"] = code

    if "discount_percent" in payload or not partial:
        percent = safe_float(payload.get("discount_percent"), -1.0)
        if percent <= 0 or percent > 100:
            return {}, "Discount percent must be greater than 0 and at most 100."
        fields["discount_percent"] = round(percent, 2)

    if "max_discount" in payload:
        raw_cap = payload.get("max_discount")
        if raw_cap is None or raw_cap == "":
            fields["max_discount"] = None
        else:
            cap = safe_float(raw_cap, -1.0)
            if cap < 0:
                return {}, "Max discount cannot be a negative number."
            fields["max_discount"] = round(cap, 2)
    elif not partial:
        fields["max_discount"] = None

    if "expiry" in payload or not partial:
        expiry = parse_iso_date(payload.get("expiry"), end_of_day=True)
        if expiry is None:
            return {}, "Expiry must be a valid ISO date."
        fields["expiry"] = expiry

    if "is_active" in payload:
        fields["is_active"] = bool(payload.get("is_active"))
    elif not partial:
        fields["is_active"] = True

    return fields, None
