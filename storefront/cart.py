"""Shopping cart documents.

The helpers at the top only touch the in-memory dict; the service functions
below them load and persist carts through the store. ``recompute_totals`` must
run right before every cart write so ``total_quantity`` and ``total_price``
always follow the items.

Every stored write bumps ``version`` and only lands when the stored document
is still at the version that was read, so two writers never silently overwrite
each other. While a checkout holds ``checkout_lock`` the cart refuses edits.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

from .errors import CartNotFound, Conflict, InvalidInput, NotFound
from .helpers import parse_object_id, parse_positive_int, safe_float

CART_ACTIVE = "ACTIVE"
CART_CHECKOUT = "CHECKOUT"
CART_STATUSES = (CART_ACTIVE, CART_CHECKOUT)

# A checkout lock older than this belongs to a checkout that never finished.
CHECKOUT_LOCK_TTL = timedelta(minutes=10)

CART_BUSY_MESSAGE = "Your cart is being checked out or was changed elsewhere. Please retry."


def new_cart(user_id: str) -> Dict:
    now = datetime.utcnow()
    return {
        "user_id": user_id,
        "items": [],
        "total_quantity": 0,
        "total_price": 0.0,
        "status": CART_ACTIVE,
        "version": 0,
        "checkout_lock": None,
        "checkout_locked_at": None,
        "created_at": now,
        "updated_at": now,
    }


def lock_is_stale(cart: Dict, now: Optional[datetime] = None) -> bool:
    if not cart.get("checkout_lock"):
        return False
    locked_at = cart.get("checkout_locked_at")
    if not isinstance(locked_at, datetime):
        return True
    return locked_at + CHECKOUT_LOCK_TTL < (now or datetime.utcnow())


def _validated_quantity(quantity) -> int:
    parsed = parse_positive_int(quantity)
    if parsed is None:
        raise InvalidInput("Quantity must be a positive whole number.")
    return parsed


def _validated_price(unit_price) -> float:
    price = safe_float(unit_price, -1.0)
    if price < 0:
        raise InvalidInput("Price cannot be a negative number.")
    return round(price, 2)


def _find_item(cart: Dict, product_id: str) -> Optional[Dict]:
    for item in cart.get("items", []):
        if str(item.get("product_id")) == str(product_id):
            return item
    return None


def add_or_increment_item(cart: Dict, product_id: str, quantity, unit_price) -> Dict:
    quantity = _validated_quantity(quantity)
    price = _validated_price(unit_price)

    existing_item = _find_item(cart, product_id)
    if existing_item:
        existing_item["quantity"] += quantity
        existing_item["price"] = price
        existing_item["total"] = round(existing_item["quantity"] * price, 2)
    else:
        cart.setdefault("items", []).append(
            {
                "product_id": str(product_id),
                "quantity": quantity,
                "price": price,
                "total": round(quantity * price, 2),
            }
        )
    return cart


def set_item_quantity(cart: Dict, product_id: str, quantity, unit_price) -> Dict:
    quantity = _validated_quantity(quantity)
    price = _validated_price(unit_price)

    existing_item = _find_item(cart, product_id)
    if existing_item is None:
        return add_or_increment_item(cart, product_id, quantity, price)
    existing_item["quantity"] = quantity
    existing_item["price"] = price
    existing_item["total"] = round(quantity * price, 2)
    return cart


def remove_item(cart: Dict, product_id: str) -> Dict:
    # Removing a product that is not in the cart leaves it untouched.
    cart["items"] = [
        item
        for item in cart.get("items", [])
        if str(item.get("product_id")) != str(product_id)
    ]
    return cart


def recompute_totals(cart: Dict) -> Dict:
    items = cart.get("items", [])
    cart["total_quantity"] = sum(item["quantity"] for item in items)
    cart["total_price"] = round(sum(item["total"] for item in items), 2)
    return cart


def clear(cart: Dict) -> Dict:
    cart["items"] = []
    cart["total_quantity"] = 0
    cart["total_price"] = 0.0
    return cart


# --- persistence ---


def save_cart(store, cart: Dict, session=None) -> Dict:
    """Persist ``cart`` if nobody else wrote it since it was read.

    Raises ``Conflict`` when the stored cart moved on or a live checkout
    holds it. A stale checkout lock is cleared by the write.
    """
    recompute_totals(cart)
    now = datetime.utcnow()
    cart["updated_at"] = now
    if cart.get("_id") is None:
        cart.setdefault("version", 0)
        store.insert_one("carts", cart, session=session)
        return cart

    lock = cart.get("checkout_lock")
    if lock and not lock_is_stale(cart, now):
        raise Conflict(CART_BUSY_MESSAGE)

    read_version = cart.get("version", 0)
    query = {"_id": cart["_id"], "version": read_version, "checkout_lock": lock}
    cart["version"] = read_version + 1
    cart["checkout_lock"] = None
    cart["checkout_locked_at"] = None
    if not store.replace_one("carts", query, cart, session=session):
        cart["version"] = read_version
        raise Conflict(CART_BUSY_MESSAGE)
    return cart


def find_cart(store, user_id: str, session=None) -> Optional[Dict]:
    return store.find_one("carts", {"user_id": user_id}, session=session)


def get_cart(store, user_id: str) -> Dict:
    cart = find_cart(store, user_id)
    if not cart:
        raise CartNotFound()
    return cart


def _load_product(store, product_id) -> Dict:
    object_id = parse_object_id(product_id)
    product = store.find_one("products", {"_id": object_id}) if object_id else None
    if not product:
        raise NotFound("Product not found.")
    return product


def add_or_update(store, user_id: str, product_id: str, quantity) -> Dict:
    quantity = _validated_quantity(quantity)
    product = _load_product(store, product_id)

    cart = find_cart(store, user_id) or new_cart(user_id)
    cart["status"] = CART_ACTIVE
    add_or_increment_item(cart, str(product["_id"]), quantity, product.get("price", 0))
    return save_cart(store, cart)


def update_quantity(store, user_id: str, product_id: str, quantity) -> Dict:
    quantity = _validated_quantity(quantity)
    product = _load_product(store, product_id)

    cart = find_cart(store, user_id) or new_cart(user_id)
    cart["status"] = CART_ACTIVE
    set_item_quantity(cart, str(product["_id"]), quantity, product.get("price", 0))
    return save_cart(store, cart)


def remove_cart_item(store, user_id: str, product_id: str) -> Dict:
    cart = get_cart(store, user_id)
    if _find_item(cart, product_id) is None:
        return cart
    remove_item(cart, product_id)
    return save_cart(store, cart)


def empty_cart(store, user_id: str) -> Dict:
    cart = get_cart(store, user_id)
    clear(cart)
    cart["status"] = CART_ACTIVE
    return save_cart(store, cart)
