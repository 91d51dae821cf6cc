"""Customer profiles and password reset tokens.

Only the sha256 digest of a reset token is stored; the plain token travels in
the link handed to the reset notifier.
"""

import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("street", "city", "state", "postal_code", "country")
ADDRESS_FIELD_ALIASES = {
    "street": ("street", "line1", "line_1", "address_line_1", "addressLine1", "address1"),
    "city": ("city", "town"),
    "state": ("state", "region", "province"),
    "postal_code": (
        "postal_code",
        "postalCode",
        "postcode",
        "zip",
        "zip_code",
        "zipCode",
    ),
    "country": ("country",),
}
ADDRESS_REQUIRED_FIELDS = ("street", "city", "postal_code", "country")

PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 ()\-]{5,19}$")

RESET_TOKEN_BYTES = 32


def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(payload, dict):
        return {}

    normalized: Dict[str, str] = {}
    for field in ADDRESS_FIELDS:
        value = None
        for alias in ADDRESS_FIELD_ALIASES.get(field, (field,)):
            if alias in payload:
                value = payload.get(alias)
                break
        if value is None:
            continue
        trimmed = str(value).strip()
        if trimmed:
            normalized[field] = trimmed
    return normalized


def is_complete_address(payload: Optional[Dict]) -> bool:
    normalized = normalize_address_payload(payload)
    return all(normalized.get(field) for field in ADDRESS_REQUIRED_FIELDS)


def serialize_address(payload: Optional[Dict]) -> Dict[str, str]:
    normalized = normalize_address_payload(payload)
    return {field: normalized.get(field, "") for field in ADDRESS_FIELDS}


def normalize_profile_payload(payload: Dict, partial: bool = False) -> Tuple[Dict, Optional[str]]:
    """Validate a profile payload into ``(fields, error)``.

    ``phone``/``phoneNumber`` and ``billing_address``/``billingAddress`` are
    accepted. With ``partial`` only the supplied keys are checked.
    """
    fields: Dict[str, object] = {}

    phone_key = next((key for key in ("phone", "phoneNumber") if key in payload), None)
    if phone_key or not partial:
        phone = str(payload.get(phone_key) or "").strip() if phone_key else ""
        if not PHONE_PATTERN.match(phone):
            return {}, "Please provide a valid phone number."
        fields["phone"] = phone

    address_key = next(
        (key for key in ("billing_address", "billingAddress") if key in payload), None
    )
    if address_key or not partial:
        address = payload.get(address_key) if address_key else None
        if not is_complete_address(address):
            return (
                {},
                "Billing address needs a street, city, postal code and country.",
            )
        fields["billing_address"] = normalize_address_payload(address)

    return fields, None


def hash_token(token: str) -> str:
    return hashlib.sha256(str(token or "").encode("utf-8")).hexdigest()


def issue_reset_token(
    expiry_minutes: int, now: Optional[datetime] = None
) -> Tuple[str, str, datetime]:
    """Return ``(token, token_hash, expires_at)`` for a new reset link."""
    token = secrets.token_urlsafe(RESET_TOKEN_BYTES)
    expires_at = (now or datetime.utcnow()) + timedelta(minutes=expiry_minutes)
    return token, hash_token(token), expires_at


def reset_token_is_valid(user_document: Optional[Dict], now: Optional[datetime] = None) -> bool:
    if not user_document or not user_document.get("password_reset_token"):
        return False
    expires_at = user_document.get("password_reset_expires_at")
    return isinstance(expires_at, datetime) and expires_at > (now or datetime.utcnow())


class LoggingResetNotifier:
    """Hands reset links to the application log instead of a mail service."""

    def send_reset_link(self, email: str, link: str, expires_at: datetime):
        logger.info("Password reset link for %s (valid until %s): %s", email, expires_at, link)
