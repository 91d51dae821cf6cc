import math
from datetime import datetime, time, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def parse_positive_int(value) -> Optional[int]:
    """Strict variant used for quantities: whole numbers above zero only."""
    if isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(numeric) or numeric != int(numeric) or numeric < 1:
        return None
    return int(numeric)


def parse_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        return None


def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    if end_of_day and len(str(value).strip()) == 10:
        parsed = datetime.combine(parsed.date(), time.max)
    return parsed


def serialize_document(document: Optional[Dict[str, Any]]):
    """Turn a stored document into something ``jsonify`` can render."""
    if document is None:
        return None

    def convert(value):
        if isinstance(value, ObjectId):
            return str(value)
        if isinstance(value, datetime):
            return value.isoformat() + "Z"
        if isinstance(value, dict):
            return {key: convert(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [convert(item) for item in value]
        return value

    serialized = {}
    for key, value in document.items():
        if key == "_id":
            serialized["id"] = convert(value)
        else:
            serialized[key] = convert(value)
    return serialized
