import math
import re
from datetime import datetime
from typing import Dict, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId

from errors import NotFoundError

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def clean_text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def first_present(payload: Dict, *aliases):
    """Return the first alias present in the payload (camelCase, French or snake_case keys)."""
    if not isinstance(payload, dict):
        return None
    for alias in aliases:
        if alias in payload and payload.get(alias) is not None:
            return payload.get(alias)
    return None


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return numeric if numeric > 0 else default


def parse_strict_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_number(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    return numeric if math.isfinite(numeric) else None


def parse_bool(value, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_object_id(value, label: str = "Resource") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{label} not found.")


def isoformat(value) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat() + "Z"
    return None


def to_json_ready(value):
    """Recursively convert ObjectIds and datetimes so documents can be sent as JSON."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, bytes):
        return None
    if isinstance(value, dict):
        return {
            ("id" if key == "_id" else key): to_json_ready(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [to_json_ready(item) for item in value]
    return value


def parse_pagination(args, default_limit: int = DEFAULT_PAGE_LIMIT) -> Tuple[int, int]:
    page = safe_positive_int(args.get("page"), 1) or 1
    limit = safe_positive_int(args.get("limit"), default_limit) or default_limit
    return max(page, 1), min(max(limit, 1), MAX_PAGE_LIMIT)


def pagination_meta(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }


ADDRESS_FIELDS = ("name", "surname", "street", "city", "postal_code", "country", "phone")
ADDRESS_FIELD_ALIASES = {
    "name": ("name", "firstName", "first_name", "prenom"),
    "surname": ("surname", "lastName", "last_name", "nom"),
    "street": ("street", "line1", "address", "rue"),
    "city": ("city", "ville"),
    "postal_code": ("postal_code", "postalCode", "postcode", "zip", "codePostal"),
    "country": ("country", "pays"),
    "phone": ("phone", "telephone"),
}


def normalize_address_payload(payload: Optional[Dict], fields=ADDRESS_FIELDS) -> Dict[str, str]:
    if not isinstance(payload, dict):
        return {}

    normalized: Dict[str, str] = {}
    for field in fields:
        aliases = ADDRESS_FIELD_ALIASES.get(field, (field,))
        value = None
        for alias in aliases:
            if alias in payload:
                value = payload.get(alias)
                break
        if value is None:
            continue
        trimmed = str(value).strip()
        if trimmed:
            normalized[field] = trimmed
    return normalized
