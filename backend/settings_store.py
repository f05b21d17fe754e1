import copy
from datetime import datetime
from typing import Dict, List

from pymongo import ReturnDocument

from errors import ValidationError, field_error
from helpers import clean_text, is_valid_email, parse_bool, parse_number

SETTINGS_ID = "store_settings"
PAYMENT_METHODS = ("card", "paypal", "transfer", "cash")
CURRENCIES = ("TND", "EUR", "USD")
LANGUAGES = ("fr", "en", "ar")
SETTINGS_SECTIONS = ("store", "shipping", "payment", "general")

DEFAULT_SETTINGS = {
    "store": {
        "name": "AYNEXT",
        "description": "Trendy clothing store",
        "email": "contact@aynext.com",
        "phone": "+216 XX XXX XXX",
        "address": {
            "street": "Rue de la Mode",
            "city": "Tunis",
            "postal_code": "1000",
            "country": "Tunisia",
        },
        "logo": "",
    },
    "shipping": {
        "fee": 5.9,
        "free_shipping_threshold": 100,
        "free_shipping_enabled": True,
        "delivery_delay": "3-5 business days",
        "zones": [],
    },
    "payment": {
        "accepted_methods": list(PAYMENT_METHODS),
        "enabled_methods": list(PAYMENT_METHODS),
        "secure_payment": True,
    },
    "general": {
        "currency": "TND",
        "language": "fr",
        "timezone": "Africa/Tunis",
        "maintenance": {
            "active": False,
            "message": "Site under maintenance. Come back soon!",
        },
    },
}


def public_settings(settings_document) -> Dict:
    return {
        "store": settings_document.get("store", {}),
        "shipping": settings_document.get("shipping", {}),
        "payment": {
            "enabled_methods": (settings_document.get("payment") or {}).get("enabled_methods", []),
        },
        "general": {
            key: value
            for key, value in (settings_document.get("general") or {}).items()
            if key in {"currency", "language", "maintenance"}
        },
    }


def shipping_fee_for(settings_document, subtotal: float) -> float:
    shipping = settings_document.get("shipping") or {}
    threshold = float(shipping.get("free_shipping_threshold") or 0)
    if shipping.get("free_shipping_enabled") and subtotal >= threshold:
        return 0.0
    return round(float(shipping.get("fee") or 0), 2)


def _validate_section(section: str, values: Dict) -> Dict:
    errors: List[Dict[str, str]] = []
    cleaned: Dict[str, object] = {}

    if section == "store":
        for key in ("name", "description", "phone", "logo"):
            if key in values:
                cleaned[key] = clean_text(values.get(key))
        if "email" in values:
            if not is_valid_email(values.get("email")):
                errors.append(field_error("store.email", "Invalid email."))
            else:
                cleaned["email"] = clean_text(values.get("email")).lower()
        if isinstance(values.get("address"), dict):
            cleaned["address"] = {
                key: clean_text(values["address"].get(key))
                for key in ("street", "city", "postal_code", "country")
            }
    elif section == "shipping":
        for key in ("fee", "free_shipping_threshold"):
            if key in values:
                number = parse_number(values.get(key))
                if number is None or number < 0:
                    errors.append(field_error(f"shipping.{key}", "Must be a positive number."))
                else:
                    cleaned[key] = number
        if "free_shipping_enabled" in values:
            cleaned["free_shipping_enabled"] = parse_bool(values.get("free_shipping_enabled"))
        if "delivery_delay" in values:
            cleaned["delivery_delay"] = clean_text(values.get("delivery_delay"))
        if isinstance(values.get("zones"), list):
            zones = []
            for zone in values["zones"]:
                fee = parse_number(zone.get("fee")) if isinstance(zone, dict) else None
                if fee is None or fee < 0 or not clean_text(zone.get("name")):
                    errors.append(field_error("shipping.zones", "Each zone needs a name, a fee and a delay."))
                    continue
                zones.append(
                    {"name": clean_text(zone["name"]), "fee": fee, "delay": clean_text(zone.get("delay"))}
                )
            cleaned["zones"] = zones
    elif section == "payment":
        if "enabled_methods" in values:
            methods = values.get("enabled_methods")
            if not isinstance(methods, list) or any(method not in PAYMENT_METHODS for method in methods):
                errors.append(field_error("payment.enabled_methods", "Invalid payment method."))
            else:
                cleaned["enabled_methods"] = list(dict.fromkeys(methods))
        if "secure_payment" in values:
            cleaned["secure_payment"] = parse_bool(values.get("secure_payment"), True)
    elif section == "general":
        if "currency" in values:
            if values.get("currency") not in CURRENCIES:
                errors.append(field_error("general.currency", "Invalid currency."))
            else:
                cleaned["currency"] = values["currency"]
        if "language" in values:
            if values.get("language") not in LANGUAGES:
                errors.append(field_error("general.language", "Invalid language."))
            else:
                cleaned["language"] = values["language"]
        if "timezone" in values:
            cleaned["timezone"] = clean_text(values.get("timezone"))
        if isinstance(values.get("maintenance"), dict):
            maintenance = values["maintenance"]
            cleaned["maintenance"] = {
                "active": parse_bool(maintenance.get("active")),
                "message": clean_text(maintenance.get("message"))
                or DEFAULT_SETTINGS["general"]["maintenance"]["message"],
            }

    if errors:
        raise ValidationError("Invalid settings data.", errors)
    return cleaned


class SettingsStore:
    """Global settings singleton, auto-created with defaults on first read."""

    def __init__(self, db, logger):
        self.collection = db.settings
        self.logger = logger

    def get_settings(self) -> Dict:
        now = datetime.utcnow()
        defaults = copy.deepcopy(DEFAULT_SETTINGS)
        defaults.update({"version": 1, "updated_at": now, "updated_by": None})
        return self.collection.find_one_and_update(
            {"_id": SETTINGS_ID},
            {"$setOnInsert": defaults},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def update(self, payload: Dict, editor_id=None) -> Dict:
        if not isinstance(payload, dict):
            raise ValidationError("Settings data must be a JSON object.")

        self.get_settings()
        updates: Dict[str, object] = {}
        for section in SETTINGS_SECTIONS:
            if isinstance(payload.get(section), dict):
                for key, value in _validate_section(section, payload[section]).items():
                    updates[f"{section}.{key}"] = value
        if not updates:
            raise ValidationError("No settings to update.")

        updates["updated_at"] = datetime.utcnow()
        updates["updated_by"] = editor_id
        updated = self.collection.find_one_and_update(
            {"_id": SETTINGS_ID},
            {"$set": updates, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        self.logger.info("Settings updated to version %s", updated.get("version"))
        return updated
