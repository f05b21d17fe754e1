"""Credential store: user identities, password hashes, roles and OAuth links."""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

import bcrypt
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError, field_error
from helpers import (
    clean_text,
    is_valid_email,
    isoformat,
    normalize_address_payload,
    normalize_email,
    parse_bool,
    to_object_id,
)

ROLE_CLIENT = "client"
ROLE_ADMIN = "admin"
ALLOWED_USER_ROLES = {ROLE_CLIENT, ROLE_ADMIN}

OAUTH_PROVIDER_FIELDS = {
    "google": "google_id",
    "facebook": "facebook_id",
}

MIN_PASSWORD_LENGTH = 6
USER_ADDRESS_FIELDS = ("street", "city", "postal_code", "country")
SINGLE_ADMIN_INDEX = "single_admin_role"
ADMIN_EXISTS_MESSAGE = "An administrator account already exists. Only one admin account is allowed."
EMAIL_TAKEN_MESSAGE = "An account with this email already exists."


def hash_password(password: str, rounds: int = 12) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds))


def check_password(user_document, password: Optional[str]) -> bool:
    """OAuth-only accounts never authenticate with a password."""
    if not user_document or user_document.get("is_oauth"):
        return False
    stored_hash = user_document.get("password_hash")
    if not stored_hash:
        return False
    if isinstance(stored_hash, str):
        stored_hash = stored_hash.encode("utf-8")
    try:
        return bcrypt.checkpw(str(password or "").encode("utf-8"), stored_hash)
    except ValueError:
        return False


def serialize_public_user(user_document) -> Dict[str, object]:
    if not user_document:
        return {}

    return {
        "id": str(user_document.get("_id")),
        "email": user_document.get("email", "") or "",
        "name": user_document.get("name", "") or "",
        "surname": user_document.get("surname", "") or "",
        "phone": user_document.get("phone", "") or "",
        "address": normalize_address_payload(
            user_document.get("address"), USER_ADDRESS_FIELDS
        ),
        "role": user_document.get("role", ROLE_CLIENT),
        "is_oauth": bool(user_document.get("is_oauth")),
        "is_active": user_document.get("is_active", True) is not False,
        "created_at": isoformat(user_document.get("created_at")),
        "last_login_at": isoformat(user_document.get("last_login_at")),
    }


def validate_profile_fields(email: str, name: str, surname: str) -> List[Dict[str, str]]:
    errors = []
    if not is_valid_email(email):
        errors.append(field_error("email", "A valid email address is required."))
    if not name:
        errors.append(field_error("name", "Name is required."))
    if not surname:
        errors.append(field_error("surname", "Surname is required."))
    return errors


class UserStore:
    def __init__(self, db, logger, bcrypt_rounds: int = 12):
        self.collection = db.users
        self.orders = db.orders
        self.logger = logger
        self.bcrypt_rounds = bcrypt_rounds

    def ensure_indexes(self):
        self.collection.create_index("email", unique=True)
        for field in OAUTH_PROVIDER_FIELDS.values():
            self.collection.create_index(field, unique=True, sparse=True)
        self.collection.create_index(
            [("role", ASCENDING)],
            unique=True,
            partialFilterExpression={"role": ROLE_ADMIN},
            name=SINGLE_ADMIN_INDEX,
        )

    def hash_password(self, password: str) -> bytes:
        return hash_password(password, self.bcrypt_rounds)

    # --- reads ---

    def find_by_id(self, user_id) -> Optional[Dict]:
        return self.collection.find_one({"_id": to_object_id(user_id, "User")})

    def get(self, user_id) -> Dict:
        user_document = self.find_by_id(user_id)
        if not user_document:
            raise NotFoundError("User not found.")
        return user_document

    def find_by_email(self, email: Optional[str]) -> Optional[Dict]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.collection.find_one({"email": normalized})

    def find_by_email_or_provider(self, email: str, provider: str, provider_id: str):
        provider_field = OAUTH_PROVIDER_FIELDS[provider]
        return self.collection.find_one(
            {"$or": [{"email": normalize_email(email)}, {provider_field: provider_id}]}
        )

    def find_admin(self) -> Optional[Dict]:
        return self.collection.find_one({"role": ROLE_ADMIN})

    def admin_exists(self) -> bool:
        return self.collection.count_documents({"role": ROLE_ADMIN}) > 0

    def active_clients(self) -> List[Dict]:
        return list(self.collection.find({"role": ROLE_CLIENT, "is_active": {"$ne": False}}))

    def list_users(self, page: int, limit: int, role: Optional[str] = None) -> Tuple[List[Dict], int]:
        query: Dict[str, object] = {}
        if role:
            query["role"] = role
        cursor = (
            self.collection.find(query)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return list(cursor), self.collection.count_documents(query)

    # --- writes ---

    def insert(self, user_document: Dict) -> Dict:
        """Insert a new account; the storage indexes decide email and admin uniqueness."""
        now = datetime.utcnow()
        user_document.setdefault("created_at", now)
        user_document.setdefault("updated_at", now)
        user_document.setdefault("is_active", True)
        user_document.setdefault("is_oauth", False)
        user_document.setdefault("last_login_at", None)
        try:
            insert_result = self.collection.insert_one(user_document)
        except DuplicateKeyError as exc:
            raise self._conflict_from(exc, user_document)
        user_document["_id"] = insert_result.inserted_id
        return user_document

    def touch_last_login(self, user_id) -> Optional[Dict]:
        now = datetime.utcnow()
        return self.collection.find_one_and_update(
            {"_id": to_object_id(user_id, "User")},
            {"$set": {"last_login_at": now}},
            return_document=ReturnDocument.AFTER,
        )

    def set_provider_id(self, user_id, provider: str, provider_id: str) -> Optional[Dict]:
        provider_field = OAUTH_PROVIDER_FIELDS[provider]
        try:
            return self.collection.find_one_and_update(
                {"_id": to_object_id(user_id, "User"), provider_field: {"$exists": False}},
                {"$set": {provider_field: provider_id, "updated_at": datetime.utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as exc:
            raise self._conflict_from(exc, {})

    def update_profile(self, user_id, payload: Dict) -> Dict:
        user_document = self.get(user_id)
        email = normalize_email(payload.get("email") or user_document.get("email"))
        name = clean_text(payload.get("name", payload.get("prenom", user_document.get("name"))))
        surname = clean_text(
            payload.get("surname", payload.get("nom", user_document.get("surname")))
        )

        errors = validate_profile_fields(email, name, surname)
        if errors:
            raise ValidationError("Invalid profile data.", errors)

        updates: Dict[str, object] = {
            "email": email,
            "name": name,
            "surname": surname,
            "updated_at": datetime.utcnow(),
        }
        phone = payload.get("phone", payload.get("telephone"))
        if phone is not None:
            updates["phone"] = clean_text(phone)
        address_payload = payload.get("address", payload.get("adresse"))
        if address_payload is not None:
            updates["address"] = normalize_address_payload(address_payload, USER_ADDRESS_FIELDS)

        return self._apply_update(user_document["_id"], updates)

    def change_password(self, user_id, current_password: str, new_password: str):
        user_document = self.get(user_id)
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                "The new password must contain at least 6 characters.",
                [field_error("new_password", "At least 6 characters are required.")],
            )
        if not check_password(user_document, current_password):
            raise ValidationError("The current password is incorrect.")

        self.collection.update_one(
            {"_id": user_document["_id"]},
            {
                "$set": {
                    "password_hash": self.hash_password(new_password),
                    "updated_at": datetime.utcnow(),
                }
            },
        )

    def admin_update(self, user_id, payload: Dict) -> Dict:
        user_document = self.get(user_id)
        updates: Dict[str, object] = {"updated_at": datetime.utcnow()}

        for field, aliases in (("name", ("name", "prenom")), ("surname", ("surname", "nom"))):
            for alias in aliases:
                if alias in payload:
                    value = clean_text(payload.get(alias))
                    if not value:
                        raise ValidationError(f"{field.capitalize()} is required.")
                    updates[field] = value
                    break

        if "email" in payload:
            email = normalize_email(payload.get("email"))
            if not is_valid_email(email):
                raise ValidationError("A valid email address is required.")
            updates["email"] = email

        if "role" in payload:
            role = clean_text(payload.get("role")).lower()
            if role not in ALLOWED_USER_ROLES:
                raise ValidationError("Invalid role.")
            updates["role"] = role

        active_value = payload.get("is_active", payload.get("estActif"))
        if active_value is not None:
            updates["is_active"] = parse_bool(active_value, True)

        phone = payload.get("phone", payload.get("telephone"))
        if phone is not None:
            updates["phone"] = clean_text(phone)

        return self._apply_update(user_document["_id"], updates)

    def admin_delete(self, user_id, acting_user_id):
        user_document = self.get(user_id)
        if str(user_document["_id"]) == str(acting_user_id):
            raise ForbiddenError("You cannot delete your own account.")
        self.collection.delete_one({"_id": user_document["_id"]})
        return user_document

    def order_statistics(self, user_id) -> Dict[str, object]:
        user_document = self.get(user_id)
        orders = list(
            self.orders.find({"user_id": user_document["_id"]}).sort("created_at", DESCENDING)
        )
        amount_spent = sum(
            float(order.get("total") or 0)
            for order in orders
            if order.get("status") in {"confirmed", "shipped", "delivered"}
        )
        return {
            "user": user_document,
            "order_count": len(orders),
            "amount_spent": round(amount_spent, 2),
            "orders": orders,
        }

    # --- internals ---

    def _apply_update(self, object_id, updates: Dict) -> Dict:
        try:
            updated = self.collection.find_one_and_update(
                {"_id": object_id},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as exc:
            raise self._conflict_from(exc, updates, object_id)
        if not updated:
            raise NotFoundError("User not found.")
        return updated

    def _conflict_from(self, exc: DuplicateKeyError, attempted: Dict, own_id=None) -> ConflictError:
        # Error text differs between servers, so resolve the clash against stored data.
        others = {"_id": {"$ne": own_id}} if own_id is not None else {}
        email = attempted.get("email")
        if email and self.collection.find_one({"email": email, **others}):
            return ConflictError(EMAIL_TAKEN_MESSAGE)
        if attempted.get("role") == ROLE_ADMIN and self.collection.find_one(
            {"role": ROLE_ADMIN, **others}
        ):
            return ConflictError(ADMIN_EXISTS_MESSAGE)
        self.logger.warning("Duplicate key while writing a user: %s", exc)
        return ConflictError("This account is already linked to another user.")
