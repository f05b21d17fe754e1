"""Account registration, login, admin bootstrap, token checks and OAuth linking."""

from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from flask_jwt_extended import create_access_token, decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError

from errors import ConflictError, ForbiddenError, UnauthorizedError, ValidationError, field_error
from helpers import clean_text, first_present, normalize_address_payload, normalize_email
from users import (
    MIN_PASSWORD_LENGTH,
    OAUTH_PROVIDER_FIELDS,
    ROLE_ADMIN,
    ROLE_CLIENT,
    USER_ADDRESS_FIELDS,
    check_password,
    serialize_public_user,
    validate_profile_fields,
)

INVALID_CREDENTIALS = "Invalid credentials"
INVALID_TOKEN = "Invalid or expired token"
ROLE_MISMATCH_MESSAGES = {
    ROLE_CLIENT: "Administrators must use the admin login page.",
    ROLE_ADMIN: "Access reserved for administrators.",
}


def read_account_fields(payload: Dict) -> Tuple[str, str, str, str]:
    email = normalize_email(first_present(payload, "email"))
    password = str(first_present(payload, "password", "motDePasse") or "")
    name = clean_text(first_present(payload, "name", "prenom", "firstName"))
    surname = clean_text(first_present(payload, "surname", "nom", "lastName"))
    return email, password, name, surname


def validate_account_fields(email: str, password: str, name: str, surname: str) -> List[Dict[str, str]]:
    errors = validate_profile_fields(email, name, surname)
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(
            field_error("password", "The password must contain at least 6 characters.")
        )
    return errors


class AuthService:
    def __init__(
        self,
        users,
        broadcaster,
        dispatcher,
        notifier,
        logger,
        client_token_expires: timedelta = timedelta(days=7),
        admin_token_expires: timedelta = timedelta(hours=8),
    ):
        self.users = users
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.logger = logger
        self.client_token_expires = client_token_expires
        self.admin_token_expires = admin_token_expires

    def issue_token(self, user_document, admin_surface: bool = False) -> str:
        expires = self.admin_token_expires if admin_surface else self.client_token_expires
        return create_access_token(
            identity=str(user_document["_id"]),
            additional_claims={
                "role": user_document.get("role", ROLE_CLIENT),
                "email": user_document.get("email", ""),
            },
            expires_delta=expires,
        )

    def verify_token(self, token: Optional[str]) -> Dict:
        if not token:
            raise UnauthorizedError("Authentication required")
        try:
            return decode_token(token)
        except (PyJWTError, JWTExtendedException):
            raise UnauthorizedError(INVALID_TOKEN)

    def register(self, payload: Dict) -> Tuple[str, Dict]:
        email, password, name, surname = read_account_fields(payload)
        errors = validate_account_fields(email, password, name, surname)
        if errors:
            raise ValidationError("Invalid registration data.", errors)

        user_document: Dict[str, object] = {
            "email": email,
            "password_hash": self.users.hash_password(password),
            "name": name,
            "surname": surname,
            "role": ROLE_CLIENT,
        }
        phone = clean_text(first_present(payload, "phone", "telephone"))
        if phone:
            user_document["phone"] = phone
        address = normalize_address_payload(
            first_present(payload, "address", "adresse"), USER_ADDRESS_FIELDS
        )
        if address:
            user_document["address"] = address

        user_document = self.users.insert(user_document)
        self.logger.info("Registered new account %s", email)
        self.broadcaster.emit_stats_update()

        return self.issue_token(user_document), serialize_public_user(user_document)

    def login(self, email: Optional[str], password: Optional[str], expected_role: str) -> Tuple[str, Dict]:
        user_document = self.users.find_by_email(email)
        if not user_document:
            raise UnauthorizedError(INVALID_CREDENTIALS)

        # Client and admin logins are separate entry points.
        if user_document.get("role", ROLE_CLIENT) != expected_role:
            raise ForbiddenError(ROLE_MISMATCH_MESSAGES[expected_role])

        if user_document.get("is_active") is False:
            raise UnauthorizedError(INVALID_CREDENTIALS)
        if not check_password(user_document, password):
            raise UnauthorizedError(INVALID_CREDENTIALS)

        user_document = self.users.touch_last_login(user_document["_id"]) or user_document
        token = self.issue_token(user_document, admin_surface=expected_role == ROLE_ADMIN)
        return token, serialize_public_user(user_document)

    def bootstrap_admin(self, payload: Dict) -> Dict:
        """Create the one admin account; the storage index rejects any second admin."""
        email, password, name, surname = read_account_fields(payload)
        errors = validate_account_fields(email, password, name, surname)
        if errors:
            raise ValidationError("Email, password, name and surname are required.", errors)

        user_document: Dict[str, object] = {
            "email": email,
            "password_hash": self.users.hash_password(password),
            "name": name,
            "surname": surname,
            "role": ROLE_ADMIN,
        }
        phone = clean_text(first_present(payload, "phone", "telephone"))
        if phone:
            user_document["phone"] = phone

        user_document = self.users.insert(user_document)
        self.logger.info("Administrator account created for %s", email)
        return serialize_public_user(user_document)

    def oauth_link(
        self,
        provider: str,
        provider_id: str,
        email: Optional[str],
        given_name: Optional[str],
        family_name: Optional[str],
    ) -> Dict:
        if provider not in OAUTH_PROVIDER_FIELDS:
            raise ValidationError("Unsupported OAuth provider.")
        provider_id = clean_text(provider_id)
        email = normalize_email(email)
        if not provider_id or not email:
            raise ValidationError("The provider did not return an id and an email address.")

        provider_field = OAUTH_PROVIDER_FIELDS[provider]
        existing = self.users.find_by_email_or_provider(email, provider, provider_id)
        if existing:
            if not existing.get(provider_field):
                existing = self.users.set_provider_id(existing["_id"], provider, provider_id) or existing
            return existing

        user_document = {
            "email": email,
            "name": clean_text(given_name),
            "surname": clean_text(family_name),
            "role": ROLE_CLIENT,
            "is_oauth": True,
            provider_field: provider_id,
        }
        try:
            user_document = self.users.insert(user_document)
        except ConflictError:
            # A concurrent first login for the same identity won the insert.
            existing = self.users.find_by_email_or_provider(email, provider, provider_id)
            if existing:
                return existing
            raise

        self.logger.info("Created %s OAuth account for %s", provider, email)
        self.dispatcher.notify("Welcome email", self.notifier.send_welcome, user_document)
        self.broadcaster.emit_stats_update()
        return user_document
