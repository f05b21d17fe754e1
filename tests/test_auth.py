from datetime import timedelta

import pytest
from flask_jwt_extended import create_access_token, decode_token

from conftest import ADMIN_PASSWORD, CLIENT_PASSWORD, auth_header, register_client
from errors import UnauthorizedError


def test_register_returns_token_and_public_profile(client, db):
    body = register_client(client, email="  Amira@Example.COM ")

    assert body["success"] is True
    assert body["token"]
    assert body["user"]["email"] == "amira@example.com"
    assert body["user"]["role"] == "client"
    assert "password_hash" not in body["user"]

    stored = db.users.find_one({"email": "amira@example.com"})
    assert stored["password_hash"] != CLIENT_PASSWORD


def test_register_accepts_legacy_field_names(client):
    response = client.post(
        "/api/auth/register",
        json={"email": "legacy@example.com", "motDePasse": "secret123", "prenom": "Sami", "nom": "Trabelsi"},
    )

    assert response.status_code == 201
    assert response.get_json()["user"]["name"] == "Sami"
    assert response.get_json()["user"]["surname"] == "Trabelsi"


def test_register_rejects_duplicate_email(client):
    register_client(client)

    response = client.post(
        "/api/auth/register",
        json={"email": "amira@example.com", "password": "another1", "name": "A", "surname": "B"},
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "conflict"
    assert "already exists" in response.get_json()["message"]


def test_register_validates_fields(client):
    response = client.post("/api/auth/register", json={"email": "not-an-email", "password": "123"})

    assert response.status_code == 400
    fields = {error["field"] for error in response.get_json()["errors"]}
    assert {"email", "password", "name", "surname"} <= fields


def test_login_with_valid_credentials(client, db):
    register_client(client)

    response = client.post("/api/auth/login", json={"email": "amira@example.com", "password": CLIENT_PASSWORD})

    assert response.status_code == 200
    with client.application.app_context():
        claims = decode_token(response.get_json()["token"])
    assert claims["role"] == "client"
    assert claims["email"] == "amira@example.com"
    assert db.users.find_one({"email": "amira@example.com"})["last_login_at"] is not None


def test_login_failures_share_a_generic_message(client):
    register_client(client)

    wrong_password = client.post("/api/auth/login", json={"email": "amira@example.com", "password": "wrong-pass"})
    unknown_email = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "whatever"})

    assert wrong_password.status_code == 401
    assert unknown_email.status_code == 401
    assert wrong_password.get_json()["message"] == unknown_email.get_json()["message"] == "Invalid credentials"


def test_inactive_account_cannot_login(client, db):
    register_client(client)
    db.users.update_one({"email": "amira@example.com"}, {"$set": {"is_active": False}})

    response = client.post("/api/auth/login", json={"email": "amira@example.com", "password": CLIENT_PASSWORD})

    assert response.status_code == 401


def test_admin_cannot_use_client_login(client, admin_token):
    response = client.post("/api/auth/login", json={"email": "admin@aynext.com", "password": ADMIN_PASSWORD})

    assert response.status_code == 403


@pytest.mark.parametrize("password", [CLIENT_PASSWORD, "not-the-password"])
def test_client_cannot_use_admin_login(client, password):
    register_client(client)

    response = client.post("/api/auth/admin-login", json={"email": "amira@example.com", "password": password})

    assert response.status_code == 403


def test_admin_token_expires_sooner_than_client_token(client, admin_token, client_token):
    with client.application.app_context():
        admin_claims = decode_token(admin_token)
        client_claims = decode_token(client_token)

    assert admin_claims["exp"] - admin_claims["iat"] == int(timedelta(hours=8).total_seconds())
    assert client_claims["exp"] - client_claims["iat"] == int(timedelta(days=7).total_seconds())


def test_me_requires_token(client):
    response = client.get("/api/auth/me")

    assert response.status_code == 401
    assert response.get_json()["message"] == "Authentication required"


def test_me_rejects_tampered_token(client, client_token):
    response = client.get("/api/auth/me", headers=auth_header(client_token[:-4] + "abcd"))

    assert response.status_code == 401
    assert response.get_json()["message"] == "Invalid or expired token"


def test_me_rejects_expired_token(client, app):
    body = register_client(client)
    with app.app_context():
        expired = create_access_token(
            identity=body["user"]["id"],
            additional_claims={"role": "client", "email": body["user"]["email"]},
            expires_delta=timedelta(seconds=-10),
        )

    response = client.get("/api/auth/me", headers=auth_header(expired))

    assert response.status_code == 401


def test_me_returns_current_user(client, client_token):
    response = client.get("/api/auth/me", headers=auth_header(client_token))

    assert response.status_code == 200
    assert response.get_json()["user"]["email"] == "amira@example.com"


def test_verify_token_rejects_garbage(app):
    auth_service = app.extensions["aynext"]["auth"]

    with app.app_context(), pytest.raises(UnauthorizedError) as excinfo:
        auth_service.verify_token("not.a.token")

    assert excinfo.value.message == "Invalid or expired token"


def test_check_role(client, admin_token):
    response = client.post("/api/auth/check-role", json={"email": "admin@aynext.com"})

    assert response.status_code == 200
    assert response.get_json()["role"] == "admin"


def test_profile_update_and_password_change(client, client_token):
    response = client.put(
        "/api/users/profile",
        json={"name": "Amira", "surname": "Haddad", "phone": "+216 22 222 222"},
        headers=auth_header(client_token),
    )
    assert response.status_code == 200
    assert response.get_json()["user"]["surname"] == "Haddad"

    wrong = client.put(
        "/api/users/password",
        json={"current_password": "nope-nope", "new_password": "newsecret"},
        headers=auth_header(client_token),
    )
    assert wrong.status_code == 400

    changed = client.put(
        "/api/users/password",
        json={"current_password": CLIENT_PASSWORD, "new_password": "newsecret"},
        headers=auth_header(client_token),
    )
    assert changed.status_code == 200

    login = client.post("/api/auth/login", json={"email": "amira@example.com", "password": "newsecret"})
    assert login.status_code == 200
