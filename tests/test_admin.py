import threading

import pytest
from pymongo.errors import DuplicateKeyError

from conftest import auth_header, register_client
from users import SINGLE_ADMIN_INDEX

ADMIN_PAYLOAD = {
    "email": "admin@aynext.com",
    "password": "adminpass",
    "name": "Store",
    "surname": "Owner",
}


def test_check_reports_missing_admin(client):
    response = client.get("/api/admin/check")

    assert response.status_code == 200
    assert response.get_json()["exists"] is False


def test_bootstrap_creates_admin_once(client, db):
    first = client.post("/api/admin/setup", json=ADMIN_PAYLOAD)
    second = client.post(
        "/api/admin/setup",
        json={**ADMIN_PAYLOAD, "email": "other-admin@aynext.com"},
    )

    assert first.status_code == 201
    assert first.get_json()["user"]["role"] == "admin"
    assert second.status_code == 400
    assert "Only one admin" in second.get_json()["message"]
    assert db.users.count_documents({"role": "admin"}) == 1
    assert client.get("/api/admin/check").get_json()["exists"] is True


def test_parallel_bootstrap_creates_exactly_one_admin(app, client, db):
    callers = 8
    barrier = threading.Barrier(callers)
    statuses = []

    def bootstrap(number):
        test_client = app.test_client()
        barrier.wait()
        response = test_client.post(
            "/api/admin/setup",
            json={**ADMIN_PAYLOAD, "email": f"admin{number}@aynext.com"},
        )
        statuses.append(response.status_code)

    threads = [threading.Thread(target=bootstrap, args=(number,)) for number in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(statuses) == [201] + [400] * (callers - 1)
    assert db.users.count_documents({"role": "admin"}) == 1
    assert client.get("/api/admin/check").get_json()["exists"] is True


def test_bootstrap_validates_input(client, db):
    response = client.post("/api/admin/setup", json={"email": "admin@aynext.com"})

    assert response.status_code == 400
    assert db.users.count_documents({}) == 0


def test_storage_index_rejects_a_second_admin(app, db):
    index_names = {index["name"] for index in db.users.list_indexes()}
    assert SINGLE_ADMIN_INDEX in index_names

    db.users.insert_one({"email": "first@aynext.com", "role": "admin"})
    db.users.insert_one({"email": "client-a@example.com", "role": "client"})
    db.users.insert_one({"email": "client-b@example.com", "role": "client"})

    with pytest.raises(DuplicateKeyError):
        db.users.insert_one({"email": "second@aynext.com", "role": "admin"})


def test_promoting_a_client_to_admin_is_rejected(client, admin_token, db):
    user = register_client(client)["user"]

    response = client.put(
        f"/api/users/admin/{user['id']}",
        json={"role": "admin"},
        headers=auth_header(admin_token),
    )

    assert response.status_code == 400
    assert db.users.count_documents({"role": "admin"}) == 1


def test_admin_info_is_public(client, admin_token, db):
    db.users.update_one(
        {"role": "admin"},
        {
            "$set": {
                "phone": "+216 71 000 000",
                "address": {"street": "Rue de la Mode", "city": "Tunis", "postal_code": "1000", "country": "Tunisia"},
            }
        },
    )

    response = client.get("/api/admin/info")

    assert response.status_code == 200
    body = response.get_json()
    assert body["email"] == "admin@aynext.com"
    assert body["address"] == "Rue de la Mode, 1000 Tunis, Tunisia"


def test_admin_routes_reject_clients(client, client_token):
    for method, path in (
        ("get", "/api/admin/stats"),
        ("get", "/api/users/admin"),
        ("get", "/api/orders/admin"),
        ("put", "/api/settings"),
    ):
        response = getattr(client, method)(path, json={}, headers=auth_header(client_token))
        assert response.status_code == 403, path


def test_admin_lists_and_updates_users(client, admin_token):
    user = register_client(client)["user"]
    register_client(client, email="second@example.com")

    listing = client.get("/api/users/admin?role=client&limit=1", headers=auth_header(admin_token))
    assert listing.status_code == 200
    body = listing.get_json()
    assert body["total"] == 2
    assert body["pages"] == 2
    assert len(body["users"]) == 1

    updated = client.put(
        f"/api/users/admin/{user['id']}",
        json={"is_active": False, "phone": "+216 99 999 999"},
        headers=auth_header(admin_token),
    )
    assert updated.status_code == 200
    assert updated.get_json()["user"]["is_active"] is False


def test_admin_cannot_delete_own_account(client, admin_token, db):
    admin_id = str(db.users.find_one({"role": "admin"})["_id"])

    response = client.delete(f"/api/users/admin/{admin_id}", headers=auth_header(admin_token))

    assert response.status_code == 403
    assert db.users.count_documents({"role": "admin"}) == 1


def test_admin_deletes_client(client, admin_token, db):
    user = register_client(client)["user"]

    response = client.delete(f"/api/users/admin/{user['id']}", headers=auth_header(admin_token))

    assert response.status_code == 200
    assert db.users.count_documents({"role": "client"}) == 0


def test_unknown_user_id_is_not_found(client, admin_token):
    response = client.get("/api/users/admin/not-an-id", headers=auth_header(admin_token))

    assert response.status_code == 404
