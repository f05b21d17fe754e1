from conftest import auth_header
from settings_store import shipping_fee_for


def test_settings_are_created_with_defaults(client, db):
    response = client.get("/api/settings")

    assert response.status_code == 200
    settings = response.get_json()["settings"]
    assert settings["shipping"]["fee"] == 5.9
    assert settings["payment"]["enabled_methods"] == ["card", "paypal", "transfer", "cash"]
    assert "timezone" not in settings["general"]
    assert db.settings.count_documents({}) == 1


def test_admin_sees_full_settings(client, admin_token):
    settings = client.get("/api/settings", headers=auth_header(admin_token)).get_json()["settings"]

    assert settings["version"] == 1
    assert settings["general"]["timezone"] == "Africa/Tunis"


def test_section_update_bumps_version(client, admin_token):
    response = client.put(
        "/api/settings/shipping",
        json={"fee": 7.5, "free_shipping_threshold": 150},
        headers=auth_header(admin_token),
    )

    assert response.status_code == 200
    settings = response.get_json()["settings"]
    assert settings["shipping"]["fee"] == 7.5
    assert settings["shipping"]["free_shipping_threshold"] == 150
    assert settings["shipping"]["free_shipping_enabled"] is True
    assert settings["version"] == 2


def test_full_update_validates_values(client, admin_token):
    response = client.put(
        "/api/settings",
        json={"general": {"currency": "BTC", "language": "de"}},
        headers=auth_header(admin_token),
    )

    assert response.status_code == 400
    fields = {error["field"] for error in response.get_json()["errors"]}
    assert fields == {"general.currency", "general.language"}


def test_unknown_section_is_not_found(client, admin_token):
    response = client.put("/api/settings/secrets", json={}, headers=auth_header(admin_token))

    assert response.status_code == 404


def test_empty_update_is_rejected(client, admin_token):
    response = client.put("/api/settings", json={"unknown": {"a": 1}}, headers=auth_header(admin_token))

    assert response.status_code == 400


def test_shipping_fee_follows_settings():
    settings = {"shipping": {"fee": 8, "free_shipping_threshold": 100, "free_shipping_enabled": False}}

    assert shipping_fee_for(settings, 500) == 8
    settings["shipping"]["free_shipping_enabled"] = True
    assert shipping_fee_for(settings, 100) == 0
    assert shipping_fee_for(settings, 99.99) == 8
