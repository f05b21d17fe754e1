import mongomock
import pytest

from app import create_app
from users import ROLE_ADMIN

CLIENT_PASSWORD = "secret123"
ADMIN_PASSWORD = "adminpass"
SHIPPING_ADDRESS = {
    "name": "Amira",
    "surname": "Ben Salah",
    "street": "12 Rue de Carthage",
    "city": "Tunis",
    "postal_code": "1000",
    "country": "Tunisia",
    "phone": "+216 20 000 000",
}


class RecordingNotifier:
    """Stands in for the Resend notifier and records every send."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def _record(self, kind, *args):
        self.sent.append((kind, args))
        if self.fail:
            return False, "Email provider unavailable"
        return True, None

    def send_welcome(self, user):
        return self._record("welcome", user)

    def send_new_product(self, recipients, product):
        return self._record("new_product", list(recipients), product)

    def send_order_status(self, user, order, new_status):
        return self._record("order_status", user, order, new_status)

    def kinds(self):
        return [kind for kind, _ in self.sent]


@pytest.fixture
def db():
    return mongomock.MongoClient().aynext_test


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(db, notifier):
    application = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-with-enough-length-for-hs256",
            "SECRET_KEY": "test-session-secret",
            "BCRYPT_ROUNDS": 4,
            "RUN_BACKGROUND_TASKS_INLINE": True,
            "GOOGLE_CLIENT_ID": "google-client",
            "GOOGLE_CLIENT_SECRET": "google-secret",
        },
        database=db,
        notifier=notifier,
    )
    return application


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def socketio(app):
    return app.extensions["socketio"]


def auth_header(token):
    return {"x-auth-token": token}


def register_client(client, email="amira@example.com", password=CLIENT_PASSWORD, **extra):
    payload = {"email": email, "password": password, "name": "Amira", "surname": "Ben Salah"}
    payload.update(extra)
    response = client.post("/api/auth/register", json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()


@pytest.fixture
def client_token(client):
    return register_client(client)["token"]


@pytest.fixture
def admin_token(client):
    response = client.post(
        "/api/admin/setup",
        json={
            "email": "admin@aynext.com",
            "password": ADMIN_PASSWORD,
            "name": "Store",
            "surname": "Owner",
        },
    )
    assert response.status_code == 201, response.get_json()
    login = client.post(
        "/api/auth/admin-login", json={"email": "admin@aynext.com", "password": ADMIN_PASSWORD}
    )
    assert login.status_code == 200
    assert login.get_json()["user"]["role"] == ROLE_ADMIN
    return login.get_json()["token"]


def create_product(client, admin_token, stock=3, **overrides):
    payload = {
        "name": "Classic Hoodie",
        "description": "Heavy cotton hoodie",
        "brand": "AYNEXT",
        "price": 50,
        "category": "hoodie",
        "gender": "men",
        "sizes": [{"size": "M", "stock": stock}, {"size": "L", "stock": 10}],
        "colors": [{"name": "Black", "code": "#000000"}],
        "images": ["https://cdn.example.com/hoodie.png"],
    }
    payload.update(overrides)
    response = client.post("/api/products", json=payload, headers=auth_header(admin_token))
    assert response.status_code == 201, response.get_json()
    return response.get_json()["product"]


def add_to_cart(client, token, product_id, quantity, size="M", color="Black"):
    return client.post(
        "/api/cart/items",
        json={"product_id": product_id, "quantity": quantity, "size": size, "color": color},
        headers=auth_header(token),
    )


def checkout(client, token, payment_method="card", address=None):
    return client.post(
        "/api/orders",
        json={
            "shipping_address": address if address is not None else SHIPPING_ADDRESS,
            "payment_method": payment_method,
        },
        headers=auth_header(token),
    )
