import logging
from datetime import datetime

from conftest import add_to_cart, auth_header, checkout, create_product, register_client
from live_stats import STATS_UPDATED, EventSink, StatsBroadcaster
from tasks import TaskDispatcher


def events_named(received, name):
    return [event["args"][0] for event in received if event["name"] == name]


def test_admin_socket_receives_stats_on_join(client, admin_token, socketio):
    admin_socket = socketio.test_client(client.application, auth={"token": admin_token})

    ack = admin_socket.emit("join-admin", {}, callback=True)

    assert ack == {"success": True}
    stats = events_named(admin_socket.get_received(), STATS_UPDATED)
    assert stats and stats[-1]["total_orders"] == 0


def test_client_token_cannot_join_admin_room(client, client_token, socketio):
    client_socket = socketio.test_client(client.application, auth={"token": client_token})

    ack = client_socket.emit("join-admin", {}, callback=True)

    assert ack["success"] is False
    assert events_named(client_socket.get_received(), STATS_UPDATED) == []


def test_invalid_token_is_refused_at_connect(client, socketio):
    rejected = socketio.test_client(client.application, auth={"token": "garbage"})

    assert rejected.is_connected() is False


def test_join_with_token_in_payload(client, admin_token, socketio):
    anonymous = socketio.test_client(client.application)

    ack = anonymous.emit("join-admin", {"token": admin_token}, callback=True)

    assert ack == {"success": True}


def test_order_creation_broadcasts_stats(client, admin_token, client_token, socketio):
    product = create_product(client, admin_token)
    add_to_cart(client, client_token, product["id"], 2)
    admin_socket = socketio.test_client(client.application, auth={"token": admin_token})
    admin_socket.emit("join-admin", {}, callback=True)
    admin_socket.get_received()

    assert checkout(client, client_token).status_code == 201

    stats = events_named(admin_socket.get_received(), STATS_UPDATED)
    assert stats[-1]["total_orders"] == 1
    assert stats[-1]["orders_by_status"] == {"pending": 1}
    assert stats[-1]["revenue"] == 0


def test_revenue_counts_confirmed_orders(client, admin_token, client_token, app):
    product = create_product(client, admin_token, price=50)
    add_to_cart(client, client_token, product["id"], 1)
    order = checkout(client, client_token).get_json()["order"]
    client.put(f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=auth_header(admin_token))

    stats = client.get("/api/admin/stats", headers=auth_header(admin_token)).get_json()["stats"]

    assert stats["revenue"] == round(order["total"], 2)
    assert stats["total_users"] == 1
    assert stats["total_products"] == 1
    assert stats["recent_orders"][0]["order_number"] == order["order_number"]


def test_product_events_reach_admin_room(client, admin_token, socketio):
    admin_socket = socketio.test_client(client.application, auth={"token": admin_token})
    admin_socket.emit("join-admin", {}, callback=True)
    admin_socket.get_received()

    product = create_product(client, admin_token)
    client.delete(f"/api/products/{product['id']}", headers=auth_header(admin_token))

    received = admin_socket.get_received()
    added = events_named(received, "product-added")
    deleted = events_named(received, "product-deleted")
    assert added[0]["product"]["name"] == "Classic Hoodie"
    assert added[0]["added_by"] == "Store"
    assert deleted[0]["product_id"] == product["id"]


def test_registration_broadcasts_user_count(client, admin_token, socketio):
    admin_socket = socketio.test_client(client.application, auth={"token": admin_token})
    admin_socket.emit("join-admin", {}, callback=True)
    admin_socket.get_received()

    register_client(client)

    stats = events_named(admin_socket.get_received(), STATS_UPDATED)
    assert stats[-1]["total_users"] == 1


def test_left_admin_stops_receiving(client, admin_token, socketio):
    admin_socket = socketio.test_client(client.application, auth={"token": admin_token})
    admin_socket.emit("join-admin", {}, callback=True)
    admin_socket.emit("leave-admin", {}, callback=True)
    admin_socket.get_received()

    register_client(client, email="later@example.com")

    assert events_named(admin_socket.get_received(), STATS_UPDATED) == []


class RecordingSink(EventSink):
    def __init__(self):
        self.events = []

    def notify(self, event_kind, payload):
        self.events.append((event_kind, payload))


def test_broadcaster_with_injected_sink(db):
    sink = RecordingSink()
    logger = logging.getLogger("test")
    broadcaster = StatsBroadcaster(db, sink, TaskDispatcher(logger), logger)
    db.users.insert_one({"email": "a@example.com", "role": "client"})
    db.orders.insert_many(
        [
            {"status": "confirmed", "total": 10.5, "created_at": datetime(2024, 5, 1)},
            {"status": "confirmed", "total": 4.5, "created_at": datetime(2024, 5, 2)},
            {"status": "cancelled", "total": 99, "created_at": datetime(2024, 5, 3)},
        ]
    )

    broadcaster.emit_stats_update()

    kind, stats = sink.events[-1]
    assert kind == STATS_UPDATED
    assert stats["total_users"] == 1
    assert stats["revenue"] == 15
    assert stats["orders_by_status"] == {"confirmed": 2, "cancelled": 1}


def test_dispatcher_logs_and_swallows_failures(caplog):
    dispatcher = TaskDispatcher(logging.getLogger("test"))

    def explode():
        raise RuntimeError("boom")

    with caplog.at_level(logging.WARNING):
        dispatcher.submit("exploding task", explode)

    assert "exploding task" in caplog.text
