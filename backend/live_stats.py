"""Admin dashboard live channel: event sinks and the stats broadcaster."""

from datetime import datetime
from typing import Dict

from pymongo import DESCENDING

from helpers import to_json_ready
from order_engine import STATUS_CONFIRMED
from users import ROLE_CLIENT

ADMIN_ROOM = "admin"
STATS_UPDATED = "stats-updated"
PRODUCT_ADDED = "product-added"
PRODUCT_UPDATED = "product-updated"
PRODUCT_DELETED = "product-deleted"
SETTINGS_UPDATED = "settings-updated"

REVENUE_STATUSES = (STATUS_CONFIRMED,)
RECENT_ORDERS_LIMIT = 5


class EventSink:
    def notify(self, event_kind: str, payload: Dict):
        raise NotImplementedError


class SocketIOEventSink(EventSink):
    def __init__(self, socketio, room: str = ADMIN_ROOM):
        self.socketio = socketio
        self.room = room

    def notify(self, event_kind: str, payload: Dict):
        self.socketio.emit(event_kind, to_json_ready(payload), to=self.room)


class StatsBroadcaster:
    def __init__(self, db, sink: EventSink, dispatcher, logger):
        self.db = db
        self.sink = sink
        self.dispatcher = dispatcher
        self.logger = logger

    def compute_stats(self) -> Dict[str, object]:
        total_users = self.db.users.count_documents({"role": ROLE_CLIENT})
        total_products = self.db.products.count_documents({})
        total_orders = self.db.orders.count_documents({})

        revenue = 0.0
        orders_by_status: Dict[str, int] = {}
        for order in self.db.orders.find({}, {"status": 1, "total": 1}):
            status = order.get("status") or "unknown"
            orders_by_status[status] = orders_by_status.get(status, 0) + 1
            if status in REVENUE_STATUSES:
                revenue += float(order.get("total") or 0)

        recent_orders = [
            {
                "id": str(order["_id"]),
                "order_number": order.get("order_number"),
                "status": order.get("status"),
                "total": order.get("total"),
                "created_at": order.get("created_at"),
            }
            for order in self.db.orders.find().sort("created_at", DESCENDING).limit(RECENT_ORDERS_LIMIT)
        ]

        return {
            "total_users": total_users,
            "total_products": total_products,
            "total_orders": total_orders,
            "revenue": round(revenue, 2),
            "orders_by_status": orders_by_status,
            "recent_orders": recent_orders,
            "generated_at": datetime.utcnow(),
        }

    def broadcast_now(self):
        self.sink.notify(STATS_UPDATED, self.compute_stats())

    def emit_stats_update(self):
        self.dispatcher.submit("stats broadcast", self.broadcast_now)

    def emit_event(self, event_kind: str, payload: Dict):
        self.dispatcher.submit(event_kind, self.sink.notify, event_kind, payload)
