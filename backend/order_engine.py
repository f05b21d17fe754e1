"""Order lifecycle: cart checkout, custom orders, status changes and stock adjustment.

Side effects after an order is committed (stock decrement, cart clearing,
stats broadcast, status emails) are logged on failure and never undo or fail
the order itself.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import ExecutionTimeout, PyMongoError

from errors import ForbiddenError, NotFoundError, RequestTimeoutError, ValidationError, field_error
from helpers import (
    ADDRESS_FIELDS,
    clean_text,
    first_present,
    normalize_address_payload,
    parse_number,
    parse_strict_int,
    to_object_id,
)
from settings_store import shipping_fee_for

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_PREPARING = "preparing"
STATUS_SHIPPED = "shipped"
STATUS_DELIVERED = "delivered"
STATUS_CANCELLED = "cancelled"
ORDER_STATUSES = (
    STATUS_PENDING,
    STATUS_CONFIRMED,
    STATUS_PREPARING,
    STATUS_SHIPPED,
    STATUS_DELIVERED,
    STATUS_CANCELLED,
)

ITEM_KIND_STANDARD = "standard"
ITEM_KIND_CUSTOM = "custom"

BILLING_ADDRESS_FIELDS = ("name", "surname", "street", "city", "postal_code", "country")
PENDING_ADDRESS_VALUE = "To be defined"
UNKNOWN_CONTACT_VALUE = "Not specified"

CUSTOM_ORDER_FREE_SHIPPING_ABOVE = 50
CUSTOM_ORDER_SHIPPING_FEE = 5.99
CUSTOM_ORDER_PAYMENT_METHOD = "cash"
DEFAULT_LOGO_SIZE = 80

MAX_USER_ORDERS = 50


def generate_order_number() -> str:
    return f"ORD-{uuid4().hex[:10].upper()}"


def order_total(subtotal: float, shipping_fee: float, discount: float = 0.0) -> float:
    """Sum parts already rounded to cents; the result is stored as is so it always equals them."""
    return subtotal + shipping_fee - discount


def build_standard_item(cart_item: Dict, product_name: str) -> Dict:
    quantity = int(cart_item["quantity"])
    unit_price = round(float(cart_item["unit_price"]), 2)
    return {
        "kind": ITEM_KIND_STANDARD,
        "product_id": cart_item["product_id"],
        "name": product_name,
        "quantity": quantity,
        "size": cart_item.get("size"),
        "color": cart_item.get("color"),
        "unit_price": unit_price,
        "line_total": round(unit_price * quantity, 2),
    }


def build_custom_item(
    color_code: str,
    color_name: str,
    logo: str,
    logo_position: str,
    logo_size: float,
    unit_price: float,
    quantity: int,
    size: str,
) -> Dict:
    unit_price = round(unit_price, 2)
    return {
        "kind": ITEM_KIND_CUSTOM,
        "name": f"Custom hoodie - {color_name}",
        "quantity": quantity,
        "size": size,
        "color": color_name,
        "unit_price": unit_price,
        "line_total": round(unit_price * quantity, 2),
        "customization": {
            "logo": logo,
            "logo_position": logo_position,
            "logo_size": logo_size,
            "color_code": color_code,
            "color_name": color_name,
        },
    }


def validate_shipping_address(payload) -> Dict[str, str]:
    address = normalize_address_payload(payload, ADDRESS_FIELDS)
    missing = [field for field in ADDRESS_FIELDS if not address.get(field)]
    if missing:
        raise ValidationError(
            "A complete shipping address is required.",
            [field_error(f"shipping_address.{field}", f"{field} is required.") for field in missing],
        )
    return address


class OrderEngine:
    def __init__(
        self,
        db,
        products,
        carts,
        settings,
        users,
        broadcaster,
        dispatcher,
        notifier,
        logger,
        list_timeout_ms: int = 10000,
    ):
        self.collection = db.orders
        self.products = products
        self.carts = carts
        self.settings = settings
        self.users = users
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.logger = logger
        self.list_timeout_ms = list_timeout_ms

    def ensure_indexes(self):
        self.collection.create_index([("user_id", 1), ("created_at", DESCENDING)])
        self.collection.create_index([("status", 1), ("created_at", DESCENDING)])
        self.collection.create_index("order_number", unique=True)

    # --- creation ---

    def create_order(self, user_id, payload: Dict) -> Dict:
        owner_id = to_object_id(user_id, "User")
        shipping_address = validate_shipping_address(
            first_present(payload, "shipping_address", "shippingAddress", "adresseLivraison")
        )
        billing_address = normalize_address_payload(
            first_present(payload, "billing_address", "billingAddress", "adresseFacturation"),
            BILLING_ADDRESS_FIELDS,
        ) or {field: shipping_address[field] for field in BILLING_ADDRESS_FIELDS}

        payment_method = clean_text(
            first_present(payload, "payment_method", "paymentMethod", "methodePaiement")
        )
        settings_document = self.settings.get_settings()
        enabled_methods = (settings_document.get("payment") or {}).get("enabled_methods") or []
        if payment_method not in enabled_methods:
            raise ValidationError(
                "Invalid payment method.",
                [field_error("payment_method", f"Choose one of: {', '.join(enabled_methods)}.")],
            )

        cart_document = self.carts.get_or_create(owner_id)
        cart_items = cart_document.get("items") or []
        if not cart_items:
            raise ValidationError("Your cart is empty.")

        product_names = self._product_names([item["product_id"] for item in cart_items])
        items = [
            build_standard_item(item, product_names.get(item["product_id"]) or item.get("name", ""))
            for item in cart_items
        ]
        subtotal = round(sum(item["line_total"] for item in items), 2)
        shipping_fee = shipping_fee_for(settings_document, subtotal)

        order_document = self._persist(
            owner_id,
            items,
            subtotal,
            shipping_fee,
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_method=payment_method,
            notes=clean_text(payload.get("notes")),
        )

        self._decrement_stock(order_document)
        try:
            self.carts.clear(owner_id)
        except PyMongoError:
            self.logger.exception("Unable to clear cart after order %s", order_document["order_number"])
        self.broadcaster.emit_stats_update()
        return order_document

    def create_custom_order(self, user_id, payload: Dict) -> Dict:
        owner = self.users.get(user_id)
        color_code = clean_text(first_present(payload, "color", "couleur"))
        color_name = clean_text(first_present(payload, "color_name", "colorName", "couleurNom"))
        logo = clean_text(first_present(payload, "logo", "logo_ref", "logoRef"))
        logo_position = clean_text(first_present(payload, "logo_position", "logoPosition"))
        size = clean_text(first_present(payload, "size", "taille"))
        price = parse_number(first_present(payload, "price", "prix"))
        quantity = parse_strict_int(first_present(payload, "quantity", "quantite"))
        raw_logo_size = first_present(payload, "logo_size", "logoSize")
        logo_size = parse_number(raw_logo_size) if raw_logo_size not in (None, "") else DEFAULT_LOGO_SIZE

        errors: List[Dict[str, str]] = []
        for field, value in (
            ("color", color_code),
            ("color_name", color_name),
            ("logo", logo),
            ("logo_position", logo_position),
            ("size", size),
        ):
            if not value:
                errors.append(field_error(field, f"{field} is required."))
        if price is None or price < 0:
            errors.append(field_error("price", "Invalid price."))
        if quantity is None or quantity < 1:
            errors.append(field_error("quantity", "Invalid quantity."))
        if logo_size is None:
            errors.append(field_error("logo_size", "Invalid logo size."))
        if errors:
            raise ValidationError("Invalid custom order.", errors)

        item = build_custom_item(
            color_code, color_name, logo, logo_position, logo_size, price, quantity, size
        )
        subtotal = item["line_total"]
        shipping_fee = 0.0 if subtotal > CUSTOM_ORDER_FREE_SHIPPING_ABOVE else CUSTOM_ORDER_SHIPPING_FEE

        contact = {
            "name": owner.get("name") or UNKNOWN_CONTACT_VALUE,
            "surname": owner.get("surname") or UNKNOWN_CONTACT_VALUE,
            "street": PENDING_ADDRESS_VALUE,
            "city": PENDING_ADDRESS_VALUE,
            "postal_code": PENDING_ADDRESS_VALUE,
            "country": PENDING_ADDRESS_VALUE,
        }
        notes = clean_text(payload.get("notes")) or (
            f"Custom hoodie order - Color: {color_name}, Logo position: {logo_position}"
        )

        order_document = self._persist(
            owner["_id"],
            [item],
            subtotal,
            shipping_fee,
            shipping_address={**contact, "phone": owner.get("phone") or UNKNOWN_CONTACT_VALUE},
            billing_address=dict(contact),
            payment_method=CUSTOM_ORDER_PAYMENT_METHOD,
            notes=notes,
        )
        self.broadcaster.emit_stats_update()
        return order_document

    # --- status lifecycle ---

    def update_status(self, order_id, new_status: Optional[str], tracking_number=None) -> Dict:
        """Move an order to any recognized status; transitions are not restricted."""
        new_status = clean_text(new_status).lower()
        if new_status not in ORDER_STATUSES:
            raise ValidationError(
                "Invalid status.",
                [field_error("status", f"Choose one of: {', '.join(ORDER_STATUSES)}.")],
            )

        order_document = self._get(order_id)
        previous_status = order_document.get("status")
        now = datetime.utcnow()

        delivered_at = None
        if new_status == STATUS_DELIVERED:
            delivered_at = now
            if previous_status == STATUS_DELIVERED and order_document.get("delivered_at"):
                delivered_at = order_document["delivered_at"]

        updates: Dict[str, object] = {
            "status": new_status,
            "delivered_at": delivered_at,
            "updated_at": now,
        }
        tracking_number = clean_text(tracking_number)
        if tracking_number:
            updates["tracking_number"] = tracking_number

        updated = self.collection.find_one_and_update(
            {"_id": order_document["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("Order not found.")

        self.logger.info(
            "Order %s status updated: %s -> %s",
            updated.get("order_number"),
            previous_status,
            new_status,
        )
        self.broadcaster.emit_stats_update()
        self._notify_status_change(updated, new_status)
        return updated

    # --- queries ---

    def get_order(self, order_id, user_id, admin: bool = False) -> Dict:
        order_document = self._get(order_id)
        if not admin and str(order_document.get("user_id")) != str(user_id):
            raise ForbiddenError("You are not allowed to access this order.")
        return order_document

    def list_user_orders(self, user_id) -> List[Dict]:
        cursor = (
            self.collection.find({"user_id": to_object_id(user_id, "User")})
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .limit(MAX_USER_ORDERS)
        )
        return self._bounded(cursor)

    def list_all_orders(self, page: int, limit: int, status: Optional[str] = None) -> Tuple[List[Dict], int]:
        query: Dict[str, object] = {}
        if status:
            query["status"] = status
        cursor = (
            self.collection.find(query)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return self._bounded(cursor), self.collection.count_documents(query)

    # --- internals ---

    def _get(self, order_id) -> Dict:
        order_document = self.collection.find_one({"_id": to_object_id(order_id, "Order")})
        if not order_document:
            raise NotFoundError("Order not found.")
        return order_document

    def _bounded(self, cursor) -> List[Dict]:
        try:
            return list(cursor.max_time_ms(self.list_timeout_ms))
        except ExecutionTimeout:
            raise RequestTimeoutError("Timeout: the request is taking too long.")

    def _product_names(self, product_ids) -> Dict:
        cursor = self.products.collection.find({"_id": {"$in": list(product_ids)}}, {"name": 1})
        return {document["_id"]: document.get("name", "") for document in cursor}

    def _persist(
        self,
        owner_id,
        items: List[Dict],
        subtotal: float,
        shipping_fee: float,
        shipping_address: Dict,
        billing_address: Dict,
        payment_method: str,
        notes: str,
        discount: float = 0.0,
    ) -> Dict:
        subtotal = round(subtotal, 2)
        shipping_fee = round(shipping_fee, 2)
        discount = round(discount, 2)
        now = datetime.utcnow()
        order_document = {
            "order_number": generate_order_number(),
            "user_id": owner_id,
            "items": items,
            "shipping_address": shipping_address,
            "billing_address": billing_address,
            "payment_method": payment_method,
            "status": STATUS_PENDING,
            "subtotal": subtotal,
            "shipping_fee": shipping_fee,
            "discount": discount,
            "total": order_total(subtotal, shipping_fee, discount),
            "tracking_number": None,
            "notes": notes,
            "created_at": now,
            "updated_at": now,
            "delivered_at": None,
        }
        insert_result = self.collection.insert_one(order_document)
        order_document["_id"] = insert_result.inserted_id
        self.logger.info(
            "Order %s created for user %s (total %s)",
            order_document["order_number"],
            owner_id,
            order_document["total"],
        )
        return order_document

    def _decrement_stock(self, order_document: Dict):
        for item in order_document["items"]:
            if item.get("kind") != ITEM_KIND_STANDARD:
                continue
            try:
                self.products.adjust_stock(item["product_id"], item["size"], -item["quantity"])
            except (PyMongoError, NotFoundError):
                self.logger.exception(
                    "Stock decrement failed for order %s, product %s size %s",
                    order_document["order_number"],
                    item["product_id"],
                    item["size"],
                )

    def _notify_status_change(self, order_document: Dict, new_status: str):
        owner = self.users.collection.find_one({"_id": order_document.get("user_id")})
        if not owner or not owner.get("email"):
            self.logger.warning(
                "No customer email for order %s; status email skipped",
                order_document.get("order_number"),
            )
            return
        self.dispatcher.notify(
            "Order status email", self.notifier.send_order_status, owner, order_document, new_status
        )
