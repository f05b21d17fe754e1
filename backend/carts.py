from datetime import datetime
from typing import Dict, List

from bson import ObjectId
from pymongo import ReturnDocument

from catalog import final_price, find_size
from errors import NotFoundError, ValidationError, field_error
from helpers import clean_text, first_present, parse_strict_int, to_object_id


def cart_total(cart_document) -> float:
    return round(
        sum(
            float(item.get("unit_price") or 0) * int(item.get("quantity") or 0)
            for item in cart_document.get("items") or []
        ),
        2,
    )


def cart_item_count(cart_document) -> int:
    if not cart_document:
        return 0
    return sum(int(item.get("quantity") or 0) for item in cart_document.get("items") or [])


def _require_quantity(value) -> int:
    quantity = parse_strict_int(value)
    if quantity is None or quantity < 1:
        raise ValidationError(
            "Quantity must be a positive number.",
            [field_error("quantity", "Quantity must be at least 1.")],
        )
    return quantity


class CartStore:
    """One cart per user, created lazily on first read or write."""

    def __init__(self, db, products, logger):
        self.collection = db.carts
        self.products = products
        self.logger = logger

    def ensure_indexes(self):
        self.collection.create_index("user_id", unique=True)

    def get_or_create(self, user_id) -> Dict:
        owner_id = to_object_id(user_id, "User")
        now = datetime.utcnow()
        return self.collection.find_one_and_update(
            {"user_id": owner_id},
            {
                "$setOnInsert": {
                    "user_id": owner_id,
                    "items": [],
                    "created_at": now,
                    "updated_at": now,
                }
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def add_item(self, user_id, payload: Dict) -> Dict:
        product_id = clean_text(first_present(payload, "product_id", "productId", "produitId"))
        size = clean_text(first_present(payload, "size", "taille"))
        color = clean_text(first_present(payload, "color", "couleur"))
        errors: List[Dict[str, str]] = []
        if not product_id:
            errors.append(field_error("product_id", "Product id is required."))
        if not size:
            errors.append(field_error("size", "Size is required."))
        if not color:
            errors.append(field_error("color", "Color is required."))
        if errors:
            raise ValidationError("Invalid cart item.", errors)
        quantity = _require_quantity(first_present(payload, "quantity", "quantite"))

        product_document = self.products.get(product_id)
        size_entry = find_size(product_document, size)
        if not size_entry or int(size_entry.get("stock") or 0) < quantity:
            raise ValidationError("Insufficient stock for this size.")

        cart_document = self.get_or_create(user_id)
        items = cart_document.get("items") or []
        for item in items:
            if (
                item.get("product_id") == product_document["_id"]
                and item.get("size") == size
                and item.get("color") == color
            ):
                item["quantity"] = int(item.get("quantity") or 0) + quantity
                break
        else:
            items.append(
                {
                    "_id": ObjectId(),
                    "product_id": product_document["_id"],
                    "name": product_document.get("name", ""),
                    "quantity": quantity,
                    "size": size,
                    "color": color,
                    "unit_price": round(final_price(product_document), 2),
                }
            )
        return self._save_items(cart_document["_id"], items)

    def update_quantity(self, user_id, item_id, quantity_value) -> Dict:
        quantity = _require_quantity(quantity_value)
        cart_document = self._existing(user_id)
        items = cart_document.get("items") or []
        item = self._find_item(items, item_id)

        product_document = self.products.get(item["product_id"])
        size_entry = find_size(product_document, item.get("size"))
        if not size_entry or int(size_entry.get("stock") or 0) < quantity:
            raise ValidationError("Insufficient stock.")

        item["quantity"] = quantity
        return self._save_items(cart_document["_id"], items)

    def remove_item(self, user_id, item_id) -> Dict:
        cart_document = self._existing(user_id)
        items = cart_document.get("items") or []
        self._find_item(items, item_id)
        remaining = [item for item in items if str(item.get("_id")) != str(item_id)]
        return self._save_items(cart_document["_id"], remaining)

    def clear(self, user_id):
        self.collection.update_one(
            {"user_id": to_object_id(user_id, "User")},
            {"$set": {"items": [], "updated_at": datetime.utcnow()}},
        )

    def count_items(self, user_id) -> int:
        return cart_item_count(
            self.collection.find_one({"user_id": to_object_id(user_id, "User")})
        )

    def _existing(self, user_id) -> Dict:
        cart_document = self.collection.find_one({"user_id": to_object_id(user_id, "User")})
        if not cart_document:
            raise NotFoundError("Cart not found.")
        return cart_document

    def _find_item(self, items, item_id) -> Dict:
        for item in items:
            if str(item.get("_id")) == str(item_id):
                return item
        raise NotFoundError("Cart item not found.")

    def _save_items(self, cart_id, items) -> Dict:
        return self.collection.find_one_and_update(
            {"_id": cart_id},
            {"$set": {"items": items, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
