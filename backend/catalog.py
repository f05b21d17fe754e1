"""Catalog store: product records with per-size stock counters."""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from errors import NotFoundError, ValidationError, field_error
from helpers import clean_text, parse_bool, parse_number, parse_strict_int, to_object_id

PRODUCT_CATEGORIES = ("hoodie", "pull")
PRODUCT_GENDERS = ("men", "women", "kids", "sport")
PRODUCT_FLAGS = ("on_sale", "is_new", "is_popular")
PRODUCT_FIELD_ALIASES = {
    "name": ("name", "nom"),
    "description": ("description",),
    "price": ("price", "prix"),
    "discount_price": ("discount_price", "discountPrice", "prixReduit"),
    "category": ("category", "categorie"),
    "gender": ("gender", "genre"),
    "brand": ("brand", "marque"),
    "images": ("images",),
    "sizes": ("sizes", "tailles"),
    "colors": ("colors", "couleurs"),
    "material": ("material", "materiau"),
    "care": ("care", "entretien"),
    "tags": ("tags",),
    "on_sale": ("on_sale", "onSale", "estEnPromotion"),
    "is_new": ("is_new", "isNew", "estNouveau"),
    "is_popular": ("is_popular", "isPopular", "estPopulaire"),
}
SORTABLE_FIELDS = {"created_at", "price", "name", "rating"}

# Order creation never rejects on insufficient stock; counters may go negative.
STOCK_POLICY_UNCHECKED = "unchecked"


def final_price(product_document) -> float:
    discount_price = product_document.get("discount_price")
    if discount_price:
        return float(discount_price)
    return float(product_document.get("price") or 0)


def find_size(product_document, size: str) -> Optional[Dict]:
    for entry in product_document.get("sizes") or []:
        if entry.get("size") == size:
            return entry
    return None


def _pick(payload: Dict, field: str):
    for alias in PRODUCT_FIELD_ALIASES.get(field, (field,)):
        if alias in payload:
            return True, payload.get(alias)
    return False, None


def normalize_sizes(raw_sizes, errors: List[Dict]) -> List[Dict]:
    if not isinstance(raw_sizes, list):
        errors.append(field_error("sizes", "Sizes must be a list."))
        return []
    sizes = []
    for entry in raw_sizes:
        if not isinstance(entry, dict):
            errors.append(field_error("sizes", "Each size needs a name and a stock count."))
            continue
        size_name = clean_text(entry.get("size", entry.get("nom")))
        stock = parse_strict_int(entry.get("stock", 0))
        if not size_name:
            errors.append(field_error("sizes", "Each size needs a name."))
            continue
        if stock is None or stock < 0:
            errors.append(field_error("sizes", f"Stock for size {size_name} must be a non-negative integer."))
            continue
        sizes.append({"size": size_name, "stock": stock})
    return sizes


def normalize_colors(raw_colors) -> List[Dict]:
    if not isinstance(raw_colors, list):
        return []
    colors = []
    for entry in raw_colors:
        if not isinstance(entry, dict):
            continue
        name = clean_text(entry.get("name", entry.get("nom")))
        if name:
            colors.append({"name": name, "code": clean_text(entry.get("code"))})
    return colors


def normalize_images(raw_images) -> List[Dict]:
    if not isinstance(raw_images, list):
        return []
    images = []
    for entry in raw_images:
        if isinstance(entry, str) and entry.strip():
            images.append({"url": entry.strip(), "alt": ""})
        elif isinstance(entry, dict) and clean_text(entry.get("url")):
            images.append({"url": clean_text(entry.get("url")), "alt": clean_text(entry.get("alt"))})
    return images


def normalize_tags(raw_tags, errors: List[Dict]) -> List[str]:
    if raw_tags is None:
        return []
    if isinstance(raw_tags, str):
        raw_tags = [raw_tags]
    if not isinstance(raw_tags, list):
        errors.append(field_error("tags", "Tags must be a list of words."))
        return []
    tags = []
    for tag in raw_tags:
        if not isinstance(tag, str):
            errors.append(field_error("tags", "Each tag must be text."))
            continue
        if clean_text(tag):
            tags.append(clean_text(tag))
    return tags


def normalize_product_payload(payload: Dict, partial: bool = False) -> Dict:
    if not isinstance(payload, dict):
        raise ValidationError("Product data must be a JSON object.")

    product: Dict[str, object] = {}
    errors: List[Dict[str, str]] = []

    for field in ("name", "description", "brand", "material", "care"):
        present, value = _pick(payload, field)
        if present:
            product[field] = clean_text(value)
    for field in ("name", "description", "brand"):
        if (not partial or field in product) and not product.get(field):
            errors.append(field_error(field, f"{field.capitalize()} is required."))

    present, value = _pick(payload, "price")
    if present or not partial:
        price = parse_number(value)
        if price is None or price < 0:
            errors.append(field_error("price", "Price must be a positive number."))
        else:
            product["price"] = round(price, 2)

    present, value = _pick(payload, "discount_price")
    if present:
        if value in (None, ""):
            product["discount_price"] = None
        else:
            discount_price = parse_number(value)
            if discount_price is None or discount_price < 0:
                errors.append(field_error("discount_price", "Discount price must be a positive number."))
            else:
                product["discount_price"] = round(discount_price, 2)

    for field, allowed in (("category", PRODUCT_CATEGORIES), ("gender", PRODUCT_GENDERS)):
        present, value = _pick(payload, field)
        if present or not partial:
            normalized = clean_text(value).lower()
            if normalized not in allowed:
                errors.append(field_error(field, f"Invalid {field}."))
            else:
                product[field] = normalized

    present, value = _pick(payload, "sizes")
    if present:
        product["sizes"] = normalize_sizes(value, errors)
    elif not partial:
        product["sizes"] = []

    present, value = _pick(payload, "colors")
    if present or not partial:
        product["colors"] = normalize_colors(value)

    present, value = _pick(payload, "images")
    if present or not partial:
        product["images"] = normalize_images(value)

    present, value = _pick(payload, "tags")
    if present:
        product["tags"] = normalize_tags(value, errors)

    for flag in PRODUCT_FLAGS:
        present, value = _pick(payload, flag)
        if present or not partial:
            product[flag] = parse_bool(value, False)

    if errors:
        raise ValidationError("Invalid product data.", errors)
    return product


class ProductStore:
    def __init__(self, db, logger):
        self.collection = db.products
        self.logger = logger

    def ensure_indexes(self):
        self.collection.create_index([("category", ASCENDING), ("price", ASCENDING)])
        self.collection.create_index(
            [("on_sale", ASCENDING), ("is_new", ASCENDING), ("is_popular", ASCENDING)]
        )

    def get(self, product_id) -> Dict:
        product_document = self.collection.find_one({"_id": to_object_id(product_id, "Product")})
        if not product_document:
            raise NotFoundError("Product not found.")
        return product_document

    def list_products(
        self,
        page: int,
        limit: int,
        category: Optional[str] = None,
        gender: Optional[str] = None,
        sort_field: str = "created_at",
        descending: bool = True,
    ) -> Tuple[List[Dict], int]:
        query: Dict[str, object] = {}
        if category:
            query["category"] = category
        if gender:
            query["gender"] = gender
        if sort_field not in SORTABLE_FIELDS:
            sort_field = "created_at"
        cursor = (
            self.collection.find(query)
            .sort([(sort_field, DESCENDING if descending else ASCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return list(cursor), self.collection.count_documents(query)

    def distinct_values(self, field: str) -> List[str]:
        return sorted(value for value in self.collection.distinct(field) if value)

    def create(self, payload: Dict, creator_id=None) -> Dict:
        product_document = normalize_product_payload(payload)
        now = datetime.utcnow()
        product_document.update(
            {
                "rating": 0,
                "review_count": 0,
                "created_by": creator_id,
                "created_at": now,
                "updated_at": now,
            }
        )
        insert_result = self.collection.insert_one(product_document)
        product_document["_id"] = insert_result.inserted_id
        return product_document

    def update(self, product_id, payload: Dict) -> Dict:
        object_id = to_object_id(product_id, "Product")
        updates = normalize_product_payload(payload, partial=True)
        updates["updated_at"] = datetime.utcnow()
        updated = self.collection.find_one_and_update(
            {"_id": object_id},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("Product not found.")
        return updated

    def delete(self, product_id) -> Dict:
        deleted = self.collection.find_one_and_delete(
            {"_id": to_object_id(product_id, "Product")}
        )
        if not deleted:
            raise NotFoundError("Product not found.")
        return deleted

    def adjust_stock(self, product_id, size: str, delta: int) -> Optional[Dict]:
        """Apply a per-size stock delta in one positional update on the server."""
        updated = self.collection.find_one_and_update(
            {"_id": to_object_id(product_id, "Product"), "sizes.size": size},
            {"$inc": {"sizes.$.stock": delta}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            self.logger.warning(
                "Stock adjustment skipped: product %s has no size %s", product_id, size
            )
            return None

        entry = find_size(updated, size)
        remaining = entry.get("stock") if entry else None
        self.logger.info(
            "Stock for product %s size %s adjusted by %s (now %s)",
            product_id,
            size,
            delta,
            remaining,
        )
        if remaining is not None and remaining < 0:
            self.logger.warning(
                "Stock for product %s size %s is negative (%s) under the %s stock policy",
                product_id,
                size,
                remaining,
                STOCK_POLICY_UNCHECKED,
            )
        return updated
