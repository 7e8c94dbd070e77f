import math
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

PRODUCT_STATUSES = ("active", "inactive", "out_of_stock")
SKU_PATTERN = re.compile(r"^[A-Z0-9-]+$")
URL_PATTERN = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)
MAX_PRODUCT_IMAGES = 10
SORTABLE_FIELDS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "name": "name",
    "price": "price",
    "stock": "stock",
    "sku": "sku",
    "category": "category",
}


class ValidationError(ValueError):
    """Input failed validation; ``details`` lists field-level problems."""

    def __init__(self, details: List[Dict[str, str]]):
        super().__init__("Validation failed")
        self.details = details


class DuplicateSkuError(ValueError):
    def __init__(self, sku: str):
        super().__init__(
            f'A product with SKU "{sku}" already exists. Please use a different SKU.'
        )
        self.sku = sku


def _clean_text(value) -> str:
    return str(value if value is not None else "").strip()


def _parse_price(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price):
        return None
    return round(price, 2)


def _parse_stock(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
        return int(value.strip())
    return None


def validate_product_payload(payload: Optional[Dict], partial: bool = False) -> Dict:
    """Return the cleaned product fields or raise ``ValidationError``.

    With ``partial`` only the fields present in ``payload`` are checked,
    which is how updates behave.
    """
    if not isinstance(payload, dict):
        raise ValidationError([{"field": "", "message": "Expected a JSON object."}])

    errors: List[Dict[str, str]] = []
    cleaned: Dict = {}

    def error(field: str, message: str):
        errors.append({"field": field, "message": message})

    def wants(field: str) -> bool:
        return not partial or field in payload

    if wants("name"):
        name = _clean_text(payload.get("name"))
        if len(name) < 3:
            error("name", "Product name must be at least 3 characters")
        elif len(name) > 200:
            error("name", "Product name cannot exceed 200 characters")
        else:
            cleaned["name"] = name

    if wants("description"):
        description = _clean_text(payload.get("description"))
        if len(description) < 10:
            error("description", "Description must be at least 10 characters")
        elif len(description) > 2000:
            error("description", "Description cannot exceed 2000 characters")
        else:
            cleaned["description"] = description

    if wants("category"):
        category = _clean_text(payload.get("category"))
        if not category:
            error("category", "Category is required")
        else:
            cleaned["category"] = category

    if wants("price"):
        price = _parse_price(payload.get("price"))
        if price is None:
            error("price", "Price must be a valid number")
        elif price < 0:
            error("price", "Price cannot be negative")
        else:
            cleaned["price"] = price

    if wants("stock"):
        stock = _parse_stock(payload.get("stock"))
        if stock is None:
            error("stock", "Stock must be a whole number")
        elif stock < 0:
            error("stock", "Stock cannot be negative")
        else:
            cleaned["stock"] = stock

    if wants("images"):
        images = payload.get("images")
        if not isinstance(images, list) or not images:
            error("images", "At least one image is required")
        elif len(images) > MAX_PRODUCT_IMAGES:
            error("images", f"No more than {MAX_PRODUCT_IMAGES} images are allowed")
        else:
            urls = [_clean_text(url) for url in images]
            invalid = [url for url in urls if not URL_PATTERN.match(url)]
            if invalid:
                error("images", "Invalid image URL")
            else:
                cleaned["images"] = urls

    if wants("sku"):
        sku = _clean_text(payload.get("sku"))
        if len(sku) < 3:
            error("sku", "SKU must be at least 3 characters")
        elif not SKU_PATTERN.match(sku):
            error(
                "sku",
                "SKU must contain only uppercase letters, numbers, and hyphens",
            )
        else:
            cleaned["sku"] = sku

    if "status" in payload or not partial:
        status = _clean_text(payload.get("status")) or ("" if partial else "active")
        if status not in PRODUCT_STATUSES:
            error("status", "Status must be active, inactive, or out_of_stock")
        else:
            cleaned["status"] = status

    if "tags" in payload or not partial:
        tags = payload.get("tags")
        if tags is None:
            tags = []
        if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
            error("tags", "Tags must be a list of strings")
        else:
            cleaned["tags"] = [tag.strip() for tag in tags if tag.strip()]

    if "specifications" in payload or not partial:
        specifications = payload.get("specifications")
        if specifications is None:
            specifications = []
        normalized_specs, spec_error = _normalize_specifications(specifications)
        if spec_error:
            error("specifications", spec_error)
        else:
            cleaned["specifications"] = normalized_specs

    if errors:
        raise ValidationError(errors)
    return cleaned


def _normalize_specifications(raw) -> Tuple[List[Dict[str, str]], Optional[str]]:
    if not isinstance(raw, list):
        return [], "Specifications must be a list of key/value pairs"

    normalized: List[Dict[str, str]] = []
    for entry in raw:
        if not isinstance(entry, dict):
            return [], "Specifications must be a list of key/value pairs"
        key = _clean_text(entry.get("key"))
        value = _clean_text(entry.get("value"))
        if not key:
            return [], "Specification key is required"
        if not value:
            return [], "Specification value is required"
        normalized.append({"key": key, "value": value})
    return normalized, None


def ensure_unique_sku(collection, sku: str, exclude_id=None) -> None:
    query: Dict = {"sku": sku}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if collection.find_one(query, {"_id": 1}):
        raise DuplicateSkuError(sku)


def build_product_query(args) -> Dict:
    query: Dict = {}
    category = _clean_text(args.get("category"))
    if category:
        query["category"] = category
    status = _clean_text(args.get("status"))
    if status:
        query["status"] = status
    search = _clean_text(args.get("search"))
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"sku": {"$regex": pattern, "$options": "i"}},
        ]
    return query


def resolve_sort(args) -> Tuple[str, int]:
    sort_field = SORTABLE_FIELDS.get(_clean_text(args.get("sortBy")), "created_at")
    direction = 1 if _clean_text(args.get("order")).lower() == "asc" else -1
    return sort_field, direction


def serialize_product(product_document) -> Dict:
    if not product_document:
        return {}

    created_at = product_document.get("created_at")
    updated_at = product_document.get("updated_at")
    try:
        price_value = float(product_document.get("price", 0) or 0)
    except (TypeError, ValueError):
        price_value = 0.0

    return {
        "id": str(product_document.get("_id")),
        "name": product_document.get("name", ""),
        "description": product_document.get("description", ""),
        "category": product_document.get("category", ""),
        "price": price_value,
        "stock": int(product_document.get("stock", 0) or 0),
        "images": list(product_document.get("images") or []),
        "sku": product_document.get("sku", ""),
        "status": product_document.get("status", "active"),
        "tags": list(product_document.get("tags") or []),
        "specifications": list(product_document.get("specifications") or []),
        "created_by": product_document.get("created_by", ""),
        "created_at": created_at.isoformat() if isinstance(created_at, datetime) else None,
        "updated_at": updated_at.isoformat() if isinstance(updated_at, datetime) else None,
    }
