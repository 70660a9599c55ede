from datetime import datetime, timezone
import random
import string
import time


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value):
    """Parse a Postgres/JS ISO timestamp into an aware datetime, or None."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def seconds_since(value):
    started = parse_iso(value)
    if started is None:
        return None
    return (datetime.now(timezone.utc) - started).total_seconds()


def chunked(items, size):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def truncate_string(value, max_length):
    if not value or not isinstance(value, str):
        return value
    if len(value) <= max_length:
        return value
    return value[:max_length - 3] + "..."


def to_float(value, default=0.0):
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_int(value, default=0):
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def manual_autods_id():
    millis = int(time.time() * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"manual_{millis}_{suffix}"


def percentage(part, total):
    return round(part / total * 100) if total else 0


def _dig(obj, *path):
    """Walk nested dicts/lists, returning None as soon as a step is missing."""
    current = obj
    for key in path:
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and isinstance(key, int):
            current = current[key] if -len(current) <= key < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


# ---------- AutoDS → products table ----------

def _extract_images(product):
    images = []

    main_image = _dig(product, "variations", 0, "active_buy_item", "product_image")
    if main_image:
        images.append(main_image)

    for img in product.get("product_images") or []:
        if isinstance(img, str):
            images.append(img)
        elif isinstance(img, dict) and img.get("url"):
            images.append(img["url"])

    for variation in product.get("variations") or []:
        var_image = _dig(variation, "active_buy_item", "product_image")
        if var_image:
            images.append(var_image)

    # dedupe, keep first-seen order
    seen = set()
    unique = []
    for img in images:
        if isinstance(img, str) and img and img not in seen:
            seen.add(img)
            unique.append(img)
    return unique


def _extract_tags(product):
    tags = []
    if product.get("category_name"):
        tags.append(product["category_name"])

    tags.extend(t for t in product.get("tags") or [] if t and isinstance(t, str))

    supplier = _dig(product, "variations", 0, "active_buy_item", "site_name")
    if supplier:
        tags.append(f"Source: {supplier}")
    return tags


def map_autods_product(p: dict):
    buy_item = _dig(p, "variations", 0, "active_buy_item") or {}

    images = _extract_images(p)
    price = to_float(buy_item.get("price"))
    quantity = to_int(buy_item.get("quantity"))
    cost = to_float(buy_item.get("cost"))
    shipping = to_float(_dig(p, "variations", 0, "shipping_price"))
    variations = p.get("variations")

    return {
        "autods_id": str(p["id"]) if p.get("id") is not None else None,
        "title": p.get("title") or "Untitled Product",
        "description": p.get("description") or p.get("summary") or "",
        "price": price,
        "quantity": quantity,
        "sku": p.get("sku") or f"AUTODS_{p.get('id')}",
        "main_picture_url": images[0] if images else None,
        "images": images,
        "tags": _extract_tags(p),
        "shipping_price": shipping,
        "status": 2 if quantity > 0 else 1,

        "autods_store_id": p.get("store_id"),
        "autods_supplier": buy_item.get("site_name") or "Unknown",
        "autods_supplier_url": buy_item.get("product_url"),
        "autods_supplier_id": buy_item.get("site_id"),

        "cost_price": cost,
        "profit_margin": max(0.0, price - cost),

        "sold_count": to_int(p.get("sold_count")),
        "total_profit": to_float(p.get("total_profit")),

        "created_date": p.get("created_at") or now_iso(),
        "modified_at": now_iso(),

        "variant_count": len(variations) if isinstance(variations, list) else 1,
        "category_name": p.get("category_name"),
        "brand": p.get("brand"),
        "condition": "new",
    }


def validate_product_data(product: dict):
    errors = []

    if not product.get("autods_id"):
        errors.append("Missing autods_id")

    if not product.get("title"):
        errors.append("Missing or empty title")

    price = product.get("price")
    if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
        errors.append("Invalid price")

    quantity = product.get("quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or quantity < 0:
        errors.append("Invalid quantity")

    return len(errors) == 0, errors


NUMERIC_FIELDS = ["price", "shipping_price", "cost_price", "profit_margin", "total_profit"]
INTEGER_FIELDS = ["quantity", "sold_count", "status", "variant_count", "autods_supplier_id"]


def sanitize_product_data(product: dict):
    # every row in a bulk upsert must carry the same keys, so None values stay
    sanitized = dict(product)

    if not isinstance(sanitized.get("images"), list):
        sanitized["images"] = []
    if not isinstance(sanitized.get("tags"), list):
        sanitized["tags"] = []

    for field in NUMERIC_FIELDS:
        if field in sanitized:
            sanitized[field] = to_float(sanitized[field])

    for field in INTEGER_FIELDS:
        if field in sanitized:
            sanitized[field] = to_int(sanitized[field])

    return sanitized
