"""
Amazon product data via the Amazon Data Scraper API (RapidAPI).

Responses are mapped onto the columns of the ``products`` table used by
the Amazon catalog (supplier price, our price, stock status, variants, ...).
"""

import logging
import re
import threading
import time

import requests

from services import RAPIDAPI_HOST, RAPIDAPI_KEY
from utils import now_iso, truncate_string

logger = logging.getLogger(__name__)

SCRAPER_BASE_URL = f"https://{RAPIDAPI_HOST}"
MAX_ATTEMPTS = 2
PRICE_MARKUP = 1.2
PRICE_FIXED_FEE = 0.30

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


class ScrapeError(Exception):
    pass


class RateLimiter:
    """Keeps at least ``delay`` seconds between calls across threads."""

    def __init__(self, delay=0.5):
        self.delay = delay
        self._lock = threading.Lock()
        self._last_call = 0.0

    def wait(self):
        with self._lock:
            elapsed = time.monotonic() - self._last_call
            if elapsed < self.delay:
                time.sleep(self.delay - elapsed)
            self._last_call = time.monotonic()


rate_limiter = RateLimiter()


def amazon_domain(country):
    return "com.au" if country == "AU" else "com"


def calculate_our_price(supplier_price):
    if not supplier_price or supplier_price <= 0:
        return 0
    return round(supplier_price * PRICE_MARKUP + PRICE_FIXED_FEE, 2)


def scrape_amazon_product(asin, country="AU"):
    last_error = None

    for attempt in range(1, MAX_ATTEMPTS + 1):
        rate_limiter.wait()
        try:
            res = requests.post(
                f"{SCRAPER_BASE_URL}/queries",
                json={
                    "source": "amazon_product",
                    "query": asin,
                    "domain": amazon_domain(country),
                    "parse": True,
                    "context": [{"key": "autoselect_variant", "value": False}],
                },
                headers={
                    "X-RapidAPI-Key": RAPIDAPI_KEY or "",
                    "X-RapidAPI-Host": RAPIDAPI_HOST,
                },
                timeout=30,
            )
            res.raise_for_status()

            results = res.json().get("results") or []
            content = results[0].get("content") if results else None
            if not content:
                raise ScrapeError("No product data returned from API")

            return map_scraped_product(content, asin, country)

        except (requests.RequestException, ValueError, ScrapeError) as e:
            last_error = e
            logger.error("Attempt %s/%s failed for %s: %s", attempt, MAX_ATTEMPTS, asin, e)
            if attempt < MAX_ATTEMPTS:
                time.sleep(1 * attempt)

    raise ScrapeError(f"Failed to scrape {asin} after {MAX_ATTEMPTS} attempts: {last_error}")


def map_scraped_product(data, asin, country="AU"):
    stock_quantity = extract_stock_quantity(data.get("stock"))

    max_quantity = data.get("max_quantity")
    if not stock_quantity and max_quantity and max_quantity < 50:
        stock_quantity = max_quantity

    stock_status = normalize_stock_status(data.get("stock"), data.get("price"))

    if stock_status == "Out of Stock":
        supplier_price = 0
    else:
        supplier_price = extract_price(data.get("price") or data.get("price_buybox") or data.get("price_initial"))

    default_url = f"https://www.amazon.{amazon_domain(country)}/dp/{asin}"
    variation_info = extract_variation_info(data)

    return {
        "supplier_sku": asin,
        "supplier_asin": data.get("asin") or asin,
        "supplier_url": data.get("url") or default_url,
        "supplier_name": f"Amazon {country}",
        "amazon_url": data.get("url") or default_url,

        "title": clean_text(data.get("title") or "Unknown Product"),
        "brand": data.get("brand") or data.get("manufacturer") or extract_brand_from_title(data.get("title")),
        "category": extract_category(data.get("category")),
        "description": clean_text(data.get("description") or ""),

        "image_urls": [
            img for img in (data.get("images") or [])
            if isinstance(img, str) and img.startswith("http")
        ][:10],
        "features": extract_features(data.get("bullet_points")),

        "supplier_price": supplier_price,
        "our_price": calculate_our_price(supplier_price),
        "currency": data.get("currency") or ("AUD" if country == "AU" else "USD"),

        "stock_status": stock_status,
        "stock_quantity": stock_quantity,

        "shipping_info": build_shipping_info(data.get("delivery")),

        "rating_average": float(data["rating"]) if data.get("rating") else None,
        "rating_count": data.get("reviews_count") or 0,

        "variants": {
            "has_variations": True,
            "count": variation_info["count"],
            "dimensions": variation_info["dimensions"],
            "options": variation_info["options"],
            "parent_asin": data.get("parent_asin"),
        } if variation_info["has_variations"] else None,

        "metadata": {
            "parent_asin": data.get("parent_asin"),
            "is_prime_eligible": data.get("is_prime_eligible") or False,
            "amazon_choice": data.get("amazon_choice") or False,
            "sales_volume": data.get("sales_volume"),
            "max_quantity": max_quantity,
            "source": "Amazon Data Scraper API",
            "scraped_at": now_iso(),
        },
    }


def extract_variation_info(data):
    result = {"has_variations": False, "count": 0, "dimensions": [], "options": []}

    variations = data.get("variation")
    if not isinstance(variations, list) or not variations:
        return result

    result["has_variations"] = True
    result["count"] = len(variations)

    dimensions = []
    for variant in variations:
        variant_dims = variant.get("dimensions")
        if not variant_dims:
            continue
        for key in variant_dims:
            if key not in dimensions:
                dimensions.append(key)

        result["options"].append({
            "asin": variant.get("asin"),
            "selected": variant.get("selected") or False,
            "dimensions": variant_dims,
            "image": variant.get("tooltip_image"),
            "price": None,
            "stock_status": None,
            "stock_quantity": None,
        })

    result["dimensions"] = dimensions
    return result


def extract_price(price_data):
    if isinstance(price_data, bool):
        return 0
    if isinstance(price_data, (int, float)):
        return price_data if price_data > 0 else 0
    if not price_data:
        return 0

    cleaned = re.sub(r"[^\d.]", "", str(price_data))
    try:
        price = float(cleaned)
    except ValueError:
        return 0
    return price if price > 0 else 0


OUT_OF_STOCK_PHRASES = (
    "out of stock",
    "unavailable",
    "not available",
    "discontinued",
    "temporarily out",
)

LIMITED_STOCK_PHRASES = ("limited", "few left", "low stock")


def normalize_stock_status(stock, price=None):
    if not stock:
        return "In Stock" if price and extract_price(price) > 0 else "Unknown"

    text = str(stock).lower()

    if any(phrase in text for phrase in OUT_OF_STOCK_PHRASES):
        return "Out of Stock"

    if ("only" in text and "left" in text) or any(phrase in text for phrase in LIMITED_STOCK_PHRASES):
        return "Limited Stock"

    return "In Stock"


STOCK_QUANTITY_PATTERNS = [
    re.compile(r"only\s+(\d+)\s+left", re.I),
    re.compile(r"(\d+)\s+left\s+in\s+stock", re.I),
    re.compile(r"(\d+)\s+remaining", re.I),
    re.compile(r"(\d+)\s+in\s+stock", re.I),
    re.compile(r"(\d+)\s+available", re.I),
    re.compile(r"stock:\s*(\d+)", re.I),
    re.compile(r"quantity:\s*(\d+)", re.I),
    re.compile(r"(\d+)\s+items?\s+left", re.I),
    re.compile(r"(\d+)\s+units?\s+available", re.I),
    re.compile(r"last\s+(\d+)", re.I),
    re.compile(r"(\d+)\s+pieces?\s+left", re.I),
]


def extract_stock_quantity(stock):
    if not stock:
        return None

    text = str(stock).lower()
    for pattern in STOCK_QUANTITY_PATTERNS:
        match = pattern.search(text)
        if match:
            qty = int(match.group(1))
            if 0 < qty < 10000:
                return qty
    return None


def clean_text(text, max_length=5000):
    if not text:
        return ""
    return re.sub(r"\s+", " ", str(text)).strip()[:max_length]


def extract_features(bullet_points):
    if not bullet_points:
        return []

    if isinstance(bullet_points, str):
        items = bullet_points.split("\n")
    elif isinstance(bullet_points, list):
        items = bullet_points
    else:
        return []

    features = [clean_text(item) for item in items]
    return [f for f in features if f][:10]


def build_shipping_info(delivery):
    if not isinstance(delivery, list):
        return {}

    shipping = {}
    for index, option in enumerate(delivery):
        option_type = option.get("type")
        key = re.sub(r"\s+", "_", option_type.lower()) if option_type else f"option_{index}"
        shipping[key] = {"type": option_type or "Unknown", "date": option.get("date")}
    return shipping


def _ladder_path(category):
    ladder = category.get("ladder")
    if isinstance(ladder, list) and ladder:
        return " > ".join(step.get("name", "") for step in ladder)
    return None


def extract_category(category):
    if not category:
        return None
    if isinstance(category, str):
        return category

    if isinstance(category, list):
        first = category[0]
        if isinstance(first, dict):
            return _ladder_path(first) or first.get("name")
        return first

    if isinstance(category, dict):
        return _ladder_path(category) or category.get("name")

    return None


BRAND_PATTERNS = [
    re.compile(r"^([A-Z][a-zA-Z0-9&\s]*?)[\s-]"),
    re.compile(r"^([A-Z]+)\s"),
]


def extract_brand_from_title(title):
    if not title:
        return None
    for pattern in BRAND_PATTERNS:
        match = pattern.match(title)
        if match and 1 < len(match.group(1)) < 30:
            return match.group(1).strip()
    return None


# ---------- variants ----------

def _variant_result(scraped, fallback_image=None, fallback_price=None):
    return {
        "image": (scraped.get("image_urls") or [None])[0] or fallback_image,
        "price": scraped.get("supplier_price") or fallback_price,
        "stock_status": scraped.get("stock_status") or "Unknown",
        "stock_quantity": scraped.get("stock_quantity"),
    }


def scrape_variant_data_optimized(variants, country="AU", max_variants=5):
    """One scrape per distinct colour, fanned out to every option of that colour."""
    if not variants or not isinstance(variants.get("options"), list):
        return variants

    color_dimension = next(
        (d for d in variants.get("dimensions") or [] if "color" in d.lower() or "colour" in d.lower()),
        None,
    )

    fallback_image = None
    fallback_price = None

    if not color_dimension:
        to_fetch = [v for v in variants["options"] if not v.get("selected")][:max_variants]
        for variant in to_fetch:
            try:
                variant.update(_variant_result(
                    scrape_amazon_product(variant["asin"], country), fallback_image, fallback_price
                ))
                fallback_image = fallback_image or variant["image"]
                fallback_price = fallback_price or variant["price"]
            except ScrapeError as e:
                logger.warning("Failed for %s: %s", variant.get("asin"), e)
                variant.update({
                    "image": fallback_image,
                    "price": fallback_price,
                    "stock_status": "Unknown",
                    "stock_quantity": None,
                })
        return variants

    unique_colors = {}
    for variant in variants["options"]:
        if variant.get("selected"):
            continue
        color = (variant.get("dimensions") or {}).get(color_dimension)
        if color and color not in unique_colors:
            unique_colors[color] = variant["asin"]

    logger.info("Fetching data for %s unique colors...", len(unique_colors))

    color_data = {}
    for color, asin in unique_colors.items():
        try:
            data = _variant_result(scrape_amazon_product(asin, country), fallback_image, fallback_price)
            fallback_image = fallback_image or data["image"]
            fallback_price = fallback_price or data["price"]
        except ScrapeError as e:
            logger.warning("Failed for %s: %s", color, e)
            data = {"image": fallback_image, "price": fallback_price, "stock_status": "Unknown", "stock_quantity": None}
        color_data[color] = data

    enriched = []
    for variant in variants["options"]:
        scraped = color_data.get((variant.get("dimensions") or {}).get(color_dimension))
        if scraped:
            enriched.append({
                **variant,
                "image": scraped["image"] or fallback_image,
                "price": scraped["price"] or fallback_price,
                "stock_status": scraped["stock_status"] or "Unknown",
                "stock_quantity": scraped["stock_quantity"],
            })
        else:
            enriched.append({
                **variant,
                "image": fallback_image,
                "price": fallback_price,
                "stock_status": "Unknown",
                "stock_quantity": None,
            })

    return {**variants, "options": enriched}


def scrape_all_variants_individually(variants, country="AU", main_product=None):
    if not variants or not isinstance(variants.get("options"), list):
        return variants

    main_product = main_product or {}
    main_image = (main_product.get("image_urls") or [None])[0]

    enriched = []
    fallback = None
    success_count = 0

    for variant in variants["options"]:
        scraped = None
        for attempt in range(1, 3):
            try:
                scraped = scrape_amazon_product(variant["asin"], country)
                break
            except ScrapeError as e:
                logger.warning("Attempt %s/2 failed for %s: %s", attempt, variant.get("asin"), e)
                if attempt < 2:
                    time.sleep(2)

        if scraped:
            item = {**variant, **_variant_result(scraped)}
            if not fallback and item["image"]:
                fallback = item
            success_count += 1
        else:
            item = {
                **variant,
                "image": (fallback or {}).get("image") or main_image,
                "price": (fallback or {}).get("price") or main_product.get("supplier_price"),
                "stock_status": "Unknown",
                "stock_quantity": None,
            }
        enriched.append(item)

        time.sleep(0.5)

    logger.info("Completed: %s successful, %s failed (with fallbacks)", success_count, len(enriched) - success_count)
    return {**variants, "options": enriched}


def scrape_amazon_product_with_variants(asin, country="AU", fetch_variants=True, max_variants=5, accurate_stock=False):
    product = scrape_amazon_product(asin, country)

    if not fetch_variants:
        return product

    variants = product.get("variants")
    if variants and variants.get("has_variations") and variants.get("options"):
        if accurate_stock:
            logger.info("Product has %s variants, fetching accurate stock for each", variants["count"])
            product["variants"] = scrape_all_variants_individually(variants, country, product)
        else:
            product["variants"] = scrape_variant_data_optimized(variants, country, max_variants)

    return product


def calculate_stock_summary(variants):
    if not variants or not variants.get("options"):
        return {"available": 0, "onHold": 0, "outOfStock": 0, "total": 0}

    summary = {
        "available": 0,
        "onHold": 0,
        "outOfStock": 0,
        "total": variants.get("count") or len(variants["options"]),
    }

    for variant in variants["options"]:
        status = variant.get("stock_status")
        qty = variant.get("stock_quantity")
        if not status or status == "Out of Stock" or qty == 0:
            summary["outOfStock"] += 1
        elif status == "Limited Stock" or (qty and qty <= 10):
            summary["onHold"] += 1
        elif status == "In Stock":
            summary["available"] += 1

    return summary


# ---------- ASIN input & row building ----------

ASIN_RE = re.compile(r"^[A-Z0-9]{10}$", re.I)

ASIN_URL_PATTERNS = [
    re.compile(r"/dp/([A-Z0-9]{10})", re.I),
    re.compile(r"/gp/product/([A-Z0-9]{10})", re.I),
    re.compile(r"/product/([A-Z0-9]{10})", re.I),
    re.compile(r"asin=([A-Z0-9]{10})", re.I),
    re.compile(r"/([A-Z0-9]{10})(?:/|\?|$)", re.I),
]

PAGE_ASIN_PATTERNS = [
    re.compile(r'data-asin="([A-Z0-9]{10})"', re.I),
    re.compile(r'asin["\s:]+([A-Z0-9]{10})', re.I),
]


def extract_asin_from_text(text):
    for pattern in ASIN_URL_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).upper()
    return None


def extract_asin(value, follow_redirects=True):
    """Accepts a bare ASIN or any Amazon (short) URL."""
    if not value:
        return None
    value = value.strip()

    if ASIN_RE.match(value):
        return value.upper()

    url = value
    if follow_redirects and re.match(r"^https?://", value, re.I):
        try:
            res = requests.get(value, headers={"User-Agent": USER_AGENT}, timeout=15, allow_redirects=True)
            url = res.url or value
            for pattern in PAGE_ASIN_PATTERNS:
                match = pattern.search(res.text or "")
                if match:
                    return match.group(1).upper()
        except requests.RequestException as e:
            logger.warning("Failed to fetch URL %s: %s", value, e)

    return extract_asin_from_text(url)


def generate_internal_sku(asin):
    millis = str(int(time.time() * 1000))
    return f"AMZ{asin}{millis[-6:]}"


def clean_shipping_info(shipping_info):
    if not isinstance(shipping_info, dict):
        return shipping_info
    return {
        key: truncate_string(value, 500) if isinstance(value, str) else value
        for key, value in shipping_info.items()
    }


def clean_variants(variants):
    if not variants or not isinstance(variants.get("options"), list):
        return variants
    return {
        **variants,
        "options": [
            {
                **option,
                "asin": truncate_string(option.get("asin"), 20),
                "title": truncate_string(option.get("title"), 500),
                "value": truncate_string(option.get("value"), 500),
                "dimension_name": truncate_string(option.get("dimension_name"), 200),
                "image_url": truncate_string(option.get("image_url"), 1000),
            }
            for option in variants["options"]
        ],
    }


def scraped_update_fields(scraped):
    """Columns refreshed on every rescrape of an existing product."""
    metadata = dict(scraped.get("metadata") or {})
    if (scraped.get("variants") or {}).get("has_variations"):
        metadata["stock_summary"] = calculate_stock_summary(scraped["variants"])

    title = scraped.get("title") or ""
    if len(title) > 500:
        metadata["original_title"] = title

    return {
        "title": truncate_string(title, 500),
        "brand": truncate_string(scraped.get("brand"), 500),
        "category": truncate_string(scraped.get("category"), 500),
        "image_urls": [truncate_string(url, 1000) for url in scraped.get("image_urls") or []],
        "description": truncate_string(scraped.get("description"), 5000),
        "features": [truncate_string(f, 500) for f in scraped.get("features") or []],

        "supplier_price": scraped.get("supplier_price"),
        "our_price": scraped.get("our_price"),
        "currency": truncate_string(scraped.get("currency"), 10),

        "stock_status": truncate_string(scraped.get("stock_status"), 50),
        "stock_quantity": scraped.get("stock_quantity"),
        "shipping_info": clean_shipping_info(scraped.get("shipping_info")),

        "rating_average": scraped.get("rating_average"),
        "rating_count": scraped.get("rating_count"),

        "variants": clean_variants(scraped.get("variants")),
        "metadata": metadata,

        "is_active": True,
        "last_scraped": now_iso(),
        "scrape_errors": 0,
        "updated_at": now_iso(),
    }


def build_product_data(scraped, asin, user_id, country="AU"):
    url = scraped.get("supplier_url") or scraped.get("amazon_url")
    return {
        "user_id": user_id,
        "internal_sku": truncate_string(generate_internal_sku(asin), 50),
        "supplier_sku": truncate_string(asin, 255),
        "supplier_asin": truncate_string(asin, 20),
        "supplier_url": truncate_string(url, 1000),
        "supplier_name": truncate_string(scraped.get("supplier_name") or f"Amazon {country}", 50),
        "amazon_url": truncate_string(scraped.get("amazon_url"), 1000),
        **scraped_update_fields(scraped),
        "created_at": now_iso(),
    }


def country_from_supplier(product):
    name = product.get("supplier_name") or ""
    parts = name.split()
    return parts[-1] if len(parts) > 1 and parts[0] == "Amazon" else "AU"
