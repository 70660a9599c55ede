import json
import logging
import random
import re
import time
from urllib.parse import quote_plus

import requests
from bs4 import BeautifulSoup

from utils import now_iso

logger = logging.getLogger(__name__)

KOGAN_BASE_URL = "https://www.kogan.com"
KOGAN_SEARCH_URL = f"{KOGAN_BASE_URL}/au/search/?q="

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
    "Referer": "https://www.google.com/",
    "Connection": "keep-alive",
}

USER_AGENTS = [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

NAME_SELECTORS = [
    'h1[data-testid="product-title"]',
    "h1.product-title",
    "h1",
    ".product-name",
    "[data-product-title]",
    "title",
]
SKU_SELECTORS = ["[data-sku]", ".product-sku", "[data-product-id]"]
PRICE_SELECTORS = [
    '[data-testid="price-current"]',
    ".price-current",
    ".current-price",
    ".price",
    "[data-price]",
    '[itemprop="price"]',
    ".product-price",
]
ORIGINAL_PRICE_SELECTORS = [".price-original", ".was-price", ".original-price", ".price-before"]
BRAND_SELECTORS = [".brand", ".product-brand", "[data-brand]"]
IMAGE_SELECTORS = [
    ".product-image img",
    ".product-gallery img",
    'img[alt*="product"]',
    ".main-image img",
    '[data-testid="product-image"] img',
]
DESCRIPTION_SELECTORS = [
    ".product-description",
    ".description",
    ".product-summary",
    '[data-testid="description"]',
]
STOCK_SELECTORS = [".stock-status", ".availability", "[data-stock]"]
CATEGORY_SELECTORS = [".breadcrumb li:last-child", ".category-name", "[data-category]"]


class ScrapeError(Exception):
    pass


def _get_text(soup, selectors):
    for selector in selectors:
        el = soup.select_one(selector)
        if el:
            text = el.get_text(strip=True)
            if text:
                return text
    return None


def _parse_price(value):
    if value is None:
        return None
    match = re.search(r"\d+\.?\d*", str(value).replace(",", "").replace("$", ""))
    return float(match.group(0)) if match else None


def _get_price(soup, selectors):
    for selector in selectors:
        el = soup.select_one(selector)
        if not el:
            continue
        attr_price = el.get("data-price") or el.get("content")
        if attr_price:
            price = _parse_price(attr_price)
            if price is not None:
                return price
        price = _parse_price(el.get_text(strip=True))
        if price is not None:
            return price
    return None


def _fix_image_url(src):
    return src if src.startswith("http") else f"https:{src}"


def _get_image(soup, selectors):
    for selector in selectors:
        el = soup.select_one(selector)
        if el:
            src = el.get("src") or el.get("data-src")
            if src:
                return _fix_image_url(src)
    return None


def _find_structured_product(soup):
    """Last JSON-LD block describing a Product, if any."""
    found = None
    for script in soup.find_all("script", type="application/ld+json"):
        try:
            data = json.loads(script.string or "")
        except ValueError:
            continue

        candidates = data if isinstance(data, list) else [data]
        for item in candidates:
            if isinstance(item, dict) and (item.get("@type") == "Product" or item.get("product")):
                found = item.get("product") if isinstance(item.get("product"), dict) else item
    return found


def _offer_price(structured):
    offers = structured.get("offers")
    if isinstance(offers, list):
        offers = offers[0] if offers else None
    if isinstance(offers, dict):
        return _parse_price(offers.get("price"))
    return None


def _structured_image(structured):
    image = structured.get("image")
    if isinstance(image, list):
        image = image[0] if image else None
    if isinstance(image, dict):
        image = image.get("url")
    return _fix_image_url(image) if isinstance(image, str) and image else None


def _sku_from_url(url):
    tail = url.rstrip("/").split("/")[-1]
    return re.sub(r"[^a-zA-Z0-9]", "", tail).upper() or None


def parse_kogan_html(html, url):
    soup = BeautifulSoup(html, "html.parser")
    structured = _find_structured_product(soup) or {}

    name = structured.get("name") or _get_text(soup, NAME_SELECTORS) or "Kogan Product"

    sku = (
        structured.get("sku")
        or _get_text(soup, SKU_SELECTORS)
        or _sku_from_url(url)
        or f"KG{int(time.time() * 1000)}"
    )

    current_price = _offer_price(structured) if structured else None
    if current_price is None:
        current_price = _get_price(soup, PRICE_SELECTORS)

    original_price = _get_price(soup, ORIGINAL_PRICE_SELECTORS)

    brand = structured.get("brand")
    if isinstance(brand, dict):
        brand = brand.get("name")
    brand = brand or _get_text(soup, BRAND_SELECTORS) or "Kogan"

    image_url = _structured_image(structured) or _get_image(soup, IMAGE_SELECTORS)
    description = structured.get("description") or _get_text(soup, DESCRIPTION_SELECTORS) or ""

    stock_text = _get_text(soup, STOCK_SELECTORS)
    in_stock = not stock_text or "out of stock" not in stock_text.lower()

    category = _get_text(soup, CATEGORY_SELECTORS)

    discount = None
    if original_price and current_price:
        discount = round((original_price - current_price) / original_price * 100)

    rating = structured.get("aggregateRating") or {}
    rating_average = _parse_price(rating.get("ratingValue")) if rating else None
    rating_count = rating.get("reviewCount") or rating.get("ratingCount") if rating else None

    page_text = soup.get_text(" ", strip=True).lower()

    return {
        "sku": str(sku),
        "name": name,
        "brand": brand,
        "category": category,
        "price_current": current_price,
        "price_original": original_price,
        "discount_percent": discount,
        "source_url": url,
        "image_url": image_url,
        "description": description,
        "status": "In Stock" if in_stock else "Out of Stock",
        "shipping_free": "free shipping" in page_text or "free delivery" in page_text,
        "rating_average": rating_average,
        "rating_count": int(rating_count) if rating_count else 0,
        "kogan_first": "kogan first" in page_text,
        "last_updated": now_iso(),
    }


def _fetch(url, headers):
    res = requests.get(url, headers=headers, timeout=30, allow_redirects=True)
    res.raise_for_status()
    return res.text


def scrape_product(url):
    try:
        return parse_kogan_html(_fetch(url, BROWSER_HEADERS), url)
    except requests.RequestException as e:
        logger.info("Browser headers failed for %s (%s), retrying with another agent", url, e)

    # second attempt looks like a different visitor
    time.sleep(random.uniform(1, 3))
    headers = {
        "User-Agent": random.choice(USER_AGENTS),
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-AU,en;q=0.9,en-US;q=0.8",
        "Referer": f"{KOGAN_BASE_URL}/au/",
        "Origin": KOGAN_BASE_URL,
        "Connection": "keep-alive",
    }
    try:
        return parse_kogan_html(_fetch(url, headers), url)
    except requests.RequestException as e:
        raise ScrapeError(f"Failed to scrape {url}: {e}")


def search_by_sku(term):
    try:
        res = requests.get(
            KOGAN_SEARCH_URL + quote_plus(term),
            headers={"User-Agent": BROWSER_HEADERS["User-Agent"]},
            timeout=15,
        )
        res.raise_for_status()
    except requests.RequestException as e:
        logger.error("Kogan search error for %s: %s", term, e)
        return None

    soup = BeautifulSoup(res.text, "html.parser")
    link = soup.select_one('a[href*="/buy/"]')
    if not link or not link.get("href"):
        return None

    href = link["href"]
    return href if href.startswith("http") else f"{KOGAN_BASE_URL}{href}"


def resolve_product_url(value):
    """Kogan URLs pass through; SKUs and names go through the site search."""
    value = (value or "").strip()
    if not value:
        return None
    if "kogan.com" in value:
        return value
    return search_by_sku(value)


def scrape_price_update(url):
    data = scrape_product(url)
    return {
        "price_current": data["price_current"],
        "price_original": data["price_original"],
        "discount_percent": data["discount_percent"],
        "status": data["status"],
        "last_updated": now_iso(),
    }
