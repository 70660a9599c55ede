import json

import pytest
import requests

import jobs
import kogan_scraper
from helpers import Recorder, StubResponse
from kogan_scraper import ScrapeError, parse_kogan_html, resolve_product_url, scrape_product, search_by_sku

USER = "user-1"
TV_URL = "https://www.kogan.com/au/buy/kogan-55-4k-tv-ab12/"
FAN_URL = "https://www.kogan.com/au/buy/kogan-tower-fan-cd34/"


def structured_page(sku="KAQL55XQ", name="Kogan 55\" 4K TV", price="299.00"):
    product = {
        "@context": "https://schema.org",
        "@type": "Product",
        "sku": sku,
        "name": name,
        "brand": {"@type": "Brand", "name": "Kogan"},
        "description": "Smart TV with HDR",
        "image": ["https://assets.kogan.com/tv.jpg"],
        "offers": {"@type": "Offer", "price": price, "priceCurrency": "AUD"},
        "aggregateRating": {"ratingValue": "4.5", "reviewCount": "12"},
    }
    return f"""
    <html><head>
      <title>Kogan TV</title>
      <script type="application/ld+json">{json.dumps(product)}</script>
    </head><body>
      <ul class="breadcrumb"><li>Home</li><li>TVs</li></ul>
      <span class="was-price">$399.00</span>
      <div>Free shipping to most areas</div>
      <div>Kogan First members save more</div>
    </body></html>
    """


PLAIN_PAGE = """
<html><body>
  <h1 class="product-title">Tower Fan</h1>
  <span class="price-current">$1,199.50</span>
  <div class="stock-status">Out of stock</div>
  <div class="product-image"><img src="//cdn.kogan.com/fan.jpg"></div>
  <div class="product-description">Quiet and cool</div>
</body></html>
"""


def test_parse_structured_product():
    data = parse_kogan_html(structured_page(), TV_URL)

    assert data["sku"] == "KAQL55XQ"
    assert data["name"] == 'Kogan 55" 4K TV'
    assert data["brand"] == "Kogan"
    assert data["price_current"] == 299.0
    assert data["price_original"] == 399.0
    assert data["discount_percent"] == 25
    assert data["image_url"] == "https://assets.kogan.com/tv.jpg"
    assert data["category"] == "TVs"
    assert data["status"] == "In Stock"
    assert data["shipping_free"] is True
    assert data["kogan_first"] is True
    assert data["rating_average"] == 4.5
    assert data["rating_count"] == 12
    assert data["source_url"] == TV_URL


def test_parse_plain_html_fallbacks():
    data = parse_kogan_html(PLAIN_PAGE, FAN_URL)

    assert data["name"] == "Tower Fan"
    assert data["sku"] == "KOGANTOWERFANCD34"
    assert data["brand"] == "Kogan"
    assert data["price_current"] == 1199.5
    assert data["price_original"] is None
    assert data["discount_percent"] is None
    assert data["status"] == "Out of Stock"
    assert data["image_url"] == "https://cdn.kogan.com/fan.jpg"
    assert data["description"] == "Quiet and cool"
    assert data["shipping_free"] is False


def test_scrape_product_retries_with_other_agent(monkeypatch):
    get = Recorder(requests.ConnectionError("blocked"), StubResponse(200, text=PLAIN_PAGE))
    monkeypatch.setattr(requests, "get", get)

    assert scrape_product(FAN_URL)["name"] == "Tower Fan"
    first_agent = get.calls[0][1]["headers"]["User-Agent"]
    second = get.calls[1][1]["headers"]
    assert first_agent == kogan_scraper.BROWSER_HEADERS["User-Agent"]
    assert second["User-Agent"] in kogan_scraper.USER_AGENTS
    assert second["Referer"] == "https://www.kogan.com/au/"


def test_scrape_product_gives_up(monkeypatch):
    monkeypatch.setattr(requests, "get", Recorder(StubResponse(403)))
    with pytest.raises(ScrapeError):
        scrape_product(FAN_URL)


def test_search_by_sku(monkeypatch):
    get = Recorder(StubResponse(200, text='<a href="/au/help/">Help</a><a href="/au/buy/tower-fan-cd34/">Fan</a>'))
    monkeypatch.setattr(requests, "get", get)

    assert search_by_sku("CD34") == "https://www.kogan.com/au/buy/tower-fan-cd34/"
    assert get.calls[0][0].endswith("?q=CD34")

    monkeypatch.setattr(requests, "get", Recorder(StubResponse(200, text="<p>No results</p>")))
    assert search_by_sku("missing") is None


def test_resolve_product_url_passes_kogan_urls_through():
    assert resolve_product_url(f"  {TV_URL} ") == TV_URL
    assert resolve_product_url("") is None


# --- routes ---

@pytest.fixture
def kogan_site(monkeypatch):
    pages = {TV_URL: structured_page(), FAN_URL: structured_page(sku="FAN1", name="Tower Fan", price="49.00")}

    def respond(url, **kwargs):
        if url in pages:
            return StubResponse(200, text=pages[url])
        return StubResponse(404)

    monkeypatch.setattr(requests, "get", Recorder(respond))
    return pages


def test_scrape_route_upserts_by_user_and_sku(client, db, kogan_site):
    res = client.post("/api/kogan/scrape", json={"input": TV_URL, "userId": USER})
    assert res.status_code == 200
    assert res.json()["count"] == 1

    kogan_site[TV_URL] = structured_page(price="279.00")
    client.post("/api/kogan/scrape", json={"input": TV_URL, "userId": USER})

    rows = db.rows("kogan_products")
    assert len(rows) == 1
    assert rows[0]["price_current"] == 279.0
    assert rows[0]["monitoring_enabled"] is True
    assert [log["status"] for log in db.rows("kogan_scraping_logs")] == ["success", "success"]


def test_scrape_route_bulk_mode_reports_errors(client, db, kogan_site):
    missing = "https://www.kogan.com/au/buy/gone-zz99/"
    res = client.post("/api/kogan/scrape", json={
        "input": f"{TV_URL}\n\n{missing}\n{FAN_URL}",
        "userId": USER,
        "mode": "bulk",
    })

    body = res.json()
    assert body["count"] == 2
    assert body["errors"][0]["input"] == missing
    statuses = sorted(log["status"] for log in db.rows("kogan_scraping_logs"))
    assert statuses == ["error", "success", "success"]


def test_scrape_route_failure_is_500(client, db, kogan_site):
    assert client.post("/api/kogan/scrape", json={"userId": USER}).status_code == 400

    res = client.post("/api/kogan/scrape", json={"input": "https://www.kogan.com/au/buy/gone/", "userId": USER})
    assert res.status_code == 500
    assert db.rows("kogan_products") == []


def test_import_all_synchronous_then_background(client, db, kogan_site):
    res = client.post("/api/kogan/import-all", json={
        "userId": USER, "inputs": [TV_URL, FAN_URL, ""], "continuousMode": False,
    })

    body = res.json()
    assert body["results"] == {"processed": 2, "added": 2, "updated": 0, "errors": 0}
    first_created = {row["sku"]: row["created_at"] for row in db.rows("kogan_products")}

    kogan_site[TV_URL] = structured_page(price="249.00")
    res = client.post("/api/kogan/import-all", json={"userId": USER, "inputs": [TV_URL, FAN_URL]})
    assert "sessionId" in res.json()

    sessions = db.rows("import_sessions")
    assert [s["status"] for s in sessions] == ["completed", "completed"]
    assert sessions[1]["products_updated"] == 2

    rows = {row["sku"]: row for row in db.rows("kogan_products")}
    assert len(rows) == 2
    assert rows["KAQL55XQ"]["created_at"] == first_created["KAQL55XQ"]
    assert [h["price"] for h in db.rows("kogan_price_history")] == [249.0]

    status = client.get("/api/kogan/import-status", params={"userId": USER}).json()
    assert status["currentProductCount"] == 2
    assert status["progress"]["processed"] == 2


def test_import_all_counts_unscrapable_inputs_as_errors(client, db, kogan_site):
    body = client.post("/api/kogan/import-all", json={
        "userId": USER, "inputs": ["https://www.kogan.com/au/buy/nothing/"], "continuousMode": False,
    }).json()

    assert body["results"]["errors"] == 1
    assert db.rows("kogan_products") == []


def test_import_all_background_crash_marks_session_failed(client, db, monkeypatch):
    def import_down(user_id, inputs, max_products):
        raise RuntimeError("kogan_products table unavailable")

    monkeypatch.setattr(jobs, "run_kogan_import", import_down)

    res = client.post("/api/kogan/import-all", json={"userId": USER, "inputs": [TV_URL]})

    assert res.status_code == 200
    session = db.rows("import_sessions")[0]
    assert session["status"] == "failed"
    assert session["error_message"] == "kogan_products table unavailable"
    sync = client.post("/api/kogan/import-all", json={"userId": USER, "inputs": [TV_URL], "continuousMode": False})
    assert sync.status_code == 500


def test_import_status_without_session(client):
    assert client.get("/api/kogan/import-status").status_code == 400
    assert client.get("/api/kogan/import-status", params={"userId": USER}).json()["status"] == "none"


def test_update_monitored_products(client, db, kogan_site):
    tv, fan, paused = db.seed(
        "kogan_products",
        {"user_id": USER, "sku": "KAQL55XQ", "source_url": TV_URL, "price_current": 350.0,
         "status": "In Stock", "monitoring_enabled": True},
        {"user_id": USER, "sku": "X", "source_url": "https://www.kogan.com/au/buy/gone/", "price_current": 10.0,
         "status": "In Stock", "monitoring_enabled": True},
        {"user_id": USER, "sku": "FAN1", "source_url": FAN_URL, "monitoring_enabled": False},
    )

    body = client.post("/api/kogan/update", json={"userId": USER}).json()

    assert body["summary"] == {"total": 2, "success": 1, "errors": 1}
    result = next(r for r in body["results"] if r["id"] == tv["id"])
    assert result["priceChanged"] is True
    assert result["stockChanged"] is False
    assert db.rows("kogan_price_history")[0]["price"] == 299.0


def test_delete_and_list_products(client, db):
    keep, drop = db.seed(
        "kogan_products",
        {"user_id": USER, "sku": "A", "monitoring_enabled": True, "created_at": "2024-01-01T00:00:00+00:00"},
        {"user_id": USER, "sku": "B", "monitoring_enabled": True, "created_at": "2024-01-02T00:00:00+00:00"},
    )

    assert client.post("/api/kogan/delete", json={"userId": USER}).status_code == 400
    body = client.post("/api/kogan/delete", json={"userId": USER, "productIds": [drop["id"]]}).json()
    assert body["deletedCount"] == 1

    products = client.get("/api/kogan/products", params={"userId": USER}).json()["products"]
    assert [p["sku"] for p in products] == ["A"]
    assert client.get("/api/kogan/products").status_code == 400
