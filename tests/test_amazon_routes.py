import pytest
import requests

import jobs
from helpers import Recorder, StubResponse, api_response, scraper_content

USER = "user-1"


@pytest.fixture
def scraper(monkeypatch):
    """Scraper API stub: per-ASIN overrides, ASINs in ``failing`` return HTTP 500."""
    overrides = {}
    failing = set()

    def respond(url, **kwargs):
        asin = kwargs["json"]["query"]
        if asin in failing:
            return StubResponse(500)
        return api_response(scraper_content(asin=asin, url=f"https://www.amazon.com.au/dp/{asin}",
                                            **overrides.get(asin, {})))

    post = Recorder(respond)
    monkeypatch.setattr(requests, "post", post)
    post.overrides = overrides
    post.failing = failing
    return post


def amazon_row(asin, **fields):
    row = {
        "user_id": USER,
        "internal_sku": f"AMZ{asin}000001",
        "supplier_asin": asin,
        "supplier_name": "Amazon AU",
        "supplier_price": 40.0,
        "stock_status": "In Stock",
        "rating_average": 4.7,
        "is_active": True,
        "scrape_errors": 0,
        "last_scraped": "2024-01-01T00:00:00+00:00",
        "created_at": "2024-01-01T00:00:00+00:00",
    }
    row.update(fields)
    return row


# --- single import ---

def test_import_requires_input_and_valid_asin(client):
    assert client.post("/api/amazon/import", json={"userId": USER}).status_code == 400
    res = client.post("/api/amazon/import", json={"input": "not an asin", "userId": USER})
    assert res.status_code == 400
    assert "valid Amazon ASIN" in res.json()["detail"]


def test_import_new_then_existing_product(client, db, scraper):
    payload = {"input": "B08N5WRWNW", "userId": USER, "fetchVariants": False}

    res = client.post("/api/amazon/import", json=payload)
    assert res.status_code == 200
    body = res.json()
    assert body["isNew"] is True
    assert body["product"]["supplier_price"] == 49.0
    assert body["product"]["our_price"] == 59.1
    sku = body["product"]["internal_sku"]

    scraper.overrides["B08N5WRWNW"] = {"price": 45.0}
    body = client.post("/api/amazon/import", json=payload).json()

    assert body["isNew"] is False
    assert body["product"]["internal_sku"] == sku
    assert len(db.rows("products")) == 1
    assert [h["supplier_price"] for h in db.rows("price_history")] == [49.0, 45.0]


def test_import_scrape_failure_is_400(client, db, scraper):
    scraper.failing.add("B08N5WRWNW")

    res = client.post("/api/amazon/import", json={"input": "B08N5WRWNW", "userId": USER, "fetchVariants": False})

    assert res.status_code == 400
    assert db.rows("products") == []


# --- CSV import ---

def test_bulk_import_csv_runs_in_background(client, db, scraper):
    db.seed("products", amazon_row("B000000003"))

    res = client.post("/api/amazon/bulk-import-csv", json={
        "userId": USER,
        "csvData": "B000000001\n\n  https://www.amazon.com.au/dp/B000000002  \nB000000003\nnonsense",
        "fetchVariants": False,
    })

    assert res.status_code == 200
    body = res.json()
    assert body["totalSkus"] == 4

    session = db.rows("csv_import_sessions")[0]
    assert session["status"] == "completed"
    assert session["processed_skus"] == 4
    assert session["imported_products"] == 2
    assert session["updated_products"] == 1
    assert session["failed_skus"] == 1
    assert {p["supplier_asin"] for p in db.rows("products")} == {"B000000001", "B000000002", "B000000003"}

    status = client.get("/api/amazon/csv-import-status", params={"userId": USER}).json()
    assert status["status"] == "completed"
    assert status["progress"]["percentage"] == 100


def test_bulk_import_csv_stops_when_cancelled_mid_run(client, db, scraper, monkeypatch):
    def cancel_then_scrape(url, **kwargs):
        db.table("csv_import_sessions").update({"status": "cancelled"}).eq("user_id", USER).execute()
        return scraper(url, **kwargs)

    monkeypatch.setattr(requests, "post", cancel_then_scrape)

    client.post("/api/amazon/bulk-import-csv", json={
        "userId": USER,
        "csvData": "B000000001\nB000000002\nB000000003",
        "fetchVariants": False,
    })

    session = db.rows("csv_import_sessions")[0]
    assert session["status"] == "cancelled"
    assert session["processed_skus"] == 1
    assert [p["supplier_asin"] for p in db.rows("products")] == ["B000000001"]
    assert "Import cancelled by user" in [log["message"] for log in db.rows("import_logs")]


def test_bulk_import_csv_marks_session_failed_on_crash(client, db, monkeypatch):
    def lookup_down(user_id, asin):
        raise RuntimeError("products table unavailable")

    monkeypatch.setattr(jobs, "find_amazon_product", lookup_down)

    res = client.post("/api/amazon/bulk-import-csv", json={"userId": USER, "csvData": "B000000001"})

    assert res.status_code == 200
    session = db.rows("csv_import_sessions")[0]
    assert session["status"] == "failed"
    assert session["error_message"] == "products table unavailable"


def test_bulk_import_csv_validation(client):
    assert client.post("/api/amazon/bulk-import-csv", json={"csvData": "B000000001"}).status_code == 400
    assert client.post("/api/amazon/bulk-import-csv", json={"userId": USER}).status_code == 400
    assert client.post("/api/amazon/bulk-import-csv", json={"userId": USER, "products": []}).status_code == 400


def test_cancel_bulk_import(client, db):
    session = db.seed("csv_import_sessions", {"user_id": USER, "status": "running", "total_skus": 10})[0]

    res = client.request("DELETE", "/api/amazon/bulk-import-csv", json={"sessionId": session["id"]})

    assert res.status_code == 200
    assert db.rows("csv_import_sessions")[0]["status"] == "cancelled"


def test_csv_import_status_without_sessions(client):
    assert client.get("/api/amazon/csv-import-status").status_code == 400
    body = client.get("/api/amazon/csv-import-status", params={"userId": USER}).json()
    assert body["status"] == "none"


# --- updates ---

def test_update_products_reports_changes_and_failures(client, db, scraper):
    db.seed(
        "products",
        amazon_row("B000000001"),
        amazon_row("B000000002", scrape_errors=9),
        amazon_row("B000000003", is_active=False),
        amazon_row("B000000004", user_id="someone-else"),
    )
    scraper.failing.add("B000000002")

    res = client.post("/api/amazon/update-products", json={"userId": USER})

    assert res.status_code == 200
    body = res.json()
    assert body["stats"] == {"total": 2, "updated": 1, "failed": 1, "priceChanges": 1, "stockChanges": 1}
    assert body["errors"][0]["deactivated"] is True

    rows = {p["supplier_asin"]: p for p in db.rows("products")}
    assert rows["B000000001"]["supplier_price"] == 49.0
    assert rows["B000000001"]["stock_status"] == "Limited Stock"
    assert rows["B000000002"]["is_active"] is False
    assert rows["B000000002"]["scrape_errors"] == 10


def test_update_single_product(client, db, scraper):
    assert client.post("/api/amazon/update-single-product", json={}).status_code == 400
    assert client.post("/api/amazon/update-single-product", json={"productId": 42}).status_code == 404

    product = db.seed("products", amazon_row("B000000001"))[0]
    res = client.post("/api/amazon/update-single-product", json={"productId": product["id"], "fetchVariants": False})

    assert res.status_code == 200
    assert res.json()["product"]["supplier_price"] == 49.0
    assert len(db.rows("price_history")) == 1


def test_hourly_update_batch(client, db, scraper):
    db.seed(
        "products",
        amazon_row("B000000001"),
        amazon_row("B000000002", supplier_price=49.0, stock_status="Limited Stock"),
        amazon_row("B000000003", is_active=False),
    )

    res = client.post("/api/amazon/update-hourly")

    assert res.status_code == 200
    assert res.json()["totalProducts"] == 2
    batch = db.rows("update_batches")[0]
    assert batch["status"] == "completed"
    assert batch["processed_products"] == 2
    assert batch["updated_products"] == 1

    actions = sorted(log["action"] for log in db.rows("update_logs"))
    assert actions == ["no_change", "updated"]

    status = client.get("/api/amazon/update-status").json()
    assert status["progress"]["percentage"] == 100
    assert client.get("/api/amazon/update-status", params={"batchId": 999}).status_code == 404


def test_hourly_update_deactivates_after_repeated_failures(client, db, scraper):
    db.seed("products", amazon_row("B000000001", scrape_errors=9), amazon_row("B000000002"))
    scraper.failing.update({"B000000001", "B000000002"})

    client.post("/api/amazon/update-hourly")

    assert sorted(log["action"] for log in db.rows("update_logs")) == ["deactivated", "error"]
    rows = {p["supplier_asin"]: p for p in db.rows("products")}
    assert rows["B000000001"]["is_active"] is False
    assert rows["B000000001"]["scrape_errors"] == 10
    assert rows["B000000002"]["is_active"] is True
    assert rows["B000000002"]["scrape_errors"] == 1
    batch = db.rows("update_batches")[0]
    assert batch["status"] == "completed"
    assert batch["failed_products"] == 2


def test_hourly_update_crash_marks_batch_failed(client, db, monkeypatch):
    def snapshot_down():
        raise RuntimeError("snapshot query timed out")

    monkeypatch.setattr(jobs, "snapshot_active_product_ids", snapshot_down)

    client.post("/api/amazon/update-hourly")

    batch = db.rows("update_batches")[0]
    assert batch["status"] == "failed"
    assert batch["error_message"] == "snapshot query timed out"
    assert client.post("/api/amazon/update-hourly").status_code == 200


class UnreachableDatabase:
    def table(self, name):
        raise ConnectionError("database unreachable")


def test_background_jobs_survive_unwritable_failure_status(monkeypatch):
    monkeypatch.setattr(jobs, "supabase", UnreachableDatabase())

    assert jobs.run_hourly_update(1)["processed"] == 0
    assert jobs.run_kogan_import_session(1, USER, []) is None


def test_hourly_update_rejects_concurrent_batch(client, db):
    db.seed("update_batches", {"status": "running", "started_at": "2024-01-01T00:00:00+00:00"})
    assert client.post("/api/amazon/update-hourly").status_code == 409


def test_cron_hourly_update(client, db, scraper):
    assert client.post("/api/cron/hourly-update").status_code == 401
    headers = {"Authorization": "Bearer test-cron-secret"}

    body = client.post("/api/cron/hourly-update", headers=headers).json()
    assert "batchId" in body

    db.seed("update_batches", {"status": "running", "started_at": "2024-01-01T00:00:00+00:00"})
    assert client.post("/api/cron/hourly-update", headers=headers).json()["skipped"] is True


# --- status & maintenance ---

def test_amazon_status(client, db):
    db.seed(
        "products",
        amazon_row("B000000001"),
        amazon_row("B000000002", stock_status="Out of Stock"),
        amazon_row("B000000003", is_active=False),
    )

    body = client.get("/api/amazon/status").json()

    assert body["stats"]["products"] == {
        "total": 3, "active": 2, "inactive": 1, "inStock": 1, "outOfStock": 1, "limitedStock": 0,
    }
    assert body["systemStatus"]["status"] == "idle"

    from utils import now_iso

    db.seed("update_batches", {"status": "running", "started_at": now_iso()})
    assert client.get("/api/amazon/status").json()["systemStatus"]["status"] == "updating"


def test_amazon_status_counts_past_the_row_cap(client, db):
    db.seed(
        "products",
        amazon_row("B000000001"),
        amazon_row("B000000002"),
        amazon_row("B000000003"),
        amazon_row("B000000004", stock_status="Out of Stock"),
        amazon_row("B000000005", is_active=False),
    )
    db.max_rows = 2

    body = client.get("/api/amazon/status").json()

    assert body["stats"]["products"] == {
        "total": 5, "active": 4, "inactive": 1, "inStock": 3, "outOfStock": 1, "limitedStock": 0,
    }


def test_delete_all_products(client, db):
    products = db.seed("products", amazon_row("B000000001"), amazon_row("B000000002"),
                       amazon_row("B000000003", user_id="other"))
    db.seed("price_history", {"product_id": products[0]["id"]}, {"product_id": products[2]["id"]})
    db.seed("update_logs", {"product_id": products[1]["id"]})
    db.seed("csv_import_sessions", {"user_id": USER, "status": "completed"}, {"user_id": USER, "status": "running"})

    res = client.request("DELETE", "/api/amazon/delete-all-products", json={"userId": USER, "confirmDelete": "yes"})
    assert res.status_code == 400

    res = client.request("DELETE", "/api/amazon/delete-all-products",
                         json={"userId": USER, "confirmDelete": "DELETE_ALL_PRODUCTS"})

    assert res.status_code == 200
    assert res.json()["deletedCounts"] == {"products": 2, "priceHistory": 1, "updateLogs": 1}
    assert [p["user_id"] for p in db.rows("products")] == ["other"]
    assert [s["status"] for s in db.rows("csv_import_sessions")] == ["running"]


# --- SP-API ---

def test_get_orders(client, monkeypatch):
    post = Recorder(StubResponse(200, {"access_token": "Atza|token"}))
    get = Recorder(StubResponse(200, {"payload": {"Orders": [{"AmazonOrderId": "1"}], "NextToken": "n"}}))
    monkeypatch.setattr(requests, "post", post)
    monkeypatch.setattr(requests, "get", get)

    body = client.get("/api/amazon/get-orders").json()

    assert body["count"] == 1
    assert body["nextToken"] == "n"
    url, kwargs = get.calls[0]
    assert url.endswith("/orders/v0/orders")
    assert kwargs["headers"]["x-amz-access-token"] == "Atza|token"
    assert kwargs["params"]["MarketplaceIds"] == "A39IBJ37TRP1C6"


def test_get_orders_error_is_500(client, monkeypatch):
    monkeypatch.setattr(requests, "post", Recorder(StubResponse(401, {"error": "invalid_client"})))
    assert client.get("/api/amazon/get-orders").status_code == 500


def test_sp_exchange_token(client, monkeypatch):
    post = Recorder(StubResponse(200, {"refresh_token": "Atzr|new", "access_token": "Atza|a", "expires_in": 3600}))
    monkeypatch.setattr(requests, "post", post)

    assert client.post("/api/amazon/sp-exchange-token", json={}).status_code == 400
    body = client.post("/api/amazon/sp-exchange-token", json={"code": "auth-code"}).json()

    assert body["refresh_token"] == "Atzr|new"
    assert post.calls[0][1]["data"]["grant_type"] == "authorization_code"


def test_sp_callback_echoes_code(client):
    body = client.get("/api/amazon/sp-callback", params={
        "spapi_oauth_code": "code-1", "selling_partner_id": "A1", "state": "xyz",
    }).json()
    assert body["spapi_oauth_code"] == "code-1"
    assert body["selling_partner_id"] == "A1"
    assert client.get("/api/amazon/sp-callback").json()["success"] is False


def test_sp_api_network_errors_are_500(client):
    res = client.get("/api/amazon/get-orders")

    assert res.status_code == 500
    assert "LWA token request failed" in res.json()["detail"]
    assert client.post("/api/amazon/sp-exchange-token", json={"code": "auth-code"}).status_code == 500
