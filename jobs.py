"""
Long-running catalog jobs: AutoDS sync, Amazon CSV import and hourly
refresh, Kogan import. Route handlers start these directly or through
FastAPI BackgroundTasks; bookkeeping rows in the database carry progress.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor

from services import supabase
from utils import (
    chunked,
    map_autods_product,
    now_iso,
    sanitize_product_data,
    seconds_since,
    validate_product_data,
)
from amazon_scraper import (
    ScrapeError,
    build_product_data,
    country_from_supplier,
    extract_asin,
    scrape_amazon_product,
    scrape_amazon_product_with_variants,
    scraped_update_fields,
)
import kogan_scraper

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 50

# hourly update tuning
BATCH_SIZE = 100
MAX_CONCURRENT = 20
BATCH_DELAY = 0.5
REQUEST_DELAY = 0.1
MAX_ERRORS_BEFORE_DEACTIVATE = 10
CHUNK_SIZE = 1000

KOGAN_BATCH_SIZE = 10


# ---------- AutoDS sync ----------

def batch_upsert_products(products, batch_size=100):
    success_count = 0
    error_count = 0
    errors = []

    for batch_number, batch in enumerate(chunked(products, batch_size), start=1):
        rows = []
        for product in batch:
            is_valid, problems = validate_product_data(product)
            if not is_valid:
                error_count += 1
                errors.append(f"Batch {batch_number}: product {product.get('autods_id')}: {', '.join(problems)}")
                continue
            rows.append(sanitize_product_data(product))

        if rows:
            try:
                supabase.table("products").upsert(rows, on_conflict="autods_id").execute()
                success_count += len(rows)
            except Exception as e:
                logger.error("Batch %s upsert failed: %s", batch_number, e)
                error_count += len(rows)
                errors.append(f"Batch {batch_number}: {e}")

        time.sleep(0.1)

    return {"success_count": success_count, "error_count": error_count, "errors": errors}


def create_sync_log(sync_type, result, status):
    try:
        supabase.table("sync_logs").insert({
            "sync_type": sync_type,
            "status": status,
            "total_fetched": result.get("total_fetched", 0),
            "success_count": result.get("success_count", 0),
            "error_count": result.get("error_count", 0),
            "zero_qty_removed": result.get("zero_qty_removed", 0),
            "obsolete_removed": result.get("obsolete_removed", 0),
            "error_message": result.get("message"),
            "created_at": now_iso(),
        }).execute()
    except Exception as e:
        logger.warning("Failed to write sync log: %s", e)


def _delete_by_autods_ids(autods_ids):
    removed = 0
    errors = []
    for batch in chunked(autods_ids, DELETE_BATCH_SIZE):
        try:
            res = supabase.table("products").delete().in_("autods_id", batch).execute()
            removed += len(res.data or [])
        except Exception as e:
            logger.error("Failed to delete %s products: %s", len(batch), e)
            errors.append(str(e))
    return removed, errors


def _stored_autods_ids():
    ids = []
    offset = 0
    while True:
        res = (
            supabase.table("products")
            .select("autods_id")
            .not_.is_("autods_id", "null")
            .not_.like("autods_id", "manual_%")
            .order("id")
            .range(offset, offset + CHUNK_SIZE - 1)
            .execute()
        )
        rows = res.data or []
        ids.extend(row["autods_id"] for row in rows)
        if len(rows) < CHUNK_SIZE:
            return ids
        offset += CHUNK_SIZE


def run_autods_sync(client):
    raw_products = client.get_all_products()
    mapped = [map_autods_product(p) for p in raw_products]

    active = [p for p in mapped if p["quantity"] > 0]
    zero_qty_ids = [p["autods_id"] for p in mapped if p["quantity"] <= 0 and p["autods_id"]]
    logger.info("Fetched %s products: %s active, %s with zero quantity", len(mapped), len(active), len(zero_qty_ids))

    upsert_result = batch_upsert_products(active)
    errors = list(upsert_result["errors"])

    zero_qty_removed, delete_errors = _delete_by_autods_ids(zero_qty_ids)
    errors.extend(delete_errors)

    fetched_ids = {p["autods_id"] for p in mapped if p["autods_id"]}
    obsolete_removed = 0
    if fetched_ids:
        obsolete_ids = [autods_id for autods_id in _stored_autods_ids() if autods_id not in fetched_ids]
        obsolete_removed, delete_errors = _delete_by_autods_ids(obsolete_ids)
        errors.extend(delete_errors)
    else:
        logger.warning("AutoDS returned no products, skipping obsolete cleanup")

    logger.info(
        "AutoDS sync finished: %s upserted, %s zero-qty removed, %s obsolete removed",
        upsert_result["success_count"], zero_qty_removed, obsolete_removed,
    )

    return {
        "success": True,
        "total_fetched": len(raw_products),
        "active_synced": len(active),
        "success_count": upsert_result["success_count"],
        "error_count": upsert_result["error_count"],
        "zero_qty_removed": zero_qty_removed,
        "obsolete_removed": obsolete_removed,
        "errors": errors[:10],
        "timestamp": now_iso(),
    }


def cleanup_zero_quantity():
    res = supabase.table("products").select("id, autods_id, title, sku").eq("quantity", 0).execute()
    rows = res.data or []

    removed = []
    errors = []
    for batch in chunked(rows, DELETE_BATCH_SIZE):
        try:
            supabase.table("products").delete().in_("id", [row["id"] for row in batch]).execute()
            removed.extend(batch)
        except Exception as e:
            logger.error("Zero-quantity cleanup batch failed: %s", e)
            errors.append(str(e))

    return {"removed": len(removed), "errors": errors, "removed_products": removed[:10]}


# ---------- Amazon shared helpers ----------

def record_price_history(product_id, scraped):
    try:
        supabase.table("price_history").insert({
            "product_id": product_id,
            "supplier_price": scraped.get("supplier_price"),
            "our_price": scraped.get("our_price"),
            "stock_status": scraped.get("stock_status"),
            "recorded_at": now_iso(),
        }).execute()
    except Exception as e:
        logger.warning("Failed to add price history: %s", e)


def mark_scrape_failure(product, max_errors=MAX_ERRORS_BEFORE_DEACTIVATE):
    """Bump the error counter; returns True when the product got deactivated."""
    error_count = (product.get("scrape_errors") or 0) + 1
    deactivate = error_count >= max_errors
    try:
        supabase.table("products").update({
            "scrape_errors": error_count,
            "is_active": not deactivate,
            "last_scraped": now_iso(),
        }).eq("id", product["id"]).execute()
    except Exception as e:
        logger.warning("Failed to record scrape error for %s: %s", product.get("id"), e)
    return deactivate


def find_amazon_product(user_id, asin):
    res = (
        supabase.table("products")
        .select("*")
        .eq("user_id", user_id)
        .eq("supplier_asin", asin)
        .limit(1)
        .execute()
    )
    return res.data[0] if res.data else None


def scrape_for_import(asin, country, fetch_variants=True, accurate_stock=True, max_variants=999):
    if fetch_variants:
        return scrape_amazon_product_with_variants(
            asin, country, fetch_variants=True, max_variants=max_variants, accurate_stock=accurate_stock
        )
    return scrape_amazon_product(asin, country)


def save_amazon_product(scraped, asin, user_id, country="AU", existing=None):
    """Insert a newly scraped product or refresh the existing row for the same ASIN."""
    data = build_product_data(scraped, asin, user_id, country)

    if existing:
        data["internal_sku"] = existing["internal_sku"]
        data["created_at"] = existing.get("created_at")
        res = supabase.table("products").update(data).eq("id", existing["id"]).execute()
        saved = res.data[0]
        if existing.get("supplier_price") != scraped.get("supplier_price"):
            record_price_history(saved["id"], scraped)
        return saved, False

    res = supabase.table("products").insert(data).execute()
    saved = res.data[0]
    record_price_history(saved["id"], scraped)
    return saved, True


def refresh_amazon_product(product, country=None, fetch_variants=False, accurate_stock=False, max_variants=5):
    """
    Rescrape one stored product and write the fresh data back.

    On a scrape failure the error counter is bumped (deactivating the product
    at MAX_ERRORS_BEFORE_DEACTIVATE) and the ScrapeError is re-raised.
    """
    country = country or country_from_supplier(product)
    asin = product["supplier_asin"]

    try:
        if fetch_variants:
            scraped = scrape_amazon_product_with_variants(
                asin, country, fetch_variants=True, max_variants=max_variants, accurate_stock=accurate_stock
            )
        else:
            scraped = scrape_amazon_product(asin, country)
        if not scraped.get("title"):
            raise ScrapeError("No valid product data returned")
    except ScrapeError as e:
        e.deactivated = mark_scrape_failure(product)
        raise

    price_changed = product.get("supplier_price") != scraped.get("supplier_price")
    stock_changed = product.get("stock_status") != scraped.get("stock_status")

    res = supabase.table("products").update(scraped_update_fields(scraped)).eq("id", product["id"]).execute()
    if price_changed:
        record_price_history(product["id"], scraped)

    return {
        "product": res.data[0] if res.data else None,
        "price_changed": price_changed,
        "stock_changed": stock_changed,
    }


# ---------- Amazon CSV import ----------

def log_import_activity(session_id, asin, status, message, details=None):
    try:
        supabase.table("import_logs").insert({
            "session_id": session_id,
            "asin": asin,
            "status": status,
            "message": message,
            "details": details or {},
            "created_at": now_iso(),
        }).execute()
    except Exception as e:
        logger.warning("Failed to log import activity: %s", e)


def update_import_session(session_id, updates):
    try:
        supabase.table("csv_import_sessions").update(updates).eq("id", session_id).execute()
    except Exception as e:
        logger.warning("Failed to update import session %s: %s", session_id, e)


def _import_session_running(session_id):
    res = supabase.table("csv_import_sessions").select("status").eq("id", session_id).maybe_single().execute()
    return bool(res and res.data and res.data.get("status") == "running")


def run_csv_import(session_id, items, user_id, country="AU", fetch_variants=True, accurate_stock=True, max_variants=999):
    counts = {"processed_skus": 0, "imported_products": 0, "updated_products": 0, "failed_skus": 0}

    def finish_item(outcome):
        counts["processed_skus"] += 1
        counts[outcome] += 1
        update_import_session(session_id, dict(counts))

    try:
        for index, item in enumerate(items):
            if not _import_session_running(session_id):
                logger.info("Import session %s cancelled", session_id)
                log_import_activity(session_id, "SYSTEM", "error", "Import cancelled by user")
                return counts

            value = item.get("asin") or item.get("url") or item.get("input")
            if not value:
                log_import_activity(session_id, "UNKNOWN", "skipped", "No ASIN or URL provided", {"index": index})
                finish_item("failed_skus")
                continue

            asin = extract_asin(value)
            if not asin:
                log_import_activity(session_id, value, "error", "Invalid ASIN/URL format")
                finish_item("failed_skus")
                continue

            existing = find_amazon_product(user_id, asin)
            if existing:
                log_import_activity(session_id, asin, "skipped", "Product already exists", {"productId": existing["id"]})
                finish_item("updated_products")
                continue

            try:
                scraped = scrape_for_import(asin, country, fetch_variants, accurate_stock, max_variants)
                saved, _ = save_amazon_product(scraped, asin, user_id, country)
            except Exception as e:
                logger.error("CSV import failed for %s: %s", asin, e)
                log_import_activity(session_id, asin, "error", str(e))
                finish_item("failed_skus")
            else:
                log_import_activity(
                    session_id, asin, "success",
                    f"Imported successfully (SKU: {saved['internal_sku']})",
                    {"productId": saved["id"]},
                )
                finish_item("imported_products")

            if index < len(items) - 1:
                time.sleep(1)

        update_import_session(session_id, {**counts, "status": "completed", "completed_at": now_iso()})
        log_import_activity(
            session_id, "SYSTEM", "success",
            f"Import completed: {counts['imported_products']} imported, "
            f"{counts['updated_products']} existing, {counts['failed_skus']} failed",
        )

    except Exception as e:
        logger.exception("CSV import session %s failed", session_id)
        update_import_session(session_id, {
            **counts,
            "status": "failed",
            "error_message": str(e),
            "completed_at": now_iso(),
        })
        log_import_activity(session_id, "SYSTEM", "error", f"Fatal error: {e}")

    return counts


def import_progress(session):
    """Progress block shared by the CSV import status endpoints."""
    total = session.get("total_skus") or 0
    processed = session.get("processed_skus") or 0
    progress = {
        "processed": processed,
        "imported": session.get("imported_products") or 0,
        "updated": session.get("updated_products") or 0,
        "failed": session.get("failed_skus") or 0,
        "total": total,
        "percentage": round(processed / total * 100) if total else 0,
    }

    stats = None
    elapsed = seconds_since(session.get("started_at")) if session.get("started_at") else None
    if session.get("status") == "running" and elapsed and processed > 0:
        rate = processed / elapsed
        eta = (total - processed) / max(rate, 0.1)
        stats = {
            "elapsedSeconds": round(elapsed),
            "processingRate": round(rate, 2),
            "etaSeconds": round(eta),
            "etaMinutes": round(eta / 60),
        }
    return progress, stats


# ---------- Amazon hourly update ----------

def get_running_update_batch():
    res = supabase.table("update_batches").select("*").eq("status", "running").limit(1).execute()
    return res.data[0] if res.data else None


def start_update_batch():
    res = supabase.table("products").select("id", count="exact").eq("is_active", True).limit(1).execute()
    total = res.count or 0

    batch = supabase.table("update_batches").insert({
        "status": "running",
        "total_products": total,
        "processed_products": 0,
        "updated_products": 0,
        "failed_products": 0,
        "started_at": now_iso(),
    }).execute().data[0]

    logger.info("Created update batch %s for %s products", batch["id"], total)
    return batch


def log_update(batch_id, product_id, action, details=None):
    details = details or {}
    try:
        supabase.table("update_logs").insert({
            "batch_id": batch_id,
            "product_id": product_id,
            "action": action,
            "old_price": details.get("old_price"),
            "new_price": details.get("new_price"),
            "old_stock": details.get("old_stock"),
            "new_stock": details.get("new_stock"),
            "error_message": details.get("error_message"),
            "created_at": now_iso(),
        }).execute()
    except Exception as e:
        logger.warning("Failed to log update: %s", e)


def snapshot_active_product_ids():
    ids = []
    offset = 0
    while True:
        res = (
            supabase.table("products")
            .select("id")
            .eq("is_active", True)
            .order("last_scraped", desc=False, nullsfirst=True)
            .order("id")
            .range(offset, offset + CHUNK_SIZE - 1)
            .execute()
        )
        rows = res.data or []
        ids.extend(row["id"] for row in rows)
        if len(rows) < CHUNK_SIZE:
            return ids
        offset += CHUNK_SIZE


def update_single_product(product, batch_id, delay=0):
    if delay:
        time.sleep(delay)

    result = {"success": True, "updated": False, "price_changed": False, "stock_changed": False, "deactivated": False}

    try:
        scraped = scrape_amazon_product(product["supplier_asin"], country_from_supplier(product))

        result["price_changed"] = scraped["supplier_price"] != product.get("supplier_price")
        result["stock_changed"] = scraped["stock_status"] != product.get("stock_status")
        result["updated"] = (
            result["price_changed"]
            or result["stock_changed"]
            or scraped["rating_average"] != product.get("rating_average")
        )

        if result["updated"]:
            supabase.table("products").update({
                "supplier_price": scraped["supplier_price"],
                "our_price": scraped["our_price"],
                "stock_status": scraped["stock_status"],
                "stock_quantity": scraped["stock_quantity"],
                "rating_average": scraped["rating_average"],
                "rating_count": scraped["rating_count"],
                "last_scraped": now_iso(),
                "scrape_errors": 0,
                "updated_at": now_iso(),
            }).eq("id", product["id"]).execute()

            if result["price_changed"]:
                record_price_history(product["id"], scraped)

            log_update(batch_id, product["id"], "updated", {
                "old_price": product.get("supplier_price"),
                "new_price": scraped["supplier_price"],
                "old_stock": product.get("stock_status"),
                "new_stock": scraped["stock_status"],
            })
        else:
            supabase.table("products").update({
                "last_scraped": now_iso(),
                "scrape_errors": 0,
            }).eq("id", product["id"]).execute()
            log_update(batch_id, product["id"], "no_change")

    except Exception as e:
        logger.error("Failed to update product %s: %s", product.get("internal_sku") or product.get("id"), e)
        deactivated = mark_scrape_failure(product)
        log_update(batch_id, product["id"], "deactivated" if deactivated else "error", {
            "error_message": str(e)[:255],
        })
        result = {
            "success": False,
            "updated": False,
            "price_changed": False,
            "stock_changed": False,
            "deactivated": deactivated,
        }

    return result


def process_products_chunk(products, batch_id, executor):
    totals = {"processed": 0, "updated": 0, "failed": 0, "deactivated": 0, "price_changes": 0, "stock_changes": 0}

    for batch in chunked(products, BATCH_SIZE):
        futures = [
            executor.submit(update_single_product, product, batch_id, (i % MAX_CONCURRENT) * REQUEST_DELAY)
            for i, product in enumerate(batch)
        ]
        for future in futures:
            result = future.result()
            totals["processed"] += 1
            if not result["success"]:
                totals["failed"] += 1
            if result["updated"]:
                totals["updated"] += 1
            if result["price_changed"]:
                totals["price_changes"] += 1
            if result["stock_changed"]:
                totals["stock_changes"] += 1
            if result["deactivated"]:
                totals["deactivated"] += 1

        time.sleep(BATCH_DELAY)

    return totals


def _batch_counts(results):
    return {
        "processed_products": results["processed"],
        "updated_products": results["updated"],
        "failed_products": results["failed"],
    }


def run_hourly_update(batch_id):
    results = {"processed": 0, "updated": 0, "failed": 0, "deactivated": 0, "price_changes": 0, "stock_changes": 0}
    started = time.monotonic()

    try:
        product_ids = snapshot_active_product_ids()
        total = len(product_ids)
        logger.info("Update batch %s: %s active products", batch_id, total)

        with ThreadPoolExecutor(max_workers=MAX_CONCURRENT) as executor:
            for chunk_number, id_chunk in enumerate(chunked(product_ids, CHUNK_SIZE), start=1):
                products = supabase.table("products").select("*").in_("id", id_chunk).execute().data or []

                chunk_results = process_products_chunk(products, batch_id, executor)
                for key, value in chunk_results.items():
                    results[key] += value

                try:
                    supabase.table("update_batches").update(_batch_counts(results)).eq("id", batch_id).execute()
                except Exception as e:
                    logger.warning("Failed to update batch progress: %s", e)

                logger.info(
                    "Chunk %s done: %s/%s processed (%s%%)",
                    chunk_number, results["processed"], total,
                    round(results["processed"] / total * 100) if total else 100,
                )

        supabase.table("update_batches").update({
            **_batch_counts(results),
            "status": "completed",
            "completed_at": now_iso(),
        }).eq("id", batch_id).execute()

        logger.info(
            "Update batch %s completed in %ss: %s",
            batch_id, round(time.monotonic() - started), results,
        )

    except Exception as e:
        logger.exception("Update batch %s failed", batch_id)
        try:
            supabase.table("update_batches").update({
                **_batch_counts(results),
                "status": "failed",
                "error_message": str(e),
                "completed_at": now_iso(),
            }).eq("id", batch_id).execute()
        except Exception as write_error:
            logger.error("Could not mark update batch %s failed: %s", batch_id, write_error)

    return results


# ---------- Kogan ----------

def save_kogan_product(user_id, product_data):
    """Insert or refresh a monitored Kogan product; returns (row, is_new)."""
    res = (
        supabase.table("kogan_products")
        .select("*")
        .eq("user_id", user_id)
        .eq("sku", product_data["sku"])
        .limit(1)
        .execute()
    )
    existing = res.data[0] if res.data else None

    row = {
        "user_id": user_id,
        **product_data,
        "monitoring_enabled": True,
        "last_updated": now_iso(),
    }

    if existing:
        row["created_at"] = existing.get("created_at")
        saved = supabase.table("kogan_products").update(row).eq("id", existing["id"]).execute().data[0]

        if existing.get("price_current") != product_data.get("price_current"):
            record_kogan_price(existing["id"], product_data)
        return saved, False

    row["created_at"] = now_iso()
    saved = supabase.table("kogan_products").insert(row).execute().data[0]
    return saved, True


def record_kogan_price(product_id, product_data):
    try:
        supabase.table("kogan_price_history").insert({
            "product_id": product_id,
            "price": product_data.get("price_current"),
            "original_price": product_data.get("price_original"),
            "discount_percent": product_data.get("discount_percent"),
            "recorded_at": now_iso(),
        }).execute()
    except Exception as e:
        logger.warning("Kogan price history insert failed: %s", e)


def _import_kogan_input(value, user_id):
    url = kogan_scraper.resolve_product_url(value)
    if not url:
        raise kogan_scraper.ScrapeError(f"No Kogan product found for '{value}'")
    return save_kogan_product(user_id, kogan_scraper.scrape_product(url))


def run_kogan_import(user_id, inputs, max_products=1000):
    results = {"processed": 0, "added": 0, "updated": 0, "errors": 0, "products": []}
    inputs = [v.strip() for v in inputs if v and v.strip()][:max_products]

    with ThreadPoolExecutor(max_workers=KOGAN_BATCH_SIZE) as executor:
        for batch_number, batch in enumerate(chunked(inputs, KOGAN_BATCH_SIZE), start=1):
            futures = [(value, executor.submit(_import_kogan_input, value, user_id)) for value in batch]
            for value, future in futures:
                results["processed"] += 1
                try:
                    saved, is_new = future.result()
                except Exception as e:
                    logger.error("Error importing Kogan product %s: %s", value, e)
                    results["errors"] += 1
                    continue

                results["added" if is_new else "updated"] += 1
                results["products"].append({**saved, "isNew": is_new})

            logger.info("Kogan import batch %s: %s/%s processed", batch_number, results["processed"], len(inputs))
            if results["processed"] < len(inputs):
                time.sleep(1)

    return results


def run_kogan_import_session(session_id, user_id, inputs, max_products=1000):
    try:
        results = run_kogan_import(user_id, inputs, max_products)
        supabase.table("import_sessions").update({
            "status": "completed",
            "completed_at": now_iso(),
            "products_processed": results["processed"],
            "products_added": results["added"],
            "products_updated": results["updated"],
            "errors": results["errors"],
        }).eq("id", session_id).execute()
        logger.info("Kogan import session %s completed: %s", session_id, {k: v for k, v in results.items() if k != "products"})
        return results

    except Exception as e:
        logger.exception("Kogan import session %s failed", session_id)
        try:
            supabase.table("import_sessions").update({
                "status": "failed",
                "completed_at": now_iso(),
                "error_message": str(e),
            }).eq("id", session_id).execute()
        except Exception as write_error:
            logger.error("Could not mark Kogan import session %s failed: %s", session_id, write_error)
        return None
