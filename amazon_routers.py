import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from amazon_scraper import ScrapeError, calculate_stock_summary, extract_asin
from jobs import (
    find_amazon_product,
    get_running_update_batch,
    import_progress,
    log_import_activity,
    refresh_amazon_product,
    run_csv_import,
    run_hourly_update,
    save_amazon_product,
    scrape_for_import,
    start_update_batch,
)
from schemas import (
    AmazonImportRequest,
    BulkUpdateRequest,
    CsvImportCancel,
    CsvImportRequest,
    DeleteAllRequest,
    SingleUpdateRequest,
    SPExchangeRequest,
)
from services import supabase, verify_cron_bearer
from sp_api import SPAPIError, exchange_authorization_code, get_orders
from utils import chunked, now_iso, percentage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Amazon"])

STOCK_STATUS_FILTERS = {
    "in_stock": "In Stock",
    "out_of_stock": "Out of Stock",
    "limited_stock": "Limited Stock",
}


def _since(hours):
    return (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()


# --- Import ---

@router.post("/amazon/import")
def import_product(payload: AmazonImportRequest):
    if not payload.input or not payload.user_id:
        raise HTTPException(status_code=400, detail="Input and userId required")

    asin = extract_asin(payload.input)
    if not asin:
        raise HTTPException(
            status_code=400,
            detail="Invalid input. Please provide a valid Amazon ASIN (10 characters) or URL.",
        )

    try:
        existing = find_amazon_product(payload.user_id, asin)

        try:
            scraped = scrape_for_import(
                asin, payload.country, payload.fetch_variants, payload.accurate_stock, payload.max_variants
            )
        except ScrapeError as e:
            raise HTTPException(status_code=400, detail=f"Failed to scrape product data: {e}")

        product, is_new = save_amazon_product(scraped, asin, payload.user_id, payload.country, existing)

        response = {
            "success": True,
            "product": product,
            "isNew": is_new,
            "message": "Product imported successfully" if is_new else "Product updated successfully",
        }
        if (scraped.get("variants") or {}).get("has_variations"):
            response["stockSummary"] = calculate_stock_summary(scraped["variants"])
        return response

    except Exception as e:
        if isinstance(e, HTTPException): raise e
        logger.error("Import failed for %s: %s", asin, e)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/amazon/bulk-import-csv")
def bulk_import_csv(payload: CsvImportRequest, background_tasks: BackgroundTasks):
    if not payload.user_id:
        raise HTTPException(status_code=400, detail="userId required")

    if payload.csv_data:
        lines = [line.strip() for line in payload.csv_data.splitlines()]
        items = [{"input": line, "index": i} for i, line in enumerate(line for line in lines if line)]
    elif payload.products is not None:
        items = payload.products
    else:
        raise HTTPException(status_code=400, detail="csvData or products array required")

    if not items:
        raise HTTPException(status_code=400, detail="No products to import")

    try:
        session = supabase.table("csv_import_sessions").insert({
            "user_id": payload.user_id,
            "total_skus": len(items),
            "processed_skus": 0,
            "imported_products": 0,
            "updated_products": 0,
            "failed_skus": 0,
            "status": "running",
            "started_at": now_iso(),
        }).execute().data[0]
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to create import session: {e}")

    log_import_activity(session["id"], "SYSTEM", "processing", f"Import session started with {len(items)} products")

    background_tasks.add_task(
        run_csv_import,
        session["id"],
        items,
        payload.user_id,
        payload.country,
        payload.fetch_variants,
        payload.accurate_stock,
        payload.max_variants,
    )

    return {
        "success": True,
        "sessionId": session["id"],
        "totalSkus": len(items),
        "message": "Import started in background",
    }


@router.delete("/amazon/bulk-import-csv")
def cancel_bulk_import(payload: CsvImportCancel):
    if not payload.session_id:
        raise HTTPException(status_code=400, detail="sessionId required")

    try:
        supabase.table("csv_import_sessions").update({
            "status": "cancelled",
            "completed_at": now_iso(),
        }).eq("id", payload.session_id).execute()
        log_import_activity(payload.session_id, "SYSTEM", "error", "Import cancelled by user")
        return {"success": True, "message": "Import cancelled successfully"}
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to cancel import: {e}")


@router.get("/amazon/csv-import-status")
def csv_import_status(userId: Optional[str] = None, sessionId: Optional[int] = None):
    if not userId:
        raise HTTPException(status_code=400, detail="userId required")

    try:
        query = supabase.table("csv_import_sessions").select("*").eq("user_id", userId)
        if sessionId:
            query = query.eq("id", sessionId)
        res = query.order("started_at", desc=True).limit(1).execute()
        session = res.data[0] if res.data else None

        if not session:
            return {
                "success": True,
                "status": "none",
                "message": "No import sessions found",
                "session": None,
                "progress": {"processed": 0, "imported": 0, "updated": 0, "failed": 0, "total": 0, "percentage": 0},
            }

        progress, stats = import_progress(session)
        return {
            "success": True,
            "status": session["status"],
            "session": {**session, "processing_stats": stats},
            "progress": progress,
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


# --- Updates ---

@router.post("/amazon/update-products")
def update_products(payload: BulkUpdateRequest):
    """Synchronously refresh the least recently scraped products of a user."""
    if not payload.user_id:
        raise HTTPException(status_code=400, detail="userId required")

    try:
        query = (
            supabase.table("products")
            .select("*")
            .eq("user_id", payload.user_id)
            .eq("is_active", True)
            .lt("scrape_errors", 10)
        )
        if payload.target_status in STOCK_STATUS_FILTERS:
            query = query.eq("stock_status", STOCK_STATUS_FILTERS[payload.target_status])
        products = query.order("last_scraped", nullsfirst=True).limit(payload.limit).execute().data or []

        stats = {"total": len(products), "updated": 0, "failed": 0, "priceChanges": 0, "stockChanges": 0}
        if not products:
            return {"success": True, "message": "No products to update", "stats": stats}

        errors = []
        batches = list(chunked(products, 5))
        for index, batch in enumerate(batches):
            for product in batch:
                try:
                    result = refresh_amazon_product(product, payload.country)
                except ScrapeError as e:
                    stats["failed"] += 1
                    errors.append({
                        "asin": product.get("supplier_asin"),
                        "error": str(e),
                        "deactivated": getattr(e, "deactivated", False),
                    })
                    continue

                stats["updated"] += 1
                if result["price_changed"]:
                    stats["priceChanges"] += 1
                if result["stock_changed"]:
                    stats["stockChanges"] += 1

            if index < len(batches) - 1:
                time.sleep(2)

        response = {
            "success": True,
            "message": f"Updated {stats['updated']} of {stats['total']} products",
            "stats": stats,
        }
        if errors:
            response["errors"] = errors[:10]
        return response

    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/amazon/update-single-product")
def update_single_product(payload: SingleUpdateRequest):
    if not payload.product_id and not payload.asin:
        raise HTTPException(status_code=400, detail="Product ID or ASIN required")

    try:
        if payload.product_id:
            res = supabase.table("products").select("*").eq("id", payload.product_id).maybe_single().execute()
            product = res.data if res else None
        else:
            query = supabase.table("products").select("*").eq("supplier_asin", payload.asin.upper())
            if payload.user_id:
                query = query.eq("user_id", payload.user_id)
            rows = query.limit(1).execute().data
            product = rows[0] if rows else None

        if not product:
            raise HTTPException(status_code=404, detail="Product not found")

        try:
            result = refresh_amazon_product(
                product,
                payload.country,
                fetch_variants=payload.fetch_variants,
                accurate_stock=payload.accurate_stock,
                max_variants=payload.max_variants,
            )
        except ScrapeError as e:
            raise HTTPException(status_code=400, detail=f"Failed to scrape updated data: {e}")

        return {"success": True, "product": result["product"], "message": "Product updated successfully"}

    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/amazon/update-hourly")
def update_hourly(background_tasks: BackgroundTasks):
    existing = get_running_update_batch()
    if existing:
        raise HTTPException(status_code=409, detail=f"Update already in progress (batch {existing['id']})")

    try:
        batch = start_update_batch()
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to start update: {e}")

    background_tasks.add_task(run_hourly_update, batch["id"])
    return {
        "success": True,
        "message": f"Hourly update started for {batch['total_products']} products",
        "batchId": batch["id"],
        "totalProducts": batch["total_products"],
    }


@router.get("/amazon/update-status")
def update_status(batchId: Optional[int] = None):
    try:
        query = supabase.table("update_batches").select("*")
        if batchId:
            query = query.eq("id", batchId)
        rows = query.order("started_at", desc=True).limit(1).execute().data
        batch = rows[0] if rows else None

        if not batch:
            if batchId:
                raise HTTPException(status_code=404, detail="Batch not found")
            return {
                "success": True,
                "batch": None,
                "progress": {"processed": 0, "updated": 0, "failed": 0, "total": 0, "percentage": 0},
            }

        total = batch.get("total_products") or 0
        processed = batch.get("processed_products") or 0
        return {
            "success": True,
            "batch": batch,
            "progress": {
                "processed": processed,
                "updated": batch.get("updated_products") or 0,
                "failed": batch.get("failed_products") or 0,
                "total": total,
                "percentage": percentage(processed, total),
            },
        }
    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/cron/hourly-update", dependencies=[Depends(verify_cron_bearer)])
def cron_hourly_update(background_tasks: BackgroundTasks):
    if get_running_update_batch():
        return {"success": True, "message": "Update already in progress", "skipped": True}

    try:
        batch = start_update_batch()
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Automated update failed: {e}")

    background_tasks.add_task(run_hourly_update, batch["id"])
    return {"success": True, "message": "Automated hourly update started", "batchId": batch["id"]}


# --- Status & maintenance ---

def _count_products(**filters):
    query = supabase.table("products").select("id", count="exact")
    for column, value in filters.items():
        query = query.eq(column, value)
    return query.limit(1).execute().count or 0


def _product_stats():
    total = _count_products()
    active = _count_products(is_active=True)

    return {
        "total": total,
        "active": active,
        "inactive": total - active,
        "inStock": _count_products(is_active=True, stock_status="In Stock"),
        "outOfStock": _count_products(is_active=True, stock_status="Out of Stock"),
        "limitedStock": _count_products(is_active=True, stock_status="Limited Stock"),
    }


def _job_stats(table, processed_key, updated_key):
    rows = (
        supabase.table(table).select("*").gte("started_at", _since(24)).order("started_at", desc=True).execute().data
        or []
    )
    completed = [r for r in rows if r.get("status") == "completed"]
    return {
        "total": len(rows),
        "running": sum(1 for r in rows if r.get("status") == "running"),
        "completed": len(completed),
        "failed": sum(1 for r in rows if r.get("status") == "failed"),
        "totalProductsProcessed": sum(r.get(processed_key) or 0 for r in completed),
        "totalProductsUpdated": sum(r.get(updated_key) or 0 for r in completed),
        "last": rows[0] if rows else None,
    }


def determine_system_status(updates, imports):
    if updates["running"]:
        return {"status": "updating", "message": f"{updates['running']} update batch running"}
    if imports["running"]:
        return {"status": "importing", "message": f"{imports['running']} import session running"}
    if updates["last"] and updates["last"].get("status") == "failed":
        return {"status": "degraded", "message": "Last update batch failed"}
    return {"status": "idle", "message": "All systems operational"}


@router.get("/amazon/status")
def amazon_status():
    try:
        updates = _job_stats("update_batches", "processed_products", "updated_products")
        imports = _job_stats("csv_import_sessions", "imported_products", "updated_products")
        return {
            "success": True,
            "stats": {"products": _product_stats(), "updates": updates, "imports": imports},
            "systemStatus": determine_system_status(updates, imports),
            "lastUpdated": now_iso(),
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/amazon/delete-all-products")
def delete_all_products(payload: DeleteAllRequest):
    if not payload.user_id:
        raise HTTPException(status_code=400, detail="User ID is required")
    if payload.confirm_delete != "DELETE_ALL_PRODUCTS":
        raise HTTPException(
            status_code=400,
            detail='Confirmation required. Include confirmDelete: "DELETE_ALL_PRODUCTS" in request body',
        )

    try:
        products = supabase.table("products").select("id").eq("user_id", payload.user_id).execute().data or []
        deleted = {"products": 0, "priceHistory": 0, "updateLogs": 0}
        if not products:
            return {"success": True, "message": "No products found to delete", "deletedCounts": deleted}

        product_ids = [p["id"] for p in products]
        errors = []

        # not atomic: related rows go first, products last
        for table, key in (("price_history", "priceHistory"), ("update_logs", "updateLogs")):
            try:
                for ids in chunked(product_ids, 500):
                    res = supabase.table(table).delete().in_("product_id", ids).execute()
                    deleted[key] += len(res.data or [])
            except Exception as e:
                logger.warning("Error deleting %s: %s", table, e)
                errors.append(f"{table} deletion: {e}")

        res = supabase.table("products").delete().eq("user_id", payload.user_id).execute()
        deleted["products"] = len(res.data or [])

        try:
            supabase.table("csv_import_sessions").delete().eq("user_id", payload.user_id).eq("status", "completed").execute()
        except Exception as e:
            errors.append(f"CSV session cleanup: {e}")

        response = {
            "success": True,
            "message": f"Deleted {deleted['products']} products",
            "deletedCounts": deleted,
            "totalDeleted": sum(deleted.values()),
        }
        if errors:
            response["warnings"] = errors
        return response

    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


# --- SP-API ---

@router.get("/amazon/get-orders")
def sp_get_orders():
    try:
        payload = get_orders(7).get("payload") or {}
    except SPAPIError as e:
        logger.error("SP-API error: %s %s", e, e.details)
        raise HTTPException(status_code=500, detail=str(e))

    orders = payload.get("Orders") or []
    return {"success": True, "count": len(orders), "orders": orders, "nextToken": payload.get("NextToken")}


@router.post("/amazon/sp-exchange-token")
def sp_exchange_token(payload: SPExchangeRequest):
    if not payload.code:
        raise HTTPException(status_code=400, detail="Authorization code required")

    try:
        tokens = exchange_authorization_code(payload.code)
    except SPAPIError as e:
        logger.error("Token exchange error: %s %s", e, e.details)
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, **tokens}


@router.get("/amazon/sp-callback")
def sp_callback(
    spapi_oauth_code: Optional[str] = None,
    selling_partner_id: Optional[str] = None,
    state: Optional[str] = None,
):
    if not spapi_oauth_code:
        return {"success": False, "message": "Waiting for authorization code..."}

    return {
        "success": True,
        "message": "Authorization code received. Exchange it for a refresh token next.",
        "spapi_oauth_code": spapi_oauth_code,
        "selling_partner_id": selling_partner_id,
        "state": state,
    }
