import logging
import time
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException

import kogan_scraper
from jobs import record_kogan_price, run_kogan_import_session
from schemas import KoganDeleteRequest, KoganImportRequest, KoganScrapeRequest, KoganUpdateRequest
from services import supabase
from utils import now_iso

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/kogan", tags=["Kogan"])


def _log_scrape(user_id, product_id, value, status, error_message=None):
    try:
        supabase.table("kogan_scraping_logs").insert({
            "user_id": user_id,
            "product_id": product_id,
            "action": "scrape",
            "input_data": value,
            "status": status,
            "error_message": error_message,
            "created_at": now_iso(),
        }).execute()
    except Exception as e:
        logger.warning("Kogan scrape log failed: %s", e)


def _scrape_and_store(value, user_id):
    url = kogan_scraper.resolve_product_url(value)
    if not url:
        raise kogan_scraper.ScrapeError(f"No Kogan product found for '{value}'")

    data = kogan_scraper.scrape_product(url)
    row = {
        "user_id": user_id,
        **data,
        "monitoring_enabled": True,
        "last_updated": now_iso(),
    }
    res = supabase.table("kogan_products").upsert(row, on_conflict="user_id,sku").execute()
    saved = res.data[0]
    _log_scrape(user_id, saved["id"], value, "success")
    return saved


@router.post("/scrape")
def scrape(payload: KoganScrapeRequest):
    if not payload.input or not payload.user_id:
        raise HTTPException(status_code=400, detail="Missing input or userId")

    if payload.mode == "bulk":
        inputs = [line.strip() for line in payload.input.splitlines() if line.strip()]
    else:
        inputs = [payload.input.strip()]

    products = []
    errors = []
    for value in inputs:
        try:
            products.append(_scrape_and_store(value, payload.user_id))
        except Exception as e:
            logger.error("Kogan scrape failed for %s: %s", value, e)
            _log_scrape(payload.user_id, None, value, "error", str(e))
            errors.append({"input": value, "error": str(e)})

    if not products:
        raise HTTPException(status_code=500, detail=errors[0]["error"] if errors else "Scraping failed")

    response = {"success": True, "count": len(products), "products": products}
    if errors:
        response["errors"] = errors
    return response


@router.post("/import-all")
def import_all(payload: KoganImportRequest, background_tasks: BackgroundTasks):
    if not payload.user_id:
        raise HTTPException(status_code=400, detail="userId required")

    inputs = [v.strip() for v in payload.inputs if v and v.strip()]
    if not inputs:
        raise HTTPException(status_code=400, detail="inputs array with Kogan URLs or SKUs required")

    try:
        session = supabase.table("import_sessions").insert({
            "user_id": payload.user_id,
            "status": "running",
            "max_products": payload.max_products,
            "products_processed": 0,
            "products_added": 0,
            "products_updated": 0,
            "errors": 0,
            "started_at": now_iso(),
        }).execute().data[0]
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to create import session: {e}")

    if payload.continuous_mode:
        background_tasks.add_task(
            run_kogan_import_session, session["id"], payload.user_id, inputs, payload.max_products
        )
        return {
            "success": True,
            "message": "Import started in background",
            "sessionId": session["id"],
            "estimatedProducts": min(len(inputs), payload.max_products),
        }

    results = run_kogan_import_session(session["id"], payload.user_id, inputs, payload.max_products)
    if results is None:
        raise HTTPException(status_code=500, detail="Import failed")

    return {
        "success": True,
        "sessionId": session["id"],
        "results": {k: v for k, v in results.items() if k != "products"},
        "products": results["products"],
    }


@router.get("/import-status")
def import_status(userId: Optional[str] = None, sessionId: Optional[int] = None):
    if not userId:
        raise HTTPException(status_code=400, detail="userId required")

    try:
        query = supabase.table("import_sessions").select("*").eq("user_id", userId)
        if sessionId:
            query = query.eq("id", sessionId)
        rows = query.order("started_at", desc=True).limit(1).execute().data
        session = rows[0] if rows else None

        if not session:
            return {"success": True, "status": "none", "message": "No import sessions found"}

        monitored = (
            supabase.table("kogan_products")
            .select("id", count="exact")
            .eq("user_id", userId)
            .eq("monitoring_enabled", True)
            .limit(1)
            .execute()
        )

        return {
            "success": True,
            "session": session,
            "currentProductCount": monitored.count or 0,
            "status": session["status"],
            "progress": {
                "processed": session.get("products_processed") or 0,
                "added": session.get("products_added") or 0,
                "updated": session.get("products_updated") or 0,
                "errors": session.get("errors") or 0,
                "maxProducts": session.get("max_products") or 0,
            },
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/update")
def update(payload: KoganUpdateRequest):
    if not payload.user_id:
        raise HTTPException(status_code=400, detail="User ID required")

    try:
        query = (
            supabase.table("kogan_products")
            .select("*")
            .eq("user_id", payload.user_id)
            .eq("monitoring_enabled", True)
        )
        if payload.product_ids:
            query = query.in_("id", payload.product_ids)
        products = query.execute().data or []
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Database query failed: {e}")

    results = []
    for index, product in enumerate(products):
        try:
            fresh = kogan_scraper.scrape_price_update(product["source_url"])
            price_changed = product.get("price_current") != fresh["price_current"]
            stock_changed = product.get("status") != fresh["status"]

            supabase.table("kogan_products").update(fresh).eq("id", product["id"]).execute()
            if price_changed and fresh["price_current"]:
                record_kogan_price(product["id"], fresh)

            results.append({
                "id": product["id"],
                "status": "success",
                "priceChanged": price_changed,
                "stockChanged": stock_changed,
            })
        except Exception as e:
            logger.error("Error updating Kogan product %s: %s", product["id"], e)
            results.append({"id": product["id"], "status": "error", "error": str(e)})

        if index < len(products) - 1:
            time.sleep(2)

    return {
        "success": True,
        "results": results,
        "summary": {
            "total": len(results),
            "success": sum(1 for r in results if r["status"] == "success"),
            "errors": sum(1 for r in results if r["status"] == "error"),
        },
    }


@router.post("/delete")
def delete(payload: KoganDeleteRequest):
    ids = list(payload.product_ids or [])
    if payload.product_id:
        ids.append(payload.product_id)

    if not payload.user_id or not ids:
        raise HTTPException(status_code=400, detail="userId and productIds required")

    try:
        res = (
            supabase.table("kogan_products")
            .update({"monitoring_enabled": False, "last_updated": now_iso()})
            .eq("user_id", payload.user_id)
            .in_("id", ids)
            .execute()
        )
        return {"success": True, "deletedCount": len(res.data or [])}
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Delete failed: {e}")


@router.get("/products")
def products(userId: Optional[str] = None):
    if not userId:
        raise HTTPException(status_code=400, detail="User ID required")

    try:
        res = (
            supabase.table("kogan_products")
            .select("*")
            .eq("user_id", userId)
            .eq("monitoring_enabled", True)
            .order("created_at", desc=True)
            .execute()
        )
        return {"success": True, "products": res.data or []}
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to fetch products: {e}")
