import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException

from autods import AutoDSClient, TOKEN_SETTING_KEY, get_stored_refresh_token, resolve_refresh_token
from jobs import cleanup_zero_quantity, create_sync_log, run_autods_sync
from schemas import TokenUpdate
from services import AUTODS_REFRESH_TOKEN, supabase, verify_cron_secret
from utils import now_iso, seconds_since

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["AutoDS Sync"])


def _count(query):
    return query.limit(1).execute().count or 0


def _products_count():
    return supabase.table("products").select("id", count="exact")


def _token_preview(token: str):
    return f"{token[:10]}...{token[-10:]}"


@router.post("/sync-products")
def sync_products():
    """Pull the full AutoDS catalog and reconcile it with the products table."""
    try:
        result = run_autods_sync(AutoDSClient(resolve_refresh_token()))
        create_sync_log("manual", result, "success")
        return result
    except Exception as e:
        logger.error("Manual sync failed: %s", e)
        create_sync_log("manual", {"message": str(e)}, "error")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/auto-sync", dependencies=[Depends(verify_cron_secret)])
def auto_sync():
    started = datetime.now(timezone.utc)
    logger.info("Automated AutoDS sync started")

    try:
        result = run_autods_sync(AutoDSClient(resolve_refresh_token()))
    except Exception as e:
        logger.error("Automated sync failed: %s", e)
        create_sync_log("automated", {"message": str(e)}, "error")
        raise HTTPException(status_code=500, detail=str(e))

    create_sync_log("automated", result, "success")
    duration = (datetime.now(timezone.utc) - started).total_seconds()
    return {
        "success": True,
        "message": "Automated sync completed successfully",
        "duration_seconds": round(duration, 1),
        "result": result,
        "timestamp": now_iso(),
    }


@router.get("/sync-status")
def sync_status():
    try:
        total = _count(_products_count())
        zero_qty = _count(_products_count().eq("quantity", 0))
        active = _count(_products_count().eq("status", 2))
        inactive = _count(_products_count().eq("status", 1))
        manual = _count(_products_count().like("autods_id", "manual_%"))
        autods = _count(_products_count().not_.like("autods_id", "manual_%"))

        last = supabase.table("products").select("modified_at").order("modified_at", desc=True).limit(1).execute()
        last_sync = last.data[0]["modified_at"] if last.data else None

        quantities = supabase.table("products").select("quantity").execute().data or []
        distribution = {"zero": 0, "low": 0, "medium": 0, "high": 0}
        for row in quantities:
            qty = row.get("quantity") or 0
            if qty == 0:
                distribution["zero"] += 1
            elif qty <= 5:
                distribution["low"] += 1
            elif qty <= 20:
                distribution["medium"] += 1
            else:
                distribution["high"] += 1

        try:
            recent_syncs = (
                supabase.table("sync_logs").select("*").order("created_at", desc=True).limit(5).execute().data or []
            )
        except Exception as e:
            logger.warning("Could not read sync logs: %s", e)
            recent_syncs = []

        health = {
            "status": "healthy" if total > 0 else "needs_sync",
            "last_check": now_iso(),
            "issues": [],
        }

        if total > 0:
            zero_percentage = zero_qty / total * 100
            if zero_percentage > 10:
                health["issues"].append(f"High zero quantity products: {zero_qty} ({zero_percentage:.1f}%)")

        if recent_syncs:
            last_log = recent_syncs[0]
            age = seconds_since(last_log.get("created_at"))
            if age is not None and age > 24 * 60 * 60:
                health["issues"].append("Last sync was over 24 hours ago")
            if last_log.get("status") == "error":
                health["issues"].append("Last sync failed")
                health["status"] = "warning"

        return {
            "total_products": total,
            "status_breakdown": {"active": active, "inactive": inactive},
            "source_breakdown": {"autods": autods, "manual": manual},
            "quantity_distribution": distribution,
            "zero_quantity_products": zero_qty,
            "last_sync": last_sync,
            "sync_health": health,
            "recent_syncs": recent_syncs,
            "timestamp": now_iso(),
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/sync-logs")
def get_sync_logs(limit: int = 20):
    try:
        res = supabase.table("sync_logs").select("*").order("created_at", desc=True).limit(limit).execute()
        return {"success": True, "logs": res.data or []}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/autods-token")
def get_token_status():
    has_env_token = bool(AUTODS_REFRESH_TOKEN)
    try:
        stored = get_stored_refresh_token()
    except Exception as e:
        logger.warning("Could not check database token storage: %s", e)
        return {
            "success": True,
            "has_database_token": False,
            "has_env_token": has_env_token,
            "token_source": "environment" if has_env_token else "none",
            "error": "Could not check database token storage",
        }

    has_db_token = bool(stored and stored.get("value"))
    return {
        "success": True,
        "has_database_token": has_db_token,
        "has_env_token": has_env_token,
        "token_source": "database" if has_db_token else ("environment" if has_env_token else "none"),
        "last_updated": stored.get("updated_at") if stored else None,
        "token_preview": _token_preview(stored["value"]) if has_db_token else None,
    }


@router.post("/autods-token")
def update_token(payload: TokenUpdate):
    token = (payload.refresh_token or "").strip()
    if len(token) < 10:
        raise HTTPException(status_code=400, detail="Refresh token must be a string with at least 10 characters")

    try:
        supabase.table("app_settings").upsert({
            "key": TOKEN_SETTING_KEY,
            "value": token,
            "updated_at": now_iso(),
        }, on_conflict="key").execute()
        return {
            "success": True,
            "message": "AutoDS refresh token updated successfully",
            "token_preview": _token_preview(token),
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to update token: {e}")


@router.delete("/autods-token")
def clear_token():
    try:
        supabase.table("app_settings").delete().eq("key", TOKEN_SETTING_KEY).execute()
        return {"success": True, "message": "AutoDS refresh token cleared successfully"}
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to clear token: {e}")


@router.post("/products/cleanup-zero-qty")
def cleanup_zero_qty_products():
    try:
        result = cleanup_zero_quantity()
        return {
            "success": True,
            "message": f"Removed {result['removed']} products with zero quantity",
            **result,
            "timestamp": now_iso(),
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
