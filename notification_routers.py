import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException

from push import process_notification
from schemas import DeviceRegistration, NotificationCreate, NotificationUpdate
from services import supabase
from utils import now_iso, parse_iso, percentage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])

VALID_TYPES = ["info", "success", "warning", "error", "promotional"]
VALID_TARGET_TYPES = ["all", "user", "segment"]

TIMEFRAMES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

DELIVERY_COLUMNS = "id, user_id, delivered_at, read_at, clicked_at, dismissed_at"


def _rate(part, total):
    return round(part / total * 100, 2) if total else 0


def _get_notification(notification_id, columns="*"):
    res = supabase.table("notifications").select(columns).eq("id", notification_id).maybe_single().execute()
    if not res or not res.data:
        raise HTTPException(status_code=404, detail="Notification not found")
    return res.data


@router.get("")
def list_notifications(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    type: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
):
    try:
        query = supabase.table("notifications").select("*", count="exact")
        if status:
            query = query.eq("status", status)
        if type:
            query = query.eq("type", type)

        start = (page - 1) * limit
        res = query.order(sort_by, desc=sort_order != "asc").range(start, start + limit - 1).execute()
        total = res.count or 0

        return {
            "success": True,
            "notifications": res.data or [],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0,
            },
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("", status_code=201)
def create_notification(notification: NotificationCreate):
    if not notification.title or not notification.message:
        raise HTTPException(status_code=400, detail="Missing required fields: title, message")
    if notification.type not in VALID_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid notification type. Valid types: {', '.join(VALID_TYPES)}")
    if notification.target_type not in VALID_TARGET_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid target type. Valid target types: {', '.join(VALID_TARGET_TYPES)}",
        )

    send_now = notification.send_immediately
    if send_now:
        status = "sent"
    elif notification.scheduled_at:
        status = "scheduled"
    else:
        status = "draft"

    try:
        res = supabase.table("notifications").insert({
            "title": notification.title,
            "message": notification.message,
            "type": notification.type,
            "target_type": notification.target_type,
            "target_users": notification.target_users if notification.target_type == "user" else None,
            "image_url": notification.image_url,
            "action_type": notification.action_type,
            "action_value": notification.action_value,
            "scheduled_at": notification.scheduled_at or (None if send_now else now_iso()),
            "expires_at": notification.expires_at,
            "status": status,
            "created_by": "admin",
            "sent_at": now_iso() if send_now else None,
            "created_at": now_iso(),
        }).execute()
        created = res.data[0]
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    if send_now:
        try:
            process_notification(created["id"])
        except Exception as e:
            logger.error("Error processing immediate notification %s: %s", created["id"], e)

    return {
        "success": True,
        "notification": created,
        "message": "Notification sent successfully" if send_now else "Notification created successfully",
    }


@router.get("/analytics")
def analytics():
    try:
        notifications = supabase.table("notifications").select("*").execute().data or []

        status_summary = {}
        for n in notifications:
            status_summary[n.get("status")] = status_summary.get(n.get("status"), 0) + 1

        sent = [n for n in notifications if n.get("status") == "sent"]
        total_delivered = sum(n.get("total_delivered") or 0 for n in notifications)
        total_opened = sum(n.get("total_opened") or 0 for n in notifications)
        total_clicked = sum(n.get("total_clicked") or 0 for n in notifications)
        total_pushed = sum(n.get("total_sent") or 0 for n in notifications)

        def newest_first(rows):
            return sorted(rows, key=lambda r: r.get("created_at") or "", reverse=True)

        detailed_stats = [
            {
                "id": n["id"],
                "title": n.get("title"),
                "type": n.get("type"),
                "status": n.get("status"),
                "created_at": n.get("created_at"),
                "sent_at": n.get("sent_at"),
                "total_sent": n.get("total_sent") or 0,
                "total_delivered": n.get("total_delivered") or 0,
                "total_opened": n.get("total_opened") or 0,
                "total_clicked": n.get("total_clicked") or 0,
                "delivery_rate": _rate(n.get("total_delivered") or 0, n.get("total_sent") or 0),
                "open_rate": _rate(n.get("total_opened") or 0, n.get("total_delivered") or 0),
                "click_rate": _rate(n.get("total_clicked") or 0, n.get("total_opened") or 0),
            }
            for n in newest_first(sent)
        ]

        cutoff = datetime.now(timezone.utc) - timedelta(days=30)
        recent = [n for n in notifications if (parse_iso(n.get("created_at")) or cutoff) >= cutoff]

        return {
            "success": True,
            "analytics": {
                "summary": {
                    **status_summary,
                    "total_notifications": len(notifications),
                    "total_sent": len(sent),
                    "total_delivered": total_delivered,
                    "total_opened": total_opened,
                    "total_clicked": total_clicked,
                    "delivery_rate": _rate(total_delivered, total_pushed),
                    "open_rate": _rate(total_opened, total_delivered),
                    "click_rate": _rate(total_clicked, total_opened),
                },
                "detailed_stats": detailed_stats,
                "recent_activity": newest_first(recent)[:20],
            },
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get analytics: {e}")


def _duration_minutes(row):
    started = parse_iso(row.get("started_at"))
    if not started:
        return 0
    ended = parse_iso(row.get("completed_at")) or datetime.now(timezone.utc)
    return round((ended - started).total_seconds() / 60)


def _summary_stats(batches, sessions):
    done_batches = [b for b in batches if b.get("status") == "completed"]
    done_imports = [s for s in sessions if s.get("status") == "completed"]

    checked = sum(b.get("processed_products") or 0 for b in done_batches)
    changed = sum(b.get("updated_products") or 0 for b in done_batches)
    update_errors = sum(b.get("failed_products") or 0 for b in done_batches)

    imported = sum(s.get("imported_products") or 0 for s in done_imports)
    updated = sum(s.get("updated_products") or 0 for s in done_imports)
    import_errors = sum(s.get("failed_skus") or 0 for s in done_imports)

    return {
        "updates": {
            "completedBatches": len(done_batches),
            "runningBatches": sum(1 for b in batches if b.get("status") == "running"),
            "totalProductsChecked": checked,
            "totalPriceChanges": changed,
            "totalErrors": update_errors,
            "successRate": round((checked - update_errors) / checked * 100, 1) if checked else 0,
        },
        "imports": {
            "completedImports": len(done_imports),
            "runningImports": sum(1 for s in sessions if s.get("status") == "running"),
            "totalImported": imported,
            "totalUpdated": updated,
            "totalErrors": import_errors,
            "successRate": (
                round((imported + updated) / (imported + updated + import_errors) * 100, 1)
                if imported + updated else 0
            ),
        },
        "overall": {
            "totalActivities": len(batches) + len(sessions),
            "totalProductsProcessed": checked + imported + updated,
            "totalErrors": update_errors + import_errors,
        },
    }


def _batch_notification(batch):
    duration = _duration_minutes(batch)
    processed = batch.get("processed_products") or 0
    total = batch.get("total_products") or 0
    status = batch.get("status")

    if status == "running":
        kind = "info"
        message = f"Hourly update in progress: {processed}/{total} products ({percentage(processed, total)}%)"
    elif status == "completed":
        kind = "success"
        message = (
            f"Hourly update completed: {processed} products checked, "
            f"{batch.get('updated_products') or 0} updated in {duration}min"
        )
    elif status == "failed":
        kind = "error"
        message = f"Hourly update failed after {duration}min: {batch.get('error_message') or 'Unknown error'}"
    else:
        kind, message = "info", ""

    return {
        "id": f"batch_{batch['id']}",
        "type": kind,
        "category": "update",
        "message": message,
        "timestamp": batch.get("started_at"),
        "completed": status != "running",
        "details": {
            "batchId": batch["id"],
            "totalProducts": batch.get("total_products"),
            "processed": batch.get("processed_products"),
            "updated": batch.get("updated_products"),
            "failed": batch.get("failed_products"),
            "duration": duration,
        },
    }


def _import_notification(session):
    duration = _duration_minutes(session)
    processed = session.get("processed_skus") or 0
    total = session.get("total_skus") or 0
    status = session.get("status")

    if status == "running":
        kind = "info"
        message = f"CSV import in progress: {processed}/{total} items ({percentage(processed, total)}%)"
    elif status == "completed":
        kind = "success"
        message = (
            f"CSV import completed: {session.get('imported_products') or 0} imported, "
            f"{session.get('updated_products') or 0} updated in {duration}min"
        )
    elif status == "failed":
        kind = "error"
        message = f"CSV import failed after {duration}min: {session.get('error_message') or 'Unknown error'}"
    else:
        kind, message = "info", ""

    return {
        "id": f"import_{session['id']}",
        "type": kind,
        "category": "import",
        "message": message,
        "timestamp": session.get("started_at"),
        "completed": status != "running",
        "details": {
            "sessionId": session["id"],
            "totalSkus": session.get("total_skus"),
            "processed": session.get("processed_skus"),
            "imported": session.get("imported_products"),
            "updated": session.get("updated_products"),
            "failed": session.get("failed_skus"),
            "duration": duration,
        },
    }


@router.get("/update-summary")
def update_summary(timeframe: str = "24h", limit: int = 10):
    """Recent hourly-update batches and CSV imports as feed items."""
    start = (datetime.now(timezone.utc) - TIMEFRAMES.get(timeframe, TIMEFRAMES["24h"])).isoformat()

    try:
        batches = (
            supabase.table("update_batches").select("*")
            .gte("started_at", start).order("started_at", desc=True).limit(limit)
            .execute().data or []
        )
        sessions = (
            supabase.table("csv_import_sessions").select("*")
            .gte("started_at", start).order("started_at", desc=True).limit(limit)
            .execute().data or []
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get notifications: {e}")

    feed = [_batch_notification(b) for b in batches] + [_import_notification(s) for s in sessions]
    feed.sort(key=lambda item: item["timestamp"] or "", reverse=True)

    return {
        "success": True,
        "timeframe": timeframe,
        "summary": _summary_stats(batches, sessions),
        "notifications": feed,
        "lastUpdated": now_iso(),
    }


@router.post("/register-device")
def register_device(device: DeviceRegistration):
    if not device.user_id or not device.push_token:
        raise HTTPException(status_code=400, detail="Missing required fields: userId, pushToken")

    try:
        res = supabase.table("user_devices").upsert({
            "user_id": device.user_id,
            "device_token": device.push_token,
            "platform": device.platform or "unknown",
            "device_info": device.device_info,
            "is_active": True,
            "last_seen_at": now_iso(),
            "push_enabled": True,
        }, on_conflict="device_token").execute()
        return {"success": True, "message": "Device registered successfully", "device": res.data[0]}
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to register device: {e}")


@router.post("/send/{notification_id}")
def send_notification(notification_id: int):
    try:
        notification = _get_notification(notification_id)

        if notification.get("status") == "sent":
            raise HTTPException(status_code=400, detail="Notification already sent")
        if notification.get("status") == "cancelled":
            raise HTTPException(status_code=400, detail="Notification cancelled")

        result = process_notification(notification_id)
        return {"success": True, "message": "Notification sent successfully", **result}
    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=f"Failed to send notification: {e}")


@router.get("/{notification_id}")
def get_notification(notification_id: int):
    try:
        notification = _get_notification(notification_id, f"*, user_notifications({DELIVERY_COLUMNS})")
        return {"success": True, "notification": notification}
    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/{notification_id}")
def update_notification(notification_id: int, notification_update: NotificationUpdate):
    try:
        existing = _get_notification(notification_id)

        send_now = notification_update.send_immediately
        resend = notification_update.resend_notification

        update_data = notification_update.model_dump(
            exclude_unset=True, exclude={"send_immediately", "resend_notification"}
        )
        update_data["updated_at"] = now_iso()

        if send_now or resend:
            update_data["status"] = "sent"
            update_data["sent_at"] = now_iso()

            if resend and existing.get("status") == "sent":
                try:
                    supabase.table("user_notifications").delete().eq("notification_id", notification_id).execute()
                except Exception as e:
                    logger.warning("Error deleting previous user notifications: %s", e)

        res = supabase.table("notifications").update(update_data).eq("id", notification_id).execute()
        if not res.data:
            raise HTTPException(status_code=404, detail="Notification not found")
        updated = res.data[0]

        if not (send_now or resend):
            return {"success": True, "notification": updated, "message": "Notification updated successfully"}

        try:
            process_notification(notification_id)
        except Exception as e:
            logger.error("Error processing notification %s: %s", notification_id, e)
            supabase.table("notifications").update({
                "status": existing.get("status"),
                "sent_at": existing.get("sent_at"),
            }).eq("id", notification_id).execute()
            raise HTTPException(status_code=500, detail=f"Notification updated but failed to send: {e}")

        return {
            "success": True,
            "notification": updated,
            "message": "Notification updated and sent successfully" if send_now
            else "Notification updated and resent successfully",
            "action": "sent" if send_now else "resent",
        }
    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/{notification_id}")
def delete_notification(notification_id: int):
    try:
        notification = _get_notification(notification_id, "id, status, title")
        if notification.get("status") == "sent":
            raise HTTPException(status_code=400, detail="Sent notifications cannot be deleted")

        supabase.table("user_notifications").delete().eq("notification_id", notification_id).execute()
        supabase.table("notifications").delete().eq("id", notification_id).execute()
        return {"success": True, "message": "Notification deleted successfully"}
    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))
